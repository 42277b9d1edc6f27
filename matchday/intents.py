"""
intents.py - In-memory register of unconfirmed wagers, one per user

Expiry is lazy: an expired intent is treated as absent by every read, and
sweep_expired() only reclaims the memory. The register is shared by all
handler tasks; every operation is a single dict access so no lock is taken.
"""

import logging
import time
from typing import Callable, Dict, Optional, Union

from matchday.config import BotConfig
from matchday.errors import ErrorKind
from matchday.models import Outcome, WagerIntent

logger = logging.getLogger('matchday.intents')


class AlreadyPending(Exception):
    """The user already has a live intent"""

    kind = ErrorKind.ALREADY_PENDING

    def __init__(self, intent: WagerIntent):
        super().__init__(f"User {intent.user_id} already has a pending wager on match {intent.match_id}")
        self.intent = intent


class IntentExpired:
    """Returned by token lookups when the intent is gone (expired, cancelled or settled)"""

    kind = ErrorKind.INTENT_EXPIRED_OR_MISSING

    def __init__(self, token: str):
        self.token = token

    def __bool__(self):
        return False

    def __repr__(self):
        return f"IntentExpired({self.token!r})"


class IntentRegister:
    def __init__(self, ttl_seconds: float = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = BotConfig.PENDING_BET_TIMEOUT_SECONDS if ttl_seconds is None else ttl_seconds
        self.clock = clock
        self._intents: Dict[str, WagerIntent] = {}

    def create(self, user_id, match_id: int, prediction: Outcome, stake: str,
               channel_id=None, thread_id=None) -> WagerIntent:
        """Store a new intent; raises AlreadyPending if a live one exists"""
        self.sweep_expired()
        user_id = str(user_id)

        existing = self.get(user_id)
        if existing is not None:
            raise AlreadyPending(existing)

        now = self.clock()
        intent = WagerIntent(
            user_id=user_id,
            match_id=int(match_id),
            prediction=Outcome(prediction),
            stake=str(stake),
            created_at=now,
            expires_at=now + self.ttl_seconds,
            channel_id=str(channel_id) if channel_id is not None else None,
            thread_id=str(thread_id) if thread_id is not None else None,
        )
        self._intents[user_id] = intent
        logger.info(f"🎯 Intent created | User: {user_id} | Match: {match_id} | Stake: {stake} | TTL: {self.ttl_seconds}s")
        return intent

    def attach_correlation(self, user_id, token: str) -> bool:
        """Point the live intent at the newest prompt; older prompts stop working"""
        intent = self.get(user_id)
        if intent is None:
            return False
        intent.correlation_token = token
        return True

    def get(self, user_id) -> Optional[WagerIntent]:
        intent = self._intents.get(str(user_id))
        if intent is None or intent.is_expired(self.clock()):
            return None
        return intent

    def clear(self, user_id) -> Optional[WagerIntent]:
        """Remove and return the user's intent, expired or not; None if there was none"""
        intent = self._intents.pop(str(user_id), None)
        if intent is not None:
            logger.info(f"🧹 Intent cleared | User: {intent.user_id} | Match: {intent.match_id}")
        return intent

    def get_by_correlation_token(self, token: str) -> Union[WagerIntent, IntentExpired]:
        now = self.clock()
        for intent in self._intents.values():
            if intent.correlation_token == token and not intent.is_expired(now):
                return intent
        return IntentExpired(token)

    def remaining_seconds(self, user_id) -> float:
        intent = self.get(user_id)
        if intent is None:
            return 0.0
        return max(0.0, intent.expires_at - self.clock())

    def sweep_expired(self) -> int:
        now = self.clock()
        expired = [user_id for user_id, intent in self._intents.items() if intent.is_expired(now)]
        for user_id in expired:
            del self._intents[user_id]
        if expired:
            logger.debug(f"Swept {len(expired)} expired intent(s)")
        return len(expired)

    def __len__(self):
        return len(self._intents)
