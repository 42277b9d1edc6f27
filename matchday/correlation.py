"""
correlation.py - Routing metadata packed into chat-visible request ids

A token looks like ``{kind}-{matchId}-{userPrefix}-{suffix}`` where suffix is
either a thread id or ``t`` followed by a millisecond timestamp. The chat
transport hands the token back untouched with every button click or signed
transaction, so no session store is needed between prompt and response.

The user prefix is only there to make logs readable. It is not unique and
must never be used to decide who may act on a token.
"""

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

SEPARATOR = "-"
USER_PREFIX_LENGTH = 8
MIN_SEGMENTS = 4
NO_THREAD = "none"

# ASCII only: str.isdigit() also accepts superscripts that int() rejects
_DIGITS = re.compile(r"[0-9]+")


class InteractionKind(str, Enum):
    WAGER = "bet"
    CLAIM = "claim"
    CLAIM_REFUND = "claim_refund"
    REFUND = "refund"


class ButtonAction(str, Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"
    CLAIM_CONFIRM = "claim_confirm"
    CLAIM_CANCEL = "claim_cancel"
    REFUND_CONFIRM = "refund_confirm"
    REFUND_CANCEL = "refund_cancel"


# (kind, clicked button) -> action; anything else is not a valid click
_ACTIONS = {
    (InteractionKind.WAGER, "confirm"): ButtonAction.CONFIRM,
    (InteractionKind.WAGER, "cancel"): ButtonAction.CANCEL,
    (InteractionKind.CLAIM, "confirm"): ButtonAction.CLAIM_CONFIRM,
    (InteractionKind.CLAIM, "cancel"): ButtonAction.CLAIM_CANCEL,
    (InteractionKind.CLAIM_REFUND, "confirm"): ButtonAction.REFUND_CONFIRM,
    (InteractionKind.CLAIM_REFUND, "cancel"): ButtonAction.REFUND_CANCEL,
    (InteractionKind.REFUND, "confirm"): ButtonAction.REFUND_CONFIRM,
    (InteractionKind.REFUND, "cancel"): ButtonAction.REFUND_CANCEL,
}


@dataclass(frozen=True)
class CorrelationMetadata:
    kind: InteractionKind
    match_id: int
    user_prefix: str
    suffix: str

    @property
    def thread_id(self) -> Optional[str]:
        if self.suffix == NO_THREAD or self.timestamp is not None:
            return None
        return self.suffix

    @property
    def timestamp(self) -> Optional[int]:
        if self.suffix.startswith("t") and _DIGITS.fullmatch(self.suffix[1:]):
            return int(self.suffix[1:])
        return None


def _clean(segment: str) -> str:
    return str(segment).replace(SEPARATOR, "").replace(":", "")


def encode(kind: InteractionKind, match_id: int, user_id: str, thread_id: Optional[str] = None,
           now: float = None) -> str:
    """Build a token for a prompt or a transaction request"""
    kind = InteractionKind(kind)
    user_prefix = _clean(user_id)[:USER_PREFIX_LENGTH] or "anon"
    if thread_id:
        suffix = _clean(thread_id)
    else:
        now = time.time() if now is None else now
        suffix = f"t{int(now * 1000)}"
    return SEPARATOR.join([kind.value, str(int(match_id)), user_prefix, suffix])


def decode(token) -> Optional[CorrelationMetadata]:
    """Parse a token; anything malformed yields None, never an exception"""
    if not isinstance(token, str):
        return None
    parts = token.split(SEPARATOR)
    if len(parts) < MIN_SEGMENTS:
        return None

    try:
        kind = InteractionKind(parts[0])
    except ValueError:
        return None

    match_segment = parts[1]
    if not _DIGITS.fullmatch(match_segment):
        return None

    user_prefix, suffix = parts[2], parts[3]
    if not user_prefix or not suffix:
        return None
    return CorrelationMetadata(kind, int(match_segment), user_prefix, suffix)


def classify(token) -> Optional[InteractionKind]:
    """Which flow a token belongs to, judged by its prefix alone"""
    if not isinstance(token, str):
        return None
    for kind in InteractionKind:
        if token.startswith(kind.value + SEPARATOR):
            return kind
    return None


def needs_intent(kind: InteractionKind) -> bool:
    """Only wager tokens are backed by an entry in the intent register"""
    return kind == InteractionKind.WAGER


def resolve_action(kind: InteractionKind, button_id: str) -> Optional[ButtonAction]:
    return _ACTIONS.get((kind, (button_id or "").strip().lower()))
