"""
ledger.py - Durable local state: matches, wager records and user statistics

Three JSON files under DATA_DIR, each loaded fresh on every call and written
back whole (atomically), so all readers always see the latest data.
"""

import logging
import os
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from matchday.bot_logging import log_error
from matchday.config import BotConfig
from matchday.models import Match, Outcome, WagerRecord
from matchday.storage import load_json, save_json

logger = logging.getLogger('matchday.ledger')

DAY_SECONDS = 24 * 60 * 60


def _bet_key(user_id, match_id) -> str:
    return f"{user_id}:{int(match_id)}"


def _utc_day(timestamp: float):
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date()


def _add_decimal(current: str, amount: str) -> str:
    total = Decimal(current or "0") + Decimal(amount or "0")
    return format(total.normalize(), "f") if total else "0"


class LedgerError(Exception):
    """The ledger files could not be written"""


class Ledger:
    def __init__(self, data_dir: str = None, clock=time.time):
        self.data_dir = data_dir or BotConfig.DATA_DIR
        self.matches_file = os.path.join(self.data_dir, 'matches.json')
        self.bets_file = os.path.join(self.data_dir, 'bets.json')
        self.stats_file = os.path.join(self.data_dir, 'user_stats.json')
        self.clock = clock

    def _read(self, path: str, default):
        try:
            return load_json(path, default)
        except (OSError, ValueError) as e:
            log_error(f"ledger_read {os.path.basename(path)}", e)
            raise LedgerError(str(e)) from e

    def _write(self, path: str, data) -> None:
        try:
            save_json(path, data)
        except OSError as e:
            log_error(f"ledger_write {os.path.basename(path)}", e)
            raise LedgerError(str(e)) from e

    # Matches

    def _load_matches(self) -> Tuple[Dict[str, dict], int]:
        data = self._read(self.matches_file, {})
        return data.get("matches", {}), data.get("match_id_counter", 1)

    def _save_matches(self, matches: Dict[str, dict], counter: int) -> None:
        self._write(self.matches_file, {"matches": matches, "match_id_counter": counter})

    def list_matches(self) -> List[Match]:
        matches, _ = self._load_matches()
        return sorted((Match.from_dict(m) for m in matches.values()), key=lambda m: (m.kickoff_time, m.id))

    def add_match(self, home_team: str, away_team: str, competition: str, kickoff_time: int) -> Match:
        """Store a fixture; daily number and match code follow the kickoff's UTC date"""
        matches, counter = self._load_matches()
        day = _utc_day(kickoff_time)
        same_day = [m for m in matches.values() if _utc_day(m["kickoff_time"]) == day]
        daily_id = max([m.get("daily_id") or 0 for m in same_day], default=0) + 1

        match = Match(
            id=counter,
            home_team=home_team,
            away_team=away_team,
            competition=competition,
            kickoff_time=int(kickoff_time),
            daily_id=daily_id,
            match_code=f"{day.strftime('%Y%m%d')}-{daily_id}",
        )
        matches[str(match.id)] = match.to_dict()
        self._save_matches(matches, counter + 1)
        logger.info(f"📅 Match added | #{match.id} {match.title} | Code: {match.match_code}")
        return match

    def get_match(self, match_id: int) -> Optional[Match]:
        matches, _ = self._load_matches()
        data = matches.get(str(match_id))
        return Match.from_dict(data) if data else None

    def get_match_by_on_chain_id(self, on_chain_match_id: int) -> Optional[Match]:
        for match in self.list_matches():
            if match.on_chain_match_id == int(on_chain_match_id):
                return match
        return None

    def get_match_by_code(self, match_code: str) -> Optional[Match]:
        for match in self.list_matches():
            if match.match_code == match_code:
                return match
        return None

    def get_todays_matches(self, now: float = None) -> List[Match]:
        today = _utc_day(self.clock() if now is None else now)
        return [m for m in self.list_matches() if _utc_day(m.kickoff_time) == today]

    def get_recent_matches(self, days: int = None, now: float = None) -> List[Match]:
        """Matches that kicked off within the last `days` days"""
        days = BotConfig.RECONCILE_LOOKBACK_DAYS if days is None else days
        now = self.clock() if now is None else now
        since = now - days * DAY_SECONDS
        return [m for m in self.list_matches() if since <= m.kickoff_time <= now]

    def get_match_by_daily_id(self, daily_id: int, now: float = None) -> Optional[Match]:
        for match in self.get_todays_matches(now):
            if match.daily_id == int(daily_id):
                return match
        return None

    def find_match(self, reference: str, command: str = "", now: float = None) -> Tuple[Optional[Match], str]:
        """Resolve "2" (today's match #2) or "20260108-2"; the message explains a miss"""
        reference = (reference or "").strip().lstrip("#")
        if "-" in reference:
            match = self.get_match_by_code(reference)
            if match is None:
                return None, f"❌ Match `{reference}` not found.\n\nUse `/matches` to see available matches."
            return match, ""

        if not reference.isascii() or not reference.isdigit() or int(reference) < 1:
            return None, "❌ Invalid match number. Use `/matches` to see available matches."

        match = self.get_match_by_daily_id(int(reference), now)
        if match is None:
            today_code = f"{_utc_day(self.clock() if now is None else now).strftime('%Y%m%d')}-{reference}"
            hint = f"Try: `{command} {today_code}` for match #{reference} from another day\n\n" if command else ""
            return None, (f"❌ Match #{reference} not found for today.\n\n"
                          f"**Looking for an older match?**\n{hint}Use `/matches` to see available matches.")
        return match, ""

    def set_on_chain_match_id(self, match_id: int, on_chain_match_id: int) -> None:
        matches, counter = self._load_matches()
        if str(match_id) not in matches:
            raise LedgerError(f"Match {match_id} not found")
        matches[str(match_id)]["on_chain_match_id"] = int(on_chain_match_id)
        self._save_matches(matches, counter)

    def set_match_result(self, match_id: int, result: Optional[Outcome], status: str) -> Optional[Match]:
        matches, counter = self._load_matches()
        data = matches.get(str(match_id))
        if data is None:
            return None
        data["result"] = int(result) if result is not None else None
        data["status"] = status
        self._save_matches(matches, counter)
        return Match.from_dict(data)

    # Wager records

    def _load_bets(self) -> Dict[str, dict]:
        return self._read(self.bets_file, {})

    def get_bet(self, user_id, match_id: int) -> Optional[WagerRecord]:
        data = self._load_bets().get(_bet_key(user_id, match_id))
        return WagerRecord.from_dict(data) if data else None

    def has_bet(self, user_id, match_id: int) -> bool:
        return _bet_key(user_id, match_id) in self._load_bets()

    def get_user_bets(self, user_id) -> List[WagerRecord]:
        prefix = f"{user_id}:"
        return [WagerRecord.from_dict(b) for k, b in self._load_bets().items() if k.startswith(prefix)]

    def create_bet(self, record: WagerRecord) -> bool:
        """Insert a wager record; False (and nothing written) if one already exists"""
        bets = self._load_bets()
        key = _bet_key(record.user_id, record.match_id)
        if key in bets:
            return False
        bets[key] = record.to_dict()
        self._write(self.bets_file, bets)
        return True

    def mark_claimed(self, user_id, match_id: int) -> bool:
        """Flip claimed to true; True only if this call did the flip"""
        bets = self._load_bets()
        data = bets.get(_bet_key(user_id, match_id))
        if data is None or data.get("claimed"):
            return False
        data["claimed"] = True
        self._write(self.bets_file, bets)
        return True

    # Statistics (decimal ETH strings)

    def _load_stats(self) -> Dict[str, dict]:
        return self._read(self.stats_file, {})

    def get_stats(self, user_id) -> dict:
        return self._load_stats().get(str(user_id), {
            "total_bets": 0, "total_wagered": "0", "total_wins": 0, "total_won": "0", "profit": "0",
        })

    def record_bet(self, user_id, amount_eth: str) -> None:
        stats = self._load_stats()
        entry = stats.setdefault(str(user_id), self.get_stats(user_id))
        entry["total_bets"] += 1
        entry["total_wagered"] = _add_decimal(entry["total_wagered"], amount_eth)
        entry["updated_at"] = datetime.now().isoformat()
        self._write(self.stats_file, stats)

    def record_win(self, user_id, won_eth: str, profit_eth: str) -> None:
        stats = self._load_stats()
        entry = stats.setdefault(str(user_id), self.get_stats(user_id))
        entry["total_wins"] += 1
        entry["total_won"] = _add_decimal(entry["total_won"], won_eth)
        entry["profit"] = _add_decimal(entry["profit"], profit_eth)
        entry["updated_at"] = datetime.now().isoformat()
        self._write(self.stats_file, stats)
