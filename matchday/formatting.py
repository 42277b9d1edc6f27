from decimal import Decimal, InvalidOperation
import time
from typing import Optional

from matchday.config import BotConfig
from matchday.models import Outcome

WEI_PER_ETH = 10 ** 18

OUTCOME_NAMES = {
    Outcome.NONE: "None",
    Outcome.HOME: "Home",
    Outcome.DRAW: "Draw",
    Outcome.AWAY: "Away",
}

_OUTCOME_ALIASES = {
    "home": Outcome.HOME, "h": Outcome.HOME, "1": Outcome.HOME,
    "draw": Outcome.DRAW, "d": Outcome.DRAW, "x": Outcome.DRAW,
    "away": Outcome.AWAY, "a": Outcome.AWAY, "2": Outcome.AWAY,
}


def parse_eth(amount_str: str) -> int:
    """Parse a decimal ETH string ("0.01") into wei; raises ValueError on junk"""
    try:
        amount = Decimal(str(amount_str).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {amount_str!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {amount_str!r}")
    wei = amount * WEI_PER_ETH
    if wei != wei.to_integral_value():
        raise ValueError(f"Too many decimal places: {amount_str!r}")
    return int(wei)


def wei_to_eth_str(wei: int) -> str:
    """Exact decimal ETH string for a wei amount (no rounding)"""
    value = (Decimal(int(wei)) / WEI_PER_ETH).normalize()
    text = format(value, "f")
    return text if text != "-0" else "0"


def format_eth(wei) -> str:
    """Short display form: up to 4 decimals, trailing zeros removed"""
    wei = int(wei)
    if wei == 0:
        return "0"
    value = Decimal(wei) / WEI_PER_ETH
    if abs(value) < Decimal("0.0001"):
        return "<0.0001"
    formatted = f"{value:.4f}".rstrip('0').rstrip('.')
    return formatted or "0"


def parse_outcome(text: str) -> Optional[Outcome]:
    return _OUTCOME_ALIASES.get((text or "").strip().lower())


def format_outcome(outcome) -> str:
    if outcome is None:
        return "Unknown"
    return OUTCOME_NAMES.get(Outcome(int(outcome)), "Unknown")


def truncate_address(address: str) -> str:
    if not address or len(address) <= 12:
        return address or ""
    return f"{address[:6]}...{address[-4:]}"


def tx_link(tx_hash: str) -> str:
    return f"{BotConfig.EXPLORER_TX_URL}{tx_hash}"


def is_betting_open(kickoff_time: int, now: float = None) -> bool:
    now = time.time() if now is None else now
    return now < kickoff_time


def format_remaining(seconds: float) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60}m {seconds % 60}s"
