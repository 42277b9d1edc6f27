"""
models.py - Data model for wagers, matches and on-chain views
"""

from dataclasses import dataclass, field, asdict
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from matchday.errors import ErrorKind


class Outcome(IntEnum):
    """Match outcome, numbered the same way as the escrow contract"""
    NONE = 0
    HOME = 1
    DRAW = 2
    AWAY = 3


class ClaimType(IntEnum):
    NONE = 0
    WINNINGS = 1  # also covers the "nobody picked the result" payout
    REFUND = 2    # cancelled match


class OnChainMatchStatus(IntEnum):
    OPEN = 0
    CLOSED = 1
    RESOLVED = 2
    CANCELLED = 3


class SettlementState(str, Enum):
    CONFIRMED = "confirmed"
    MATCH_ENSURED = "match_ensured_on_chain"
    TX_REQUESTED = "tx_requested"
    TX_SUBMITTED = "tx_submitted"
    SUCCESS = "success"
    REVERTED = "reverted"
    UNCONFIRMABLE = "unconfirmable"


TERMINAL_STATES = (SettlementState.SUCCESS, SettlementState.REVERTED, SettlementState.UNCONFIRMABLE)


@dataclass
class Match:
    id: int
    home_team: str
    away_team: str
    competition: str
    kickoff_time: int
    status: str = "SCHEDULED"
    result: Optional[Outcome] = None
    on_chain_match_id: Optional[int] = None
    daily_id: Optional[int] = None
    match_code: Optional[str] = None

    @property
    def title(self) -> str:
        return f"{self.home_team} vs {self.away_team}"

    @property
    def display_code(self) -> str:
        return self.match_code or f"#{self.daily_id or self.id}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["result"] = int(self.result) if self.result is not None else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Match":
        result = data.get("result")
        return cls(
            id=int(data["id"]),
            home_team=data["home_team"],
            away_team=data["away_team"],
            competition=data.get("competition", ""),
            kickoff_time=int(data["kickoff_time"]),
            status=data.get("status", "SCHEDULED"),
            result=Outcome(result) if result is not None else None,
            on_chain_match_id=data.get("on_chain_match_id"),
            daily_id=data.get("daily_id"),
            match_code=data.get("match_code"),
        )


@dataclass
class WagerIntent:
    """A user's unconfirmed wager, kept for a few minutes"""
    user_id: str
    match_id: int
    prediction: Outcome
    stake: str  # decimal ETH string as typed, e.g. "0.01"
    created_at: float
    expires_at: float
    correlation_token: Optional[str] = None
    channel_id: Optional[str] = None
    thread_id: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class WagerRecord:
    user_id: str
    wallet_address: str
    match_id: int
    on_chain_match_id: int
    prediction: Outcome
    stake_wei: int
    tx_hash: Optional[str] = None
    claimed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "wallet_address": self.wallet_address,
            "match_id": self.match_id,
            "on_chain_match_id": self.on_chain_match_id,
            "prediction": int(self.prediction),
            "stake_wei": str(self.stake_wei),
            "tx_hash": self.tx_hash,
            "claimed": self.claimed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WagerRecord":
        return cls(
            user_id=str(data["user_id"]),
            wallet_address=data["wallet_address"],
            match_id=int(data["match_id"]),
            on_chain_match_id=int(data["on_chain_match_id"]),
            prediction=Outcome(int(data["prediction"])),
            stake_wei=int(data["stake_wei"]),
            tx_hash=data.get("tx_hash") or None,
            claimed=bool(data.get("claimed", False)),
        )


@dataclass
class ContractBet:
    bettor: str
    amount: int
    prediction: Outcome
    claimed: bool


@dataclass
class ClaimStatus:
    can_claim: bool
    claim_type: ClaimType
    amount: int


@dataclass
class RefundEligibility:
    eligible: bool
    reason: Optional[str] = None


@dataclass
class TxReceipt:
    tx_hash: str
    success: bool
    to: Optional[str] = None
    logs: List[Any] = field(default_factory=list)
    raw: Any = None


@dataclass
class MatchCreation:
    """Outcome of creating a match on-chain: either an id or a classified error"""
    match_id: Optional[int] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.match_id is not None


@dataclass
class TransactionRequest:
    """Call the user is asked to sign in their wallet"""
    request_id: str
    title: str
    chain_id: int
    to: str
    value_wei: int
    data: str
    signer_wallet: Optional[str] = None


@dataclass
class PromptButton:
    id: str
    label: str
    style: str = "primary"  # primary | secondary | success | danger


@dataclass
class InteractivePrompt:
    request_id: str
    title: str
    content: str
    buttons: List[PromptButton]


@dataclass
class ActionResult:
    """What a settlement operation did, plus the text the user was shown"""
    success: bool
    message: str = ""
    error: Optional[ErrorKind] = None
    state: Optional[SettlementState] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str = "", state: SettlementState = None, **details) -> "ActionResult":
        return cls(True, message, None, state, details)

    @classmethod
    def fail(cls, error: ErrorKind, message: str, state: SettlementState = None, **details) -> "ActionResult":
        return cls(False, message, error, state, details)
