"""
errors.py - Failure taxonomy shared by the settlement engine

ErrorKind values travel inside result objects for expected outcomes.
GatewayError subclasses are raised by the contract gateway and the
retry helper; callers translate them into ErrorKind values.
"""

from enum import Enum


class ErrorKind(str, Enum):
    INTENT_EXPIRED_OR_MISSING = "intent_expired_or_missing"
    ALREADY_PENDING = "already_pending"
    MATCH_UNAVAILABLE = "match_unavailable"
    BETTING_CLOSED = "betting_closed"
    ALREADY_BET = "already_bet"
    INVALID_STAKE = "invalid_stake"
    INVALID_PREDICTION = "invalid_prediction"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    CONTRACT_UNAVAILABLE = "contract_unavailable"
    WALLET_UNAVAILABLE = "wallet_unavailable"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    RPC_TIMEOUT = "rpc_timeout"
    INSUFFICIENT_GAS = "insufficient_gas"
    NOT_AUTHORIZED_MANAGER = "not_authorized_manager"
    NONCE_CONFLICT = "nonce_conflict"
    NO_BET = "no_bet"
    ALREADY_CLAIMED = "already_claimed"
    NOT_YET_CLAIMABLE = "not_yet_claimable"
    LOST = "lost"
    WRONG_CLAIM_TYPE = "wrong_claim_type"
    NOT_ELIGIBLE = "not_eligible"
    INVALID_CORRELATION_TOKEN = "invalid_correlation_token"
    NOT_RECIPIENT = "not_recipient"
    FOREIGN_TRANSACTION = "foreign_transaction"
    TRANSACTION_REJECTED = "transaction_rejected"
    TRANSACTION_REVERTED = "transaction_reverted"
    TRANSACTION_UNCONFIRMABLE = "transaction_unconfirmable"
    INTERNAL = "internal"


class GatewayError(Exception):
    """Base class for failures talking to the chain"""

    kind = ErrorKind.GATEWAY_UNAVAILABLE

    def __init__(self, message: str = "", cause: Exception = None):
        super().__init__(message or self.__class__.__name__)
        self.cause = cause


class GatewayUnavailable(GatewayError):
    kind = ErrorKind.GATEWAY_UNAVAILABLE


class RpcTimeout(GatewayError):
    kind = ErrorKind.RPC_TIMEOUT


class InsufficientGas(GatewayError):
    kind = ErrorKind.INSUFFICIENT_GAS


class NotAuthorizedManager(GatewayError):
    kind = ErrorKind.NOT_AUTHORIZED_MANAGER


class NonceConflict(GatewayError):
    kind = ErrorKind.NONCE_CONFLICT


# Errors worth retrying before a transaction has been broadcast
TRANSIENT_GATEWAY_ERRORS = (GatewayUnavailable, NonceConflict)


def classify_gateway_error(error: Exception) -> GatewayError:
    """Map a raw web3/aiohttp/RPC exception onto the gateway taxonomy"""
    if isinstance(error, GatewayError):
        return error

    message = str(error).lower()
    name = type(error).__name__

    if "insufficient funds" in message or "gas required exceeds" in message or "out of gas" in message:
        return InsufficientGas(str(error), error)
    if "notmatchmanager" in message or "not match manager" in message or "not authorized" in message \
            or "ownable: caller is not" in message:
        return NotAuthorizedManager(str(error), error)
    if "nonce too low" in message or "replacement transaction underpriced" in message \
            or "already known" in message or "nonce" in message and "expected" in message:
        return NonceConflict(str(error), error)
    if name in ("TimeExhausted", "TimeoutError", "ServerTimeoutError") or "timed out" in message \
            or "timeout" in message or "deadline" in message:
        return RpcTimeout(str(error), error)
    return GatewayUnavailable(str(error), error)
