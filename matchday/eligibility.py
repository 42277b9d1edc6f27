"""
eligibility.py - Decide whether a wallet can claim against a match, and how

The contract's getClaimStatus view distinguishes three payable cases:
  - the wallet picked the result                      -> WINNINGS, stake + share of losing pools
  - the match was cancelled                           -> REFUND, stake
  - the match resolved but nobody picked the result   -> WINNINGS, stake
The last one pays back the stake but must still be claimed through
claimWinnings, so it is reported as a winnings claim and never as a refund.

Reads are not retried here; a GatewayError goes straight back to the caller.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from matchday.errors import ErrorKind
from matchday.formatting import format_eth, format_outcome, truncate_address
from matchday.models import ClaimStatus, ClaimType, ContractBet, Match, WagerRecord

logger = logging.getLogger('matchday.eligibility')


@dataclass
class EligibilityResult:
    claim_type: ClaimType
    message: str = ""
    error: Optional[ErrorKind] = None
    wallet: Optional[str] = None
    amount: int = 0
    stake: int = 0
    record: Optional[WagerRecord] = None
    on_chain_bet: Optional[ContractBet] = None
    claim_status: Optional[ClaimStatus] = None
    is_primary_wallet: bool = True

    @property
    def can_claim(self) -> bool:
        return self.error is None and self.claim_type != ClaimType.NONE

    @property
    def profit(self) -> int:
        return max(0, self.amount - self.stake)

    @property
    def is_no_winners_payout(self) -> bool:
        """Winnings claim that only returns the stake because nobody picked the result"""
        if self.claim_type != ClaimType.WINNINGS or self.record is None:
            return False
        return self.profit == 0


def _refused(error: ErrorKind, message: str, **kwargs) -> EligibilityResult:
    return EligibilityResult(ClaimType.NONE, message=message, error=error, **kwargs)


class EligibilityResolver:
    def __init__(self, gateway, ledger, wallets):
        self.gateway = gateway
        self.ledger = ledger
        self.wallets = wallets

    async def _claim_wallet(self, user_id, record: Optional[WagerRecord]):
        primary = await self.wallets.resolve_primary_wallet(user_id)
        wallet = (record.wallet_address if record else None) or primary
        is_primary = bool(primary and wallet and wallet.lower() == primary.lower())
        return wallet, is_primary

    def _sync_claimed(self, user_id, match: Match, record: Optional[WagerRecord], on_chain_claimed: bool) -> None:
        """Bring the local claimed flag in line with the chain when they disagree"""
        if record is None:
            return
        if on_chain_claimed and not record.claimed:
            if self.ledger.mark_claimed(user_id, match.id):
                logger.info(f"🔄 Synced claimed flag from chain | User: {user_id} | Match: {match.id}")
        elif record.claimed and not on_chain_claimed:
            logger.error(f"💥 LEDGER MISMATCH | User: {user_id} | Match: {match.id} | "
                         f"claimed locally but not on-chain")

    async def resolve_claim(self, user_id, match: Match) -> EligibilityResult:
        """Eligibility for /claim (claimWinnings)"""
        if match.on_chain_match_id is None:
            return _refused(ErrorKind.NOT_YET_CLAIMABLE,
                            "❌ This match hasn't been created on-chain yet. No bets have been placed.")

        if match.result is None:
            return _refused(ErrorKind.NOT_YET_CLAIMABLE,
                            f"⏳ Match hasn't been resolved yet.\n\n**{match.title}**\nStatus: {match.status}\n\n"
                            f"You can claim once the match is finished and resolved.")

        record = self.ledger.get_bet(user_id, match.id)
        if record is None:
            return _refused(ErrorKind.NO_BET,
                            f"❌ You didn't place a bet on this match.\n\n**{match.title}**\n\n"
                            f"If you bet from another wallet, run `/verify` to sync your bets.")

        wallet, is_primary = await self._claim_wallet(user_id, record)
        if not wallet:
            return _refused(ErrorKind.WALLET_UNAVAILABLE,
                            "❌ Couldn't find your wallet address. Link one with `/link_wallet` and try again.")

        on_chain_bet = await self.gateway.get_user_bet(match.on_chain_match_id, wallet)
        self._sync_claimed(user_id, match, record, bool(on_chain_bet and on_chain_bet.claimed))
        if on_chain_bet and on_chain_bet.claimed:
            return _refused(ErrorKind.ALREADY_CLAIMED,
                            f"✅ You've already claimed winnings for this match on-chain.\n\n**{match.title}**\n\n"
                            f"Use `/mybets` to see your total winnings.",
                            wallet=wallet, record=record, on_chain_bet=on_chain_bet)
        if record.claimed:
            return _refused(ErrorKind.ALREADY_CLAIMED,
                            f"⚠️ My records show this payout was already claimed, but the contract doesn't agree.\n\n"
                            f"**{match.title}**\n\nPlease contact support before trying again.",
                            wallet=wallet, record=record, on_chain_bet=on_chain_bet)

        status = await self.gateway.get_claim_status(match.on_chain_match_id, wallet)
        if not status.can_claim:
            if record.prediction != match.result:
                return _refused(ErrorKind.LOST,
                                f"😔 You lost this match.\n\n**{match.title}**\n"
                                f"Your Prediction: {format_outcome(record.prediction)}\n"
                                f"Result: {format_outcome(match.result)}\n\nBetter luck next time!",
                                wallet=wallet, record=record, on_chain_bet=on_chain_bet, claim_status=status)
            return _refused(ErrorKind.NOT_ELIGIBLE,
                            "❌ Unable to claim winnings for this match. Reason: Not eligible.\n\n"
                            "Please contact support if you think this is wrong.",
                            wallet=wallet, record=record, on_chain_bet=on_chain_bet, claim_status=status)

        if status.claim_type != ClaimType.WINNINGS:
            return _refused(ErrorKind.WRONG_CLAIM_TYPE,
                            f"❌ This match requires a refund claim, not a winnings claim.\n\n"
                            f"Use `/claim_refund {match.match_code or match.id}` instead.",
                            wallet=wallet, record=record, on_chain_bet=on_chain_bet, claim_status=status)

        if on_chain_bet is None:
            return _refused(ErrorKind.NO_BET,
                            f"❌ Couldn't find your bet on-chain. Please contact support.\n\n"
                            f"Wallet: {truncate_address(wallet)}",
                            wallet=wallet, record=record, claim_status=status)

        if status.amount == 0:
            return _refused(ErrorKind.NOT_ELIGIBLE,
                            f"⚠️ Winnings calculation returned 0 ETH. This might be a pool issue. "
                            f"Please contact support.\n\n**{match.title}**",
                            wallet=wallet, record=record, on_chain_bet=on_chain_bet, claim_status=status)

        result = EligibilityResult(
            ClaimType.WINNINGS, wallet=wallet, amount=status.amount, stake=on_chain_bet.amount,
            record=record, on_chain_bet=on_chain_bet, claim_status=status, is_primary_wallet=is_primary,
        )
        result.message = self._winnings_message(match, result)
        return result

    def _winnings_message(self, match: Match, result: EligibilityResult) -> str:
        if result.is_no_winners_payout and result.record.prediction != match.result:
            message = (f"💰 **Claim Winnings (Stake Returned)**\n\n**Match:** {match.title}\n"
                       f"**Your Prediction:** {format_outcome(result.record.prediction)}\n"
                       f"**Actual Result:** {format_outcome(match.result)}\n"
                       f"**Stake:** {format_eth(result.stake)} ETH\n"
                       f"**Refund Amount:** {format_eth(result.amount)} ETH\n\n"
                       f"ℹ️ **No one predicted the correct outcome.** Everyone gets a full refund of their stake, "
                       f"paid out as a winnings claim.\n\nReady to claim?")
        else:
            message = (f"💰 **Claim Your Winnings**\n\n**Match:** {match.title}\n"
                       f"**Your Prediction:** {format_outcome(result.record.prediction)} ✅\n"
                       f"**Stake:** {format_eth(result.stake)} ETH\n"
                       f"**Payout:** {format_eth(result.amount)} ETH\n"
                       f"**Profit:** {format_eth(result.profit)} ETH\n\nReady to claim your winnings?")
        return message + self._wallet_guidance(result)

    @staticmethod
    def _wallet_guidance(result: EligibilityResult) -> str:
        which = "your **primary wallet**" if result.is_primary_wallet else \
            f"your **linked wallet** ({truncate_address(result.wallet)})"
        return f"\n\n📝 **Important:** You placed this bet with {which}. Please sign the transaction with the same wallet."

    async def resolve_refund(self, user_id, match: Match) -> EligibilityResult:
        """Eligibility for /claim_refund (claimRefund on a cancelled match)"""
        if match.on_chain_match_id is None:
            return _refused(ErrorKind.NOT_YET_CLAIMABLE,
                            "❌ This match hasn't been created on-chain yet. No bets have been placed.")

        record = self.ledger.get_bet(user_id, match.id)
        wallet, is_primary = await self._claim_wallet(user_id, record)
        if not wallet:
            return _refused(ErrorKind.WALLET_UNAVAILABLE,
                            "❌ Couldn't find your wallet address. Link one with `/link_wallet` and try again.")

        eligibility = await self.gateway.is_refund_eligible(match.on_chain_match_id, wallet)
        if not eligibility.eligible:
            return self._refund_refusal(user_id, match, record, wallet, eligibility.reason)

        on_chain_bet = await self.gateway.get_user_bet(match.on_chain_match_id, wallet)
        if on_chain_bet is None:
            return _refused(ErrorKind.NO_BET,
                            f"❌ Couldn't find your bet on-chain. Please contact support.\n\n"
                            f"Wallet: {truncate_address(wallet)}",
                            wallet=wallet, record=record)

        result = EligibilityResult(
            ClaimType.REFUND, wallet=wallet, amount=on_chain_bet.amount, stake=on_chain_bet.amount,
            record=record, on_chain_bet=on_chain_bet, is_primary_wallet=is_primary,
        )
        reason_text = "This match was cancelled. You can claim a full refund of your stake." \
            if eligibility.reason == "Match cancelled" else "You can claim a full refund of your stake."
        result.message = (f"💸 **Claim Your Refund**\n\n**Match:** {match.title}\n"
                          f"**Status:** {'CANCELLED ❌' if eligibility.reason == 'Match cancelled' else match.status}\n"
                          f"**Your Stake:** {format_eth(on_chain_bet.amount)} ETH\n"
                          f"**Refund Amount:** {format_eth(on_chain_bet.amount)} ETH\n\n"
                          f"{reason_text}\n\nReady to claim your refund?") + self._wallet_guidance(result)
        return result

    def _refund_refusal(self, user_id, match: Match, record, wallet: str, reason: Optional[str]) -> EligibilityResult:
        header = f"❌ **Not Eligible for Refund**\n\n**Match ({match.display_code}):** {match.title}\n" \
                 f"**Status:** {match.status}\n\n"
        reason = reason or ""

        if "Use /claim" in reason:
            return _refused(ErrorKind.WRONG_CLAIM_TYPE, header + reason, wallet=wallet, record=record)
        if reason == "Already claimed":
            self._sync_claimed(user_id, match, record, True)
            return _refused(ErrorKind.ALREADY_CLAIMED, header + "You've already claimed your refund for this match.",
                            wallet=wallet, record=record)
        if reason == "No bet found":
            return _refused(ErrorKind.NO_BET, header + "You didn't place a bet on this match.",
                            wallet=wallet, record=record)
        if reason == "Match resolved - you lost":
            return _refused(ErrorKind.LOST, header + "This match has been resolved and you didn't win. "
                            "Only cancelled matches are eligible for refunds via this command.",
                            wallet=wallet, record=record)
        return _refused(ErrorKind.NOT_ELIGIBLE, header + (f"Reason: {reason}" if reason else "Reason: Not eligible"),
                        wallet=wallet, record=record)
