"""
settlement.py - Drives wagers, claims and refunds from confirmation to the ledger

Every operation here is called by the chat layer and returns an ActionResult
whose message is what the user should read next. Progress notes that arrive
while a handler is still working (match created, transaction submitted),
prompts and transaction requests go out through the chat transport.

Wager:  Confirmed -> MatchEnsuredOnChain -> TxRequested -> TxSubmitted -> Success | Reverted | Unconfirmable
Claim:  TxRequested -> TxSubmitted -> Success | Reverted | Unconfirmable

Nothing is created or marked claimed until a receipt reports success.
"""

import asyncio
import functools
import logging
import re
import time
from typing import Callable, Optional

from matchday import correlation
from matchday.bot_logging import log_bet_action, log_error, log_transaction
from matchday.config import BotConfig, is_contract_available
from matchday.correlation import ButtonAction, InteractionKind
from matchday.eligibility import EligibilityResolver
from matchday.errors import ErrorKind, GatewayError
from matchday.formatting import (
    format_eth, format_outcome, format_remaining, is_betting_open, parse_eth, parse_outcome, truncate_address,
    tx_link, wei_to_eth_str,
)
from matchday.intents import AlreadyPending, IntentExpired, IntentRegister
from matchday.ledger import LedgerError
from matchday.models import (
    ActionResult, Match, PromptButton, InteractivePrompt, SettlementState, TransactionRequest, TxReceipt,
    WagerIntent, WagerRecord,
)
from matchday.reconciliation import ReconciliationEngine
from matchday.retry import retry_with_backoff

logger = logging.getLogger('matchday.settlement')

TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

GENERIC_ERROR = "❌ Something went wrong while processing your request. Please try again or contact support."
EXPIRED_MESSAGE = "❌ Bet expired or already processed. Please place a new bet with `/bet`."
NETWORK_ERROR = "❌ Network error while talking to the chain. Please try again in a few moments."
CONTRACT_MISSING = "❌ Smart contract is not yet deployed. Please try again once the contract is live."
NOTHING_TO_CANCEL = "ℹ️ Nothing to cancel. That bet was already processed or has expired."

# What the user should do when createMatch fails; the pending bet is kept in every case
MATCH_CREATION_REMEDIES = {
    ErrorKind.INSUFFICIENT_GAS: "**What to do:**\n1. Admin needs to fund the bot's operator wallet\n"
                                "2. Your pending bet is saved\n3. Try clicking \"Confirm & Sign\" again in a few minutes",
    ErrorKind.NOT_AUTHORIZED_MANAGER: "**What to do:**\n1. Admin needs to register the bot as match manager\n"
                                      "2. Your pending bet is saved\n3. Try clicking \"Confirm & Sign\" again after fixing",
    ErrorKind.NONCE_CONFLICT: "**What to do:**\nJust wait a few seconds and click \"Confirm & Sign\" again.",
    ErrorKind.RPC_TIMEOUT: "**What to do:**\nThe network is busy. Wait a moment and click \"Confirm & Sign\" again.",
}
DEFAULT_REMEDY = "**What to do:**\n1. Your pending bet is saved\n2. Try again or contact support"

REVERTED_CLAIM_CAUSES = ("**Common causes:**\n"
                         "• The transaction was signed with a different wallet than the one that placed the bet\n"
                         "• The payout was already claimed\n"
                         "• The match is not resolved on-chain yet\n\n"
                         "Nothing was changed. Check the transaction on the explorer and try again.")


def _reply_on_error(operation: str):
    """Entry points never raise: unexpected failures become a generic reply"""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except Exception as e:
                logger.exception(f"Unhandled error in {operation}")
                log_error(operation, e)
                return ActionResult.fail(ErrorKind.INTERNAL, GENERIC_ERROR)

        return wrapper

    return decorator


class SettlementOrchestrator:
    def __init__(self, gateway, ledger, wallets, transport, intents: IntentRegister = None,
                 clock: Callable[[], float] = time.time, sleep=asyncio.sleep, contract_available=None):
        self.gateway = gateway
        self.ledger = ledger
        self.wallets = wallets
        self.transport = transport
        self.clock = clock
        self.sleep = sleep
        self.intents = intents or IntentRegister(clock=clock)
        self.eligibility = EligibilityResolver(gateway, ledger, wallets)
        self.reconciler = ReconciliationEngine(gateway, ledger, wallets, clock=clock)
        self._contract_available = contract_available or is_contract_available
        self._confirming = set()

    def _transition(self, user_id, match_id, state: SettlementState, **details):
        log_bet_action(user_id, f"STATE_{state.name}", match_id, **details)

    async def _send_with_retry(self, coro_factory):
        return await retry_with_backoff(coro_factory, sleep=self.sleep)

    async def _notify(self, channel_id, text: str, thread_id=None):
        """Best-effort progress note; a failed note never changes the outcome"""
        try:
            await self.transport.send_message(channel_id, text, thread_id=thread_id)
        except Exception as e:
            log_error("settlement_notify", e)

    # Wager intent

    @_reply_on_error("place_wager_intent")
    async def place_wager_intent(self, user_id, match_ref: str, prediction: str, stake: str,
                                 channel_id=None, thread_id=None) -> ActionResult:
        user_id = str(user_id)
        if not self._contract_available():
            return ActionResult.fail(ErrorKind.CONTRACT_UNAVAILABLE, CONTRACT_MISSING)

        outcome = parse_outcome(prediction)
        if outcome is None:
            return ActionResult.fail(ErrorKind.INVALID_PREDICTION,
                                     "❌ Invalid prediction. Use `home`, `draw` or `away` (or `1`, `x`, `2`).")

        try:
            stake_wei = parse_eth(stake)
        except ValueError:
            return ActionResult.fail(ErrorKind.INVALID_STAKE, "❌ Invalid amount. Example: `/bet 1 home 0.01`")
        min_wei, max_wei = parse_eth(BotConfig.MIN_STAKE), parse_eth(BotConfig.MAX_STAKE)
        if stake_wei <= 0 or stake_wei < min_wei or stake_wei > max_wei:
            return ActionResult.fail(ErrorKind.INVALID_STAKE,
                                     f"❌ Stake must be between {BotConfig.MIN_STAKE} and {BotConfig.MAX_STAKE} ETH.")

        match, lookup_error = self.ledger.find_match(match_ref, "/bet", now=self.clock())
        if match is None:
            return ActionResult.fail(ErrorKind.MATCH_UNAVAILABLE, lookup_error)
        if not is_betting_open(match.kickoff_time, self.clock()):
            return ActionResult.fail(ErrorKind.BETTING_CLOSED, "❌ Betting is closed for this match (kickoff has passed).")
        if self.ledger.has_bet(user_id, match.id):
            return ActionResult.fail(ErrorKind.ALREADY_BET,
                                     f"❌ You already have a bet on **{match.title}**. One bet per match.")

        try:
            intent = self.intents.create(user_id, match.id, outcome, stake, channel_id=channel_id, thread_id=thread_id)
        except AlreadyPending as e:
            remaining = format_remaining(self.intents.remaining_seconds(user_id))
            return ActionResult.fail(ErrorKind.ALREADY_PENDING,
                                     f"⚠️ You already have a pending bet (expires in {remaining}).\n\n"
                                     f"Confirm it or use `/cancel` first.", match_id=e.intent.match_id)

        token = correlation.encode(InteractionKind.WAGER, match.id, user_id, thread_id, now=self.clock())
        self.intents.attach_correlation(user_id, token)
        prompt = InteractivePrompt(
            request_id=token,
            title="Confirm Bet",
            content=(f"🎯 **Confirm Your Bet**\n\n**Match:** {match.title} ({match.display_code})\n"
                     f"**Prediction:** {format_outcome(outcome)}\n**Stake:** {stake} ETH\n\n"
                     f"_This pending bet expires in {format_remaining(intent.expires_at - intent.created_at)}._"),
            buttons=[PromptButton("confirm", "Confirm & Sign", "success"), PromptButton("cancel", "Cancel", "secondary")],
        )
        try:
            await self._send_with_retry(
                lambda: self.transport.send_interactive_prompt(channel_id, prompt, user_id, thread_id=thread_id))
        except Exception as e:
            self.intents.clear(user_id)
            log_error("send_bet_prompt", e, user_id)
            return ActionResult.fail(ErrorKind.INTERNAL, "❌ Couldn't send the confirmation prompt. Please try `/bet` again.")

        log_bet_action(user_id, "INTENT_CREATED", match.id, prediction=outcome.name, stake=stake, token=token)
        return ActionResult.ok("✅ Check the confirmation prompt to sign your bet.", token=token, match_id=match.id)

    @_reply_on_error("cancel_intent")
    async def cancel_intent(self, user_id, token: str = None) -> ActionResult:
        """Clear the user's pending bet; with a token, only if it still belongs to that prompt"""
        user_id = str(user_id)
        if token is not None:
            found = self.intents.get_by_correlation_token(token)
            if isinstance(found, IntentExpired):
                return ActionResult.ok(NOTHING_TO_CANCEL, already_processed=True)
            if found.user_id != user_id:
                return ActionResult.fail(ErrorKind.NOT_RECIPIENT, "❌ This bet belongs to someone else.")

        intent = self.intents.clear(user_id)
        if intent is None:
            return ActionResult.ok(NOTHING_TO_CANCEL, already_processed=True)
        log_bet_action(user_id, "INTENT_CANCELLED", intent.match_id)
        return ActionResult.ok("❌ Bet cancelled.", already_processed=False, match_id=intent.match_id)

    @_reply_on_error("describe_pending")
    async def describe_pending(self, user_id) -> ActionResult:
        intent = self.intents.get(user_id)
        if intent is None:
            return ActionResult.ok("📭 You have no pending bet.", pending=False)
        match = self.ledger.get_match(intent.match_id)
        title = match.title if match else f"Match {intent.match_id}"
        remaining = format_remaining(self.intents.remaining_seconds(user_id))
        return ActionResult.ok(f"⏳ **Pending Bet**\n\n**Match:** {title}\n**Prediction:** "
                               f"{format_outcome(intent.prediction)}\n**Stake:** {intent.stake} ETH\n"
                               f"**Expires in:** {remaining}\n\nUse `/cancel` to cancel it.", pending=True)

    @_reply_on_error("confirm_intent")
    async def confirm_intent(self, token: str, user_id, channel_id=None) -> ActionResult:
        user_id = str(user_id)
        if correlation.decode(token) is None:
            return ActionResult.fail(ErrorKind.INVALID_CORRELATION_TOKEN, "❌ Invalid request. Please start again with `/bet`.")

        intent = self.intents.get_by_correlation_token(token)
        if isinstance(intent, IntentExpired):
            return ActionResult.fail(ErrorKind.INTENT_EXPIRED_OR_MISSING, EXPIRED_MESSAGE)
        if intent.user_id != user_id:
            return ActionResult.fail(ErrorKind.NOT_RECIPIENT, "❌ This bet belongs to someone else.")
        if user_id in self._confirming:
            return ActionResult.fail(ErrorKind.ALREADY_PENDING, "⏳ Your bet is already being processed.")

        self._confirming.add(user_id)
        try:
            return await self._confirm(intent, channel_id or intent.channel_id)
        finally:
            self._confirming.discard(user_id)

    async def _confirm(self, intent: WagerIntent, channel_id) -> ActionResult:
        user_id, thread_id = intent.user_id, intent.thread_id
        self._transition(user_id, intent.match_id, SettlementState.CONFIRMED)

        match = self.ledger.get_match(intent.match_id)
        if match is None:
            self.intents.clear(user_id)
            return ActionResult.fail(ErrorKind.MATCH_UNAVAILABLE, "❌ Match no longer available.")
        if not is_betting_open(match.kickoff_time, self.clock()):
            self.intents.clear(user_id)
            return ActionResult.fail(ErrorKind.BETTING_CLOSED, "❌ Betting is now closed for this match.")
        if not self._contract_available():
            self.intents.clear(user_id)
            return ActionResult.fail(ErrorKind.CONTRACT_UNAVAILABLE, CONTRACT_MISSING)

        stake_wei = parse_eth(intent.stake)
        signer, balance_failure = await self._select_funded_wallet(user_id, stake_wei)
        if balance_failure is not None:
            return balance_failure

        ensured = await self._ensure_on_chain(match, user_id, channel_id, thread_id)
        if isinstance(ensured, ActionResult):
            return ensured
        match = ensured

        request = TransactionRequest(
            request_id=correlation.encode(InteractionKind.WAGER, match.id, user_id, thread_id, now=self.clock()),
            title=f"Bet on {match.title}",
            chain_id=BotConfig.CHAIN_ID,
            to=self.gateway.contract_address,
            value_wei=stake_wei,
            data=self.gateway.encode_wager(match.on_chain_match_id, intent.prediction),
            signer_wallet=signer,
        )
        try:
            await self._send_with_retry(
                lambda: self.transport.send_transaction_request(channel_id, request, user_id, thread_id=thread_id))
        except Exception as e:
            log_error("send_bet_transaction", e, user_id)
            return ActionResult.fail(ErrorKind.INTERNAL, "❌ Failed to send the transaction request. "
                                     "Your pending bet is saved; click \"Confirm & Sign\" again.",
                                     state=SettlementState.MATCH_ENSURED)

        # only a delivered request retires the prompt's token
        self.intents.attach_correlation(user_id, request.request_id)
        self._transition(user_id, match.id, SettlementState.TX_REQUESTED, on_chain_match_id=match.on_chain_match_id,
                         signer=signer)
        return ActionResult.ok("✅ **Transaction Request Sent!**\n\nPlease sign the transaction in your wallet.\n\n"
                               "_I'll confirm once the transaction is mined._",
                               state=SettlementState.TX_REQUESTED, request_id=request.request_id, signer=signer)

    async def _select_funded_wallet(self, user_id, stake_wei: int):
        """First linked wallet whose balance covers stake plus gas headroom"""
        wallets = await self.wallets.resolve_linked_wallets(user_id)
        if not wallets:
            return None, ActionResult.fail(ErrorKind.WALLET_UNAVAILABLE,
                                           "❌ You have no wallet linked. Use `/link_wallet <address>` first.\n\n"
                                           "_Your pending bet is saved._")
        try:
            balances = await asyncio.gather(*[self.gateway.get_balance(w) for w in wallets])
        except GatewayError as e:
            return None, ActionResult.fail(e.kind, NETWORK_ERROR + "\n\n_Your pending bet is saved._")

        required = stake_wei + parse_eth(BotConfig.GAS_BUFFER_ETH)
        for wallet, balance in zip(wallets, balances):
            if balance >= required:
                logger.info(f"✅ Selected wallet {truncate_address(wallet)} for user {user_id} "
                            f"(balance: {format_eth(balance)} ETH)")
                return wallet, None

        lines = "\n".join(f"• {truncate_address(w)}: {format_eth(b)} ETH ❌" for w, b in zip(wallets, balances))
        message = (f"❌ **Insufficient Balance**\n\n**Required:** {wei_to_eth_str(required)} ETH\n"
                   f"• Bet: {wei_to_eth_str(stake_wei)} ETH\n• Gas (estimate): ~{BotConfig.GAS_BUFFER_ETH} ETH\n\n"
                   f"**Your wallets:**\n{lines}\n\n**What to do:**\nAdd funds to one of your wallets and click "
                   f"\"Confirm & Sign\" again.\n\n_Your pending bet is saved. Use `/cancel` to cancel._")
        return None, ActionResult.fail(ErrorKind.INSUFFICIENT_BALANCE, message)

    async def _ensure_on_chain(self, match: Match, user_id, channel_id, thread_id):
        """Returns the match with an on-chain id, or an ActionResult explaining why not"""
        if match.on_chain_match_id is not None:
            self._transition(user_id, match.id, SettlementState.MATCH_ENSURED, on_chain_match_id=match.on_chain_match_id)
            return match

        created = await self.gateway.create_match(match.home_team, match.away_team, match.competition,
                                                  match.kickoff_time)
        if not created.ok:
            remedy = MATCH_CREATION_REMEDIES.get(created.error_kind, DEFAULT_REMEDY)
            logger.error(f"❌ Match creation failed | Match: {match.id} | {created.error_kind} | {created.error}")
            return ActionResult.fail(
                created.error_kind or ErrorKind.GATEWAY_UNAVAILABLE,
                f"❌ **Unable to Create Match**\n\n{created.error}\n\n{remedy}\n\n"
                f"_Your pending bet expires in {format_remaining(self.intents.remaining_seconds(user_id))}. "
                f"Use `/cancel` to cancel it._",
                state=SettlementState.CONFIRMED,
            )

        self.ledger.set_on_chain_match_id(match.id, created.match_id)
        match.on_chain_match_id = created.match_id
        self._transition(user_id, match.id, SettlementState.MATCH_ENSURED, on_chain_match_id=created.match_id,
                         tx=created.tx_hash)
        await self._notify(channel_id, "✅ Match created on-chain! Now sending your bet transaction...", thread_id)
        return match

    # Claims and refunds

    @_reply_on_error("request_claim")
    async def request_claim(self, user_id, match_ref: str, channel_id=None, thread_id=None) -> ActionResult:
        return await self._request_payout(user_id, match_ref, InteractionKind.CLAIM, channel_id, thread_id)

    @_reply_on_error("request_refund")
    async def request_refund(self, user_id, match_ref: str, channel_id=None, thread_id=None) -> ActionResult:
        return await self._request_payout(user_id, match_ref, InteractionKind.CLAIM_REFUND, channel_id, thread_id)

    @_reply_on_error("request_claim_all")
    async def request_claim_all(self, user_id, channel_id=None, thread_id=None) -> ActionResult:
        """Send one claim or refund prompt per settled match; each is signed as its own transaction"""
        user_id = str(user_id)
        if not self._contract_available():
            return ActionResult.fail(ErrorKind.CONTRACT_UNAVAILABLE, CONTRACT_MISSING)

        candidates = []
        for record in self.ledger.get_user_bets(user_id):
            if record.claimed:
                continue
            match = self.ledger.get_match(record.match_id)
            if match is None or match.on_chain_match_id is None:
                continue
            if match.result is not None:
                candidates.append((match, InteractionKind.CLAIM))
            elif match.status == "CANCELLED":
                candidates.append((match, InteractionKind.CLAIM_REFUND))

        prompted, skipped = [], []
        for match, kind in candidates:
            result = await self._prompt_payout(user_id, match, kind, channel_id, thread_id)
            (prompted if result.success else skipped).append((match, kind, result))

        if not prompted:
            log_bet_action(user_id, "CLAIM_ALL_EMPTY", None, checked=len(candidates))
            return ActionResult.ok("📭 **No Unclaimed Winnings**\n\nYou don't have anything to claim right now.\n\n"
                                   "Use `/mybets` to see your betting history.", prompted=0, skipped=len(skipped))

        lines = "\n".join(f"{i}. {match.title} ({'refund' if kind == InteractionKind.CLAIM_REFUND else 'winnings'})"
                          for i, (match, kind, _) in enumerate(prompted, start=1))
        plural = "s" if len(prompted) != 1 else ""
        log_bet_action(user_id, "CLAIM_ALL_PROMPTED", None, prompted=len(prompted), skipped=len(skipped))
        return ActionResult.ok(f"💰 **Claim All**\n\nI sent {len(prompted)} claim prompt{plural}:\n\n{lines}\n\n"
                               f"⚠️ Each one is a separate transaction for you to sign.",
                               prompted=len(prompted), skipped=len(skipped))

    async def _check_payout(self, user_id, match: Match, kind: InteractionKind):
        if kind == InteractionKind.CLAIM:
            return await self.eligibility.resolve_claim(user_id, match)
        return await self.eligibility.resolve_refund(user_id, match)

    async def _request_payout(self, user_id, match_ref, kind: InteractionKind, channel_id, thread_id) -> ActionResult:
        user_id = str(user_id)
        if not self._contract_available():
            return ActionResult.fail(ErrorKind.CONTRACT_UNAVAILABLE, CONTRACT_MISSING)

        command = "/claim" if kind == InteractionKind.CLAIM else "/claim_refund"
        match, lookup_error = self.ledger.find_match(match_ref, command, now=self.clock())
        if match is None:
            return ActionResult.fail(ErrorKind.MATCH_UNAVAILABLE, lookup_error)
        return await self._prompt_payout(user_id, match, kind, channel_id, thread_id)

    async def _prompt_payout(self, user_id, match: Match, kind: InteractionKind, channel_id, thread_id) -> ActionResult:
        try:
            eligibility = await self._check_payout(user_id, match, kind)
        except GatewayError as e:
            return ActionResult.fail(e.kind, NETWORK_ERROR)
        if not eligibility.can_claim:
            return ActionResult.fail(eligibility.error, eligibility.message)

        is_claim = kind == InteractionKind.CLAIM
        token = correlation.encode(kind, match.id, user_id, thread_id, now=self.clock())
        prompt = InteractivePrompt(
            request_id=token,
            title="Claim Winnings" if is_claim else "Claim Refund",
            content=eligibility.message,
            buttons=[PromptButton("confirm", "Claim Winnings" if is_claim else "Claim Refund", "primary"),
                     PromptButton("cancel", "Cancel", "secondary")],
        )
        try:
            await self._send_with_retry(
                lambda: self.transport.send_interactive_prompt(channel_id, prompt, user_id, thread_id=thread_id))
        except Exception as e:
            log_error("send_claim_prompt", e, user_id)
            return ActionResult.fail(ErrorKind.INTERNAL, "❌ Couldn't send the claim prompt. Please try again.")

        log_bet_action(user_id, "CLAIM_PROMPTED" if is_claim else "REFUND_PROMPTED", match.id,
                       amount=wei_to_eth_str(eligibility.amount), wallet=truncate_address(eligibility.wallet))
        return ActionResult.ok("✅ Check the prompt to claim.", token=token, claim_type=eligibility.claim_type,
                               amount=eligibility.amount, no_winners=eligibility.is_no_winners_payout)

    async def _confirm_payout(self, meta: correlation.CorrelationMetadata, user_id, channel_id, thread_id) -> ActionResult:
        """Re-check eligibility at click time, then ask the wallet to sign"""
        is_claim = meta.kind == InteractionKind.CLAIM
        match = self.ledger.get_match(meta.match_id)
        if match is None:
            return ActionResult.fail(ErrorKind.MATCH_UNAVAILABLE, "❌ Match no longer available.")
        if not self._contract_available():
            return ActionResult.fail(ErrorKind.CONTRACT_UNAVAILABLE, CONTRACT_MISSING)

        try:
            eligibility = await self._check_payout(user_id, match, InteractionKind.CLAIM if is_claim
                                                   else InteractionKind.CLAIM_REFUND)
        except GatewayError as e:
            return ActionResult.fail(e.kind, NETWORK_ERROR)
        if not eligibility.can_claim:
            return ActionResult.fail(eligibility.error, eligibility.message)

        tx_kind = InteractionKind.CLAIM if is_claim else InteractionKind.REFUND
        data = self.gateway.encode_claim_winnings(match.on_chain_match_id) if is_claim \
            else self.gateway.encode_claim_refund(match.on_chain_match_id)
        request = TransactionRequest(
            request_id=correlation.encode(tx_kind, match.id, user_id, thread_id, now=self.clock()),
            title=f"{'Claim winnings' if is_claim else 'Claim refund'}: {match.title}",
            chain_id=BotConfig.CHAIN_ID,
            to=self.gateway.contract_address,
            value_wei=0,
            data=data,
            signer_wallet=eligibility.wallet,
        )
        try:
            await self._send_with_retry(
                lambda: self.transport.send_transaction_request(channel_id, request, user_id, thread_id=thread_id))
        except Exception as e:
            log_error("send_claim_transaction", e, user_id)
            return ActionResult.fail(ErrorKind.INTERNAL, "❌ Failed to send transaction request. "
                                     "Please try again or contact support.")

        self._transition(user_id, match.id, SettlementState.TX_REQUESTED, kind=tx_kind.value)
        what = "claim your winnings" if is_claim else "claim your refund"
        return ActionResult.ok(f"✅ **Transaction Request Sent!**\n\nPlease sign the transaction in your wallet to "
                               f"{what}.\n\n_I'll confirm once the transaction is mined._",
                               state=SettlementState.TX_REQUESTED, request_id=request.request_id)

    @_reply_on_error("reconcile")
    async def reconcile(self, user_id) -> ActionResult:
        if not self._contract_available():
            return ActionResult.fail(ErrorKind.CONTRACT_UNAVAILABLE, CONTRACT_MISSING)
        report = await self.reconciler.reconcile(user_id)
        if report.error is not None:
            return ActionResult.fail(report.error, report.message, report=report)
        return ActionResult.ok(report.message, report=report)

    # Interaction routing

    @_reply_on_error("handle_button_click")
    async def handle_button_click(self, request_id: str, button_id: str, user_id, channel_id=None,
                                  thread_id=None) -> ActionResult:
        user_id = str(user_id)
        meta = correlation.decode(request_id)
        kind = correlation.classify(request_id)
        action = correlation.resolve_action(kind, button_id) if kind else None
        if meta is None or action is None:
            logger.warning(f"⚠️ Unroutable button click | User: {user_id} | Request: {request_id} | Button: {button_id}")
            return ActionResult.fail(ErrorKind.INVALID_CORRELATION_TOKEN,
                                     "❌ This button is no longer valid. Please run the command again.")

        thread_id = meta.thread_id or thread_id
        if action == ButtonAction.CONFIRM:
            return await self.confirm_intent(request_id, user_id, channel_id)
        if action == ButtonAction.CANCEL:
            return await self.cancel_intent(user_id, token=request_id)
        if action in (ButtonAction.CLAIM_CONFIRM, ButtonAction.REFUND_CONFIRM):
            return await self._confirm_payout(meta, user_id, channel_id, thread_id)
        what = "Claim" if action == ButtonAction.CLAIM_CANCEL else "Refund claim"
        return ActionResult.ok(f"❌ {what} cancelled.")

    @_reply_on_error("handle_transaction_result")
    async def handle_transaction_result(self, request_id: str, user_id, tx_hash: Optional[str], success: bool,
                                        channel_id=None, thread_id=None) -> ActionResult:
        user_id = str(user_id)
        meta = correlation.decode(request_id)
        if meta is None:
            return ActionResult.fail(ErrorKind.INVALID_CORRELATION_TOKEN, "❌ Unknown transaction request.")
        thread_id = meta.thread_id or thread_id

        intent = None
        if correlation.needs_intent(meta.kind):
            found = self.intents.get_by_correlation_token(request_id)
            intent = None if isinstance(found, IntentExpired) else found
            if intent is not None and intent.user_id != user_id:
                return ActionResult.fail(ErrorKind.NOT_RECIPIENT, "❌ This transaction request belongs to someone else.")

        if not success or not tx_hash:
            log_transaction(user_id, meta.kind.value, False, error="rejected_in_wallet")
            return ActionResult.fail(ErrorKind.TRANSACTION_REJECTED,
                                     "❌ The transaction was not submitted. Nothing changed; "
                                     "you can try again from the last prompt.")
        tx_hash = tx_hash.strip()
        if not TX_HASH_RE.match(tx_hash):
            return ActionResult.fail(ErrorKind.TRANSACTION_UNCONFIRMABLE,
                                     "❌ That doesn't look like a transaction hash (0x followed by 64 hex characters).")

        self._transition(user_id, meta.match_id, SettlementState.TX_SUBMITTED, tx=tx_hash, kind=meta.kind.value)
        await self._notify(channel_id, f"⏳ **Transaction Submitted!**\n\nWaiting for confirmation...\n\n"
                                       f"🔗 [View on explorer]({tx_link(tx_hash)})", thread_id)

        start_time = time.time()
        try:
            receipt = await self.gateway.wait_for_receipt(tx_hash)
        except GatewayError as e:
            log_transaction(user_id, meta.kind.value, False, tx_hash=tx_hash, error=type(e).__name__)
            self._transition(user_id, meta.match_id, SettlementState.UNCONFIRMABLE, tx=tx_hash)
            return ActionResult.fail(ErrorKind.TRANSACTION_UNCONFIRMABLE,
                                     f"⚠️ **Unable to Confirm**\n\nI couldn't verify your transaction status. "
                                     f"Please check the explorer:\n\n🔗 [View Transaction]({tx_link(tx_hash)})\n\n"
                                     f"Use `/verify` later to sync your bets.",
                                     state=SettlementState.UNCONFIRMABLE, tx_hash=tx_hash)
        duration_ms = (time.time() - start_time) * 1000

        if not receipt.success:
            return self._reverted(user_id, meta, tx_hash, duration_ms)

        if not self._targets_contract(receipt):
            log_transaction(user_id, meta.kind.value, False, tx_hash=tx_hash, error="foreign_transaction",
                            to=receipt.to)
            return ActionResult.fail(ErrorKind.FOREIGN_TRANSACTION,
                                     "❌ That transaction didn't interact with the betting contract, so nothing "
                                     "was recorded. Please submit the hash of the transaction you signed for this "
                                     "request.", tx_hash=tx_hash)

        log_transaction(user_id, meta.kind.value, True, tx_hash=tx_hash, duration_ms=duration_ms)
        if meta.kind == InteractionKind.WAGER:
            return await self._settle_wager(user_id, meta, intent, receipt)
        if meta.kind == InteractionKind.CLAIM:
            return await self._settle_claim(user_id, meta, receipt)
        return await self._settle_refund(user_id, meta, receipt)

    def _targets_contract(self, receipt: TxReceipt) -> bool:
        """The transaction went to the escrow directly, or (via a smart account) emitted escrow logs"""
        contract = self.gateway.contract_address.lower()
        if receipt.to and receipt.to.lower() == contract:
            return True
        for log in receipt.logs:
            address = log.get("address") if hasattr(log, "get") else getattr(log, "address", None)
            if address and str(address).lower() == contract:
                return True
        return False

    def _reverted(self, user_id, meta, tx_hash: str, duration_ms: float) -> ActionResult:
        log_transaction(user_id, meta.kind.value, False, tx_hash=tx_hash, duration_ms=duration_ms, error="reverted")
        self._transition(user_id, meta.match_id, SettlementState.REVERTED, tx=tx_hash)
        link = f"🔗 [View on explorer]({tx_link(tx_hash)})"

        if meta.kind == InteractionKind.WAGER:
            self.intents.clear(user_id)
            return ActionResult.fail(ErrorKind.TRANSACTION_REVERTED,
                                     f"❌ **Transaction Failed**\n\nYour bet was not placed. The transaction was "
                                     f"reverted.\n\nPlease start again with `/bet`.\n\n{link}",
                                     state=SettlementState.REVERTED, tx_hash=tx_hash)
        what = "claim" if meta.kind == InteractionKind.CLAIM else "refund"
        return ActionResult.fail(ErrorKind.TRANSACTION_REVERTED,
                                 f"❌ **{what.capitalize()} Transaction Failed**\n\nThe transaction was reverted.\n\n"
                                 f"{REVERTED_CLAIM_CAUSES}\n\n{link}",
                                 state=SettlementState.REVERTED, tx_hash=tx_hash)

    async def _find_signing_wallet(self, user_id, on_chain_match_id: int):
        """Check each linked wallet for a stake on the match; the first hit is taken as the signer.

        If two linked wallets both hold a stake the attribution is ambiguous; the
        first one in resolver order wins.
        """
        for wallet in await self.wallets.resolve_linked_wallets(user_id):
            try:
                bet = await self.gateway.get_user_bet(on_chain_match_id, wallet)
            except GatewayError as e:
                logger.warning(f"⚠️ Could not read the bet for wallet {truncate_address(wallet)}: {e}")
                continue
            if bet is not None and bet.amount > 0:
                return wallet, bet
        return None, None

    async def _settle_wager(self, user_id, meta, intent: Optional[WagerIntent], receipt: TxReceipt) -> ActionResult:
        tx_hash = receipt.tx_hash
        match = self.ledger.get_match(meta.match_id)
        link = f"🔗 [Transaction]({tx_link(tx_hash)})"
        self._transition(user_id, meta.match_id, SettlementState.SUCCESS, tx=tx_hash)

        if match is None or match.on_chain_match_id is None:
            self.intents.clear(user_id)
            logger.warning(f"⚠️ NEEDS_RECONCILIATION | User: {user_id} | Match: {meta.match_id} | Tx: {tx_hash} | "
                           f"match missing or not on-chain")
            return ActionResult.ok(f"🎯 **Bet Confirmed!**\n\nYour transaction succeeded.\n\n{link}",
                                   state=SettlementState.SUCCESS, recorded=False, tx_hash=tx_hash)

        existing = self.ledger.get_bet(user_id, match.id)
        if existing is not None:
            self.intents.clear(user_id)
            logger.info(f"Wager already recorded | User: {user_id} | Match: {match.id} | Tx: {tx_hash}")
            return ActionResult.ok(f"🎯 **Bet Confirmed!**\n\nYour bet on **{match.title}** is already recorded.\n\n{link}",
                                   state=SettlementState.SUCCESS, recorded=False, already_recorded=True,
                                   tx_hash=tx_hash)

        wallet, bet = await self._find_signing_wallet(user_id, match.on_chain_match_id)
        recorded = False
        if bet is not None:
            record = WagerRecord(
                user_id=user_id,
                wallet_address=wallet,
                match_id=match.id,
                on_chain_match_id=match.on_chain_match_id,
                prediction=bet.prediction,
                stake_wei=bet.amount,
                tx_hash=tx_hash,
            )
            try:
                recorded = self.ledger.create_bet(record)
                if recorded:
                    self.ledger.record_bet(user_id, wei_to_eth_str(bet.amount))
                    log_bet_action(user_id, "BET_RECORDED", match.id, wallet=truncate_address(wallet),
                                   stake_wei=bet.amount)
            except LedgerError as e:
                log_error("record_wager", e, user_id)
                logger.warning(f"⚠️ NEEDS_RECONCILIATION | User: {user_id} | Match: {match.id} | Tx: {tx_hash} | "
                               f"ledger write failed")
        else:
            logger.warning(f"⚠️ NEEDS_RECONCILIATION | User: {user_id} | Match: {match.id} | Tx: {tx_hash} | "
                           f"no linked wallet shows a stake")

        self.intents.clear(user_id)

        if bet is not None:
            details = (f"\n\n**Match:** {match.title}\n**Your Prediction:** {format_outcome(bet.prediction)}\n"
                       f"**Stake:** {wei_to_eth_str(bet.amount)} ETH")
        elif intent is not None:
            details = (f"\n\n**Match:** {match.title}\n**Your Prediction:** {format_outcome(intent.prediction)}\n"
                       f"**Stake:** {intent.stake} ETH\n\n_I couldn't find the bet on your linked wallets yet; "
                       f"run `/verify` in a few minutes to sync it._")
        else:
            details = f"\n\n**Match:** {match.title}\n\n_Run `/verify` in a few minutes to sync this bet._"

        return ActionResult.ok(f"🎯 **Bet Confirmed!**\n\n<@{user_id}> your bet has been placed successfully!"
                               f"{details}\n\n{link}",
                               state=SettlementState.SUCCESS, recorded=recorded, wallet=wallet, tx_hash=tx_hash)

    async def _claimed_on_chain(self, match: Match, record: WagerRecord) -> bool:
        """The escrow must itself show the bet as paid out before the ledger flips"""
        on_chain_id = match.on_chain_match_id if match.on_chain_match_id is not None else record.on_chain_match_id
        try:
            bet = await self.gateway.get_user_bet(on_chain_id, record.wallet_address)
        except GatewayError as e:
            logger.warning(f"⚠️ Could not re-read bet for match {match.id} on {truncate_address(record.wallet_address)}: {e}")
            return False
        return bet is not None and bet.claimed

    def _payout_not_verified(self, user_id, match: Match, tx_hash: str, what: str, command: str) -> ActionResult:
        logger.warning(f"⚠️ NEEDS_RECONCILIATION | User: {user_id} | Match: {match.id} | Tx: {tx_hash} | "
                       f"{what} receipt succeeded but the bet is not claimed on-chain")
        self._transition(user_id, match.id, SettlementState.UNCONFIRMABLE, tx=tx_hash, kind=what)
        return ActionResult.fail(ErrorKind.TRANSACTION_UNCONFIRMABLE,
                                 f"⚠️ **{what.capitalize()} Not Verified**\n\nThe transaction succeeded, but the "
                                 f"contract doesn't show your bet on **{match.title}** as paid out, so nothing was "
                                 f"recorded.\n\nMake sure you signed the {what} for this match with the wallet that "
                                 f"placed the bet, then run `{command}` again.\n\n🔗 [Transaction]({tx_link(tx_hash)})",
                                 state=SettlementState.UNCONFIRMABLE, tx_hash=tx_hash)

    async def _settle_claim(self, user_id, meta, receipt: TxReceipt) -> ActionResult:
        tx_hash = receipt.tx_hash
        link = f"🔗 [Transaction]({tx_link(tx_hash)})"

        match = self.ledger.get_match(meta.match_id)
        record = self.ledger.get_bet(user_id, meta.match_id) if match else None
        if match is None or record is None:
            logger.warning(f"⚠️ NEEDS_RECONCILIATION | User: {user_id} | Match: {meta.match_id} | Tx: {tx_hash} | "
                           f"no local bet for claim")
            return ActionResult.ok(f"✅ **Claim Transaction Confirmed!**\n\nI couldn't find this bet in my records. "
                                   f"Run `/verify` to sync it.\n\n{link}", state=SettlementState.SUCCESS,
                                   recorded=False, tx_hash=tx_hash)

        if not await self._claimed_on_chain(match, record):
            return self._payout_not_verified(user_id, match, tx_hash, "claim", "/claim")
        self._transition(user_id, meta.match_id, SettlementState.SUCCESS, tx=tx_hash, kind="claim")

        parsed = self.gateway.parse_winnings_claimed(receipt, match.on_chain_match_id, bettor=record.wallet_address)
        approximate = parsed is None
        if approximate:
            amount, profit = record.stake_wei, 0
            logger.warning(f"⚠️ No WinningsClaimed event for {truncate_address(record.wallet_address)} in {tx_hash}; "
                           f"using stake as payout for match {match.id}")
        else:
            amount, profit = parsed

        flipped = self.ledger.mark_claimed(user_id, match.id)
        if flipped:
            self.ledger.record_win(user_id, wei_to_eth_str(amount), wei_to_eth_str(profit))
            log_bet_action(user_id, "WIN_RECORDED", match.id, payout_wei=amount, profit_wei=profit,
                           approximate=approximate)
        else:
            logger.info(f"Claim already recorded | User: {user_id} | Match: {match.id} | Tx: {tx_hash}")

        note = "\n\n_Exact payout couldn't be read from the receipt; showing your stake as a minimum._" \
            if approximate else ""
        return ActionResult.ok(f"💰 **Winnings Claimed!**\n\n<@{user_id}> your winnings have been claimed "
                               f"successfully!\n\n**Match:** {match.title}\n**Payout:** "
                               f"{'≥ ' if approximate else ''}{format_eth(amount)} ETH\n**Profit:** "
                               f"{format_eth(profit)} ETH{note}\n\n{link}",
                               state=SettlementState.SUCCESS, amount=amount, profit=profit, approximate=approximate,
                               newly_claimed=flipped, tx_hash=tx_hash)

    async def _settle_refund(self, user_id, meta, receipt: TxReceipt) -> ActionResult:
        tx_hash = receipt.tx_hash
        link = f"🔗 [Transaction]({tx_link(tx_hash)})"

        match = self.ledger.get_match(meta.match_id)
        record = self.ledger.get_bet(user_id, meta.match_id) if match else None
        if match is None or record is None:
            logger.warning(f"⚠️ NEEDS_RECONCILIATION | User: {user_id} | Match: {meta.match_id} | Tx: {tx_hash} | "
                           f"no local bet for refund")
            return ActionResult.ok(f"✅ **Refund Transaction Confirmed!**\n\nI couldn't find this bet in my records. "
                                   f"Run `/verify` to sync it.\n\n{link}", state=SettlementState.SUCCESS,
                                   recorded=False, tx_hash=tx_hash)

        if not await self._claimed_on_chain(match, record):
            return self._payout_not_verified(user_id, match, tx_hash, "refund", "/claim_refund")
        self._transition(user_id, meta.match_id, SettlementState.SUCCESS, tx=tx_hash, kind="refund")

        flipped = self.ledger.mark_claimed(user_id, match.id)
        if flipped:
            log_bet_action(user_id, "REFUND_RECORDED", match.id, amount_wei=record.stake_wei)
        return ActionResult.ok(f"💸 **Refund Claimed!**\n\n<@{user_id}> your refund has been processed "
                               f"successfully!\n\n**Match:** {match.title}\n**Refund Amount:** "
                               f"{format_eth(record.stake_wei)} ETH\n\n{link}",
                               state=SettlementState.SUCCESS, amount=record.stake_wei, newly_claimed=flipped,
                               tx_hash=tx_hash)
