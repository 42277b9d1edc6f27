"""
Tests for the settlement orchestrator: wager flow, claims, refunds and every
failure path a receipt can take.
"""

import asyncio

from conftest import CONTRACT, OTHER_TX_HASH, OTHER_WALLET, TX_HASH, WALLET
from matchday import correlation
from matchday.correlation import InteractionKind
from matchday.errors import ErrorKind, RpcTimeout
from matchday.models import (
    ClaimStatus, ClaimType, ContractBet, Outcome, RefundEligibility, SettlementState, TxReceipt, WagerRecord,
)

STAKE_WEI = 10 ** 16  # 0.01 ETH


def run(coro):
    return asyncio.run(coro)


def fund(harness, wallet=WALLET, wei=10 ** 18):
    harness.gateway.balances[wallet.lower()] = wei


def place_and_confirm(harness, match_ref="1", prediction="home", stake="0.01"):
    """Place an intent and click confirm; returns the transaction request"""
    placed = run(harness.orchestrator.place_wager_intent("1001", match_ref, prediction, stake, channel_id="c1"))
    assert placed.success, placed.message
    harness.clock.advance(5)
    confirmed = run(harness.orchestrator.handle_button_click(placed.details["token"], "confirm", "1001", "c1"))
    assert confirmed.success, confirmed.message
    return harness.transport.tx_requests[-1][1]


def mine(harness, tx_hash=TX_HASH, success=True, to=CONTRACT, logs=None):
    harness.gateway.receipts[tx_hash] = TxReceipt(tx_hash=tx_hash, success=success, to=to, logs=logs or [])


def put_bet_on_chain(harness, on_chain_match_id=42, wallet=WALLET, prediction=Outcome.HOME, amount=STAKE_WEI,
                     claimed=False):
    harness.gateway.bets[(on_chain_match_id, wallet.lower())] = ContractBet(wallet, amount, prediction, claimed)


def test_full_wager_scenario(harness):
    """0.01 HOME on match #7, created on-chain as 42, recorded after the receipt"""
    for i in range(6):
        harness.add_match(home=f"Home {i}", away=f"Away {i}")
    match = harness.add_match(home="Liverpool", away="Everton")
    assert match.daily_id == 7
    fund(harness)

    placed = run(harness.orchestrator.place_wager_intent("1001", "7", "home", "0.01", channel_id="c1"))
    assert placed.success
    intent = harness.intents.get("1001")
    assert intent.expires_at - intent.created_at == 300
    assert placed.details["token"].startswith(f"bet-{match.id}-1001-t")
    prompt = harness.transport.prompts[-1][1]
    assert [b.id for b in prompt.buttons] == ["confirm", "cancel"]

    harness.clock.advance(5)
    confirmed = run(harness.orchestrator.handle_button_click(placed.details["token"], "confirm", "1001", "c1"))
    assert confirmed.success
    assert confirmed.state == SettlementState.TX_REQUESTED
    assert harness.ledger.get_match(match.id).on_chain_match_id == 42
    assert any("Match created on-chain" in text for _, text, _ in harness.transport.messages)

    request = harness.transport.tx_requests[-1][1]
    assert request.to == CONTRACT
    assert request.value_wei == STAKE_WEI
    assert request.data == "placeBet:42:1"
    assert request.signer_wallet == WALLET

    put_bet_on_chain(harness)
    mine(harness)
    result = run(harness.orchestrator.handle_transaction_result(request.request_id, "1001", TX_HASH, True, "c1"))

    assert result.success, result.message
    assert result.state == SettlementState.SUCCESS
    assert "<@1001>" in result.message
    record = harness.ledger.get_bet("1001", match.id)
    assert record.on_chain_match_id == 42
    assert record.prediction == Outcome.HOME
    assert record.stake_wei == STAKE_WEI
    assert record.tx_hash == TX_HASH
    assert harness.intents.get("1001") is None
    assert harness.ledger.get_stats("1001")["total_wagered"] == "0.01"


def test_existing_on_chain_match_is_not_recreated(harness):
    harness.add_match(on_chain_match_id=9)
    fund(harness)

    request = place_and_confirm(harness)

    assert harness.gateway.created == []
    assert request.data == "placeBet:9:1"


def test_second_intent_is_rejected_while_first_is_live(harness):
    harness.add_match()
    harness.add_match(home="Spurs", away="Fulham")

    first = run(harness.orchestrator.place_wager_intent("1001", "1", "home", "0.01", channel_id="c1"))
    second = run(harness.orchestrator.place_wager_intent("1001", "2", "away", "0.02", channel_id="c1"))

    assert first.success
    assert not second.success
    assert second.error == ErrorKind.ALREADY_PENDING
    assert harness.intents.get("1001").match_id == first.details["match_id"]
    assert len(harness.transport.prompts) == 1


def test_expired_intent_cannot_be_confirmed(harness):
    harness.add_match()
    placed = run(harness.orchestrator.place_wager_intent("1001", "1", "draw", "0.01", channel_id="c1"))

    harness.clock.advance(301)
    result = run(harness.orchestrator.handle_button_click(placed.details["token"], "confirm", "1001", "c1"))

    assert result.error == ErrorKind.INTENT_EXPIRED_OR_MISSING
    assert harness.gateway.created == []


def test_double_cancel_reports_already_processed(harness):
    harness.add_match()
    placed = run(harness.orchestrator.place_wager_intent("1001", "1", "home", "0.01", channel_id="c1"))
    token = placed.details["token"]

    first = run(harness.orchestrator.handle_button_click(token, "cancel", "1001", "c1"))
    second = run(harness.orchestrator.handle_button_click(token, "cancel", "1001", "c1"))

    assert first.success and "cancelled" in first.message
    assert first.details["already_processed"] is False
    assert second.success
    assert second.details["already_processed"] is True
    assert "already processed" in second.message


def test_stale_cancel_button_leaves_newer_bet_alone(harness):
    harness.add_match()
    harness.add_match(home="Spurs", away="Fulham")
    old = run(harness.orchestrator.place_wager_intent("1001", "1", "home", "0.01", channel_id="c1"))
    run(harness.orchestrator.cancel_intent("1001"))
    harness.clock.advance(5)
    new = run(harness.orchestrator.place_wager_intent("1001", "2", "away", "0.01", channel_id="c1"))

    result = run(harness.orchestrator.handle_button_click(old.details["token"], "cancel", "1001", "c1"))

    assert result.success
    assert result.details["already_processed"] is True
    assert harness.intents.get("1001").match_id == new.details["match_id"]


def test_cancel_by_someone_else_is_refused(harness):
    harness.add_match()
    placed = run(harness.orchestrator.place_wager_intent("1001", "1", "home", "0.01", channel_id="c1"))

    result = run(harness.orchestrator.handle_button_click(placed.details["token"], "cancel", "2002", "c1"))

    assert result.error == ErrorKind.NOT_RECIPIENT
    assert harness.intents.get("1001") is not None


def test_confirm_by_someone_else_is_refused(harness):
    harness.add_match()
    placed = run(harness.orchestrator.place_wager_intent("1001", "1", "home", "0.01", channel_id="c1"))

    result = run(harness.orchestrator.handle_button_click(placed.details["token"], "confirm", "2002", "c1"))

    assert result.error == ErrorKind.NOT_RECIPIENT
    assert harness.intents.get("1001") is not None


def test_unroutable_clicks(harness):
    assert run(harness.orchestrator.handle_button_click("nonsense", "confirm", "1001")).error == \
        ErrorKind.INVALID_CORRELATION_TOKEN
    token = correlation.encode(InteractionKind.WAGER, 1, "1001")
    assert run(harness.orchestrator.handle_button_click(token, "explode", "1001")).error == \
        ErrorKind.INVALID_CORRELATION_TOKEN


def test_intent_validation(harness):
    harness.add_match()
    harness.add_match(home="Old", away="Game", hours_from_now=-1)
    place = harness.orchestrator.place_wager_intent

    assert run(place("1001", "1", "sideways", "0.01")).error == ErrorKind.INVALID_PREDICTION
    assert run(place("1001", "1", "home", "lots")).error == ErrorKind.INVALID_STAKE
    assert run(place("1001", "1", "home", "0")).error == ErrorKind.INVALID_STAKE
    assert run(place("1001", "1", "home", "5")).error == ErrorKind.INVALID_STAKE
    assert run(place("1001", "9", "home", "0.01")).error == ErrorKind.MATCH_UNAVAILABLE
    assert run(place("1001", "2", "home", "0.01")).error == ErrorKind.BETTING_CLOSED
    assert len(harness.intents) == 0


def test_one_wager_per_match(harness):
    match = harness.add_match(on_chain_match_id=42)
    harness.ledger.create_bet(WagerRecord("1001", WALLET, match.id, 42, Outcome.HOME, STAKE_WEI))

    result = run(harness.orchestrator.place_wager_intent("1001", "1", "away", "0.01"))

    assert result.error == ErrorKind.ALREADY_BET


def test_contract_not_deployed(harness):
    harness.add_match()
    harness.contract_live = False

    assert run(harness.orchestrator.place_wager_intent("1001", "1", "home", "0.01")).error == \
        ErrorKind.CONTRACT_UNAVAILABLE
    assert run(harness.orchestrator.request_claim("1001", "1")).error == ErrorKind.CONTRACT_UNAVAILABLE
    assert run(harness.orchestrator.reconcile("1001")).error == ErrorKind.CONTRACT_UNAVAILABLE


def test_prompt_send_is_retried(harness):
    harness.add_match()
    harness.transport.prompt_failures = 2

    result = run(harness.orchestrator.place_wager_intent("1001", "1", "home", "0.01", channel_id="c1"))

    assert result.success
    assert len(harness.transport.prompts) == 1


def test_prompt_send_failure_clears_intent(harness):
    harness.add_match()
    harness.transport.prompt_failures = 10

    result = run(harness.orchestrator.place_wager_intent("1001", "1", "home", "0.01", channel_id="c1"))

    assert not result.success
    assert harness.intents.get("1001") is None


def test_match_creation_failure_keeps_intent(harness):
    harness.add_match()
    fund(harness)
    harness.gateway.create_error = (ErrorKind.INSUFFICIENT_GAS, "insufficient funds for gas")
    placed = run(harness.orchestrator.place_wager_intent("1001", "1", "home", "0.01", channel_id="c1"))

    result = run(harness.orchestrator.handle_button_click(placed.details["token"], "confirm", "1001", "c1"))

    assert result.error == ErrorKind.INSUFFICIENT_GAS
    assert "fund the bot" in result.message
    assert harness.intents.get("1001") is not None
    assert harness.transport.tx_requests == []

    # Operator funded; the same prompt works again
    harness.gateway.create_error = None
    retried = run(harness.orchestrator.handle_button_click(placed.details["token"], "confirm", "1001", "c1"))
    assert retried.success


def test_failed_transaction_request_can_be_confirmed_again(harness):
    harness.add_match(on_chain_match_id=42)
    fund(harness)
    placed = run(harness.orchestrator.place_wager_intent("1001", "1", "home", "0.01", channel_id="c1"))
    harness.clock.advance(5)
    harness.transport.tx_failures = 10

    failed = run(harness.orchestrator.handle_button_click(placed.details["token"], "confirm", "1001", "c1"))

    assert failed.error == ErrorKind.INTERNAL
    assert "Confirm & Sign" in failed.message
    assert harness.transport.tx_requests == []

    harness.transport.tx_failures = 0
    harness.clock.advance(5)
    retried = run(harness.orchestrator.handle_button_click(placed.details["token"], "confirm", "1001", "c1"))

    assert retried.success, retried.message
    assert retried.state == SettlementState.TX_REQUESTED
    request = harness.transport.tx_requests[-1][1]
    assert harness.intents.get_by_correlation_token(request.request_id).user_id == "1001"


def test_insufficient_balance_keeps_intent(harness):
    harness.add_match()
    fund(harness, wei=STAKE_WEI)  # no room for gas
    placed = run(harness.orchestrator.place_wager_intent("1001", "1", "home", "0.01", channel_id="c1"))

    result = run(harness.orchestrator.handle_button_click(placed.details["token"], "confirm", "1001", "c1"))

    assert result.error == ErrorKind.INSUFFICIENT_BALANCE
    assert harness.intents.get("1001") is not None
    assert harness.gateway.created == []


def test_funded_linked_wallet_is_preselected(harness):
    harness.add_match(on_chain_match_id=42)
    harness.wallets.wallets["1001"] = [WALLET, OTHER_WALLET]
    fund(harness, WALLET, 0)
    fund(harness, OTHER_WALLET)

    request = place_and_confirm(harness)

    assert request.signer_wallet == OTHER_WALLET


def test_unexpected_error_becomes_generic_reply(harness):
    harness.add_match()

    async def broken_balance(address):
        raise RuntimeError("boom")

    harness.gateway.get_balance = broken_balance
    placed = run(harness.orchestrator.place_wager_intent("1001", "1", "home", "0.01", channel_id="c1"))
    result = run(harness.orchestrator.handle_button_click(placed.details["token"], "confirm", "1001", "c1"))

    assert result.error == ErrorKind.INTERNAL
    assert "contact support" in result.message
    # the in-flight guard is released
    assert "1001" not in harness.orchestrator._confirming


def test_rejected_in_wallet_changes_nothing(harness):
    match = harness.add_match()
    fund(harness)
    request = place_and_confirm(harness)

    result = run(harness.orchestrator.handle_transaction_result(request.request_id, "1001", None, False, "c1"))

    assert result.error == ErrorKind.TRANSACTION_REJECTED
    assert harness.intents.get("1001") is not None
    assert harness.ledger.get_bet("1001", match.id) is None


def test_malformed_hash_is_refused(harness):
    harness.add_match()
    fund(harness)
    request = place_and_confirm(harness)

    result = run(harness.orchestrator.handle_transaction_result(request.request_id, "1001", "0x1234", True, "c1"))

    assert result.error == ErrorKind.TRANSACTION_UNCONFIRMABLE
    assert harness.intents.get("1001") is not None


def test_reverted_wager_clears_intent(harness):
    match = harness.add_match()
    fund(harness)
    request = place_and_confirm(harness)
    mine(harness, success=False)

    result = run(harness.orchestrator.handle_transaction_result(request.request_id, "1001", TX_HASH, True, "c1"))

    assert result.error == ErrorKind.TRANSACTION_REVERTED
    assert result.state == SettlementState.REVERTED
    assert harness.intents.get("1001") is None
    assert harness.ledger.get_bet("1001", match.id) is None


def test_unconfirmable_wager_changes_nothing(harness):
    match = harness.add_match()
    fund(harness)
    request = place_and_confirm(harness)
    harness.gateway.receipts[TX_HASH] = RpcTimeout("no receipt after 120s")

    result = run(harness.orchestrator.handle_transaction_result(request.request_id, "1001", TX_HASH, True, "c1"))

    assert result.error == ErrorKind.TRANSACTION_UNCONFIRMABLE
    assert result.state == SettlementState.UNCONFIRMABLE
    assert "/verify" in result.message
    assert harness.intents.get("1001") is not None
    assert harness.ledger.get_bet("1001", match.id) is None


def test_foreign_transaction_is_not_recorded(harness):
    match = harness.add_match()
    fund(harness)
    request = place_and_confirm(harness)
    put_bet_on_chain(harness)
    mine(harness, to="0x9999999999999999999999999999999999999999")

    result = run(harness.orchestrator.handle_transaction_result(request.request_id, "1001", TX_HASH, True, "c1"))

    assert result.error == ErrorKind.FOREIGN_TRANSACTION
    assert harness.ledger.get_bet("1001", match.id) is None


def test_smart_account_receipt_is_accepted(harness):
    match = harness.add_match()
    fund(harness)
    request = place_and_confirm(harness)
    put_bet_on_chain(harness)
    mine(harness, to="0x9999999999999999999999999999999999999999", logs=[{"address": CONTRACT}])

    result = run(harness.orchestrator.handle_transaction_result(request.request_id, "1001", TX_HASH, True, "c1"))

    assert result.success
    assert harness.ledger.get_bet("1001", match.id) is not None


def test_duplicate_wager_success_is_idempotent(harness):
    match = harness.add_match()
    fund(harness)
    request = place_and_confirm(harness)
    put_bet_on_chain(harness)
    mine(harness)

    first = run(harness.orchestrator.handle_transaction_result(request.request_id, "1001", TX_HASH, True, "c1"))
    second = run(harness.orchestrator.handle_transaction_result(request.request_id, "1001", TX_HASH, True, "c1"))

    assert first.success and first.details["recorded"] is True
    assert second.success and second.details["already_recorded"] is True
    assert len(harness.ledger.get_user_bets("1001")) == 1
    assert harness.ledger.get_stats("1001")["total_bets"] == 1
    assert harness.ledger.get_bet("1001", match.id).tx_hash == TX_HASH


def test_wager_without_visible_stake_still_succeeds(harness):
    match = harness.add_match()
    fund(harness)
    request = place_and_confirm(harness)
    mine(harness)

    result = run(harness.orchestrator.handle_transaction_result(request.request_id, "1001", TX_HASH, True, "c1"))

    assert result.success
    assert result.details["recorded"] is False
    assert "/verify" in result.message
    assert harness.ledger.get_bet("1001", match.id) is None
    assert harness.intents.get("1001") is None


def test_wager_result_from_someone_else_is_refused(harness):
    harness.add_match()
    fund(harness)
    request = place_and_confirm(harness)
    mine(harness)

    result = run(harness.orchestrator.handle_transaction_result(request.request_id, "2002", TX_HASH, True, "c1"))

    assert result.error == ErrorKind.NOT_RECIPIENT


# Claims and refunds

def resolved_match_with_bet(harness, result=Outcome.HOME, prediction=Outcome.HOME, status="FINISHED"):
    match = harness.add_match(hours_from_now=-3, on_chain_match_id=42)
    harness.ledger.set_match_result(match.id, result, status)
    harness.ledger.create_bet(WagerRecord("1001", WALLET, match.id, 42, prediction, STAKE_WEI, tx_hash=OTHER_TX_HASH))
    put_bet_on_chain(harness, prediction=prediction)
    return harness.ledger.get_match(match.id)


def test_claim_prompt_and_confirm(harness):
    match = resolved_match_with_bet(harness)
    harness.gateway.claim_statuses[(42, WALLET.lower())] = ClaimStatus(True, ClaimType.WINNINGS, 2 * STAKE_WEI)

    requested = run(harness.orchestrator.request_claim("1001", match.match_code, channel_id="c1"))

    assert requested.success
    assert requested.details["claim_type"] == ClaimType.WINNINGS
    assert requested.details["no_winners"] is False
    prompt = harness.transport.prompts[-1][1]
    assert prompt.request_id.startswith("claim-")
    assert prompt.buttons[0].label == "Claim Winnings"

    clicked = run(harness.orchestrator.handle_button_click(prompt.request_id, "confirm", "1001", "c1"))

    assert clicked.success
    request = harness.transport.tx_requests[-1][1]
    assert request.data == "claimWinnings:42"
    assert request.value_wei == 0
    assert request.signer_wallet == WALLET
    assert correlation.classify(request.request_id) == InteractionKind.CLAIM


def test_no_winners_claim_is_presented_as_winnings(harness):
    match = resolved_match_with_bet(harness, result=Outcome.AWAY, prediction=Outcome.HOME)
    harness.gateway.claim_statuses[(42, WALLET.lower())] = ClaimStatus(True, ClaimType.WINNINGS, STAKE_WEI)

    requested = run(harness.orchestrator.request_claim("1001", match.match_code, channel_id="c1"))

    assert requested.success
    assert requested.details["claim_type"] == ClaimType.WINNINGS
    assert requested.details["no_winners"] is True
    prompt = harness.transport.prompts[-1][1]
    assert prompt.title == "Claim Winnings"
    assert "Stake Returned" in prompt.content
    assert correlation.classify(prompt.request_id) == InteractionKind.CLAIM


def test_claim_gateway_error_surfaces_without_retry(harness):
    match = resolved_match_with_bet(harness)
    calls = []

    async def flaky_status(match_id, wallet):
        calls.append(match_id)
        raise RpcTimeout("timed out")

    harness.gateway.get_claim_status = flaky_status
    result = run(harness.orchestrator.request_claim("1001", match.match_code))

    assert result.error == ErrorKind.RPC_TIMEOUT
    assert len(calls) == 1


def test_claim_success_is_recorded_once(harness):
    match = resolved_match_with_bet(harness)
    token = correlation.encode(InteractionKind.CLAIM, match.id, "1001", now=harness.clock())
    mine(harness)
    put_bet_on_chain(harness, claimed=True)
    harness.gateway.winnings[TX_HASH] = (WALLET, 2 * STAKE_WEI, STAKE_WEI)

    first = run(harness.orchestrator.handle_transaction_result(token, "1001", TX_HASH, True, "c1"))
    second = run(harness.orchestrator.handle_transaction_result(token, "1001", TX_HASH, True, "c1"))

    assert first.success and first.details["newly_claimed"] is True
    assert second.success and second.details["newly_claimed"] is False
    assert harness.ledger.get_bet("1001", match.id).claimed is True
    stats = harness.ledger.get_stats("1001")
    assert stats["total_wins"] == 1
    assert stats["total_won"] == "0.02"
    assert stats["profit"] == "0.01"


def test_claim_without_event_uses_stake_as_floor(harness):
    match = resolved_match_with_bet(harness)
    token = correlation.encode(InteractionKind.CLAIM, match.id, "1001", now=harness.clock())
    mine(harness)
    put_bet_on_chain(harness, claimed=True)

    result = run(harness.orchestrator.handle_transaction_result(token, "1001", TX_HASH, True, "c1"))

    assert result.success
    assert result.details["approximate"] is True
    assert result.details["amount"] == STAKE_WEI
    assert result.details["profit"] == 0


def test_claim_receipt_without_bettor_event_is_not_recorded(harness):
    match = resolved_match_with_bet(harness)
    token = correlation.encode(InteractionKind.CLAIM, match.id, "1001", now=harness.clock())
    mine(harness)
    harness.gateway.winnings[TX_HASH] = (OTHER_WALLET, 5 * STAKE_WEI, 4 * STAKE_WEI)

    result = run(harness.orchestrator.handle_transaction_result(token, "1001", TX_HASH, True, "c1"))

    assert result.error == ErrorKind.TRANSACTION_UNCONFIRMABLE
    assert result.state == SettlementState.UNCONFIRMABLE
    assert harness.ledger.get_bet("1001", match.id).claimed is False
    assert harness.ledger.get_stats("1001")["total_wins"] == 0

    # once the contract shows the payout, the other bettor's event is still ignored
    put_bet_on_chain(harness, claimed=True)
    settled = run(harness.orchestrator.handle_transaction_result(token, "1001", TX_HASH, True, "c1"))

    assert settled.success
    assert settled.details["approximate"] is True
    assert settled.details["amount"] == STAKE_WEI


def test_claim_recheck_failure_is_unconfirmable(harness):
    match = resolved_match_with_bet(harness)
    token = correlation.encode(InteractionKind.CLAIM, match.id, "1001", now=harness.clock())
    mine(harness)

    async def unreachable(match_id, wallet):
        raise RpcTimeout("timed out")

    harness.gateway.get_user_bet = unreachable
    result = run(harness.orchestrator.handle_transaction_result(token, "1001", TX_HASH, True, "c1"))

    assert result.error == ErrorKind.TRANSACTION_UNCONFIRMABLE
    assert harness.ledger.get_bet("1001", match.id).claimed is False


def test_refund_receipt_is_not_recorded_until_contract_agrees(harness):
    match = resolved_match_with_bet(harness, result=None, status="CANCELLED")
    token = correlation.encode(InteractionKind.REFUND, match.id, "1001", now=harness.clock())
    mine(harness)

    result = run(harness.orchestrator.handle_transaction_result(token, "1001", TX_HASH, True, "c1"))

    assert result.error == ErrorKind.TRANSACTION_UNCONFIRMABLE
    assert "/claim_refund" in result.message
    assert harness.ledger.get_bet("1001", match.id).claimed is False


def test_reverted_claim_leaves_ledger_alone(harness):
    match = resolved_match_with_bet(harness)
    token = correlation.encode(InteractionKind.CLAIM, match.id, "1001", now=harness.clock())
    mine(harness, success=False)

    result = run(harness.orchestrator.handle_transaction_result(token, "1001", TX_HASH, True, "c1"))

    assert result.error == ErrorKind.TRANSACTION_REVERTED
    assert "different wallet" in result.message
    assert harness.ledger.get_bet("1001", match.id).claimed is False
    assert harness.ledger.get_stats("1001")["total_wins"] == 0


def test_refund_flow(harness):
    match = resolved_match_with_bet(harness, result=None, status="CANCELLED")
    harness.gateway.refunds[(42, WALLET.lower())] = RefundEligibility(True, "Match cancelled")

    requested = run(harness.orchestrator.request_refund("1001", match.match_code, channel_id="c1"))
    assert requested.success
    prompt = harness.transport.prompts[-1][1]
    assert correlation.classify(prompt.request_id) == InteractionKind.CLAIM_REFUND
    assert prompt.buttons[0].label == "Claim Refund"

    clicked = run(harness.orchestrator.handle_button_click(prompt.request_id, "confirm", "1001", "c1"))
    assert clicked.success
    request = harness.transport.tx_requests[-1][1]
    assert request.data == "claimRefund:42"
    assert correlation.classify(request.request_id) == InteractionKind.REFUND

    mine(harness)
    put_bet_on_chain(harness, claimed=True)
    settled = run(harness.orchestrator.handle_transaction_result(request.request_id, "1001", TX_HASH, True, "c1"))

    assert settled.success
    assert settled.details["amount"] == STAKE_WEI
    assert harness.ledger.get_bet("1001", match.id).claimed is True
    assert harness.ledger.get_stats("1001")["total_wins"] == 0


def test_claim_cancel_button(harness):
    token = correlation.encode(InteractionKind.CLAIM_REFUND, 1, "1001")

    result = run(harness.orchestrator.handle_button_click(token, "cancel", "1001"))

    assert result.success
    assert "Refund claim cancelled" in result.message


def test_pending_view(harness):
    harness.add_match()
    assert run(harness.orchestrator.describe_pending("1001")).details["pending"] is False

    run(harness.orchestrator.place_wager_intent("1001", "1", "away", "0.05", channel_id="c1"))
    harness.clock.advance(60)
    pending = run(harness.orchestrator.describe_pending("1001"))

    assert pending.details["pending"] is True
    assert "Arsenal vs Chelsea" in pending.message
    assert "4m 0s" in pending.message


def add_settled_bet(harness, on_chain_match_id, result=Outcome.HOME, status="FINISHED", claimed=False, home="Arsenal"):
    match = harness.add_match(home=home, hours_from_now=-3, on_chain_match_id=on_chain_match_id)
    harness.ledger.set_match_result(match.id, result, status)
    harness.ledger.create_bet(WagerRecord("1001", WALLET, match.id, on_chain_match_id, Outcome.HOME, STAKE_WEI))
    if claimed:
        harness.ledger.mark_claimed("1001", match.id)
    put_bet_on_chain(harness, on_chain_match_id=on_chain_match_id, claimed=claimed)
    return match


def test_claim_all_prompts_each_settled_match(harness):
    won = add_settled_bet(harness, 42, home="Leeds")
    cancelled = add_settled_bet(harness, 43, result=None, status="CANCELLED", home="Wolves")
    add_settled_bet(harness, 44, result=None, status="SCHEDULED", home="Brentford")
    add_settled_bet(harness, 45, claimed=True, home="Burnley")
    harness.gateway.claim_statuses[(42, WALLET.lower())] = ClaimStatus(True, ClaimType.WINNINGS, 2 * STAKE_WEI)
    harness.gateway.refunds[(43, WALLET.lower())] = RefundEligibility(True, "Match cancelled")

    result = run(harness.orchestrator.request_claim_all("1001", channel_id="c1"))

    assert result.success, result.message
    assert result.details["prompted"] == 2
    assert result.details["skipped"] == 0
    assert "separate transaction" in result.message
    kinds = {(meta.kind, meta.match_id) for meta in
             (correlation.decode(prompt.request_id) for _, prompt, _, _ in harness.transport.prompts)}
    assert kinds == {(InteractionKind.CLAIM, won.id), (InteractionKind.CLAIM_REFUND, cancelled.id)}


def test_claim_all_skips_losses(harness):
    add_settled_bet(harness, 42, result=Outcome.AWAY)

    result = run(harness.orchestrator.request_claim_all("1001", channel_id="c1"))

    assert result.success
    assert result.details["prompted"] == 0
    assert result.details["skipped"] == 1
    assert "No Unclaimed Winnings" in result.message
    assert harness.transport.prompts == []


def test_claim_all_with_no_bets(harness):
    result = run(harness.orchestrator.request_claim_all("1001"))

    assert result.success
    assert result.details["prompted"] == 0
