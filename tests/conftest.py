"""
Shared fakes for the settlement tests: contract gateway, chat transport,
wallet resolver and a hand-wound clock.
"""

import pytest

from matchday.errors import RpcTimeout
from matchday.intents import IntentRegister
from matchday.ledger import Ledger
from matchday.models import ClaimStatus, ClaimType, MatchCreation, RefundEligibility
from matchday.settlement import SettlementOrchestrator

CONTRACT = "0x1111111111111111111111111111111111111111"
WALLET = "0x2222222222222222222222222222222222222222"
OTHER_WALLET = "0x3333333333333333333333333333333333333333"

# 2026-01-08 12:00:00 UTC
NOW = 1767873600
TX_HASH = "0x" + "ab" * 32
OTHER_TX_HASH = "0x" + "cd" * 32


class FakeClock:
    def __init__(self, now=NOW):
        self.now = float(now)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeGateway:
    contract_address = CONTRACT

    def __init__(self):
        self.bets = {}            # (on-chain match id, wallet lower) -> ContractBet
        self.claim_statuses = {}  # same key -> ClaimStatus
        self.refunds = {}         # same key -> RefundEligibility
        self.balances = {}        # wallet lower -> wei
        self.receipts = {}        # tx hash -> TxReceipt or exception
        self.winnings = {}        # tx hash -> (bettor, amount, profit)
        self.next_match_id = 42
        self.create_error = None  # (ErrorKind, message)
        self.batch_error = None
        self.created = []

    async def get_user_bet(self, match_id, wallet):
        return self.bets.get((match_id, wallet.lower()))

    async def get_claim_status(self, match_id, wallet):
        return self.claim_statuses.get((match_id, wallet.lower()), ClaimStatus(False, ClaimType.NONE, 0))

    async def is_refund_eligible(self, match_id, wallet):
        return self.refunds.get((match_id, wallet.lower()), RefundEligibility(False, "No bet found"))

    async def get_balance(self, address):
        return self.balances.get(address.lower(), 0)

    async def get_batch_user_bets(self, match_ids, wallet):
        if self.batch_error is not None:
            raise self.batch_error
        return [(match_id, self.bets.get((match_id, wallet.lower()))) for match_id in match_ids]

    def encode_wager(self, match_id, prediction):
        return f"placeBet:{match_id}:{int(prediction)}"

    def encode_claim_winnings(self, match_id):
        return f"claimWinnings:{match_id}"

    def encode_claim_refund(self, match_id):
        return f"claimRefund:{match_id}"

    async def create_match(self, home_team, away_team, competition, kickoff_time):
        self.created.append((home_team, away_team, competition, kickoff_time))
        if self.create_error is not None:
            kind, message = self.create_error
            return MatchCreation(error=message, error_kind=kind)
        match_id = self.next_match_id
        self.next_match_id += 1
        return MatchCreation(match_id=match_id, tx_hash="0x" + "ee" * 32)

    async def wait_for_receipt(self, tx_hash, timeout=None):
        receipt = self.receipts.get(tx_hash)
        if isinstance(receipt, Exception):
            raise receipt
        if receipt is None:
            raise RpcTimeout(f"No receipt for {tx_hash}")
        return receipt

    def parse_winnings_claimed(self, receipt, match_id=None, bettor=None):
        event = self.winnings.get(receipt.tx_hash)
        if event is None or (bettor is not None and event[0].lower() != bettor.lower()):
            return None
        return event[1], event[2]


class FakeTransport:
    def __init__(self):
        self.messages = []
        self.prompts = []
        self.tx_requests = []
        self.prompt_failures = 0
        self.tx_failures = 0

    async def send_message(self, channel_id, text, thread_id=None):
        self.messages.append((channel_id, text, thread_id))

    async def send_interactive_prompt(self, channel_id, prompt, recipient_id, thread_id=None):
        if self.prompt_failures:
            self.prompt_failures -= 1
            raise ConnectionError("gateway reset")
        self.prompts.append((channel_id, prompt, recipient_id, thread_id))

    async def send_transaction_request(self, channel_id, request, recipient_id, thread_id=None):
        if self.tx_failures:
            self.tx_failures -= 1
            raise ConnectionError("gateway reset")
        self.tx_requests.append((channel_id, request, recipient_id, thread_id))


class FakeWallets:
    def __init__(self, wallets=None):
        self.wallets = wallets or {}

    async def resolve_primary_wallet(self, user_id):
        linked = self.wallets.get(str(user_id)) or []
        return linked[0] if linked else None

    async def resolve_linked_wallets(self, user_id):
        return list(self.wallets.get(str(user_id)) or [])


async def no_sleep(delay):
    return None


class Harness:
    """Everything a settlement test needs, wired together"""

    def __init__(self, tmp_path):
        self.clock = FakeClock()
        self.gateway = FakeGateway()
        self.transport = FakeTransport()
        self.wallets = FakeWallets({"1001": [WALLET]})
        self.ledger = Ledger(data_dir=str(tmp_path), clock=self.clock)
        self.intents = IntentRegister(ttl_seconds=300, clock=self.clock)
        self.contract_live = True
        self.orchestrator = SettlementOrchestrator(
            self.gateway, self.ledger, self.wallets, self.transport, intents=self.intents,
            clock=self.clock, sleep=no_sleep, contract_available=lambda: self.contract_live,
        )

    def add_match(self, home="Arsenal", away="Chelsea", hours_from_now=3, on_chain_match_id=None):
        match = self.ledger.add_match(home, away, "Premier League", int(self.clock() + hours_from_now * 3600))
        if on_chain_match_id is not None:
            self.ledger.set_on_chain_match_id(match.id, on_chain_match_id)
            match.on_chain_match_id = on_chain_match_id
        return match


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)
