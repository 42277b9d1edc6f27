"""
reconciliation.py - Recover wagers that exist on-chain but not in the local ledger

Only ever inserts. Running it twice with no new on-chain activity inserts
nothing the second time.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List

from matchday.bot_logging import log_bet_action, log_error, log_timing
from matchday.config import BotConfig
from matchday.errors import ErrorKind, GatewayError
from matchday.formatting import format_outcome, truncate_address, wei_to_eth_str
from matchday.ledger import LedgerError
from matchday.models import Match, WagerRecord

logger = logging.getLogger('matchday.reconciliation')


@dataclass
class RecoveredBet:
    match: Match
    record: WagerRecord


@dataclass
class ReconciliationReport:
    user_id: str
    wallet: str = None
    checked: int = 0
    found_on_chain: int = 0
    already_synced: int = 0
    recovered: List[RecoveredBet] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    error: ErrorKind = None
    message: str = ""

    @property
    def inserted(self) -> int:
        return len(self.recovered)


class ReconciliationEngine:
    def __init__(self, gateway, ledger, wallets, clock=time.time):
        self.gateway = gateway
        self.ledger = ledger
        self.wallets = wallets
        self.clock = clock

    def _candidate_matches(self, now: float) -> Dict[int, Match]:
        """Recent and today's matches that exist on-chain, keyed by local id"""
        candidates: Dict[int, Match] = {}
        recent = self.ledger.get_recent_matches(BotConfig.RECONCILE_LOOKBACK_DAYS, now=now)
        for match in recent + self.ledger.get_todays_matches(now=now):
            if match.on_chain_match_id is not None:
                candidates[match.id] = match
        return candidates

    async def reconcile(self, user_id) -> ReconciliationReport:
        user_id = str(user_id)
        report = ReconciliationReport(user_id=user_id)
        start_time = time.time()

        wallet = await self.wallets.resolve_primary_wallet(user_id)
        if not wallet:
            report.error = ErrorKind.WALLET_UNAVAILABLE
            report.message = "❌ Couldn't find your wallet address. Link one with `/link_wallet` first."
            return report
        report.wallet = wallet

        candidates = self._candidate_matches(self.clock())
        if not candidates:
            report.message = "📭 **No Matches Found**\n\nNo on-chain matches available to verify."
            return report

        # two local fixtures can point at one on-chain match; read it once
        on_chain_ids = sorted({match.on_chain_match_id for match in candidates.values()})
        report.checked = len(candidates)
        try:
            results = await self.gateway.get_batch_user_bets(on_chain_ids, wallet)
        except GatewayError as e:
            report.error = e.kind
            report.message = "❌ Network error while checking your bets on-chain. Please try again in a few moments."
            log_timing("reconcile", start_time, success=False, user_id=user_id)
            return report

        bets_by_chain = dict(results)
        for match in candidates.values():
            on_chain_id = match.on_chain_match_id
            bet = bets_by_chain.get(on_chain_id)
            if bet is None or bet.amount == 0:
                continue
            report.found_on_chain += 1

            if self.ledger.has_bet(user_id, match.id):
                report.already_synced += 1
                continue

            record = WagerRecord(
                user_id=user_id,
                wallet_address=wallet,
                match_id=match.id,
                on_chain_match_id=on_chain_id,
                prediction=bet.prediction,
                stake_wei=bet.amount,
                tx_hash=None,
            )
            try:
                if not self.ledger.create_bet(record):
                    report.already_synced += 1
                    continue
                self.ledger.record_bet(user_id, wei_to_eth_str(bet.amount))
            except LedgerError as e:
                log_error("reconcile_insert", e, user_id)
                report.failed.append(match.id)
                continue

            report.recovered.append(RecoveredBet(match, record))
            log_bet_action(user_id, "BET_RECOVERED", match.id, on_chain_match_id=on_chain_id,
                           stake_wei=bet.amount, wallet=truncate_address(wallet))

        report.message = self._summary(report)
        log_timing("reconcile", start_time, success=True, user_id=user_id,
                        checked=report.checked, recovered=report.inserted)
        return report

    @staticmethod
    def _summary(report: ReconciliationReport) -> str:
        if report.found_on_chain == 0:
            return (f"📭 **No Bets Found**\n\nChecked {report.checked} on-chain match(es) for "
                    f"{truncate_address(report.wallet)} and found no bets.")

        message = (f"✅ **Verification Complete**\n\nChecked {report.checked} on-chain match(es)\n"
                   f"• Bets found on-chain: {report.found_on_chain}\n"
                   f"• Already synced: {report.already_synced}\n"
                   f"• Recovered: {report.inserted}\n")
        for recovered in report.recovered:
            message += (f"\n🔄 **{recovered.match.title}**: {format_outcome(recovered.record.prediction)}, "
                        f"{wei_to_eth_str(recovered.record.stake_wei)} ETH")
        if report.failed:
            message += "\n\n⚠️ Some bets couldn't be saved. Please run `/verify` again."
        return message
