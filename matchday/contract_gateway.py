"""
contract_gateway.py - Async access to the match escrow contract

Reads and the operator's createMatch go through web3.py (run in worker threads
so the event loop never blocks). Multi-match bet lookups are sent as a single
JSON-RPC batch over aiohttp.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple

import aiohttp
from eth_account import Account
from web3 import Web3
from web3.logs import DISCARD

from matchday.bot_logging import log_transaction
from matchday.config import BotConfig
from matchday.errors import (
    ErrorKind, GatewayError, GatewayUnavailable, RpcTimeout, TRANSIENT_GATEWAY_ERRORS, classify_gateway_error,
)
from matchday.models import (
    ClaimStatus, ClaimType, ContractBet, MatchCreation, Outcome, RefundEligibility, TxReceipt,
)
from matchday.retry import retry_with_backoff

logger = logging.getLogger('matchday.contract')


def _inputs(*params):
    return [{"name": name, "type": typ} for typ, name in params]


BET_TUPLE = {
    "name": "", "type": "tuple",
    "components": _inputs(("address", "bettor"), ("uint256", "amount"), ("uint8", "prediction"), ("bool", "claimed")),
}

ESCROW_ABI = [
    {"type": "function", "name": "getUserBet", "stateMutability": "view",
     "inputs": _inputs(("uint256", "matchId"), ("address", "user")), "outputs": [BET_TUPLE]},
    {"type": "function", "name": "getClaimStatus", "stateMutability": "view",
     "inputs": _inputs(("uint256", "matchId"), ("address", "user")),
     "outputs": _inputs(("bool", "canClaim"), ("uint8", "claimType"), ("uint256", "amount"))},
    {"type": "function", "name": "isRefundEligible", "stateMutability": "view",
     "inputs": _inputs(("uint256", "matchId"), ("address", "user")),
     "outputs": _inputs(("bool", "eligible"), ("string", "reason"))},
    {"type": "function", "name": "nextMatchId", "stateMutability": "view",
     "inputs": [], "outputs": _inputs(("uint256", ""))},
    {"type": "function", "name": "createMatch", "stateMutability": "nonpayable",
     "inputs": _inputs(("string", "homeTeam"), ("string", "awayTeam"), ("string", "competition"),
                       ("uint256", "kickoffTime")),
     "outputs": _inputs(("uint256", ""))},
    {"type": "function", "name": "placeBet", "stateMutability": "payable",
     "inputs": _inputs(("uint256", "matchId"), ("uint8", "prediction")), "outputs": []},
    {"type": "function", "name": "claimWinnings", "stateMutability": "nonpayable",
     "inputs": _inputs(("uint256", "matchId")), "outputs": []},
    {"type": "function", "name": "claimRefund", "stateMutability": "nonpayable",
     "inputs": _inputs(("uint256", "matchId")), "outputs": []},
    {"type": "event", "name": "MatchCreated", "anonymous": False, "inputs": [
        {"name": "matchId", "type": "uint256", "indexed": True},
        {"name": "homeTeam", "type": "string", "indexed": False},
        {"name": "awayTeam", "type": "string", "indexed": False},
        {"name": "competition", "type": "string", "indexed": False},
        {"name": "kickoffTime", "type": "uint256", "indexed": False},
    ]},
    {"type": "event", "name": "WinningsClaimed", "anonymous": False, "inputs": [
        {"name": "matchId", "type": "uint256", "indexed": True},
        {"name": "bettor", "type": "address", "indexed": True},
        {"name": "amount", "type": "uint256", "indexed": False},
        {"name": "profit", "type": "uint256", "indexed": False},
    ]},
]

BET_TUPLE_TYPE = "(address,uint256,uint8,bool)"


def _to_bet(raw) -> Optional[ContractBet]:
    """None when the contract reports no stake for this wallet"""
    bettor, amount, prediction, claimed = raw
    if int(amount) == 0:
        return None
    return ContractBet(bettor=bettor, amount=int(amount), prediction=Outcome(int(prediction)), claimed=bool(claimed))


class ContractGateway:
    """Escrow contract client used by settlement and reconciliation"""

    def __init__(self, contract_address: str = None, rpc_url: str = None, chain_id: int = None,
                 operator_private_key: str = None, web3: Web3 = None):
        self.rpc_url = rpc_url or BotConfig.RPC_URL
        self.chain_id = chain_id or BotConfig.CHAIN_ID
        self.rpc_timeout = BotConfig.RPC_TIMEOUT_SECONDS
        self.receipt_timeout = BotConfig.RECEIPT_TIMEOUT_SECONDS

        self.w3 = web3 or Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.rpc_timeout}))
        self._address = Web3.to_checksum_address(contract_address or BotConfig.CONTRACT_ADDRESS)
        self.contract = self.w3.eth.contract(address=self._address, abi=ESCROW_ABI)

        key = operator_private_key if operator_private_key is not None else BotConfig.OPERATOR_PRIVATE_KEY
        self.operator = Account.from_key(key) if key else None
        if self.operator:
            logger.info(f"Contract gateway ready | Contract: {self._address} | Operator: {self.operator.address[:10]}...")
        else:
            logger.warning("Contract gateway has no operator key - createMatch will fail")

    @property
    def contract_address(self) -> str:
        return self._address

    async def _run(self, label: str, fn, *args, deadline: float = None, **kwargs):
        """Run a blocking web3 call in a worker thread; errors come back classified"""
        # wait_for cannot cancel the worker thread; it keeps polling until web3's own
        # timeout, so callers pass a deadline above that timeout
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=deadline or self.rpc_timeout)
        except GatewayError:
            raise
        except Exception as e:
            error = classify_gateway_error(e)
            logger.warning(f"⚠️ RPC {label} failed ({type(error).__name__}): {e}")
            raise error from e

    # Reads

    async def get_user_bet(self, match_id: int, wallet: str) -> Optional[ContractBet]:
        call = self.contract.functions.getUserBet(int(match_id), Web3.to_checksum_address(wallet))
        raw = await self._run("getUserBet", call.call)
        return _to_bet(raw)

    async def get_claim_status(self, match_id: int, wallet: str) -> ClaimStatus:
        call = self.contract.functions.getClaimStatus(int(match_id), Web3.to_checksum_address(wallet))
        can_claim, claim_type, amount = await self._run("getClaimStatus", call.call)
        return ClaimStatus(can_claim=bool(can_claim), claim_type=ClaimType(int(claim_type)), amount=int(amount))

    async def is_refund_eligible(self, match_id: int, wallet: str) -> RefundEligibility:
        call = self.contract.functions.isRefundEligible(int(match_id), Web3.to_checksum_address(wallet))
        eligible, reason = await self._run("isRefundEligible", call.call)
        return RefundEligibility(eligible=bool(eligible), reason=reason or None)

    async def get_next_match_id(self) -> int:
        return int(await self._run("nextMatchId", self.contract.functions.nextMatchId().call))

    async def get_balance(self, address: str) -> int:
        return int(await self._run("getBalance", self.w3.eth.get_balance, Web3.to_checksum_address(address)))

    async def get_batch_user_bets(self, match_ids: List[int], wallet: str) -> List[Tuple[int, Optional[ContractBet]]]:
        """One JSON-RPC batch of getUserBet eth_calls; entries that error come back as None"""
        if not match_ids:
            return []

        wallet = Web3.to_checksum_address(wallet)
        payload = []
        for request_id, match_id in enumerate(match_ids):
            data = self.contract.encode_abi("getUserBet", args=[int(match_id), wallet])
            payload.append({
                "jsonrpc": "2.0",
                "id": request_id,
                "method": "eth_call",
                "params": [{"to": self._address, "data": data}, "latest"],
            })

        start_time = time.time()
        try:
            timeout = aiohttp.ClientTimeout(total=self.rpc_timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.rpc_url, json=payload) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise GatewayUnavailable(f"RPC HTTP {response.status}: {error_text[:200]}")
                    replies = await response.json(content_type=None)
        except GatewayError:
            raise
        except Exception as e:
            raise classify_gateway_error(e) from e

        if isinstance(replies, dict):
            # Some providers answer a rejected batch with a single error object
            raise GatewayUnavailable(f"RPC batch rejected: {replies.get('error')}")

        by_id: Dict[int, dict] = {reply.get("id"): reply for reply in replies}
        results = []
        for request_id, match_id in enumerate(match_ids):
            reply = by_id.get(request_id) or {}
            result = reply.get("result")
            if not result or result == "0x":
                if reply.get("error"):
                    logger.warning(f"⚠️ Batch getUserBet failed for match {match_id}: {reply['error']}")
                results.append((int(match_id), None))
                continue
            (raw,) = self.w3.codec.decode([BET_TUPLE_TYPE], bytes.fromhex(result[2:]))
            results.append((int(match_id), _to_bet(raw)))

        duration_ms = (time.time() - start_time) * 1000
        logger.info(f"⚡ Batch getUserBet | Wallet: {wallet[:10]}... | Matches: {len(match_ids)} | {duration_ms:.0f}ms")
        return results

    # Call data for user-signed transactions

    def encode_wager(self, match_id: int, prediction: Outcome) -> str:
        return self.contract.encode_abi("placeBet", args=[int(match_id), int(prediction)])

    def encode_claim_winnings(self, match_id: int) -> str:
        return self.contract.encode_abi("claimWinnings", args=[int(match_id)])

    def encode_claim_refund(self, match_id: int) -> str:
        return self.contract.encode_abi("claimRefund", args=[int(match_id)])

    # Operator writes

    def _send_create_match(self, home_team: str, away_team: str, competition: str, kickoff_time: int) -> str:
        call = self.contract.functions.createMatch(home_team, away_team, competition, int(kickoff_time))
        tx = call.build_transaction({
            "from": self.operator.address,
            "nonce": self.w3.eth.get_transaction_count(self.operator.address, "pending"),
            "chainId": self.chain_id,
        })
        signed = self.operator.sign_transaction(tx)
        return Web3.to_hex(self.w3.eth.send_raw_transaction(signed.raw_transaction))

    async def create_match(self, home_team: str, away_team: str, competition: str, kickoff_time: int) -> MatchCreation:
        """Create a match as the operator and wait for its id.

        Building, signing and broadcasting are retried on transient errors. Once
        a hash exists the receipt is awaited exactly once, so a slow network can
        never produce two matches.
        """
        if self.operator is None:
            return MatchCreation(error="Operator key is not configured", error_kind=ErrorKind.NOT_AUTHORIZED_MANAGER)

        start_time = time.time()
        logger.info(f"📝 Creating match on-chain: {home_team} vs {away_team}")
        try:
            tx_hash = await retry_with_backoff(
                lambda: self._run("createMatch", self._send_create_match, home_team, away_team, competition,
                                  kickoff_time),
                retry_on=TRANSIENT_GATEWAY_ERRORS,
            )
        except GatewayError as e:
            log_transaction("operator", "create_match", False, error=type(e).__name__)
            return MatchCreation(error=str(e), error_kind=e.kind)

        try:
            receipt = await self.wait_for_receipt(tx_hash)
        except GatewayError as e:
            log_transaction("operator", "create_match", False, tx_hash=tx_hash, error=type(e).__name__)
            return MatchCreation(tx_hash=tx_hash, error=str(e), error_kind=e.kind)

        duration_ms = (time.time() - start_time) * 1000
        if not receipt.success:
            log_transaction("operator", "create_match", False, tx_hash=tx_hash, duration_ms=duration_ms)
            return MatchCreation(tx_hash=tx_hash, error="createMatch transaction reverted",
                                 error_kind=ErrorKind.TRANSACTION_REVERTED)

        match_id = self._parse_match_created(receipt)
        if match_id is None:
            # Event missing from the receipt; the newest id is ours
            try:
                match_id = await self.get_next_match_id() - 1
            except GatewayError as e:
                return MatchCreation(tx_hash=tx_hash, error=str(e), error_kind=e.kind)

        log_transaction("operator", "create_match", True, tx_hash=tx_hash, duration_ms=duration_ms,
                        on_chain_match_id=match_id)
        return MatchCreation(match_id=match_id, tx_hash=tx_hash)

    def _parse_match_created(self, receipt: TxReceipt) -> Optional[int]:
        if receipt.raw is None:
            return None
        events = self.contract.events.MatchCreated().process_receipt(receipt.raw, errors=DISCARD)
        return int(events[0].args.matchId) if events else None

    # Receipts

    async def wait_for_receipt(self, tx_hash: str, timeout: float = None) -> TxReceipt:
        """Wait for one confirmation; raises RpcTimeout/GatewayUnavailable instead of guessing"""
        timeout = timeout or self.receipt_timeout
        raw = await self._run("waitForReceipt", self.w3.eth.wait_for_transaction_receipt, tx_hash,
                              deadline=timeout + 5, timeout=timeout, poll_latency=2)
        if raw is None:
            raise RpcTimeout(f"No receipt for {tx_hash}")
        return TxReceipt(
            tx_hash=tx_hash,
            success=raw.get("status") == 1,
            to=raw.get("to"),
            logs=list(raw.get("logs") or []),
            raw=raw,
        )

    def parse_winnings_claimed(self, receipt: TxReceipt, match_id: int = None,
                               bettor: str = None) -> Optional[Tuple[int, int]]:
        """(amount, profit) from the bettor's WinningsClaimed event, or None if the receipt has none"""
        if receipt.raw is None:
            return None
        for event in self.contract.events.WinningsClaimed().process_receipt(receipt.raw, errors=DISCARD):
            if match_id is not None and int(event.args.matchId) != int(match_id):
                continue
            if bettor is not None and str(event.args.bettor).lower() != bettor.lower():
                continue
            return int(event.args.amount), int(event.args.profit)
        return None
