"""
wallets.py - Which EVM addresses belong to which Discord user

Each user has one primary wallet (the account the bot treats as theirs for
claims and reconciliation) and any number of additional linked wallets they
may sign wagers with. Keys are never stored; users sign in their own wallet.
"""

import os
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from web3 import Web3

from matchday.bot_logging import log_error, log_wallet_action
from matchday.config import BotConfig
from matchday.storage import load_json, save_json

MAX_LINKED_WALLETS = 5


class WalletValidator:
    @staticmethod
    def is_valid_address(address: str) -> bool:
        return bool(address) and Web3.is_address(address)

    @staticmethod
    def normalize(address: str) -> str:
        return Web3.to_checksum_address(address)


class WalletRegistry:
    """JSON-backed wallet resolver"""

    def __init__(self, path: str = None):
        self.path = path or os.path.join(BotConfig.DATA_DIR, 'user_wallets.json')

    def _load(self) -> Dict[str, dict]:
        try:
            return load_json(self.path, {})
        except (OSError, ValueError) as e:
            log_error("load_wallets_data", e)
            return {}

    def _save(self, wallets: Dict[str, dict]) -> bool:
        try:
            save_json(self.path, wallets)
            return True
        except OSError as e:
            log_error("save_wallets_data", e)
            return False

    def get_entry(self, user_id) -> Optional[dict]:
        return self._load().get(str(user_id))

    async def resolve_primary_wallet(self, user_id) -> Optional[str]:
        entry = self.get_entry(user_id)
        if not entry:
            return None
        return entry.get("primary") or next(iter(entry.get("linked") or []), None)

    async def resolve_linked_wallets(self, user_id) -> List[str]:
        """Every wallet the user controls, primary first, without duplicates"""
        entry = self.get_entry(user_id)
        if not entry:
            return []
        wallets = []
        for address in [entry.get("primary")] + list(entry.get("linked") or []):
            if address and address.lower() not in [w.lower() for w in wallets]:
                wallets.append(address)
        return wallets

    def link_wallet(self, user_id, address: str, primary: bool = False) -> Tuple[bool, str]:
        """Register an address for the user; returns (ok, message for the user)"""
        if not WalletValidator.is_valid_address(address):
            return False, "❌ That doesn't look like a valid EVM address (0x followed by 40 hex characters)."
        address = WalletValidator.normalize(address)

        wallets = self._load()
        for other_id, other in wallets.items():
            if other_id == str(user_id):
                continue
            owned = [other.get("primary")] + list(other.get("linked") or [])
            if address.lower() in [a.lower() for a in owned if a]:
                return False, "❌ This wallet is already linked to another user."

        entry = wallets.setdefault(str(user_id), {"primary": None, "linked": []})
        linked = [a for a in entry.get("linked") or [] if a.lower() != address.lower()]

        if primary:
            if entry.get("primary") and entry["primary"].lower() != address.lower():
                linked.insert(0, entry["primary"])
            entry["primary"] = address
        elif entry.get("primary") and entry["primary"].lower() == address.lower():
            return True, "ℹ️ That address is already your primary wallet."
        elif entry.get("primary") is None:
            entry["primary"] = address
        else:
            if len(linked) >= MAX_LINKED_WALLETS:
                return False, f"❌ You can link at most {MAX_LINKED_WALLETS} extra wallets."
            linked.append(address)

        entry["linked"] = linked[:MAX_LINKED_WALLETS]
        entry["updated_at"] = datetime.now().isoformat()
        if not self._save(wallets):
            return False, "❌ Failed to save your wallet. Please try again."

        log_wallet_action(user_id, "LINK_WALLET_PRIMARY" if entry["primary"] == address else "LINK_WALLET", address)
        return True, f"✅ Wallet `{address}` linked."
