"""
config.py - Bot Configuration Settings
Values come from the environment (or a local .env file)
"""

import os
from typing import List

from dotenv import load_dotenv

load_dotenv()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _env_int_list(name: str) -> List[int]:
    raw = os.getenv(name, "")
    return [int(part) for part in raw.split(",") if part.strip().isascii() and part.strip().isdigit()]


class BotConfig:
    """Bot configuration settings"""

    # Discord
    DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
    ADMIN_USER_IDS = _env_int_list("ADMIN_USER_IDS")

    # Escrow contract and chain
    CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS", ZERO_ADDRESS)
    RPC_URL = os.getenv("RPC_URL", "https://mainnet.base.org")
    CHAIN_ID = int(os.getenv("CHAIN_ID", "8453"))
    OPERATOR_PRIVATE_KEY = os.getenv("OPERATOR_PRIVATE_KEY", "")  # ⚠️ KEEP THIS SECRET!
    EXPLORER_TX_URL = os.getenv("EXPLORER_TX_URL", "https://basescan.org/tx/")

    # Betting limits (in ETH)
    MIN_STAKE = os.getenv("MIN_STAKE", "0.001")
    MAX_STAKE = os.getenv("MAX_STAKE", "0.1")
    PENDING_BET_TIMEOUT_SECONDS = int(os.getenv("PENDING_BET_TIMEOUT_SECONDS", "300"))
    GAS_BUFFER_ETH = os.getenv("GAS_BUFFER_ETH", "0.00025")  # headroom on top of the stake at balance check

    # Network behaviour
    RPC_TIMEOUT_SECONDS = float(os.getenv("RPC_TIMEOUT_SECONDS", "30"))
    RECEIPT_TIMEOUT_SECONDS = float(os.getenv("RECEIPT_TIMEOUT_SECONDS", "120"))
    RETRY_ATTEMPTS = int(os.getenv("RETRY_ATTEMPTS", "3"))
    RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
    RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "10.0"))

    # Reconciliation window
    RECONCILE_LOOKBACK_DAYS = int(os.getenv("RECONCILE_LOOKBACK_DAYS", "7"))

    # Storage
    DATA_DIR = os.getenv("DATA_DIR", os.path.join(os.path.dirname(__file__), "..", "data"))
    LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.path.dirname(__file__), "..", "logs"))


def is_contract_available() -> bool:
    """False while the escrow contract address is still the zero placeholder"""
    address = (BotConfig.CONTRACT_ADDRESS or "").strip().lower()
    return bool(address) and address != ZERO_ADDRESS


def is_user_admin(user_id: int) -> bool:
    """Check if user ID has admin permissions"""
    return user_id in BotConfig.ADMIN_USER_IDS
