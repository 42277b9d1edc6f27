import functools
import logging
import os
import sys
import time
from logging.handlers import RotatingFileHandler

from matchday.config import BotConfig


def setup_bot_logging():
    """Setup logging for the bot - one rotating file with everything plus the console"""
    os.makedirs(BotConfig.LOG_DIR, exist_ok=True)

    logger = logging.getLogger('matchday')
    logger.setLevel(logging.INFO)
    logger.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_handler = RotatingFileHandler(
        os.path.join(BotConfig.LOG_DIR, 'bot_activity.log'),
        maxBytes=20*1024*1024,
        backupCount=10
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


# Modules log through children of the 'matchday' logger; handlers are attached
# once by the process entry point.
bot_logger = logging.getLogger('matchday')


def _fields(details: dict) -> str:
    return "".join(f" | {k}={v}" for k, v in details.items() if v is not None)


def _short_hash(tx_hash: str) -> str:
    return f"{tx_hash[:10]}...{tx_hash[-6:]}" if tx_hash and len(tx_hash) > 16 else str(tx_hash)


def log_error(context: str, error, user_id=None):
    user_info = f" | User: {user_id}" if user_id else ""
    bot_logger.error(f"💥 ERROR | {context}{user_info} | {error}")


def log_transaction(user_id, kind: str, success: bool, tx_hash: str = None, duration_ms: float = None, **details):
    """One line per transaction outcome we observed: wagers, claims, refunds and the operator's createMatch"""
    emoji = "🟢" if success else "🔴"
    timing = f" | {duration_ms:.0f}ms" if duration_ms else ""
    message = (f"{emoji} TX {kind.upper()} | User: {user_id} | {'CONFIRMED' if success else 'FAILED'}"
               f"{' | ' + _short_hash(tx_hash) if tx_hash else ''}{timing}{_fields(details)}")
    if success:
        bot_logger.info(message)
    else:
        bot_logger.error(message)


def log_bet_action(user_id, action: str, match_id: int = None, **details):
    """Wager lifecycle: intents, state transitions and ledger writes"""
    match_info = f" | Match: {match_id}" if match_id is not None else ""
    bot_logger.info(f"🎯 BET | User: {user_id} | {action}{match_info}{_fields(details)}")


def log_wallet_action(user_id, action: str, address: str = None):
    shown = f" | {address[:6]}...{address[-4:]}" if address and len(address) > 10 else ""
    bot_logger.info(f"👛 WALLET | User: {user_id} | {action}{shown}")


def log_timing(operation: str, started_at: float, success: bool = True, **details):
    """Elapsed wall time since started_at for slow paths (batch reads, commands)"""
    duration_ms = (time.time() - started_at) * 1000
    emoji = "⚡" if success else "⏰"
    bot_logger.info(f"{emoji} PERF | {operation} | {duration_ms:.0f}ms | {'ok' if success else 'failed'}{_fields(details)}")


def log_command_result(user_id, command: str, success: bool, error_kind: str = None, **details):
    """What the user was told: success, or the error kind behind the reply"""
    emoji = "✅" if success else "❌"
    message = f"{emoji} /{command} | User: {user_id}{' | ' + error_kind if error_kind else ''}{_fields(details)}"
    if success:
        bot_logger.info(message)
    else:
        bot_logger.warning(message)


def log_bot_lifecycle(event: str):
    bot_logger.info(f"{'🚀' if event == 'STARTUP' else '🛑'} BOT {event} | Contract: {BotConfig.CONTRACT_ADDRESS} "
                    f"| Chain: {BotConfig.CHAIN_ID}")


def log_command(func):
    """Decorator for slash commands: logs who ran what with which options, and how long it took"""

    @functools.wraps(func)
    async def wrapper(interaction, *args, **kwargs):
        started_at = time.time()
        command_name = func.__name__
        user_id = interaction.user.id
        options = {k: str(v)[:50] for k, v in kwargs.items()}
        bot_logger.info(f"⚡ /{command_name} | User: {interaction.user.display_name} ({user_id}){_fields(options)}")

        try:
            result = await func(interaction, *args, **kwargs)
        except Exception as e:
            log_error(f"command_{command_name}", e, user_id)
            log_timing(f"command_{command_name}", started_at, success=False, user_id=user_id)
            raise
        log_timing(f"command_{command_name}", started_at, user_id=user_id)
        return result

    return wrapper
