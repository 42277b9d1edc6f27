"""
retry.py - Bounded retry with exponential backoff for transient network errors
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from matchday.config import BotConfig
from matchday.errors import TRANSIENT_GATEWAY_ERRORS

logger = logging.getLogger('matchday.retry')

T = TypeVar("T")

_NETWORK_MARKERS = ("network", "timeout", "timed out", "econnrefused", "enotfound",
                    "connection reset", "temporarily unavailable", "503", "502")


def is_retryable_error(error: Exception) -> bool:
    """True for errors that look like the network, not like a rejected request"""
    if isinstance(error, TRANSIENT_GATEWAY_ERRORS):
        return True
    if isinstance(error, (ConnectionError, asyncio.TimeoutError)):
        return True

    # discord.py HTTP errors expose a status; 5xx are worth another go
    status = getattr(error, "status", None)
    if isinstance(status, int) and status >= 500:
        return True

    message = str(error).lower()
    return any(marker in message for marker in _NETWORK_MARKERS)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    attempts: int = None,
    base_delay: float = None,
    max_delay: float = None,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call fn up to `attempts` times, sleeping base_delay * 2**n between tries.

    Only errors that pass is_retryable_error (or are instances of retry_on,
    when given) are retried; anything else propagates immediately, as does the
    error from the final attempt.
    """
    attempts = attempts or BotConfig.RETRY_ATTEMPTS
    base_delay = BotConfig.RETRY_BASE_DELAY if base_delay is None else base_delay
    max_delay = BotConfig.RETRY_MAX_DELAY if max_delay is None else max_delay

    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as e:
            retryable = isinstance(e, retry_on) if retry_on else is_retryable_error(e)
            if not retryable or attempt == attempts - 1:
                raise

            delay = min(base_delay * (2 ** attempt), max_delay)
            logger.warning(f"⚠️ Retryable error on attempt {attempt + 1}/{attempts}, retrying in {delay:.1f}s: {e}")
            await sleep(delay)

    raise RuntimeError("retry_with_backoff called with attempts < 1")
