"""Retry utilities."""
from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay_s: float = 1.0,
    backoff_factor: float = 2.0,
    retry_on: tuple = (Exception,),
    sleep: Sleep = asyncio.sleep,
    label: str = "call",
) -> Tuple[T, int]:
    """
    Run `fn` with exponential backoff. Returns (value, attempts).
    The last exception is re-raised once `max_retries` retries are used up.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn(), attempt
        except retry_on as e:
            if attempt > max_retries:
                raise
            delay = base_delay_s * (backoff_factor ** (attempt - 1))
            logger.warning("%s failed (attempt %d/%d), retrying in %.1fs: %s",
                           label, attempt, max_retries + 1, delay, e)
            await sleep(delay)
