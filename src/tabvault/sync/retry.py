"""Bounded exponential backoff for flaky async operations."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger("tabvault.sync.retry")

T = TypeVar("T")


def backoff_delay(initial: float, attempt: int) -> float:
    """Delay before retry number ``attempt`` (0-based): initial * 2**attempt."""
    return initial * (2 ** attempt)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    initial_delay: float,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    label: str = "operation",
) -> T:
    """Run ``operation``, retrying failures with exponential backoff.

    Args:
        operation: Zero-argument coroutine factory.
        max_retries: Retries after the first attempt.
        initial_delay: Seconds before the first retry.
        should_retry: Predicate on the raised exception. Exceptions it
            rejects propagate immediately. Retries everything when None.
        label: Name used in log lines.

    Returns:
        Whatever ``operation`` returns on its first success.

    Raises:
        The last exception once retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            if attempt >= max_retries:
                logger.error(
                    "%s failed after %d attempt(s): %s", label, attempt + 1, exc
                )
                raise
            delay = backoff_delay(initial_delay, attempt)
            logger.warning(
                "%s failed (attempt %d), retrying in %.1fs: %s",
                label, attempt + 1, delay, exc,
            )
            await asyncio.sleep(delay)
            attempt += 1
