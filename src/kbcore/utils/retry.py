"""Bounded retry for calls against remote stores."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    retry_on: Tuple[Type[BaseException], ...],
    attempts: int = 3,
    backoff: float = 0.5,
    max_backoff: float = 4.0,
    description: str = "operation",
) -> T:
    """Run ``operation`` up to ``attempts`` times.

    Waits ``backoff * 2**(n-1)`` seconds (capped at ``max_backoff``) after the
    n-th failure. The last exception is re-raised unchanged.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == attempts:
                raise
            delay = min(backoff * (2 ** (attempt - 1)), max_backoff)
            LOGGER.warning(
                "%s failed (attempt %s/%s): %s; retrying in %.2fs",
                description,
                attempt,
                attempts,
                exc,
                delay,
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
