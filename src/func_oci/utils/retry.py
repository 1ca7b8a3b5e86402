"""Bounded retry with backoff for network operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ..core.types import RetryPolicy
from ..exceptions import is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
) -> T:
    """Run ``operation``, retrying transient failures.

    ``operation`` is called afresh on every attempt, so it must rebuild any
    request body it streams. Non-transient errors and the last failure are
    raised unchanged.

    Args:
        operation: Zero-argument coroutine factory
        policy: Attempt count and backoff settings
        description: Label used in log messages

    Returns:
        The operation's result
    """
    current_delay = policy.delay
    attempts = max(1, policy.attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt == attempts or not is_transient(e):
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description,
                attempt,
                attempts,
                e,
                current_delay,
            )
            await asyncio.sleep(current_delay)
            current_delay *= policy.backoff

    raise RuntimeError("Retry failed without exception")

