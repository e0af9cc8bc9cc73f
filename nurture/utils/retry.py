from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from ..contracts import RetryPolicy
from ..errors import TransientDependencyError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.0,
) -> float:
    """Compute exponential backoff with optional jitter, capped at ``max_delay``."""
    delay = min(base * multiplier ** (attempt - 1), max_delay)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


async def retry_transient(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
    label: str = "call",
) -> T:
    """Run ``call``, retrying ``TransientDependencyError`` per ``policy``.

    Other exceptions propagate at once. After the last attempt the transient
    error propagates to the caller.
    """
    attempt = 1
    while True:
        try:
            return await call()
        except TransientDependencyError as exc:
            if attempt >= policy.max_attempts:
                raise
            delay = compute_backoff(
                attempt, policy.base_delay, policy.multiplier, policy.max_delay
            )
            logger.warning(
                f"{label} failed transiently (attempt {attempt}/{policy.max_attempts}), "
                f"retrying in {delay:.2f}s: {exc}"
            )
            await sleep(delay)
            attempt += 1
