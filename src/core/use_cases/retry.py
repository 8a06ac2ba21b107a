import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

from src.config import BackoffPolicy
from src.core.errors import FetchResult, is_retryable

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


def next_delay(previous: float, policy: BackoffPolicy, rng: Callable[[], float] = random.random) -> float:
    """Double the previous delay, apply jitter, clamp to the ceiling."""
    jitter = policy.jitter_low + rng() * (policy.jitter_high - policy.jitter_low)
    return min(previous * policy.factor * jitter, policy.max_delay)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[FetchResult]],
    policy: BackoffPolicy,
    retryable: Callable[[FetchResult], bool] = is_retryable,
    sleep: Sleep = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    label: str = "request"
) -> FetchResult:
    """
    Run `operation` until it returns a non-retryable result or the policy's
    attempts are spent. The last retryable result is returned as-is so the
    caller can downgrade it to a partial failure.
    """
    delay = policy.initial_delay
    attempt = 0
    while True:
        result = await operation()
        if not retryable(result):
            return result

        attempt += 1
        if attempt >= policy.max_retries:
            logger.warning(f"{label}: giving up after {attempt} rate-limited attempts")
            return result

        delay = next_delay(delay, policy, rng)
        logger.warning(f"{label}: rate limited, retry {attempt}/{policy.max_retries} in {delay:.2f}s")
        await sleep(delay)
