"""
Rate-limit retry for remote calls.

Only RateLimitError is retried. Anything else propagates on the first attempt,
and after the last retry the final RateLimitError is re-raised unchanged.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from .errors import RateLimitError


logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0
    # Used instead of the backoff curve when the host sends no retry-after.
    fallback_delay: Optional[float] = None

    def backoff_delay(self, attempt: int) -> float:
        return min(self.initial_delay * self.backoff_multiplier ** attempt, self.max_delay)

    def delay_for(self, attempt: int, retry_after: Optional[int] = None) -> float:
        if retry_after is not None:
            return float(retry_after)
        if self.fallback_delay is not None:
            return self.fallback_delay
        return self.backoff_delay(attempt)


# Prediction host: exponential backoff.
PREDICTION_RETRY_POLICY = RetryPolicy()
# Chat host: fixed 2s when no retry-after header comes back.
CHAT_RETRY_POLICY = RetryPolicy(fallback_delay=2.0)


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    value = value.strip()
    if not value.isdigit():
        return None
    return int(value)


def _wait_for(policy: RetryPolicy) -> Callable[[RetryCallState], float]:
    def wait(retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception()
        return policy.delay_for(retry_state.attempt_number - 1, getattr(exc, "retry_after", None))

    return wait


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = PREDICTION_RETRY_POLICY,
    *,
    label: str = "remote call",
    sleep: Sleep = asyncio.sleep,
) -> T:
    def log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            f"{label}: rate limited (429), retry {retry_state.attempt_number}/{policy.max_retries} "
            f"in {retry_state.next_action.sleep:.1f}s"
        )

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(RateLimitError),
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=_wait_for(policy),
        sleep=sleep,
        before_sleep=log_retry,
        reraise=True,
    )
    try:
        return await retrying(operation)
    except RateLimitError:
        logger.error(f"{label}: still rate limited after {policy.max_retries} retries")
        raise
