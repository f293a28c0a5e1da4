"""
Retry with backoff, shared by the model client and the delivery provider.

In-process retries run on tenacity; compute_delay gives the same schedule
to the job queue for rescheduling failed jobs.

Usage:
    policy = RetryPolicy(attempts=3, delay_ms=1000)
    result = await retry_with_backoff(lambda: client.chat(...), policy)
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
    wait_fixed,
    wait_incrementing,
    wait_random,
)

from shared_utils.errors import PermanentProviderError, TransientProviderError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429}


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    delay_ms: int = 1000
    backoff: str = "exponential"  # exponential | linear | fixed
    max_delay_ms: int = 30000
    jitter_ms: int = 1000

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("RetryPolicy.attempts must be at least 1")
        if self.backoff not in ("exponential", "linear", "fixed"):
            raise ValueError(f"Unknown backoff: {self.backoff}")

    def wait_strategy(self):
        """tenacity wait for this policy, in seconds"""
        delay = self.delay_ms / 1000.0
        cap = self.max_delay_ms / 1000.0
        jitter = self.jitter_ms / 1000.0
        if self.backoff == "exponential":
            return wait_exponential_jitter(initial=delay, max=cap, jitter=jitter)
        if self.backoff == "linear":
            wait = wait_incrementing(start=delay, increment=delay, max=cap)
        else:
            wait = wait_fixed(min(delay, cap))
        return wait + wait_random(0, jitter) if jitter else wait

    def compute_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (1-based)."""
        if self.backoff == "exponential":
            delay = self.delay_ms * (2 ** (attempt - 1))
        elif self.backoff == "linear":
            delay = self.delay_ms * attempt
        else:
            delay = self.delay_ms

        if self.jitter_ms:
            delay += random.random() * self.jitter_ms

        return min(delay, self.max_delay_ms) / 1000.0


def is_retryable_status(status_code: Optional[int]) -> bool:
    if status_code is None:
        return False
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


def is_retryable_error(error: BaseException) -> bool:
    """Network errors, timeouts, 5xx, 429 and 408 are retryable. Everything else is not."""
    if isinstance(error, TransientProviderError):
        return True
    if isinstance(error, PermanentProviderError):
        return False
    if isinstance(error, httpx.HTTPStatusError):
        return is_retryable_status(error.response.status_code)
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return True
    return False


async def retry_with_backoff(
    fn: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    retry_if: Callable[[BaseException], bool] = is_retryable_error,
    on_retry: Optional[Callable[[BaseException, int], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Call ``fn`` until it succeeds, the error is not retryable, or
    ``policy.attempts`` calls have been made. The last error is re-raised.
    """

    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"🔄 Attempt {retry_state.attempt_number}/{policy.attempts} failed "
            f"({type(error).__name__}: {str(error)[:200]}), retrying in {delay:.2f}s"
        )
        if on_retry:
            on_retry(error, retry_state.attempt_number)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.attempts),
        wait=policy.wait_strategy(),
        retry=retry_if_exception(retry_if),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )
    return await retrying(fn)
