"""Exponential backoff with rate-limit awareness for remote API calls.

Retries on TransientRemoteFailure (network errors, 5xx, timeouts) and
RateLimited (429). Rate-limit waits honor the remote's Retry-After hint and
do not escalate the exponential backoff. Logs each retry attempt.

Delays are whole milliseconds and capped at ``max_delay_ms``. No wait follows
the last attempt: the final failure is surfaced as ExhaustedRetries.
"""

from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from storesync.errors import ExhaustedRetries, RateLimited, TransientRemoteFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_retryable(exc: BaseException) -> bool:
    """Transient failures and rate limits are retryable; everything else is not."""
    return isinstance(exc, (TransientRemoteFailure, RateLimited))


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits for one call site. Holds no per-call state."""

    max_attempts: int = 5
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 60_000
    rate_limit_default_delay_ms: int = 5000
    max_retry_after_ms: int = 300_000
    retryable: Callable[[BaseException], bool] = default_retryable

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")

    def backoff_delay_ms(self, failure_number: int) -> int:
        """Delay after the n-th generic failure (1-based): base * multiplier^(n-1), capped.

        Multiplies step by step and stops at the cap, so large failure
        counts never overflow.
        """
        delay = float(self.base_delay_ms)
        for _ in range(max(failure_number - 1, 0)):
            if delay >= self.max_delay_ms:
                break
            delay *= self.backoff_multiplier
        return int(min(delay, self.max_delay_ms))

    def rate_limit_delay_ms(self, retry_after_ms: int | None) -> int:
        """Wait for a 429: the remote's hint if given, else the default."""
        if retry_after_ms is None or retry_after_ms < 0:
            delay = self.rate_limit_default_delay_ms
        else:
            delay = retry_after_ms
        return int(min(delay, self.max_retry_after_ms))


def backoff_delays(policy: RetryPolicy) -> list[int]:
    """Delays the executor sleeps when every attempt fails generically."""
    return [policy.backoff_delay_ms(n) for n in range(1, policy.max_attempts)]


class RetryExecutor:
    """Runs one remote operation under a RetryPolicy."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def _should_retry(self, exc: BaseException, idempotent: bool) -> bool:
        if not self.policy.retryable(exc):
            return False
        # A timed-out write may have landed; only retry when replay is safe.
        if isinstance(exc, TransientRemoteFailure) and exc.timeout and not idempotent:
            return False
        return True

    def execute(
        self,
        operation: Callable[[], T],
        *,
        idempotent: bool = True,
        description: str = "",
    ) -> T:
        """Call ``operation`` until it succeeds, fails permanently or runs out of attempts.

        Args:
            operation: Zero-argument callable performing one remote call.
            idempotent: False disables retry on timeouts.
            description: Label used in retry log lines.

        Returns:
            Whatever ``operation`` returns on its first successful attempt.

        Raises:
            ExhaustedRetries: After ``max_attempts`` retryable failures.
            Exception: Any non-retryable failure, unchanged.
        """
        label = description or getattr(operation, "__name__", "operation")
        max_attempts = self.policy.max_attempts
        generic_failures = 0
        last_error: BaseException | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                return operation()
            except Exception as exc:
                if not self._should_retry(exc, idempotent):
                    raise
                last_error = exc
                if attempt == max_attempts:
                    break

                if isinstance(exc, RateLimited):
                    delay_ms = self.policy.rate_limit_delay_ms(exc.retry_after_ms)
                    logger.warning(
                        "Retry %d/%d for %s (rate limited, retry_after=%s), waiting %dms",
                        attempt,
                        max_attempts,
                        label,
                        exc.retry_after_ms,
                        delay_ms,
                    )
                else:
                    generic_failures += 1
                    delay_ms = self.policy.backoff_delay_ms(generic_failures)
                    logger.warning(
                        "Retry %d/%d for %s (%s: %s), waiting %dms",
                        attempt,
                        max_attempts,
                        label,
                        type(exc).__name__,
                        exc,
                        delay_ms,
                    )
                self._sleep(delay_ms / 1000)

        assert last_error is not None
        logger.error(
            "Giving up on %s after %d attempts: %s", label, max_attempts, last_error
        )
        raise ExhaustedRetries(max_attempts, last_error) from last_error


def retry_with_backoff(
    policy: RetryPolicy | None = None,
    *,
    idempotent: bool = True,
    sleep: Callable[[float], Any] = time.sleep,
) -> Callable:
    """Decorator: run a function through a RetryExecutor."""

    def decorator(fn: Callable) -> Callable:
        executor = RetryExecutor(policy, sleep=sleep)

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return executor.execute(
                lambda: fn(*args, **kwargs),
                idempotent=idempotent,
                description=fn.__name__,
            )

        return wrapper

    return decorator
