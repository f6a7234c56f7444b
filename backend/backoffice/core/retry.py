"""Bounded retry combinator for outbound calls

Each call site builds its own RetryPolicy so the transport's retry budget
and any other retry budget are configured and tested independently.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for a single logical operation.

    Attributes:
        max_attempts: Total number of calls, including the first one
        base_delay: Seconds to wait after the first failure
        multiplier: Growth factor applied to the delay after each failure
        timeout: Per-call timeout in seconds (None disables it)
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    timeout: Optional[float] = None

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after the given (1-based) failed attempt"""
        return self.base_delay * (self.multiplier ** (attempt - 1))


def _always_retry(exc: Exception) -> bool:
    return True


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    retryable: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    operation_name: str = "operation",
) -> Any:
    """Call ``func`` until it succeeds or the policy is exhausted.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        policy: Attempts, backoff and per-call timeout
        retryable: Predicate deciding whether an exception is worth another
            attempt (defaults to retrying everything)
        sleep: Awaitable sleep, injectable for tests
        operation_name: Label used in log lines

    Returns:
        Whatever ``func`` returns on the first successful attempt

    Raises:
        The last exception once attempts are exhausted or the exception is
        not retryable. Timeouts surface as ``asyncio.TimeoutError``.
    """
    retryable = retryable or _always_retry
    max_attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        try:
            if policy.timeout is not None:
                return await asyncio.wait_for(func(), timeout=policy.timeout)
            return await func()
        except Exception as exc:
            if attempt >= max_attempts or not retryable(exc):
                logger.warning(
                    f"{operation_name} failed (attempt {attempt}/{max_attempts}), giving up: {exc!r}"
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{operation_name} failed (attempt {attempt}/{max_attempts}), retrying in {delay:.2f}s: {exc!r}"
            )
            await sleep(delay)
            attempt += 1
