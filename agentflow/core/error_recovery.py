"""Timeout and retry enforcement for node dispatch."""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

from .exceptions import WorkflowEngineError, NodeTimeoutError
from .logging import get_logger, ErrorRecoveryLogger


logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior.

    ``max_retries`` counts retries, not attempts: a value of 2 allows up to
    three calls in total.
    """

    def __init__(
        self,
        max_retries: int = 0,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max(0, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False
        return isinstance(exception, WorkflowEngineError) and exception.recoverable

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before the retry following ``attempt``."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


async def run_with_timeout(
    func: Callable[[], Awaitable[Any]],
    timeout: Optional[float],
    node_id: str
) -> Any:
    """Await ``func()`` bounded by ``timeout`` seconds (``None`` means unbounded)."""
    if timeout is None:
        return await func()
    try:
        return await asyncio.wait_for(func(), timeout=timeout)
    except asyncio.TimeoutError:
        raise NodeTimeoutError(node_id, timeout)


async def execute_async_with_retry(
    func: Callable[[], Awaitable[Any]],
    config: RetryConfig,
    operation: str,
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Execute an async callable with retry logic.

    Only recoverable engine errors are retried. ``on_retry`` is called with
    the number of retries used so far before each new attempt.
    """
    recovery_logger = ErrorRecoveryLogger("node_dispatch")

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await func()
            if attempt > 1:
                recovery_logger.log_recovery_success(operation, attempt)
            return result
        except Exception as e:
            if not config.should_retry(e, attempt):
                if attempt > 1:
                    recovery_logger.log_recovery_failure(operation, e, attempt)
                raise

            recovery_logger.log_recovery_attempt(operation, e, attempt, config.max_attempts)
            if on_retry is not None:
                on_retry(attempt, e)
            await asyncio.sleep(config.get_delay(attempt))
