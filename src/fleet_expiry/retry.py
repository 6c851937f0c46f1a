"""
Bounded retry with backoff for store writes and notification delivery.

Retries are modelled as a bounded loop with an attempt counter. The decision
to continue or give up is a pure function of the attempt number
(``RetryPolicy.should_retry``), and the delay is a pure function of the
attempt number (``RetryPolicy.calculate_delay``). ``retry_call`` never raises
past the retry boundary: it returns a ``RetryOutcome`` describing success or
exhaustion, so one failing unit of work cannot abort its siblings.

Usage:
    from fleet_expiry.retry import RetryPolicy, retry_call

    policy = RetryPolicy(max_retries=3, base_delay=1.0)

    outcome = await retry_call(
        store.save,
        reservation,
        policy=policy,
        retry_message="Failed to expire booking, retrying",
        log_fields={"reservation_id": reservation.id},
    )
    if not outcome.success:
        ...
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    Optional,
    Type,
    TypeVar,
)

from .constants import BackoffStrategy, RetryDefaults
from .logging import StructuredLogger, get_logger

logger = get_logger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Retries after the first attempt (0 means a single attempt)
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound on any single delay, in seconds
        backoff: EXPONENTIAL (base * 2^attempt) or LINEAR (base * (attempt + 1))
        exponential_base: Growth factor for exponential backoff
        retryable_exceptions: Exception types that trigger a retry
        non_retryable_exceptions: Exception types that end the loop at once
    """

    max_retries: int = RetryDefaults.MAX_RETRIES
    base_delay: float = RetryDefaults.BASE_DELAY_MS / 1000
    max_delay: float = RetryDefaults.MAX_DELAY_MS / 1000
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    exponential_base: float = RetryDefaults.EXPONENTIAL_BASE
    retryable_exceptions: tuple[Type[BaseException], ...] = (Exception,)
    non_retryable_exceptions: tuple[Type[BaseException], ...] = ()

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.exponential_base <= 1:
            raise ValueError("exponential_base must be > 1")

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retrying after the given failed attempt (0-based).

        Strictly increasing in ``attempt`` until ``max_delay`` is reached.
        """
        if self.backoff == BackoffStrategy.LINEAR:
            delay = self.base_delay * (attempt + 1)
        else:
            delay = self.base_delay * (self.exponential_base ** attempt)
        return max(0.0, min(delay, self.max_delay))

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt follows the given failed attempt (0-based)."""
        return attempt < self.max_retries

    def is_retryable(self, exception: BaseException) -> bool:
        if isinstance(exception, self.non_retryable_exceptions):
            return False
        return isinstance(exception, self.retryable_exceptions)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


@dataclass
class RetryOutcome(Generic[T]):
    """Result of a retried call.

    Attributes:
        success: Whether any attempt succeeded
        value: Return value of the successful attempt
        attempts: Total number of attempts made (including the first)
        total_delay: Total time spent waiting between attempts, in seconds
        last_exception: The last exception raised when the call failed
    """

    success: bool = False
    value: Optional[T] = None
    attempts: int = 0
    total_delay: float = 0.0
    last_exception: Optional[BaseException] = None
    delays: list[float] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    @property
    def error(self) -> Optional[str]:
        if self.last_exception is None:
            return None
        return str(self.last_exception) or type(self.last_exception).__name__


async def retry_call(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: Optional[RetryPolicy] = None,
    retry_message: Optional[str] = None,
    log_fields: Optional[dict[str, Any]] = None,
    sleep: Optional[SleepFunc] = None,
    log: Optional[StructuredLogger] = None,
    **kwargs: Any,
) -> RetryOutcome[T]:
    """Execute an async callable with bounded retry.

    Each failed attempt that will be retried is logged as a warning carrying
    its attempt number. Exhaustion is not logged here; callers log it with
    their own context.

    Args:
        func: The async callable to execute
        *args: Positional arguments for the callable
        policy: Retry policy (defaults if None)
        retry_message: Warning message for retried failures
        log_fields: Extra structured fields for the retry warnings
        sleep: Awaitable sleep used between attempts (asyncio.sleep by default)
        log: Logger for retry warnings (module logger by default)
        **kwargs: Keyword arguments for the callable

    Returns:
        RetryOutcome describing the final result
    """
    policy = policy or RetryPolicy()
    sleep = sleep or asyncio.sleep
    log = log or logger
    name = getattr(func, "__name__", repr(func))
    message = retry_message or f"{name} failed, retrying"
    fields = log_fields or {}

    outcome: RetryOutcome[T] = RetryOutcome()

    for attempt in range(policy.max_attempts):
        outcome.attempts = attempt + 1
        try:
            outcome.value = await func(*args, **kwargs)
            outcome.success = True
            outcome.last_exception = None
            return outcome
        except Exception as e:
            outcome.last_exception = e

            if not policy.is_retryable(e):
                log.debug(
                    f"{type(e).__name__} is not retryable, giving up",
                    operation=name,
                    attempt=attempt + 1,
                    **fields,
                )
                return outcome

            if not policy.should_retry(attempt):
                break

            delay = policy.calculate_delay(attempt)
            outcome.total_delay += delay
            outcome.delays.append(delay)

            log.warning(
                message,
                attempt=attempt + 1,
                retry_count=attempt + 1,
                max_retries=policy.max_retries,
                delay_ms=round(delay * 1000),
                error=str(e) or type(e).__name__,
                **fields,
            )

            await sleep(delay)

    return outcome


__all__ = [
    "RetryPolicy",
    "RetryOutcome",
    "retry_call",
]
