"""
Processor retry policy -- bounded retries with exponential backoff.

Responsibility:
    Wraps one payment-processor call and retries transient failures
    (ProcessorError, including ProcessorTimeoutError) with the SAME
    idempotency key, so a retry can never double-charge.

Architecture position:
    Kernel > Services.  Used by BidAcceptanceCoordinator (charge, refund)
    and MilestonePaymentEngine (payout).  Adapters never retry internally.

Retry contract:
    - Retried: ProcessorError and ProcessorTimeoutError.
    - Not retried: ProcessorDeclinedError (terminal for this attempt).
    - ``max_attempts`` bounds one call; ``retry_budget`` bounds the total
      across calls for one payment, tracked by the caller.
    - Exhaustion raises ProcessorRetryExhaustedError chained to the last
      error; ``last_error`` tells the caller whether it ended on a timeout.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from escrow_kernel.exceptions import (
    ProcessorDeclinedError,
    ProcessorError,
    ProcessorRetryExhaustedError,
)
from escrow_kernel.logging_config import get_logger

logger = get_logger("services.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class ProcessorRetryPolicy:
    timeout_seconds: float = 10.0
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    retry_budget: int = 10

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.retry_budget < 1:
            raise ValueError(f"retry_budget must be >= 1, got {self.retry_budget}")
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {self.timeout_seconds}")

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1`` (attempt is 1-based)."""
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)


def call_with_retry(
    operation: str,
    fn: Callable[[], T],
    policy: ProcessorRetryPolicy,
    *,
    attempts_allowed: int | None = None,
    idempotency_key: str | None = None,
    on_attempt: Callable[[int], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds, declines, or the attempts run out.

    Args:
        operation: Name used in logs and errors ("charge", "refund", ...).
        fn: Zero-argument callable that performs one processor call.
        attempts_allowed: Cap below policy.max_attempts (remaining budget).
        on_attempt: Called with the 1-based attempt number before each call.
        sleep: Injected for tests.

    Raises:
        ProcessorDeclinedError: Immediately, never retried.
        ProcessorRetryExhaustedError: All attempts failed transiently.
    """
    limit = policy.max_attempts if attempts_allowed is None else min(attempts_allowed, policy.max_attempts)
    if limit < 1:
        raise ProcessorRetryExhaustedError(operation, 0, idempotency_key)

    last_error: ProcessorError | None = None
    for attempt in range(1, limit + 1):
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return fn()
        except ProcessorDeclinedError:
            raise
        except ProcessorError as exc:
            last_error = exc
            logger.warning(
                "processor_call_failed",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": limit,
                    "error_code": exc.code,
                    "idempotency_key": idempotency_key,
                },
            )
            if attempt < limit:
                sleep(policy.delay_for(attempt))

    exhausted = ProcessorRetryExhaustedError(operation, limit, idempotency_key)
    exhausted.last_error = last_error
    logger.error(
        "processor_retry_exhausted",
        extra={"operation": operation, "attempts": limit, "idempotency_key": idempotency_key},
    )
    raise exhausted from last_error
