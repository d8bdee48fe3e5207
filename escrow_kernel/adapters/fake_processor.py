"""
Deterministic in-memory PaymentProcessor.

Used by the test suite and by local runs of the operator scripts.  It
honours the adapter contract (replay by idempotency key, no internal
retry) and can be scripted to fail:

    processor = FakePaymentProcessor()
    processor.fail_next("charge", ProcessorTimeoutError("charge", 5.0))
    processor.decline_next("charge", "card_declined")
    processor.charge_mode = ChargeStatus.PENDING      # settle by webhook
    processor.before_charge_returns = lambda key: ... # race hook

A timeout can be scripted to happen *after* the gateway accepted the
charge (``settle_on_timeout=True``), which is the case that makes key
reuse matter: the retry must get back the original charge, not a new one.
"""

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from itertools import count

from escrow_kernel.adapters.payment_processor import (
    ChargeResult,
    ChargeStatus,
    PaymentProcessor,
    PayoutResult,
    PayoutResultStatus,
    RefundResult,
    RefundStatus,
)
from escrow_kernel.exceptions import (
    ProcessorDeclinedError,
    ProcessorError,
    ProcessorTimeoutError,
)


@dataclass(frozen=True)
class ProcessorCall:
    operation: str
    amount: Decimal
    idempotency_key: str | None
    reference: str
    timeout: float


@dataclass
class _ScriptedFailure:
    error: ProcessorError
    settle: bool = False


@dataclass
class FakePaymentProcessor(PaymentProcessor):
    charge_mode: ChargeStatus = ChargeStatus.SUCCEEDED
    payout_mode: PayoutResultStatus = PayoutResultStatus.PENDING
    before_charge_returns: Callable[[str], None] | None = None

    calls: list[ProcessorCall] = field(default_factory=list)
    charges: dict[str, ChargeResult] = field(default_factory=dict)
    refunds: dict[str, RefundResult] = field(default_factory=dict)
    payouts: dict[str, PayoutResult] = field(default_factory=dict)

    _failures: dict[str, deque] = field(default_factory=dict)
    _refs: count = field(default_factory=lambda: count(1))

    # ------------------------------------------------------------------
    # Scripting
    # ------------------------------------------------------------------

    def fail_next(self, operation: str, error: ProcessorError, *, times: int = 1,
                  settle_on_timeout: bool = False) -> None:
        """Queue ``error`` for the next ``times`` calls of ``operation``."""
        queue = self._failures.setdefault(operation, deque())
        for _ in range(times):
            queue.append(_ScriptedFailure(error, settle=settle_on_timeout))

    def decline_next(self, operation: str, decline_code: str = "card_declined") -> None:
        self.fail_next(operation, ProcessorDeclinedError(operation, decline_code))

    def timeout_next(self, operation: str, *, times: int = 1, settle: bool = False) -> None:
        self.fail_next(
            operation, ProcessorTimeoutError(operation, 0.0), times=times, settle_on_timeout=settle
        )

    def calls_for(self, operation: str) -> list[ProcessorCall]:
        return [c for c in self.calls if c.operation == operation]

    @property
    def charge_count(self) -> int:
        """Distinct charges accepted by the gateway (replays excluded)."""
        return len(self.charges)

    # ------------------------------------------------------------------
    # PaymentProcessor
    # ------------------------------------------------------------------

    def _next_ref(self, prefix: str) -> str:
        return f"{prefix}_{next(self._refs):06d}"

    def _pop_failure(self, operation: str) -> _ScriptedFailure | None:
        queue = self._failures.get(operation)
        if queue:
            return queue.popleft()
        return None

    def charge(self, amount, currency, payer_ref, idempotency_key, timeout) -> ChargeResult:
        self.calls.append(ProcessorCall("charge", amount, idempotency_key, payer_ref, timeout))

        existing = self.charges.get(idempotency_key)
        if existing is not None:
            return existing

        failure = self._pop_failure("charge")
        if failure is not None:
            if failure.settle:
                self.charges[idempotency_key] = ChargeResult(
                    self._next_ref("ch"), self.charge_mode, amount, idempotency_key
                )
            raise _with_key(failure.error, idempotency_key)

        result = ChargeResult(self._next_ref("ch"), self.charge_mode, amount, idempotency_key)
        self.charges[idempotency_key] = result
        if self.before_charge_returns is not None:
            self.before_charge_returns(idempotency_key)
        return result

    def refund(self, processor_ref, amount, timeout) -> RefundResult:
        self.calls.append(ProcessorCall("refund", amount, None, processor_ref, timeout))

        existing = self.refunds.get(processor_ref)
        if existing is not None:
            return existing

        failure = self._pop_failure("refund")
        if failure is not None:
            raise failure.error

        result = RefundResult(self._next_ref("re"), processor_ref, RefundStatus.SUCCEEDED, amount)
        self.refunds[processor_ref] = result
        return result

    def payout(self, account_ref, amount, currency, idempotency_key, timeout) -> PayoutResult:
        self.calls.append(ProcessorCall("payout", amount, idempotency_key, account_ref, timeout))

        existing = self.payouts.get(idempotency_key)
        if existing is not None:
            return existing

        failure = self._pop_failure("payout")
        if failure is not None:
            raise _with_key(failure.error, idempotency_key)

        result = PayoutResult(self._next_ref("po"), self.payout_mode, amount, idempotency_key)
        self.payouts[idempotency_key] = result
        return result


def _with_key(error: ProcessorError, idempotency_key: str) -> ProcessorError:
    error.idempotency_key = idempotency_key
    return error
