"""
Module: escrow_kernel.adapters.payment_processor
Responsibility: Boundary interface to the external payment gateway.
Architecture position: Kernel > Adapters.  Services depend on this
    interface only; concrete gateways live outside the kernel, and the
    test suite uses FakePaymentProcessor.

Contract for implementations:
    - Every call takes an idempotency key (refund derives one from the
      charge) and MUST be safe to repeat with the same key: a repeat
      returns the original result and never moves money twice.
    - Every call takes a timeout in seconds.  Exceeding it raises
      ProcessorTimeoutError; the outcome at the gateway is then unknown
      and the caller retries with the same key.
    - Transient gateway failures raise ProcessorError.  Card declines
      raise ProcessorDeclinedError.  Implementations do NOT retry
      internally; the caller's retry policy decides.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class ChargeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    # Accepted by the gateway; the final result arrives by webhook.
    PENDING = "pending"


class RefundStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"


class PayoutResultStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"


@dataclass(frozen=True)
class ChargeResult:
    processor_ref: str
    status: ChargeStatus
    amount: Decimal
    idempotency_key: str


@dataclass(frozen=True)
class RefundResult:
    refund_ref: str
    processor_ref: str
    status: RefundStatus
    amount: Decimal


@dataclass(frozen=True)
class PayoutResult:
    processor_ref: str
    status: PayoutResultStatus
    amount: Decimal
    idempotency_key: str


class PaymentProcessor(ABC):
    """Gateway operations the escrow kernel relies on."""

    @abstractmethod
    def charge(
        self,
        amount: Decimal,
        currency: str,
        payer_ref: str,
        idempotency_key: str,
        timeout: float,
    ) -> ChargeResult:
        """Charge ``payer_ref`` for ``amount``."""

    @abstractmethod
    def refund(self, processor_ref: str, amount: Decimal, timeout: float) -> RefundResult:
        """Refund (part of) a prior charge.  Repeating a refund of the same charge is a no-op."""

    @abstractmethod
    def payout(
        self,
        account_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        timeout: float,
    ) -> PayoutResult:
        """Send ``amount`` to the payee's external account."""
