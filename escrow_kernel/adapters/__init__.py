"""Boundary interfaces to external systems (payment gateway, directory, bus)."""

from escrow_kernel.adapters.collaborators import (
    ContactDirectory,
    EventPublisher,
    InMemoryContactDirectory,
    InMemoryEventPublisher,
)
from escrow_kernel.adapters.fake_processor import FakePaymentProcessor
from escrow_kernel.adapters.payment_processor import (
    ChargeResult,
    ChargeStatus,
    PaymentProcessor,
    PayoutResult,
    PayoutResultStatus,
    RefundResult,
    RefundStatus,
)

__all__ = [
    "ChargeResult",
    "ChargeStatus",
    "ContactDirectory",
    "EventPublisher",
    "FakePaymentProcessor",
    "InMemoryContactDirectory",
    "InMemoryEventPublisher",
    "PaymentProcessor",
    "PayoutResult",
    "PayoutResultStatus",
    "RefundResult",
    "RefundStatus",
]
