"""
DTOs -- immutable results returned across the service boundary.

Responsibility:
    Services hand these frozen dataclasses back to callers instead of ORM
    instances, so a caller holding a result cannot accidentally mutate a
    ledger row or an acceptance outside the owning service.

Outcome objects vs. exceptions:
    pay(), release(), and expire() return an outcome rather than raising
    for the expected non-success paths (decline, compensation, not yet
    due).  Those paths write state (a failed ConnectionPayment, a
    compensating ledger entry) that must commit with the caller's unit of
    work; raising would roll it back.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from uuid import UUID


@dataclass(frozen=True)
class BalanceResult:
    """Account balance after one ledger operation."""

    account_id: UUID
    entry_id: UUID
    available: Decimal
    pending: Decimal
    is_duplicate: bool = False

    @property
    def total(self) -> Decimal:
        return self.available + self.pending


@dataclass(frozen=True)
class AccountBalance:
    """Point-in-time view of an escrow account."""

    account_id: UUID
    owner_id: UUID
    currency: str
    available: Decimal
    pending: Decimal
    status: str
    entry_count: int

    @property
    def total(self) -> Decimal:
        return self.available + self.pending


@dataclass(frozen=True)
class AccountVerification:
    """Result of checking an account snapshot against its ledger."""

    account_id: UUID
    expected_available: Decimal
    expected_pending: Decimal
    actual_available: Decimal
    actual_pending: Decimal
    entry_count: int
    issues: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.issues


class PaymentStatus(str, Enum):
    PAID = "paid"
    ALREADY_PAID = "already_paid"
    DECLINED = "declined"
    PENDING = "pending"
    STALE = "stale"
    NEEDS_RECONCILIATION = "needs_reconciliation"


@dataclass(frozen=True)
class PaymentOutcome:
    """Result of one pay() (or webhook completion) attempt."""

    status: PaymentStatus
    bid_acceptance_id: UUID
    connection_payment_id: UUID | None = None
    processor_ref: str | None = None
    ledger_entry_id: UUID | None = None
    contact_release_id: UUID | None = None
    decline_code: str | None = None
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (PaymentStatus.PAID, PaymentStatus.ALREADY_PAID)


class ReleaseStatus(str, Enum):
    RELEASED = "released"
    COMPENSATED = "compensated"


@dataclass(frozen=True)
class ReleaseOutcome:
    """Result of moving milestone funds from payer hold to payee."""

    status: ReleaseStatus
    milestone_payment_id: UUID
    amount: Decimal
    debit_entry_id: UUID | None = None
    credit_entry_id: UUID | None = None
    compensation_entry_id: UUID | None = None
    error: str | None = None

    @property
    def compensated(self) -> bool:
        return self.status == ReleaseStatus.COMPENSATED


class ExpiryStatus(str, Enum):
    EXPIRED = "expired"
    NOT_DUE = "not_due"
    NOT_PENDING = "not_pending"


@dataclass(frozen=True)
class ExpiryOutcome:
    """Result of one expire() call."""

    status: ExpiryStatus
    bid_acceptance_id: UUID
    fallback_bid_id: UUID | None = None
    fallback_acceptance_id: UUID | None = None


@dataclass(frozen=True)
class DisputeSettlement:
    """How a resolved dispute split the milestone's held funds."""

    dispute_id: UUID
    milestone_payment_id: UUID
    outcome: str
    payee_amount: Decimal
    payer_amount: Decimal
    entry_ids: tuple[UUID, ...] = field(default_factory=tuple)
