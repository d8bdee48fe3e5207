"""
Module: escrow_kernel.models.milestone
Responsibility: ORM persistence for escrowed milestone payments.
Architecture position: Kernel > Models.

Invariants enforced:
    - One payment per (project_id, milestone_id).
    - released_amount + refunded_amount <= funded_amount (CHECK, and the
      engine checks before every move).
    - escrow_entry_ids lists every ledger entry this payment produced, in
      order, on either party's account.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, Index, Integer, String, UniqueConstraint
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import TrackedBase, UUIDString
from escrow_kernel.db.types import UTCDateTime
from escrow_kernel.domain.states import (
    MilestoneStatus,
    PayoutStatus,
    ReleaseTrigger,
    check_constraint_sql,
)


class MilestonePayment(TrackedBase):
    """
    Homeowner funds held in escrow against one project milestone.

    Owned by MilestonePaymentEngine.  The Dispute Overlay changes status
    only through the engine's mark_disputed / lift_dispute / settle_dispute.
    """

    __tablename__ = "milestone_payments"

    __table_args__ = (
        UniqueConstraint("project_id", "milestone_id", name="uq_milestone_payment_milestone"),
        CheckConstraint("amount > 0", name="ck_milestone_amount_positive"),
        CheckConstraint(
            "released_amount + refunded_amount <= funded_amount",
            name="ck_milestone_conservation",
        ),
        CheckConstraint(
            check_constraint_sql("status", MilestoneStatus), name="ck_milestone_status"
        ),
        CheckConstraint(
            check_constraint_sql("payout_status", PayoutStatus), name="ck_milestone_payout_status"
        ),
        CheckConstraint(
            "release_trigger IS NULL OR " + check_constraint_sql("release_trigger", ReleaseTrigger),
            name="ck_milestone_release_trigger",
        ),
        Index("idx_milestone_payer", "payer_id"),
        Index("idx_milestone_payee", "payee_id"),
    )

    project_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    milestone_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    payer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    payee_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MilestoneStatus.PENDING.value
    )
    funded_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    released_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    refunded_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    escrow_entry_ids: Mapped[list[str]] = mapped_column(
        MutableList.as_mutable(JSON), nullable=False, default=list
    )
    funded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    release_trigger: Mapped[str | None] = mapped_column(String(30), nullable=True)
    release_authorized_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    payout_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PayoutStatus.NONE.value
    )
    payout_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)
    payout_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    # Bumped on each compensated release so the retry gets fresh ledger keys.
    release_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payout_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<MilestonePayment {self.id} {self.amount} status={self.status}>"

    @property
    def status_enum(self) -> MilestoneStatus:
        return MilestoneStatus(self.status)

    @property
    def held_amount(self) -> Decimal:
        """Funds still held on the payer's account for this milestone."""
        return self.funded_amount - self.released_amount - self.refunded_amount

    def record_entry(self, entry_id) -> None:
        self.escrow_entry_ids.append(str(entry_id))
