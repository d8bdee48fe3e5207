"""
Module: escrow_kernel.models.dispute
Responsibility: ORM persistence for payment disputes raised against funded
    milestone payments.
Architecture position: Kernel > Models.

Invariants enforced:
    - At most one active (not yet resolved or cancelled) dispute per
      milestone payment: partial unique index plus the overlay's own check.
    - resolution_amount is set only on resolved disputes and lies within
      [0, funded amount] (engine-checked).
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, Boolean, CheckConstraint, ForeignKey, Index, String, Text, text
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import TrackedBase, UUIDString
from escrow_kernel.db.types import UTCDateTime
from escrow_kernel.domain.states import DisputeStatus, DisputeType, check_constraint_sql

_ACTIVE_DISPUTE_SQL = "status IN ({})".format(
    ", ".join(f"'{status.value}'" for status in sorted(DisputeStatus.active()))
)


class PaymentDispute(TrackedBase):
    """A party's challenge to a milestone payment, frozen until resolved."""

    __tablename__ = "payment_disputes"

    __table_args__ = (
        CheckConstraint(
            check_constraint_sql("status", DisputeStatus), name="ck_payment_dispute_status"
        ),
        CheckConstraint(
            check_constraint_sql("dispute_type", DisputeType), name="ck_payment_dispute_type"
        ),
        CheckConstraint(
            "resolution_amount IS NULL OR resolution_amount >= 0",
            name="ck_payment_dispute_resolution_non_negative",
        ),
        Index(
            "uq_payment_dispute_one_active",
            "milestone_payment_id",
            unique=True,
            postgresql_where=text(_ACTIVE_DISPUTE_SQL),
            sqlite_where=text(_ACTIVE_DISPUTE_SQL),
        ),
    )

    milestone_payment_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("milestone_payments.id"), nullable=False
    )
    opened_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    dispute_type: Mapped[str] = mapped_column(
        String(30), nullable=False, default=DisputeType.OTHER.value
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DisputeStatus.OPENED.value
    )
    review_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    evidence_requested_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    evidence_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Links to photos and documents, in submission order.
    evidence_urls: Mapped[list[str]] = mapped_column(
        MutableList.as_mutable(JSON), nullable=False, default=list
    )
    escalated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolution_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<PaymentDispute {self.id} milestone={self.milestone_payment_id} status={self.status}>"

    @property
    def status_enum(self) -> DisputeStatus:
        return DisputeStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.status_enum in DisputeStatus.active()
