"""
Module: escrow_kernel.models.bidding
Responsibility: ORM persistence for the bid-acceptance lifecycle: bid cards
    and bids (the minimal slice the coordinator ranks and admits), bid
    acceptances, connection-fee payments, and contact releases.
Architecture position: Kernel > Models.

Invariants enforced:
    - One bid per contractor per bid card.
    - bid_id is unique on bid_acceptances (a bid is accepted at most once).
    - At most one acceptance per bid card in pending_payment (partial unique
      index on both PostgreSQL and SQLite; the coordinator checks first).
    - expires_at > accepted_at (CHECK).
    - ConnectionPayment and ContactRelease are one-to-one with an acceptance.

Audit relevance:
    ContactRelease is the immutable record of what contact details were
    disclosed to whom and when.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from escrow_kernel.db.base import TrackedBase, UUIDString
from escrow_kernel.db.types import UTCDateTime
from escrow_kernel.domain.states import (
    AcceptanceStatus,
    BidCardStatus,
    BidStatus,
    ConnectionPaymentStatus,
    check_constraint_sql,
)


class BidCard(TrackedBase):
    """A homeowner's project posting that contractors bid on."""

    __tablename__ = "bid_cards"

    __table_args__ = (
        CheckConstraint(check_constraint_sql("status", BidCardStatus), name="ck_bid_card_status"),
        CheckConstraint("max_bids_allowed > 0", name="ck_bid_card_max_bids_positive"),
    )

    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BidCardStatus.OPEN.value
    )
    max_bids_allowed: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    # Admitted (non-overflow) bids.  Maintained by the coordinator, not a trigger.
    current_bids: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Per-card override of the configured acceptance window.
    acceptance_window_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)

    bids: Mapped[list["Bid"]] = relationship(back_populates="bid_card", lazy="select")

    def __repr__(self) -> str:
        return f"<BidCard {self.id} status={self.status} bids={self.current_bids}/{self.max_bids_allowed}>"


class Bid(TrackedBase):
    """A contractor's priced offer on a bid card."""

    __tablename__ = "bids"

    __table_args__ = (
        UniqueConstraint("bid_card_id", "contractor_id", name="uq_bid_card_contractor"),
        CheckConstraint("amount > 0", name="ck_bid_amount_positive"),
        CheckConstraint(check_constraint_sql("status", BidStatus), name="ck_bid_status"),
        Index("idx_bids_card_rank", "bid_card_id", "status", "amount", "submitted_at"),
    )

    bid_card_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("bid_cards.id"), nullable=False
    )
    contractor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BidStatus.SUBMITTED.value
    )
    is_overflow: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_final_offer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    revision_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    bid_card: Mapped[BidCard] = relationship(back_populates="bids")

    def __repr__(self) -> str:
        return f"<Bid {self.id} amount={self.amount} status={self.status}>"


class BidAcceptance(TrackedBase):
    """
    Homeowner acceptance of one bid, open for payment until ``expires_at``.

    Owned by BidAcceptanceCoordinator.  Status changes out of
    pending_payment are conditional UPDATEs so a racing pay() and expire()
    cannot both win.
    """

    __tablename__ = "bid_acceptances"

    __table_args__ = (
        UniqueConstraint("bid_id", name="uq_bid_acceptance_bid"),
        CheckConstraint("expires_at > accepted_at", name="ck_bid_acceptance_window"),
        CheckConstraint("fee_amount >= 0", name="ck_bid_acceptance_fee_non_negative"),
        CheckConstraint(
            check_constraint_sql("status", AcceptanceStatus), name="ck_bid_acceptance_status"
        ),
        Index(
            "uq_bid_acceptance_one_pending_per_card",
            "bid_card_id",
            unique=True,
            postgresql_where=text("status = 'pending_payment'"),
            sqlite_where=text("status = 'pending_payment'"),
        ),
        Index("idx_bid_acceptance_due", "status", "expires_at"),
    )

    bid_id: Mapped[UUID] = mapped_column(UUIDString(), ForeignKey("bids.id"), nullable=False)
    bid_card_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("bid_cards.id"), nullable=False
    )
    accepted_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    accepted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(nullable=False)
    fee_calc_method: Mapped[str] = mapped_column(String(50), nullable=False)
    fee_policy_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Contractor tier at accept() time; it selected the fee policy.
    subscription_tier: Mapped[str | None] = mapped_column(String(50), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AcceptanceStatus.PENDING_PAYMENT.value
    )
    expiry_notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expiry_notification_sent_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    fallback_bid_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("bids.id"), nullable=True
    )
    fallback_activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # Set on an acceptance created by fallback promotion.
    promoted_from_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("bid_acceptances.id"), nullable=True
    )
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    bid: Mapped[Bid] = relationship(foreign_keys=[bid_id])
    payment: Mapped["ConnectionPayment | None"] = relationship(
        back_populates="acceptance", uselist=False
    )

    def __repr__(self) -> str:
        return f"<BidAcceptance {self.id} bid={self.bid_id} status={self.status}>"

    @property
    def status_enum(self) -> AcceptanceStatus:
        return AcceptanceStatus(self.status)


class ConnectionPayment(TrackedBase):
    """The contractor's connection-fee charge for one acceptance."""

    __tablename__ = "connection_payments"

    __table_args__ = (
        UniqueConstraint("bid_acceptance_id", name="uq_connection_payment_acceptance"),
        CheckConstraint(
            check_constraint_sql("status", ConnectionPaymentStatus),
            name="ck_connection_payment_status",
        ),
        Index("idx_connection_payment_processor_ref", "processor_ref"),
    )

    bid_acceptance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("bid_acceptances.id"), nullable=False
    )
    contractor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConnectionPaymentStatus.PENDING.value
    )
    # Key of the in-flight (or last) charge attempt; reused after a timeout.
    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    processor_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    acceptance: Mapped[BidAcceptance] = relationship(back_populates="payment")

    def __repr__(self) -> str:
        return f"<ConnectionPayment {self.id} status={self.status} ref={self.processor_ref}>"

    @property
    def status_enum(self) -> ConnectionPaymentStatus:
        return ConnectionPaymentStatus(self.status)


class ContactRelease(TrackedBase):
    """Immutable record of the contact details disclosed after payment."""

    __tablename__ = "contact_releases"

    __table_args__ = (
        UniqueConstraint("bid_acceptance_id", name="uq_contact_release_acceptance"),
    )

    bid_acceptance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("bid_acceptances.id"), nullable=False
    )
    homeowner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    contractor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    homeowner_contact: Mapped[dict] = mapped_column(JSON, nullable=False)
    contractor_contact: Mapped[dict] = mapped_column(JSON, nullable=False)
    released_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
