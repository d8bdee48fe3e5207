"""
Module: escrow_kernel.models.outbox
Responsibility: Transactional outbox for domain events and the record of
    processed processor webhooks.
Architecture position: Kernel > Models.

Events are inserted in the same unit of work as the state change they
describe, so a rolled-back transition never publishes.  Dispatch happens
after commit (EventOutbox.dispatch_pending), in ``sequence`` order.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base, TrackedBase, UUIDString
from escrow_kernel.db.types import UTCDateTime


class OutboxEvent(TrackedBase):
    """One published domain event awaiting (or past) dispatch."""

    __tablename__ = "outbox_events"

    __table_args__ = (
        UniqueConstraint("sequence", name="uq_outbox_event_sequence"),
        Index("idx_outbox_undispatched", "dispatched_at", "sequence"),
    )

    # Allocated from the "outbox_event" counter; strictly increasing in
    # record order, including events recorded within the same instant.
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    aggregate_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    dispatch_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    def __repr__(self) -> str:
        return f"<OutboxEvent {self.event_type} aggregate={self.aggregate_id}>"


class ProcessedWebhook(TrackedBase):
    """A processor webhook delivery that has already been applied."""

    __tablename__ = "processed_webhooks"

    __table_args__ = (
        UniqueConstraint("webhook_id", name="uq_processed_webhook_id"),
    )

    webhook_id: Mapped[str] = mapped_column(String(200), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    processor_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False)


class SequenceCounter(Base):
    """
    Named counter row.  SequenceService locks and increments it; the
    aggregate-max-plus-one pattern is never used.
    """

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
