"""
EventOutbox -- transactional outbox for published domain events.

Responsibility:
    ``record()`` inserts an OutboxEvent in the caller's unit of work, so an
    event exists if and only if the state change that produced it commits.
    ``dispatch_pending()`` runs after commit and hands undispatched events
    to an EventPublisher in creation order: each event takes the next
    value of the "outbox_event" sequence when it is recorded, and dispatch
    orders by that, never by timestamp.

Failure modes:
    - A publisher exception stops the batch at that event; it stays
      undispatched with ``last_error`` set and is retried next pass.
      Delivery is therefore at-least-once.
"""

from collections.abc import Mapping
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_kernel.adapters.collaborators import EventPublisher
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.events import PUBLISHED_EVENTS
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.outbox import OutboxEvent
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.sequence_service import SequenceService

logger = get_logger("services.outbox")


def _jsonable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


class EventOutbox(BaseService):
    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self.sequences = SequenceService(session)

    def record(self, event_type: str, aggregate_id: UUID, payload: dict) -> OutboxEvent:
        if event_type not in PUBLISHED_EVENTS:
            raise ValueError(f"Unknown event type: {event_type}")
        event = OutboxEvent(
            sequence=self.sequences.next_value(SequenceService.OUTBOX_EVENT),
            event_type=event_type,
            aggregate_id=aggregate_id,
            payload=_jsonable(payload),
            created_at=self.clock.now(),
        )
        self.session.add(event)
        self.session.flush()
        logger.info(
            "outbox_event_recorded",
            extra={
                "event_type": event_type,
                "aggregate_id": str(aggregate_id),
                "sequence": event.sequence,
            },
        )
        return event

    def pending(self, limit: int = 100) -> list[OutboxEvent]:
        return list(
            self.session.execute(
                select(OutboxEvent)
                .where(OutboxEvent.dispatched_at.is_(None))
                .order_by(OutboxEvent.sequence)
                .limit(limit)
            ).scalars()
        )

    def events_for(self, aggregate_id: UUID, event_type: str | None = None) -> list[OutboxEvent]:
        stmt = select(OutboxEvent).where(OutboxEvent.aggregate_id == aggregate_id)
        if event_type is not None:
            stmt = stmt.where(OutboxEvent.event_type == event_type)
        return list(self.session.execute(stmt.order_by(OutboxEvent.sequence)).scalars())

    def dispatch_pending(self, publisher: EventPublisher, limit: int = 100) -> int:
        """Publish undispatched events in order; return how many were sent."""
        sent = 0
        for event in self.pending(limit):
            event.dispatch_attempts += 1
            try:
                publisher.publish(event.event_type, dict(event.payload))
            except Exception as exc:
                event.last_error = f"{type(exc).__name__}: {exc}"[:1000]
                self.session.flush()
                logger.warning(
                    "outbox_dispatch_failed",
                    extra={"event_id": str(event.id), "event_type": event.event_type},
                    exc_info=True,
                )
                break
            event.dispatched_at = self.clock.now()
            event.last_error = None
            sent += 1
        self.session.flush()
        if sent:
            logger.info("outbox_dispatched", extra={"count": sent})
        return sent
