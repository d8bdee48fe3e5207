"""
InboundEventHandler -- react to events published by other subsystems.

    milestone.completion_verified {milestone_id[, project_id]}
        -> MilestonePaymentEngine.release(trigger=milestone_completion)
    bid.withdrawn {bid_id}
        -> BidAcceptanceCoordinator.withdraw_bid (cancels a pending acceptance)

Delivery is at-least-once, so every handler is safe to run twice: a
released milestone or withdrawn bid is left as it is.  A release blocked
by an active dispute is deferred (logged, not raised) because the
dispute's resolution settles the funds.
"""

from collections.abc import Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import ReleaseOutcome
from escrow_kernel.domain.events import BID_WITHDRAWN, MILESTONE_COMPLETION_VERIFIED
from escrow_kernel.domain.states import MilestoneStatus, ReleaseTrigger
from escrow_kernel.exceptions import (
    DisputeActiveError,
    MilestonePaymentNotFoundError,
    ValidationError,
)
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.bidding import Bid
from escrow_kernel.models.milestone import MilestonePayment
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.bid_acceptance_coordinator import BidAcceptanceCoordinator
from escrow_kernel.services.milestone_payment_engine import MilestonePaymentEngine

logger = get_logger("services.inbound")


class InboundEventHandler(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        *,
        coordinator: BidAcceptanceCoordinator,
        engine: MilestonePaymentEngine,
    ):
        super().__init__(session, clock)
        self.coordinator = coordinator
        self.engine = engine

    def handle(self, event_type: str, payload: Mapping):
        if event_type == MILESTONE_COMPLETION_VERIFIED:
            return self.on_milestone_completion_verified(payload)
        if event_type == BID_WITHDRAWN:
            return self.on_bid_withdrawn(payload)
        raise ValidationError(f"Unsupported inbound event: {event_type}", field="event_type")

    def on_milestone_completion_verified(self, payload: Mapping) -> ReleaseOutcome | None:
        payment = self._milestone_payment(payload)
        if payment.status != MilestoneStatus.FUNDED.value and payment.status != MilestoneStatus.DISPUTED.value:
            logger.info(
                "completion_event_ignored",
                extra={"milestone_payment_id": str(payment.id), "status": payment.status},
            )
            return None
        try:
            return self.engine.release(payment.id, trigger=ReleaseTrigger.MILESTONE_COMPLETION)
        except DisputeActiveError as exc:
            logger.info(
                "release_deferred",
                extra={
                    "milestone_payment_id": str(payment.id),
                    "dispute_id": str(exc.dispute_id) if exc.dispute_id else None,
                },
            )
            return None

    def on_bid_withdrawn(self, payload: Mapping) -> Bid:
        bid_id = _uuid(payload, "bid_id")
        return self.coordinator.withdraw_bid(bid_id, reason="bid withdrawn by contractor")

    def _milestone_payment(self, payload: Mapping) -> MilestonePayment:
        milestone_id = _uuid(payload, "milestone_id")
        stmt = select(MilestonePayment).where(MilestonePayment.milestone_id == milestone_id)
        if payload.get("project_id"):
            stmt = stmt.where(MilestonePayment.project_id == _uuid(payload, "project_id"))
        matches = list(self.session.execute(stmt).scalars())
        if not matches:
            raise MilestonePaymentNotFoundError(milestone_id)
        if len(matches) > 1:
            raise ValidationError(
                f"milestone_id {milestone_id} is ambiguous; include project_id", field="project_id"
            )
        return matches[0]


def _uuid(payload: Mapping, key: str) -> UUID:
    value = payload.get(key)
    if value is None:
        raise ValidationError(f"Event payload is missing {key}", field=key)
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except ValueError:
        raise ValidationError(f"Event payload {key} is not a UUID: {value!r}", field=key) from None
