"""
WebhookService -- apply payment-processor webhooks exactly once.

Responsibility:
    Records each delivery in ProcessedWebhook (unique webhook_id) in the
    same unit of work as its effect, then routes it:

        charge.succeeded  -> BidAcceptanceCoordinator.complete_payment
        charge.failed     -> BidAcceptanceCoordinator.fail_payment
        payout.succeeded  -> MilestonePaymentEngine.complete_payout
        payout.failed     -> MilestonePaymentEngine.fail_payout

    A redelivered webhook_id is acknowledged as a duplicate with no effect.
"""

from collections.abc import Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.events import (
    CHARGE_FAILED,
    CHARGE_SUCCEEDED,
    PAYOUT_FAILED,
    PAYOUT_SUCCEEDED,
    WEBHOOK_EVENTS,
)
from escrow_kernel.exceptions import ValidationError
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.outbox import ProcessedWebhook
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.bid_acceptance_coordinator import BidAcceptanceCoordinator
from escrow_kernel.services.milestone_payment_engine import MilestonePaymentEngine

logger = get_logger("services.webhook")

DUPLICATE = "duplicate"


class WebhookService(BaseService):
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

    def is_processed(self, webhook_id: str) -> bool:
        return self.session.execute(
            select(ProcessedWebhook.id).where(ProcessedWebhook.webhook_id == webhook_id)
        ).first() is not None

    def handle(
        self,
        webhook_id: str,
        event_type: str,
        processor_ref: str,
        payload: Mapping | None = None,
    ) -> str:
        """Apply one webhook delivery; return the outcome recorded for it."""
        if not webhook_id:
            raise ValidationError("webhook_id is required", field="webhook_id")
        if event_type not in WEBHOOK_EVENTS:
            raise ValidationError(f"Unsupported webhook event: {event_type}", field="event_type")
        payload = payload or {}

        if self.is_processed(webhook_id):
            logger.info("webhook_duplicate_ignored", extra={"webhook_id": webhook_id})
            return DUPLICATE

        record = ProcessedWebhook(
            webhook_id=webhook_id,
            event_type=event_type,
            processor_ref=processor_ref,
            received_at=self.clock.now(),
            outcome="received",
            created_at=self.clock.now(),
        )
        try:
            with self.session.begin_nested():
                self.session.add(record)
                self.session.flush()
        except IntegrityError:
            logger.info("webhook_duplicate_ignored", extra={"webhook_id": webhook_id})
            return DUPLICATE

        outcome = self._dispatch(event_type, processor_ref, payload)
        record.outcome = outcome
        self.session.flush()
        logger.info(
            "webhook_processed",
            extra={"webhook_id": webhook_id, "event_type": event_type, "outcome": outcome},
        )
        return outcome

    def _dispatch(self, event_type: str, processor_ref: str, payload: Mapping) -> str:
        if event_type == CHARGE_SUCCEEDED:
            return self.coordinator.complete_payment(processor_ref).status.value
        if event_type == CHARGE_FAILED:
            outcome = self.coordinator.fail_payment(
                processor_ref,
                payload.get("failure_code", "charge_failed"),
                payload.get("message"),
            )
            return outcome.status.value
        if event_type == PAYOUT_SUCCEEDED:
            return self.engine.complete_payout(processor_ref).payout_status
        if event_type == PAYOUT_FAILED:
            return self.engine.fail_payout(
                processor_ref, payload.get("failure_code", "payout_failed")
            ).payout_status
        raise ValidationError(f"Unsupported webhook event: {event_type}", field="event_type")
