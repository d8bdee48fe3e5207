"""
DisputeOverlay -- disputes raised against funded milestone payments.

Responsibility:
    Owns PaymentDispute.  Opening a dispute freezes the milestone
    (funded -> disputed); resolving it settles the held funds through
    MilestonePaymentEngine.settle_dispute; cancelling it lifts the freeze.

        opened -> under_review -> resolved_payer | resolved_payee | partial
        opened | under_review -> cancelled
        opened | under_review -> evidence_requested -> under_review
        any active status -> escalated -> resolved_* | partial

    Every active status (including evidence_requested and escalated)
    keeps the milestone frozen.
Architecture position:
    Kernel > Services.  Never writes MilestonePayment or ledger rows
    itself; all milestone changes go through the engine.

Invariants enforced:
    DISPUTE_FREEZE -- while a dispute is active the engine refuses release
        and refund.
    At most one active dispute per milestone payment (partial unique index;
    a second open() returns the active one).
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_kernel.db.types import ZERO, to_amount
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import DisputeSettlement
from escrow_kernel.domain.events import (
    PAYMENT_DISPUTE_ESCALATED,
    PAYMENT_DISPUTE_RESOLVED,
    PAYMENT_DISPUTED,
)
from escrow_kernel.domain.states import DisputeOutcome, DisputeStatus, DisputeType, MilestoneStatus
from escrow_kernel.exceptions import (
    DisputeNotFoundError,
    InvalidAmountError,
    MilestoneNotFundedError,
    StaleStateError,
    StateTransitionError,
    ValidationError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.dispute import PaymentDispute
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.event_outbox import EventOutbox
from escrow_kernel.services.milestone_payment_engine import MilestonePaymentEngine

logger = get_logger("services.dispute")


class DisputeOverlay(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        engine: MilestonePaymentEngine | None = None,
    ):
        super().__init__(session, clock)
        self.engine = engine or MilestonePaymentEngine(session, self.clock)
        self.outbox = EventOutbox(session, self.clock)

    def get(self, dispute_id: UUID) -> PaymentDispute:
        dispute = self.session.execute(
            select(PaymentDispute)
            .where(PaymentDispute.id == dispute_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if dispute is None:
            raise DisputeNotFoundError(dispute_id)
        return dispute

    def disputes_for(self, milestone_payment_id: UUID) -> list[PaymentDispute]:
        return list(
            self.session.execute(
                select(PaymentDispute)
                .where(PaymentDispute.milestone_payment_id == milestone_payment_id)
                .order_by(PaymentDispute.created_at)
            ).scalars()
        )

    def open(
        self,
        milestone_payment_id: UUID,
        opened_by: UUID,
        reason: str,
        dispute_type: DisputeType | str = DisputeType.OTHER,
        evidence_urls: list[str] | None = None,
    ) -> PaymentDispute:
        """
        Open a dispute and freeze the milestone.

        A second open while one is active returns the active dispute
        unchanged.

        Raises:
            MilestoneNotFundedError: the payment is not funded.
        """
        if not reason or not reason.strip():
            raise ValidationError("A dispute requires a reason", field="reason")
        dispute_type = DisputeType(dispute_type)
        urls = _clean_urls(evidence_urls or [])

        payment = self.engine.get(milestone_payment_id, lock=True)
        existing = self.engine.active_dispute(payment.id)
        if existing is not None:
            logger.info(
                "dispute_already_active",
                extra={"milestone_payment_id": str(payment.id), "dispute_id": str(existing.id)},
            )
            return existing
        if payment.status != MilestoneStatus.FUNDED.value:
            raise MilestoneNotFundedError(payment.id, payment.status)

        now = self.clock.now()
        dispute = PaymentDispute(
            milestone_payment_id=payment.id,
            opened_by=opened_by,
            reason=reason,
            dispute_type=dispute_type.value,
            status=DisputeStatus.OPENED.value,
            evidence_submitted=bool(urls),
            evidence_urls=urls,
            created_at=now,
        )
        try:
            with self.session.begin_nested():
                self.session.add(dispute)
                self.session.flush()
        except IntegrityError:
            existing = self.engine.active_dispute(payment.id)
            if existing is None:
                raise
            return existing

        self.engine.mark_disputed(payment.id)
        self.outbox.record(
            PAYMENT_DISPUTED,
            dispute.id,
            {
                "milestone_id": payment.milestone_id,
                "dispute_id": dispute.id,
                "dispute_type": dispute.dispute_type,
            },
        )
        self.session.flush()
        logger.info(
            "dispute_opened",
            extra={
                "dispute_id": str(dispute.id),
                "milestone_payment_id": str(payment.id),
                "opened_by": str(opened_by),
                "dispute_type": dispute.dispute_type,
            },
        )
        return dispute

    def start_review(self, dispute_id: UUID) -> PaymentDispute:
        dispute = self.get(dispute_id)
        if dispute.status == DisputeStatus.UNDER_REVIEW.value:
            return dispute
        self._transition(dispute, DisputeStatus.UNDER_REVIEW, review_started_at=self.clock.now())
        logger.info("dispute_review_started", extra={"dispute_id": str(dispute.id)})
        return dispute

    def request_evidence(self, dispute_id: UUID, requested_by: UUID) -> PaymentDispute:
        """Ask the parties for evidence; the dispute waits in evidence_requested."""
        dispute = self.get(dispute_id)
        if dispute.status == DisputeStatus.EVIDENCE_REQUESTED.value:
            return dispute
        self._transition(
            dispute, DisputeStatus.EVIDENCE_REQUESTED, evidence_requested_at=self.clock.now()
        )
        logger.info(
            "dispute_evidence_requested",
            extra={"dispute_id": str(dispute.id), "requested_by": str(requested_by)},
        )
        return dispute

    def submit_evidence(self, dispute_id: UUID, submitted_by: UUID, urls: list[str]) -> PaymentDispute:
        """
        Attach evidence links to an active dispute.

        Links already on the dispute are not added twice.  A dispute that
        was waiting for evidence goes back to under_review.
        """
        cleaned = _clean_urls(urls)
        if not cleaned:
            raise ValidationError("Evidence requires at least one link", field="urls")

        dispute = self.get(dispute_id)
        if not dispute.is_active:
            raise StateTransitionError(
                "PaymentDispute", dispute.id, dispute.status, "submit_evidence"
            )

        added = [url for url in cleaned if url not in dispute.evidence_urls]
        dispute.evidence_urls.extend(added)
        dispute.evidence_submitted = True
        dispute.updated_at = self.clock.now()
        self.session.flush()

        if dispute.status == DisputeStatus.EVIDENCE_REQUESTED.value:
            self._transition(dispute, DisputeStatus.UNDER_REVIEW)
        logger.info(
            "dispute_evidence_submitted",
            extra={
                "dispute_id": str(dispute.id),
                "submitted_by": str(submitted_by),
                "added": len(added),
                "total": len(dispute.evidence_urls),
            },
        )
        return dispute

    def escalate(self, dispute_id: UUID, escalated_by: UUID, notes: str | None = None) -> PaymentDispute:
        """Hand the dispute to a senior reviewer.  The milestone stays frozen."""
        dispute = self.get(dispute_id)
        if dispute.status == DisputeStatus.ESCALATED.value:
            return dispute
        values = {"escalated_at": self.clock.now()}
        if notes:
            values["resolution_notes"] = notes
        self._transition(dispute, DisputeStatus.ESCALATED, **values)
        self.outbox.record(
            PAYMENT_DISPUTE_ESCALATED,
            dispute.id,
            {
                "dispute_id": dispute.id,
                "milestone_payment_id": dispute.milestone_payment_id,
                "escalated_by": escalated_by,
            },
        )
        self.session.flush()
        logger.warning(
            "dispute_escalated",
            extra={"dispute_id": str(dispute.id), "escalated_by": str(escalated_by)},
        )
        return dispute

    def resolve(
        self,
        dispute_id: UUID,
        outcome: DisputeOutcome | str,
        amount=None,
        *,
        resolved_by: UUID,
        notes: str | None = None,
    ) -> DisputeSettlement:
        """
        Resolve a dispute and settle the held funds.

        ``amount`` is the payee's share and is required (and only allowed)
        for a partial outcome, where 0 < amount < held.  The remainder is
        refunded to the payer.
        """
        outcome = DisputeOutcome(outcome)
        dispute = self.get(dispute_id)
        with LogContext.bind(dispute_id=dispute.id):
            if not dispute.is_active:
                raise StateTransitionError("PaymentDispute", dispute.id, dispute.status, "resolve")

            payment = self.engine.get(dispute.milestone_payment_id, lock=True)
            held = payment.held_amount
            payee_amount = self._payee_share(outcome, amount, held)

            self._transition(
                dispute,
                outcome.resolved_status,
                resolution_amount=payee_amount,
                resolution_notes=notes,
                resolved_by=resolved_by,
                resolved_at=self.clock.now(),
            )
            settlement = self.engine.settle_dispute(
                payment.id, dispute.id, payee_amount, resolved_by=resolved_by
            )

            self.outbox.record(
                PAYMENT_DISPUTE_RESOLVED,
                dispute.id,
                {
                    "dispute_id": dispute.id,
                    "outcome": outcome.value,
                    "payee_amount": settlement.payee_amount,
                    "payer_amount": settlement.payer_amount,
                },
            )
            self.session.flush()
            logger.info(
                "dispute_resolved",
                extra={
                    "outcome": outcome.value,
                    "payee_amount": str(settlement.payee_amount),
                    "payer_amount": str(settlement.payer_amount),
                },
            )
            return settlement

    def cancel(self, dispute_id: UUID, cancelled_by: UUID, notes: str | None = None) -> PaymentDispute:
        """Withdraw the dispute; the milestone returns to funded."""
        dispute = self.get(dispute_id)
        if dispute.status == DisputeStatus.CANCELLED.value:
            return dispute
        self._transition(
            dispute,
            DisputeStatus.CANCELLED,
            resolved_by=cancelled_by,
            resolved_at=self.clock.now(),
            resolution_notes=notes,
        )
        self.engine.lift_dispute(dispute.milestone_payment_id)
        logger.info(
            "dispute_cancelled",
            extra={"dispute_id": str(dispute.id), "cancelled_by": str(cancelled_by)},
        )
        return dispute

    @staticmethod
    def _payee_share(outcome: DisputeOutcome, amount, held: Decimal) -> Decimal:
        if outcome == DisputeOutcome.PARTIAL:
            if amount is None:
                raise ValidationError("A partial resolution requires an amount", field="amount")
            share = to_amount(amount)
            if share >= held:
                raise InvalidAmountError(amount, f"partial share must be below the held {held}")
            return share
        if amount is not None:
            raise ValidationError(
                f"amount is only accepted for a partial resolution, not {outcome.value}",
                field="amount",
            )
        return held if outcome == DisputeOutcome.PAYEE else ZERO

    def _transition(self, dispute: PaymentDispute, target: DisputeStatus, **values) -> None:
        if not DisputeStatus.can_transition(dispute.status, target):
            raise StateTransitionError("PaymentDispute", dispute.id, dispute.status, target.value)
        won = self._conditional_transition(
            PaymentDispute, dispute.id, dispute.status, status=target.value, **values
        )
        if not won:
            raise StaleStateError("PaymentDispute", dispute.id, dispute.status, target.value)


def _clean_urls(urls: list[str]) -> list[str]:
    """Strip blanks and duplicates, keeping first-seen order."""
    cleaned: list[str] = []
    for url in urls:
        url = (url or "").strip()
        if url and url not in cleaned:
            cleaned.append(url)
    return cleaned
