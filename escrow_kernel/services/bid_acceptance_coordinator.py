"""
BidAcceptanceCoordinator -- homeowner accepts a bid, contractor pays the
connection fee, contact details are released.

Responsibility:
    Owns BidCard, Bid, BidAcceptance, ConnectionPayment, and ContactRelease.
    Drives the acceptance state machine:

        pending_payment --pay()-----> paid
        pending_payment --expire()--> expired --> fallback accept() | none
        pending_payment --cancel()--> cancelled

Architecture position:
    Kernel > Services.  Moves money only through EscrowAccountManager and
    the PaymentProcessor adapter.  Publishes through EventOutbox.

Invariants enforced:
    SINGLE_PENDING_ACCEPTANCE -- accept() checks under the bid-card row lock,
        backed by a partial unique index.
    Every exit from pending_payment is a conditional UPDATE, so pay() and
    expire() racing on the same acceptance produce exactly one winner.

Failure modes:
    - AcceptanceConflictError: card already has a pending or paid acceptance.
    - AcceptanceExpiredError: pay() after expires_at.
    - BidCapacityExceededError, BidLockedError: bidding rules.
    - pay() does NOT raise on decline, timeout, or a lost race; it returns a
      PaymentOutcome so the recorded failure commits with the caller.

Audit relevance:
    ContactRelease rows are immutable proof of each disclosure.  Fee amount
    and calculation method are frozen on the acceptance at accept() time.
"""

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_kernel.adapters.collaborators import (
    ContactDirectory,
    InMemoryContactDirectory,
    InMemorySubscriptionDirectory,
    SubscriptionDirectory,
)
from escrow_kernel.adapters.payment_processor import ChargeStatus, PaymentProcessor
from escrow_kernel.db.types import ZERO, to_amount, validate_currency
from escrow_kernel.domain.capacity_policy import AdmissionDecision, CapacityPolicy
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import ExpiryOutcome, ExpiryStatus, PaymentOutcome, PaymentStatus
from escrow_kernel.domain.events import (
    BID_ACCEPTANCE_CANCELLED,
    BID_ACCEPTANCE_EXPIRING,
    BID_ACCEPTED,
    BID_EXPIRED,
    CONNECTION_PAYMENT_COMPLETED,
)
from escrow_kernel.domain.fee_policy import (
    FeePolicy,
    default_fee_policy,
    default_tier_fee_policies,
)
from escrow_kernel.domain.ranking import select_fallback_bid
from escrow_kernel.domain.states import (
    AcceptanceStatus,
    BidCardStatus,
    BidStatus,
    ConnectionPaymentStatus,
)
from escrow_kernel.exceptions import (
    AcceptanceConflictError,
    AcceptanceExpiredError,
    BidAcceptanceNotFoundError,
    BidCapacityExceededError,
    BidCardNotFoundError,
    BidLockedError,
    BidNotFoundError,
    ProcessorDeclinedError,
    ProcessorRetryExhaustedError,
    StateTransitionError,
    ValidationError,
)
from escrow_kernel.invariants import KernelInvariant
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.bidding import (
    Bid,
    BidAcceptance,
    BidCard,
    ConnectionPayment,
    ContactRelease,
)
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.escrow_service import EscrowAccountManager
from escrow_kernel.services.event_outbox import EventOutbox
from escrow_kernel.services.retry_service import ProcessorRetryPolicy, call_with_retry
from escrow_kernel.utils.idempotency import connection_fee_key

logger = get_logger("services.bid_acceptance")

PLATFORM_FEE_OWNER_ID = UUID("00000000-0000-0000-0000-00000000fee0")

_NON_TERMINAL = (AcceptanceStatus.PENDING_PAYMENT.value, AcceptanceStatus.PAID.value)


@dataclass(frozen=True)
class CoordinatorSettings:
    acceptance_window_hours: int = 24
    platform_fee_owner_id: UUID = PLATFORM_FEE_OWNER_ID
    currency: str = "USD"

    def __post_init__(self):
        if self.acceptance_window_hours <= 0:
            raise ValueError(
                f"acceptance_window_hours must be positive, got {self.acceptance_window_hours}"
            )


class BidAcceptanceCoordinator(BaseService):
    """
    Orchestrates acceptance, connection-fee payment, expiry, and fallback.

    All operations happen within the caller's transaction boundary.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        processor: PaymentProcessor | None = None,
        *,
        fee_policy: FeePolicy | None = None,
        tier_fee_policies: Mapping[str, FeePolicy] | None = None,
        capacity_policy: CapacityPolicy | None = None,
        retry_policy: ProcessorRetryPolicy | None = None,
        contact_directory: ContactDirectory | None = None,
        subscriptions: SubscriptionDirectory | None = None,
        settings: CoordinatorSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(session, clock)
        self.processor = processor
        self.fee_policy = fee_policy or default_fee_policy()
        self.tier_fee_policies = dict(
            default_tier_fee_policies() if tier_fee_policies is None else tier_fee_policies
        )
        self.capacity_policy = capacity_policy or CapacityPolicy()
        self.retry_policy = retry_policy or ProcessorRetryPolicy()
        self.contacts = contact_directory or InMemoryContactDirectory()
        self.subscriptions = subscriptions or InMemorySubscriptionDirectory()
        self.settings = settings or CoordinatorSettings()
        self.escrow = EscrowAccountManager(session, self.clock)
        self.outbox = EventOutbox(session, self.clock)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_bid_card(self, bid_card_id: UUID, *, lock: bool = False) -> BidCard:
        stmt = select(BidCard).where(BidCard.id == bid_card_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        card = self.session.execute(stmt).scalar_one_or_none()
        if card is None:
            raise BidCardNotFoundError(bid_card_id)
        return card

    def get_bid(self, bid_id: UUID) -> Bid:
        bid = self.session.get(Bid, bid_id)
        if bid is None:
            raise BidNotFoundError(bid_id)
        return bid

    def get_acceptance(self, bid_acceptance_id: UUID) -> BidAcceptance:
        acceptance = self.session.execute(
            select(BidAcceptance)
            .where(BidAcceptance.id == bid_acceptance_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if acceptance is None:
            raise BidAcceptanceNotFoundError(bid_acceptance_id)
        return acceptance

    def active_acceptance_for_card(self, bid_card_id: UUID) -> BidAcceptance | None:
        return self.session.execute(
            select(BidAcceptance).where(
                BidAcceptance.bid_card_id == bid_card_id,
                BidAcceptance.status.in_(_NON_TERMINAL),
            )
        ).scalars().first()

    def acceptance_for_bid(self, bid_id: UUID) -> BidAcceptance | None:
        return self.session.execute(
            select(BidAcceptance).where(BidAcceptance.bid_id == bid_id)
        ).scalar_one_or_none()

    def get_contact_release(self, bid_acceptance_id: UUID) -> ContactRelease | None:
        return self.session.execute(
            select(ContactRelease).where(ContactRelease.bid_acceptance_id == bid_acceptance_id)
        ).scalar_one_or_none()

    def due_for_expiry(self, limit: int = 100) -> list[UUID]:
        """Ids of pending acceptances whose window has closed, oldest first."""
        return list(
            self.session.execute(
                select(BidAcceptance.id)
                .where(
                    BidAcceptance.status == AcceptanceStatus.PENDING_PAYMENT.value,
                    BidAcceptance.expires_at <= self.clock.now(),
                )
                .order_by(BidAcceptance.expires_at, BidAcceptance.id)
                .limit(limit)
            ).scalars()
        )

    def due_for_expiry_notice(self, notice_hours: float, limit: int = 100) -> list[UUID]:
        """Ids of pending, un-notified acceptances expiring within ``notice_hours``."""
        now = self.clock.now()
        return list(
            self.session.execute(
                select(BidAcceptance.id)
                .where(
                    BidAcceptance.status == AcceptanceStatus.PENDING_PAYMENT.value,
                    BidAcceptance.expiry_notified.is_(False),
                    BidAcceptance.expires_at > now,
                    BidAcceptance.expires_at <= now + timedelta(hours=notice_hours),
                )
                .order_by(BidAcceptance.expires_at, BidAcceptance.id)
                .limit(limit)
            ).scalars()
        )

    # ------------------------------------------------------------------
    # Bid cards and bids
    # ------------------------------------------------------------------

    def create_bid_card(
        self,
        owner_id: UUID,
        title: str,
        *,
        max_bids_allowed: int | None = None,
        acceptance_window_hours: int | None = None,
        currency: str | None = None,
    ) -> BidCard:
        if acceptance_window_hours is not None and acceptance_window_hours <= 0:
            raise ValidationError(
                "acceptance_window_hours must be positive", field="acceptance_window_hours"
            )
        card = BidCard(
            owner_id=owner_id,
            title=title,
            currency=validate_currency(currency or self.settings.currency),
            status=BidCardStatus.OPEN.value,
            max_bids_allowed=max_bids_allowed or self.capacity_policy.default_max_bids,
            current_bids=0,
            acceptance_window_hours=acceptance_window_hours,
            created_at=self.clock.now(),
        )
        self.session.add(card)
        self.session.flush()
        return card

    def submit_bid(
        self,
        bid_card_id: UUID,
        contractor_id: UUID,
        amount,
        *,
        is_final_offer: bool = False,
    ) -> Bid:
        """Submit a bid; the capacity policy decides slot, overflow, or reject."""
        amount = to_amount(amount)
        card = self.get_bid_card(bid_card_id, lock=True)
        if card.status != BidCardStatus.OPEN.value:
            raise StateTransitionError("BidCard", card.id, card.status, "submit bid to")

        duplicate = self.session.execute(
            select(Bid.id).where(Bid.bid_card_id == card.id, Bid.contractor_id == contractor_id)
        ).first()
        if duplicate is not None:
            raise ValidationError(
                f"Contractor {contractor_id} already bid on card {card.id}", field="contractor_id"
            )

        decision = self.capacity_policy.decide(card.current_bids, card.max_bids_allowed)
        if decision == AdmissionDecision.REJECT:
            logger.info(
                "bid_rejected_capacity",
                extra={"bid_card_id": str(card.id), "current_bids": card.current_bids},
            )
            raise BidCapacityExceededError(card.id, card.max_bids_allowed)

        now = self.clock.now()
        bid = Bid(
            bid_card_id=card.id,
            contractor_id=contractor_id,
            amount=amount,
            submitted_at=now,
            status=BidStatus.SUBMITTED.value,
            is_overflow=decision == AdmissionDecision.OVERFLOW,
            is_final_offer=is_final_offer,
            revision_count=0,
            created_at=now,
        )
        self.session.add(bid)
        if decision == AdmissionDecision.ADMIT:
            card.current_bids += 1
            card.updated_at = now
        self.session.flush()

        logger.info(
            "bid_submitted",
            extra={
                "bid_id": str(bid.id),
                "bid_card_id": str(card.id),
                "amount": str(amount),
                "decision": decision.value,
            },
        )
        return bid

    def revise_bid(self, bid_id: UUID, amount) -> Bid:
        """
        Change a bid's amount.

        A bid under a pending or paid acceptance, or marked final, is locked.
        submitted_at is kept, so revising does not change tie-break order.
        """
        amount = to_amount(amount)
        bid = self.get_bid(bid_id)
        if bid.is_final_offer:
            raise BidLockedError(bid.id, "final_offer")
        if bid.status != BidStatus.SUBMITTED.value:
            raise BidLockedError(bid.id, bid.status)

        bid.amount = amount
        bid.revision_count += 1
        bid.updated_at = self.clock.now()
        self.session.flush()
        logger.info(
            "bid_revised",
            extra={"bid_id": str(bid.id), "amount": str(amount), "revision": bid.revision_count},
        )
        return bid

    def withdraw_bid(self, bid_id: UUID, reason: str = "bid withdrawn") -> Bid:
        """Contractor withdraws; a pending acceptance on the bid is cancelled without fallback."""
        bid = self.get_bid(bid_id)
        if bid.status == BidStatus.WITHDRAWN.value:
            return bid

        acceptance = self.acceptance_for_bid(bid.id)
        if acceptance is not None and acceptance.status == AcceptanceStatus.PENDING_PAYMENT.value:
            self.cancel(acceptance.id, cancelled_by=bid.contractor_id, reason=reason,
                        bid_status=BidStatus.WITHDRAWN)
            return bid

        if not BidStatus.can_transition(bid.status, BidStatus.WITHDRAWN):
            raise StateTransitionError("Bid", bid.id, bid.status, "withdraw")

        if bid.status == BidStatus.SUBMITTED.value:
            self._release_slot(bid)
        bid.status = BidStatus.WITHDRAWN.value
        bid.updated_at = self.clock.now()
        self.session.flush()
        logger.info("bid_withdrawn", extra={"bid_id": str(bid.id)})
        return bid

    def _release_slot(self, bid: Bid) -> None:
        """A slotted bid leaving the live pool (withdrawn or declined) frees its slot."""
        if bid.is_overflow:
            return
        card = self.get_bid_card(bid.bid_card_id, lock=True)
        if card.current_bids > 0:
            card.current_bids -= 1
            card.updated_at = self.clock.now()

    def withdraw_card(self, bid_card_id: UUID, withdrawn_by: UUID) -> BidCard:
        """Homeowner withdraws the project; a pending acceptance is cancelled."""
        card = self.get_bid_card(bid_card_id, lock=True)
        if not BidCardStatus.can_transition(card.status, BidCardStatus.WITHDRAWN):
            raise StateTransitionError("BidCard", card.id, card.status, "withdraw")

        active = self.active_acceptance_for_card(card.id)
        if active is not None and active.status == AcceptanceStatus.PENDING_PAYMENT.value:
            self.cancel(active.id, cancelled_by=withdrawn_by, reason="bid card withdrawn")

        card.status = BidCardStatus.WITHDRAWN.value
        card.updated_at = self.clock.now()
        self.session.flush()
        logger.info("bid_card_withdrawn", extra={"bid_card_id": str(card.id)})
        return card

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    def fee_policy_for(self, subscription_tier: str | None) -> FeePolicy:
        """The tier's own policy if one is configured, else the default."""
        if subscription_tier is None:
            return self.fee_policy
        return self.tier_fee_policies.get(subscription_tier, self.fee_policy)

    def accept(
        self,
        bid_id: UUID,
        accepted_by: UUID,
        *,
        promoted_from: UUID | None = None,
    ) -> BidAcceptance:
        """
        Accept a bid and open its payment window.

        Raises:
            AcceptanceConflictError: the card already has a pending or paid
                acceptance.
            StateTransitionError: bid not in submitted, or card not open.
        """
        bid = self.get_bid(bid_id)
        card = self.get_bid_card(bid.bid_card_id, lock=True)
        self.session.refresh(bid)

        existing = self.active_acceptance_for_card(card.id)
        if existing is not None:
            logger.info(
                "acceptance_conflict",
                extra={
                    "bid_card_id": str(card.id),
                    "existing_acceptance_id": str(existing.id),
                    "existing_status": existing.status,
                    "invariant": KernelInvariant.SINGLE_PENDING_ACCEPTANCE.value,
                },
            )
            raise AcceptanceConflictError(card.id, existing.id, existing.status)
        if card.status != BidCardStatus.OPEN.value:
            raise StateTransitionError("BidCard", card.id, card.status, "accept bid on")
        if not BidStatus.can_transition(bid.status, BidStatus.ACCEPTED):
            raise StateTransitionError("Bid", bid.id, bid.status, "accept")

        tier = self.subscriptions.tier_for(bid.contractor_id)
        quote = self.fee_policy_for(tier).quote(bid.amount)
        window = card.acceptance_window_hours or self.settings.acceptance_window_hours
        now = self.clock.now()

        acceptance = BidAcceptance(
            bid_id=bid.id,
            bid_card_id=card.id,
            accepted_by=accepted_by,
            accepted_at=now,
            expires_at=now + timedelta(hours=window),
            fee_amount=quote.amount,
            fee_calc_method=quote.method,
            fee_policy_name=quote.policy_name,
            subscription_tier=tier,
            currency=card.currency,
            status=AcceptanceStatus.PENDING_PAYMENT.value,
            promoted_from_id=promoted_from,
            created_at=now,
        )
        try:
            with self.session.begin_nested():
                self.session.add(acceptance)
                self.session.flush()
        except IntegrityError:
            existing = self.active_acceptance_for_card(card.id)
            if existing is None:
                raise
            raise AcceptanceConflictError(card.id, existing.id, existing.status) from None

        bid.status = BidStatus.ACCEPTED.value
        bid.updated_at = now
        self.outbox.record(
            BID_ACCEPTED,
            acceptance.id,
            {
                "bid_id": bid.id,
                "bid_card_id": card.id,
                "bid_acceptance_id": acceptance.id,
                "expires_at": acceptance.expires_at,
            },
        )
        self.session.flush()

        logger.info(
            "bid_accepted",
            extra={
                "bid_acceptance_id": str(acceptance.id),
                "bid_id": str(bid.id),
                "bid_card_id": str(card.id),
                "fee_amount": str(quote.amount),
                "fee_method": quote.method,
                "fee_policy": quote.policy_name,
                "subscription_tier": tier,
                "expires_at": acceptance.expires_at.isoformat(),
                "promoted_from": str(promoted_from) if promoted_from else None,
            },
        )
        return acceptance

    def cancel(
        self,
        bid_acceptance_id: UUID,
        cancelled_by: UUID,
        reason: str | None = None,
        *,
        bid_status: BidStatus = BidStatus.DECLINED,
    ) -> BidAcceptance:
        """Cancel a pending acceptance.  No fallback is promoted."""
        acceptance = self.get_acceptance(bid_acceptance_id)
        if acceptance.status == AcceptanceStatus.CANCELLED.value:
            return acceptance

        now = self.clock.now()
        won = self._conditional_transition(
            BidAcceptance,
            acceptance.id,
            AcceptanceStatus.PENDING_PAYMENT.value,
            status=AcceptanceStatus.CANCELLED.value,
            cancelled_at=now,
            cancel_reason=reason,
        )
        if not won:
            acceptance = self.get_acceptance(bid_acceptance_id)
            raise StateTransitionError(
                "BidAcceptance", acceptance.id, acceptance.status, "cancel"
            )

        bid = self.get_bid(acceptance.bid_id)
        self._release_slot(bid)
        bid.status = bid_status.value
        bid.updated_at = now
        self.outbox.record(
            BID_ACCEPTANCE_CANCELLED,
            acceptance.id,
            {"bid_id": bid.id, "bid_acceptance_id": acceptance.id, "reason": reason},
        )
        self.session.flush()
        logger.info(
            "acceptance_cancelled",
            extra={
                "bid_acceptance_id": str(acceptance.id),
                "cancelled_by": str(cancelled_by),
                "reason": reason,
            },
        )
        return acceptance

    # ------------------------------------------------------------------
    # Expiry and fallback
    # ------------------------------------------------------------------

    def notify_expiring(self, bid_acceptance_id: UUID) -> bool:
        """
        Publish the one reminder that an acceptance is about to lapse.

        Sets ``expiry_notified`` with a conditional UPDATE, so concurrent
        sweepers send it once.  Returns False when there is nothing to send
        (already notified, no longer pending, or already past expiry).
        """
        acceptance = self.get_acceptance(bid_acceptance_id)
        now = self.clock.now()
        if acceptance.expiry_notified or now >= acceptance.expires_at:
            return False

        result = self.session.execute(
            update(BidAcceptance)
            .where(
                BidAcceptance.id == acceptance.id,
                BidAcceptance.status == AcceptanceStatus.PENDING_PAYMENT.value,
                BidAcceptance.expiry_notified.is_(False),
            )
            .values(expiry_notified=True, expiry_notification_sent_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.session.refresh(acceptance)

        bid = self.get_bid(acceptance.bid_id)
        self.outbox.record(
            BID_ACCEPTANCE_EXPIRING,
            acceptance.id,
            {
                "bid_id": bid.id,
                "bid_acceptance_id": acceptance.id,
                "contractor_id": bid.contractor_id,
                "expires_at": acceptance.expires_at,
                "fee_amount": acceptance.fee_amount,
            },
        )
        self.session.flush()
        logger.info(
            "acceptance_expiry_notified",
            extra={
                "bid_acceptance_id": str(acceptance.id),
                "expires_at": acceptance.expires_at.isoformat(),
            },
        )
        return True

    def expire(self, bid_acceptance_id: UUID) -> ExpiryOutcome:
        """
        Expire an acceptance whose window has closed and promote a fallback.

        Idempotent: a second call on an expired acceptance reports the
        fallback chosen the first time.
        """
        acceptance = self.get_acceptance(bid_acceptance_id)
        with LogContext.bind(bid_acceptance_id=acceptance.id):
            if acceptance.status != AcceptanceStatus.PENDING_PAYMENT.value:
                return self._expiry_outcome(acceptance, ExpiryStatus.NOT_PENDING)

            now = self.clock.now()
            if now < acceptance.expires_at:
                return ExpiryOutcome(ExpiryStatus.NOT_DUE, acceptance.id)

            won = self._conditional_transition(
                BidAcceptance,
                acceptance.id,
                AcceptanceStatus.PENDING_PAYMENT.value,
                status=AcceptanceStatus.EXPIRED.value,
                expired_at=now,
            )
            if not won:
                acceptance = self.get_acceptance(bid_acceptance_id)
                logger.info("acceptance_expiry_lost_race", extra={"status": acceptance.status})
                return self._expiry_outcome(acceptance, ExpiryStatus.NOT_PENDING)

            bid = self.get_bid(acceptance.bid_id)
            bid.status = BidStatus.EXPIRED.value
            bid.updated_at = now
            self.session.flush()

            # bid.expired is recorded before the fallback's bid.accepted.
            chosen = self._choose_fallback(acceptance)
            self.outbox.record(
                BID_EXPIRED,
                acceptance.id,
                {
                    "bid_id": acceptance.bid_id,
                    "bid_acceptance_id": acceptance.id,
                    "fallback_bid_id": chosen.id if chosen else None,
                },
            )
            fallback = self._promote_fallback(acceptance, chosen) if chosen else None
            self.session.flush()

            logger.info(
                "acceptance_expired",
                extra={
                    "bid_id": str(acceptance.bid_id),
                    "fallback_bid_id": str(fallback.bid_id) if fallback else None,
                    "fallback_acceptance_id": str(fallback.id) if fallback else None,
                },
            )
            return ExpiryOutcome(
                ExpiryStatus.EXPIRED,
                acceptance.id,
                fallback_bid_id=fallback.bid_id if fallback else None,
                fallback_acceptance_id=fallback.id if fallback else None,
            )

    def _choose_fallback(self, expired: BidAcceptance) -> Bid | None:
        card = self.get_bid_card(expired.bid_card_id, lock=True)
        if card.status != BidCardStatus.OPEN.value:
            return None

        candidates = self.session.execute(
            select(Bid).where(
                Bid.bid_card_id == card.id,
                Bid.status == BidStatus.SUBMITTED.value,
            )
        ).scalars().all()
        chosen = select_fallback_bid(candidates, exclude={expired.bid_id})
        if chosen is None:
            logger.info("no_fallback_bid", extra={"bid_card_id": str(card.id)})
        return chosen

    def _promote_fallback(self, expired: BidAcceptance, chosen: Bid) -> BidAcceptance:
        promoted = self.accept(chosen.id, expired.accepted_by, promoted_from=expired.id)
        expired.fallback_bid_id = chosen.id
        expired.fallback_activated_at = self.clock.now()
        self.session.flush()
        return promoted

    def _expiry_outcome(self, acceptance: BidAcceptance, status: ExpiryStatus) -> ExpiryOutcome:
        fallback_acceptance_id = None
        if acceptance.fallback_bid_id is not None:
            promoted = self.acceptance_for_bid(acceptance.fallback_bid_id)
            fallback_acceptance_id = promoted.id if promoted else None
        return ExpiryOutcome(
            status,
            acceptance.id,
            fallback_bid_id=acceptance.fallback_bid_id,
            fallback_acceptance_id=fallback_acceptance_id,
        )

    # ------------------------------------------------------------------
    # Connection-fee payment
    # ------------------------------------------------------------------

    def pay(
        self,
        bid_acceptance_id: UUID,
        idempotency_key: str,
        *,
        payer_ref: str | None = None,
    ) -> PaymentOutcome:
        """
        Charge the connection fee and, on success, release contact details.

        Returns a PaymentOutcome for every expected result (paid, replay,
        decline, timeout, lost race).  Raises only for calls that were never
        legal: unknown acceptance, window closed, acceptance cancelled.
        """
        if not idempotency_key:
            raise ValidationError("idempotency_key is required", field="idempotency_key")
        if self.processor is None:
            raise RuntimeError("BidAcceptanceCoordinator.pay() requires a PaymentProcessor")

        acceptance = self.get_acceptance(bid_acceptance_id)
        with LogContext.bind(bid_acceptance_id=acceptance.id):
            payment = self._payment_for(acceptance)

            if acceptance.status == AcceptanceStatus.PAID.value:
                return self._outcome(PaymentStatus.ALREADY_PAID, acceptance, payment)
            if acceptance.status == AcceptanceStatus.EXPIRED.value:
                raise AcceptanceExpiredError(acceptance.id, acceptance.expires_at)
            if acceptance.status != AcceptanceStatus.PENDING_PAYMENT.value:
                raise StateTransitionError(
                    "BidAcceptance", acceptance.id, acceptance.status, "pay"
                )
            if self.clock.now() >= acceptance.expires_at:
                raise AcceptanceExpiredError(acceptance.id, acceptance.expires_at)

            if payment.needs_reconciliation:
                return self._outcome(
                    PaymentStatus.NEEDS_RECONCILIATION, acceptance, payment,
                    message="payment is awaiting manual reconciliation",
                )
            if payment.status == ConnectionPaymentStatus.PROCESSING.value and payment.processor_ref:
                # Charge accepted by the gateway; settlement arrives by webhook.
                return self._outcome(PaymentStatus.PENDING, acceptance, payment)

            if acceptance.fee_amount == ZERO:
                return self._settle(acceptance, payment, processor_ref=None)

            return self._charge(acceptance, payment, idempotency_key, payer_ref)

    def complete_payment(self, processor_ref: str) -> PaymentOutcome:
        """
        Asynchronous charge success (charge.succeeded webhook).

        A success for a charge already recorded as failed is not applied:
        the payment is flagged for reconciliation and the outcome returned
        normally, so the delivery is recorded and not redelivered.
        """
        payment = self._payment_by_ref(processor_ref)
        acceptance = self.get_acceptance(payment.bid_acceptance_id)
        with LogContext.bind(bid_acceptance_id=acceptance.id):
            if payment.status == ConnectionPaymentStatus.COMPLETED.value:
                return self._outcome(PaymentStatus.ALREADY_PAID, acceptance, payment)
            if payment.status == ConnectionPaymentStatus.FAILED.value:
                return self._late_success(acceptance, payment, processor_ref)
            return self._settle(acceptance, payment, processor_ref)

    def fail_payment(self, processor_ref: str, failure_code: str, message: str | None = None) -> PaymentOutcome:
        """Asynchronous charge failure (charge.failed webhook)."""
        payment = self._payment_by_ref(processor_ref)
        acceptance = self.get_acceptance(payment.bid_acceptance_id)
        with LogContext.bind(bid_acceptance_id=acceptance.id):
            if payment.status == ConnectionPaymentStatus.COMPLETED.value:
                return self._outcome(PaymentStatus.ALREADY_PAID, acceptance, payment)
            if payment.status != ConnectionPaymentStatus.FAILED.value:
                self._mark_failed(payment, failure_code, message)
            return self._outcome(
                PaymentStatus.DECLINED, acceptance, payment, decline_code=failure_code
            )

    def _charge(
        self,
        acceptance: BidAcceptance,
        payment: ConnectionPayment,
        idempotency_key: str,
        payer_ref: str | None,
    ) -> PaymentOutcome:
        # A key already sent to the gateway without a final answer is reused.
        if payment.idempotency_key and payment.status != ConnectionPaymentStatus.FAILED.value:
            key = payment.idempotency_key
        else:
            key = idempotency_key

        remaining = self.retry_policy.retry_budget - payment.attempt_count
        if remaining <= 0:
            return self._flag_reconciliation(acceptance, payment)

        self._move_payment(payment, ConnectionPaymentStatus.PROCESSING)
        payment.idempotency_key = key
        payment.failure_code = None
        payment.error_message = None
        self.session.flush()

        def _count_attempt(_attempt: int) -> None:
            payment.attempt_count += 1

        try:
            charge = call_with_retry(
                "charge",
                lambda: self.processor.charge(
                    acceptance.fee_amount,
                    acceptance.currency,
                    payer_ref or str(payment.contractor_id),
                    key,
                    self.retry_policy.timeout_seconds,
                ),
                self.retry_policy,
                attempts_allowed=remaining,
                idempotency_key=key,
                on_attempt=_count_attempt,
                sleep=self._sleep,
            )
        except ProcessorDeclinedError as exc:
            self._mark_failed(payment, exc.decline_code, str(exc))
            return self._outcome(
                PaymentStatus.DECLINED, acceptance, payment, decline_code=exc.decline_code
            )
        except ProcessorRetryExhaustedError as exc:
            # Outcome at the gateway is unknown: keep the key, go back to pre-call.
            self._move_payment(payment, ConnectionPaymentStatus.PENDING)
            payment.error_message = str(exc.last_error or exc)[:1000]
            self.session.flush()
            if payment.attempt_count >= self.retry_policy.retry_budget:
                return self._flag_reconciliation(acceptance, payment)
            return self._outcome(
                PaymentStatus.PENDING, acceptance, payment,
                message="processor unavailable; retry with the same key",
            )

        payment.processor_ref = charge.processor_ref
        self.session.flush()

        if charge.status == ChargeStatus.PENDING:
            logger.info("connection_charge_pending", extra={"processor_ref": charge.processor_ref})
            return self._outcome(PaymentStatus.PENDING, acceptance, payment)

        return self._settle(acceptance, payment, charge.processor_ref)

    def _settle(
        self,
        acceptance: BidAcceptance,
        payment: ConnectionPayment,
        processor_ref: str | None,
    ) -> PaymentOutcome:
        """Apply a successful charge: conditional paid transition, fee deposit, contact release."""
        now = self.clock.now()
        won = self._conditional_transition(
            BidAcceptance,
            acceptance.id,
            AcceptanceStatus.PENDING_PAYMENT.value,
            status=AcceptanceStatus.PAID.value,
            paid_at=now,
        )
        if not won:
            acceptance = self.get_acceptance(acceptance.id)
            if acceptance.status == AcceptanceStatus.PAID.value:
                return self._outcome(PaymentStatus.ALREADY_PAID, acceptance, payment)
            return self._compensate_stale_charge(acceptance, payment, processor_ref)

        ledger_entry_id = None
        if acceptance.fee_amount > ZERO:
            fee_account = self.escrow.open_account(
                self.settings.platform_fee_owner_id, acceptance.currency
            )
            deposit = self.escrow.deposit(
                fee_account.id,
                acceptance.fee_amount,
                connection_fee_key(acceptance.id),
                memo=f"connection fee for bid {acceptance.bid_id}",
            )
            ledger_entry_id = deposit.entry_id

        self._move_payment(payment, ConnectionPaymentStatus.COMPLETED)
        payment.processor_ref = processor_ref
        payment.completed_at = now

        bid = self.get_bid(acceptance.bid_id)
        bid.status = BidStatus.CONNECTED.value
        bid.updated_at = now
        card = self.get_bid_card(acceptance.bid_card_id)
        if BidCardStatus.can_transition(card.status, BidCardStatus.AWARDED):
            card.status = BidCardStatus.AWARDED.value
            card.updated_at = now

        release = ContactRelease(
            bid_acceptance_id=acceptance.id,
            homeowner_id=card.owner_id,
            contractor_id=bid.contractor_id,
            homeowner_contact=self.contacts.contact_for(card.owner_id),
            contractor_contact=self.contacts.contact_for(bid.contractor_id),
            released_at=now,
            created_at=now,
        )
        self.session.add(release)

        self.outbox.record(
            CONNECTION_PAYMENT_COMPLETED,
            acceptance.id,
            {
                "bid_id": bid.id,
                "contractor_id": bid.contractor_id,
                "bid_acceptance_id": acceptance.id,
                "amount": acceptance.fee_amount,
            },
        )
        self.session.flush()

        logger.info(
            "connection_payment_completed",
            extra={
                "bid_id": str(bid.id),
                "processor_ref": processor_ref,
                "fee_amount": str(acceptance.fee_amount),
                "contact_release_id": str(release.id),
            },
        )
        return self._outcome(
            PaymentStatus.PAID,
            acceptance,
            payment,
            ledger_entry_id=ledger_entry_id,
            contact_release_id=release.id,
        )

    def _compensate_stale_charge(
        self,
        acceptance: BidAcceptance,
        payment: ConnectionPayment,
        processor_ref: str | None,
    ) -> PaymentOutcome:
        """The charge landed after the acceptance left pending_payment: refund it."""
        logger.warning(
            "connection_charge_stale",
            extra={"acceptance_status": acceptance.status, "processor_ref": processor_ref},
        )
        if processor_ref is not None:
            try:
                call_with_retry(
                    "refund",
                    lambda: self.processor.refund(
                        processor_ref, acceptance.fee_amount, self.retry_policy.timeout_seconds
                    ),
                    self.retry_policy,
                    sleep=self._sleep,
                )
                payment.refunded_at = self.clock.now()
            except (ProcessorRetryExhaustedError, ProcessorDeclinedError):
                payment.needs_reconciliation = True
                logger.error("stale_charge_refund_failed", extra={"processor_ref": processor_ref})

        self._mark_failed(payment, "acceptance_not_pending", f"acceptance is {acceptance.status}")
        return self._outcome(
            PaymentStatus.STALE, acceptance, payment,
            message=f"acceptance is {acceptance.status}; charge refunded",
        )

    def _flag_reconciliation(
        self, acceptance: BidAcceptance, payment: ConnectionPayment
    ) -> PaymentOutcome:
        payment.needs_reconciliation = True
        payment.updated_at = self.clock.now()
        self.session.flush()
        logger.error(
            "connection_payment_needs_reconciliation",
            extra={"attempts": payment.attempt_count, "idempotency_key": payment.idempotency_key},
        )
        return self._outcome(
            PaymentStatus.NEEDS_RECONCILIATION, acceptance, payment,
            message="retry budget exhausted",
        )

    def _late_success(
        self, acceptance: BidAcceptance, payment: ConnectionPayment, processor_ref: str
    ) -> PaymentOutcome:
        payment.needs_reconciliation = True
        payment.updated_at = self.clock.now()
        self.session.flush()
        logger.warning(
            "late_charge_success_ignored",
            extra={
                "processor_ref": processor_ref,
                "failure_code": payment.failure_code,
                "acceptance_status": acceptance.status,
            },
        )
        return self._outcome(
            PaymentStatus.NEEDS_RECONCILIATION, acceptance, payment,
            message="charge succeeded after it was recorded as failed",
        )

    # ------------------------------------------------------------------
    # ConnectionPayment helpers
    # ------------------------------------------------------------------

    def _payment_for(self, acceptance: BidAcceptance) -> ConnectionPayment:
        payment = self.session.execute(
            select(ConnectionPayment).where(ConnectionPayment.bid_acceptance_id == acceptance.id)
        ).scalar_one_or_none()
        if payment is not None:
            return payment

        bid = self.get_bid(acceptance.bid_id)
        payment = ConnectionPayment(
            bid_acceptance_id=acceptance.id,
            contractor_id=bid.contractor_id,
            amount=acceptance.fee_amount,
            currency=acceptance.currency,
            status=ConnectionPaymentStatus.PENDING.value,
            attempt_count=0,
            needs_reconciliation=False,
            created_at=self.clock.now(),
        )
        self.session.add(payment)
        self.session.flush()
        return payment

    def _payment_by_ref(self, processor_ref: str) -> ConnectionPayment:
        payment = self.session.execute(
            select(ConnectionPayment).where(ConnectionPayment.processor_ref == processor_ref)
        ).scalar_one_or_none()
        if payment is None:
            raise ValidationError(
                f"No connection payment for processor_ref {processor_ref!r}", field="processor_ref"
            )
        return payment

    def _move_payment(self, payment: ConnectionPayment, target: ConnectionPaymentStatus) -> None:
        if payment.status == target.value:
            return
        if not ConnectionPaymentStatus.can_transition(payment.status, target):
            raise StateTransitionError("ConnectionPayment", payment.id, payment.status, target.value)
        payment.status = target.value
        payment.updated_at = self.clock.now()

    def _mark_failed(self, payment: ConnectionPayment, failure_code: str, message: str | None) -> None:
        self._move_payment(payment, ConnectionPaymentStatus.FAILED)
        payment.failure_code = failure_code
        payment.error_message = (message or failure_code)[:1000]
        self.session.flush()
        logger.info(
            "connection_payment_failed",
            extra={"connection_payment_id": str(payment.id), "failure_code": failure_code},
        )

    @staticmethod
    def _outcome(
        status: PaymentStatus,
        acceptance: BidAcceptance,
        payment: ConnectionPayment | None,
        **fields,
    ) -> PaymentOutcome:
        return PaymentOutcome(
            status=status,
            bid_acceptance_id=acceptance.id,
            connection_payment_id=payment.id if payment else None,
            processor_ref=payment.processor_ref if payment else None,
            **fields,
        )
