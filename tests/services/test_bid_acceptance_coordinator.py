"""
BidAcceptanceCoordinator tests.

Tests cover:
- Acceptance: fee frozen at accept time, one pending acceptance per card,
  fee policy chosen by the contractor's subscription tier
- Expiry reminders: one notice per acceptance, only while pending
- Connection-fee payment: success, replay, decline, timeouts with key
  reuse, retry budget exhaustion
- Expiry: window boundary, deterministic fallback promotion, idempotency
- pay() racing expire(): exactly one winner, stale charge refunded
- Bidding rules: capacity overflow/reject, revision locks, withdrawal
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from escrow_kernel.domain.capacity_policy import CapacityPolicy, OverflowMode
from escrow_kernel.domain.dtos import ExpiryStatus, PaymentStatus
from escrow_kernel.domain.events import (
    BID_ACCEPTANCE_CANCELLED,
    BID_ACCEPTANCE_EXPIRING,
    BID_ACCEPTED,
    BID_EXPIRED,
    CONNECTION_PAYMENT_COMPLETED,
)
from escrow_kernel.domain.fee_policy import FixedFeePolicy
from escrow_kernel.domain.states import (
    AcceptanceStatus,
    BidCardStatus,
    BidStatus,
    ConnectionPaymentStatus,
)
from escrow_kernel.exceptions import (
    AcceptanceConflictError,
    AcceptanceExpiredError,
    BidCapacityExceededError,
    BidLockedError,
    StateTransitionError,
    ValidationError,
)
from escrow_kernel.models.bidding import ConnectionPayment
from escrow_kernel.services.bid_acceptance_coordinator import (
    PLATFORM_FEE_OWNER_ID,
    BidAcceptanceCoordinator,
)


def _payment(session, acceptance_id) -> ConnectionPayment:
    return session.query(ConnectionPayment).filter_by(bid_acceptance_id=acceptance_id).one()


# =========================================================================
# Acceptance
# =========================================================================


class TestAccept:
    def test_accept_freezes_fee_and_window(self, coordinator, accepted_bid, deterministic_clock):
        card, bid, acceptance = accepted_bid

        assert acceptance.status == AcceptanceStatus.PENDING_PAYMENT.value
        assert acceptance.fee_amount == Decimal("37.50")
        assert acceptance.fee_calc_method == "percentage"
        assert acceptance.expires_at == deterministic_clock.now() + timedelta(hours=24)
        assert coordinator.get_bid(bid.id).status == BidStatus.ACCEPTED.value

    def test_accept_records_outbox_event(self, accepted_bid, outbox):
        _, bid, acceptance = accepted_bid
        events = outbox.events_for(acceptance.id, BID_ACCEPTED)
        assert len(events) == 1
        assert events[0].payload["bid_id"] == str(bid.id)

    def test_second_acceptance_on_card_conflicts(self, coordinator, accepted_bid, homeowner_id):
        card, _, acceptance = accepted_bid
        other = coordinator.submit_bid(card.id, uuid4(), "450.00")

        with pytest.raises(AcceptanceConflictError) as exc_info:
            coordinator.accept(other.id, homeowner_id)
        assert exc_info.value.existing_acceptance_id == acceptance.id
        assert coordinator.get_bid(other.id).status == BidStatus.SUBMITTED.value

    def test_card_window_overrides_default(self, coordinator, open_card, homeowner_id, deterministic_clock):
        card = open_card(acceptance_window_hours=48)
        bid = coordinator.submit_bid(card.id, uuid4(), "200.00")
        acceptance = coordinator.accept(bid.id, homeowner_id)
        assert acceptance.expires_at == deterministic_clock.now() + timedelta(hours=48)

    def test_fee_policy_change_does_not_touch_existing_acceptance(
        self, coordinator, accepted_bid
    ):
        _, _, acceptance = accepted_bid
        coordinator.fee_policy = FixedFeePolicy("flat", Decimal("25.00"))
        assert coordinator.get_acceptance(acceptance.id).fee_amount == Decimal("37.50")

    def test_accept_logged(self, coordinator, open_card, homeowner_id, captured_logs):
        card = open_card()
        bid = coordinator.submit_bid(card.id, uuid4(), "300.00")
        coordinator.accept(bid.id, homeowner_id)

        records = [r for r in captured_logs() if r["message"] == "bid_accepted"]
        assert len(records) == 1
        assert records[0]["fee_amount"] == "22.50"

    def test_premium_contractor_pays_premium_fee(self, coordinator, open_card, homeowner_id):
        contractor = uuid4()
        coordinator.subscriptions.register(contractor, "premium")
        card = open_card()
        bid = coordinator.submit_bid(card.id, contractor, "1000.00")

        acceptance = coordinator.accept(bid.id, homeowner_id)

        assert acceptance.fee_amount == Decimal("60.00")
        assert acceptance.fee_policy_name == "premium_connection_fee"
        assert acceptance.subscription_tier == "premium"

    def test_premium_fee_capped(self, coordinator, open_card, homeowner_id):
        contractor = uuid4()
        coordinator.subscriptions.register(contractor, "premium")
        bid = coordinator.submit_bid(open_card().id, contractor, "10000.00")
        assert coordinator.accept(bid.id, homeowner_id).fee_amount == Decimal("400.00")

    def test_unmapped_tier_pays_standard_fee(self, coordinator, open_card, homeowner_id):
        contractor = uuid4()
        coordinator.subscriptions.register(contractor, "basic")
        bid = coordinator.submit_bid(open_card().id, contractor, "1000.00")

        acceptance = coordinator.accept(bid.id, homeowner_id)

        assert acceptance.fee_amount == Decimal("75.00")
        assert acceptance.fee_policy_name == "standard_connection_fee"
        assert acceptance.subscription_tier == "basic"


# =========================================================================
# Payment
# =========================================================================


class TestPay:
    def test_successful_payment_releases_contacts(
        self, session, coordinator, accepted_bid, contact_directory, homeowner_id,
        escrow_manager, outbox,
    ):
        card, bid, acceptance = accepted_bid
        contact_directory.register(homeowner_id, email="owner@example.com", phone="555-0100")

        outcome = coordinator.pay(acceptance.id, "pay-1")

        assert outcome.status == PaymentStatus.PAID
        assert outcome.contact_release_id is not None
        release = coordinator.get_contact_release(acceptance.id)
        assert release.homeowner_contact == {"email": "owner@example.com", "phone": "555-0100"}
        assert release.contractor_id == bid.contractor_id

        assert coordinator.get_acceptance(acceptance.id).status == AcceptanceStatus.PAID.value
        assert coordinator.get_bid(bid.id).status == BidStatus.CONNECTED.value
        assert coordinator.get_bid_card(card.id).status == BidCardStatus.AWARDED.value
        assert _payment(session, acceptance.id).status == ConnectionPaymentStatus.COMPLETED.value

        fee_account = escrow_manager.find_account(PLATFORM_FEE_OWNER_ID, "USD")
        assert escrow_manager.get_balance(fee_account.id).available == Decimal("37.50")
        assert len(outbox.events_for(acceptance.id, CONNECTION_PAYMENT_COMPLETED)) == 1

    def test_replay_after_success_returns_already_paid(self, coordinator, accepted_bid, fake_processor):
        _, _, acceptance = accepted_bid
        first = coordinator.pay(acceptance.id, "pay-1")
        second = coordinator.pay(acceptance.id, "pay-1")

        assert first.status == PaymentStatus.PAID
        assert second.status == PaymentStatus.ALREADY_PAID
        assert second.processor_ref == first.processor_ref
        assert fake_processor.charge_count == 1

    def test_decline_is_recorded_and_retry_with_new_key_succeeds(
        self, session, coordinator, accepted_bid, fake_processor
    ):
        _, _, acceptance = accepted_bid
        fake_processor.decline_next("charge", "insufficient_funds")

        declined = coordinator.pay(acceptance.id, "pay-a")
        assert declined.status == PaymentStatus.DECLINED
        assert declined.decline_code == "insufficient_funds"
        payment = _payment(session, acceptance.id)
        assert payment.status == ConnectionPaymentStatus.FAILED.value
        assert payment.failure_code == "insufficient_funds"
        assert coordinator.get_contact_release(acceptance.id) is None

        paid = coordinator.pay(acceptance.id, "pay-b")
        assert paid.status == PaymentStatus.PAID
        keys = [c.idempotency_key for c in fake_processor.calls_for("charge")]
        assert keys == ["pay-a", "pay-b"]

    def test_timeout_after_gateway_accepted_does_not_double_charge(
        self, coordinator, accepted_bid, fake_processor, sleeps
    ):
        _, _, acceptance = accepted_bid
        fake_processor.timeout_next("charge", settle=True)

        outcome = coordinator.pay(acceptance.id, "pay-timeout")

        assert outcome.status == PaymentStatus.PAID
        assert fake_processor.charge_count == 1
        keys = {c.idempotency_key for c in fake_processor.calls_for("charge")}
        assert keys == {"pay-timeout"}
        assert sleeps == [0.5]

    def test_exhausted_retries_keep_key_for_next_call(
        self, session, coordinator, accepted_bid, fake_processor, sleeps
    ):
        _, _, acceptance = accepted_bid
        fake_processor.timeout_next("charge", times=3)

        pending = coordinator.pay(acceptance.id, "pay-first")
        assert pending.status == PaymentStatus.PENDING
        payment = _payment(session, acceptance.id)
        assert payment.status == ConnectionPaymentStatus.PENDING.value
        assert payment.attempt_count == 3
        assert sleeps == [0.5, 1.0]

        paid = coordinator.pay(acceptance.id, "pay-second")
        assert paid.status == PaymentStatus.PAID
        keys = {c.idempotency_key for c in fake_processor.calls_for("charge")}
        assert keys == {"pay-first"}

    def test_retry_budget_exhaustion_flags_reconciliation(
        self, session, coordinator, accepted_bid, fake_processor
    ):
        _, _, acceptance = accepted_bid
        fake_processor.timeout_next("charge", times=10)

        statuses = [coordinator.pay(acceptance.id, "pay-budget").status for _ in range(4)]
        assert statuses == [PaymentStatus.PENDING] * 3 + [PaymentStatus.NEEDS_RECONCILIATION]

        payment = _payment(session, acceptance.id)
        assert payment.attempt_count == 10
        assert payment.needs_reconciliation

        again = coordinator.pay(acceptance.id, "pay-budget")
        assert again.status == PaymentStatus.NEEDS_RECONCILIATION
        assert len(fake_processor.calls_for("charge")) == 10

    def test_pay_at_expiry_boundary_refused(self, coordinator, accepted_bid, deterministic_clock):
        _, _, acceptance = accepted_bid
        deterministic_clock.advance(hours=24)
        with pytest.raises(AcceptanceExpiredError):
            coordinator.pay(acceptance.id, "pay-late")

    def test_pay_one_second_before_expiry_succeeds(self, coordinator, accepted_bid, deterministic_clock):
        _, _, acceptance = accepted_bid
        deterministic_clock.advance(hours=24, seconds=-1)
        assert coordinator.pay(acceptance.id, "pay-edge").status == PaymentStatus.PAID

    def test_pay_on_cancelled_acceptance_refused(self, coordinator, accepted_bid, homeowner_id):
        _, _, acceptance = accepted_bid
        coordinator.cancel(acceptance.id, homeowner_id, "changed my mind")
        with pytest.raises(StateTransitionError):
            coordinator.pay(acceptance.id, "pay-cancelled")

    def test_pay_requires_key(self, coordinator, accepted_bid):
        _, _, acceptance = accepted_bid
        with pytest.raises(ValidationError):
            coordinator.pay(acceptance.id, "")

    def test_pay_losing_race_to_expiry_refunds_charge(
        self, session, coordinator, accepted_bid, fake_processor, deterministic_clock
    ):
        _, bid, acceptance = accepted_bid
        expiries = []

        def expire_during_charge(_key):
            deterministic_clock.advance(hours=25)
            expiries.append(coordinator.expire(acceptance.id))

        fake_processor.before_charge_returns = expire_during_charge

        outcome = coordinator.pay(acceptance.id, "pay-race")

        assert expiries[0].status == ExpiryStatus.EXPIRED
        assert outcome.status == PaymentStatus.STALE
        assert coordinator.get_acceptance(acceptance.id).status == AcceptanceStatus.EXPIRED.value
        assert coordinator.get_bid(bid.id).status == BidStatus.EXPIRED.value
        assert coordinator.get_contact_release(acceptance.id) is None

        payment = _payment(session, acceptance.id)
        assert payment.status == ConnectionPaymentStatus.FAILED.value
        assert payment.refunded_at is not None
        assert outcome.processor_ref in fake_processor.refunds


# =========================================================================
# Expiry and fallback
# =========================================================================


class TestExpiry:
    def test_not_due_before_window_closes(self, coordinator, accepted_bid, deterministic_clock):
        _, _, acceptance = accepted_bid
        deterministic_clock.advance(hours=23, minutes=59)
        assert coordinator.expire(acceptance.id).status == ExpiryStatus.NOT_DUE
        assert coordinator.due_for_expiry() == []

    def test_fallback_prefers_amount_then_earliest_submission(
        self, coordinator, open_card, homeowner_id, deterministic_clock, outbox
    ):
        card = open_card()
        top = coordinator.submit_bid(card.id, uuid4(), "500.00")
        deterministic_clock.advance(hours=1)
        early = coordinator.submit_bid(card.id, uuid4(), "480.00")
        deterministic_clock.advance(hours=1)
        coordinator.submit_bid(card.id, uuid4(), "480.00")

        first = coordinator.accept(top.id, homeowner_id)
        deterministic_clock.advance(hours=24)
        assert coordinator.due_for_expiry() == [first.id]

        outcome = coordinator.expire(first.id)

        assert outcome.status == ExpiryStatus.EXPIRED
        assert outcome.fallback_bid_id == early.id
        promoted = coordinator.get_acceptance(outcome.fallback_acceptance_id)
        assert promoted.bid_id == early.id
        assert promoted.promoted_from_id == first.id
        assert promoted.status == AcceptanceStatus.PENDING_PAYMENT.value
        assert promoted.expires_at == deterministic_clock.now() + timedelta(hours=24)
        assert promoted.fee_amount == Decimal("36.00")

        expired = coordinator.get_acceptance(first.id)
        assert expired.fallback_bid_id == early.id
        assert coordinator.get_bid(top.id).status == BidStatus.EXPIRED.value
        assert len(outbox.events_for(first.id, BID_EXPIRED)) == 1

    def test_expire_twice_reports_same_fallback(self, coordinator, accepted_bid, deterministic_clock):
        card, _, acceptance = accepted_bid
        fallback = coordinator.submit_bid(card.id, uuid4(), "300.00")
        deterministic_clock.advance(hours=24)

        first = coordinator.expire(acceptance.id)
        second = coordinator.expire(acceptance.id)

        assert second.status == ExpiryStatus.NOT_PENDING
        assert second.fallback_bid_id == first.fallback_bid_id == fallback.id
        assert second.fallback_acceptance_id == first.fallback_acceptance_id

    def test_expire_without_candidates_leaves_card_open(
        self, coordinator, accepted_bid, deterministic_clock
    ):
        card, _, acceptance = accepted_bid
        deterministic_clock.advance(hours=24)

        outcome = coordinator.expire(acceptance.id)

        assert outcome.status == ExpiryStatus.EXPIRED
        assert outcome.fallback_acceptance_id is None
        assert coordinator.get_bid_card(card.id).status == BidCardStatus.OPEN.value
        assert coordinator.active_acceptance_for_card(card.id) is None

    def test_expire_paid_acceptance_is_noop(self, coordinator, accepted_bid, deterministic_clock):
        _, _, acceptance = accepted_bid
        coordinator.pay(acceptance.id, "pay-then-expire")
        deterministic_clock.advance(hours=48)
        assert coordinator.expire(acceptance.id).status == ExpiryStatus.NOT_PENDING
        assert coordinator.get_acceptance(acceptance.id).status == AcceptanceStatus.PAID.value


# =========================================================================
# Cancellation and withdrawal
# =========================================================================


class TestCancelAndWithdraw:
    def test_cancel_frees_card_without_fallback(self, coordinator, accepted_bid, homeowner_id, outbox):
        card, bid, acceptance = accepted_bid
        other = coordinator.submit_bid(card.id, uuid4(), "450.00")

        cancelled = coordinator.cancel(acceptance.id, homeowner_id, "found someone else")

        assert cancelled.status == AcceptanceStatus.CANCELLED.value
        assert cancelled.cancel_reason == "found someone else"
        assert coordinator.get_bid(bid.id).status == BidStatus.DECLINED.value
        assert coordinator.active_acceptance_for_card(card.id) is None
        assert len(outbox.events_for(acceptance.id, BID_ACCEPTANCE_CANCELLED)) == 1

        assert coordinator.accept(other.id, homeowner_id).bid_id == other.id

    def test_cancel_is_idempotent(self, coordinator, accepted_bid, homeowner_id):
        _, _, acceptance = accepted_bid
        coordinator.cancel(acceptance.id, homeowner_id)
        assert coordinator.cancel(acceptance.id, homeowner_id).status == AcceptanceStatus.CANCELLED.value

    def test_cancel_after_payment_refused(self, coordinator, accepted_bid, homeowner_id):
        _, _, acceptance = accepted_bid
        coordinator.pay(acceptance.id, "pay-before-cancel")
        with pytest.raises(StateTransitionError):
            coordinator.cancel(acceptance.id, homeowner_id)

    def test_withdrawing_accepted_bid_cancels_acceptance(self, coordinator, accepted_bid):
        _, bid, acceptance = accepted_bid
        coordinator.withdraw_bid(bid.id)
        assert coordinator.get_acceptance(acceptance.id).status == AcceptanceStatus.CANCELLED.value
        assert coordinator.get_bid(bid.id).status == BidStatus.WITHDRAWN.value

    def test_withdrawing_submitted_bid_frees_slot(self, coordinator, open_card):
        card = open_card(max_bids_allowed=1)
        bid = coordinator.submit_bid(card.id, uuid4(), "100.00")
        assert coordinator.get_bid_card(card.id).current_bids == 1

        coordinator.withdraw_bid(bid.id)
        assert coordinator.get_bid_card(card.id).current_bids == 0
        assert not coordinator.submit_bid(card.id, uuid4(), "120.00").is_overflow

    def test_withdrawing_accepted_bid_frees_slot(self, coordinator, open_card, homeowner_id):
        card = open_card(max_bids_allowed=2)
        accepted = coordinator.submit_bid(card.id, uuid4(), "100.00")
        coordinator.submit_bid(card.id, uuid4(), "110.00")
        coordinator.accept(accepted.id, homeowner_id)

        coordinator.withdraw_bid(accepted.id)

        assert coordinator.get_bid_card(card.id).current_bids == 1
        assert not coordinator.submit_bid(card.id, uuid4(), "120.00").is_overflow

    def test_declined_bid_frees_slot(self, coordinator, open_card, homeowner_id):
        card = open_card(max_bids_allowed=1)
        bid = coordinator.submit_bid(card.id, uuid4(), "100.00")
        acceptance = coordinator.accept(bid.id, homeowner_id)

        coordinator.cancel(acceptance.id, homeowner_id, "changed plans")

        assert coordinator.get_bid_card(card.id).current_bids == 0

    def test_withdrawing_overflow_bid_leaves_count(self, coordinator, open_card):
        card = open_card(max_bids_allowed=1)
        coordinator.submit_bid(card.id, uuid4(), "100.00")
        overflow = coordinator.submit_bid(card.id, uuid4(), "90.00")

        coordinator.withdraw_bid(overflow.id)

        assert coordinator.get_bid_card(card.id).current_bids == 1

    def test_withdrawing_card_cancels_pending_acceptance(self, coordinator, accepted_bid, homeowner_id):
        card, _, acceptance = accepted_bid
        coordinator.withdraw_card(card.id, homeowner_id)
        assert coordinator.get_bid_card(card.id).status == BidCardStatus.WITHDRAWN.value
        assert coordinator.get_acceptance(acceptance.id).status == AcceptanceStatus.CANCELLED.value


# =========================================================================
# Bidding rules
# =========================================================================


class TestBidding:
    def test_bids_past_capacity_overflow(self, coordinator, open_card):
        card = open_card(max_bids_allowed=2)
        coordinator.submit_bid(card.id, uuid4(), "100.00")
        coordinator.submit_bid(card.id, uuid4(), "110.00")
        third = coordinator.submit_bid(card.id, uuid4(), "120.00")

        assert third.is_overflow
        assert coordinator.get_bid_card(card.id).current_bids == 2

    def test_bids_past_capacity_rejected_in_reject_mode(
        self, session, deterministic_clock, fake_processor, homeowner_id
    ):
        strict = BidAcceptanceCoordinator(
            session, deterministic_clock, fake_processor,
            capacity_policy=CapacityPolicy(default_max_bids=1, overflow_mode=OverflowMode.REJECT),
        )
        card = strict.create_bid_card(homeowner_id, "Deck repair")
        strict.submit_bid(card.id, uuid4(), "100.00")
        with pytest.raises(BidCapacityExceededError):
            strict.submit_bid(card.id, uuid4(), "90.00")

    def test_overflow_bid_can_be_promoted_as_fallback(
        self, coordinator, open_card, homeowner_id, deterministic_clock
    ):
        card = open_card(max_bids_allowed=1)
        first = coordinator.submit_bid(card.id, uuid4(), "100.00")
        overflow = coordinator.submit_bid(card.id, uuid4(), "150.00")
        acceptance = coordinator.accept(first.id, homeowner_id)
        deterministic_clock.advance(hours=24)

        assert coordinator.expire(acceptance.id).fallback_bid_id == overflow.id

    def test_duplicate_bid_from_same_contractor_rejected(self, coordinator, open_card):
        card = open_card()
        contractor = uuid4()
        coordinator.submit_bid(card.id, contractor, "100.00")
        with pytest.raises(ValidationError):
            coordinator.submit_bid(card.id, contractor, "90.00")

    def test_revise_keeps_submission_time(self, coordinator, open_card, deterministic_clock):
        card = open_card()
        bid = coordinator.submit_bid(card.id, uuid4(), "100.00")
        submitted_at = bid.submitted_at
        deterministic_clock.advance(hours=3)

        revised = coordinator.revise_bid(bid.id, "95.00")
        assert revised.amount == Decimal("95.00")
        assert revised.revision_count == 1
        assert revised.submitted_at == submitted_at

    def test_revise_locked_while_accepted(self, coordinator, accepted_bid):
        _, bid, _ = accepted_bid
        with pytest.raises(BidLockedError):
            coordinator.revise_bid(bid.id, "450.00")

    def test_final_offer_cannot_be_revised(self, coordinator, open_card):
        card = open_card()
        bid = coordinator.submit_bid(card.id, uuid4(), "100.00", is_final_offer=True)
        with pytest.raises(BidLockedError) as exc_info:
            coordinator.revise_bid(bid.id, "90.00")
        assert exc_info.value.reason == "final_offer"

    def test_submit_to_withdrawn_card_refused(self, coordinator, open_card, homeowner_id):
        card = open_card()
        coordinator.withdraw_card(card.id, homeowner_id)
        with pytest.raises(StateTransitionError):
            coordinator.submit_bid(card.id, uuid4(), "100.00")


# =========================================================================
# Expiry reminders
# =========================================================================


class TestExpiryNotice:
    def test_due_only_inside_lead(self, coordinator, accepted_bid, deterministic_clock):
        _, _, acceptance = accepted_bid
        deterministic_clock.advance(hours=19)
        assert coordinator.due_for_expiry_notice(4) == []
        deterministic_clock.advance(hours=1)
        assert coordinator.due_for_expiry_notice(4) == [acceptance.id]

    def test_notify_once(self, coordinator, accepted_bid, deterministic_clock, outbox):
        _, bid, acceptance = accepted_bid
        deterministic_clock.advance(hours=22)

        assert coordinator.notify_expiring(acceptance.id) is True
        assert coordinator.notify_expiring(acceptance.id) is False

        acceptance = coordinator.get_acceptance(acceptance.id)
        assert acceptance.expiry_notified is True
        assert acceptance.expiry_notification_sent_at == deterministic_clock.now()
        events = outbox.events_for(acceptance.id, BID_ACCEPTANCE_EXPIRING)
        assert len(events) == 1
        assert events[0].payload["contractor_id"] == str(bid.contractor_id)
        assert coordinator.due_for_expiry_notice(4) == []

    def test_paid_acceptance_not_notified(self, coordinator, accepted_bid, deterministic_clock):
        _, _, acceptance = accepted_bid
        coordinator.pay(acceptance.id, "pay-before-notice")
        deterministic_clock.advance(hours=22)

        assert coordinator.due_for_expiry_notice(4) == []
        assert coordinator.notify_expiring(acceptance.id) is False
        assert coordinator.get_acceptance(acceptance.id).expiry_notified is False

    def test_lapsed_acceptance_not_notified(self, coordinator, accepted_bid, deterministic_clock):
        _, _, acceptance = accepted_bid
        deterministic_clock.advance(hours=24)
        assert coordinator.notify_expiring(acceptance.id) is False
