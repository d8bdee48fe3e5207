"""
Processor webhooks and upstream events.

Tests cover:
- charge.succeeded / charge.failed settle an asynchronous connection charge
- A success arriving after a failure is flagged, not applied or retried
- payout.succeeded / payout.failed settle a payout
- Redelivered webhook ids are acknowledged without effect
- milestone.completion_verified releases funds, defers under dispute,
  and is safe to deliver twice
- bid.withdrawn cancels a pending acceptance
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from escrow_kernel.adapters.payment_processor import ChargeStatus
from escrow_kernel.domain.dtos import PaymentStatus, ReleaseStatus
from escrow_kernel.domain.events import (
    BID_WITHDRAWN,
    CHARGE_FAILED,
    CHARGE_SUCCEEDED,
    MILESTONE_COMPLETION_VERIFIED,
    PAYOUT_FAILED,
    PAYOUT_SUCCEEDED,
)
from escrow_kernel.domain.states import (
    AcceptanceStatus,
    BidStatus,
    MilestoneStatus,
    PayoutStatus,
    ReleaseTrigger,
)
from escrow_kernel.exceptions import MilestonePaymentNotFoundError, ValidationError
from escrow_kernel.models.bidding import ConnectionPayment
from escrow_kernel.models.outbox import ProcessedWebhook
from escrow_kernel.services.inbound_event_service import InboundEventHandler
from escrow_kernel.services.webhook_service import DUPLICATE, WebhookService


@pytest.fixture
def webhooks(session, deterministic_clock, coordinator, milestone_engine):
    return WebhookService(
        session, deterministic_clock, coordinator=coordinator, engine=milestone_engine
    )


@pytest.fixture
def inbound(session, deterministic_clock, coordinator, milestone_engine):
    return InboundEventHandler(
        session, deterministic_clock, coordinator=coordinator, engine=milestone_engine
    )


@pytest.fixture
def async_charge(coordinator, accepted_bid, fake_processor):
    """An acceptance whose charge the gateway accepted but has not settled."""
    fake_processor.charge_mode = ChargeStatus.PENDING
    _, _, acceptance = accepted_bid
    outcome = coordinator.pay(acceptance.id, "pay-async")
    assert outcome.status == PaymentStatus.PENDING
    return acceptance, outcome.processor_ref


class TestChargeWebhooks:
    def test_charge_succeeded_completes_payment(self, coordinator, webhooks, async_charge):
        acceptance, ref = async_charge

        result = webhooks.handle("wh_1", CHARGE_SUCCEEDED, ref)

        assert result == PaymentStatus.PAID.value
        assert coordinator.get_acceptance(acceptance.id).status == AcceptanceStatus.PAID.value
        assert coordinator.get_contact_release(acceptance.id) is not None

    def test_redelivered_webhook_is_duplicate(self, session, webhooks, async_charge):
        _, ref = async_charge
        webhooks.handle("wh_2", CHARGE_SUCCEEDED, ref)

        assert webhooks.handle("wh_2", CHARGE_SUCCEEDED, ref) == DUPLICATE
        assert session.query(ProcessedWebhook).filter_by(webhook_id="wh_2").count() == 1

    def test_same_event_under_new_id_is_replay_safe(self, webhooks, async_charge):
        _, ref = async_charge
        webhooks.handle("wh_3a", CHARGE_SUCCEEDED, ref)
        assert webhooks.handle("wh_3b", CHARGE_SUCCEEDED, ref) == PaymentStatus.ALREADY_PAID.value

    def test_pending_pay_does_not_charge_again(self, coordinator, async_charge, fake_processor):
        acceptance, _ = async_charge
        assert coordinator.pay(acceptance.id, "pay-async-2").status == PaymentStatus.PENDING
        assert len(fake_processor.calls_for("charge")) == 1

    def test_charge_failed_allows_new_attempt(self, coordinator, webhooks, async_charge, fake_processor):
        acceptance, ref = async_charge

        result = webhooks.handle("wh_4", CHARGE_FAILED, ref, {"failure_code": "expired_card"})

        assert result == PaymentStatus.DECLINED.value
        fake_processor.charge_mode = ChargeStatus.SUCCEEDED
        assert coordinator.pay(acceptance.id, "pay-new-card").status == PaymentStatus.PAID

    def test_success_after_failure_is_recorded_not_applied(
        self, session, coordinator, webhooks, async_charge
    ):
        acceptance, ref = async_charge
        webhooks.handle("wh_7a", CHARGE_FAILED, ref, {"failure_code": "expired_card"})

        result = webhooks.handle("wh_7b", CHARGE_SUCCEEDED, ref)

        assert result == PaymentStatus.NEEDS_RECONCILIATION.value
        assert session.query(ProcessedWebhook).filter_by(webhook_id="wh_7b").one().outcome == result
        assert coordinator.get_acceptance(acceptance.id).status == AcceptanceStatus.PENDING_PAYMENT.value
        payment = session.query(ConnectionPayment).filter_by(bid_acceptance_id=acceptance.id).one()
        assert payment.needs_reconciliation is True
        # Redelivery of the same success is a duplicate, not a retry.
        assert webhooks.handle("wh_7b", CHARGE_SUCCEEDED, ref) == DUPLICATE

    def test_unknown_processor_ref(self, webhooks):
        with pytest.raises(ValidationError):
            webhooks.handle("wh_5", CHARGE_SUCCEEDED, "ch_missing")

    def test_unsupported_event_type(self, webhooks):
        with pytest.raises(ValidationError):
            webhooks.handle("wh_6", "refund.created", "re_1")


class TestPayoutWebhooks:
    @pytest.fixture
    def payout_ref(self, milestone_engine, funded_milestone):
        payment = funded_milestone("250.00")
        milestone_engine.release(payment.id, authorized_by=payment.payer_id)
        return payment, milestone_engine.request_payout(payment.id).payout_ref

    def test_payout_succeeded(self, webhooks, milestone_engine, payout_ref):
        payment, ref = payout_ref
        assert webhooks.handle("wh_p1", PAYOUT_SUCCEEDED, ref) == PayoutStatus.COMPLETED.value
        assert milestone_engine.get(payment.id).payout_status == PayoutStatus.COMPLETED.value

    def test_payout_failed(self, webhooks, escrow_manager, payout_ref):
        payment, ref = payout_ref
        result = webhooks.handle("wh_p2", PAYOUT_FAILED, ref, {"failure_code": "account_closed"})

        assert result == PayoutStatus.FAILED.value
        account = escrow_manager.find_account(payment.payee_id, "USD")
        assert escrow_manager.get_balance(account.id).available == Decimal("250.00")


class TestInboundEvents:
    def test_completion_verified_releases(self, inbound, milestone_engine, funded_milestone):
        payment = funded_milestone("500.00")

        outcome = inbound.handle(
            MILESTONE_COMPLETION_VERIFIED,
            {"milestone_id": str(payment.milestone_id), "project_id": str(payment.project_id)},
        )

        assert outcome.status == ReleaseStatus.RELEASED
        released = milestone_engine.get(payment.id)
        assert released.release_trigger == ReleaseTrigger.MILESTONE_COMPLETION.value

    def test_completion_delivered_twice_releases_once(self, inbound, escrow_manager, funded_milestone):
        payment = funded_milestone("500.00")
        event = {"milestone_id": str(payment.milestone_id)}

        inbound.handle(MILESTONE_COMPLETION_VERIFIED, event)
        assert inbound.handle(MILESTONE_COMPLETION_VERIFIED, event) is None

        account = escrow_manager.find_account(payment.payee_id, "USD")
        assert escrow_manager.get_balance(account.id).available == Decimal("500.00")

    def test_completion_during_dispute_is_deferred(
        self, inbound, milestone_engine, dispute_service, funded_milestone, captured_logs
    ):
        payment = funded_milestone()
        dispute_service.open(payment.id, payment.payer_id, "quality issue")

        assert inbound.handle(
            MILESTONE_COMPLETION_VERIFIED, {"milestone_id": str(payment.milestone_id)}
        ) is None
        assert milestone_engine.get(payment.id).status == MilestoneStatus.DISPUTED.value
        assert any(r["message"] == "release_deferred" for r in captured_logs())

    def test_completion_for_unknown_milestone(self, inbound):
        with pytest.raises(MilestonePaymentNotFoundError):
            inbound.handle(MILESTONE_COMPLETION_VERIFIED, {"milestone_id": str(uuid4())})

    @pytest.mark.parametrize("payload", [{}, {"milestone_id": "not-a-uuid"}])
    def test_malformed_payload(self, inbound, payload):
        with pytest.raises(ValidationError):
            inbound.handle(MILESTONE_COMPLETION_VERIFIED, payload)

    def test_bid_withdrawn_cancels_acceptance(self, inbound, coordinator, accepted_bid):
        _, bid, acceptance = accepted_bid

        inbound.handle(BID_WITHDRAWN, {"bid_id": str(bid.id)})
        inbound.handle(BID_WITHDRAWN, {"bid_id": str(bid.id)})

        assert coordinator.get_bid(bid.id).status == BidStatus.WITHDRAWN.value
        assert coordinator.get_acceptance(acceptance.id).status == AcceptanceStatus.CANCELLED.value

    def test_unsupported_inbound_event(self, inbound):
        with pytest.raises(ValidationError):
            inbound.handle("project.archived", {})
