"""
ExpirySweep tests.

These commit for real, so they use ``session_factory`` and never the
rolled-back ``session`` fixture.

Tests cover:
- run_once expires due acceptances and promotes the fallback bid
- A second pass finds nothing due
- Acceptances still inside their window are left alone
- The expiry reminder goes out once, inside the notice lead only
- start/stop run the loop on a background thread
"""

from uuid import uuid4

import pytest

from escrow_kernel.db.engine import session_scope
from escrow_kernel.domain.events import BID_ACCEPTANCE_EXPIRING
from escrow_kernel.domain.states import AcceptanceStatus, BidStatus
from escrow_kernel.services.bid_acceptance_coordinator import BidAcceptanceCoordinator
from escrow_kernel.services.expiry_sweep import ExpirySweep
from escrow_kernel.services.event_outbox import EventOutbox


@pytest.fixture
def coordinator_factory(deterministic_clock, fake_processor, capacity_policy, retry_policy):
    def _make(session):
        return BidAcceptanceCoordinator(
            session,
            deterministic_clock,
            fake_processor,
            capacity_policy=capacity_policy,
            retry_policy=retry_policy,
        )

    return _make


@pytest.fixture
def sweep(session_factory, coordinator_factory):
    return ExpirySweep(session_factory, coordinator_factory, interval_seconds=0.01)


@pytest.fixture
def card_with_two_bids(session_factory, coordinator_factory):
    """Accept the $500 bid; the $480 bid is the fallback."""
    homeowner = uuid4()
    with session_scope(session_factory) as session:
        coordinator = coordinator_factory(session)
        card = coordinator.create_bid_card(homeowner, "Deck rebuild")
        first = coordinator.submit_bid(card.id, uuid4(), "500.00")
        runner_up = coordinator.submit_bid(card.id, uuid4(), "480.00")
        acceptance = coordinator.accept(first.id, homeowner)
        return acceptance.id, first.id, runner_up.id


class TestRunOnce:
    def test_expires_and_promotes(self, sweep, session_factory, coordinator_factory,
                                  deterministic_clock, card_with_two_bids):
        acceptance_id, first_bid_id, runner_up_id = card_with_two_bids
        deterministic_clock.advance(hours=24)

        report = sweep.run_once()

        assert report.scanned == 1
        assert report.expired == (acceptance_id,)
        assert len(report.promoted) == 1
        assert report.failed == ()

        with session_scope(session_factory) as session:
            coordinator = coordinator_factory(session)
            assert coordinator.get_acceptance(acceptance_id).status == AcceptanceStatus.EXPIRED.value
            assert coordinator.get_bid(first_bid_id).status == BidStatus.EXPIRED.value
            promoted = coordinator.get_acceptance(report.promoted[0])
            assert promoted.bid_id == runner_up_id
            assert promoted.status == AcceptanceStatus.PENDING_PAYMENT.value

    def test_second_pass_finds_nothing(self, sweep, deterministic_clock, card_with_two_bids):
        deterministic_clock.advance(hours=24)
        sweep.run_once()

        report = sweep.run_once()

        assert report.scanned == 0
        assert report.expired == ()

    def test_window_still_open(self, sweep, deterministic_clock, card_with_two_bids):
        deterministic_clock.advance(hours=23)
        assert sweep.run_once().scanned == 0


class TestExpiryNotice:
    @pytest.fixture
    def noticing_sweep(self, session_factory, coordinator_factory):
        return ExpirySweep(session_factory, coordinator_factory, notice_hours=4)

    def test_reminder_inside_lead(self, noticing_sweep, session_factory, coordinator_factory,
                                  deterministic_clock, card_with_two_bids):
        acceptance_id, _, _ = card_with_two_bids
        deterministic_clock.advance(hours=20)

        report = noticing_sweep.run_once()

        assert report.notified == (acceptance_id,)
        assert report.expired == ()
        with session_scope(session_factory) as session:
            acceptance = coordinator_factory(session).get_acceptance(acceptance_id)
            assert acceptance.expiry_notified is True
            assert acceptance.expiry_notification_sent_at == deterministic_clock.now()
            assert acceptance.status == AcceptanceStatus.PENDING_PAYMENT.value
            events = EventOutbox(session, deterministic_clock).events_for(
                acceptance_id, BID_ACCEPTANCE_EXPIRING
            )
            assert len(events) == 1

    def test_reminder_sent_once(self, noticing_sweep, deterministic_clock, card_with_two_bids):
        deterministic_clock.advance(hours=20)
        noticing_sweep.run_once()
        deterministic_clock.advance(hours=1)
        assert noticing_sweep.run_once().notified == ()

    def test_no_reminder_before_lead(self, noticing_sweep, deterministic_clock, card_with_two_bids):
        deterministic_clock.advance(hours=19)
        assert noticing_sweep.run_once().notified == ()

    def test_no_reminder_once_expired(self, noticing_sweep, deterministic_clock, card_with_two_bids):
        acceptance_id, _, _ = card_with_two_bids
        deterministic_clock.advance(hours=24)

        report = noticing_sweep.run_once()

        assert acceptance_id not in report.notified
        assert report.expired == (acceptance_id,)

    def test_disabled_by_default(self, sweep, deterministic_clock, card_with_two_bids):
        deterministic_clock.advance(hours=20)
        assert sweep.run_once().notified == ()

class TestBackgroundLoop:
    def test_start_and_stop(self, sweep):
        sweep.start()
        assert sweep.is_running
        sweep.stop(timeout=5)
        assert not sweep.is_running
