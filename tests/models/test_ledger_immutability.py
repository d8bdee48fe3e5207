"""
Append-only records cannot be edited or deleted through the ORM.

Tests cover:
- Completed LedgerEntry: updates and deletes blocked
- AdjustmentAudit and ContactRelease: updates and deletes blocked
- EscrowAccount: delete blocked (accounts are soft-closed)
- Snapshot columns on EscrowAccount stay writable
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from escrow_kernel.exceptions import ImmutabilityViolationError
from escrow_kernel.models.escrow import AdjustmentAudit, LedgerEntry


@pytest.fixture
def account(escrow_manager):
    return escrow_manager.open_account(uuid4(), "USD")


@pytest.fixture
def entry(session, escrow_manager, account):
    result = escrow_manager.deposit(account.id, "25.00", "imm-dep")
    return session.get(LedgerEntry, result.entry_id)


class TestLedgerEntry:
    def test_amount_cannot_change(self, session, entry):
        entry.amount = Decimal("2500.00")
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.entity_type == "LedgerEntry"
        assert "amount" in exc_info.value.reason

    def test_memo_cannot_change(self, session, entry):
        entry.memo = "edited later"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_cannot_delete(self, session, entry):
        session.delete(entry)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestAuditRecords:
    def test_adjustment_audit_is_frozen(self, session, escrow_manager, account):
        result = escrow_manager.adjust(
            account.id, Decimal("3.00"), "imm-adj",
            requested_by=uuid4(), authorized_by=uuid4(), reason="goodwill credit",
        )
        audit = session.query(AdjustmentAudit).filter_by(ledger_entry_id=result.entry_id).one()
        audit.reason = "something else"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_contact_release_is_frozen(self, session, coordinator, accepted_bid):
        _, _, acceptance = accepted_bid
        coordinator.pay(acceptance.id, "imm-pay")
        release = coordinator.get_contact_release(acceptance.id)

        release.contractor_contact = {"email": "someone-else@example.com"}
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_contact_release_cannot_be_deleted(self, session, coordinator, accepted_bid):
        _, _, acceptance = accepted_bid
        coordinator.pay(acceptance.id, "imm-pay-del")
        session.delete(coordinator.get_contact_release(acceptance.id))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestEscrowAccount:
    def test_account_cannot_be_deleted(self, session, account):
        session.delete(account)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_snapshot_stays_writable(self, escrow_manager, account):
        escrow_manager.deposit(account.id, "5.00", "imm-snap-1")
        escrow_manager.deposit(account.id, "5.00", "imm-snap-2")
        assert escrow_manager.get_balance(account.id).available == Decimal("10.00")
