"""
ReconciliationService tests.

Tests cover:
- A clean audit touches nothing
- Snapshot drift is detected, logged critical, and freezes the account
- rebuild() restores the snapshot from the chain and unfreezes
- rebuild() refuses active accounts and broken chains
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from escrow_kernel.domain.states import AccountStatus
from escrow_kernel.exceptions import LedgerInvariantViolation, StateTransitionError
from escrow_kernel.models.escrow import EscrowAccount, LedgerEntry
from escrow_kernel.services.reconciliation_service import ReconciliationService


@pytest.fixture
def reconciliation(session, deterministic_clock):
    return ReconciliationService(session, deterministic_clock)


@pytest.fixture
def busy_account(escrow_manager):
    account = escrow_manager.open_account(uuid4(), "USD")
    escrow_manager.deposit(account.id, "300.00", "recon-dep")
    escrow_manager.hold(account.id, "120.00", "recon-hold")
    escrow_manager.release(account.id, "20.00", "recon-rel")
    return account


def _corrupt_snapshot(session, account_id, available):
    session.execute(
        update(EscrowAccount)
        .where(EscrowAccount.id == account_id)
        .values(available_balance=Decimal(available))
    )
    session.expire_all()


class TestAudit:
    def test_clean_ledger(self, reconciliation, busy_account):
        report = reconciliation.audit()
        assert report.clean
        assert report.checked >= 1
        assert report.frozen == ()

    def test_drift_freezes_account(self, session, reconciliation, escrow_manager, busy_account, captured_logs):
        _corrupt_snapshot(session, busy_account.id, "999.00")

        report = reconciliation.audit()

        assert not report.clean
        assert report.frozen == (busy_account.id,)
        verification = report.mismatched[0]
        assert verification.expected_available == Decimal("180.00")
        assert verification.actual_available == Decimal("999.00")
        assert escrow_manager.get_balance(busy_account.id).status == AccountStatus.FROZEN.value
        assert any(
            r["message"] == "reconciliation_mismatch" and r["level"] == "CRITICAL"
            for r in captured_logs()
        )

    def test_report_only_mode_does_not_freeze(self, session, reconciliation, escrow_manager, busy_account):
        _corrupt_snapshot(session, busy_account.id, "1.00")

        report = reconciliation.audit(freeze=False)

        assert len(report.mismatched) == 1
        assert report.frozen == ()
        assert escrow_manager.get_balance(busy_account.id).status == AccountStatus.ACTIVE.value


class TestRebuild:
    def test_rebuild_restores_and_unfreezes(self, session, reconciliation, escrow_manager, busy_account):
        _corrupt_snapshot(session, busy_account.id, "999.00")
        reconciliation.audit()

        verification = reconciliation.rebuild(busy_account.id, operator_id=uuid4())

        assert verification.ok
        balance = escrow_manager.get_balance(busy_account.id)
        assert (balance.available, balance.pending) == (Decimal("180.00"), Decimal("100.00"))
        assert balance.status == AccountStatus.ACTIVE.value
        escrow_manager.deposit(busy_account.id, "1.00", "after-rebuild")

    def test_rebuild_requires_frozen_account(self, reconciliation, busy_account):
        with pytest.raises(StateTransitionError):
            reconciliation.rebuild(busy_account.id, operator_id=uuid4())

    def test_rebuild_refuses_broken_chain(self, session, reconciliation, escrow_manager, ledger_selector, busy_account):
        second = ledger_selector.entries(busy_account.id)[1]
        session.execute(
            update(LedgerEntry)
            .where(LedgerEntry.id == second.id)
            .values(new_available=Decimal("0.00"))
        )
        session.expire_all()
        escrow_manager.freeze_account(busy_account.id, "investigating")

        with pytest.raises(LedgerInvariantViolation):
            reconciliation.rebuild(busy_account.id, operator_id=uuid4())
