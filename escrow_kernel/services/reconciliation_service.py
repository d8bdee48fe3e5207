"""
ReconciliationService -- detect and repair snapshot/ledger divergence.

Responsibility:
    ``audit()`` verifies every account against its ledger and freezes the
    ones that disagree.  A frozen account refuses all ledger writes until
    an operator calls ``rebuild()``, which restores the snapshot from the
    chain and unfreezes it.

Invariants enforced:
    BALANCE_EQUALS_LEDGER -- divergence is never auto-corrected during
        normal operation; it halts the account.

Failure modes:
    - rebuild() on an account that is not frozen: StateTransitionError.
    - rebuild() when the chain itself is inconsistent (gaps, broken links):
      LedgerInvariantViolation.  Such an account needs a manual adjustment
      after investigation.
"""

from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import AccountVerification
from escrow_kernel.domain.states import AccountStatus
from escrow_kernel.exceptions import LedgerInvariantViolation, StateTransitionError
from escrow_kernel.invariants import KernelInvariant
from escrow_kernel.logging_config import get_logger
from escrow_kernel.selectors.ledger_selector import LedgerSelector
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.escrow_service import EscrowAccountManager

logger = get_logger("services.reconciliation")


@dataclass(frozen=True)
class ReconciliationReport:
    checked: int
    mismatched: tuple[AccountVerification, ...] = field(default_factory=tuple)
    frozen: tuple[UUID, ...] = field(default_factory=tuple)

    @property
    def clean(self) -> bool:
        return not self.mismatched


class ReconciliationService(BaseService):
    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self.escrow = EscrowAccountManager(session, self.clock)
        self.selector = LedgerSelector(session)

    def verify(self, account_id: UUID) -> AccountVerification:
        return self.selector.verify_account(account_id)

    def audit(self, *, freeze: bool = True) -> ReconciliationReport:
        """Verify all accounts; freeze the mismatched ones unless ``freeze`` is False."""
        mismatched: list[AccountVerification] = []
        frozen: list[UUID] = []
        account_ids = self.selector.account_ids()

        for account_id in account_ids:
            verification = self.selector.verify_account(account_id)
            if verification.ok:
                continue
            mismatched.append(verification)
            logger.critical(
                "reconciliation_mismatch",
                extra={
                    "account_id": str(account_id),
                    "issues": list(verification.issues),
                    "invariant": KernelInvariant.BALANCE_EQUALS_LEDGER.value,
                },
            )
            if freeze:
                account = self.escrow.get_account(account_id)
                if account.status == AccountStatus.ACTIVE.value:
                    self.escrow.freeze_account(account_id, "; ".join(verification.issues)[:500])
                    frozen.append(account_id)

        logger.info(
            "reconciliation_audit_completed",
            extra={"checked": len(account_ids), "mismatched": len(mismatched), "frozen": len(frozen)},
        )
        return ReconciliationReport(
            checked=len(account_ids), mismatched=tuple(mismatched), frozen=tuple(frozen)
        )

    def rebuild(self, account_id: UUID, *, operator_id: UUID) -> AccountVerification:
        """Restore a frozen account's snapshot from its ledger and unfreeze it."""
        account = self.escrow.ledger.lock_account(account_id)
        if account.status != AccountStatus.FROZEN.value:
            raise StateTransitionError("EscrowAccount", account.id, account.status, "rebuild")

        verification = self.selector.verify_account(account_id)
        chain_issues = [
            issue for issue in verification.issues
            if not issue.startswith(("available snapshot", "pending snapshot", "last_entry_id"))
        ]
        if chain_issues:
            raise LedgerInvariantViolation(
                account.id, "ledger chain is inconsistent; manual adjustment required",
                actual=chain_issues,
            )

        entries = self.selector.entries(account.id)
        self.escrow.ledger.restore_snapshot(
            account,
            verification.expected_available,
            verification.expected_pending,
            entries[-1] if entries else None,
        )
        self.escrow.unfreeze_account(account.id)
        logger.warning(
            "account_rebuilt",
            extra={"account_id": str(account.id), "operator_id": str(operator_id)},
        )
        return self.selector.verify_account(account_id)
