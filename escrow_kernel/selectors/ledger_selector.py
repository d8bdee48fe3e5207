"""
Module: escrow_kernel.selectors.ledger_selector
Responsibility: Read-only views over the escrow ledger: balances derived
    from entries, per-account verification of the stored snapshot, and a
    canonical hash of an account's entry chain.
Architecture position: Kernel > Selectors.

Invariants enforced:
    BALANCE_EQUALS_LEDGER -- verify_account() recomputes both buckets from
        the completed entries and reports any difference from the stored
        snapshot, along with sequence gaps and broken prior/new links.

Audit relevance:
    ReconciliationService freezes any account whose verification reports
    issues.  canonical_hash() gives auditors a stable fingerprint of an
    account's history: the same entries always hash the same.
"""

import hashlib
import json
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from escrow_kernel.db.types import ZERO
from escrow_kernel.domain.dtos import AccountBalance, AccountVerification
from escrow_kernel.domain.states import LedgerEntryStatus
from escrow_kernel.models.escrow import EscrowAccount, LedgerEntry
from escrow_kernel.selectors.base import BaseSelector


class LedgerSelector(BaseSelector[LedgerEntry]):
    """
    Selector for ledger queries.

    Guarantees:
        - All amounts are Decimal.
        - Entries are returned in per-account sequence order.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    def entries(self, account_id: UUID, limit: int | None = None) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.sequence)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars())

    def derived_balance(self, account_id: UUID) -> tuple[Decimal, Decimal]:
        """(available, pending) summed from completed entries."""
        row = self.session.execute(
            select(
                func.coalesce(func.sum(LedgerEntry.available_delta), 0),
                func.coalesce(func.sum(LedgerEntry.pending_delta), 0),
            ).where(
                LedgerEntry.account_id == account_id,
                LedgerEntry.status == LedgerEntryStatus.COMPLETED.value,
            )
        ).one()
        return Decimal(row[0]), Decimal(row[1])

    def balance(self, account: EscrowAccount) -> AccountBalance:
        count = self.session.execute(
            select(func.count(LedgerEntry.id)).where(LedgerEntry.account_id == account.id)
        ).scalar_one()
        return AccountBalance(
            account_id=account.id,
            owner_id=account.owner_id,
            currency=account.currency,
            available=account.available_balance,
            pending=account.pending_balance,
            status=account.status,
            entry_count=count,
        )

    def balances(self, owner_id: UUID | None = None) -> list[AccountBalance]:
        stmt = select(EscrowAccount).order_by(EscrowAccount.created_at, EscrowAccount.id)
        if owner_id is not None:
            stmt = stmt.where(EscrowAccount.owner_id == owner_id)
        return [self.balance(account) for account in self.session.execute(stmt).scalars()]

    def account_ids(self) -> list[UUID]:
        return list(
            self.session.execute(
                select(EscrowAccount.id).order_by(EscrowAccount.created_at, EscrowAccount.id)
            ).scalars()
        )

    def verify_account(self, account_id: UUID) -> AccountVerification:
        """
        Walk the account's chain and compare the result to the snapshot.

        Checks, per entry: sequence is contiguous from 1, prior buckets equal
        the previous entry's new buckets, and new = prior + delta.  Then the
        final buckets against the stored snapshot and last_entry_id.
        """
        account = self.session.execute(
            select(EscrowAccount)
            .where(EscrowAccount.id == account_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

        issues: list[str] = []
        available = ZERO
        pending = ZERO
        last: LedgerEntry | None = None

        for expected_seq, entry in enumerate(self.entries(account_id), start=1):
            if entry.sequence != expected_seq:
                issues.append(f"sequence gap: expected {expected_seq}, found {entry.sequence}")
            if entry.prior_available != available or entry.prior_pending != pending:
                issues.append(
                    f"entry {entry.sequence} prior ({entry.prior_available}, {entry.prior_pending}) "
                    f"!= running ({available}, {pending})"
                )
            if entry.status == LedgerEntryStatus.COMPLETED.value:
                available += entry.available_delta
                pending += entry.pending_delta
            if entry.new_available != available or entry.new_pending != pending:
                issues.append(
                    f"entry {entry.sequence} new ({entry.new_available}, {entry.new_pending}) "
                    f"!= running ({available}, {pending})"
                )
            if available < ZERO or pending < ZERO:
                issues.append(f"entry {entry.sequence} drives a bucket negative")
            last = entry

        if account.available_balance != available:
            issues.append(f"available snapshot {account.available_balance} != ledger {available}")
        if account.pending_balance != pending:
            issues.append(f"pending snapshot {account.pending_balance} != ledger {pending}")
        expected_head = last.id if last is not None else None
        if account.last_entry_id != expected_head:
            issues.append(f"last_entry_id {account.last_entry_id} != chain head {expected_head}")

        return AccountVerification(
            account_id=account.id,
            expected_available=available,
            expected_pending=pending,
            actual_available=account.available_balance,
            actual_pending=account.pending_balance,
            entry_count=last.sequence if last is not None else 0,
            issues=tuple(issues),
        )

    def canonical_hash(self, account_id: UUID) -> str:
        """Deterministic SHA-256 over the account's entries in sequence order."""
        hasher = hashlib.sha256()
        for entry in self.entries(account_id):
            record = {
                "seq": entry.sequence,
                "kind": entry.kind,
                "amount": str(entry.amount),
                "available_delta": str(entry.available_delta),
                "pending_delta": str(entry.pending_delta),
                "key": entry.related_transaction_id,
                "status": entry.status,
                "reversal_of": str(entry.reversal_of_id) if entry.reversal_of_id else None,
            }
            hasher.update(json.dumps(record, sort_keys=True, separators=(",", ":")).encode())
            hasher.update(b"\n")
        return hasher.hexdigest()
