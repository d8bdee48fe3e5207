"""
LedgerStore -- append-only persistence for escrow ledger entries.

Responsibility:
    The only code that writes LedgerEntry rows or moves an EscrowAccount's
    balance snapshot.  Each append is one read-modify-append under the
    account row lock:

        1. lock the account row (SELECT ... FOR UPDATE)
        2. idempotency: an existing entry with the same key is a replay
           (same kind and amount) or a conflict (anything else)
        3. chain check: the snapshot equals the last entry's new balances
        4. non-negativity of both buckets
        5. insert the entry, move the snapshot, flush

The LedgerStore does NOT:
    - Decide which deltas an operation implies (EscrowAccountManager)
    - Commit (the caller owns the unit of work)

Invariants enforced:
    BALANCE_EQUALS_LEDGER, NON_NEGATIVE_BALANCE, IDEMPOTENT_TRANSACTIONS,
    LEDGER_APPEND_ONLY (together with db.immutability).

Failure modes:
    - DuplicateTransaction: key replayed with matching kind and amount.
    - IdempotencyKeyConflictError: key reused for a different movement.
    - LedgerInvariantViolation: snapshot disagrees with the chain, or the
      account is frozen pending reconciliation.
    - AccountClosedError, InsufficientFundsError.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from escrow_kernel.db.types import ZERO
from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.states import AccountStatus, LedgerEntryKind, LedgerEntryStatus
from escrow_kernel.exceptions import (
    AccountClosedError,
    AccountNotFoundError,
    DuplicateTransaction,
    IdempotencyKeyConflictError,
    InsufficientFundsError,
    LedgerInvariantViolation,
)
from escrow_kernel.invariants import KernelInvariant
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.escrow import EscrowAccount, LedgerEntry

logger = get_logger("services.ledger")


class LedgerStore:
    """
    Append-only writer for ledger entries.

    All operations happen within the caller's transaction boundary.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Reads used by the write path
    # ------------------------------------------------------------------

    def lock_account(self, account_id: UUID) -> EscrowAccount:
        """
        Load the account row under a write lock, refreshing any cached copy.

        On PostgreSQL this is ``SELECT ... FOR UPDATE``; on SQLite the
        transaction already holds the database write lock.
        """
        account = self._session.execute(
            select(EscrowAccount)
            .where(EscrowAccount.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def find_entry(self, account_id: UUID, idempotency_key: str) -> LedgerEntry | None:
        return self._session.execute(
            select(LedgerEntry).where(
                LedgerEntry.account_id == account_id,
                LedgerEntry.related_transaction_id == idempotency_key,
            )
        ).scalar_one_or_none()

    def get_entry(self, entry_id: UUID) -> LedgerEntry | None:
        return self._session.get(LedgerEntry, entry_id)

    def last_entry(self, account: EscrowAccount) -> LedgerEntry | None:
        if account.last_entry_id is None:
            return None
        return self._session.get(LedgerEntry, account.last_entry_id)

    def entry_count(self, account_id: UUID) -> int:
        return self._session.execute(
            select(func.count()).select_from(LedgerEntry).where(LedgerEntry.account_id == account_id)
        ).scalar_one()

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def append(
        self,
        account_id: UUID,
        kind: LedgerEntryKind,
        amount: Decimal,
        available_delta: Decimal,
        pending_delta: Decimal,
        idempotency_key: str,
        *,
        memo: str | None = None,
        reversal_of_id: UUID | None = None,
    ) -> LedgerEntry:
        """
        Append one completed entry and move the account snapshot.

        Raises:
            DuplicateTransaction: replay of an entry already applied.
        """
        account = self.lock_account(account_id)

        existing = self.find_entry(account.id, idempotency_key)
        if existing is not None:
            self._check_replay(existing, kind, amount)
            raise DuplicateTransaction(account.id, idempotency_key, existing.id)

        self._check_writable(account, kind)
        last = self._verify_chain(account)

        new_available = account.available_balance + available_delta
        new_pending = account.pending_balance + pending_delta
        if new_available < ZERO:
            self._refuse(account, kind, amount, account.available_balance, "available")
        if new_pending < ZERO:
            self._refuse(account, kind, amount, account.pending_balance, "pending")

        now = self._clock.now()
        prior_available = account.available_balance
        prior_pending = account.pending_balance

        entry = LedgerEntry(
            account_id=account.id,
            sequence=(last.sequence + 1) if last is not None else 1,
            kind=kind.value,
            amount=amount,
            available_delta=available_delta,
            pending_delta=pending_delta,
            prior_balance=prior_available + prior_pending,
            new_balance=new_available + new_pending,
            prior_available=prior_available,
            new_available=new_available,
            prior_pending=prior_pending,
            new_pending=new_pending,
            related_transaction_id=idempotency_key,
            status=LedgerEntryStatus.COMPLETED.value,
            reversal_of_id=reversal_of_id,
            memo=memo,
            created_at=now,
        )
        self._session.add(entry)
        self._session.flush()

        account.available_balance = new_available
        account.pending_balance = new_pending
        account.last_entry_id = entry.id
        account.last_activity_at = now
        account.updated_at = now
        self._session.flush()

        logger.info(
            "ledger_entry_appended",
            extra={
                "account_id": str(account.id),
                "entry_id": str(entry.id),
                "sequence": entry.sequence,
                "kind": kind.value,
                "amount": str(amount),
                "available": str(new_available),
                "pending": str(new_pending),
                "idempotency_key": idempotency_key,
                "reversal_of_id": str(reversal_of_id) if reversal_of_id else None,
            },
        )
        return entry

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def restore_snapshot(
        self,
        account: EscrowAccount,
        available: Decimal,
        pending: Decimal,
        head: LedgerEntry | None,
    ) -> None:
        """
        Overwrite the snapshot with values recomputed from the chain.

        Operator path only (ReconciliationService.rebuild on a frozen account).
        """
        logger.warning(
            "ledger_snapshot_restored",
            extra={
                "account_id": str(account.id),
                "from_available": str(account.available_balance),
                "from_pending": str(account.pending_balance),
                "to_available": str(available),
                "to_pending": str(pending),
            },
        )
        account.available_balance = available
        account.pending_balance = pending
        account.last_entry_id = head.id if head is not None else None
        account.updated_at = self._clock.now()
        self._session.flush()

    def _check_replay(self, existing: LedgerEntry, kind: LedgerEntryKind, amount: Decimal) -> None:
        if existing.kind != kind.value or existing.amount != amount:
            logger.warning(
                "idempotency_key_conflict",
                extra={
                    "account_id": str(existing.account_id),
                    "idempotency_key": existing.related_transaction_id,
                    "existing_kind": existing.kind,
                    "attempted_kind": kind.value,
                    "invariant": KernelInvariant.IDEMPOTENT_TRANSACTIONS.value,
                },
            )
            raise IdempotencyKeyConflictError(
                existing.related_transaction_id,
                existing.kind,
                existing.amount,
                kind.value,
                amount,
            )

    def _check_writable(self, account: EscrowAccount, kind: LedgerEntryKind) -> None:
        status = account.status_enum
        if status == AccountStatus.CLOSED:
            raise AccountClosedError(account.id, kind.value)
        if status == AccountStatus.FROZEN:
            raise LedgerInvariantViolation(
                account.id,
                f"account frozen pending reconciliation: {account.frozen_reason or 'no reason recorded'}",
            )

    def _verify_chain(self, account: EscrowAccount) -> LedgerEntry | None:
        """Check the snapshot against the head of the chain; return the head."""
        last = self.last_entry(account)
        if last is None:
            expected = (ZERO, ZERO)
        else:
            expected = (last.new_available, last.new_pending)
        actual = (account.available_balance, account.pending_balance)

        if actual != expected:
            logger.critical(
                "ledger_chain_mismatch",
                extra={
                    "account_id": str(account.id),
                    "expected_available": str(expected[0]),
                    "expected_pending": str(expected[1]),
                    "actual_available": str(actual[0]),
                    "actual_pending": str(actual[1]),
                    "invariant": KernelInvariant.BALANCE_EQUALS_LEDGER.value,
                },
            )
            raise LedgerInvariantViolation(
                account.id,
                "balance snapshot does not match last ledger entry",
                expected=expected,
                actual=actual,
            )
        return last

    def _refuse(
        self,
        account: EscrowAccount,
        kind: LedgerEntryKind,
        amount: Decimal,
        have: Decimal,
        bucket: str,
    ) -> None:
        logger.info(
            "ledger_append_refused",
            extra={
                "account_id": str(account.id),
                "kind": kind.value,
                "amount": str(amount),
                "bucket": bucket,
                "have": str(have),
                "invariant": KernelInvariant.NON_NEGATIVE_BALANCE.value,
            },
        )
        raise InsufficientFundsError(account.id, amount, have, bucket)
