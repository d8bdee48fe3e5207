"""
EscrowAccountManager -- balance operations on escrow accounts.

Responsibility:
    Owns the lifecycle of EscrowAccount rows (open, freeze, close) and
    translates each money movement into exactly one ledger entry with the
    right deltas:

        kind        available   pending   validation
        deposit     +amount     0         amount > 0
        hold        -amount     +amount   available >= amount
        release     0           -amount   pending >= amount (funds leave)
        refund      +amount     -amount   pending >= amount (hold reversed)
        adjustment  +/-delta    0         second-party authorization

Architecture position:
    Kernel > Services.  Every other service that moves money calls this
    one; none of them touch LedgerStore or EscrowAccount balances directly.

Invariants enforced:
    IDEMPOTENT_TRANSACTIONS -- a replayed key returns the prior result
    with ``is_duplicate=True`` instead of raising.

Failure modes:
    - InsufficientFundsError, InvalidAmountError, InvalidCurrencyError.
    - IdempotencyKeyConflictError: same key, different kind or amount.
    - AdjustmentNotAuthorizedError: requested_by == authorized_by.
    - LedgerInvariantViolation / AccountClosedError from LedgerStore.

Audit relevance:
    Adjustments write an AdjustmentAudit row naming both parties.
    Compensating entries carry ``reversal_of_id``.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_kernel.db.types import ZERO, to_amount, validate_currency
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import AccountBalance, BalanceResult
from escrow_kernel.domain.states import AccountStatus, LedgerEntryKind
from escrow_kernel.exceptions import (
    AccountNotFoundError,
    AdjustmentNotAuthorizedError,
    DuplicateTransaction,
    InvalidAmountError,
    InvalidCurrencyError,
    StateTransitionError,
    ValidationError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.escrow import AdjustmentAudit, EscrowAccount, LedgerEntry
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.ledger_service import LedgerStore
from escrow_kernel.utils.idempotency import reversal_key

logger = get_logger("services.escrow")


class EscrowAccountManager(BaseService):
    """Public API for escrow account balances."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self.ledger = LedgerStore(session, self.clock)

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    def get_account(self, account_id: UUID) -> EscrowAccount:
        account = self.session.get(EscrowAccount, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def find_account(self, owner_id: UUID, currency: str) -> EscrowAccount | None:
        return self.session.execute(
            select(EscrowAccount).where(
                EscrowAccount.owner_id == owner_id,
                EscrowAccount.currency == validate_currency(currency),
            )
        ).scalar_one_or_none()

    def open_account(self, owner_id: UUID, currency: str = "USD") -> EscrowAccount:
        """
        Open the (owner, currency) account, or return it if it exists.

        A concurrent open of the same pair loses on the unique constraint
        inside a savepoint and returns the winner's row.
        """
        currency = validate_currency(currency)
        existing = self.find_account(owner_id, currency)
        if existing is not None:
            return existing

        account = EscrowAccount(
            owner_id=owner_id,
            currency=currency,
            available_balance=ZERO,
            pending_balance=ZERO,
            status=AccountStatus.ACTIVE.value,
            created_at=self.clock.now(),
        )
        try:
            with self.session.begin_nested():
                self.session.add(account)
                self.session.flush()
        except IntegrityError:
            existing = self.find_account(owner_id, currency)
            if existing is None:
                raise
            return existing

        logger.info(
            "escrow_account_opened",
            extra={"account_id": str(account.id), "owner_id": str(owner_id), "currency": currency},
        )
        return account

    get_or_open_account = open_account

    def close_account(self, account_id: UUID) -> EscrowAccount:
        """Soft-close an account.  Only allowed with both buckets at zero."""
        account = self.ledger.lock_account(account_id)
        if account.status_enum == AccountStatus.CLOSED:
            return account
        if not AccountStatus.can_transition(account.status, AccountStatus.CLOSED):
            raise StateTransitionError("EscrowAccount", account.id, account.status, "close")
        if account.available_balance != ZERO or account.pending_balance != ZERO:
            raise StateTransitionError(
                "EscrowAccount", account.id, "non_zero_balance", "close"
            )

        now = self.clock.now()
        account.status = AccountStatus.CLOSED.value
        account.closed_at = now
        account.updated_at = now
        self.session.flush()
        logger.info("escrow_account_closed", extra={"account_id": str(account.id)})
        return account

    def freeze_account(self, account_id: UUID, reason: str) -> EscrowAccount:
        """Halt writes to an account until an operator rebuilds it."""
        account = self.ledger.lock_account(account_id)
        if account.status_enum == AccountStatus.FROZEN:
            return account
        if not AccountStatus.can_transition(account.status, AccountStatus.FROZEN):
            raise StateTransitionError("EscrowAccount", account.id, account.status, "freeze")

        account.status = AccountStatus.FROZEN.value
        account.frozen_reason = reason
        account.updated_at = self.clock.now()
        self.session.flush()
        logger.warning(
            "escrow_account_frozen", extra={"account_id": str(account.id), "reason": reason}
        )
        return account

    def unfreeze_account(self, account_id: UUID) -> EscrowAccount:
        account = self.ledger.lock_account(account_id)
        if not AccountStatus.can_transition(account.status, AccountStatus.ACTIVE):
            raise StateTransitionError("EscrowAccount", account.id, account.status, "unfreeze")
        account.status = AccountStatus.ACTIVE.value
        account.frozen_reason = None
        account.updated_at = self.clock.now()
        self.session.flush()
        logger.info("escrow_account_unfrozen", extra={"account_id": str(account.id)})
        return account

    def get_balance(self, account_id: UUID) -> AccountBalance:
        account = self.get_account(account_id)
        return AccountBalance(
            account_id=account.id,
            owner_id=account.owner_id,
            currency=account.currency,
            available=account.available_balance,
            pending=account.pending_balance,
            status=account.status,
            entry_count=self.ledger.entry_count(account.id),
        )

    # ------------------------------------------------------------------
    # Money movement
    # ------------------------------------------------------------------

    def deposit(self, account_id: UUID, amount, idempotency_key: str, *,
                currency: str | None = None, memo: str | None = None) -> BalanceResult:
        amount = to_amount(amount)
        return self._apply(account_id, LedgerEntryKind.DEPOSIT, amount, amount, ZERO,
                           idempotency_key, currency=currency, memo=memo)

    def hold(self, account_id: UUID, amount, idempotency_key: str, *,
             currency: str | None = None, memo: str | None = None) -> BalanceResult:
        amount = to_amount(amount)
        return self._apply(account_id, LedgerEntryKind.HOLD, amount, -amount, amount,
                           idempotency_key, currency=currency, memo=memo)

    def release(self, account_id: UUID, amount, idempotency_key: str, *,
                currency: str | None = None, memo: str | None = None) -> BalanceResult:
        amount = to_amount(amount)
        return self._apply(account_id, LedgerEntryKind.RELEASE, amount, ZERO, -amount,
                           idempotency_key, currency=currency, memo=memo)

    def refund(self, account_id: UUID, amount, idempotency_key: str, *,
               currency: str | None = None, memo: str | None = None) -> BalanceResult:
        amount = to_amount(amount)
        return self._apply(account_id, LedgerEntryKind.REFUND, amount, amount, -amount,
                           idempotency_key, currency=currency, memo=memo)

    def adjust(
        self,
        account_id: UUID,
        delta,
        idempotency_key: str,
        *,
        requested_by: UUID,
        authorized_by: UUID,
        reason: str,
    ) -> BalanceResult:
        """
        Manual correction of the available bucket.

        Only for operator reconciliation.  ``delta`` is signed.  Nothing in
        the kernel calls this automatically.
        """
        if requested_by is None or authorized_by is None or requested_by == authorized_by:
            raise AdjustmentNotAuthorizedError(requested_by, authorized_by)
        if not reason or not reason.strip():
            raise ValidationError("Adjustment requires a reason", field="reason")

        if isinstance(delta, (int, str)) and not isinstance(delta, bool):
            delta = Decimal(delta)
        if not isinstance(delta, Decimal):
            raise InvalidAmountError(delta, "must be a Decimal, int, or numeric string")
        amount = to_amount(abs(delta))

        result = self._apply(
            account_id,
            LedgerEntryKind.ADJUSTMENT,
            amount,
            delta,
            ZERO,
            idempotency_key,
            memo=reason,
        )
        if not result.is_duplicate:
            self.session.add(
                AdjustmentAudit(
                    ledger_entry_id=result.entry_id,
                    requested_by=requested_by,
                    authorized_by=authorized_by,
                    reason=reason,
                    created_at=self.clock.now(),
                )
            )
            self.session.flush()
            logger.warning(
                "escrow_adjustment_applied",
                extra={
                    "account_id": str(account_id),
                    "entry_id": str(result.entry_id),
                    "delta": str(delta),
                    "requested_by": str(requested_by),
                    "authorized_by": str(authorized_by),
                },
            )
        return result

    def reverse(self, entry_id: UUID, idempotency_key: str | None = None, *,
                memo: str | None = None) -> BalanceResult:
        """
        Write a compensating entry: same kind, opposite deltas.

        The default key is derived from the reversed entry, so reversing
        the same entry twice is a replay.
        """
        original = self.ledger.get_entry(entry_id)
        if original is None:
            raise ValidationError(f"Ledger entry not found: {entry_id}", field="entry_id")
        if original.is_reversal:
            raise StateTransitionError("LedgerEntry", original.id, "reversal", "reverse")

        return self._apply(
            original.account_id,
            LedgerEntryKind(original.kind),
            original.amount,
            -original.available_delta,
            -original.pending_delta,
            idempotency_key or reversal_key(original.id),
            memo=memo or f"reversal of {original.id}",
            reversal_of_id=original.id,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply(
        self,
        account_id: UUID,
        kind: LedgerEntryKind,
        amount: Decimal,
        available_delta: Decimal,
        pending_delta: Decimal,
        idempotency_key: str,
        *,
        currency: str | None = None,
        memo: str | None = None,
        reversal_of_id: UUID | None = None,
    ) -> BalanceResult:
        if not idempotency_key:
            raise ValidationError("idempotency_key is required", field="idempotency_key")

        with LogContext.bind(account_id=account_id):
            if currency is not None:
                account = self.get_account(account_id)
                if validate_currency(currency) != account.currency:
                    raise InvalidCurrencyError(currency, expected=account.currency)

            try:
                entry = self.ledger.append(
                    account_id,
                    kind,
                    amount,
                    available_delta,
                    pending_delta,
                    idempotency_key,
                    memo=memo,
                    reversal_of_id=reversal_of_id,
                )
            except DuplicateTransaction as dup:
                logger.info(
                    "ledger_replay_returned",
                    extra={"idempotency_key": idempotency_key, "entry_id": str(dup.entry_id)},
                )
                return self._result_for(self.ledger.get_entry(dup.entry_id), is_duplicate=True)

            return self._result_for(entry)

    @staticmethod
    def _result_for(entry: LedgerEntry, is_duplicate: bool = False) -> BalanceResult:
        return BalanceResult(
            account_id=entry.account_id,
            entry_id=entry.id,
            available=entry.new_available,
            pending=entry.new_pending,
            is_duplicate=is_duplicate,
        )
