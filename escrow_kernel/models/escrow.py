"""
Module: escrow_kernel.models.escrow
Responsibility: ORM persistence for escrow accounts, their append-only
    ledger, and the audit record attached to manual adjustments.
Architecture position: Kernel > Models.  May import from db/ and domain/states.

Invariants enforced:
    - One account per (owner_id, currency) (UNIQUE constraint).
    - Both balance buckets are non-negative (CHECK constraints).
    - related_transaction_id is unique per account (UNIQUE constraint);
      the Ledger Store turns a collision into an idempotent replay.
    - Completed ledger entries are immutable (db.immutability listeners).
    - Accounts are never deleted; closing is a status change.

Audit relevance:
    LedgerEntry rows are the system of record.  EscrowAccount balances are
    a derived cache that ReconciliationService can rebuild from them.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from escrow_kernel.db.base import TrackedBase, UUIDString
from escrow_kernel.db.types import UTCDateTime
from escrow_kernel.domain.states import (
    AccountStatus,
    LedgerEntryKind,
    LedgerEntryStatus,
    check_constraint_sql,
)


class EscrowAccount(TrackedBase):
    """
    Platform-held balance attributable to one owner in one currency.

    available_balance is spendable; pending_balance is held against a
    milestone or payout.  Both are written only by the Ledger Store in the
    same flush as the entry that moved them.
    """

    __tablename__ = "escrow_accounts"

    __table_args__ = (
        UniqueConstraint("owner_id", "currency", name="uq_escrow_account_owner_currency"),
        CheckConstraint("available_balance >= 0", name="ck_escrow_available_non_negative"),
        CheckConstraint("pending_balance >= 0", name="ck_escrow_pending_non_negative"),
        CheckConstraint(
            check_constraint_sql("status", AccountStatus), name="ck_escrow_account_status"
        ),
        Index("idx_escrow_account_owner", "owner_id"),
    )

    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    available_balance: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    pending_balance: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AccountStatus.ACTIVE.value
    )
    # Head of the ledger chain; the write path checks the snapshot against it.
    last_entry_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    frozen_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    entries: Mapped[list["LedgerEntry"]] = relationship(
        back_populates="account",
        order_by="LedgerEntry.sequence",
        lazy="select",
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowAccount {self.id} owner={self.owner_id} {self.currency} "
            f"available={self.available_balance} pending={self.pending_balance}>"
        )

    @property
    def total_balance(self) -> Decimal:
        return self.available_balance + self.pending_balance

    @property
    def status_enum(self) -> AccountStatus:
        return AccountStatus(self.status)


class LedgerEntry(TrackedBase):
    """
    One balance-affecting operation on one escrow account.

    Contract:
        ``amount`` is always positive; the signed effect on each bucket is
        recorded in ``available_delta`` and ``pending_delta``.
        ``prior_balance``/``new_balance`` are totals (available + pending);
        ``prior_available``/``new_available`` and ``prior_pending``/``new_pending``
        record each bucket so the chain can be checked entry by entry.
        A compensating entry carries ``reversal_of_id`` and opposite deltas.
    """

    __tablename__ = "ledger_entries"

    __table_args__ = (
        UniqueConstraint(
            "account_id", "related_transaction_id", name="uq_ledger_account_transaction"
        ),
        UniqueConstraint("account_id", "sequence", name="uq_ledger_account_sequence"),
        CheckConstraint("amount > 0", name="ck_ledger_amount_positive"),
        CheckConstraint(check_constraint_sql("kind", LedgerEntryKind), name="ck_ledger_kind"),
        CheckConstraint(
            check_constraint_sql("status", LedgerEntryStatus), name="ck_ledger_status"
        ),
        Index("idx_ledger_account_created", "account_id", "created_at"),
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("escrow_accounts.id"), nullable=False
    )
    # Per-account position in the chain, 1-based.
    sequence: Mapped[int] = mapped_column(nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    available_delta: Mapped[Decimal] = mapped_column(nullable=False)
    pending_delta: Mapped[Decimal] = mapped_column(nullable=False)
    prior_balance: Mapped[Decimal] = mapped_column(nullable=False)
    new_balance: Mapped[Decimal] = mapped_column(nullable=False)
    prior_available: Mapped[Decimal] = mapped_column(nullable=False)
    new_available: Mapped[Decimal] = mapped_column(nullable=False)
    prior_pending: Mapped[Decimal] = mapped_column(nullable=False)
    new_pending: Mapped[Decimal] = mapped_column(nullable=False)
    related_transaction_id: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LedgerEntryStatus.COMPLETED.value
    )
    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("ledger_entries.id"), nullable=True
    )
    memo: Mapped[str | None] = mapped_column(String(500), nullable=True)

    account: Mapped[EscrowAccount] = relationship(back_populates="entries")

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry {self.id} #{self.sequence} {self.kind} {self.amount} "
            f"key={self.related_transaction_id}>"
        )

    @property
    def kind_enum(self) -> LedgerEntryKind:
        return LedgerEntryKind(self.kind)

    @property
    def is_completed(self) -> bool:
        return self.status == LedgerEntryStatus.COMPLETED.value

    @property
    def is_reversal(self) -> bool:
        return self.reversal_of_id is not None


class AdjustmentAudit(TrackedBase):
    """Second-party authorization record for a manual adjustment entry."""

    __tablename__ = "adjustment_audits"

    __table_args__ = (
        UniqueConstraint("ledger_entry_id", name="uq_adjustment_audit_entry"),
        CheckConstraint("requested_by <> authorized_by", name="ck_adjustment_second_party"),
    )

    ledger_entry_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("ledger_entries.id"), nullable=False
    )
    requested_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    authorized_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    reason: Mapped[str] = mapped_column(String(1000), nullable=False)
