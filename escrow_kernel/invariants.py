"""
Kernel Invariants Contract.

These invariants are structural law for money movement. They are hardcoded
in the ledger store, the state machines, and the ORM immutability
listeners. No configuration value, fee policy, or capacity policy may
override them.

This module exists solely to declare them. Log records that report a
blocked violation carry ``extra={"invariant": <value>}``.
"""

from enum import Enum, unique


@unique
class KernelInvariant(str, Enum):
    """Non-configurable invariants enforced by the kernel."""

    BALANCE_EQUALS_LEDGER = "balance_equals_ledger"
    """available_balance + pending_balance equals the sum of the account's
    ledger deltas. Checked on every write (chain check against the last
    entry) and on demand by LedgerSelector.verify_account."""

    NON_NEGATIVE_BALANCE = "non_negative_balance"
    """Neither bucket of an escrow account ever goes below zero. Enforced
    by EscrowAccountManager before any ledger entry is appended."""

    LEDGER_APPEND_ONLY = "ledger_append_only"
    """Completed ledger entries are never updated or deleted. Mistakes are
    corrected by compensating entries. Enforced by db.immutability."""

    IDEMPOTENT_TRANSACTIONS = "idempotent_transactions"
    """A related_transaction_id is applied at most once per account.
    Enforced by LedgerStore and a unique constraint."""

    SINGLE_PENDING_ACCEPTANCE = "single_pending_acceptance"
    """At most one BidAcceptance per bid card is pending payment. Enforced
    by BidAcceptanceCoordinator and a partial unique index."""

    MILESTONE_CONSERVATION = "milestone_conservation"
    """released_amount + refunded_amount never exceeds funded_amount for a
    milestone payment. Enforced by MilestonePaymentEngine."""

    DISPUTE_FREEZE = "dispute_freeze"
    """A disputed milestone payment cannot be released or refunded except
    through dispute resolution."""


ALL_KERNEL_INVARIANTS: frozenset[KernelInvariant] = frozenset(KernelInvariant)
