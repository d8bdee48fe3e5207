"""
ORM-level immutability enforcement for append-only escrow records.

===============================================================================
WHY THIS EXISTS
===============================================================================

The ledger is the system of record for every dollar held in escrow.  A
completed ledger entry is never edited: a mistake is corrected by a
compensating entry that leaves a visible trail.  The same holds for the
adjustment audit rows and for contact releases (proof of what personal
data was disclosed, to whom, and when).

SQLAlchemy fires mapper events before UPDATE/DELETE SQL is emitted:

    session.flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_*_delete() ------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Bulk ``update()`` statements bypass these hooks.  No service issues one
against a protected table.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity            | When immutable                 | Delete
------------------|--------------------------------|-------------------------
LedgerEntry       | once status = completed        | never
AdjustmentAudit   | always                         | never
ContactRelease    | always                         | never
EscrowAccount     | (mutable snapshot)             | never (soft close only)

updated_at is audit metadata and may change on any record.

===============================================================================
USAGE
===============================================================================

    from escrow_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

Tests that need to tamper with the ledger on purpose (to prove the
reconciliation audit catches it) call unregister_immutability_listeners()
and re-register afterwards.
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from escrow_kernel.exceptions import ImmutabilityViolationError
from escrow_kernel.invariants import KernelInvariant
from escrow_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at"})


def _changed_fields(target) -> list[str]:
    insp = inspect(target)
    return [
        prop.key
        for prop in insp.mapper.column_attrs
        if prop.key not in _AUDIT_FIELDS and insp.attrs[prop.key].history.has_changes()
    ]


def _block(entity_type: str, target, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "reason": reason,
            "invariant": KernelInvariant.LEDGER_APPEND_ONLY.value,
        },
    )
    raise ImmutabilityViolationError(entity_type, str(target.id), reason)


def _check_ledger_entry_immutability(mapper, connection, target):
    """
    Prevent updates to completed ledger entries.

    An entry written as pending may move to completed or failed once.
    After it was completed, nothing but audit metadata may change.
    """
    status_history = get_history(target, "status")

    if status_history.deleted:
        was_completed = status_history.deleted[0] == "completed"
    else:
        was_completed = target.status == "completed"

    if not was_completed:
        return

    changed = _changed_fields(target)
    if changed:
        _block("LedgerEntry", target, f"completed entry is immutable (fields: {', '.join(changed)})")


def _check_ledger_entry_delete(mapper, connection, target):
    _block("LedgerEntry", target, "ledger entries cannot be deleted")


def _check_adjustment_audit_immutability(mapper, connection, target):
    changed = _changed_fields(target)
    if changed:
        _block("AdjustmentAudit", target, "adjustment audit records are immutable")


def _check_adjustment_audit_delete(mapper, connection, target):
    _block("AdjustmentAudit", target, "adjustment audit records cannot be deleted")


def _check_contact_release_immutability(mapper, connection, target):
    changed = _changed_fields(target)
    if changed:
        _block("ContactRelease", target, "contact releases are immutable")


def _check_contact_release_delete(mapper, connection, target):
    _block("ContactRelease", target, "contact releases cannot be deleted")


def _check_escrow_account_delete(mapper, connection, target):
    _block("EscrowAccount", target, "escrow accounts are soft-closed, never deleted")


def _listeners():
    from escrow_kernel.models.bidding import ContactRelease
    from escrow_kernel.models.escrow import AdjustmentAudit, EscrowAccount, LedgerEntry

    return [
        (LedgerEntry, "before_update", _check_ledger_entry_immutability),
        (LedgerEntry, "before_delete", _check_ledger_entry_delete),
        (AdjustmentAudit, "before_update", _check_adjustment_audit_immutability),
        (AdjustmentAudit, "before_delete", _check_adjustment_audit_delete),
        (ContactRelease, "before_update", _check_contact_release_immutability),
        (ContactRelease, "before_delete", _check_contact_release_delete),
        (EscrowAccount, "before_delete", _check_escrow_account_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Safe to call more than once; a listener already present is skipped.
    """
    for target, event_name, fn in _listeners():
        if not event.contains(target, event_name, fn):
            event.listen(target, event_name, fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, fn in _listeners():
        if event.contains(target, event_name, fn):
            event.remove(target, event_name, fn)
