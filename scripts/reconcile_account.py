#!/usr/bin/env python3
"""
Audit escrow accounts against their ledgers, or rebuild a frozen account.

Audit mode verifies every account and freezes the ones whose balance
snapshot disagrees with the ledger.  Rebuild mode restores one frozen
account's snapshot from its ledger and unfreezes it; it is an operator
action and requires --operator.

Usage:
    python scripts/reconcile_account.py audit [--dry-run]
    python scripts/reconcile_account.py rebuild ACCOUNT_ID --operator OPERATOR_ID
"""

import argparse
import os
import sys
from pathlib import Path
from uuid import UUID

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from escrow_kernel.db.engine import init_engine_from_url, session_scope
from escrow_kernel.db.immutability import register_immutability_listeners
from escrow_kernel.domain.clock import SystemClock
from escrow_kernel.exceptions import EscrowKernelError
from escrow_kernel.logging_config import configure_logging
from escrow_kernel.services.reconciliation_service import ReconciliationService

DEFAULT_URL = "sqlite:///escrow.db"


def audit(dry_run: bool) -> int:
    with session_scope() as session:
        report = ReconciliationService(session, SystemClock()).audit(freeze=not dry_run)

    print(f"Checked {report.checked} accounts, {len(report.mismatched)} mismatched.")
    for verification in report.mismatched:
        print(f"\n  account {verification.account_id}")
        for issue in verification.issues:
            print(f"    - {issue}")
    if report.frozen:
        print(f"\nFroze {len(report.frozen)} accounts.")
    return 0 if report.clean else 2


def rebuild(account_id: UUID, operator_id: UUID) -> int:
    try:
        with session_scope() as session:
            verification = ReconciliationService(session, SystemClock()).rebuild(
                account_id, operator_id=operator_id
            )
    except EscrowKernelError as exc:
        print(f"ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 1

    print(
        f"Rebuilt {account_id}: available={verification.actual_available} "
        f"pending={verification.actual_pending} entries={verification.entry_count}"
    )
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Escrow ledger reconciliation")
    parser.add_argument("--database-url", default=os.environ.get("DATABASE_URL", DEFAULT_URL))
    commands = parser.add_subparsers(dest="command", required=True)

    audit_cmd = commands.add_parser("audit", help="verify every account")
    audit_cmd.add_argument("--dry-run", action="store_true", help="report without freezing")

    rebuild_cmd = commands.add_parser("rebuild", help="restore a frozen account from its ledger")
    rebuild_cmd.add_argument("account_id", type=UUID)
    rebuild_cmd.add_argument("--operator", type=UUID, required=True)

    args = parser.parse_args()
    configure_logging()
    init_engine_from_url(args.database_url)
    register_immutability_listeners()

    if args.command == "audit":
        return audit(args.dry_run)
    return rebuild(args.account_id, args.operator)


if __name__ == "__main__":
    sys.exit(main())
