"""
ExpirySweep -- periodic expiry of unpaid acceptances.

Contract:
    ``run_once()`` first sends the one-time expiry reminder for acceptances
    within ``notice_hours`` of their deadline, then lists acceptances past
    their window and calls ``BidAcceptanceCoordinator.expire()`` on each in
    its OWN transaction, so one failure does not roll back the rest of the batch.
    ``start()`` / ``stop()`` run it on a background thread.

Invariants enforced:
    expire() is conditional and idempotent, so two sweepers (or a sweeper
    and a late pay()) racing on the same acceptance are safe.
    Graceful shutdown: the stop signal is checked between acceptances.
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.orm import Session

from escrow_kernel.db.engine import session_scope
from escrow_kernel.domain.dtos import ExpiryStatus
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.services.bid_acceptance_coordinator import BidAcceptanceCoordinator

logger = get_logger("services.expiry_sweep")


@dataclass(frozen=True)
class SweepReport:
    scanned: int = 0
    expired: tuple[UUID, ...] = field(default_factory=tuple)
    promoted: tuple[UUID, ...] = field(default_factory=tuple)
    skipped: int = 0
    failed: tuple[UUID, ...] = field(default_factory=tuple)
    notified: tuple[UUID, ...] = field(default_factory=tuple)


class ExpirySweep:
    """
    In-process poller for acceptance expiry.

    Non-goals:
        - NOT a distributed scheduler; concurrent sweepers are tolerated,
          not coordinated.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        coordinator_factory: Callable[[Session], BidAcceptanceCoordinator],
        *,
        interval_seconds: float = 60.0,
        batch_size: int = 100,
        notice_hours: float | None = None,
    ):
        self._session_factory = session_factory
        self._coordinator_factory = coordinator_factory
        self._interval = interval_seconds
        self._batch_size = batch_size
        # None disables reminders.
        self._notice_hours = notice_hours
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> SweepReport:
        """Send due reminders, expire every acceptance that is due; return what happened."""
        notified = self._send_notices()

        with session_scope(self._session_factory) as session:
            due = self._coordinator_factory(session).due_for_expiry(self._batch_size)

        expired: list[UUID] = []
        promoted: list[UUID] = []
        failed: list[UUID] = []
        skipped = 0

        for acceptance_id in due:
            if self._stop_event.is_set():
                break
            try:
                with LogContext.bind(bid_acceptance_id=acceptance_id):
                    with session_scope(self._session_factory) as session:
                        outcome = self._coordinator_factory(session).expire(acceptance_id)
            except Exception:
                logger.exception("expiry_failed", extra={"bid_acceptance_id": str(acceptance_id)})
                failed.append(acceptance_id)
                continue

            if outcome.status == ExpiryStatus.EXPIRED:
                expired.append(acceptance_id)
                if outcome.fallback_acceptance_id is not None:
                    promoted.append(outcome.fallback_acceptance_id)
            else:
                skipped += 1

        report = SweepReport(
            scanned=len(due),
            expired=tuple(expired),
            promoted=tuple(promoted),
            skipped=skipped,
            failed=tuple(failed),
            notified=tuple(notified),
        )
        logger.info(
            "expiry_sweep_completed",
            extra={
                "scanned": report.scanned,
                "expired": len(report.expired),
                "promoted": len(report.promoted),
                "skipped": report.skipped,
                "failed": len(report.failed),
                "notified": len(report.notified),
            },
        )
        return report

    def _send_notices(self) -> list[UUID]:
        if self._notice_hours is None:
            return []
        with session_scope(self._session_factory) as session:
            due = self._coordinator_factory(session).due_for_expiry_notice(
                self._notice_hours, self._batch_size
            )

        notified: list[UUID] = []
        for acceptance_id in due:
            if self._stop_event.is_set():
                break
            try:
                with LogContext.bind(bid_acceptance_id=acceptance_id):
                    with session_scope(self._session_factory) as session:
                        sent = self._coordinator_factory(session).notify_expiring(acceptance_id)
            except Exception:
                logger.exception(
                    "expiry_notice_failed", extra={"bid_acceptance_id": str(acceptance_id)}
                )
                continue
            if sent:
                notified.append(acceptance_id)
        return notified

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="expiry-sweep", daemon=True)
        self._thread.start()
        logger.info("expiry_sweep_started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("expiry_sweep_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("expiry_sweep_tick_failed")
            self._stop_event.wait(timeout=self._interval)
