"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Hands out strictly increasing integers per named sequence.  The
    outbox uses it so events dispatch in the order they were recorded,
    even when several share one clock instant.

Architecture position:
    Kernel > Services -- infrastructure.  Called by EventOutbox.record().

Invariants enforced:
    - The locked counter row is the only source of the next value
      (``SELECT ... FOR UPDATE``; ``BEGIN IMMEDIATE`` on SQLite).
    - The increment belongs to the caller's transaction: a rollback
      returns the value.

Failure modes:
    - IntegrityError on concurrent first use of a name is absorbed by a
      savepoint and a locked re-read.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.outbox import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    OUTBOX_EVENT = "outbox_event"

    def __init__(self, session: Session):
        self._session = session

    def next_value(self, sequence_name: str) -> int:
        """Lock the named counter (creating it on first use) and return value + 1."""
        counter = self._locked(sequence_name)
        if counter is None:
            savepoint = self._session.begin_nested()
            try:
                self._session.add(SequenceCounter(name=sequence_name, current_value=1))
                self._session.flush()
                savepoint.commit()
                logger.debug("sequence_allocated", extra={"sequence_name": sequence_name, "value": 1})
                return 1
            except IntegrityError:
                savepoint.rollback()
                logger.debug("sequence_counter_race_retry", extra={"sequence_name": sequence_name})
                counter = self._locked(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None

    def _locked(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
