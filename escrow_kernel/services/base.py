"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every write-side service.  Services receive a SQLAlchemy ``Session``
    and use ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or roll back.  ``session_scope()`` or
      the test harness owns commit/rollback.
    - Racing status changes go through ``_conditional_transition``, a
      single ``UPDATE ... WHERE id = :id AND status = :expected``.  Of two
      racers exactly one sees rowcount 1.

Failure modes:
    - A subclass that calls ``session.commit()`` breaks the atomicity of
      multi-step operations such as pay() (charge, deposit, transition,
      contact release, outbox event).
"""

from abc import ABC
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Contract:
        Accepts a SQLAlchemy ``Session`` from the caller and uses
        ``session.flush()`` to persist changes within the active
        transaction.  Time comes from the injected Clock.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read models -- those belong in
          ``escrow_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()

    def _conditional_transition(
        self,
        model: type,
        entity_id,
        expected_status: str,
        **values: Any,
    ) -> bool:
        """
        Move ``entity_id`` out of ``expected_status`` if it is still there.

        Returns True if this caller won the transition.  On success the
        in-session instance (if any) is refreshed from the database.
        """
        values.setdefault("updated_at", self.clock.now())
        result = self.session.execute(
            update(model)
            .where(model.id == entity_id, model.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        instance = self.session.get(model, entity_id)
        if instance is not None:
            self.session.refresh(instance)
        return True
