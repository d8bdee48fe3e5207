"""
MilestonePaymentEngine -- escrowed milestone funds: fund, release, refund.

Responsibility:
    Owns MilestonePayment.  Every money movement goes through
    EscrowAccountManager with a key derived from the payment id, so
    retrying any operation lands on the same ledger entries.

        pending --fund()--> funded --release()--> released --request_payout()
                            funded --refund()---> refunded
                            funded <--> disputed  (Dispute Overlay only)
        pending --cancel()--> cancelled

Architecture position:
    Kernel > Services.  The Dispute Overlay changes milestone status only
    through mark_disputed / lift_dispute / settle_dispute on this class.

Invariants enforced:
    MILESTONE_CONSERVATION -- released + refunded never exceeds funded,
        checked before every move and by a storage CHECK.
    DISPUTE_FREEZE -- release() and refund() fail while disputed.

Release saga:
    1. ``release`` the payer's hold  (key milestone:{id}:release:{n})
    2. ``deposit`` to the payee inside a SAVEPOINT (key ...:credit:{n})
    3. if 2 fails: reverse 1, bump release_attempts, stay funded, and
       return ReleaseOutcome(COMPENSATED).  The caller commits the
       compensation; a later retry uses attempt n + 1.

Failure modes:
    - AlreadyFundedError, MilestoneNotFundedError, DisputeActiveError.
    - ReleaseNotAuthorizedError: a manual release not by the payer or a
      configured release authorizer.
    - InsufficientFundsError from fund() if the payer's available balance
      is short.
"""

import time
from collections.abc import Callable, Iterable
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_kernel.adapters.payment_processor import PaymentProcessor, PayoutResultStatus
from escrow_kernel.db.types import ZERO, to_amount, validate_currency
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import DisputeSettlement, ReleaseOutcome, ReleaseStatus
from escrow_kernel.domain.events import MILESTONE_FUNDED, MILESTONE_REFUNDED, MILESTONE_RELEASED
from escrow_kernel.domain.states import (
    DisputeStatus,
    MilestoneStatus,
    PayoutStatus,
    ReleaseTrigger,
)
from escrow_kernel.exceptions import (
    AlreadyFundedError,
    DisputeActiveError,
    EscrowKernelError,
    InvalidAmountError,
    LedgerInvariantViolation,
    MilestonePaymentNotFoundError,
    ProcessorDeclinedError,
    ProcessorRetryExhaustedError,
    ReleaseNotAuthorizedError,
    StateTransitionError,
    ValidationError,
)
from escrow_kernel.invariants import KernelInvariant
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.dispute import PaymentDispute
from escrow_kernel.models.milestone import MilestonePayment
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.escrow_service import EscrowAccountManager
from escrow_kernel.services.event_outbox import EventOutbox
from escrow_kernel.services.retry_service import ProcessorRetryPolicy, call_with_retry
from escrow_kernel.utils.idempotency import generate_idempotency_key

logger = get_logger("services.milestone")


class MilestonePaymentEngine(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        processor: PaymentProcessor | None = None,
        *,
        retry_policy: ProcessorRetryPolicy | None = None,
        release_authorizers: Iterable[UUID] = (),
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(session, clock)
        self.processor = processor
        # Platform admins allowed to release on a payer's behalf.
        self.release_authorizers = frozenset(release_authorizers)
        self.retry_policy = retry_policy or ProcessorRetryPolicy()
        self.escrow = EscrowAccountManager(session, self.clock)
        self.outbox = EventOutbox(session, self.clock)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, milestone_payment_id: UUID, *, lock: bool = False) -> MilestonePayment:
        stmt = select(MilestonePayment).where(MilestonePayment.id == milestone_payment_id)
        if lock:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        payment = self.session.execute(stmt).scalar_one_or_none()
        if payment is None:
            raise MilestonePaymentNotFoundError(milestone_payment_id)
        return payment

    def find_by_milestone(self, project_id: UUID, milestone_id: UUID) -> MilestonePayment | None:
        return self.session.execute(
            select(MilestonePayment).where(
                MilestonePayment.project_id == project_id,
                MilestonePayment.milestone_id == milestone_id,
            )
        ).scalar_one_or_none()

    def find_by_payout_ref(self, payout_ref: str) -> MilestonePayment | None:
        return self.session.execute(
            select(MilestonePayment).where(MilestonePayment.payout_ref == payout_ref)
        ).scalar_one_or_none()

    def active_dispute(self, milestone_payment_id: UUID) -> PaymentDispute | None:
        return self.session.execute(
            select(PaymentDispute).where(
                PaymentDispute.milestone_payment_id == milestone_payment_id,
                PaymentDispute.status.in_([s.value for s in DisputeStatus.active()]),
            )
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        project_id: UUID,
        milestone_id: UUID,
        payer_id: UUID,
        payee_id: UUID,
        amount,
        currency: str = "USD",
    ) -> MilestonePayment:
        """Create the pending payment for a milestone, or return the existing one."""
        amount = to_amount(amount)
        currency = validate_currency(currency)
        if payer_id == payee_id:
            raise ValidationError("payer and payee must differ", field="payee_id")

        existing = self.find_by_milestone(project_id, milestone_id)
        if existing is not None:
            if existing.amount != amount or existing.payee_id != payee_id:
                raise ValidationError(
                    f"Milestone {milestone_id} already has a payment with different terms",
                    field="milestone_id",
                )
            return existing

        payment = MilestonePayment(
            project_id=project_id,
            milestone_id=milestone_id,
            payer_id=payer_id,
            payee_id=payee_id,
            amount=amount,
            currency=currency,
            status=MilestoneStatus.PENDING.value,
            funded_amount=ZERO,
            released_amount=ZERO,
            refunded_amount=ZERO,
            escrow_entry_ids=[],
            payout_status=PayoutStatus.NONE.value,
            release_attempts=0,
            payout_attempts=0,
            created_at=self.clock.now(),
        )
        self.session.add(payment)
        self.session.flush()
        logger.info(
            "milestone_payment_created",
            extra={"milestone_payment_id": str(payment.id), "amount": str(amount)},
        )
        return payment

    def fund(self, milestone_payment_id: UUID, amount=None):
        """
        Hold the milestone amount on the payer's escrow account.

        The payer's available balance must already cover the amount.
        Funding with a different amount than the payment was created with
        is rejected.
        """
        payment = self.get(milestone_payment_id, lock=True)
        with LogContext.bind(milestone_payment_id=payment.id):
            if payment.status == MilestoneStatus.CANCELLED.value:
                raise StateTransitionError("MilestonePayment", payment.id, payment.status, "fund")
            if payment.status != MilestoneStatus.PENDING.value:
                raise AlreadyFundedError(payment.id, payment.status)
            if amount is not None and to_amount(amount) != payment.amount:
                raise InvalidAmountError(amount, f"must equal the milestone amount {payment.amount}")

            payer_account = self.escrow.open_account(payment.payer_id, payment.currency)
            result = self.escrow.hold(
                payer_account.id,
                payment.amount,
                self._key(payment, "fund"),
                memo=f"milestone {payment.milestone_id} funding",
            )

            now = self.clock.now()
            payment.funded_amount = payment.amount
            payment.funded_at = now
            self._move(payment, MilestoneStatus.FUNDED)
            payment.record_entry(result.entry_id)

            self.outbox.record(
                MILESTONE_FUNDED,
                payment.id,
                {"milestone_id": payment.milestone_id, "amount": payment.amount},
            )
            self.session.flush()
            logger.info(
                "milestone_funded",
                extra={"amount": str(payment.amount), "entry_id": str(result.entry_id)},
            )
            return payment

    def release(
        self,
        milestone_payment_id: UUID,
        authorized_by: UUID | None = None,
        trigger: ReleaseTrigger = ReleaseTrigger.MANUAL,
    ) -> ReleaseOutcome:
        """
        Move the held funds to the payee.  See the module docstring for the saga.

        A MANUAL release must be authorized by the payer or one of
        ``release_authorizers``.  MILESTONE_COMPLETION (verified upstream)
        and DISPUTE_RESOLUTION carry their own authority.
        """
        trigger = ReleaseTrigger(trigger)
        payment = self.get(milestone_payment_id, lock=True)
        with LogContext.bind(milestone_payment_id=payment.id):
            self._require_release_authority(payment, authorized_by, trigger)
            self._require_not_disputed(payment, "release")
            if payment.status != MilestoneStatus.FUNDED.value:
                raise StateTransitionError(
                    "MilestonePayment", payment.id, payment.status, "release"
                )

            amount = payment.held_amount
            self._check_conservation(payment, released=amount)
            attempt = payment.release_attempts + 1
            debit_key = self._key(payment, "release", attempt)
            credit_key = self._key(payment, "credit", attempt)

            try:
                debit_id, credit_id = self._pay_out_to_payee(payment, amount, debit_key, credit_key)
            except _CreditFailed as failure:
                return self._compensate_release(payment, amount, attempt, failure)

            now = self.clock.now()
            payment.released_amount += amount
            payment.released_at = now
            payment.release_trigger = trigger.value
            payment.release_authorized_by = authorized_by
            payment.release_attempts = attempt
            self._move(payment, MilestoneStatus.RELEASED)
            self._publish_released(payment, amount)
            self.session.flush()

            logger.info(
                "milestone_released",
                extra={
                    "amount": str(amount),
                    "trigger": payment.release_trigger,
                    "debit_entry_id": str(debit_id),
                    "credit_entry_id": str(credit_id),
                },
            )
            return ReleaseOutcome(
                ReleaseStatus.RELEASED,
                payment.id,
                amount,
                debit_entry_id=debit_id,
                credit_entry_id=credit_id,
            )

    def refund(self, milestone_payment_id: UUID, reason: str) -> MilestonePayment:
        """Return the held funds to the payer's available balance."""
        payment = self.get(milestone_payment_id, lock=True)
        with LogContext.bind(milestone_payment_id=payment.id):
            self._require_not_disputed(payment, "refund")
            if payment.status != MilestoneStatus.FUNDED.value:
                raise StateTransitionError(
                    "MilestonePayment", payment.id, payment.status, "refund"
                )

            amount = payment.held_amount
            self._check_conservation(payment, refunded=amount)
            entry_id = self._refund_to_payer(payment, amount, self._key(payment, "refund"))

            payment.refunded_amount += amount
            payment.refunded_at = self.clock.now()
            payment.refund_reason = reason
            self._move(payment, MilestoneStatus.REFUNDED)
            self._publish_refunded(payment, amount)
            self.session.flush()
            logger.info(
                "milestone_refunded",
                extra={"amount": str(amount), "entry_id": str(entry_id), "reason": reason},
            )
            return payment

    def cancel(self, milestone_payment_id: UUID) -> MilestonePayment:
        """Cancel a payment that was never funded."""
        payment = self.get(milestone_payment_id, lock=True)
        if payment.status == MilestoneStatus.CANCELLED.value:
            return payment
        if payment.status != MilestoneStatus.PENDING.value:
            raise StateTransitionError("MilestonePayment", payment.id, payment.status, "cancel")
        self._move(payment, MilestoneStatus.CANCELLED)
        self.session.flush()
        logger.info("milestone_cancelled", extra={"milestone_payment_id": str(payment.id)})
        return payment

    # ------------------------------------------------------------------
    # Dispute overlay API
    # ------------------------------------------------------------------

    def mark_disputed(self, milestone_payment_id: UUID) -> MilestonePayment:
        payment = self.get(milestone_payment_id, lock=True)
        if payment.status == MilestoneStatus.DISPUTED.value:
            return payment
        self._move(payment, MilestoneStatus.DISPUTED)
        self.session.flush()
        logger.info(
            "milestone_disputed",
            extra={
                "milestone_payment_id": str(payment.id),
                "invariant": KernelInvariant.DISPUTE_FREEZE.value,
            },
        )
        return payment

    def lift_dispute(self, milestone_payment_id: UUID) -> MilestonePayment:
        """Return a disputed payment to funded without moving money."""
        payment = self.get(milestone_payment_id, lock=True)
        if payment.status == MilestoneStatus.FUNDED.value:
            return payment
        if payment.status != MilestoneStatus.DISPUTED.value:
            raise StateTransitionError(
                "MilestonePayment", payment.id, payment.status, "lift dispute"
            )
        self._move(payment, MilestoneStatus.FUNDED)
        self.session.flush()
        logger.info("milestone_dispute_lifted", extra={"milestone_payment_id": str(payment.id)})
        return payment

    def settle_dispute(
        self,
        milestone_payment_id: UUID,
        dispute_id: UUID,
        payee_amount,
        resolved_by: UUID | None = None,
    ) -> DisputeSettlement:
        """
        Split the held funds: ``payee_amount`` to the payee, the rest refunded.

        Unlike release(), a failed payee credit is not compensated here: the
        error propagates and the caller's transaction (dispute resolution
        included) rolls back, leaving the dispute active.
        """
        payment = self.get(milestone_payment_id, lock=True)
        with LogContext.bind(milestone_payment_id=payment.id, dispute_id=dispute_id):
            if payment.status != MilestoneStatus.DISPUTED.value:
                raise StateTransitionError(
                    "MilestonePayment", payment.id, payment.status, "settle dispute"
                )

            held = payment.held_amount
            payee_amount = to_amount(payee_amount, allow_zero=True)
            if payee_amount > held:
                raise InvalidAmountError(payee_amount, f"must lie within [0, {held}]")
            payer_amount = held - payee_amount
            self._check_conservation(payment, released=payee_amount, refunded=payer_amount)

            entry_ids: list[UUID] = []
            now = self.clock.now()
            scope = ("dispute", dispute_id)

            if payer_amount > ZERO:
                entry_ids.append(
                    self._refund_to_payer(
                        payment, payer_amount, generate_idempotency_key(*scope, "refund")
                    )
                )
                payment.refunded_amount += payer_amount
                payment.refunded_at = now
                payment.refund_reason = f"dispute {dispute_id}"

            if payee_amount > ZERO:
                entry_ids.extend(
                    self._pay_out_to_payee(
                        payment,
                        payee_amount,
                        generate_idempotency_key(*scope, "release"),
                        generate_idempotency_key(*scope, "credit"),
                        isolate_credit=False,
                    )
                )
                payment.released_amount += payee_amount
                payment.released_at = now
                payment.release_trigger = ReleaseTrigger.DISPUTE_RESOLUTION.value
                payment.release_authorized_by = resolved_by
                self._move(payment, MilestoneStatus.RELEASED)
                self._publish_released(payment, payee_amount)
            else:
                self._move(payment, MilestoneStatus.REFUNDED)

            if payer_amount > ZERO:
                self._publish_refunded(payment, payer_amount)
            self.session.flush()

            logger.info(
                "milestone_dispute_settled",
                extra={
                    "payee_amount": str(payee_amount),
                    "payer_amount": str(payer_amount),
                    "status": payment.status,
                },
            )
            return DisputeSettlement(
                dispute_id=dispute_id,
                milestone_payment_id=payment.id,
                outcome=payment.status,
                payee_amount=payee_amount,
                payer_amount=payer_amount,
                entry_ids=tuple(entry_ids),
            )

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def request_payout(self, milestone_payment_id: UUID) -> MilestonePayment:
        """
        Send released funds from the payee's escrow balance to their bank.

        The amount is held on the payee's account while the processor
        works; complete_payout() releases the hold and fail_payout()
        returns it.  A payout whose outcome is unknown (retries exhausted)
        stays requested with no payout_ref and can be requested again;
        the same processor key is reused.
        """
        if self.processor is None:
            raise RuntimeError("MilestonePaymentEngine.request_payout() requires a PaymentProcessor")

        payment = self.get(milestone_payment_id, lock=True)
        with LogContext.bind(milestone_payment_id=payment.id):
            if payment.status != MilestoneStatus.RELEASED.value:
                raise StateTransitionError(
                    "MilestonePayment", payment.id, payment.status, "request payout"
                )
            if payment.payout_status == PayoutStatus.COMPLETED.value:
                return payment
            if payment.payout_status == PayoutStatus.REQUESTED.value and payment.payout_ref:
                return payment

            payee_account = self.escrow.open_account(payment.payee_id, payment.currency)
            if payment.payout_status != PayoutStatus.REQUESTED.value:
                payment.payout_attempts += 1
                payment.payout_key = self._key(payment, "payout", payment.payout_attempts)
                hold = self.escrow.hold(
                    payee_account.id,
                    payment.released_amount,
                    self._key(payment, "payout_hold", payment.payout_attempts),
                    memo="payout in flight",
                )
                payment.record_entry(hold.entry_id)
                payment.payout_status = PayoutStatus.REQUESTED.value
                payment.updated_at = self.clock.now()
                self.session.flush()

            key = payment.payout_key
            try:
                result = call_with_retry(
                    "payout",
                    lambda: self.processor.payout(
                        str(payment.payee_id),
                        payment.released_amount,
                        payment.currency,
                        key,
                        self.retry_policy.timeout_seconds,
                    ),
                    self.retry_policy,
                    idempotency_key=key,
                    sleep=self._sleep,
                )
            except ProcessorDeclinedError as exc:
                return self._payout_failed(payment, payee_account.id, exc.decline_code)
            except ProcessorRetryExhaustedError:
                logger.warning("payout_outcome_unknown", extra={"payout_key": key})
                return payment

            payment.payout_ref = result.processor_ref
            self.session.flush()
            if result.status == PayoutResultStatus.SUCCEEDED:
                return self._payout_completed(payment, payee_account.id)
            logger.info("payout_pending", extra={"payout_ref": result.processor_ref})
            return payment

    def complete_payout(self, payout_ref: str) -> MilestonePayment:
        payment = self._by_payout_ref(payout_ref)
        if payment.payout_status == PayoutStatus.COMPLETED.value:
            return payment
        account = self.escrow.open_account(payment.payee_id, payment.currency)
        return self._payout_completed(payment, account.id)

    def fail_payout(self, payout_ref: str, failure_code: str) -> MilestonePayment:
        payment = self._by_payout_ref(payout_ref)
        if payment.payout_status != PayoutStatus.REQUESTED.value:
            return payment
        account = self.escrow.open_account(payment.payee_id, payment.currency)
        return self._payout_failed(payment, account.id, failure_code)

    def _payout_completed(self, payment: MilestonePayment, payee_account_id: UUID) -> MilestonePayment:
        result = self.escrow.release(
            payee_account_id,
            payment.released_amount,
            self._key(payment, "payout_release", payment.payout_attempts),
            memo=f"payout {payment.payout_ref}",
        )
        payment.record_entry(result.entry_id)
        payment.payout_status = PayoutStatus.COMPLETED.value
        payment.updated_at = self.clock.now()
        self.session.flush()
        logger.info(
            "payout_completed",
            extra={"milestone_payment_id": str(payment.id), "payout_ref": payment.payout_ref},
        )
        return payment

    def _payout_failed(
        self, payment: MilestonePayment, payee_account_id: UUID, failure_code: str
    ) -> MilestonePayment:
        result = self.escrow.refund(
            payee_account_id,
            payment.released_amount,
            self._key(payment, "payout_refund", payment.payout_attempts),
            memo=f"payout failed: {failure_code}",
        )
        payment.record_entry(result.entry_id)
        payment.payout_status = PayoutStatus.FAILED.value
        payment.payout_ref = None
        payment.updated_at = self.clock.now()
        self.session.flush()
        logger.warning(
            "payout_failed",
            extra={"milestone_payment_id": str(payment.id), "failure_code": failure_code},
        )
        return payment

    def _by_payout_ref(self, payout_ref: str) -> MilestonePayment:
        payment = self.find_by_payout_ref(payout_ref)
        if payment is None:
            raise ValidationError(f"No milestone payment for payout_ref {payout_ref!r}", field="payout_ref")
        return self.get(payment.id, lock=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pay_out_to_payee(
        self,
        payment: MilestonePayment,
        amount: Decimal,
        debit_key: str,
        credit_key: str,
        *,
        isolate_credit: bool = True,
    ) -> tuple[UUID, UUID]:
        payer_account = self.escrow.open_account(payment.payer_id, payment.currency)
        payee_account = self.escrow.open_account(payment.payee_id, payment.currency)

        debit = self.escrow.release(
            payer_account.id, amount, debit_key, memo=f"milestone {payment.milestone_id} release"
        )
        payment.record_entry(debit.entry_id)
        self.session.flush()

        memo = f"milestone {payment.milestone_id} payment"
        if not isolate_credit:
            credit = self.escrow.deposit(payee_account.id, amount, credit_key, memo=memo)
        else:
            try:
                with self.session.begin_nested():
                    credit = self.escrow.deposit(payee_account.id, amount, credit_key, memo=memo)
            except EscrowKernelError as exc:
                raise _CreditFailed(debit.entry_id, exc) from exc
        payment.record_entry(credit.entry_id)
        return debit.entry_id, credit.entry_id

    def _compensate_release(
        self,
        payment: MilestonePayment,
        amount: Decimal,
        attempt: int,
        failure: "_CreditFailed",
    ) -> ReleaseOutcome:
        logger.error(
            "milestone_release_credit_failed",
            extra={"attempt": attempt, "error_code": getattr(failure.error, "code", None)},
        )
        payment = self.get(payment.id)
        compensation = self.escrow.reverse(
            failure.debit_entry_id, memo=f"compensate release attempt {attempt}"
        )
        payment.record_entry(compensation.entry_id)
        payment.release_attempts = attempt
        payment.updated_at = self.clock.now()
        self.session.flush()
        logger.warning(
            "milestone_release_compensated",
            extra={"compensation_entry_id": str(compensation.entry_id)},
        )
        return ReleaseOutcome(
            ReleaseStatus.COMPENSATED,
            payment.id,
            amount,
            debit_entry_id=failure.debit_entry_id,
            compensation_entry_id=compensation.entry_id,
            error=str(failure.error),
        )

    def _refund_to_payer(self, payment: MilestonePayment, amount: Decimal, key: str) -> UUID:
        payer_account = self.escrow.open_account(payment.payer_id, payment.currency)
        result = self.escrow.refund(
            payer_account.id, amount, key, memo=f"milestone {payment.milestone_id} refund"
        )
        payment.record_entry(result.entry_id)
        return result.entry_id

    def _require_release_authority(
        self, payment: MilestonePayment, authorized_by: UUID | None, trigger: ReleaseTrigger
    ) -> None:
        if trigger != ReleaseTrigger.MANUAL:
            return
        if authorized_by is not None and (
            authorized_by == payment.payer_id or authorized_by in self.release_authorizers
        ):
            return
        logger.warning(
            "milestone_release_refused",
            extra={"authorized_by": str(authorized_by) if authorized_by else None},
        )
        raise ReleaseNotAuthorizedError(payment.id, authorized_by)

    def _require_not_disputed(self, payment: MilestonePayment, attempted: str) -> None:
        dispute = self.active_dispute(payment.id)
        if payment.status == MilestoneStatus.DISPUTED.value or dispute is not None:
            logger.info(
                "milestone_frozen_by_dispute",
                extra={"attempted": attempted, "dispute_id": str(dispute.id) if dispute else None},
            )
            raise DisputeActiveError(payment.id, dispute.id if dispute else None, attempted)

    def _check_conservation(
        self,
        payment: MilestonePayment,
        released: Decimal = ZERO,
        refunded: Decimal = ZERO,
    ) -> None:
        total = payment.released_amount + payment.refunded_amount + released + refunded
        if total > payment.funded_amount:
            with self.session.no_autoflush:
                payer_account = self.escrow.find_account(payment.payer_id, payment.currency)
            raise LedgerInvariantViolation(
                payer_account.id if payer_account else None,
                f"milestone {payment.id} would move more than it holds",
                expected=payment.funded_amount,
                actual=total,
            )

    def _move(self, payment: MilestonePayment, target: MilestoneStatus) -> None:
        if not MilestoneStatus.can_transition(payment.status, target):
            raise StateTransitionError(
                "MilestonePayment", payment.id, payment.status, target.value
            )
        payment.status = target.value
        payment.updated_at = self.clock.now()

    def _publish_released(self, payment: MilestonePayment, amount: Decimal) -> None:
        self.outbox.record(
            MILESTONE_RELEASED,
            payment.id,
            {"milestone_id": payment.milestone_id, "payee_id": payment.payee_id, "amount": amount},
        )

    def _publish_refunded(self, payment: MilestonePayment, amount: Decimal) -> None:
        self.outbox.record(
            MILESTONE_REFUNDED,
            payment.id,
            {"milestone_id": payment.milestone_id, "payer_id": payment.payer_id, "amount": amount},
        )

    @staticmethod
    def _key(payment: MilestonePayment, action: str, attempt: int | None = None) -> str:
        return generate_idempotency_key("milestone", payment.id, action, attempt)


class _CreditFailed(Exception):
    """Internal: the payee credit of a release saga failed after the debit."""

    def __init__(self, debit_entry_id: UUID, error: EscrowKernelError):
        self.debit_entry_id = debit_entry_id
        self.error = error
        super().__init__(str(error))
