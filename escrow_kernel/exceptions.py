"""
Typed Exception Hierarchy for the Escrow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Money movement must fail precisely. Callers catch by type and read
structured attributes; they never parse message strings.

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)
  4. Errors surfaced to end users carry a ``user_message`` that explains
     what to do next without leaking ledger internals

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    EscrowKernelError (base)
    |
    +-- ValidationError                  rejected before any state change
    |   +-- InvalidAmountError
    |   +-- InvalidCurrencyError
    |   +-- IdempotencyKeyConflictError
    |   +-- AdjustmentNotAuthorizedError
    |   +-- ReleaseNotAuthorizedError
    |
    +-- NotFoundError
    |   +-- AccountNotFoundError
    |   +-- BidCardNotFoundError
    |   +-- BidNotFoundError
    |   +-- BidAcceptanceNotFoundError
    |   +-- MilestonePaymentNotFoundError
    |   +-- DisputeNotFoundError
    |
    +-- FundsError
    |   +-- InsufficientFundsError
    |
    +-- DuplicateTransaction             idempotent replay (NOT a failure)
    |
    +-- StateTransitionError
    |   +-- AcceptanceConflictError
    |   +-- AcceptanceExpiredError
    |   +-- StaleStateError
    |   +-- BidLockedError
    |   +-- BidCapacityExceededError
    |   +-- AlreadyFundedError
    |   +-- DisputeActiveError
    |   +-- MilestoneNotFundedError
    |   +-- AccountClosedError
    |
    +-- ProcessorError                   transient, caller-retryable
    |   +-- ProcessorTimeoutError
    |   +-- ProcessorDeclinedError       terminal for this attempt
    |   +-- ProcessorRetryExhaustedError manual reconciliation required
    |
    +-- LedgerInvariantViolation         fatal, halts writes to the account
    |
    +-- ImmutabilityViolationError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. IDEMPOTENCY (DuplicateTransaction is success):

    try:
        entry = ledger.append(...)
    except DuplicateTransaction as e:
        entry = ledger.get_entry(e.entry_id)

2. TRANSIENT PROCESSOR ERRORS (retry with backoff, same idempotency key):

    except ProcessorTimeoutError:
        schedule_retry(idempotency_key)

3. LEDGER INVARIANT VIOLATIONS (operator action required):

    except LedgerInvariantViolation as e:
        page_operator(e.account_id)

===============================================================================
"""

from decimal import Decimal


class EscrowKernelError(Exception):
    """
    Base exception for all escrow kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "ESCROW_KERNEL_ERROR"
    user_message: str = "The request could not be completed."


# Validation


class ValidationError(EscrowKernelError):
    """Malformed input. Raised before any state change."""

    code: str = "VALIDATION_ERROR"
    user_message: str = "The request is invalid."

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InvalidAmountError(ValidationError):
    """Amount is missing, non-positive, or has too many decimal places."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount, reason: str = "must be a positive amount"):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount!r}: {reason}", field="amount")


class InvalidCurrencyError(ValidationError):
    """Currency is not a supported ISO 4217 code, or currencies are mixed."""

    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: str, expected: str | None = None):
        self.currency = currency
        self.expected = expected
        if expected:
            msg = f"Currency {currency!r} does not match account currency {expected!r}"
        else:
            msg = f"Invalid ISO 4217 currency code: {currency!r}"
        super().__init__(msg, field="currency")


class IdempotencyKeyConflictError(ValidationError):
    """An idempotency key was reused for a different operation or amount."""

    code: str = "IDEMPOTENCY_KEY_CONFLICT"

    def __init__(
        self,
        idempotency_key: str,
        existing_kind: str,
        existing_amount: Decimal,
        attempted_kind: str,
        attempted_amount: Decimal,
    ):
        self.idempotency_key = idempotency_key
        self.existing_kind = existing_kind
        self.existing_amount = existing_amount
        self.attempted_kind = attempted_kind
        self.attempted_amount = attempted_amount
        super().__init__(
            f"Idempotency key {idempotency_key!r} already applied as "
            f"{existing_kind} {existing_amount}; refusing {attempted_kind} "
            f"{attempted_amount}",
            field="idempotency_key",
        )


class AdjustmentNotAuthorizedError(ValidationError):
    """Manual adjustments need a second, distinct authorizing party."""

    code: str = "ADJUSTMENT_NOT_AUTHORIZED"

    def __init__(self, requested_by, authorized_by):
        self.requested_by = requested_by
        self.authorized_by = authorized_by
        super().__init__(
            "Adjustment requires authorization by a second party "
            f"(requested_by={requested_by}, authorized_by={authorized_by})",
            field="authorized_by",
        )


class ReleaseNotAuthorizedError(ValidationError):
    """A manual milestone release by someone other than the payer or an admin."""

    code: str = "RELEASE_NOT_AUTHORIZED"
    user_message: str = "Only the paying party or an administrator can release these funds."

    def __init__(self, milestone_payment_id, authorized_by):
        self.milestone_payment_id = milestone_payment_id
        self.authorized_by = authorized_by
        super().__init__(
            f"{authorized_by} may not release milestone payment {milestone_payment_id}",
            field="authorized_by",
        )


# Lookup


class NotFoundError(EscrowKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"
    entity_type: str = "entity"

    def __init__(self, entity_id):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type} not found: {entity_id}")


class AccountNotFoundError(NotFoundError):
    code: str = "ACCOUNT_NOT_FOUND"
    entity_type = "Escrow account"


class BidCardNotFoundError(NotFoundError):
    code: str = "BID_CARD_NOT_FOUND"
    entity_type = "Bid card"


class BidNotFoundError(NotFoundError):
    code: str = "BID_NOT_FOUND"
    entity_type = "Bid"


class BidAcceptanceNotFoundError(NotFoundError):
    code: str = "BID_ACCEPTANCE_NOT_FOUND"
    entity_type = "Bid acceptance"


class MilestonePaymentNotFoundError(NotFoundError):
    code: str = "MILESTONE_PAYMENT_NOT_FOUND"
    entity_type = "Milestone payment"


class DisputeNotFoundError(NotFoundError):
    code: str = "DISPUTE_NOT_FOUND"
    entity_type = "Payment dispute"


# Funds


class FundsError(EscrowKernelError):
    """Base exception for balance-related failures."""

    code: str = "FUNDS_ERROR"


class InsufficientFundsError(FundsError):
    """A hold or release would drive a balance below zero."""

    code: str = "INSUFFICIENT_FUNDS"
    user_message: str = "Insufficient funds to complete this payment."

    def __init__(self, account_id, requested: Decimal, available: Decimal, bucket: str):
        self.account_id = account_id
        self.requested = requested
        self.available = available
        self.bucket = bucket
        super().__init__(
            f"Insufficient {bucket} balance on account {account_id}: "
            f"requested {requested}, have {available}"
        )


class DuplicateTransaction(EscrowKernelError):
    """
    Idempotency key already applied with the same kind and amount.

    Not a failure: the Escrow Account Manager catches it and returns the
    prior result to its caller.
    """

    code: str = "DUPLICATE_TRANSACTION"

    def __init__(self, account_id, idempotency_key: str, entry_id):
        self.account_id = account_id
        self.idempotency_key = idempotency_key
        self.entry_id = entry_id
        super().__init__(
            f"Transaction {idempotency_key!r} already applied to account "
            f"{account_id} as entry {entry_id}"
        )


# State transitions


class StateTransitionError(EscrowKernelError):
    """An operation is not legal from the entity's current status."""

    code: str = "INVALID_STATE_TRANSITION"
    user_message: str = "This action is no longer available."

    def __init__(self, entity_type: str, entity_id, current_status: str, attempted: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_status = current_status
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} {entity_type} {entity_id} in status {current_status!r}"
        )


class AcceptanceConflictError(StateTransitionError):
    """Another acceptance on the same bid card is pending payment or paid."""

    code: str = "ACCEPTANCE_CONFLICT"
    user_message: str = "Another bid on this project is already being accepted."

    def __init__(self, bid_card_id, existing_acceptance_id, existing_status: str):
        self.bid_card_id = bid_card_id
        self.existing_acceptance_id = existing_acceptance_id
        self.existing_status = existing_status
        super().__init__("BidCard", bid_card_id, existing_status, "accept")


class AcceptanceExpiredError(StateTransitionError):
    """The payment window for this acceptance has closed."""

    code: str = "ACCEPTANCE_EXPIRED"
    user_message: str = "The payment window for this bid has expired."

    def __init__(self, bid_acceptance_id, expires_at):
        self.expires_at = expires_at
        super().__init__("BidAcceptance", bid_acceptance_id, "expired", "pay")


class StaleStateError(StateTransitionError):
    """A conditional transition found the row no longer in the expected status."""

    code: str = "STALE_STATE"

    def __init__(self, entity_type: str, entity_id, expected_status: str, attempted: str):
        self.expected_status = expected_status
        super().__init__(entity_type, entity_id, f"not {expected_status}", attempted)


class BidLockedError(StateTransitionError):
    """A bid cannot be revised while under acceptance or when marked final."""

    code: str = "BID_LOCKED"
    user_message: str = "This bid can no longer be changed."

    def __init__(self, bid_id, reason: str):
        self.reason = reason
        super().__init__("Bid", bid_id, reason, "revise")


class BidCapacityExceededError(StateTransitionError):
    """The bid card has no free bid slots and overflow is disabled."""

    code: str = "BID_CAPACITY_EXCEEDED"
    user_message: str = "This project is no longer accepting bids."

    def __init__(self, bid_card_id, max_bids_allowed: int):
        self.max_bids_allowed = max_bids_allowed
        super().__init__("BidCard", bid_card_id, "full", "submit bid to")


class AlreadyFundedError(StateTransitionError):
    """fund() was called for a milestone payment that is no longer pending."""

    code: str = "ALREADY_FUNDED"

    def __init__(self, milestone_payment_id, current_status: str):
        super().__init__("MilestonePayment", milestone_payment_id, current_status, "fund")


class DisputeActiveError(StateTransitionError):
    """Funds are frozen by an open dispute."""

    code: str = "DISPUTE_ACTIVE"
    user_message: str = "Funds are on hold while a dispute is open."

    def __init__(self, milestone_payment_id, dispute_id, attempted: str):
        self.dispute_id = dispute_id
        super().__init__("MilestonePayment", milestone_payment_id, "disputed", attempted)


class MilestoneNotFundedError(StateTransitionError):
    """A dispute can only be opened against a funded milestone payment."""

    code: str = "MILESTONE_NOT_FUNDED"

    def __init__(self, milestone_payment_id, current_status: str):
        super().__init__("MilestonePayment", milestone_payment_id, current_status, "dispute")


class AccountClosedError(StateTransitionError):
    """Writes to a soft-closed escrow account are rejected."""

    code: str = "ACCOUNT_CLOSED"

    def __init__(self, account_id, attempted: str):
        super().__init__("EscrowAccount", account_id, "closed", attempted)


# Payment processor


class ProcessorError(EscrowKernelError):
    """Transient processor failure. Retry with the same idempotency key."""

    code: str = "PROCESSOR_ERROR"
    user_message: str = "The payment provider is temporarily unavailable. Please retry."

    def __init__(self, operation: str, message: str, idempotency_key: str | None = None):
        self.operation = operation
        self.idempotency_key = idempotency_key
        super().__init__(f"Processor {operation} failed: {message}")


class ProcessorTimeoutError(ProcessorError):
    """The processor call did not complete within the caller's timeout."""

    code: str = "PROCESSOR_TIMEOUT"

    def __init__(self, operation: str, timeout: float, idempotency_key: str | None = None):
        self.timeout = timeout
        super().__init__(operation, f"timed out after {timeout}s", idempotency_key)


class ProcessorDeclinedError(ProcessorError):
    """The processor declined the charge. Not retried automatically."""

    code: str = "PROCESSOR_DECLINED"
    user_message: str = "The payment was declined by the card issuer."

    def __init__(self, operation: str, decline_code: str, idempotency_key: str | None = None):
        self.decline_code = decline_code
        super().__init__(operation, f"declined ({decline_code})", idempotency_key)


class ProcessorRetryExhaustedError(ProcessorError):
    """Retry budget exhausted. Requires manual reconciliation."""

    code: str = "PROCESSOR_RETRY_EXHAUSTED"
    user_message: str = "The payment could not be completed. Support has been notified."

    def __init__(self, operation: str, attempts: int, idempotency_key: str | None = None):
        self.attempts = attempts
        self.last_error: ProcessorError | None = None
        super().__init__(operation, f"gave up after {attempts} attempts", idempotency_key)

    @property
    def ended_on_timeout(self) -> bool:
        return isinstance(self.last_error, ProcessorTimeoutError)


# Ledger integrity


class LedgerInvariantViolation(EscrowKernelError):
    """
    Account snapshot disagrees with its ledger.

    Fatal for the account: writes stay halted until an operator runs the
    reconciliation job. Never corrected automatically.
    """

    code: str = "LEDGER_INVARIANT_VIOLATION"
    user_message: str = "This account is temporarily unavailable."

    def __init__(self, account_id, reason: str, expected=None, actual=None):
        self.account_id = account_id
        self.reason = reason
        self.expected = expected
        self.actual = actual
        super().__init__(f"Ledger invariant violated on account {account_id}: {reason}")


class ImmutabilityViolationError(EscrowKernelError):
    """Attempt to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")
