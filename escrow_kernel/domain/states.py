"""
Closed status enums and transition tables for every stateful entity.

Storage CHECK constraints mirror these values, but legality of a move is
decided here: services call ``<Enum>.can_transition(current, target)``
before writing, and the ORM never accepts a status string that is not a
member of the enum.

    BidAcceptance      pending_payment -> paid | expired | cancelled
    ConnectionPayment  pending -> processing -> completed
                       pending | processing -> failed -> processing (retry)
    MilestonePayment   pending -> funded -> released | refunded | disputed
                       disputed -> released | refunded | funded
                       pending -> cancelled
    PaymentDispute     opened -> under_review -> resolved_* | partial | cancelled
                       opened | under_review -> evidence_requested | escalated
                       evidence_requested -> under_review (evidence in)
"""

from enum import Enum


class _StateEnum(str, Enum):
    """str-valued enum with a class-level transition table."""

    @classmethod
    def transitions(cls) -> dict["_StateEnum", frozenset["_StateEnum"]]:
        raise NotImplementedError

    @classmethod
    def can_transition(cls, current: "str | _StateEnum", target: "str | _StateEnum") -> bool:
        return cls(target) in cls.transitions().get(cls(current), frozenset())

    @classmethod
    def terminal(cls) -> frozenset["_StateEnum"]:
        table = cls.transitions()
        return frozenset(s for s in cls if not table.get(s))

    @classmethod
    def values(cls) -> tuple[str, ...]:
        return tuple(s.value for s in cls)


class AccountStatus(_StateEnum):
    ACTIVE = "active"
    FROZEN = "frozen"
    CLOSED = "closed"

    @classmethod
    def transitions(cls):
        return {
            cls.ACTIVE: frozenset({cls.FROZEN, cls.CLOSED}),
            cls.FROZEN: frozenset({cls.ACTIVE}),
            cls.CLOSED: frozenset(),
        }


class LedgerEntryKind(str, Enum):
    DEPOSIT = "deposit"
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class LedgerEntryStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BidCardStatus(_StateEnum):
    OPEN = "open"
    AWARDED = "awarded"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"

    @classmethod
    def transitions(cls):
        return {
            cls.OPEN: frozenset({cls.AWARDED, cls.WITHDRAWN, cls.CANCELLED}),
            cls.AWARDED: frozenset(),
            cls.WITHDRAWN: frozenset(),
            cls.CANCELLED: frozenset(),
        }


class BidStatus(_StateEnum):
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    CONNECTED = "connected"
    EXPIRED = "expired"
    DECLINED = "declined"
    WITHDRAWN = "withdrawn"

    @classmethod
    def transitions(cls):
        return {
            cls.SUBMITTED: frozenset({cls.ACCEPTED, cls.DECLINED, cls.WITHDRAWN}),
            cls.ACCEPTED: frozenset({cls.CONNECTED, cls.EXPIRED, cls.DECLINED, cls.WITHDRAWN}),
            cls.CONNECTED: frozenset(),
            cls.EXPIRED: frozenset(),
            cls.DECLINED: frozenset(),
            cls.WITHDRAWN: frozenset(),
        }


class AcceptanceStatus(_StateEnum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @classmethod
    def transitions(cls):
        return {
            cls.PENDING_PAYMENT: frozenset({cls.PAID, cls.EXPIRED, cls.CANCELLED}),
            cls.PAID: frozenset(),
            cls.EXPIRED: frozenset(),
            cls.CANCELLED: frozenset(),
        }


class ConnectionPaymentStatus(_StateEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def transitions(cls):
        return {
            cls.PENDING: frozenset({cls.PROCESSING, cls.FAILED}),
            cls.PROCESSING: frozenset({cls.PENDING, cls.COMPLETED, cls.FAILED}),
            cls.FAILED: frozenset({cls.PROCESSING}),
            cls.COMPLETED: frozenset(),
        }


class MilestoneStatus(_StateEnum):
    PENDING = "pending"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"

    @classmethod
    def transitions(cls):
        return {
            cls.PENDING: frozenset({cls.FUNDED, cls.CANCELLED}),
            cls.FUNDED: frozenset({cls.RELEASED, cls.REFUNDED, cls.DISPUTED}),
            cls.DISPUTED: frozenset({cls.RELEASED, cls.REFUNDED, cls.FUNDED}),
            cls.RELEASED: frozenset(),
            cls.REFUNDED: frozenset(),
            cls.CANCELLED: frozenset(),
        }


class ReleaseTrigger(str, Enum):
    MANUAL = "manual"
    MILESTONE_COMPLETION = "milestone_completion"
    DISPUTE_RESOLUTION = "dispute_resolution"


class PayoutStatus(str, Enum):
    NONE = "none"
    REQUESTED = "requested"
    COMPLETED = "completed"
    FAILED = "failed"


class DisputeStatus(_StateEnum):
    OPENED = "opened"
    UNDER_REVIEW = "under_review"
    EVIDENCE_REQUESTED = "evidence_requested"
    ESCALATED = "escalated"
    RESOLVED_PAYER = "resolved_payer"
    RESOLVED_PAYEE = "resolved_payee"
    PARTIAL = "partial"
    CANCELLED = "cancelled"

    @classmethod
    def transitions(cls):
        resolved = frozenset({cls.RESOLVED_PAYER, cls.RESOLVED_PAYEE, cls.PARTIAL, cls.CANCELLED})
        return {
            cls.OPENED: resolved | {cls.UNDER_REVIEW, cls.EVIDENCE_REQUESTED, cls.ESCALATED},
            cls.UNDER_REVIEW: resolved | {cls.EVIDENCE_REQUESTED, cls.ESCALATED},
            # Evidence arriving sends the dispute back to review.
            cls.EVIDENCE_REQUESTED: resolved | {cls.UNDER_REVIEW, cls.ESCALATED},
            cls.ESCALATED: resolved | {cls.EVIDENCE_REQUESTED},
            cls.RESOLVED_PAYER: frozenset(),
            cls.RESOLVED_PAYEE: frozenset(),
            cls.PARTIAL: frozenset(),
            cls.CANCELLED: frozenset(),
        }

    @classmethod
    def active(cls) -> frozenset["DisputeStatus"]:
        return frozenset({cls.OPENED, cls.UNDER_REVIEW, cls.EVIDENCE_REQUESTED, cls.ESCALATED})


class DisputeType(str, Enum):
    MILESTONE_COMPLETION = "milestone_completion"
    QUALITY_ISSUE = "quality_issue"
    SCOPE_DISAGREEMENT = "scope_disagreement"
    TIMELINE_DELAY = "timeline_delay"
    MATERIAL_DIFFERENCE = "material_difference"
    PAYMENT_AMOUNT = "payment_amount"
    OTHER = "other"


class DisputeOutcome(str, Enum):
    PAYER = "payer"
    PAYEE = "payee"
    PARTIAL = "partial"

    @property
    def resolved_status(self) -> DisputeStatus:
        return {
            DisputeOutcome.PAYER: DisputeStatus.RESOLVED_PAYER,
            DisputeOutcome.PAYEE: DisputeStatus.RESOLVED_PAYEE,
            DisputeOutcome.PARTIAL: DisputeStatus.PARTIAL,
        }[self]


def check_constraint_sql(column: str, enum_cls: type[Enum]) -> str:
    """Render ``column IN ('a', 'b', ...)`` for a storage CHECK constraint."""
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"
