"""Event type names published to the outbox and consumed from upstream."""

# Published
BID_ACCEPTED = "bid.accepted"
BID_ACCEPTANCE_CANCELLED = "bid.acceptance_cancelled"
BID_ACCEPTANCE_EXPIRING = "bid.acceptance_expiring"
BID_EXPIRED = "bid.expired"
CONNECTION_PAYMENT_COMPLETED = "connection_payment.completed"
MILESTONE_FUNDED = "milestone.funded"
MILESTONE_RELEASED = "milestone.released"
MILESTONE_REFUNDED = "milestone.refunded"
PAYMENT_DISPUTED = "payment.disputed"
PAYMENT_DISPUTE_ESCALATED = "payment.dispute.escalated"
PAYMENT_DISPUTE_RESOLVED = "payment.dispute.resolved"

PUBLISHED_EVENTS: frozenset[str] = frozenset({
    BID_ACCEPTED,
    BID_ACCEPTANCE_CANCELLED,
    BID_ACCEPTANCE_EXPIRING,
    BID_EXPIRED,
    CONNECTION_PAYMENT_COMPLETED,
    MILESTONE_FUNDED,
    MILESTONE_RELEASED,
    MILESTONE_REFUNDED,
    PAYMENT_DISPUTED,
    PAYMENT_DISPUTE_ESCALATED,
    PAYMENT_DISPUTE_RESOLVED,
})

# Consumed from upstream services
MILESTONE_COMPLETION_VERIFIED = "milestone.completion_verified"
BID_WITHDRAWN = "bid.withdrawn"

# Processor webhooks
CHARGE_SUCCEEDED = "charge.succeeded"
CHARGE_FAILED = "charge.failed"
PAYOUT_SUCCEEDED = "payout.succeeded"
PAYOUT_FAILED = "payout.failed"

WEBHOOK_EVENTS: frozenset[str] = frozenset({
    CHARGE_SUCCEEDED,
    CHARGE_FAILED,
    PAYOUT_SUCCEEDED,
    PAYOUT_FAILED,
})
