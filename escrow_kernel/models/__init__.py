"""ORM models.  Importing this package registers every table on Base.metadata."""

from escrow_kernel.models.bidding import (
    Bid,
    BidAcceptance,
    BidCard,
    ConnectionPayment,
    ContactRelease,
)
from escrow_kernel.models.dispute import PaymentDispute
from escrow_kernel.models.escrow import AdjustmentAudit, EscrowAccount, LedgerEntry
from escrow_kernel.models.milestone import MilestonePayment
from escrow_kernel.models.outbox import OutboxEvent, ProcessedWebhook, SequenceCounter

__all__ = [
    "AdjustmentAudit",
    "Bid",
    "BidAcceptance",
    "BidCard",
    "ConnectionPayment",
    "ContactRelease",
    "EscrowAccount",
    "LedgerEntry",
    "MilestonePayment",
    "OutboxEvent",
    "PaymentDispute",
    "ProcessedWebhook",
    "SequenceCounter",
]
