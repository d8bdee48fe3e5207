"""Services for the escrow kernel (write side)."""

from escrow_kernel.services.bid_acceptance_coordinator import (
    BidAcceptanceCoordinator,
    CoordinatorSettings,
)
from escrow_kernel.services.dispute_service import DisputeOverlay
from escrow_kernel.services.escrow_service import EscrowAccountManager
from escrow_kernel.services.event_outbox import EventOutbox
from escrow_kernel.services.expiry_sweep import ExpirySweep, SweepReport
from escrow_kernel.services.inbound_event_service import InboundEventHandler
from escrow_kernel.services.ledger_service import LedgerStore
from escrow_kernel.services.milestone_payment_engine import MilestonePaymentEngine
from escrow_kernel.services.reconciliation_service import (
    ReconciliationReport,
    ReconciliationService,
)
from escrow_kernel.services.retry_service import ProcessorRetryPolicy, call_with_retry
from escrow_kernel.services.webhook_service import WebhookService

__all__ = [
    "BidAcceptanceCoordinator",
    "CoordinatorSettings",
    "DisputeOverlay",
    "EscrowAccountManager",
    "EventOutbox",
    "ExpirySweep",
    "InboundEventHandler",
    "LedgerStore",
    "MilestonePaymentEngine",
    "ProcessorRetryPolicy",
    "ReconciliationReport",
    "ReconciliationService",
    "SweepReport",
    "WebhookService",
    "call_with_retry",
]
