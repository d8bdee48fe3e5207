"""Read-only query selectors."""

from escrow_kernel.selectors.base import BaseSelector
from escrow_kernel.selectors.ledger_selector import LedgerSelector

__all__ = ["BaseSelector", "LedgerSelector"]
