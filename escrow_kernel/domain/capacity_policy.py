"""
Bid-slot admission policy.

Decides, at submission time, whether a new bid takes one of the card's
slots, is admitted as overflow, or is rejected.  Overflow bids are stored
and can be promoted as fallbacks, but do not consume a slot.
"""

from dataclasses import dataclass
from enum import Enum


class AdmissionDecision(str, Enum):
    ADMIT = "admit"
    OVERFLOW = "overflow"
    REJECT = "reject"


class OverflowMode(str, Enum):
    OVERFLOW = "overflow"
    REJECT = "reject"


@dataclass(frozen=True)
class CapacityPolicy:
    """
    Admission rule for a bid card.

    ``default_max_bids`` applies when the card does not carry its own
    ``max_bids_allowed``.
    """

    default_max_bids: int = 5
    overflow_mode: OverflowMode = OverflowMode.OVERFLOW

    def __post_init__(self):
        if self.default_max_bids <= 0:
            raise ValueError(f"default_max_bids must be positive, got {self.default_max_bids}")

    def decide(self, current_bids: int, max_bids_allowed: int | None = None) -> AdmissionDecision:
        limit = max_bids_allowed or self.default_max_bids
        if current_bids < limit:
            return AdmissionDecision.ADMIT
        if self.overflow_mode == OverflowMode.OVERFLOW:
            return AdmissionDecision.OVERFLOW
        return AdmissionDecision.REJECT
