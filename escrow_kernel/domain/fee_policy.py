"""
Connection-fee policies.

A FeePolicy is a pure function from a bid amount to a FeeQuote.  It has no
access to the database, the clock, or the processor.  The coordinator
records both the amount and the method on the BidAcceptance so a later
policy change never alters an acceptance already made.

A contractor's subscription tier may select a different policy (premium
contractors pay less); tiers without an entry use the default policy.

Rates are expressed in percent (``Decimal("7.5")`` is 7.5%), matching the
way fee schedules are written in configuration.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

from escrow_kernel.db.types import ZERO, round_money

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeQuote:
    """Fee computed for one bid."""

    amount: Decimal
    method: str
    policy_name: str


class FeePolicy(ABC):
    """Strategy interface for computing the connection fee on a bid."""

    method: str = "abstract"

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def compute(self, bid_amount: Decimal) -> Decimal:
        """Return the unrounded, unclamped fee for ``bid_amount``."""

    def quote(self, bid_amount: Decimal) -> FeeQuote:
        return FeeQuote(
            amount=round_money(max(self.compute(bid_amount), ZERO)),
            method=self.method,
            policy_name=self.name,
        )


class _BoundedFeePolicy(FeePolicy):
    """Clamps the computed fee into [min_amount, max_amount] when set."""

    def __init__(
        self,
        name: str,
        min_amount: Decimal | None = None,
        max_amount: Decimal | None = None,
    ):
        super().__init__(name)
        if min_amount is not None and max_amount is not None and min_amount > max_amount:
            raise ValueError(f"min_amount {min_amount} exceeds max_amount {max_amount}")
        self.min_amount = min_amount
        self.max_amount = max_amount

    def _clamp(self, fee: Decimal) -> Decimal:
        if self.min_amount is not None and fee < self.min_amount:
            fee = self.min_amount
        if self.max_amount is not None and fee > self.max_amount:
            fee = self.max_amount
        return fee


class PercentageFeePolicy(_BoundedFeePolicy):
    """A flat percentage of the bid, clamped."""

    method = "percentage"

    def __init__(
        self,
        name: str,
        percentage_rate: Decimal,
        min_amount: Decimal | None = None,
        max_amount: Decimal | None = None,
    ):
        super().__init__(name, min_amount, max_amount)
        if percentage_rate < ZERO:
            raise ValueError(f"percentage_rate must be non-negative, got {percentage_rate}")
        self.percentage_rate = percentage_rate

    def compute(self, bid_amount: Decimal) -> Decimal:
        return self._clamp(round_money(bid_amount * self.percentage_rate / _HUNDRED))


class FixedFeePolicy(FeePolicy):
    """The same fee regardless of bid amount."""

    method = "fixed"

    def __init__(self, name: str, fixed_amount: Decimal):
        super().__init__(name)
        if fixed_amount < ZERO:
            raise ValueError(f"fixed_amount must be non-negative, got {fixed_amount}")
        self.fixed_amount = fixed_amount

    def compute(self, bid_amount: Decimal) -> Decimal:
        return self.fixed_amount


@dataclass(frozen=True)
class FeeTier:
    """Rate applied to bids up to and including ``up_to`` (None = no ceiling)."""

    up_to: Decimal | None
    percentage_rate: Decimal


class TieredPercentageFeePolicy(_BoundedFeePolicy):
    """
    Percentage chosen by the bracket the whole bid falls into.

    Tiers are sorted by ceiling; the last tier may be open-ended.  A bid
    above every ceiling uses the last tier's rate.
    """

    method = "tiered_percentage"

    def __init__(
        self,
        name: str,
        tiers: list[FeeTier],
        min_amount: Decimal | None = None,
        max_amount: Decimal | None = None,
    ):
        super().__init__(name, min_amount, max_amount)
        if not tiers:
            raise ValueError("tiered_percentage policy needs at least one tier")
        bounded = sorted((t for t in tiers if t.up_to is not None), key=lambda t: t.up_to)
        open_ended = [t for t in tiers if t.up_to is None]
        if len(open_ended) > 1:
            raise ValueError("only one open-ended tier is allowed")
        self.tiers: tuple[FeeTier, ...] = tuple(bounded + open_ended)

    def rate_for(self, bid_amount: Decimal) -> Decimal:
        for tier in self.tiers:
            if tier.up_to is None or bid_amount <= tier.up_to:
                return tier.percentage_rate
        return self.tiers[-1].percentage_rate

    def compute(self, bid_amount: Decimal) -> Decimal:
        rate = self.rate_for(bid_amount)
        return self._clamp(round_money(bid_amount * rate / _HUNDRED))


def default_fee_policy() -> FeePolicy:
    """Standard connection fee: 7.5% of the bid, at least $10, at most $500."""
    return PercentageFeePolicy(
        "standard_connection_fee",
        percentage_rate=Decimal("7.5"),
        min_amount=Decimal("10.00"),
        max_amount=Decimal("500.00"),
    )


def premium_fee_policy() -> FeePolicy:
    """Reduced connection fee for premium contractors: 6%, at least $10, at most $400."""
    return PercentageFeePolicy(
        "premium_connection_fee",
        percentage_rate=Decimal("6.0"),
        min_amount=Decimal("10.00"),
        max_amount=Decimal("400.00"),
    )


def default_tier_fee_policies() -> dict[str, FeePolicy]:
    """Fee policies keyed by contractor subscription tier; other tiers pay the default."""
    return {"premium": premium_fee_policy()}
