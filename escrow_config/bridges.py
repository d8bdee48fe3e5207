"""
Config -> Kernel Bridges.

Functions that turn a ``MarketplaceConfig`` into the policy objects the
kernel services take in their constructors.  They live here because the
kernel must never import escrow_config.

Usage:
    from escrow_config import get_active_config
    from escrow_config.bridges import build_coordinator_kwargs

    config = get_active_config()
    coordinator = BidAcceptanceCoordinator(
        session, clock, processor, **build_coordinator_kwargs(config)
    )
"""

from __future__ import annotations

from escrow_config.schema import FeePolicyDef, MarketplaceConfig
from escrow_kernel.domain.capacity_policy import CapacityPolicy, OverflowMode
from escrow_kernel.domain.fee_policy import (
    FeePolicy,
    FeeTier,
    FixedFeePolicy,
    PercentageFeePolicy,
    TieredPercentageFeePolicy,
)
from escrow_kernel.services.bid_acceptance_coordinator import CoordinatorSettings
from escrow_kernel.services.retry_service import ProcessorRetryPolicy


def build_fee_policy(config: MarketplaceConfig, name: str | None = None) -> FeePolicy:
    """Build the named fee policy, or the one the acceptance section selects."""
    definition = config.fee_policies[name] if name else config.active_fee_policy
    return fee_policy_from_def(definition)


def fee_policy_from_def(definition: FeePolicyDef) -> FeePolicy:
    if definition.method == "percentage":
        return PercentageFeePolicy(
            definition.name,
            percentage_rate=definition.percentage_rate,
            min_amount=definition.min_amount,
            max_amount=definition.max_amount,
        )
    if definition.method == "fixed":
        return FixedFeePolicy(definition.name, fixed_amount=definition.fixed_amount)
    if definition.method == "tiered_percentage":
        return TieredPercentageFeePolicy(
            definition.name,
            tiers=[FeeTier(t.up_to, t.percentage_rate) for t in definition.tiers],
            min_amount=definition.min_amount,
            max_amount=definition.max_amount,
        )
    raise ValueError(f"Unknown fee policy method: {definition.method!r}")


def build_tier_fee_policies(config: MarketplaceConfig) -> dict[str, FeePolicy]:
    """Fee policy per subscription tier, as mapped by ``acceptance.tier_fee_policies``."""
    return {
        tier: build_fee_policy(config, policy_name)
        for tier, policy_name in config.acceptance.tier_fee_policies.items()
    }


def build_capacity_policy(config: MarketplaceConfig) -> CapacityPolicy:
    return CapacityPolicy(
        default_max_bids=config.capacity.max_bids_allowed,
        overflow_mode=OverflowMode(config.capacity.overflow_mode),
    )


def build_retry_policy(config: MarketplaceConfig) -> ProcessorRetryPolicy:
    processor = config.processor
    return ProcessorRetryPolicy(
        timeout_seconds=processor.timeout_seconds,
        max_attempts=processor.max_attempts,
        base_delay_seconds=processor.base_delay_seconds,
        max_delay_seconds=processor.max_delay_seconds,
        retry_budget=processor.retry_budget,
    )


def build_coordinator_settings(config: MarketplaceConfig) -> CoordinatorSettings:
    return CoordinatorSettings(
        acceptance_window_hours=config.acceptance.window_hours,
        platform_fee_owner_id=config.platform_fee_owner_id,
        currency=config.currency,
    )


def build_coordinator_kwargs(config: MarketplaceConfig) -> dict:
    """Keyword arguments for BidAcceptanceCoordinator built from one config."""
    return {
        "fee_policy": build_fee_policy(config),
        "tier_fee_policies": build_tier_fee_policies(config),
        "capacity_policy": build_capacity_policy(config),
        "retry_policy": build_retry_policy(config),
        "settings": build_coordinator_settings(config),
    }


def build_engine_kwargs(config: MarketplaceConfig) -> dict:
    """Keyword arguments for MilestonePaymentEngine built from one config."""
    return {"release_authorizers": frozenset(config.milestones.release_authorizers)}
