"""
Configuration Validator (``escrow_config.validator``).

Checks a parsed ``MarketplaceConfig`` for structural problems before any
kernel object is built from it.  Errors block activation; warnings are
reported but allowed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from escrow_config.schema import FeePolicyDef, MarketplaceConfig

FEE_METHODS = ("percentage", "fixed", "tiered_percentage")
OVERFLOW_MODES = ("overflow", "reject")
SUPPORTED_CURRENCIES = ("USD", "CAD", "EUR", "GBP", "AUD")


@dataclass
class ConfigValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_configuration(config: MarketplaceConfig) -> ConfigValidationResult:
    result = ConfigValidationResult()

    if config.currency not in SUPPORTED_CURRENCIES:
        result.errors.append(f"currency {config.currency!r} is not supported")
    if config.acceptance.window_hours <= 0:
        result.errors.append("acceptance.window_hours must be positive")
    if config.acceptance.fee_policy not in config.fee_policies:
        result.errors.append(
            f"acceptance.fee_policy {config.acceptance.fee_policy!r} is not defined in fee_policies"
        )
    for tier, policy_name in config.acceptance.tier_fee_policies.items():
        if policy_name not in config.fee_policies:
            result.errors.append(
                f"acceptance.tier_fee_policies.{tier} names undefined fee policy {policy_name!r}"
            )
    for fee_policy in config.fee_policies.values():
        _validate_fee_policy(fee_policy, result)

    if config.capacity.max_bids_allowed < 1:
        result.errors.append("capacity.max_bids_allowed must be at least 1")
    if config.capacity.overflow_mode not in OVERFLOW_MODES:
        result.errors.append(f"capacity.overflow_mode must be one of {OVERFLOW_MODES}")

    processor = config.processor
    if processor.timeout_seconds <= 0:
        result.errors.append("processor.timeout_seconds must be positive")
    if processor.max_attempts < 1:
        result.errors.append("processor.max_attempts must be at least 1")
    if processor.retry_budget < processor.max_attempts:
        result.warnings.append(
            "processor.retry_budget is below max_attempts; a single pay() may exhaust it"
        )

    if config.sweep.batch_size < 1:
        result.errors.append("sweep.batch_size must be at least 1")
    if config.sweep.interval_seconds <= 0:
        result.errors.append("sweep.interval_seconds must be positive")
    notice_hours = config.sweep.notice_hours
    if notice_hours is not None and notice_hours <= 0:
        result.errors.append("sweep.notice_hours must be positive")
    elif notice_hours is not None and notice_hours >= config.acceptance.window_hours:
        result.warnings.append(
            "sweep.notice_hours is not shorter than acceptance.window_hours; "
            "reminders go out as soon as a bid is accepted"
        )
    return result


def _validate_fee_policy(policy: FeePolicyDef, result: ConfigValidationResult) -> None:
    where = f"fee_policies.{policy.name}"
    if policy.method not in FEE_METHODS:
        result.errors.append(f"{where}.method must be one of {FEE_METHODS}")
        return
    if policy.method == "percentage" and policy.percentage_rate is None:
        result.errors.append(f"{where} needs percentage_rate")
    if policy.method == "fixed" and policy.fixed_amount is None:
        result.errors.append(f"{where} needs fixed_amount")
    if policy.method == "tiered_percentage":
        if not policy.tiers:
            result.errors.append(f"{where} needs at least one tier")
        if sum(1 for tier in policy.tiers if tier.up_to is None) > 1:
            result.errors.append(f"{where} has more than one open-ended tier")
    for name in ("percentage_rate", "fixed_amount", "min_amount", "max_amount"):
        value = getattr(policy, name)
        if value is not None and value < Decimal("0"):
            result.errors.append(f"{where}.{name} must be non-negative")
    if (
        policy.min_amount is not None
        and policy.max_amount is not None
        and policy.min_amount > policy.max_amount
    ):
        result.errors.append(f"{where}.min_amount exceeds max_amount")
    if policy.percentage_rate is not None and policy.percentage_rate > Decimal("100"):
        result.warnings.append(f"{where}.percentage_rate above 100% of the bid")
