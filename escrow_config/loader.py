"""
Configuration Loader (``escrow_config.loader``).

Responsibility
--------------
Reads one YAML configuration set and parses it into a frozen
``MarketplaceConfig``.  Runtime callers use
``escrow_config.get_active_config()`` instead of calling this directly.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Non-numeric money or rate  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any
from uuid import UUID

import yaml

from escrow_config.schema import (
    AcceptanceConfig,
    CapacityConfig,
    FeePolicyDef,
    FeeTierDef,
    MarketplaceConfig,
    MilestoneConfig,
    ProcessorConfig,
    SweepConfig,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, field_name: str) -> Decimal | None:
    """Parse a money or rate value.  Floats go through str() so 7.5 stays 7.5."""
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{field_name}: cannot parse decimal from {value!r}") from None


def parse_fee_policy(name: str, data: dict[str, Any]) -> FeePolicyDef:
    tiers = tuple(
        FeeTierDef(
            up_to=parse_decimal(tier.get("up_to"), f"{name}.tiers.up_to"),
            percentage_rate=parse_decimal(tier["percentage_rate"], f"{name}.tiers.percentage_rate"),
        )
        for tier in data.get("tiers", [])
    )
    return FeePolicyDef(
        name=name,
        method=data["method"],
        percentage_rate=parse_decimal(data.get("percentage_rate"), f"{name}.percentage_rate"),
        fixed_amount=parse_decimal(data.get("fixed_amount"), f"{name}.fixed_amount"),
        min_amount=parse_decimal(data.get("min_amount"), f"{name}.min_amount"),
        max_amount=parse_decimal(data.get("max_amount"), f"{name}.max_amount"),
        tiers=tiers,
    )


def parse_config(data: dict[str, Any]) -> MarketplaceConfig:
    acceptance = data.get("acceptance", {})
    capacity = data.get("capacity", {})
    processor = data.get("processor", {})
    sweep = data.get("sweep", {})
    milestones = data.get("milestones", {})
    notice_hours = sweep.get("notice_hours", 4.0)

    return MarketplaceConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        checksum=compute_checksum(data),
        platform_fee_owner_id=UUID(str(data["platform_fee_owner_id"])),
        currency=data.get("currency", "USD"),
        acceptance=AcceptanceConfig(
            window_hours=int(acceptance.get("window_hours", 24)),
            fee_policy=acceptance.get("fee_policy", "standard"),
            tier_fee_policies=dict(acceptance.get("tier_fee_policies") or {}),
        ),
        fee_policies={
            name: parse_fee_policy(name, body)
            for name, body in (data.get("fee_policies") or {}).items()
        },
        capacity=CapacityConfig(
            max_bids_allowed=int(capacity.get("max_bids_allowed", 5)),
            overflow_mode=capacity.get("overflow_mode", "overflow"),
        ),
        processor=ProcessorConfig(
            timeout_seconds=float(processor.get("timeout_seconds", 10.0)),
            max_attempts=int(processor.get("max_attempts", 3)),
            base_delay_seconds=float(processor.get("base_delay_seconds", 0.5)),
            max_delay_seconds=float(processor.get("max_delay_seconds", 8.0)),
            retry_budget=int(processor.get("retry_budget", 10)),
        ),
        sweep=SweepConfig(
            interval_seconds=float(sweep.get("interval_seconds", 60.0)),
            batch_size=int(sweep.get("batch_size", 100)),
            notice_hours=None if notice_hours is None else float(notice_hours),
        ),
        milestones=MilestoneConfig(
            release_authorizers=tuple(
                UUID(str(user_id)) for user_id in milestones.get("release_authorizers") or ()
            ),
        ),
    )


def load_config_file(path: Path) -> MarketplaceConfig:
    return parse_config(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization; identical data, identical checksum."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
