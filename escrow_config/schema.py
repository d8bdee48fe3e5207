"""
Configuration schema (``escrow_config.schema``).

Frozen dataclasses describing one marketplace configuration set.  The
loader produces them from YAML; the bridges turn them into kernel policy
objects.  Nothing here imports the kernel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID


@dataclass(frozen=True)
class FeeTierDef:
    up_to: Decimal | None
    percentage_rate: Decimal


@dataclass(frozen=True)
class FeePolicyDef:
    """How the connection fee is computed from the accepted bid amount."""

    name: str
    method: str  # percentage | fixed | tiered_percentage
    percentage_rate: Decimal | None = None
    fixed_amount: Decimal | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    tiers: tuple[FeeTierDef, ...] = ()


@dataclass(frozen=True)
class AcceptanceConfig:
    window_hours: int = 24
    fee_policy: str = "standard"
    # subscription tier -> fee_policies key; unlisted tiers pay fee_policy.
    tier_fee_policies: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CapacityConfig:
    max_bids_allowed: int = 5
    overflow_mode: str = "overflow"  # overflow | reject


@dataclass(frozen=True)
class ProcessorConfig:
    timeout_seconds: float = 10.0
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    retry_budget: int = 10


@dataclass(frozen=True)
class SweepConfig:
    interval_seconds: float = 60.0
    batch_size: int = 100
    notice_hours: float | None = 4.0


@dataclass(frozen=True)
class MilestoneConfig:
    # Admin users allowed to release a MANUAL milestone for the payer.
    release_authorizers: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class MarketplaceConfig:
    """
    The complete runtime configuration.

    ``checksum`` is the SHA-256 of the canonical JSON of the source YAML,
    so two loads of the same file always agree.
    """

    config_id: str
    version: int
    checksum: str
    platform_fee_owner_id: UUID
    currency: str = "USD"
    acceptance: AcceptanceConfig = field(default_factory=AcceptanceConfig)
    fee_policies: dict[str, FeePolicyDef] = field(default_factory=dict)
    capacity: CapacityConfig = field(default_factory=CapacityConfig)
    processor: ProcessorConfig = field(default_factory=ProcessorConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)
    milestones: MilestoneConfig = field(default_factory=MilestoneConfig)

    @property
    def active_fee_policy(self) -> FeePolicyDef:
        return self.fee_policies[self.acceptance.fee_policy]
