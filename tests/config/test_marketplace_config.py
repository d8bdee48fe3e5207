"""
Marketplace configuration tests.

Tests cover:
- The bundled default set loads and validates
- Path resolution: explicit argument, ESCROW_CONFIG_PATH, default
- Validation errors are collected and raised as ValueError
- Bridges build kernel policies that quote the expected fees
- Checksum stability and the ESCROW_CONFIG_TRACE audit log
"""

from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest
import yaml

from escrow_config import CONFIG_PATH_ENV, get_active_config
from escrow_config.bridges import (
    build_capacity_policy,
    build_coordinator_kwargs,
    build_engine_kwargs,
    build_fee_policy,
    build_retry_policy,
)
from escrow_config.loader import compute_checksum, load_yaml_file
from escrow_config.validator import validate_configuration
from escrow_kernel.domain.capacity_policy import OverflowMode
from escrow_kernel.services.bid_acceptance_coordinator import BidAcceptanceCoordinator
from escrow_kernel.services.milestone_payment_engine import MilestonePaymentEngine

DEFAULT_SET = Path(__file__).resolve().parents[2] / "escrow_config" / "sets" / "default.yaml"


@pytest.fixture
def default_data():
    return load_yaml_file(DEFAULT_SET)


@pytest.fixture
def write_config(tmp_path):
    """Write a modified copy of the default set and return its path."""

    def _write(data, name="config.yaml"):
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data))
        return path

    return _write


class TestLoading:
    def test_default_set(self):
        config = get_active_config()
        assert config.config_id == "marketplace-default"
        assert config.acceptance.window_hours == 24
        assert config.active_fee_policy.percentage_rate == Decimal("7.5")
        assert set(config.fee_policies) == {"standard", "premium", "flat", "tiered"}
        assert config.acceptance.tier_fee_policies == {"premium": "premium"}
        assert config.sweep.notice_hours == 4.0
        assert config.milestones.release_authorizers == ()

    def test_environment_variable(self, monkeypatch, default_data, write_config):
        default_data["config_id"] = "from-env"
        monkeypatch.setenv(CONFIG_PATH_ENV, str(write_config(default_data)))
        assert get_active_config().config_id == "from-env"

    def test_explicit_path_wins(self, monkeypatch, default_data, write_config):
        monkeypatch.setenv(CONFIG_PATH_ENV, str(write_config(default_data, "env.yaml")))
        default_data["config_id"] = "explicit"
        assert get_active_config(write_config(default_data, "explicit.yaml")).config_id == "explicit"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "nope.yaml")

    def test_unparseable_rate(self, default_data, write_config):
        default_data["fee_policies"]["standard"]["percentage_rate"] = "seven"
        with pytest.raises(ValueError):
            get_active_config(write_config(default_data))


class TestValidation:
    def test_errors_listed_together(self, default_data, write_config):
        default_data["acceptance"]["window_hours"] = 0
        default_data["acceptance"]["fee_policy"] = "missing"
        default_data["capacity"]["overflow_mode"] = "queue"

        with pytest.raises(ValueError) as exc_info:
            get_active_config(write_config(default_data))

        message = str(exc_info.value)
        assert "window_hours" in message
        assert "'missing'" in message
        assert "overflow_mode" in message

    def test_min_above_max(self, default_data, write_config):
        default_data["fee_policies"]["standard"]["min_amount"] = "900.00"
        with pytest.raises(ValueError, match="min_amount exceeds max_amount"):
            get_active_config(write_config(default_data))

    def test_small_retry_budget_is_a_warning(self, default_data, write_config):
        default_data["processor"]["retry_budget"] = 1
        config = get_active_config(write_config(default_data))

        result = validate_configuration(config)
        assert result.is_valid
        assert any("retry_budget" in w for w in result.warnings)


    def test_tier_mapped_to_undefined_policy(self, default_data, write_config):
        default_data["acceptance"]["tier_fee_policies"] = {"premium": "gold"}
        with pytest.raises(ValueError, match="tier_fee_policies.premium"):
            get_active_config(write_config(default_data))

    def test_notice_hours_must_be_positive(self, default_data, write_config):
        default_data["sweep"]["notice_hours"] = 0
        with pytest.raises(ValueError, match="notice_hours"):
            get_active_config(write_config(default_data))

    def test_notice_hours_can_be_disabled(self, default_data, write_config):
        default_data["sweep"]["notice_hours"] = None
        assert get_active_config(write_config(default_data)).sweep.notice_hours is None

    def test_notice_longer_than_window_is_a_warning(self, default_data, write_config):
        default_data["sweep"]["notice_hours"] = 48
        result = validate_configuration(get_active_config(write_config(default_data)))
        assert result.is_valid
        assert any("notice_hours" in w for w in result.warnings)

class TestBridges:
    def test_active_fee_policy(self):
        policy = build_fee_policy(get_active_config())
        assert policy.quote(Decimal("500.00")).amount == Decimal("37.50")

    @pytest.mark.parametrize(
        "bid, fee",
        [("500.00", "50.00"), ("5000.00", "375.00"), ("20000.00", "1000.00")],
    )
    def test_tiered_policy_by_name(self, bid, fee):
        policy = build_fee_policy(get_active_config(), "tiered")
        assert policy.quote(Decimal(bid)).amount == Decimal(fee)

    def test_capacity_and_retry(self):
        config = get_active_config()
        assert build_capacity_policy(config).overflow_mode == OverflowMode.OVERFLOW
        retry = build_retry_policy(config)
        assert (retry.max_attempts, retry.retry_budget) == (3, 10)

    def test_coordinator_kwargs(self, session, deterministic_clock):
        config = get_active_config()
        coordinator = BidAcceptanceCoordinator(
            session, deterministic_clock, **build_coordinator_kwargs(config)
        )
        assert coordinator.settings.platform_fee_owner_id == config.platform_fee_owner_id
        assert coordinator.fee_policy.name == "standard"
        assert coordinator.fee_policy_for("premium").name == "premium"
        assert coordinator.fee_policy_for("basic").name == "standard"

    def test_premium_tier_fee(self):
        policy = build_fee_policy(get_active_config(), "premium")
        assert policy.quote(Decimal("1000.00")).amount == Decimal("60.00")
        assert policy.quote(Decimal("100.00")).amount == Decimal("10.00")
        assert policy.quote(Decimal("10000.00")).amount == Decimal("400.00")

    def test_engine_kwargs(self, session, deterministic_clock, default_data, write_config):
        admin = uuid4()
        default_data["milestones"] = {"release_authorizers": [str(admin)]}
        config = get_active_config(write_config(default_data))
        engine = MilestonePaymentEngine(session, deterministic_clock, **build_engine_kwargs(config))
        assert engine.release_authorizers == frozenset({admin})


class TestAuditTrace:
    def test_checksum_is_stable(self, default_data):
        assert compute_checksum(default_data) == compute_checksum(dict(default_data))
        assert get_active_config().checksum == get_active_config().checksum

    def test_checksum_changes_with_content(self, default_data, write_config):
        changed = dict(default_data, version=2)
        assert get_active_config(write_config(changed)).checksum != get_active_config().checksum

    def test_trace_logged(self, captured_logs):
        config = get_active_config()
        traces = [r for r in captured_logs() if r["message"] == "ESCROW_CONFIG_TRACE"]
        assert traces[-1]["checksum"] == config.checksum
        assert traces[-1]["fee_policy"] == "standard"
