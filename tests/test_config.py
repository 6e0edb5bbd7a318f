"""
Unit tests for policy loading and validation.

Tests strict validation and error handling for policy files.
"""

import json
import os
import tempfile
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
import yaml

from model_gate.config.loader import (
    UNPRICED_DEFAULT_PRICE,
    PolicySnapshot,
    load_policy,
    parse_policy,
    parse_timestamp,
)
from model_gate.core.errors import ConfigurationError
from model_gate.core.guardrails import AgentQuota
from model_gate.core.pricing import DEFAULT_PRICING

VALID = {
    "version": 7,
    "currency": "USD",
    "pricing": {
        "gpt-5": {"input_per_1k": 0.10, "output_per_1k": 0.30},
        "gpt-codex": {"input_per_1k": 0.02, "output_per_1k": 0.06},
    },
    "thresholds": {
        "monthly_hard": 500,
        "monthly_soft": 400,
        "per_run_soft": 0.05,
        "per_run_hard": 5,
        "per_run_approval": 1.0,
    },
    "default_quota": {"monthly_cost": 100},
    "agents": [
        {"id": "research-bot", "model": "gpt-5", "monthly_cost": 50, "monthly_tokens": 500000},
    ],
    "model_policy": {
        "default_model": "gpt-codex",
        "fallback_order": ["gpt-4.1", "gpt-codex"],
        "blocked_models": {
            "gpt-5": {"blocked_until": "2026-01-01T00:00:00Z", "reason": "premium freeze"},
        },
    },
}


class TestPolicyLoading:
    """Test policy loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "policy.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            if filename.endswith(".json"):
                json.dump(config_data, f)
            else:
                yaml.dump(config_data, f)
        return config_path

    def test_valid_policy_loads_correctly(self):
        policy = load_policy(self._write_config(VALID))

        assert policy.version == "7"
        assert policy.pricing.price("gpt-5").input_per_1k == Decimal("0.1")
        assert policy.thresholds.monthly_hard == Decimal("500")
        assert policy.thresholds.per_run_soft == Decimal("0.05")
        assert policy.quota_for("research-bot") == AgentQuota(
            monthly_cost=Decimal("50"), monthly_tokens=500000
        )
        assert policy.quota_for("unknown-bot") == AgentQuota(monthly_cost=Decimal("100"))
        assert policy.block_policy.fallback_order == ("gpt-4.1", "gpt-codex")
        assert policy.block_policy.default_model == "gpt-codex"

        status = policy.block_policy.status("gpt-5", datetime(2025, 6, 1, tzinfo=timezone.utc))
        assert status.blocked
        assert status.reason == "premium freeze"
        assert status.blocked_until == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_json_policy(self):
        policy = load_policy(self._write_config(VALID, "policy.json"))
        assert policy.thresholds.per_run_approval == Decimal("1.0")

    def test_minimal_policy_uses_defaults(self):
        policy = load_policy(self._write_config({"currency": "EUR"}))
        assert policy.currency == "EUR"
        assert policy.pricing is DEFAULT_PRICING
        assert policy.thresholds.monthly_hard is None
        assert policy.quota_for("anyone") == AgentQuota()
        assert policy.fallback_price is None

    def test_missing_file_raises_error(self):
        with pytest.raises(ConfigurationError, match="Policy file not found"):
            load_policy("nonexistent.yaml")

    def test_empty_config_raises_error(self):
        with pytest.raises(ConfigurationError, match="Configuration file is empty"):
            load_policy(self._write_config({}))

    def test_invalid_yaml_raises_error(self):
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("thresholds: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid policy file"):
            load_policy(config_path)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_policy({"bogus": 1})


class TestPolicyValidation:
    """Test strict validation of individual sections."""

    def test_unknown_top_level_key(self):
        with pytest.raises(ConfigurationError, match="Unknown keys in configuration"):
            parse_policy({**VALID, "extra": True})

    def test_unknown_threshold_key(self):
        with pytest.raises(ConfigurationError, match="Unknown keys in thresholds"):
            parse_policy({"thresholds": {"monthly_hrad": 1}})

    def test_non_positive_threshold(self):
        with pytest.raises(ConfigurationError, match="thresholds.per_run_soft"):
            parse_policy({"thresholds": {"per_run_soft": 0}})

    def test_non_numeric_threshold(self):
        with pytest.raises(ConfigurationError, match="must be a number"):
            parse_policy({"thresholds": {"per_run_soft": "lots"}})

    def test_soft_above_hard(self):
        with pytest.raises(ConfigurationError, match="monthly_soft"):
            parse_policy({"thresholds": {"monthly_soft": 10, "monthly_hard": 5}})

    def test_per_run_soft_not_below_hard(self):
        with pytest.raises(ConfigurationError, match="per_run_soft"):
            parse_policy({"thresholds": {"per_run_soft": 5, "per_run_hard": 5}})

    def test_missing_price_field(self):
        with pytest.raises(ConfigurationError, match="Missing required 'output_per_1k'"):
            parse_policy({"pricing": {"m": {"input_per_1k": 1}}})

    def test_zero_price_allowed(self):
        policy = parse_policy({"pricing": {"free": {"input_per_1k": 0, "output_per_1k": 0}}})
        assert policy.pricing.price("free").input_per_1k == Decimal("0")

    def test_default_price_required(self):
        with pytest.raises(ConfigurationError, match="'default_price' is required"):
            parse_policy({"unpriced_models": UNPRICED_DEFAULT_PRICE})

    def test_default_price_tier(self):
        policy = parse_policy({
            "unpriced_models": UNPRICED_DEFAULT_PRICE,
            "default_price": {"input_per_1k": 1, "output_per_1k": 2},
        })
        assert policy.fallback_price.output_per_1k == Decimal("2")

    def test_invalid_unpriced_mode(self):
        with pytest.raises(ConfigurationError, match="unpriced_models"):
            parse_policy({"unpriced_models": "free"})

    def test_duplicate_agent(self):
        with pytest.raises(ConfigurationError, match="Duplicate agent id"):
            parse_policy({"agents": [{"id": "a"}, {"id": "a"}]})

    def test_agent_without_id(self):
        with pytest.raises(ConfigurationError, match="Missing required 'id'"):
            parse_policy({"agents": [{"model": "gpt-5"}]})

    def test_token_quota_must_be_integer(self):
        with pytest.raises(ConfigurationError, match="monthly_tokens"):
            parse_policy({"default_quota": {"monthly_tokens": 1.5}})

    def test_bad_blocked_until(self):
        with pytest.raises(ConfigurationError, match="not a valid ISO-8601"):
            parse_policy({"model_policy": {"blocked_models": {"gpt-5": {"blocked_until": "soon"}}}})

    def test_blocked_shorthand(self):
        policy = parse_policy({"model_policy": {"blocked_models": {"gpt-5": "2026-01-01T00:00:00Z"}}})
        assert policy.block_policy.entries[0].blocked_until == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_fallback_order_must_be_list(self):
        with pytest.raises(ConfigurationError, match="fallback_order"):
            parse_policy({"model_policy": {"fallback_order": "gpt-codex"}})

    def test_top_level_default_model(self):
        policy = parse_policy({"default_model": "gpt-codex"})
        assert policy.block_policy.default_model == "gpt-codex"


class TestParseTimestamp:
    """Test timestamp parsing."""

    def test_z_suffix(self):
        assert parse_timestamp("2025-01-01T00:00:00Z", "x") == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_timestamp("2025-01-01T00:00:00", "x") == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_datetime_passthrough(self):
        moment = datetime(2025, 1, 1)
        assert parse_timestamp(moment, "x") == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_date_is_midnight_utc(self):
        assert parse_timestamp(date(2026, 1, 1), "x") == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_unquoted_yaml_date(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = os.path.join(temp_dir, "policy.yaml")
            with open(path, 'w', encoding='utf-8') as f:
                f.write("model_policy:\n  blocked_models:\n    gpt-5:\n      blocked_until: 2026-01-01\n")
            policy = load_policy(path)

        entry = policy.block_policy.entries[0]
        assert entry.model == "gpt-5"
        assert entry.blocked_until == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_snapshot_defaults(self):
        snapshot = PolicySnapshot()
        assert snapshot.version == "default"
        assert snapshot.block_policy.entries == ()
