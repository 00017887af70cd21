"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from core.exceptions import ConfigurationError
from core.models import Environment
from tools.config_validator import (
    TradingHoursConfig,
    load_config,
    load_yaml_file,
    parse_config,
    validate_config_file,
    validate_safety_limits,
    with_interval,
)

CONFIG_DIR = Path(__file__).parent.parent / "config"


def _write(tmp_path, data, name="bot.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


class TestShippedProfiles:
    """The YAML profiles in config/ must validate once credentials exist."""

    @pytest.fixture(autouse=True)
    def credentials(self, monkeypatch):
        monkeypatch.setenv("OANDA_API_KEY", "key")
        monkeypatch.setenv("OANDA_ACCOUNT_ID", "101-001-1-001")

    def test_demo_profile(self):
        config = load_config(CONFIG_DIR / "demo.yaml")

        assert config.environment is Environment.DEMO
        assert config.broker.api_key == "key"
        assert validate_safety_limits(config) == []

    def test_live_profile(self):
        config = load_config(CONFIG_DIR / "live.yaml")

        assert config.is_live
        assert config.consecutive_loss_limit() == 3
        assert validate_safety_limits(config) == []

    def test_profiles_without_credentials_fail(self, monkeypatch):
        monkeypatch.delenv("OANDA_API_KEY")

        errors = validate_config_file(CONFIG_DIR / "demo.yaml")

        assert errors == ["OANDA API key is required"]


class TestSchema:
    def test_defaults(self):
        config = parse_config({})

        assert config.ai.confidence_threshold == 0.70
        assert config.risk.sizing_policy == "fixed_fractional"
        assert config.consecutive_loss_limit() == 5

    def test_env_references_expand(self, monkeypatch):
        monkeypatch.setenv("ALERT_WEBHOOK_URL", "https://hooks.example/abc")

        config = parse_config({"alerting": {"webhook_url": "${ALERT_WEBHOOK_URL}"}})

        assert config.alerting.webhook_url == "https://hooks.example/abc"

    def test_unset_env_reference_is_empty(self):
        config = parse_config({"broker": {"api_key": "${NOT_SET_ANYWHERE_123}"}})

        assert config.broker.api_key == ""
        assert "OANDA API key is required" in validate_safety_limits(config)

    def test_environment_fallback_for_credentials(self, monkeypatch):
        monkeypatch.setenv("OANDA_API_KEY", "from-env")

        assert parse_config({}).broker.api_key == "from-env"

    def test_type_errors_carry_location(self):
        with pytest.raises(ConfigurationError) as exc:
            parse_config({"risk": {"max_concurrent_trades": "many"}})

        assert exc.value.errors[0].startswith("risk -> max_concurrent_trades:")

    def test_unknown_sizing_policy_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_config({"risk": {"sizing_policy": "martingale"}})

    def test_bad_clock_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_config({"trading_hours": {"start": "25:00"}})

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ConfigurationError) as exc:
            parse_config({"trading_hours": {"timezone": "Mars/Olympus"}})

        assert "Unknown timezone" in exc.value.errors[0]


class TestSafetyLimits:
    def _config(self, **sections):
        raw = {"broker": {"api_key": "k", "account_id": "a"}}
        raw.update(sections)
        return parse_config(raw)

    def test_limits_are_inclusive(self):
        config = self._config(
            risk={"max_daily_loss_pct": 10, "risk_per_trade_pct": 5, "max_position_size": 2},
            ai={"confidence_threshold": 0.6},
        )

        assert validate_safety_limits(config) == []

    def test_all_violations_reported(self):
        config = parse_config({
            "broker": {"environment": "live"},
            "risk": {"max_daily_loss_pct": 11, "max_position_size": 2.5},
            "ai": {"confidence_threshold": 0.59},
        })

        errors = validate_safety_limits(config)

        assert len(errors) == 8
        assert "Manual confirmation is required for live trading" in errors

    def test_live_ceilings(self):
        config = self._config(
            broker={"api_key": "k", "account_id": "a", "environment": "live"},
            safety={"require_manual_confirmation": True},
            risk={"max_daily_loss_pct": 5.0, "max_position_size": 1.0},
        )

        assert validate_safety_limits(config) == []


class TestYamlLoading:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc:
            load_yaml_file(tmp_path / "absent.yaml")

        assert "Config file not found" in exc.value.errors[0]

    def test_malformed_yaml_reports_position(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("risk:\n  max_daily_loss_pct: [5\n")

        with pytest.raises(ConfigurationError) as exc:
            load_yaml_file(path)

        assert "Malformed YAML" in exc.value.errors[0]
        assert "line" in exc.value.errors[0]

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError):
            load_yaml_file(path)

    def test_empty_file_is_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_yaml_file(path) == {}

    def test_validate_config_file_collects_schema_errors(self, tmp_path):
        path = _write(tmp_path, {"loop": {"interval_seconds": -1}})

        errors = validate_config_file(path)

        assert len(errors) == 1
        assert errors[0].startswith("loop -> interval_seconds:")

    def test_validate_config_file_accepts_valid(self, tmp_path):
        path = _write(tmp_path, {"broker": {"api_key": "k", "account_id": "a"}})

        assert validate_config_file(path) == []


class TestTradingHours:
    def _at(self, hour, minute=0):
        return datetime(2024, 3, 4, hour, minute, tzinfo=timezone.utc)

    def test_disabled_window_always_open(self):
        assert TradingHoursConfig().contains(self._at(3))

    def test_bounds_inclusive(self):
        hours = TradingHoursConfig(enabled=True, start="08:00", end="17:00")

        assert hours.contains(self._at(8))
        assert hours.contains(self._at(17))
        assert not hours.contains(self._at(17, 1))

    def test_window_wrapping_midnight(self):
        hours = TradingHoursConfig(enabled=True, start="22:00", end="02:00")

        assert hours.contains(self._at(23))
        assert hours.contains(self._at(1))
        assert not hours.contains(self._at(12))

    def test_window_in_local_timezone(self):
        # 08:00 UTC is 09:00 in Berlin (winter time)
        hours = TradingHoursConfig(enabled=True, start="09:00", end="10:00", timezone="Europe/Berlin")

        assert hours.contains(self._at(8))
        assert not hours.contains(self._at(7, 59))


class TestIntervalOverride:
    def test_replaces_only_the_interval(self):
        config = parse_config({"broker": {"api_key": "k", "account_id": "a"}, "loop": {"history_bars": 300}})

        updated = with_interval(config, 5)

        assert updated.loop.interval_seconds == 5.0
        assert updated.loop.history_bars == 300
        assert config.loop.interval_seconds == 45.0

    @pytest.mark.parametrize("seconds", [0, -1.5])
    def test_non_positive_interval_rejected(self, seconds):
        with pytest.raises(ConfigurationError) as exc:
            with_interval(parse_config({}), seconds)

        assert len(exc.value.errors) == 1
        assert exc.value.errors[0].startswith("loop -> interval_seconds:")
