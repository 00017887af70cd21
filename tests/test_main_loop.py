"""Tests for the runner wiring and command line."""

from unittest.mock import patch

import pytest
import yaml

from core.models import EmergencyStopKind, EmergencyStopReason, SafetyState, Environment
from core.paper_broker import PaperBroker
from infra.state_store import StateStore
from runner.main_loop import TradingLoop, main
from tests.helpers import T0, make_config


def _config_file(tmp_path, **sections):
    data = {"logging": {"file": None}, "state": {"file": str(tmp_path / "state.json")}}
    data.update(sections)
    path = tmp_path / "bot.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def test_missing_credentials_stop_before_building_anything(tmp_path):
    path = _config_file(tmp_path)

    with patch("runner.main_loop.TradingLoop") as loop_cls:
        assert main(["--config", str(path)]) == 1

    loop_cls.assert_not_called()


def test_missing_config_file(tmp_path):
    assert main(["--config", str(tmp_path / "absent.yaml")]) == 1


def test_interval_override_is_schema_checked(tmp_path, caplog):
    path = _config_file(tmp_path, broker={"api_key": "k", "account_id": "a"})

    with patch("runner.main_loop.TradingLoop") as loop_cls:
        assert main(["--config", str(path), "--interval", "0"]) == 1

    loop_cls.assert_not_called()
    assert "loop -> interval_seconds:" in caplog.text


def test_interval_override_reaches_loop(tmp_path):
    path = _config_file(tmp_path, broker={"api_key": "k", "account_id": "a"})

    with patch("runner.main_loop.TradingLoop") as loop_cls, patch("runner.main_loop.asyncio.run", return_value=0):
        assert main(["--config", str(path), "--interval", "5", "--paper"]) == 0

    config = loop_cls.call_args.args[0]
    assert config.loop.interval_seconds == 5.0
    assert loop_cls.call_args.kwargs["paper"] is True


def _loop_config(tmp_path, **sections):
    sections.setdefault("state", {"file": str(tmp_path / "state.json")})
    return make_config(**sections)


def test_paper_mode_wraps_oanda_for_market_data(tmp_path):
    loop = TradingLoop(_loop_config(tmp_path), paper=True, paper_balance=5_000.0)

    assert isinstance(loop.broker, PaperBroker)
    assert loop.broker.balance == 5_000.0
    assert loop.orchestrator.safety is loop.safety


def test_restores_active_stop_from_state_file(tmp_path):
    config = _loop_config(tmp_path)
    state = SafetyState(environment=Environment.DEMO, emergency_stop_active=True)
    state.emergency_stop_history = [EmergencyStopReason(EmergencyStopKind.CONNECTION_LOST, "outage", T0)]
    StateStore(config.state.file).save_session(config, state)

    loop = TradingLoop(config)

    assert loop.safety.state.emergency_stop_active
    assert loop.safety.state.active_reason.kind is EmergencyStopKind.CONNECTION_LOST


@pytest.mark.asyncio
async def test_safety_changes_are_persisted(tmp_path):
    loop = TradingLoop(_loop_config(tmp_path), paper=True)

    await loop.safety.manual_emergency_stop()

    history, active = loop.state_store.load_emergency_history()
    assert active
    assert [r.kind for r in history] == [EmergencyStopKind.MANUAL]


@pytest.mark.asyncio
async def test_run_fails_on_limit_violation(tmp_path):
    loop = TradingLoop(_loop_config(tmp_path, ai={"confidence_threshold": 0.5}))

    assert await loop.run(once=True) == 1
