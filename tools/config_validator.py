"""
Configuration Validation Module

Loads a bot config YAML (config/demo.yaml, config/live.yaml), parses it into
Pydantic models and checks the safety limits a session must respect before it
may start.

Usage:
    from tools.config_validator import load_config, validate_safety_limits

    config = load_config("config/demo.yaml")
    errors = validate_safety_limits(config)
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
import re
from datetime import datetime, time
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.exceptions import ConfigurationError
from core.models import INSTRUMENT, Environment

logger = logging.getLogger(__name__)

# Hard ceilings applied to every session
MAX_DAILY_LOSS_PCT = 10.0
MAX_RISK_PER_TRADE_PCT = 5.0
MAX_POSITION_SIZE_LOTS = 2.0
MIN_CONFIDENCE_THRESHOLD = 0.6

# Additional ceilings for real-money sessions
LIVE_MAX_DAILY_LOSS_PCT = 5.0
LIVE_MAX_POSITION_SIZE_LOTS = 1.0

DEFAULT_CONSECUTIVE_LOSS_LIMIT = {
    Environment.DEMO: 5,
    Environment.LIVE: 3,
}


# ===== Config Schema =====
class BrokerConfig(BaseModel):
    """Broker connection parameters"""
    api_key: str = Field(default="", description="OANDA API token")
    account_id: str = Field(default="", description="OANDA account id")
    environment: Environment = Field(default=Environment.DEMO, description="demo or live")
    instrument: str = Field(default=INSTRUMENT, min_length=1, description="Traded instrument")
    max_retries: int = Field(default=3, ge=1, description="HTTP attempts per broker call")
    timeout_seconds: float = Field(default=10.0, gt=0, description="HTTP timeout")


class RiskConfig(BaseModel):
    """Risk management parameters"""
    max_daily_loss_pct: float = Field(default=5.0, gt=0, description="Daily loss limit, % of balance")
    max_position_size: float = Field(default=1.0, gt=0, description="Max lots per trade")
    max_concurrent_trades: int = Field(default=3, gt=0, description="Max open positions")
    risk_per_trade_pct: float = Field(default=2.0, gt=0, description="Balance % risked per trade")
    stop_loss_pips: float = Field(default=50.0, gt=0, description="Stop distance (pips)")
    take_profit_pips: float = Field(default=100.0, gt=0, description="Target distance (pips)")
    emergency_stop_loss_pct: float = Field(default=10.0, gt=0, description="Unrealized loss % forcing liquidation")
    max_drawdown_pct: float = Field(default=5.0, gt=0, description="Realized drawdown % forcing an emergency stop")
    default_position_size: float = Field(default=1.0, gt=0, description="Nominal trade size (lots)")
    sizing_policy: Literal["fixed_fractional", "kelly"] = Field(default="fixed_fractional")


class AIConfig(BaseModel):
    """Signal execution gate"""
    confidence_threshold: float = Field(default=0.70, ge=0, le=1, description="Min fused confidence to act")


class SafetyConfig(BaseModel):
    """Safety state machine parameters"""
    require_manual_confirmation: bool = Field(default=False)
    max_consecutive_losses: Optional[int] = Field(default=None, gt=0, description="Defaults per environment")
    pause_on_consecutive_losses: bool = Field(default=True)
    max_connection_failures: int = Field(default=3, gt=0, description="Failed price refreshes before stopping")

    def consecutive_loss_limit(self, environment: Environment) -> int:
        if self.max_consecutive_losses is not None:
            return self.max_consecutive_losses
        return DEFAULT_CONSECUTIVE_LOSS_LIMIT[environment]


class TradingHoursConfig(BaseModel):
    """Daily trading window"""
    enabled: bool = Field(default=False)
    start: str = Field(default="08:00", description="HH:MM")
    end: str = Field(default="17:00", description="HH:MM")
    timezone: str = Field(default="UTC")

    @field_validator("start", "end")
    @classmethod
    def validate_clock(cls, v: str) -> str:
        datetime.strptime(v, "%H:%M")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone {v!r}") from exc
        return v

    def window(self) -> "tuple[time, time]":
        start = datetime.strptime(self.start, "%H:%M").time()
        end = datetime.strptime(self.end, "%H:%M").time()
        return start, end

    def contains(self, moment: datetime) -> bool:
        """Inclusive check of ``moment`` against the window in the configured zone."""
        if not self.enabled:
            return True
        local = moment.astimezone(ZoneInfo(self.timezone)).time().replace(tzinfo=None)
        start, end = self.window()
        if start <= end:
            return start <= local <= end
        # Window wraps past midnight
        return local >= start or local <= end


class LoopConfig(BaseModel):
    """Cycle timer"""
    interval_seconds: float = Field(default=45.0, gt=0)
    history_bars: int = Field(default=200, gt=0)
    history_granularity: str = Field(default="M5")
    update_granularity: str = Field(default="M1")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    file: Optional[str] = Field(default="logs/eurusd-bot.log")


class AlertingConfig(BaseModel):
    enabled: bool = Field(default=False)
    webhook_url: Optional[str] = Field(default=None)
    min_severity: str = Field(default="warning")
    dry_run: bool = Field(default=False)
    dedupe_seconds: float = Field(default=60.0, ge=0)
    timeout_seconds: float = Field(default=5.0, gt=0)


class MetricsConfig(BaseModel):
    enabled: bool = Field(default=False)
    port: int = Field(default=9100, gt=0, lt=65536)


class StateConfig(BaseModel):
    file: str = Field(default="data/state.json")


class BotConfig(BaseModel):
    """Complete bot configuration"""
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    trading_hours: TradingHoursConfig = Field(default_factory=TradingHoursConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    alerting: AlertingConfig = Field(default_factory=AlertingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    state: StateConfig = Field(default_factory=StateConfig)

    @property
    def environment(self) -> Environment:
        return self.broker.environment

    @property
    def is_live(self) -> bool:
        return self.broker.environment is Environment.LIVE

    def consecutive_loss_limit(self) -> int:
        return self.safety.consecutive_loss_limit(self.environment)


# ===== Validation Functions =====
def validate_safety_limits(config: BotConfig) -> List[str]:
    """
    Check the limits a session must respect before it may be initialized.

    Every violated rule is reported; nothing short-circuits.
    """
    errors: List[str] = []

    if not config.broker.api_key:
        errors.append("OANDA API key is required")
    if not config.broker.account_id:
        errors.append("OANDA account ID is required")

    if config.risk.max_daily_loss_pct > MAX_DAILY_LOSS_PCT:
        errors.append(f"Maximum daily loss cannot exceed {MAX_DAILY_LOSS_PCT:g}%")
    if config.risk.risk_per_trade_pct > MAX_RISK_PER_TRADE_PCT:
        errors.append(f"Risk per trade cannot exceed {MAX_RISK_PER_TRADE_PCT:g}%")
    if config.risk.max_position_size > MAX_POSITION_SIZE_LOTS:
        errors.append(f"Maximum position size cannot exceed {MAX_POSITION_SIZE_LOTS:g} lots")

    if config.ai.confidence_threshold < MIN_CONFIDENCE_THRESHOLD:
        errors.append(f"Confidence threshold must be at least {MIN_CONFIDENCE_THRESHOLD:.0%}")

    if config.is_live:
        if not config.safety.require_manual_confirmation:
            errors.append("Manual confirmation is required for live trading")
        if config.risk.max_daily_loss_pct > LIVE_MAX_DAILY_LOSS_PCT:
            errors.append(f"Daily loss limit should not exceed {LIVE_MAX_DAILY_LOSS_PCT:g}% for live trading")
        if config.risk.max_position_size > LIVE_MAX_POSITION_SIZE_LOTS:
            errors.append(f"Position size should not exceed {LIVE_MAX_POSITION_SIZE_LOTS:g} lot for live trading")

    return errors


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        ConfigurationError: missing file, malformed YAML or non-mapping root
    """
    if not file_path.exists():
        raise ConfigurationError([f"Config file not found: {file_path}"])

    with open(file_path, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError([_format_yaml_error(file_path, e)]) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError([f"{file_path}: top level must be a mapping"])
    return data


_ENV_REF = re.compile(r"\$\{([^}]+)\}")


def _expand_env(value: Any) -> Any:
    """Expand ${VAR} references; unset variables become empty strings."""
    if isinstance(value, str) and "${" in value:
        return _ENV_REF.sub(lambda m: os.getenv(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _validation_messages(error: ValidationError, prefix: tuple = ()) -> List[str]:
    messages = []
    for item in error.errors():
        field = " -> ".join(str(loc) for loc in prefix + tuple(item["loc"]))
        messages.append(f"{field}: {item['msg']}")
    return messages


def parse_config(raw: Optional[Dict[str, Any]]) -> BotConfig:
    """
    Build a BotConfig from a raw mapping.

    ``${VAR}`` references are expanded and missing credentials fall back to
    ``OANDA_API_KEY`` / ``OANDA_ACCOUNT_ID``.
    """
    data = _expand_env(dict(raw or {}))
    broker = dict(data.get("broker") or {})
    if not broker.get("api_key"):
        broker["api_key"] = os.getenv("OANDA_API_KEY", "")
    if not broker.get("account_id"):
        broker["account_id"] = os.getenv("OANDA_ACCOUNT_ID", "")
    data["broker"] = broker

    try:
        return BotConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(_validation_messages(e)) from e


def with_interval(config: BotConfig, interval_seconds: float) -> BotConfig:
    """Copy of ``config`` with a new cycle interval, checked by the schema."""
    try:
        loop = LoopConfig(**{**config.loop.model_dump(), "interval_seconds": interval_seconds})
    except ValidationError as e:
        raise ConfigurationError(_validation_messages(e, prefix=("loop",))) from e
    return config.model_copy(update={"loop": loop})


def load_config(path: Union[str, Path]) -> BotConfig:
    """Load and schema-check a config file."""
    file_path = Path(path)
    config = parse_config(load_yaml_file(file_path))
    logger.info(
        f"Loaded config {file_path} (environment={config.environment.value}, "
        f"instrument={config.broker.instrument})"
    )
    return config


def validate_config_file(path: Union[str, Path]) -> List[str]:
    """
    Validate a config file end to end.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Safety limits (only if the schema passed)

    Returns:
        List of all error messages (empty if valid)
    """
    try:
        config = load_config(path)
    except ConfigurationError as e:
        return list(e.errors)

    errors = validate_safety_limits(config)
    if not errors:
        logger.info(f"Config {path} validated successfully")
    else:
        logger.error(f"{len(errors)} validation error(s) found in {path}")
    return errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_path = sys.argv[1] if len(sys.argv) > 1 else "config/demo.yaml"

    errors = validate_config_file(config_path)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    else:
        print("\nConfiguration is valid.\n")
        sys.exit(0)
