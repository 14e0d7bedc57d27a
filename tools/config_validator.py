"""
Configuration Validation Module

Loads bot.yaml and validates it against Pydantic schemas, producing a frozen
BotConfig that every component receives at construction. Invalid configs are
rejected before anything is scheduled.

Usage:
    from tools.config_validator import validate_config

    errors = validate_config("config/bot.yaml")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigurationError
from infra.job_queue import parse_cron

logger = logging.getLogger(__name__)

SUPPORTED_QUOTES = ("USDT", "USDC", "BTC", "CRO")
DEFAULT_IDLE_MESSAGE = "[CHECK] Rebalance not necessary"


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ExchangeConfig(_FrozenModel):
    """crypto.com credentials and order pacing"""
    api_key: str = Field(default="", description="API key (falls back to CRYPTOCOM_API_KEY)")
    api_secret: str = Field(default="", description="API secret (falls back to CRYPTOCOM_API_SECRET)")
    order_delay_seconds: float = Field(default=0.1, ge=0, description="Pause before each order")
    timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP timeout")
    fee_currency: str = Field(default="CRO", description="Coin used to pay fees, re-read before liquidation")

    @field_validator("fee_currency")
    @classmethod
    def upper_fee_currency(cls, v: str) -> str:
        return v.upper()


class ScheduleConfig(_FrozenModel):
    """Cron expressions (5 fields, or 6 with leading seconds)"""
    trailing_stop: str = "30 * * * * *"
    investing: str = "0 3 0 * * *"
    rebalance: str = "0 */5 * * * *"

    @field_validator("trailing_stop", "investing", "rebalance")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        parse_cron(v)
        return v


class RebalanceConfig(_FrozenModel):
    underperformers: bool = Field(default=False, description="Run the underperformer correction phase")


class TrailingStopConfig(_FrozenModel):
    enabled: bool = False
    min_profit: float = Field(default=30.0, ge=1, description="Profit % that arms the stop")
    max_drop: float = Field(default=20.0, ge=1, description="Drop % from the ATH that triggers the stop")
    resume_hours: float = Field(default=72.0, ge=0, description="Hours to wait before trading again")

    @model_validator(mode="after")
    def validate_profit_above_drop(self) -> "TrailingStopConfig":
        if self.min_profit <= self.max_drop:
            raise ValueError(
                f"min_profit ({self.min_profit}) must be larger than max_drop ({self.max_drop})"
            )
        return self


class NotificationPostConfig(_FrozenModel):
    """Per-message-kind switches"""
    invest: bool = True
    rebalance_market_cap: bool = True
    rebalance_overperformers: bool = True
    rebalance_underperformers: bool = True
    armed: bool = True
    trailing_stop: bool = True
    resumed: bool = True


class NotificationsConfig(_FrozenModel):
    enabled: bool = False
    webhook_url: str = ""
    webhook_env: str = "BASKETBOT_WEBHOOK_URL"
    timeout_seconds: float = Field(default=5.0, gt=0)
    dry_run: bool = False
    post: NotificationPostConfig = NotificationPostConfig()


class StateConfig(_FrozenModel):
    data_dir: str = "data"


class LoggingConfig(_FrozenModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = "logs/basketbot.log"


class MetricsConfig(_FrozenModel):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, lt=65536)


class BotConfig(_FrozenModel):
    """Complete bot configuration"""
    exchange: ExchangeConfig = ExchangeConfig()
    schedule: ScheduleConfig = ScheduleConfig()
    quote: str = Field(default="USDT", description="Quote currency of every pair")
    investment: float = Field(default=25.0, gt=0, description="Quote amount invested per cycle")
    top: int = Field(default=50, ge=0, le=250, description="Market-cap universe size (0 = includes only)")
    include: Tuple[str, ...] = ("CRO",)
    exclude: Tuple[str, ...] = ("DOGE", "SHIB")
    threshold: float = Field(default=5.0, ge=1, description="Rebalance deviation threshold %")
    weights: Dict[str, float] = Field(default_factory=dict, description="Per-coin target %")
    removal_hours: float = Field(default=24.0, ge=0, description="Grace period before selling a dropped coin")
    rebalance: RebalanceConfig = RebalanceConfig()
    trailing_stop: TrailingStopConfig = TrailingStopConfig()
    dry_run: bool = False
    idle_message: str = DEFAULT_IDLE_MESSAGE
    notifications: NotificationsConfig = NotificationsConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()
    metrics: MetricsConfig = MetricsConfig()

    @field_validator("quote")
    @classmethod
    def validate_quote(cls, v: str) -> str:
        quote = v.upper()
        if quote not in SUPPORTED_QUOTES:
            raise ValueError(f"quote must be one of {', '.join(SUPPORTED_QUOTES)}, got {v}")
        return quote

    @field_validator("include", "exclude", mode="before")
    @classmethod
    def upper_symbols(cls, v: Any) -> Tuple[str, ...]:
        if v is None:
            return ()
        return tuple(str(symbol).upper() for symbol in v)

    @field_validator("weights", mode="before")
    @classmethod
    def upper_weight_keys(cls, v: Any) -> Dict[str, float]:
        if v is None:
            return {}
        return {str(symbol).upper(): pct for symbol, pct in dict(v).items()}

    @field_validator("weights")
    @classmethod
    def validate_weights(cls, v: Dict[str, float]) -> Dict[str, float]:
        for symbol, pct in v.items():
            if pct <= 0:
                raise ValueError(f"weight for {symbol} must be larger than 0%, got {pct}")
        total = sum(v.values())
        if total > 100:
            raise ValueError(f"sum of weights exceeds 100% ({total})")
        return v

    @model_validator(mode="after")
    def validate_cross_fields(self) -> "BotConfig":
        if self.quote in self.weights:
            raise ValueError(f"weights can not include the quote currency {self.quote}")
        if self.top == 0 and self.include and self.weights:
            unweighted = [symbol for symbol in self.include if symbol not in self.weights]
            if not unweighted and sum(self.weights.values()) < 100:
                raise ValueError(
                    "weights sum below 100% but every included coin is weighted; "
                    "no unweighted coin can receive the remainder"
                )
        return self

    @property
    def data_dir(self) -> Path:
        return Path(self.state.data_dir)


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data or {}


def _apply_env_credentials(raw: Dict[str, Any]) -> Dict[str, Any]:
    exchange = dict(raw.get("exchange") or {})
    if not exchange.get("api_key"):
        exchange["api_key"] = os.getenv("CRYPTOCOM_API_KEY", "")
    if not exchange.get("api_secret"):
        exchange["api_secret"] = os.getenv("CRYPTOCOM_API_SECRET", "")
    return {**raw, "exchange": exchange}


def _format_errors(error: ValidationError, source: str) -> List[str]:
    messages = []
    for item in error.errors():
        field = " -> ".join(str(loc) for loc in item["loc"]) or "<root>"
        messages.append(f"{source}: {field}: {item['msg']}")
    return messages


def build_config(raw: Dict[str, Any], source: str = "bot.yaml") -> BotConfig:
    """
    Validate a raw config mapping.

    Raises:
        ConfigurationError: With one message per violated field
    """
    try:
        return BotConfig(**_apply_env_credentials(raw))
    except ValidationError as e:
        raise ConfigurationError(_format_errors(e, source)) from e


def load_config(path: Union[str, Path]) -> BotConfig:
    """
    Load and validate the bot configuration file.

    Raises:
        ConfigurationError: If the file is missing, malformed or invalid
    """
    config_path = Path(path)
    try:
        raw = load_yaml_file(config_path)
    except FileNotFoundError as e:
        raise ConfigurationError([str(e)]) from e
    except yaml.YAMLError as e:
        raise ConfigurationError([f"{config_path.name}: Invalid YAML - {e}"]) from e

    config = build_config(raw, source=config_path.name)
    logger.info(f"✅ {config_path.name} validation passed")
    return config


def validate_config(path: Union[str, Path]) -> List[str]:
    """Return every configuration error (empty if valid)."""
    try:
        load_config(path)
    except ConfigurationError as e:
        return list(e.errors)
    return []


if __name__ == "__main__":
    import sys

    target = sys.argv[1] if len(sys.argv) > 1 else "config/bot.yaml"
    found = validate_config(target)
    for message in found:
        print(f"ERROR: {message}")
    sys.exit(1 if found else 0)
