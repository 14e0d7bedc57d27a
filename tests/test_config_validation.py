"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
from pathlib import Path

import pytest
import yaml

from core.exceptions import ConfigurationError
from tools.config_validator import (
    BotConfig,
    build_config,
    load_config,
    validate_config,
)

EXAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "config" / "bot.yaml"


@pytest.fixture(autouse=True)
def no_env_credentials(monkeypatch):
    monkeypatch.delenv("CRYPTOCOM_API_KEY", raising=False)
    monkeypatch.delenv("CRYPTOCOM_API_SECRET", raising=False)


def _errors(raw):
    with pytest.raises(ConfigurationError) as excinfo:
        build_config(raw)
    return "\n".join(excinfo.value.errors)


class TestBotConfig:
    """Test bot.yaml schema"""

    def test_defaults_are_valid(self):
        """Empty config falls back to defaults"""
        config = build_config({})
        assert isinstance(config, BotConfig)
        assert config.quote == "USDT"
        assert config.include == ("CRO",)
        assert not config.trailing_stop.enabled
        assert not config.rebalance.underperformers
        assert config.data_dir == Path("data")

    def test_symbols_are_upper_cased(self):
        config = build_config({"quote": "usdc", "include": ["btc"], "exclude": ["doge"], "weights": {"eth": 10}})
        assert config.quote == "USDC"
        assert config.include == ("BTC",)
        assert config.exclude == ("DOGE",)
        assert config.weights == {"ETH": 10}

    def test_config_is_frozen(self):
        config = build_config({})
        with pytest.raises(Exception):
            config.investment = 100

    def test_weights_over_100_rejected(self):
        assert "sum of weights exceeds 100%" in _errors({"weights": {"BTC": 60, "ETH": 50}})

    def test_non_positive_weight_rejected(self):
        assert "must be larger than 0%" in _errors({"weights": {"BTC": 0}})

    def test_weight_on_quote_currency_rejected(self):
        assert "can not include the quote currency" in _errors({"weights": {"USDT": 10}})

    def test_unsupported_quote_rejected(self):
        assert "quote must be one of" in _errors({"quote": "EUR"})

    def test_threshold_below_one_rejected(self):
        errors = _errors({"threshold": 0.5})
        assert "threshold" in errors

    def test_unknown_key_rejected(self):
        assert "typo_key" in _errors({"typo_key": 1})

    def test_unreachable_weight_remainder_rejected(self):
        errors = _errors({"top": 0, "include": ["BTC", "ETH"], "weights": {"BTC": 50, "ETH": 20}})
        assert "no unweighted coin" in errors

    def test_error_count_in_message(self):
        with pytest.raises(ConfigurationError) as excinfo:
            build_config({"quote": "EUR", "investment": -1})
        assert "2 error(s)" in str(excinfo.value)


class TestTrailingStopConfig:
    def test_min_profit_must_exceed_max_drop(self):
        errors = _errors({"trailing_stop": {"enabled": True, "min_profit": 20, "max_drop": 20}})
        assert "must be larger than max_drop" in errors

    def test_values_below_one_rejected(self):
        assert "max_drop" in _errors({"trailing_stop": {"max_drop": 0.5}})


class TestScheduleConfig:
    @pytest.mark.parametrize("expression", ["*/5 * * * *", "30 * * * * *", "0 3 0 * * *"])
    def test_valid_cron(self, expression):
        config = build_config({"schedule": {"rebalance": expression}})
        assert config.schedule.rebalance == expression

    @pytest.mark.parametrize("expression", ["* * *", "61 * * * * *", "not a cron"])
    def test_invalid_cron_rejected(self, expression):
        assert "schedule -> rebalance" in _errors({"schedule": {"rebalance": expression}})


class TestCredentials:
    def test_env_credentials_fill_empty_fields(self, monkeypatch):
        monkeypatch.setenv("CRYPTOCOM_API_KEY", "env-key")
        monkeypatch.setenv("CRYPTOCOM_API_SECRET", "env-secret")

        config = build_config({"exchange": {"api_key": ""}})

        assert config.exchange.api_key == "env-key"
        assert config.exchange.api_secret == "env-secret"

    def test_file_credentials_win(self, monkeypatch):
        monkeypatch.setenv("CRYPTOCOM_API_KEY", "env-key")
        config = build_config({"exchange": {"api_key": "file-key"}})
        assert config.exchange.api_key == "file-key"


class TestLoadConfig:
    def test_example_config_is_valid(self):
        assert validate_config(EXAMPLE_CONFIG) == []

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "bot.yaml"
        path.write_text(yaml.safe_dump({"investment": 40, "weights": {"BTC": 30}}))

        config = load_config(path)

        assert config.investment == 40
        assert config.weights == {"BTC": 30}

    def test_missing_file(self, tmp_path):
        errors = validate_config(tmp_path / "missing.yaml")
        assert len(errors) == 1
        assert "not found" in errors[0]

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bot.yaml"
        path.write_text("weights: [unclosed")
        errors = validate_config(path)
        assert errors and "Invalid YAML" in errors[0]

    def test_errors_name_the_file_and_field(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.safe_dump({"investment": 0}))

        errors = validate_config(path)

        assert errors[0].startswith("custom.yaml: investment:")
