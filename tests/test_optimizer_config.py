"""
Tests for runtime configuration (src/optimizer_config.py)
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from optimizer_config import OptimizerConfig
from route_exceptions import ConfigurationError, ErrorCategory


class TestDefaults:
    def test_defaults(self):
        config = OptimizerConfig()

        assert config.fee_percent == 2
        assert config.max_items == 50
        assert config.request_timeout_seconds == 86400
        assert config.processing_timeout_seconds == 3600
        assert (config.multiplier_min, config.multiplier_max, config.noise_bound) == (1000, 9999, 100)
        assert config.sweep_interval_seconds == 0

    def test_defaults_validate(self):
        config = OptimizerConfig()
        assert config.validate() is config


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("SHIELDROUTE_MIN_STAKE", "100")
        monkeypatch.setenv("SHIELDROUTE_FEE_PERCENT", "5")
        monkeypatch.setenv("SHIELDROUTE_MAX_ITEMS", "10")
        monkeypatch.setenv("SHIELDROUTE_REQUEST_TIMEOUT", "600")
        monkeypatch.setenv("SHIELDROUTE_PROCESSING_TIMEOUT", "60")
        monkeypatch.setenv("SHIELDROUTE_OWNER", "0xboss")
        monkeypatch.setenv("SHIELDROUTE_OPERATORS", "0xop1, 0xop2,")
        monkeypatch.setenv("SHIELDROUTE_PAUSERS", "0xguard")
        monkeypatch.setenv("SHIELDROUTE_SWEEP_INTERVAL", "30")

        config = OptimizerConfig.from_env()

        assert config.min_stake == 100
        assert config.fee_percent == 5
        assert config.max_items == 10
        assert config.request_timeout_seconds == 600
        assert config.processing_timeout_seconds == 60
        assert config.owner == "0xboss"
        assert config.operators == ["0xop1", "0xop2"]
        assert config.pausers == ["0xguard"]
        assert config.sweep_interval_seconds == 30

    def test_empty_lists(self, monkeypatch):
        monkeypatch.delenv("SHIELDROUTE_OPERATORS", raising=False)
        monkeypatch.delenv("SHIELDROUTE_PAUSERS", raising=False)

        config = OptimizerConfig.from_env()
        assert config.operators == []
        assert config.pausers == []


class TestValidate:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"fee_percent": 101},
            {"fee_percent": -1},
            {"max_items": 0},
            {"max_items": 256},
            {"min_stake": -1},
            {"request_timeout_seconds": 0},
            {"processing_timeout_seconds": -5},
            {"multiplier_min": 10, "multiplier_max": 10},
            {"noise_bound": 0},
            {"sweep_interval_seconds": -1},
            {"owner": ""},
        ],
    )
    def test_rejects_out_of_range(self, overrides):
        with pytest.raises(ConfigurationError) as exc_info:
            OptimizerConfig(**overrides).validate()

        assert exc_info.value.category == ErrorCategory.CONFIGURATION
        assert len(exc_info.value.context.details["problems"]) == 1

    def test_reports_every_problem(self):
        with pytest.raises(ConfigurationError) as exc_info:
            OptimizerConfig(fee_percent=200, max_items=0, noise_bound=0).validate()
        assert len(exc_info.value.context.details["problems"]) == 3

    def test_to_dict_omits_principals(self):
        data = OptimizerConfig(owner="0xboss", operators=["0xop"]).to_dict()

        assert data["multiplier_range"] == [1000, 9999]
        assert "owner" not in data
        assert "operators" not in data
