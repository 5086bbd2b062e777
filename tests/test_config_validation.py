"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
import pytest
from pydantic import ValidationError

from core.config import InvestConfig
from tests.conftest import REPO_CONFIG_DIR, write_configs
from tools.config_validator import (
    AppSchema,
    PolicySchema,
    validate_all_configs,
    validate_app,
    validate_policy,
)


class TestShippedConfig:

    def test_repository_config_is_valid(self):
        assert validate_all_configs(str(REPO_CONFIG_DIR)) == []


class TestInvestConfig:
    """Options object defaults and aliases"""

    def test_defaults(self):
        config = InvestConfig()
        assert config.mode == "simulated"
        assert config.cycle_capital == pytest.approx(300.0)
        assert config.fee_for(300.0) == pytest.approx(0.3)

    def test_camel_and_snake_case_keys(self):
        assert InvestConfig.from_mapping({"takeProfitPct": 12}).take_profit_pct == 12
        assert InvestConfig.from_mapping({"take_profit_pct": 12}).take_profit_pct == 12

    def test_to_dict_uses_policy_keys(self):
        assert InvestConfig().to_dict()["capitalPerCycle"] == pytest.approx(0.3)

    @pytest.mark.parametrize("bad", [
        {"mode": "paper"},
        {"capitalPerCycle": 1.5},
        {"stopLossPct": 0},
        {"maxPositions": 0},
        {"minBoostPower": 1.2},
    ])
    def test_rejects_out_of_range(self, bad):
        with pytest.raises(ValidationError):
            InvestConfig.from_mapping(bad)


class TestAppValidation:
    """app.yaml schema"""

    def test_unknown_price_source(self, tmp_path, app_config, policy_config):
        app_config["price_sources"]["order"] = ["coingecko", "kraken"]
        errors = validate_app(write_configs(tmp_path / "cfg", app_config, policy_config))
        assert len(errors) == 1
        assert "kraken" in errors[0]

    def test_duplicate_price_source(self, app_config):
        app_config["price_sources"]["order"] = ["coingecko", "coingecko"]
        with pytest.raises(ValidationError):
            AppSchema.model_validate(app_config)

    def test_missing_state_section(self, tmp_path, app_config, policy_config):
        del app_config["state"]
        errors = validate_app(write_configs(tmp_path / "cfg", app_config, policy_config))
        assert any("state" in e for e in errors)

    def test_missing_file(self, tmp_path):
        errors = validate_app(tmp_path)
        assert errors and "not found" in errors[0]

    def test_malformed_yaml(self, tmp_path):
        (tmp_path / "app.yaml").write_text("app:\n  mode: [simulated\n")
        errors = validate_app(tmp_path)
        assert errors and "Invalid YAML" in errors[0]


class TestPolicyValidation:
    """policy.yaml schema"""

    def test_field_errors_name_the_key(self, tmp_path, app_config, policy_config):
        policy_config["invest"]["feePct"] = -1
        errors = validate_policy(write_configs(tmp_path / "cfg", app_config, policy_config))
        assert any("feePct" in e for e in errors)

    def test_cycle_duration_bounds(self, policy_config):
        policy_config["cycle"]["default_duration_hours"] = 0
        with pytest.raises(ValidationError):
            PolicySchema.model_validate(policy_config)


class TestSanityChecks:
    """Cross-file consistency"""

    def test_mode_mismatch(self, tmp_path, app_config, policy_config):
        app_config["app"]["mode"] = "real"
        errors = validate_all_configs(str(write_configs(tmp_path / "cfg", app_config, policy_config)))
        assert any("Mode mismatch" in e for e in errors)

    def test_exchange_mismatch(self, tmp_path, app_config, policy_config):
        policy_config["invest"]["exchange"] = "kraken"
        errors = validate_all_configs(str(write_configs(tmp_path / "cfg", app_config, policy_config)))
        assert any("Exchange mismatch" in e for e in errors)

    def test_real_mode_needs_credentials(self, tmp_path, app_config, policy_config):
        app_config["app"]["mode"] = "real"
        policy_config["invest"]["mode"] = "real"
        app_config["exchange"]["api_secret_env"] = None
        errors = validate_all_configs(str(write_configs(tmp_path / "cfg", app_config, policy_config)))
        assert any("Real mode requires" in e for e in errors)

    def test_stop_loss_must_be_below_take_profit(self, tmp_path, app_config, policy_config):
        policy_config["invest"]["stopLossPct"] = 12
        errors = validate_all_configs(str(write_configs(tmp_path / "cfg", app_config, policy_config)))
        assert any("stopLossPct" in e for e in errors)

    def test_sanity_checks_skipped_on_schema_errors(self, tmp_path, app_config, policy_config):
        app_config["app"]["mode"] = "paper"
        errors = validate_all_configs(str(write_configs(tmp_path / "cfg", app_config, policy_config)))
        assert not any("Mode mismatch" in e for e in errors)
