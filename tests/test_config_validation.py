"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
import copy
from pathlib import Path

import pytest
import yaml

from tools.config_validator import (
    AppSchema,
    DefenseSchema,
    load_yaml_file,
    validate_all_configs,
    validate_sanity_checks,
)
from pydantic import ValidationError
from tests.helpers import APP_CONFIG, DEFENSE_CONFIG, defense_config, write_configs

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


class TestSchemas:
    def test_valid_configs(self):
        AppSchema(**APP_CONFIG)
        DefenseSchema(**DEFENSE_CONFIG)

    def test_shipped_configs_are_valid(self):
        """The config/ directory in the repo must always validate"""
        assert validate_all_configs(str(REPO_CONFIG)) == []

    def test_inverted_range(self):
        cfg = defense_config(ranges={"core": {"tick_lower": 100, "tick_upper": -100},
                                     "buffer": {"tick_lower": -400, "tick_upper": -100}})
        with pytest.raises(ValidationError):
            DefenseSchema(**cfg)

    def test_thresholds_need_gap(self):
        with pytest.raises(ValidationError):
            DefenseSchema(**defense_config(thresholds={"escalate": -30, "deescalate": -30}))

    def test_same_currency(self):
        with pytest.raises(ValidationError):
            DefenseSchema(**defense_config(pool={"currency1": DEFENSE_CONFIG["pool"]["currency0"]}))

    def test_unknown_fee_curve_regime(self):
        curves = copy.deepcopy(DEFENSE_CONFIG["fee_curves"])
        curves["panic"] = curves["normal"]
        with pytest.raises(ValidationError):
            DefenseSchema(**defense_config(fee_curves=curves))

    def test_normal_curve_required(self):
        cfg = copy.deepcopy(DEFENSE_CONFIG)
        cfg["fee_curves"] = {"defend": cfg["fee_curves"]["normal"]}
        with pytest.raises(ValidationError):
            DefenseSchema(**cfg)

    def test_unknown_pool_operation(self):
        with pytest.raises(ValidationError):
            DefenseSchema(**defense_config(vault={"allowed_operations": ["mint", "delegatecall"]}))

    def test_negative_cooldown(self):
        with pytest.raises(ValidationError):
            DefenseSchema(**defense_config(cooldown_seconds=-1))

    def test_invalid_mode(self):
        app = copy.deepcopy(APP_CONFIG)
        app["app"]["mode"] = "YOLO"
        with pytest.raises(ValidationError):
            AppSchema(**app)


class TestSanityChecks:
    def _errors(self, tmp_path, app=None, defense=None):
        return validate_sanity_checks(write_configs(tmp_path, app=app, defense=defense))

    def test_clean(self, tmp_path):
        assert self._errors(tmp_path) == []

    def test_overlapping_ranges(self, tmp_path):
        cfg = defense_config(ranges={"core": {"tick_lower": -100, "tick_upper": 100},
                                     "buffer": {"tick_lower": -400, "tick_upper": -50}})
        errors = self._errors(tmp_path, defense=cfg)
        assert any("overlaps" in e for e in errors)

    def test_off_grid_range(self, tmp_path):
        cfg = defense_config(ranges={"core": {"tick_lower": -105, "tick_upper": 100},
                                     "buffer": {"tick_lower": -400, "tick_upper": -110}})
        errors = self._errors(tmp_path, defense=cfg)
        assert any("tick spacing" in e for e in errors)

    def test_deescalate_outside_core(self, tmp_path):
        errors = self._errors(tmp_path, defense=defense_config(thresholds={"escalate": -300, "deescalate": -200}))
        assert any("deescalate" in e for e in errors)

    def test_keeper_without_role(self, tmp_path):
        app = copy.deepcopy(APP_CONFIG)
        app["keeper"]["address"] = "0xnobody"
        errors = self._errors(tmp_path, app=app)
        assert any("keeper.address" in e for e in errors)

    def test_paper_core_exceeds_funding(self, tmp_path):
        errors = self._errors(tmp_path, defense=defense_config(paper={"core_amount0": 2_000_000_000}))
        assert any("core_amount0" in e for e in errors)

    def test_alerts_without_webhook(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)
        app = copy.deepcopy(APP_CONFIG)
        app["monitoring"]["alerts_enabled"] = True
        errors = self._errors(tmp_path, app=app)
        assert any("alert_webhook_url" in e for e in errors)

    def test_alerts_webhook_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ALERT_WEBHOOK_URL", "https://hooks.example/abc")
        app = copy.deepcopy(APP_CONFIG)
        app["monitoring"]["alerts_enabled"] = True
        assert self._errors(tmp_path, app=app) == []

    def test_port_clash(self, tmp_path):
        app = copy.deepcopy(APP_CONFIG)
        app["monitoring"].update({
            "metrics_enabled": True, "metrics_port": 9000,
            "healthcheck_enabled": True, "healthcheck_port": 9000,
        })
        errors = self._errors(tmp_path, app=app)
        assert any("same" in e for e in errors)


class TestLoading:
    def test_missing_file(self, tmp_path):
        (tmp_path / "app.yaml").write_text(yaml.safe_dump(APP_CONFIG))
        errors = validate_all_configs(str(tmp_path))
        assert any("defense.yaml" in e for e in errors)

    def test_malformed_yaml_has_context(self, tmp_path):
        write_configs(tmp_path)
        (tmp_path / "defense.yaml").write_text("pool:\n  currency0: [unclosed\n")
        errors = validate_all_configs(str(tmp_path))
        assert any("Malformed YAML" in e for e in errors)

    def test_empty_file_loads_as_empty_dict(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml_file(path) == {}
