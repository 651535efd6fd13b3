"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from tools.config_validator import (
    AppSchema,
    RetryConfig,
    load_config,
    validate_config,
    validate_sanity_checks,
)

REPO_CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


def _write(config_dir: Path, data) -> Path:
    path = config_dir / "app.yaml"
    path.write_text(yaml.safe_dump(data) if not isinstance(data, str) else data)
    return config_dir


class TestSchema:
    """Test app.yaml schema validation"""

    def test_defaults(self):
        config = AppSchema()
        assert config.retry.delays_seconds == [2, 4, 8, 16, 32]
        assert config.retry.max_attempts == 5
        assert config.network_health.yellow_after_seconds == 30
        assert config.network_health.red_after_seconds == 60
        assert config.candidate_errors.blacklist_threshold == 5
        assert config.readiness.snapshot_ttl_ms == 60_000
        assert config.exit_monitor.interval_seconds == 300
        assert not config.metrics.enabled

    def test_repo_config_is_valid(self):
        """Shipped config/app.yaml passes validation"""
        assert validate_config(REPO_CONFIG_DIR) == []

    def test_level_normalized(self):
        assert AppSchema(logging={"level": "debug"}).logging.level == "DEBUG"

    def test_unknown_level_rejected(self):
        with pytest.raises(ValidationError):
            AppSchema(logging={"level": "chatty"})

    def test_descending_delays_rejected(self):
        with pytest.raises(ValidationError):
            RetryConfig(delays_seconds=[4, 2])

    def test_empty_delays_rejected(self):
        with pytest.raises(ValidationError):
            RetryConfig(delays_seconds=[])

    def test_non_positive_delay_rejected(self):
        with pytest.raises(ValidationError):
            RetryConfig(delays_seconds=[0, 2])

    def test_success_rate_bounds(self):
        with pytest.raises(ValidationError):
            AppSchema(candidate_errors={"critical_success_rate": 1.5})


class TestSanityChecks:
    """Cross-field consistency"""

    def test_defaults_pass(self):
        assert validate_sanity_checks(AppSchema()) == []

    def test_red_must_exceed_yellow(self):
        config = AppSchema(network_health={"yellow_after_seconds": 60, "red_after_seconds": 30})
        errors = validate_sanity_checks(config)
        assert len(errors) == 1
        assert "red_after_seconds" in errors[0]

    def test_critical_above_degraded(self):
        config = AppSchema(candidate_errors={"critical_success_rate": 0.9, "degraded_success_rate": 0.8})
        assert any("critical_success_rate" in e for e in validate_sanity_checks(config))

    def test_margin_must_be_below_ttl(self):
        config = AppSchema(readiness={"snapshot_ttl_ms": 10_000, "refresh_margin_ms": 10_000, "tick_seconds": 1})
        assert any("refresh_margin_ms" in e for e in validate_sanity_checks(config))

    def test_tick_longer_than_ttl(self):
        config = AppSchema(readiness={"tick_seconds": 120})
        assert any("tick_seconds" in e for e in validate_sanity_checks(config))

    def test_port_clash(self):
        config = AppSchema(health_server={"port": 9100}, metrics={"enabled": True, "port": 9100})
        assert any("both bind port" in e for e in validate_sanity_checks(config))

    def test_port_clash_ignored_when_metrics_disabled(self):
        config = AppSchema(health_server={"port": 9100}, metrics={"enabled": False, "port": 9100})
        assert validate_sanity_checks(config) == []


class TestValidateConfig:
    def test_missing_file(self, tmp_path):
        errors = validate_config(tmp_path)
        assert len(errors) == 1
        assert "not found" in errors[0]

    def test_malformed_yaml(self, tmp_path):
        _write(tmp_path, "retry: [unclosed\n")
        errors = validate_config(tmp_path)
        assert len(errors) == 1
        assert "Invalid YAML" in errors[0]

    def test_schema_errors_are_prefixed(self, tmp_path):
        _write(tmp_path, {"retry": {"max_attempts": 0}})
        errors = validate_config(tmp_path)
        assert errors
        assert errors[0].startswith("app.yaml: retry -> max_attempts")

    def test_sanity_errors_reported(self, tmp_path):
        _write(tmp_path, {"network_health": {"yellow_after_seconds": 90}})
        errors = validate_config(tmp_path)
        assert len(errors) == 1

    def test_empty_file_uses_defaults(self, tmp_path):
        _write(tmp_path, "")
        assert validate_config(tmp_path) == []


class TestLoadConfig:
    def test_missing_file_yields_defaults(self, tmp_path):
        assert load_config(tmp_path) == AppSchema()

    def test_partial_file_merges_with_defaults(self, tmp_path):
        _write(tmp_path, {"exit_monitor": {"interval_seconds": 60}})
        config = load_config(tmp_path)

        assert config.exit_monitor.interval_seconds == 60
        assert config.retry.max_attempts == 5

    def test_invalid_schema_raises(self, tmp_path):
        _write(tmp_path, {"retry": {"delays_seconds": [8, 4]}})
        with pytest.raises(ValueError, match="delays_seconds"):
            load_config(tmp_path)

    def test_sanity_failure_raises(self, tmp_path):
        _write(tmp_path, {"readiness": {"tick_seconds": 600}})
        with pytest.raises(ValueError, match="tick_seconds"):
            load_config(tmp_path)

    def test_malformed_yaml_raises(self, tmp_path):
        _write(tmp_path, "logging: {level: INFO\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config(tmp_path)
