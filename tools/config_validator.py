"""
Configuration Validation Module

Validates app.yaml against Pydantic schemas and runs cross-field sanity
checks so the resilience layer never starts with contradictory settings.

Usage:
    from tools.config_validator import validate_config

    errors = validate_config("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

CONFIG_FILE = "app.yaml"


# ===== App Schema =====
class LoggingConfig(BaseModel):
    """Root logger settings"""
    level: str = Field(default="INFO", description="Root log level")
    file: Optional[str] = Field(default="logs/resilience.log", description="Log file (null disables file logging)")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level {v}")
        return level


class RetryConfig(BaseModel):
    """Exponential backoff table"""
    delays_seconds: List[float] = Field(default_factory=lambda: [2, 4, 8, 16, 32], min_length=1)
    max_attempts: int = Field(default=5, ge=1)

    @field_validator("delays_seconds")
    @classmethod
    def validate_delays(cls, v: List[float]) -> List[float]:
        if any(d <= 0 for d in v):
            raise ValueError("Backoff delays must be positive")
        if any(b < a for a, b in zip(v, v[1:])):
            raise ValueError("Backoff delays must be non-decreasing")
        return v


class NetworkHealthConfig(BaseModel):
    """Connectivity badge thresholds"""
    yellow_after_seconds: float = Field(default=30, gt=0)
    red_after_seconds: float = Field(default=60, gt=0)


class CandidateErrorsConfig(BaseModel):
    """Per-symbol blacklisting and health bands"""
    blacklist_threshold: int = Field(default=5, ge=1, description="Consecutive errors before blacklisting")
    blacklist_minutes: float = Field(default=30, gt=0, description="Blacklist cooldown")
    critical_success_rate: float = Field(default=0.6, ge=0, le=1)
    degraded_success_rate: float = Field(default=0.8, ge=0, le=1)
    degraded_blacklist_count: int = Field(default=5, ge=0, description="Blacklists above this count degrade health")


class ReadinessConfig(BaseModel):
    """Portfolio snapshot freshness"""
    snapshot_ttl_ms: int = Field(default=60_000, gt=0)
    refresh_margin_ms: int = Field(default=10_000, ge=0)
    tick_seconds: float = Field(default=5, gt=0, description="Host periodic refresh interval")


class ExitMonitorConfig(BaseModel):
    """Recurring exit screening"""
    enabled: bool = Field(default=True)
    interval_seconds: float = Field(default=300, gt=0)


class ScreeningConfig(BaseModel):
    """Screening pipeline admission"""
    base_concurrency: int = Field(default=4, ge=1)
    pause_on_critical: bool = Field(default=False)


class ProbeConfig(BaseModel):
    """Exchange proxy timestamp probe"""
    url: str = Field(default="http://localhost:8080/api/v3/brokerage/time", min_length=1)
    timeout_seconds: float = Field(default=5.0, gt=0)


class EndpointsConfig(BaseModel):
    """Upstream services the runtime calls"""
    portfolio_url: str = Field(default="http://localhost:8080/api/portfolio", min_length=1)
    signal_url: str = Field(default="http://localhost:8080/api/signals/detailed", min_length=1)
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-call timeout for portfolio and signal requests")


class HealthServerConfig(BaseModel):
    """JSON health endpoint"""
    enabled: bool = Field(default=True)
    port: int = Field(default=8090, ge=0, le=65535)
    poll_interval_seconds: float = Field(default=30, gt=0, description="UI badge poll interval")


class MetricsConfig(BaseModel):
    """Prometheus exporter"""
    enabled: bool = Field(default=False)
    port: int = Field(default=9100, ge=0, le=65535)


class StateConfig(BaseModel):
    """Persisted simulation state"""
    simulation_file: str = Field(default="data/simulation_state.json", min_length=1)


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    network_health: NetworkHealthConfig = Field(default_factory=NetworkHealthConfig)
    candidate_errors: CandidateErrorsConfig = Field(default_factory=CandidateErrorsConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)
    exit_monitor: ExitMonitorConfig = Field(default_factory=ExitMonitorConfig)
    screening: ScreeningConfig = Field(default_factory=ScreeningConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    endpoints: EndpointsConfig = Field(default_factory=EndpointsConfig)
    health_server: HealthServerConfig = Field(default_factory=HealthServerConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    state: StateConfig = Field(default_factory=StateConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def validate_sanity_checks(config: AppSchema) -> List[str]:
    """Cross-field consistency checks that a per-field schema cannot express."""
    errors = []

    if config.network_health.red_after_seconds <= config.network_health.yellow_after_seconds:
        errors.append(
            f"network_health: red_after_seconds ({config.network_health.red_after_seconds}) must exceed "
            f"yellow_after_seconds ({config.network_health.yellow_after_seconds})"
        )

    if config.candidate_errors.critical_success_rate > config.candidate_errors.degraded_success_rate:
        errors.append(
            f"candidate_errors: critical_success_rate ({config.candidate_errors.critical_success_rate}) "
            f"must not exceed degraded_success_rate ({config.candidate_errors.degraded_success_rate})"
        )

    if config.readiness.refresh_margin_ms >= config.readiness.snapshot_ttl_ms:
        errors.append(
            f"readiness: refresh_margin_ms ({config.readiness.refresh_margin_ms}) must be below "
            f"snapshot_ttl_ms ({config.readiness.snapshot_ttl_ms})"
        )

    if config.readiness.tick_seconds * 1000 >= config.readiness.snapshot_ttl_ms:
        errors.append("readiness: tick_seconds is longer than the snapshot TTL; staleness would go unnoticed")

    if config.health_server.enabled and config.metrics.enabled and config.health_server.port == config.metrics.port != 0:
        errors.append(f"health_server and metrics both bind port {config.metrics.port}")

    return errors


def _schema_errors(e: ValidationError) -> List[str]:
    errors = []
    for error in e.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append(f"{CONFIG_FILE}: {field}: {error['msg']}")
    return errors


def validate_config(config_dir: Union[str, Path] = "config") -> List[str]:
    """
    Validate app.yaml: schema first, then sanity checks.

    Returns:
        List of error messages (empty if valid)
    """
    config_path = Path(config_dir) / CONFIG_FILE

    try:
        config = AppSchema(**load_yaml_file(config_path))
    except FileNotFoundError as e:
        return [f"{CONFIG_FILE}: {e}"]
    except yaml.YAMLError as e:
        return [f"{CONFIG_FILE}: Invalid YAML - {e}"]
    except ValidationError as e:
        errors = _schema_errors(e)
        logger.error(f"❌ {len(errors)} validation error(s) found")
        return errors

    errors = validate_sanity_checks(config)
    if not errors:
        logger.info(f"✅ {CONFIG_FILE} validation passed")
    else:
        logger.error(f"❌ {len(errors)} validation error(s) found")
    return errors


def load_config(config_dir: Union[str, Path] = "config") -> AppSchema:
    """
    Load and validate app.yaml.

    A missing file yields the built-in defaults.

    Raises:
        ValueError: If the file is malformed or fails validation
    """
    config_path = Path(config_dir) / CONFIG_FILE
    if not config_path.exists():
        logger.warning(f"{config_path} not found, using defaults")
        return AppSchema()

    try:
        config = AppSchema(**load_yaml_file(config_path))
    except yaml.YAMLError as e:
        raise ValueError(f"{CONFIG_FILE}: Invalid YAML - {e}") from e
    except ValidationError as e:
        raise ValueError("; ".join(_schema_errors(e))) from e

    errors = validate_sanity_checks(config)
    if errors:
        raise ValueError("; ".join(errors))
    return config


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_config(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ Configuration is valid!\n")
        sys.exit(0)
