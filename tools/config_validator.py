"""
Config validation for the cycle investor.

app.yaml (process wiring: logging, state files, price sources, exchange)
and policy.yaml (the ``invest`` options and cycle defaults) are checked
against Pydantic schemas, then against each other. CycleInvestLoop runs
this before it touches any state.

    python -m tools.config_validator [config_dir]
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.config import InvestConfig
from core.price_sources import SOURCE_TYPES

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    """Top-level application settings"""
    name: str = Field(default="cycle-investor", min_length=1)
    mode: str = Field(pattern="^(simulated|real)$", description="Execution mode")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Log level")
    file: str = Field(default="logs/cycle-investor.log", min_length=1)

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level {v}")
        return v.upper()


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)


class StateConfig(BaseModel):
    cycles_file: str = Field(min_length=1)
    positions_file: str = Field(min_length=1)
    calibration_file: str = Field(min_length=1)


class LoopConfig(BaseModel):
    interval_seconds: float = Field(default=60, ge=1, description="Seconds between loop runs")


class ExchangeConfig(BaseModel):
    name: str = Field(min_length=1)
    api_key_env: Optional[str] = None
    api_secret_env: Optional[str] = None


class PriceSourcesConfig(BaseModel):
    order: List[str] = Field(min_length=1, description="Source cascade, tried in order")
    timeout_seconds: float = Field(default=8, gt=0, le=30)
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: float = Field(default=5, ge=0)
    api_key_env: Dict[str, str] = Field(default_factory=dict)

    @field_validator('order')
    @classmethod
    def validate_sources(cls, v: List[str]) -> List[str]:
        unknown = [name for name in v if name not in SOURCE_TYPES]
        if unknown:
            raise ValueError(f"Unknown price sources {unknown}; expected some of {sorted(SOURCE_TYPES)}")
        if len(set(v)) != len(v):
            raise ValueError("Price sources must not repeat")
        return v


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    state: StateConfig
    loop: LoopConfig = Field(default_factory=LoopConfig)
    exchange: ExchangeConfig
    price_sources: PriceSourcesConfig


# ===== Policy Schema =====
class CycleConfig(BaseModel):
    default_duration_hours: float = Field(default=12, gt=0, le=72)


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    invest: InvestConfig
    cycle: CycleConfig = Field(default_factory=CycleConfig)


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
    raw_lines = file_path.read_text().splitlines()
    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'>' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}" for idx in range(start, end)
    )
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema.model_validate(config)
        logger.info(f"{filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Cross-file consistency checks, run only after schema validation passed.

    - app.mode and invest.mode must agree
    - app exchange and invest exchange must agree
    - real mode needs credential env var names
    - stop loss must be tighter than take profit
    """
    errors = []
    app = AppSchema.model_validate(load_yaml_file(config_dir / "app.yaml"))
    policy = PolicySchema.model_validate(load_yaml_file(config_dir / "policy.yaml"))
    invest = policy.invest

    if app.app.mode != invest.mode:
        errors.append(f"Mode mismatch: app.yaml mode={app.app.mode}, policy.yaml invest.mode={invest.mode}")
    if app.exchange.name.lower() != invest.exchange:
        errors.append(
            f"Exchange mismatch: app.yaml exchange={app.exchange.name}, policy.yaml invest.exchange={invest.exchange}"
        )
    if invest.mode == "real" and not (app.exchange.api_key_env and app.exchange.api_secret_env):
        errors.append("Real mode requires exchange.api_key_env and exchange.api_secret_env in app.yaml")
    if invest.stop_loss_pct >= invest.take_profit_pct:
        errors.append(
            f"stopLossPct ({invest.stop_loss_pct}) should be below takeProfitPct ({invest.take_profit_pct})"
        )
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Schema-check app.yaml and policy.yaml, then cross-check them.

    Cross-file checks only run once both files parse, so their messages
    never pile on top of a schema error.

    Returns:
        Error strings prefixed with the offending file; empty when valid
    """
    config_path = Path(config_dir)

    errors = validate_app(config_path) + validate_policy(config_path)
    if errors:
        logger.error(f"{len(errors)} config error(s) in {config_path}")
        return errors

    errors = validate_sanity_checks(config_path)
    if errors:
        logger.error(f"{len(errors)} cross-file config error(s) in {config_path}")
    else:
        logger.info(f"Config in {config_path} is valid")
    return errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    problems = validate_all_configs(sys.argv[1] if len(sys.argv) > 1 else "config")
    for problem in problems:
        print(f"  - {problem}")
    sys.exit(1 if problems else 0)
