"""
Pytest configuration and fixtures for cycle investor tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
from pathlib import Path

import pytest
import yaml

from core.config import InvestConfig
from infra.metrics import MetricsRecorder

REPO_CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def config():
    """Default investment options (simulated, TP 10%, SL 5%, fee 0.1%)."""
    return InvestConfig()


def write_configs(directory: Path, app: dict, policy: dict) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "app.yaml").write_text(yaml.safe_dump(app))
    (directory / "policy.yaml").write_text(yaml.safe_dump(policy))
    return directory


@pytest.fixture
def app_config(tmp_path):
    """Shipped app.yaml with state and log files redirected into tmp_path."""
    app = yaml.safe_load((REPO_CONFIG_DIR / "app.yaml").read_text())
    app["logging"]["file"] = str(tmp_path / "logs" / "test.log")
    app["state"] = {
        "cycles_file": str(tmp_path / "data" / "cycles.json"),
        "positions_file": str(tmp_path / "data" / "positions.json"),
        "calibration_file": str(tmp_path / "data" / "calibration.json"),
    }
    return app


@pytest.fixture
def policy_config():
    return yaml.safe_load((REPO_CONFIG_DIR / "policy.yaml").read_text())


@pytest.fixture
def config_dir(tmp_path, app_config, policy_config):
    return write_configs(tmp_path / "config", app_config, policy_config)
