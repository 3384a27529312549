"""
Shared test fixtures for collector tests.

Provides environment variable isolation for CollectorSettings tests and a
ready-made settings object for service tests.

CHANGELOG:
- 2026-10-12: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

from pathlib import Path

import pytest
from collector.src.config import CollectorSettings

# All CollectorSettings environment variable names, used for cleanup.
_ALL_COLLECTOR_ENV_VARS = (
    "COLLECTOR_ID",
    "COLLECTOR_NAME",
    "COLLECTOR_DESCRIPTION",
    "COLLECTOR_LOCATION",
    "SERIAL_PORT",
    "BAUD_RATE",
    "DEVICE_ADDRESS",
    "SERIAL_TIMEOUT_S",
    "SAMPLE_INTERVAL_S",
    "SERVER_BASE_URL",
    "API_PREFIX",
    "SERVER_TIMEOUT_S",
    "AUTH_TOKEN",
    "REGISTRATION_CODE",
    "CACHE_DB_PATH",
    "BATCH_SIZE",
    "UPLOAD_INTERVAL_S",
    "AUTO_UPLOAD",
    "MAX_CACHE_SIZE",
    "HEALTH_PATH",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_collector_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all collector env vars and isolate from .env files before each test."""
    for var in _ALL_COLLECTOR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set every CollectorSettings environment variable."""
    env = {
        "COLLECTOR_ID": "collector-test",
        "COLLECTOR_NAME": "Test Collector",
        "COLLECTOR_DESCRIPTION": "Test Description",
        "COLLECTOR_LOCATION": "Test Location",
        "SERIAL_PORT": "/dev/ttyUSB1",
        "BAUD_RATE": "9600",
        "DEVICE_ADDRESS": "2",
        "SERIAL_TIMEOUT_S": "2",
        "SAMPLE_INTERVAL_S": "15",
        "SERVER_BASE_URL": "http://localhost:8080",
        "API_PREFIX": "/api",
        "SERVER_TIMEOUT_S": "20",
        "AUTH_TOKEN": "test-token",
        "REGISTRATION_CODE": "REG-TEST-001",
        "CACHE_DB_PATH": "/tmp/test_cache.db",
        "BATCH_SIZE": "50",
        "UPLOAD_INTERVAL_S": "30",
        "AUTO_UPLOAD": "false",
        "MAX_CACHE_SIZE": "1000",
        "HEALTH_PATH": "",
        "LOG_LEVEL": "DEBUG",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def settings(tmp_path: Path) -> CollectorSettings:
    """Registered collector settings pointing at temporary paths."""
    return CollectorSettings(
        collector_id="collector-1",
        auth_token="tok-123",
        server_base_url="http://power.example.com",
        cache_db_path=str(tmp_path / "cache.db"),
        health_path="",
        sample_interval_s=10,
        upload_interval_s=60,
        batch_size=50,
    )
