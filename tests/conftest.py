"""
Pytest configuration for safelog tests.

Isolates every test from the host environment: secrets, runtime
environment and logger overrides are all controlled by the test.
"""

import io
import os

import pytest

from safelog.core.constants import DEFAULT_SENSITIVE_KEYS
from safelog.core.logger import make_logger
from safelog.utils.sanitize import is_sensitive_key


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    """Drop host secrets and logger settings so only test values are seen."""
    for name in list(os.environ):
        if is_sensitive_key(name, DEFAULT_SENSITIVE_KEYS):
            monkeypatch.delenv(name, raising=False)
    for name in ("APP_ENV", "LOGGER_LEVEL", "LOGGER_APP_NAME"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOGGER_ERROR_PATH", str(tmp_path / "logs" / "error.log"))


@pytest.fixture
def stream():
    """In-memory sink collecting rendered lines."""
    return io.StringIO()


@pytest.fixture
def logger_factory():
    """Build loggers that are closed (sinks removed, hooks restored) after the test."""
    handles = []

    def _make(*args, **kwargs):
        handle = make_logger(*args, **kwargs)
        handles.append(handle)
        return handle

    yield _make

    for handle in handles:
        handle.close()
