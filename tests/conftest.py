"""
Pytest configuration for jit-access tests.

Why: Force AnyIO to use the asyncio backend for the web contract tests and
reset process-wide state (telemetry, web services) between tests.
"""
import os
import sys
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).resolve().parent
REPO_ROOT = TESTS_DIR.parent
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_telemetry():
    from jitaccess import telemetry

    telemetry.reset_for_tests()
    yield
    telemetry.reset_for_tests()


@pytest.fixture(autouse=True)
def _clear_jit_env(monkeypatch: pytest.MonkeyPatch):
    """Start every test from default configuration (dev, memory store)."""
    for name in [n for n in os.environ if n.startswith("JIT_")] + ["DATABASE_URL"]:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_web_services():
    yield
    from jitaccess.web import services

    services.set_services(None)
