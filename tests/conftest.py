"""
Pytest configuration for the runner updater tests.
"""

import os

import pytest

from runner_updater.config import DEFAULT_ENV_PREFIX

pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: runs real updater components against a temporary runner "
        "installation (deselect with '-m \"not integration\"')",
    )


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the host's RUNNER_UPDATER_* variables out of configuration tests."""
    for key in list(os.environ):
        if key.startswith(DEFAULT_ENV_PREFIX):
            monkeypatch.delenv(key)
