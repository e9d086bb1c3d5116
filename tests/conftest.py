"""
Pytest configuration and fixtures.

This file provides pytest-specific configuration and fixtures.
For standard test utilities, see tests/__init__.py
"""

import pytest


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "db: marks tests as requiring a SQL database (deselect with '-m \"not db\"')"
    )


@pytest.fixture(autouse=True)
def no_dry_run_env(monkeypatch):
    """Keep NOTIFICATION_DRY_RUN from the developer's shell out of tests."""
    monkeypatch.delenv("NOTIFICATION_DRY_RUN", raising=False)
