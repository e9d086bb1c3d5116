#!/usr/bin/env python3
"""
Test suite configuration and utilities.

All tests run without external services: Redis and the push gateway are
faked, the audit database is in-memory SQLite.

    # Run all tests
    uv run python -m pytest tests/ -v

    # Skip the SQL-backed tests
    uv run python -m pytest tests/ -v -m "not db"

    # Using unittest
    uv run python -m unittest discover tests -v
"""

SQLITE_MEMORY_URL = "sqlite:///:memory:"
