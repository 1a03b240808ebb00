"""
tests/conftest.py

Pytest configuration and shared fixtures for the governance tool suite.

Unit tests never touch a database: catalogs and connections are replaced by
the fakes in tests/helpers.py. Tests marked ``integration`` run against the
database in SUPABASE_DB_URL and are skipped when it is not set. They only
ever run inside rolled-back transactions.
"""

from __future__ import annotations

import os
from typing import Generator

import pytest

from rlsguard.core_config import reset_settings

# Re-export helpers for convenient imports
from tests.helpers import FakeCatalog, RecordingConnection, RecordingPool, healthy_catalog  # noqa: F401


def pytest_configure(config: pytest.Config) -> None:
    """
    Register custom markers and default to the dev environment.

      - security: security gate tests
      - integration: tests that require a reachable Postgres database
    """
    config.addinivalue_line("markers", "security: security gate tests")
    config.addinivalue_line(
        "markers",
        "integration: marks tests as requiring a reachable Postgres database",
    )

    if "SUPABASE_MODE" not in os.environ:
        os.environ["SUPABASE_MODE"] = "dev"


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Each test sees settings built from its own environment."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def recording_pool() -> RecordingPool:
    return RecordingPool(RecordingConnection())


@pytest.fixture
def live_db_url() -> str:
    """Database URL for integration tests; skips when not configured."""
    url = os.environ.get("SUPABASE_DB_URL")
    if not url:
        pytest.skip("SUPABASE_DB_URL not set; skipping live database test")
    return url
