"""
Shared fixtures.
"""

import os

import pytest

from ai_infra_guard.storage.repository import initialize_schema


@pytest.fixture
def db_path(tmp_path):
    """Fresh SQLite database with the schema applied."""
    path = os.path.join(str(tmp_path), "test.db")
    initialize_schema(path)
    return path


class FakeClock:
    """Manually advanced clock in epoch milliseconds."""

    def __init__(self, now_ms: int = 1_700_000_000_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock():
    return FakeClock()
