"""
Tests for database URL handling
"""

import pytest

from infinet.db import sync_database_url


@pytest.mark.parametrize("url, expected", [
    ("postgresql+asyncpg://u:p@db:5432/infinet", "postgresql+psycopg2://u:p@db:5432/infinet"),
    ("sqlite+aiosqlite:///./infinet.db", "sqlite:///./infinet.db"),
    ("sqlite+aiosqlite:///:memory:", "sqlite:///:memory:"),
    ("postgresql://u:p@db/infinet", "postgresql://u:p@db/infinet"),
])
def test_sync_database_url(url, expected):
    assert sync_database_url(url) == expected
