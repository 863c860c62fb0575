"""
tests/conftest.py -- Shared fixtures for identity store tests.

This module provides:
  - db_url: a sqlite3:// DSN for a fresh database file under tmp_path
  - store: SQLiteStore on that file, migrated and loaded with tests/testdata/*.sql
  - readonly_store: a second, read-only store on the same file
  - mock_store: a MockStore with no stubs registered
  - constants naming the fixture rows (IDs, client IDs, row counts)

Design: every test gets its own database file rather than a shared in-memory
database, because the read-only tests need a second store on the same data
and PRAGMA query_only is applied per connection.

DEBUG is forced off before any settings are read so OIDC validation runs in
production mode unless a test opts in.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path
from uuid import UUID

# Set before any core import so get_settings() sees production defaults.
os.environ["DEBUG"] = "false"

import pytest

from core.config import get_settings
from store.dsn import DSN
from store.mock import MockStore
from store.sqlite import SQLiteStore

TESTDATA = Path(__file__).parent / "testdata"

# ---------------------------------------------------------------------------
# Fixture rows
# ---------------------------------------------------------------------------

KEYHOLDER_ID = UUID("0195254846f950b31ba321d125d52df2")
ADMIN_ID = UUID("019545eb8b6e4c28bc6d4c684b20e9fd")
GARY_ID = UUID("0195bd8afa8e8d5df66412f742cb14ea")
EDITOR_ID = UUID("0195eb6b859180cd9d9eb8bcf5f58818")
VIEWER_ID = UUID("0196f8f5b7abac0d2adfe334c4a46343")

READONLY_KEY_ID = UUID("0195628fcf8f90be870e12d5f4fb5d9a")
READONLY_CLIENT_ID = "TPAkoalHEorqAENISHvxYY"
FULL_KEY_ID = UUID("01958e2a1a7dcbe8175e13db6a2ce94a")
FULL_CLIENT_ID = "ISoIuDiGkpVpAyCrLGYrKU"
REVOKED_KEY_ID = UUID("01950ca8e1dc0faa8652a1593f7640bf")
UNUSED_KEY_ID = UUID("019744eea7b1560bd8e39bfbd9057a61")

FULL_OIDC_ID = UUID("019a0001000000000000000000000001")
FULL_OIDC_CLIENT_ID = "OidcClient1FullMetadata"
MINIMAL_OIDC_ID = UUID("019a0002000000000000000000000002")

VERO_TOKEN_ID = UUID("0197750cbf0c4222af236138d2737d2d")
VERO_RESOURCE_ID = UUID("018f2ee1d49935bf09d5913b8c13d51a")

EDITOR_PERMISSIONS = [
    "content:delete",
    "content:modify",
    "content:view",
    "keys:view",
    "users:invite",
    "users:view",
]

FIXTURE_COUNTS = {
    "users": 5,
    "roles": 4,
    "permissions": 10,
    "role_permissions": 22,
    "user_roles": 5,
    "api_keys": 5,
    "api_key_permissions": 13,
    "oidc_clients": 2,
    "vero_tokens": 1,
    "migrations": 2,
}


def load_testdata(store: SQLiteStore) -> None:
    """Run every tests/testdata/*.sql script against the store's database."""
    with store.engine.connect() as conn:
        driver = conn.connection.driver_connection
        for path in sorted(TESTDATA.glob("*.sql")):
            driver.executescript(path.read_text(encoding="utf-8"))


def delta(before: dict[str, int], after: dict[str, int]) -> dict[str, int]:
    """Non-zero per-table differences between two row_counts() snapshots."""
    return {name: after[name] - before[name] for name in before if after[name] != before[name]}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _fresh_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite3:///{tmp_path / 'idstore.db'}"


@pytest.fixture
def store(db_url: str) -> Generator[SQLiteStore, None, None]:
    """Read-write SQLiteStore with the fixture data loaded.

    Users: keyholder, admin, gary (admin), editor, viewer -- one role each.
    Roles: admin=1, editor=2 (the only default), viewer=3, keyholder=4.
    Permissions 1-10. Five API keys owned by keyholder (two revoked, one never
    used), two OIDC clients created by admin, one expired reset token.
    """
    s = SQLiteStore(DSN.parse(db_url))
    load_testdata(s)
    yield s
    s.close()


@pytest.fixture
def readonly_store(store: SQLiteStore, db_url: str) -> Generator[SQLiteStore, None, None]:
    s = SQLiteStore(DSN.parse(db_url + "?readonly=true"))
    yield s
    s.close()


@pytest.fixture
def mock_store() -> MockStore:
    return MockStore()
