"""
store -- Transactional data-access layer for the identity store.

open_store() is the only entry point callers need: it parses the connection
descriptor, picks the backend by scheme, and returns a ready Store with its
schema migrated.

    from store import open_store

    store = open_store("sqlite3:////var/lib/idstore/id.db")
    user = store.retrieve_user("admin@example.com")
    store.close()
"""

from __future__ import annotations

from datetime import timedelta

from core.config import Settings, get_settings
from core.errors import UnknownScheme
from store.base import OPERATIONS, Store, Txn
from store.dsn import DSN, MOCK, SQLITE, SQLITE3

__all__ = ["OPERATIONS", "DSN", "Store", "Txn", "open_store"]


def open_store(url: str | None = None, readonly: bool | None = None, settings: Settings | None = None) -> Store:
    """Open the store described by url (DATABASE_URL by default).

    Read-only mode: an explicit readonly argument wins; otherwise
    DATABASE_READONLY=true forces it; otherwise the DSN's readonly option applies.
    """
    settings = settings or get_settings()
    dsn = DSN.parse(url if url is not None else settings.database_url)
    if readonly is not None:
        dsn.readonly = readonly
    elif settings.database_readonly:
        dsn.readonly = True

    options = {"debug": settings.debug, "stale_after": timedelta(days=settings.apikey_stale_days)}

    if dsn.scheme == MOCK:
        from store.mock import MockStore

        return MockStore(readonly=dsn.readonly, **options)
    if dsn.scheme in (SQLITE, SQLITE3):
        from store.sqlite import SQLiteStore

        return SQLiteStore(dsn, **options)
    raise UnknownScheme(f"unhandled database scheme {dsn.scheme!r}")
