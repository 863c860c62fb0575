"""
Read-only mode tests.

Covers:
- a read-only store serves every read operation
- every mutating operation raises ReadOnly and leaves the database untouched
- a read-only transaction on a read-write store refuses writes too
- the connections themselves are query_only, so raw SQL cannot write either
"""

import inspect

import pytest
from sqlalchemy.exc import OperationalError

from conftest import ADMIN_ID, FULL_KEY_ID, FULL_OIDC_ID, VERO_TOKEN_ID, VIEWER_ID
from core.errors import ReadOnly
from store.base import OPERATIONS
from store.dsn import DSN
from store.sqlite import SQLiteStore, translate

MUTATIONS = sorted(name for name, writes in OPERATIONS.items() if writes)


def _call_with_placeholders(store, name: str):
    method = getattr(store, name)
    arity = len(inspect.signature(method).parameters)
    return method(*([None] * arity))


class TestReadOnlyStore:
    def test_mode(self, readonly_store) -> None:
        assert readonly_store.readonly is True
        with readonly_store.begin() as tx:
            assert tx.readonly is True

    def test_reads_work(self, readonly_store) -> None:
        assert readonly_store.retrieve_user(ADMIN_ID).email == "admin@example.com"
        assert len(readonly_store.list_users().users) == 5
        assert len(readonly_store.list_roles().roles) == 4
        assert len(readonly_store.list_permissions().permissions) == 10
        assert len(readonly_store.retrieve_api_key(FULL_KEY_ID).permissions()) == 10
        assert readonly_store.retrieve_oidc_client(FULL_OIDC_ID).client_name == "Full Metadata OIDC Client"
        assert readonly_store.retrieve_vero_token(VERO_TOKEN_ID).is_expired()

    @pytest.mark.parametrize("name", MUTATIONS)
    def test_every_mutation_refused(self, store, readonly_store, name: str) -> None:
        before = store.row_counts()
        with pytest.raises(ReadOnly):
            _call_with_placeholders(readonly_store, name)
        assert store.row_counts() == before

    def test_read_write_transaction_refused(self, readonly_store) -> None:
        with pytest.raises(ReadOnly):
            readonly_store.begin(readonly=False)


class TestReadOnlyTransaction:
    @pytest.mark.parametrize("name", MUTATIONS)
    def test_every_mutation_refused(self, store, name: str) -> None:
        before = store.row_counts()
        with pytest.raises(ReadOnly):
            with store.begin(readonly=True) as tx:
                _call_with_placeholders(tx, name)
        assert store.row_counts() == before

    def test_reads_allowed(self, store) -> None:
        with store.begin(readonly=True) as tx:
            assert tx.retrieve_user(VIEWER_ID).email == "viewer@example.com"


class TestQueryOnlyConnections:
    def test_raw_write_fails(self, store, readonly_store) -> None:
        before = store.row_counts()
        with readonly_store.engine.connect() as conn:
            with pytest.raises(OperationalError) as excinfo:
                conn.exec_driver_sql("DELETE FROM users")
        assert isinstance(translate(excinfo.value), ReadOnly)
        assert store.row_counts() == before

    def test_memory_store(self) -> None:
        memory = SQLiteStore(DSN.parse("sqlite3:///:memory:?readonly=true"))
        try:
            assert memory.row_counts()["migrations"] == 2
            with memory.engine.connect() as conn:
                with pytest.raises(OperationalError):
                    conn.exec_driver_sql("DELETE FROM roles")
        finally:
            memory.close()
