"""
Tests for store/mock.py and the Store/Txn contract every backend shares.

Covers:
- both backends implement every operation in OPERATIONS
- stubs answer calls; calls are counted; transactions commit or roll back
- unstubbed calls and unknown stub names fail loudly
- the mock enforces read-only, finished and cancelled transactions
"""

import threading

import pytest

from core.errors import Cancelled, NotFound, ReadOnly, TransactionDone
from store.base import OPERATIONS, Store, Txn
from store.mock import MockStore, MockTxn, UnstubbedOperation
from store.models import Role, User
from store.sqlite import SQLiteTxn


class TestContract:
    def test_operation_table_is_complete(self) -> None:
        declared = {name for name in Txn.__abstractmethods__ if not name.startswith("_")}
        assert declared == set(OPERATIONS)

    @pytest.mark.parametrize("txn_class", [SQLiteTxn, MockTxn])
    def test_backends_are_concrete(self, txn_class) -> None:
        assert txn_class.__abstractmethods__ == frozenset()

    def test_store_facade_covers_every_operation(self) -> None:
        missing = [name for name in OPERATIONS if not callable(getattr(Store, name, None))]
        assert missing == []


class TestStubs:
    def test_stub_answers_and_commits(self, mock_store) -> None:
        mock_store.on("retrieve_user", lambda identifier: User(email=identifier))
        user = mock_store.retrieve_user("a@example.com")

        assert user.email == "a@example.com"
        assert mock_store.calls["retrieve_user"] == 1
        assert mock_store.last_txn.readonly is True
        mock_store.last_txn.assert_committed()

    def test_on_is_chainable(self, mock_store) -> None:
        created = []
        mock_store.on("create_role", created.append).on("delete_role", lambda role_id: None)
        mock_store.create_role(Role(title="ops"))
        mock_store.delete_role(1)
        assert [r.title for r in created] == ["ops"]
        assert mock_store.last_txn.readonly is False

    def test_stub_error_rolls_back(self, mock_store) -> None:
        def missing(identifier):
            raise NotFound()

        mock_store.on("retrieve_role", missing)
        with pytest.raises(NotFound):
            mock_store.retrieve_role("ghost")
        mock_store.last_txn.assert_rolled_back()

    def test_unstubbed_operation(self, mock_store) -> None:
        with pytest.raises(UnstubbedOperation, match="list_users"):
            mock_store.list_users()
        assert isinstance(UnstubbedOperation("x"), AssertionError)
        mock_store.last_txn.assert_rolled_back()

    def test_unknown_name(self, mock_store) -> None:
        with pytest.raises(KeyError):
            mock_store.on("retrieve_usr", lambda identifier: None)

    def test_reset(self, mock_store) -> None:
        mock_store.on("list_roles", lambda page: None)
        mock_store.list_roles()
        mock_store.reset()
        assert mock_store.stubs == {}
        assert mock_store.calls == {}
        with pytest.raises(AssertionError):
            mock_store.last_txn

    def test_close(self, mock_store) -> None:
        with mock_store:
            pass
        assert mock_store.closed


class TestTransactionRules:
    def test_readonly_store(self) -> None:
        store = MockStore(readonly=True)
        store.on("delete_user", lambda user_id: None)
        with pytest.raises(ReadOnly):
            store.delete_user(None)
        assert store.calls["delete_user"] == 0

    def test_readonly_transaction(self, mock_store) -> None:
        mock_store.on("delete_role", lambda role_id: None)
        with pytest.raises(ReadOnly):
            with mock_store.begin(readonly=True) as tx:
                tx.delete_role(1)
        tx.assert_rolled_back()

    def test_finished_transaction(self, mock_store) -> None:
        mock_store.on("list_roles", lambda page=None: None)
        tx = mock_store.begin()
        tx.commit()
        with pytest.raises(TransactionDone):
            tx.list_roles()

    def test_cancelled(self, mock_store) -> None:
        mock_store.on("list_roles", lambda page=None: None)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(Cancelled):
            with mock_store.begin(cancel=cancel) as tx:
                tx.list_roles()
        assert mock_store.calls["list_roles"] == 0
