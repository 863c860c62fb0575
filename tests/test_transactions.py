"""
Transaction discipline tests on the SQLite store.

Covers:
- commit/rollback finish a transaction exactly once; later calls raise TransactionDone
- the Txn context manager commits on success and rolls back on any exception
- composite writes in one transaction are all or nothing
- a set cancel event stops the next statement with Cancelled
- uncommitted writes are invisible to other transactions
"""

import threading

import pytest

from conftest import EDITOR_ID, VIEWER_ID, delta
from core.errors import Cancelled, NotFound, ReadOnly, TransactionDone
from store.models import Permission, Role


class TestFinishOnce:
    def test_calls_after_commit(self, store) -> None:
        tx = store.begin()
        tx.retrieve_user(VIEWER_ID)
        tx.commit()
        assert tx.done

        with pytest.raises(TransactionDone):
            tx.retrieve_user(VIEWER_ID)
        with pytest.raises(TransactionDone):
            tx.delete_user(VIEWER_ID)
        with pytest.raises(TransactionDone):
            tx.commit()
        with pytest.raises(TransactionDone):
            tx.rollback()

    def test_calls_after_rollback(self, store) -> None:
        tx = store.begin(readonly=True)
        tx.rollback()
        with pytest.raises(TransactionDone):
            tx.list_roles()

    def test_explicit_rollback_discards(self, store) -> None:
        before = store.row_counts()
        tx = store.begin()
        tx.delete_user(VIEWER_ID)
        tx.rollback()
        assert store.row_counts() == before

    def test_explicit_commit_persists(self, store) -> None:
        before = store.row_counts()
        tx = store.begin()
        tx.delete_user(VIEWER_ID)
        tx.commit()
        assert delta(before, store.row_counts()) == {"users": -1, "user_roles": -1}

    def test_mode_follows_store(self, store) -> None:
        with store.begin() as tx:
            assert tx.readonly is False
        with store.begin(readonly=True) as tx:
            assert tx.readonly is True


class TestContextManager:
    def test_commits_on_success(self, store) -> None:
        with store.begin() as tx:
            tx.delete_user(VIEWER_ID)
        assert tx.done
        with pytest.raises(NotFound):
            store.retrieve_user(VIEWER_ID)

    def test_rolls_back_on_error(self, store) -> None:
        before = store.row_counts()
        with pytest.raises(RuntimeError):
            with store.begin() as tx:
                tx.delete_user(VIEWER_ID)
                raise RuntimeError("caller failed half way")
        assert tx.done
        assert store.row_counts() == before

    def test_already_finished_is_left_alone(self, store) -> None:
        with store.begin() as tx:
            tx.delete_user(VIEWER_ID)
            tx.rollback()
        assert store.retrieve_user(VIEWER_ID).email == "viewer@example.com"

    def test_composite_write_is_atomic(self, store) -> None:
        before = store.row_counts()
        with pytest.raises(NotFound):
            with store.begin() as tx:
                role = Role(title="support")
                role.set_permissions([Permission(title="users:view")])
                tx.create_role(role)
                tx.add_permission_to_role(role.id, "users:invite")
                tx.add_permission_to_role(role.id, "users:impersonate")
        assert store.row_counts() == before

    def test_store_level_error_does_not_poison_next_call(self, store) -> None:
        with pytest.raises(ReadOnly):
            with store.begin(readonly=True) as tx:
                tx.delete_user(VIEWER_ID)
        store.delete_user(VIEWER_ID)


class TestCancel:
    def test_cancelled_before_statement(self, store) -> None:
        cancel = threading.Event()
        before = store.row_counts()
        with pytest.raises(Cancelled):
            with store.begin(cancel=cancel) as tx:
                tx.delete_user(VIEWER_ID)
                cancel.set()
                tx.delete_user(EDITOR_ID)
        assert store.row_counts() == before

    def test_unset_event_is_ignored(self, store) -> None:
        with store.begin(readonly=True, cancel=threading.Event()) as tx:
            assert tx.retrieve_user(EDITOR_ID).email == "editor@example.com"


class TestIsolation:
    def test_uncommitted_delete_not_visible(self, store) -> None:
        with store.begin() as tx:
            tx.delete_user(VIEWER_ID)
            assert store.retrieve_user(VIEWER_ID).email == "viewer@example.com"
        with pytest.raises(NotFound):
            store.retrieve_user(VIEWER_ID)
