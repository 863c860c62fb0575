"""
store/mock.py -- In-memory test double for the Store/Txn contract.

Stubs are registered per operation name; the names come from
store.base.OPERATIONS, so a typo fails at registration instead of silently
never being called:

    store = MockStore()
    store.on("retrieve_user", lambda identifier: User(email="a@example.com"))
    user = store.retrieve_user("a@example.com")
    assert store.calls["retrieve_user"] == 1
    store.last_txn.assert_committed()

Calling an operation that has no stub raises UnstubbedOperation, an
AssertionError, which stops the test at the offending call. That is a test
harness convenience; the SQLite backend never behaves this way.

MockTxn enforces the same transaction rules as the real one: TransactionDone
after commit/rollback, ReadOnly for mutating calls on a read-only transaction,
Cancelled when the caller's cancel event is set.
"""

from __future__ import annotations

import abc
import logging
import threading
from collections import Counter
from collections.abc import Callable

from core.errors import Cancelled
from store.base import OPERATIONS, Store, Txn

logger = logging.getLogger("idstore.mock")


class UnstubbedOperation(AssertionError):
    """An operation was called on the mock without a registered stub."""


class MockTxn(Txn):
    """Transaction over a MockStore's stub table. Operations are attached below the class."""

    def __init__(self, store: MockStore, readonly: bool = False, cancel: threading.Event | None = None) -> None:
        super().__init__(readonly, cancel)
        self._store = store
        self.committed = False
        self.rolled_back = False

    def _commit(self) -> None:
        self.committed = True

    def _rollback(self) -> None:
        self.rolled_back = True

    def _dispatch(self, name: str, args: tuple, kwargs: dict):
        self._check(write=OPERATIONS[name])
        if self._cancel is not None and self._cancel.is_set():
            raise Cancelled()
        self._store.calls[name] += 1
        handler = self._store.stubs.get(name)
        if handler is None:
            raise UnstubbedOperation(f"{name} is not stubbed on the mock store")
        return handler(*args, **kwargs)

    def assert_committed(self) -> None:
        assert self.committed, "transaction was not committed"
        assert not self.rolled_back, "transaction was rolled back"

    def assert_rolled_back(self) -> None:
        assert self.rolled_back, "transaction was not rolled back"
        assert not self.committed, "transaction was committed"


def _stub(name: str):
    def operation(self, *args, **kwargs):
        return self._dispatch(name, args, kwargs)

    operation.__name__ = name
    operation.__qualname__ = f"MockTxn.{name}"
    return operation


for _name in OPERATIONS:
    setattr(MockTxn, _name, _stub(_name))
abc.update_abstractmethods(MockTxn)


class MockStore(Store):
    """Store whose operations are answered by registered stubs."""

    def __init__(self, readonly: bool = False, **kwargs) -> None:
        super().__init__(readonly=readonly, **kwargs)
        self.stubs: dict[str, Callable] = {}
        self.calls: Counter = Counter()
        self.transactions: list[MockTxn] = []
        self.closed = False

    def on(self, name: str, handler: Callable) -> MockStore:
        if name not in OPERATIONS:
            raise KeyError(f"unknown store operation {name!r}")
        self.stubs[name] = handler
        return self

    def reset(self) -> None:
        """Drop every stub, call count and recorded transaction."""
        self.stubs.clear()
        self.calls.clear()
        self.transactions.clear()

    @property
    def last_txn(self) -> MockTxn:
        if not self.transactions:
            raise AssertionError("no transaction has been started on the mock store")
        return self.transactions[-1]

    def _begin(self, readonly: bool, cancel: threading.Event | None) -> MockTxn:
        tx = MockTxn(self, readonly=readonly, cancel=cancel)
        self.transactions.append(tx)
        return tx

    def close(self) -> None:
        self.closed = True
        logger.debug("mock store closed after %d transaction(s)", len(self.transactions))
