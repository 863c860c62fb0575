"""
store/base.py -- The Store/Txn contract every backend implements.

Pattern: Unit of Work + Facade.
  Txn is the unit of work. It is bound to read-only or read-write mode when it
  is created, carries every entity operation, and finishes exactly once via
  commit() or rollback(). Any call after that raises TransactionDone; any
  mutating call on a read-only Txn raises ReadOnly before a statement runs.

  Store is the facade. Each convenience method opens one Txn in the right
  mode, runs one or more Txn operations, commits on success and rolls back on
  any exception. That wrapper is what makes composite writes (create a role,
  then attach its permissions) atomic. Using a Txn as a context manager gives
  direct callers the same discipline:

      with store.begin() as tx:
          role = tx.retrieve_role("editor")
          tx.add_permission_to_role(role.id, "keys:view")

OPERATIONS is the single table of operation names and whether each mutates.
The mock backend builds its stub slots from it and tests use it to check that
every backend covers the whole surface.

Layer rule: imports only from core/ and store.models.
"""

from __future__ import annotations

import functools
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from uuid import UUID

from core.enums import APIKeyStatus
from core.errors import ReadOnly, TransactionDone
from store.models import (
    STALE_AFTER,
    APIKey,
    APIKeyList,
    OIDCClient,
    OIDCClientList,
    Page,
    Permission,
    PermissionList,
    Role,
    RoleList,
    User,
    UserList,
    UserPage,
    VeroToken,
)

logger = logging.getLogger("idstore.store")

# Operation name -> True if it writes.
OPERATIONS: dict[str, bool] = {
    # users
    "list_users": False,
    "create_user": True,
    "retrieve_user": False,
    "update_user": True,
    "update_password": True,
    "update_last_login": True,
    "verify_email": True,
    "delete_user": True,
    # roles
    "list_roles": False,
    "create_role": True,
    "retrieve_role": False,
    "update_role": True,
    "add_permission_to_role": True,
    "remove_permission_from_role": True,
    "delete_role": True,
    # permissions
    "list_permissions": False,
    "create_permission": True,
    "retrieve_permission": False,
    "update_permission": True,
    "delete_permission": True,
    # api keys
    "list_api_keys": False,
    "create_api_key": True,
    "retrieve_api_key": False,
    "update_api_key": True,
    "update_last_seen": True,
    "add_permission_to_api_key": True,
    "remove_permission_from_api_key": True,
    "revoke_api_key": True,
    "delete_api_key": True,
    # oidc clients
    "list_oidc_clients": False,
    "create_oidc_client": True,
    "retrieve_oidc_client": False,
    "update_oidc_client": True,
    "revoke_oidc_client": True,
    "delete_oidc_client": True,
    # verification tokens
    "create_vero_token": True,
    "retrieve_vero_token": False,
    "update_vero_token": True,
    "delete_vero_token": True,
    "create_reset_password_vero_token": True,
}


def mutates(method):
    """Mark a Txn operation as a write: checked for finished and read-only transactions."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        self._check(write=True)
        return method(self, *args, **kwargs)

    return wrapper


def reads(method):
    """Mark a Txn operation as a read: checked for finished transactions only."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        self._check(write=False)
        return method(self, *args, **kwargs)

    return wrapper


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


class Txn(ABC):
    """A single unit of work. Not safe to share between threads."""

    def __init__(self, readonly: bool = False, cancel: threading.Event | None = None) -> None:
        self._readonly = readonly
        self._cancel = cancel
        self._done = False

    @property
    def readonly(self) -> bool:
        return self._readonly

    @property
    def done(self) -> bool:
        return self._done

    def _check(self, write: bool = False) -> None:
        if self._done:
            raise TransactionDone()
        if write and self._readonly:
            raise ReadOnly()

    def commit(self) -> None:
        self._check()
        try:
            self._commit()
        finally:
            self._done = True

    def rollback(self) -> None:
        self._check()
        try:
            self._rollback()
        finally:
            self._done = True

    @abstractmethod
    def _commit(self) -> None: ...

    @abstractmethod
    def _rollback(self) -> None: ...

    def __enter__(self) -> Txn:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._done:
            return False
        if exc_type is None:
            self.commit()
        else:
            logger.debug("rolling back transaction after %s: %s", exc_type.__name__, exc)
            self.rollback()
        return False

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @abstractmethod
    def list_users(self, page: UserPage | None = None) -> UserList: ...

    @abstractmethod
    def create_user(self, user: User) -> None: ...

    @abstractmethod
    def retrieve_user(self, identifier: UUID | str) -> User: ...

    @abstractmethod
    def update_user(self, user: User) -> None: ...

    @abstractmethod
    def update_password(self, user_id: UUID, password: str) -> None: ...

    @abstractmethod
    def update_last_login(self, user_id: UUID, when: datetime) -> None: ...

    @abstractmethod
    def verify_email(self, user_id: UUID) -> None: ...

    @abstractmethod
    def delete_user(self, user_id: UUID) -> None: ...

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    @abstractmethod
    def list_roles(self, page: Page | None = None) -> RoleList: ...

    @abstractmethod
    def create_role(self, role: Role) -> None: ...

    @abstractmethod
    def retrieve_role(self, identifier: int | str) -> Role: ...

    @abstractmethod
    def update_role(self, role: Role) -> None: ...

    @abstractmethod
    def add_permission_to_role(self, role_id: int, permission: int | str | Permission) -> None: ...

    @abstractmethod
    def remove_permission_from_role(self, role_id: int, permission_id: int) -> None: ...

    @abstractmethod
    def delete_role(self, role_id: int) -> None: ...

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    @abstractmethod
    def list_permissions(self, page: Page | None = None) -> PermissionList: ...

    @abstractmethod
    def create_permission(self, permission: Permission) -> None: ...

    @abstractmethod
    def retrieve_permission(self, identifier: int | str | Permission) -> Permission: ...

    @abstractmethod
    def update_permission(self, permission: Permission) -> None: ...

    @abstractmethod
    def delete_permission(self, permission_id: int) -> None: ...

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    @abstractmethod
    def list_api_keys(self, page: Page | None = None) -> APIKeyList: ...

    @abstractmethod
    def create_api_key(self, key: APIKey) -> None: ...

    @abstractmethod
    def retrieve_api_key(self, identifier: UUID | str) -> APIKey: ...

    @abstractmethod
    def update_api_key(self, key: APIKey) -> None: ...

    @abstractmethod
    def update_last_seen(self, key_id: UUID, when: datetime) -> None: ...

    @abstractmethod
    def add_permission_to_api_key(self, key_id: UUID, permission: int | str | Permission) -> None: ...

    @abstractmethod
    def remove_permission_from_api_key(self, key_id: UUID, permission_id: int) -> None: ...

    @abstractmethod
    def revoke_api_key(self, key_id: UUID) -> None: ...

    @abstractmethod
    def delete_api_key(self, key_id: UUID) -> None: ...

    # ------------------------------------------------------------------
    # OIDC clients
    # ------------------------------------------------------------------

    @abstractmethod
    def list_oidc_clients(self, page: Page | None = None) -> OIDCClientList: ...

    @abstractmethod
    def create_oidc_client(self, client: OIDCClient) -> None: ...

    @abstractmethod
    def retrieve_oidc_client(self, identifier: UUID | str) -> OIDCClient: ...

    @abstractmethod
    def update_oidc_client(self, client: OIDCClient) -> None: ...

    @abstractmethod
    def revoke_oidc_client(self, client_id: UUID) -> None: ...

    @abstractmethod
    def delete_oidc_client(self, client_id: UUID) -> None: ...

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    @abstractmethod
    def create_vero_token(self, token: VeroToken) -> None: ...

    @abstractmethod
    def retrieve_vero_token(self, token_id: UUID) -> VeroToken: ...

    @abstractmethod
    def update_vero_token(self, token: VeroToken) -> None: ...

    @abstractmethod
    def delete_vero_token(self, token_id: UUID) -> None: ...

    @abstractmethod
    def create_reset_password_vero_token(self, token: VeroToken) -> None: ...


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class Store(ABC):
    """Backend-independent facade over Txn.

    Subclasses implement _begin() and close(); everything else is shared.

    Usage:
        store = open_store("sqlite3:////var/lib/idstore/id.db")
        user = store.retrieve_user("admin@example.com")
        store.close()
    """

    def __init__(self, readonly: bool = False, debug: bool = False, stale_after: timedelta = STALE_AFTER) -> None:
        self._readonly = readonly
        # Relaxed OIDC redirect URI validation.
        self.debug = debug
        self.stale_after = stale_after

    @property
    def readonly(self) -> bool:
        return self._readonly

    def begin(self, readonly: bool | None = None, cancel: threading.Event | None = None) -> Txn:
        """Start a transaction. readonly=None follows the store's own mode.

        Raises ReadOnly straight away if a read-write transaction is requested
        from a read-only store.
        """
        if readonly is None:
            readonly = self._readonly
        if self._readonly and not readonly:
            raise ReadOnly()
        return self._begin(readonly, cancel)

    @abstractmethod
    def _begin(self, readonly: bool, cancel: threading.Event | None) -> Txn: ...

    @abstractmethod
    def close(self) -> None: ...

    def __enter__(self) -> Store:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def api_key_status(self, key: APIKey, when: datetime | None = None) -> APIKeyStatus:
        """Classify key with this store's staleness threshold."""
        return key.status(when, self.stale_after)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def list_users(self, page: UserPage | None = None) -> UserList:
        with self.begin(readonly=True) as tx:
            return tx.list_users(page)

    def create_user(self, user: User) -> None:
        """Insert user and attach its roles, or the default roles if none were set."""
        with self.begin(readonly=False) as tx:
            tx.create_user(user)

    def retrieve_user(self, identifier: UUID | str) -> User:
        """Look up a user by ID or by email; roles and permissions come loaded."""
        with self.begin(readonly=True) as tx:
            return tx.retrieve_user(identifier)

    def update_user(self, user: User) -> None:
        with self.begin(readonly=False) as tx:
            tx.update_user(user)

    def update_password(self, user_id: UUID, password: str) -> None:
        with self.begin(readonly=False) as tx:
            tx.update_password(user_id, password)

    def update_last_login(self, user_id: UUID, when: datetime) -> None:
        with self.begin(readonly=False) as tx:
            tx.update_last_login(user_id, when)

    def verify_email(self, user_id: UUID) -> None:
        with self.begin(readonly=False) as tx:
            tx.verify_email(user_id)

    def delete_user(self, user_id: UUID) -> None:
        with self.begin(readonly=False) as tx:
            tx.delete_user(user_id)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def list_roles(self, page: Page | None = None) -> RoleList:
        with self.begin(readonly=True) as tx:
            return tx.list_roles(page)

    def create_role(self, role: Role) -> None:
        """Insert role and attach any pre-set permissions; all or nothing."""
        with self.begin(readonly=False) as tx:
            tx.create_role(role)

    def retrieve_role(self, identifier: int | str) -> Role:
        with self.begin(readonly=True) as tx:
            return tx.retrieve_role(identifier)

    def update_role(self, role: Role) -> None:
        with self.begin(readonly=False) as tx:
            tx.update_role(role)

    def add_permission_to_role(self, role_id: int, permission: int | str | Permission) -> None:
        with self.begin(readonly=False) as tx:
            tx.add_permission_to_role(role_id, permission)

    def remove_permission_from_role(self, role_id: int, permission_id: int) -> None:
        with self.begin(readonly=False) as tx:
            tx.remove_permission_from_role(role_id, permission_id)

    def delete_role(self, role_id: int) -> None:
        with self.begin(readonly=False) as tx:
            tx.delete_role(role_id)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def list_permissions(self, page: Page | None = None) -> PermissionList:
        with self.begin(readonly=True) as tx:
            return tx.list_permissions(page)

    def create_permission(self, permission: Permission) -> None:
        with self.begin(readonly=False) as tx:
            tx.create_permission(permission)

    def retrieve_permission(self, identifier: int | str | Permission) -> Permission:
        with self.begin(readonly=True) as tx:
            return tx.retrieve_permission(identifier)

    def update_permission(self, permission: Permission) -> None:
        with self.begin(readonly=False) as tx:
            tx.update_permission(permission)

    def delete_permission(self, permission_id: int) -> None:
        with self.begin(readonly=False) as tx:
            tx.delete_permission(permission_id)

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def list_api_keys(self, page: Page | None = None) -> APIKeyList:
        with self.begin(readonly=True) as tx:
            return tx.list_api_keys(page)

    def create_api_key(self, key: APIKey) -> None:
        with self.begin(readonly=False) as tx:
            tx.create_api_key(key)

    def retrieve_api_key(self, identifier: UUID | str) -> APIKey:
        """Look up a key by ID or client ID; its permissions come loaded."""
        with self.begin(readonly=True) as tx:
            return tx.retrieve_api_key(identifier)

    def update_api_key(self, key: APIKey) -> None:
        with self.begin(readonly=False) as tx:
            tx.update_api_key(key)

    def update_last_seen(self, key_id: UUID, when: datetime) -> None:
        with self.begin(readonly=False) as tx:
            tx.update_last_seen(key_id, when)

    def add_permission_to_api_key(self, key_id: UUID, permission: int | str | Permission) -> None:
        with self.begin(readonly=False) as tx:
            tx.add_permission_to_api_key(key_id, permission)

    def remove_permission_from_api_key(self, key_id: UUID, permission_id: int) -> None:
        with self.begin(readonly=False) as tx:
            tx.remove_permission_from_api_key(key_id, permission_id)

    def revoke_api_key(self, key_id: UUID) -> None:
        with self.begin(readonly=False) as tx:
            tx.revoke_api_key(key_id)

    def delete_api_key(self, key_id: UUID) -> None:
        with self.begin(readonly=False) as tx:
            tx.delete_api_key(key_id)

    # ------------------------------------------------------------------
    # OIDC clients
    # ------------------------------------------------------------------

    def list_oidc_clients(self, page: Page | None = None) -> OIDCClientList:
        with self.begin(readonly=True) as tx:
            return tx.list_oidc_clients(page)

    def create_oidc_client(self, client: OIDCClient) -> None:
        with self.begin(readonly=False) as tx:
            tx.create_oidc_client(client)

    def retrieve_oidc_client(self, identifier: UUID | str) -> OIDCClient:
        with self.begin(readonly=True) as tx:
            return tx.retrieve_oidc_client(identifier)

    def update_oidc_client(self, client: OIDCClient) -> None:
        with self.begin(readonly=False) as tx:
            tx.update_oidc_client(client)

    def revoke_oidc_client(self, client_id: UUID) -> None:
        with self.begin(readonly=False) as tx:
            tx.revoke_oidc_client(client_id)

    def delete_oidc_client(self, client_id: UUID) -> None:
        with self.begin(readonly=False) as tx:
            tx.delete_oidc_client(client_id)

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def create_vero_token(self, token: VeroToken) -> None:
        with self.begin(readonly=False) as tx:
            tx.create_vero_token(token)

    def retrieve_vero_token(self, token_id: UUID) -> VeroToken:
        with self.begin(readonly=True) as tx:
            return tx.retrieve_vero_token(token_id)

    def update_vero_token(self, token: VeroToken) -> None:
        with self.begin(readonly=False) as tx:
            tx.update_vero_token(token)

    def delete_vero_token(self, token_id: UUID) -> None:
        with self.begin(readonly=False) as tx:
            tx.delete_vero_token(token_id)

    def create_reset_password_vero_token(self, token: VeroToken) -> None:
        """Create a reset-password token unless an unexpired one exists for the same resource.

        Raises TooSoon in that case. Expired tokens for the resource are deleted
        in the same transaction.
        """
        with self.begin(readonly=False) as tx:
            tx.create_reset_password_vero_token(token)
