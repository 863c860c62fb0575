"""
store/sqlite.py -- SQLAlchemy Core backend for the identity store on SQLite.

Pattern: Repository + Data Mapper (same as the rest of the store).
SQLiteTxn is the repository; the scan()/params() methods on the models are the
mappers. Every query selects its columns from the model's FIELDS tuple via
schema.columns(), so the order scan() expects is the order the row arrives in.

Security:
  All queries use bound parameters. No f-strings in SQL. Secrets and password
  hashes are stored verbatim and never logged.

Connection setup (per pooled connection):
  PRAGMA foreign_keys=ON  -- join rows cascade on delete, dangling references fail
  PRAGMA journal_mode=WAL -- readers do not block behind a writer
  PRAGMA query_only=ON    -- read-only stores only, applied after migrations ran

Error translation:
  translate() is the single place where SQLAlchemy/sqlite3 exceptions become
  taxonomy errors. Anything it does not recognise is logged and raised as
  Internal, chained to the original exception.

Layer rule: imports from core/ and store/ only.
"""

from __future__ import annotations

import functools
import logging
import threading
from datetime import datetime
from pathlib import Path
from uuid import UUID

from sqlalchemy import create_engine, delete, event, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import (
    IntegrityError,
    MultipleResultsFound,
    NoResultFound,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.pool import StaticPool

from core.enums import TokenType
from core.errors import (
    AlreadyExists,
    Ambiguous,
    Cancelled,
    FieldError,
    Internal,
    MissingAssociation,
    MissingID,
    MissingReference,
    NoIDOnCreate,
    NotFound,
    PathRequired,
    ReadOnly,
    StoreError,
    TooSoon,
    UnsupportedIdentifier,
    ValidationError,
    ZeroValuedNotNull,
)
from core.ids import as_utc, is_zero, new_id, now
from store import schema
from store.base import Store, Txn, mutates, reads
from store.dsn import DSN
from store.models import (
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
from store.schema import (
    api_key_permissions,
    api_keys,
    columns,
    oidc_clients,
    permissions,
    role_permissions,
    roles,
    user_permissions,
    user_roles,
    users,
    vero_tokens,
)

logger = logging.getLogger("idstore.sqlite")

MEMORY = ":memory:"

# ---------------------------------------------------------------------------
# Connection pragmas
# ---------------------------------------------------------------------------


def _set_pragmas(dbapi_conn, connection_record) -> None:
    """Enable foreign keys and WAL on every new connection.

    SQLite PRAGMAs are per-connection and are not inherited from the pool, so
    they are set from the engine's connect event.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _set_query_only(dbapi_conn, connection_record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA query_only=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


def translate(exc: Exception) -> StoreError:
    """Map a backend exception onto the error taxonomy."""
    if isinstance(exc, StoreError):
        return exc
    if isinstance(exc, NoResultFound):
        return NotFound()
    if isinstance(exc, MultipleResultsFound):
        return Ambiguous()

    orig = getattr(exc, "orig", None) or exc
    message = str(orig)
    errname = getattr(orig, "sqlite_errorname", "") or ""

    if isinstance(exc, IntegrityError):
        if "UNIQUE constraint failed" in message or errname in ("SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"):
            return AlreadyExists(f"{AlreadyExists.message}: {message}")
        if "FOREIGN KEY constraint failed" in message or errname == "SQLITE_CONSTRAINT_FOREIGNKEY":
            return MissingReference()
        if "NOT NULL constraint failed" in message or errname == "SQLITE_CONSTRAINT_NOTNULL":
            return ZeroValuedNotNull(f"{ZeroValuedNotNull.message}: {message}")
    if isinstance(exc, OperationalError):
        if errname.startswith("SQLITE_READONLY") or "readonly database" in message:
            return ReadOnly()

    logger.warning("untranslated sqlite error: %s", message)
    return Internal(f"sqlite3 error: {message}")


# ---------------------------------------------------------------------------
# Identifier helpers
# ---------------------------------------------------------------------------


def _require_uuid(operation: str, value) -> bytes:
    if not isinstance(value, UUID):
        raise UnsupportedIdentifier(operation, value)
    if is_zero(value):
        raise MissingID()
    return value.bytes


def _creates(method):
    """Restore the entity's id and timestamps when its create fails.

    The enclosing transaction rolls the rows back; this rolls the object back,
    so a failed create can be retried on the same instance.
    """

    @functools.wraps(method)
    def wrapper(self, entity):
        saved = (entity.id, entity.created, entity.modified)
        try:
            return method(self, entity)
        except Exception:
            entity.id, entity.created, entity.modified = saved
            raise

    return wrapper


def _require_int(operation: str, value) -> int:
    # bool is an int subclass; True is not a role or permission id.
    if isinstance(value, bool) or not isinstance(value, int):
        raise UnsupportedIdentifier(operation, value)
    if value == 0:
        raise MissingID()
    return value


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


class SQLiteTxn(Txn):
    """A transaction on one pooled connection. Finishing it returns the connection."""

    def __init__(
        self,
        conn: Connection,
        readonly: bool = False,
        cancel: threading.Event | None = None,
        debug: bool = False,
    ) -> None:
        super().__init__(readonly, cancel)
        self._conn = conn
        self._tx = conn.begin()
        self._debug = debug

    def _commit(self) -> None:
        try:
            self._tx.commit()
        except SQLAlchemyError as exc:
            raise translate(exc) from exc
        finally:
            self._conn.close()

    def _rollback(self) -> None:
        try:
            self._tx.rollback()
        except SQLAlchemyError as exc:
            raise translate(exc) from exc
        finally:
            self._conn.close()

    # ------------------------------------------------------------------
    # Statement helpers
    # ------------------------------------------------------------------

    def _execute(self, statement):
        if self._cancel is not None and self._cancel.is_set():
            raise Cancelled()
        try:
            return self._conn.execute(statement)
        except SQLAlchemyError as exc:
            raise translate(exc) from exc

    def _one(self, statement):
        result = self._execute(statement)
        try:
            return result.one()
        except SQLAlchemyError as exc:
            raise translate(exc) from exc

    def _affected(self, statement) -> None:
        """Run an UPDATE or DELETE that must hit exactly one row."""
        if self._execute(statement).rowcount == 0:
            raise NotFound()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @reads
    def list_users(self, page: UserPage | None = None) -> UserList:
        page = UserPage.from_page(page)
        stmt = select(*columns(users, User.SUMMARY_FIELDS))
        if page.role:
            stmt = (
                stmt.join(user_roles, user_roles.c.user_id == users.c.id)
                .join(roles, roles.c.id == user_roles.c.role_id)
                .where(roles.c.title.collate("NOCASE") == page.role)
            )
        stmt = stmt.order_by(users.c.created.desc()).limit(page.page_size)
        rows = self._execute(stmt).fetchall()
        return UserList(page=page, users=[User.scan_summary(r) for r in rows])

    @mutates
    @_creates
    def create_user(self, user: User) -> None:
        if not is_zero(user.id):
            raise NoIDOnCreate()
        if not user.email:
            raise ZeroValuedNotNull("user email is required")

        user.id = new_id()
        user.created = now()
        user.modified = user.created
        self._execute(insert(users).values(**user.params()))

        try:
            assigned = user.roles()
        except MissingAssociation:
            assigned = self._default_roles()

        for role in assigned:
            role_id = role.id or self.retrieve_role(role.title).id
            self._execute(
                insert(user_roles).values(
                    user_id=user.id.bytes,
                    role_id=role_id,
                    created=user.created.isoformat(),
                    modified=user.created.isoformat(),
                )
            )

        user.set_roles(self._user_roles(user.id.bytes))
        user.set_permissions(self._user_permissions(user.id.bytes))

    def _default_roles(self) -> list[Role]:
        stmt = select(*columns(roles, Role.FIELDS)).where(roles.c.is_default == 1).order_by(roles.c.id)
        return [Role.scan(r) for r in self._execute(stmt).fetchall()]

    def _user_roles(self, user_id: bytes) -> list[Role]:
        stmt = (
            select(*columns(roles, Role.FIELDS))
            .join(user_roles, user_roles.c.role_id == roles.c.id)
            .where(user_roles.c.user_id == user_id)
            .order_by(roles.c.id)
        )
        out = []
        for row in self._execute(stmt).fetchall():
            role = Role.scan(row)
            role.set_permissions(self._role_permissions(role.id))
            out.append(role)
        return out

    def _user_permissions(self, user_id: bytes) -> list[str]:
        stmt = (
            select(user_permissions.c.permission)
            .where(user_permissions.c.user_id == user_id)
            .distinct()
            .order_by(user_permissions.c.permission)
        )
        return list(self._execute(stmt).scalars().all())

    @reads
    def retrieve_user(self, identifier: UUID | str) -> User:
        if isinstance(identifier, UUID):
            if is_zero(identifier):
                raise MissingID()
            where = users.c.id == identifier.bytes
        elif isinstance(identifier, str):
            if not identifier:
                raise MissingID()
            where = users.c.email == identifier
        else:
            raise UnsupportedIdentifier("retrieve_user", identifier)

        user = User.scan(self._one(select(*columns(users, User.FIELDS)).where(where)))
        user.set_roles(self._user_roles(user.id.bytes))
        user.set_permissions(self._user_permissions(user.id.bytes))
        return user

    @mutates
    def update_user(self, user: User) -> None:
        user_id = _require_uuid("update_user", user.id)
        if not user.email:
            raise ZeroValuedNotNull("user email is required")
        modified = now()
        self._affected(
            update(users)
            .where(users.c.id == user_id)
            .values(name=user.name, email=user.email, modified=modified.isoformat())
        )
        user.modified = modified

    @mutates
    def update_password(self, user_id: UUID, password: str) -> None:
        key = _require_uuid("update_password", user_id)
        if not password:
            raise ZeroValuedNotNull("password is required")
        self._affected(
            update(users).where(users.c.id == key).values(password=password, modified=now().isoformat())
        )

    @mutates
    def update_last_login(self, user_id: UUID, when: datetime) -> None:
        key = _require_uuid("update_last_login", user_id)
        self._affected(
            update(users)
            .where(users.c.id == key)
            .values(last_login=as_utc(when).isoformat(), modified=now().isoformat())
        )

    @mutates
    def verify_email(self, user_id: UUID) -> None:
        key = _require_uuid("verify_email", user_id)
        self._affected(
            update(users).where(users.c.id == key).values(email_verified=1, modified=now().isoformat())
        )

    @mutates
    def delete_user(self, user_id: UUID) -> None:
        key = _require_uuid("delete_user", user_id)
        self._affected(delete(users).where(users.c.id == key))

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    @reads
    def list_roles(self, page: Page | None = None) -> RoleList:
        page = Page.from_page(page)
        stmt = select(*columns(roles, Role.FIELDS)).order_by(roles.c.created.desc(), roles.c.id).limit(page.page_size)
        return RoleList(page=page, roles=[Role.scan(r) for r in self._execute(stmt).fetchall()])

    @mutates
    @_creates
    def create_role(self, role: Role) -> None:
        """Insert role, then attach every pre-set permission.

        A permission that cannot be resolved aborts the operation with an error
        naming it; the role row already inserted is undone by the rollback of
        the enclosing transaction.
        """
        if role.id:
            raise NoIDOnCreate()
        if not role.title:
            raise ZeroValuedNotNull("role title is required")

        created = now()
        role.created = created
        role.modified = created
        params = role.params()
        del params["id"]
        result = self._execute(insert(roles).values(**params))
        role.id = result.inserted_primary_key[0]

        try:
            requested = role.permissions()
        except MissingAssociation:
            requested = []

        attached = []
        for perm in requested:
            try:
                resolved = self.retrieve_permission(perm)
                self._execute(
                    insert(role_permissions).values(
                        role_id=role.id,
                        permission_id=resolved.id,
                        created=created.isoformat(),
                        modified=created.isoformat(),
                    )
                )
            except StoreError as exc:
                raise exc.with_context(
                    f'invalid permission "{perm.title}" (ID: {perm.id}): role not created'
                ) from exc
            attached.append(resolved)
        role.set_permissions(attached)

    def _role_permissions(self, role_id: int) -> list[Permission]:
        stmt = (
            select(*columns(permissions, Permission.FIELDS))
            .join(role_permissions, role_permissions.c.permission_id == permissions.c.id)
            .where(role_permissions.c.role_id == role_id)
            .order_by(permissions.c.id)
        )
        return [Permission.scan(r) for r in self._execute(stmt).fetchall()]

    @reads
    def retrieve_role(self, identifier: int | str) -> Role:
        if isinstance(identifier, str):
            if not identifier:
                raise MissingID()
            where = roles.c.title == identifier
        else:
            where = roles.c.id == _require_int("retrieve_role", identifier)

        role = Role.scan(self._one(select(*columns(roles, Role.FIELDS)).where(where)))
        role.set_permissions(self._role_permissions(role.id))
        return role

    @mutates
    def update_role(self, role: Role) -> None:
        role_id = _require_int("update_role", role.id)
        if not role.title:
            raise ZeroValuedNotNull("role title is required")
        modified = now()
        self._affected(
            update(roles)
            .where(roles.c.id == role_id)
            .values(
                title=role.title,
                description=role.description,
                is_default=1 if role.is_default else 0,
                modified=modified.isoformat(),
            )
        )
        role.modified = modified

    @mutates
    def add_permission_to_role(self, role_id: int, permission: int | str | Permission) -> None:
        role_id = _require_int("add_permission_to_role", role_id)
        perm = self.retrieve_permission(permission)
        stamp = now().isoformat()
        self._execute(
            insert(role_permissions).values(role_id=role_id, permission_id=perm.id, created=stamp, modified=stamp)
        )

    @mutates
    def remove_permission_from_role(self, role_id: int, permission_id: int) -> None:
        role_id = _require_int("remove_permission_from_role", role_id)
        permission_id = _require_int("remove_permission_from_role", permission_id)
        self._affected(
            delete(role_permissions).where(
                (role_permissions.c.role_id == role_id) & (role_permissions.c.permission_id == permission_id)
            )
        )

    @mutates
    def delete_role(self, role_id: int) -> None:
        role_id = _require_int("delete_role", role_id)
        self._affected(delete(roles).where(roles.c.id == role_id))

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    @reads
    def list_permissions(self, page: Page | None = None) -> PermissionList:
        page = Page.from_page(page)
        stmt = select(*columns(permissions, Permission.FIELDS)).order_by(permissions.c.title).limit(page.page_size)
        return PermissionList(page=page, permissions=[Permission.scan(r) for r in self._execute(stmt).fetchall()])

    @mutates
    @_creates
    def create_permission(self, permission: Permission) -> None:
        if permission.id:
            raise NoIDOnCreate()
        if not permission.title:
            raise ZeroValuedNotNull("permission title is required")
        permission.created = now()
        permission.modified = permission.created
        params = permission.params()
        del params["id"]
        result = self._execute(insert(permissions).values(**params))
        permission.id = result.inserted_primary_key[0]

    @reads
    def retrieve_permission(self, identifier: int | str | Permission) -> Permission:
        # A Permission object resolves by ID when it has one, by title otherwise.
        if isinstance(identifier, Permission):
            identifier = identifier.id or identifier.title

        if isinstance(identifier, str):
            if not identifier:
                raise MissingID()
            where = permissions.c.title == identifier
        else:
            where = permissions.c.id == _require_int("retrieve_permission", identifier)

        return Permission.scan(self._one(select(*columns(permissions, Permission.FIELDS)).where(where)))

    @mutates
    def update_permission(self, permission: Permission) -> None:
        permission_id = _require_int("update_permission", permission.id)
        if not permission.title:
            raise ZeroValuedNotNull("permission title is required")
        modified = now()
        self._affected(
            update(permissions)
            .where(permissions.c.id == permission_id)
            .values(title=permission.title, description=permission.description, modified=modified.isoformat())
        )
        permission.modified = modified

    @mutates
    def delete_permission(self, permission_id: int) -> None:
        permission_id = _require_int("delete_permission", permission_id)
        self._affected(delete(permissions).where(permissions.c.id == permission_id))

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    @reads
    def list_api_keys(self, page: Page | None = None) -> APIKeyList:
        page = Page.from_page(page)
        stmt = (
            select(*columns(api_keys, APIKey.SUMMARY_FIELDS))
            .where(api_keys.c.revoked.is_(None))
            .order_by(api_keys.c.created.desc())
            .limit(page.page_size)
        )
        return APIKeyList(page=page, api_keys=[APIKey.scan_summary(r) for r in self._execute(stmt).fetchall()])

    @mutates
    @_creates
    def create_api_key(self, key: APIKey) -> None:
        if not is_zero(key.id):
            raise NoIDOnCreate()
        if not key.client_id or not key.secret or is_zero(key.created_by):
            raise ZeroValuedNotNull("client_id, secret and created_by are required")

        key.id = new_id()
        key.created = now()
        key.modified = key.created
        self._execute(insert(api_keys).values(**key.params()))

        try:
            requested = key.permissions()
        except MissingAssociation:
            requested = []

        for title in requested:
            try:
                self._grant(key.id.bytes, self.retrieve_permission(title), key.created.isoformat())
            except StoreError as exc:
                raise exc.with_context(f'invalid permission "{title}": api key not created') from exc
        key.set_permissions(self._key_permissions(key.id.bytes))

    def _grant(self, key_id: bytes, perm: Permission, stamp: str) -> None:
        self._execute(
            insert(api_key_permissions).values(api_key_id=key_id, permission_id=perm.id, created=stamp, modified=stamp)
        )

    def _key_permissions(self, key_id: bytes) -> list[str]:
        stmt = (
            select(permissions.c.title)
            .join(api_key_permissions, api_key_permissions.c.permission_id == permissions.c.id)
            .where(api_key_permissions.c.api_key_id == key_id)
            .order_by(permissions.c.title)
        )
        return list(self._execute(stmt).scalars().all())

    @reads
    def retrieve_api_key(self, identifier: UUID | str) -> APIKey:
        if isinstance(identifier, UUID):
            if is_zero(identifier):
                raise MissingID()
            where = api_keys.c.id == identifier.bytes
        elif isinstance(identifier, str):
            if not identifier:
                raise MissingID()
            where = api_keys.c.client_id == identifier
        else:
            raise UnsupportedIdentifier("retrieve_api_key", identifier)

        key = APIKey.scan(self._one(select(*columns(api_keys, APIKey.FIELDS)).where(where)))
        key.set_permissions(self._key_permissions(key.id.bytes))
        return key

    @mutates
    def update_api_key(self, key: APIKey) -> None:
        """Only the description of a key can change."""
        key_id = _require_uuid("update_api_key", key.id)
        modified = now()
        self._affected(
            update(api_keys)
            .where(api_keys.c.id == key_id)
            .values(description=key.description, modified=modified.isoformat())
        )
        key.modified = modified

    @mutates
    def update_last_seen(self, key_id: UUID, when: datetime) -> None:
        key = _require_uuid("update_last_seen", key_id)
        self._affected(
            update(api_keys)
            .where(api_keys.c.id == key)
            .values(last_seen=as_utc(when).isoformat(), modified=now().isoformat())
        )

    @mutates
    def add_permission_to_api_key(self, key_id: UUID, permission: int | str | Permission) -> None:
        key = _require_uuid("add_permission_to_api_key", key_id)
        self._grant(key, self.retrieve_permission(permission), now().isoformat())

    @mutates
    def remove_permission_from_api_key(self, key_id: UUID, permission_id: int) -> None:
        key = _require_uuid("remove_permission_from_api_key", key_id)
        permission_id = _require_int("remove_permission_from_api_key", permission_id)
        self._affected(
            delete(api_key_permissions).where(
                (api_key_permissions.c.api_key_id == key) & (api_key_permissions.c.permission_id == permission_id)
            )
        )

    @mutates
    def revoke_api_key(self, key_id: UUID) -> None:
        key = _require_uuid("revoke_api_key", key_id)
        stamp = now().isoformat()
        self._affected(update(api_keys).where(api_keys.c.id == key).values(revoked=stamp, modified=stamp))

    @mutates
    def delete_api_key(self, key_id: UUID) -> None:
        key = _require_uuid("delete_api_key", key_id)
        self._affected(delete(api_keys).where(api_keys.c.id == key))

    # ------------------------------------------------------------------
    # OIDC clients
    # ------------------------------------------------------------------

    @reads
    def list_oidc_clients(self, page: Page | None = None) -> OIDCClientList:
        page = Page.from_page(page)
        stmt = (
            select(*columns(oidc_clients, OIDCClient.SUMMARY_FIELDS))
            .where(oidc_clients.c.revoked.is_(None))
            .order_by(oidc_clients.c.created.desc())
            .limit(page.page_size)
        )
        return OIDCClientList(
            page=page, clients=[OIDCClient.scan_summary(r) for r in self._execute(stmt).fetchall()]
        )

    @mutates
    @_creates
    def create_oidc_client(self, client: OIDCClient) -> None:
        if not is_zero(client.id):
            raise NoIDOnCreate()
        client.validate(debug=self._debug)

        client.id = new_id()
        client.created = now()
        client.modified = client.created
        self._execute(insert(oidc_clients).values(**client.params()))

    @reads
    def retrieve_oidc_client(self, identifier: UUID | str) -> OIDCClient:
        if isinstance(identifier, UUID):
            if is_zero(identifier):
                raise MissingID()
            where = oidc_clients.c.id == identifier.bytes
        elif isinstance(identifier, str):
            if not identifier:
                raise MissingID()
            where = oidc_clients.c.client_id == identifier
        else:
            raise UnsupportedIdentifier("retrieve_oidc_client", identifier)

        return OIDCClient.scan(self._one(select(*columns(oidc_clients, OIDCClient.FIELDS)).where(where)))

    @mutates
    def update_oidc_client(self, client: OIDCClient) -> None:
        """Replace the client's metadata, redirect URIs and contacts.

        client_id, secret and created_by are immutable once registered.
        """
        client_id = _require_uuid("update_oidc_client", client.id)
        client.validate(debug=self._debug)

        params = client.params()
        modified = now()
        self._affected(
            update(oidc_clients)
            .where(oidc_clients.c.id == client_id)
            .values(
                client_name=params["client_name"],
                client_uri=params["client_uri"],
                logo_uri=params["logo_uri"],
                policy_uri=params["policy_uri"],
                tos_uri=params["tos_uri"],
                redirect_uris=params["redirect_uris"],
                contacts=params["contacts"],
                modified=modified.isoformat(),
            )
        )
        client.modified = modified

    @mutates
    def revoke_oidc_client(self, client_id: UUID) -> None:
        key = _require_uuid("revoke_oidc_client", client_id)
        stamp = now().isoformat()
        self._affected(update(oidc_clients).where(oidc_clients.c.id == key).values(revoked=stamp, modified=stamp))

    @mutates
    def delete_oidc_client(self, client_id: UUID) -> None:
        key = _require_uuid("delete_oidc_client", client_id)
        self._affected(delete(oidc_clients).where(oidc_clients.c.id == key))

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    @mutates
    @_creates
    def create_vero_token(self, token: VeroToken) -> None:
        if not is_zero(token.id):
            raise NoIDOnCreate()
        if not token.email or token.expiration is None:
            raise ZeroValuedNotNull("email and expiration are required")
        token.id = new_id()
        token.created = now()
        token.modified = token.created
        self._execute(insert(vero_tokens).values(**token.params()))

    @reads
    def retrieve_vero_token(self, token_id: UUID) -> VeroToken:
        key = _require_uuid("retrieve_vero_token", token_id)
        return VeroToken.scan(self._one(select(*columns(vero_tokens, VeroToken.FIELDS)).where(vero_tokens.c.id == key)))

    @mutates
    def update_vero_token(self, token: VeroToken) -> None:
        key = _require_uuid("update_vero_token", token.id)
        if not token.email or token.expiration is None:
            raise ZeroValuedNotNull("email and expiration are required")
        params = token.params()
        modified = now()
        self._affected(
            update(vero_tokens)
            .where(vero_tokens.c.id == key)
            .values(
                token_type=params["token_type"],
                resource_id=params["resource_id"],
                email=params["email"],
                expiration=params["expiration"],
                signature=params["signature"],
                sent_on=params["sent_on"],
                modified=modified.isoformat(),
            )
        )
        token.modified = modified

    @mutates
    def delete_vero_token(self, token_id: UUID) -> None:
        key = _require_uuid("delete_vero_token", token_id)
        self._affected(delete(vero_tokens).where(vero_tokens.c.id == key))

    @mutates
    def create_reset_password_vero_token(self, token: VeroToken) -> None:
        """Issue a reset password token unless an unexpired one already exists.

        Expired tokens for the same user are deleted first. That DELETE is the
        transaction's first write, so it takes the database write lock before
        the unexpired check runs and concurrent callers queue behind it. In a
        caller-managed Txn the lock is only taken here, after any earlier reads.
        """
        token.token_type = TokenType.parse(token.token_type)
        if token.token_type is TokenType.UNKNOWN:
            token.token_type = TokenType.RESET_PASSWORD
        if token.token_type is not TokenType.RESET_PASSWORD:
            raise ValidationError([FieldError("token_type", "must be reset_password")])
        if is_zero(token.resource_id):
            raise ZeroValuedNotNull("resource_id is required for reset password tokens")

        same_user = (vero_tokens.c.token_type == TokenType.RESET_PASSWORD.value) & (
            vero_tokens.c.resource_id == token.resource_id.bytes
        )
        current = now()
        expired = func.julianday(vero_tokens.c.expiration) <= func.julianday(current.isoformat())
        self._execute(delete(vero_tokens).where(same_user & expired))

        if self._execute(select(vero_tokens.c.id).where(same_user).limit(1)).first() is not None:
            raise TooSoon()

        self.create_vero_token(token)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SQLiteStore(Store):
    """SQLite-backed Store.

    Usage:
        store = SQLiteStore(DSN.parse("sqlite3:////var/lib/idstore/id.db"))
        store.create_user(User(email="a@example.com", password=hashed))
        store.close()

    Opening runs any pending migrations first; a read-only store then marks
    every pooled connection query_only as well as refusing read-write
    transactions up front.
    """

    def __init__(self, dsn: DSN, debug: bool = False, **kwargs) -> None:
        super().__init__(readonly=dsn.readonly, debug=debug, **kwargs)
        if not dsn.path:
            raise PathRequired()
        self.dsn = dsn
        self.path = dsn.path

        connect_args: dict = {"check_same_thread": False}
        if self.path == MEMORY:
            # One shared connection, otherwise each pool checkout sees a blank database.
            self.engine: Engine = create_engine("sqlite://", connect_args=connect_args, poolclass=StaticPool)
        else:
            self.engine = create_engine(f"sqlite:///{Path(self.path)}", connect_args=connect_args)
        event.listen(self.engine, "connect", _set_pragmas)

        schema.migrate(self.engine)

        if self.readonly:
            if self.path == MEMORY:
                with self.engine.connect() as conn:
                    conn.exec_driver_sql("PRAGMA query_only=ON")
            else:
                event.listen(self.engine, "connect", _set_query_only)
                # Connections opened for migrations are writable; drop them.
                self.engine.dispose()

        logger.info("opened sqlite store at %s (%s)", self.path, "read-only" if self.readonly else "read-write")

    def _begin(self, readonly: bool, cancel: threading.Event | None) -> SQLiteTxn:
        conn = self.engine.connect()
        try:
            return SQLiteTxn(conn, readonly=readonly, cancel=cancel, debug=self.debug)
        except SQLAlchemyError as exc:
            conn.close()
            raise translate(exc) from exc

    def row_counts(self) -> dict[str, int]:
        with self.engine.connect() as conn:
            return schema.row_counts(conn)

    def close(self) -> None:
        self.engine.dispose()
