"""
store/models.py -- Domain dataclasses for identity store entities.

Pattern: Data class + explicit Data Mapper contract. Every entity declares an
ordered FIELDS tuple naming its columns. scan(row) reads a row positionally in
exactly that order and converts storage values (16-byte UUIDs, ISO 8601 text,
0/1 integers, JSON text) into Python values; params() goes the other way and
returns a dict whose keys are FIELDS in the same order. Queries select columns
from FIELDS, so the column order in a SELECT and the order scan() expects can
never drift apart. No reflection or automatic ORM mapping is involved.

Associations (User.roles, Role.permissions, APIKey.permissions, creators) are
lazy: None means "not loaded" and the accessor raises MissingAssociation,
while an empty list means "loaded, there are none". The store fills them in on
retrieval; callers may also set them before create to attach children.

Layer rule: imports only from core/. Stores import models, never the reverse.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import ClassVar
from urllib.parse import urlsplit
from uuid import UUID

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from core.enums import APIKeyStatus, TokenType
from core.errors import FieldError, MissingAssociation, ValidationError
from core.ids import ZERO_ID, as_utc, is_zero, now

DEFAULT_PAGE_SIZE = 50
STALE_AFTER = timedelta(days=90)
LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

_EMAIL = TypeAdapter(EmailStr)

# ---------------------------------------------------------------------------
# Storage conversions
# ---------------------------------------------------------------------------


def _uuid_in(value) -> UUID | None:
    if value is None:
        return None
    if isinstance(value, UUID):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return UUID(bytes=bytes(value))
    return UUID(str(value))


def _uuid_out(value: UUID | None) -> bytes | None:
    # Zero IDs are written as NULL for optional references.
    if is_zero(value):
        return None
    return value.bytes


def _ts_in(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def _ts_out(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat()


def _json_list_in(value) -> list:
    if value is None or value == "":
        return []
    return list(json.loads(value))


def _json_list_out(value: list | None) -> str | None:
    if not value:
        return None
    return json.dumps(list(value))


# ---------------------------------------------------------------------------
# Base model and pagination
# ---------------------------------------------------------------------------


@dataclass
class Model:
    """ID and timestamps shared by every entity; all three are set by the store."""

    id: UUID = ZERO_ID
    created: datetime | None = None
    modified: datetime | None = None


@dataclass
class Page:
    """Describes a list query and the list it produced.

    next_page_id/prev_page_id are cursors reserved for backends that page by
    ID; they are passed through unchanged.
    """

    page_size: int = DEFAULT_PAGE_SIZE
    next_page_id: UUID | None = None
    prev_page_id: UUID | None = None

    @classmethod
    def from_page(cls, page: Page | None) -> Page:
        out = cls()
        if page is not None:
            if page.page_size and page.page_size > 0:
                out.page_size = page.page_size
            out.next_page_id = page.next_page_id
            out.prev_page_id = page.prev_page_id
        return out


@dataclass
class UserPage(Page):
    """Page of users optionally restricted to one role title (case-insensitive)."""

    role: str = ""

    @classmethod
    def from_page(cls, page: Page | None) -> UserPage:
        out = cls()
        if page is not None:
            base = Page.from_page(page)
            out.page_size = base.page_size
            out.next_page_id = base.next_page_id
            out.prev_page_id = base.prev_page_id
            out.role = getattr(page, "role", "") or ""
        return out


# ---------------------------------------------------------------------------
# Permissions and roles
# ---------------------------------------------------------------------------


@dataclass
class Permission(Model):
    """A named capability. Granted to roles, or directly to API keys."""

    id: int = 0
    title: str = ""
    description: str | None = None

    FIELDS: ClassVar[tuple[str, ...]] = ("id", "title", "description", "created", "modified")

    @classmethod
    def scan(cls, row) -> Permission:
        id_, title, description, created, modified = row
        return cls(id=id_, title=title, description=description, created=_ts_in(created), modified=_ts_in(modified))

    def params(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "created": _ts_out(self.created),
            "modified": _ts_out(self.modified),
        }


@dataclass
class Role(Model):
    """A named bundle of permissions assigned to users.

    Roles with is_default set are attached to every new user created without
    an explicit role list.
    """

    id: int = 0
    title: str = ""
    description: str | None = None
    is_default: bool = False
    _permissions: list[Permission] | None = field(default=None, init=False, repr=False)

    FIELDS: ClassVar[tuple[str, ...]] = ("id", "title", "description", "is_default", "created", "modified")

    @classmethod
    def scan(cls, row) -> Role:
        id_, title, description, is_default, created, modified = row
        return cls(
            id=id_,
            title=title,
            description=description,
            is_default=bool(is_default),
            created=_ts_in(created),
            modified=_ts_in(modified),
        )

    def params(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "is_default": 1 if self.is_default else 0,
            "created": _ts_out(self.created),
            "modified": _ts_out(self.modified),
        }

    def permissions(self) -> list[Permission]:
        if self._permissions is None:
            raise MissingAssociation()
        return self._permissions

    def set_permissions(self, permissions: list[Permission] | None) -> None:
        self._permissions = list(permissions) if permissions is not None else None


@dataclass
class RoleList:
    page: Page
    roles: list[Role] = field(default_factory=list)


@dataclass
class PermissionList:
    page: Page
    permissions: list[Permission] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@dataclass
class User(Model):
    """A human account.

    password holds an already-hashed secret; this layer stores and returns it
    verbatim. permissions is derived from roles on every retrieval and is never
    written to the users table.
    """

    name: str | None = None
    email: str = ""
    password: str = ""
    last_login: datetime | None = None
    email_verified: bool = False
    _roles: list[Role] | None = field(default=None, init=False, repr=False)
    _permissions: list[str] | None = field(default=None, init=False, repr=False)

    FIELDS: ClassVar[tuple[str, ...]] = (
        "id",
        "name",
        "email",
        "password",
        "last_login",
        "email_verified",
        "created",
        "modified",
    )
    SUMMARY_FIELDS: ClassVar[tuple[str, ...]] = (
        "id",
        "name",
        "email",
        "last_login",
        "email_verified",
        "created",
        "modified",
    )

    @classmethod
    def scan(cls, row) -> User:
        id_, name, email, password, last_login, email_verified, created, modified = row
        return cls(
            id=_uuid_in(id_),
            name=name,
            email=email,
            password=password,
            last_login=_ts_in(last_login),
            email_verified=bool(email_verified),
            created=_ts_in(created),
            modified=_ts_in(modified),
        )

    @classmethod
    def scan_summary(cls, row) -> User:
        id_, name, email, last_login, email_verified, created, modified = row
        return cls(
            id=_uuid_in(id_),
            name=name,
            email=email,
            last_login=_ts_in(last_login),
            email_verified=bool(email_verified),
            created=_ts_in(created),
            modified=_ts_in(modified),
        )

    def params(self) -> dict:
        return {
            "id": _uuid_out(self.id),
            "name": self.name,
            "email": self.email,
            "password": self.password,
            "last_login": _ts_out(self.last_login),
            "email_verified": 1 if self.email_verified else 0,
            "created": _ts_out(self.created),
            "modified": _ts_out(self.modified),
        }

    def roles(self) -> list[Role]:
        if self._roles is None:
            raise MissingAssociation()
        return self._roles

    def set_roles(self, roles: list[Role] | None) -> None:
        self._roles = list(roles) if roles is not None else None

    def permissions(self) -> list[str]:
        if self._permissions is None:
            raise MissingAssociation()
        return self._permissions

    def set_permissions(self, permissions: list[str] | None) -> None:
        self._permissions = list(permissions) if permissions is not None else None

    def has_permission(self, title: str) -> bool:
        return title in self.permissions()


@dataclass
class UserList:
    page: UserPage
    users: list[User] = field(default_factory=list)


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


def api_key_status(
    revoked: datetime | None,
    last_seen: datetime | None,
    when: datetime | None = None,
    stale_after: timedelta = STALE_AFTER,
) -> APIKeyStatus:
    """Classify an API key from its timestamps. First match wins.

    revoked always wins, even for a key used a moment ago; a key that has
    never been seen is unused; a key last seen more than stale_after before
    `when` is stale; everything else is active.
    """
    if revoked is not None:
        return APIKeyStatus.REVOKED
    if last_seen is None:
        return APIKeyStatus.UNUSED
    when = as_utc(when) if when is not None else now()
    if when - as_utc(last_seen) > stale_after:
        return APIKeyStatus.STALE
    return APIKeyStatus.ACTIVE


@dataclass
class APIKey(Model):
    """Machine credential. Permissions are granted directly, never through roles.

    revoked is a timestamp rather than a flag: its presence means the key is
    revoked and its value records when.
    """

    description: str | None = None
    client_id: str = ""
    secret: str = ""
    created_by: UUID = ZERO_ID
    last_seen: datetime | None = None
    revoked: datetime | None = None
    _permissions: list[str] | None = field(default=None, init=False, repr=False)
    _creator: User | None = field(default=None, init=False, repr=False, compare=False)

    FIELDS: ClassVar[tuple[str, ...]] = (
        "id",
        "description",
        "client_id",
        "secret",
        "created_by",
        "last_seen",
        "revoked",
        "created",
        "modified",
    )
    SUMMARY_FIELDS: ClassVar[tuple[str, ...]] = (
        "id",
        "description",
        "client_id",
        "created_by",
        "last_seen",
        "revoked",
        "created",
        "modified",
    )

    @classmethod
    def scan(cls, row) -> APIKey:
        id_, description, client_id, secret, created_by, last_seen, revoked, created, modified = row
        return cls(
            id=_uuid_in(id_),
            description=description,
            client_id=client_id,
            secret=secret,
            created_by=_uuid_in(created_by) or ZERO_ID,
            last_seen=_ts_in(last_seen),
            revoked=_ts_in(revoked),
            created=_ts_in(created),
            modified=_ts_in(modified),
        )

    @classmethod
    def scan_summary(cls, row) -> APIKey:
        id_, description, client_id, created_by, last_seen, revoked, created, modified = row
        return cls(
            id=_uuid_in(id_),
            description=description,
            client_id=client_id,
            created_by=_uuid_in(created_by) or ZERO_ID,
            last_seen=_ts_in(last_seen),
            revoked=_ts_in(revoked),
            created=_ts_in(created),
            modified=_ts_in(modified),
        )

    def params(self) -> dict:
        return {
            "id": _uuid_out(self.id),
            "description": self.description,
            "client_id": self.client_id,
            "secret": self.secret,
            "created_by": _uuid_out(self.created_by),
            "last_seen": _ts_out(self.last_seen),
            "revoked": _ts_out(self.revoked),
            "created": _ts_out(self.created),
            "modified": _ts_out(self.modified),
        }

    def status(self, when: datetime | None = None, stale_after: timedelta = STALE_AFTER) -> APIKeyStatus:
        return api_key_status(self.revoked, self.last_seen, when, stale_after)

    def permissions(self) -> list[str]:
        if self._permissions is None:
            raise MissingAssociation()
        return self._permissions

    def set_permissions(self, permissions: list[str] | None) -> None:
        self._permissions = list(permissions) if permissions is not None else None

    def creator(self) -> User:
        if self._creator is None:
            raise MissingAssociation()
        return self._creator

    def set_creator(self, user: User) -> None:
        self._creator = user
        self.created_by = user.id


@dataclass
class APIKeyList:
    page: Page
    api_keys: list[APIKey] = field(default_factory=list)


# ---------------------------------------------------------------------------
# OIDC clients
# ---------------------------------------------------------------------------


def _check_absolute(field_name: str, raw: str) -> FieldError | None:
    try:
        parts = urlsplit(raw)
        host = parts.hostname
    except ValueError as exc:
        return FieldError(field_name, f"invalid URL: {exc}")
    if not parts.scheme or not parts.netloc or not host:
        return FieldError(field_name, "must be an absolute URL with scheme and host")
    return None


@dataclass
class OIDCClient(Model):
    """A client registered for OpenID Connect login flows.

    redirect_uris and contacts keep their order and are persisted as JSON
    arrays. contacts may contain None entries, which are skipped by validation.
    """

    client_name: str = ""
    client_uri: str | None = None
    logo_uri: str | None = None
    policy_uri: str | None = None
    tos_uri: str | None = None
    redirect_uris: list[str] = field(default_factory=list)
    contacts: list[str | None] = field(default_factory=list)
    client_id: str = ""
    secret: str = ""
    created_by: UUID = ZERO_ID
    revoked: datetime | None = None
    _creator: User | None = field(default=None, init=False, repr=False, compare=False)

    FIELDS: ClassVar[tuple[str, ...]] = (
        "id",
        "client_name",
        "client_uri",
        "logo_uri",
        "policy_uri",
        "tos_uri",
        "redirect_uris",
        "contacts",
        "client_id",
        "secret",
        "created_by",
        "revoked",
        "created",
        "modified",
    )
    SUMMARY_FIELDS: ClassVar[tuple[str, ...]] = tuple(f for f in FIELDS if f != "secret")

    @classmethod
    def scan(cls, row) -> OIDCClient:
        (
            id_,
            client_name,
            client_uri,
            logo_uri,
            policy_uri,
            tos_uri,
            redirect_uris,
            contacts,
            client_id,
            secret,
            created_by,
            revoked,
            created,
            modified,
        ) = row
        return cls(
            id=_uuid_in(id_),
            client_name=client_name,
            client_uri=client_uri,
            logo_uri=logo_uri,
            policy_uri=policy_uri,
            tos_uri=tos_uri,
            redirect_uris=_json_list_in(redirect_uris),
            contacts=_json_list_in(contacts),
            client_id=client_id,
            secret=secret,
            created_by=_uuid_in(created_by) or ZERO_ID,
            revoked=_ts_in(revoked),
            created=_ts_in(created),
            modified=_ts_in(modified),
        )

    @classmethod
    def scan_summary(cls, row) -> OIDCClient:
        # Summary rows lack the secret column; it comes back blank.
        values = list(row)
        values.insert(cls.FIELDS.index("secret"), "")
        return cls.scan(values)

    def params(self) -> dict:
        return {
            "id": _uuid_out(self.id),
            "client_name": self.client_name,
            "client_uri": self.client_uri,
            "logo_uri": self.logo_uri,
            "policy_uri": self.policy_uri,
            "tos_uri": self.tos_uri,
            "redirect_uris": json.dumps(list(self.redirect_uris)),
            "contacts": _json_list_out(self.contacts),
            "client_id": self.client_id,
            "secret": self.secret,
            "created_by": _uuid_out(self.created_by),
            "revoked": _ts_out(self.revoked),
            "created": _ts_out(self.created),
            "modified": _ts_out(self.modified),
        }

    def is_revoked(self) -> bool:
        return self.revoked is not None

    def creator(self) -> User:
        if self._creator is None:
            raise MissingAssociation()
        return self._creator

    def set_creator(self, user: User) -> None:
        self._creator = user
        self.created_by = user.id

    def validate(self, debug: bool = False) -> None:
        """Check the client registration and raise ValidationError listing every problem.

        Redirect URIs must be absolute. Unless debug is set they must also use
        https and must not point at a loopback host, which is what a web client
        in production needs. Optional metadata URIs must be absolute when set
        and contacts must be syntactically valid email addresses.
        """
        errors: list[FieldError] = []

        if not self.client_id:
            errors.append(FieldError("client_id", "required"))
        if not self.secret:
            errors.append(FieldError("secret", "required"))
        if is_zero(self.created_by):
            errors.append(FieldError("created_by", "required"))

        if not self.redirect_uris:
            errors.append(FieldError("redirect_uris", "at least one redirect URI is required"))
        for i, uri in enumerate(self.redirect_uris or []):
            name = f"redirect_uris[{i}]"
            if not uri:
                errors.append(FieldError(name, "redirect URI cannot be empty"))
                continue
            problem = _check_absolute(name, uri)
            if problem is not None:
                errors.append(problem)
                continue
            if not debug:
                parts = urlsplit(uri)
                if parts.scheme != "https":
                    errors.append(FieldError(name, "web clients must use https scheme"))
                if parts.hostname in LOOPBACK_HOSTS:
                    errors.append(FieldError(name, "web clients must not use localhost"))

        for name in ("client_uri", "logo_uri", "policy_uri", "tos_uri"):
            value = getattr(self, name)
            if value:
                problem = _check_absolute(name, value)
                if problem is not None:
                    errors.append(problem)

        for i, contact in enumerate(self.contacts or []):
            if not contact:
                continue
            try:
                _EMAIL.validate_python(contact)
            except PydanticValidationError as exc:
                reason = exc.errors()[0]["msg"] if exc.errors() else str(exc)
                errors.append(FieldError(f"contacts[{i}]", f"invalid email: {reason}"))

        if errors:
            raise ValidationError(errors)


@dataclass
class OIDCClientList:
    page: Page
    clients: list[OIDCClient] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Verification tokens
# ---------------------------------------------------------------------------


@dataclass
class VeroToken(Model):
    """One-time token emailed to a user for a sensitive action.

    signature is opaque: an external signer produces and verifies it, the store
    only keeps the bytes. What resource_id refers to depends on token_type.
    """

    token_type: TokenType = TokenType.UNKNOWN
    resource_id: UUID | None = None
    email: str = ""
    expiration: datetime | None = None
    signature: bytes | None = None
    sent_on: datetime | None = None

    FIELDS: ClassVar[tuple[str, ...]] = (
        "id",
        "token_type",
        "resource_id",
        "email",
        "expiration",
        "signature",
        "sent_on",
        "created",
        "modified",
    )

    @classmethod
    def scan(cls, row) -> VeroToken:
        id_, token_type, resource_id, email, expiration, signature, sent_on, created, modified = row
        return cls(
            id=_uuid_in(id_),
            token_type=TokenType.parse(token_type),
            resource_id=_uuid_in(resource_id),
            email=email,
            expiration=_ts_in(expiration),
            signature=bytes(signature) if signature is not None else None,
            sent_on=_ts_in(sent_on),
            created=_ts_in(created),
            modified=_ts_in(modified),
        )

    def params(self) -> dict:
        return {
            "id": _uuid_out(self.id),
            "token_type": TokenType.parse(self.token_type).value,
            "resource_id": _uuid_out(self.resource_id),
            "email": self.email,
            "expiration": _ts_out(self.expiration),
            "signature": self.signature,
            "sent_on": _ts_out(self.sent_on),
            "created": _ts_out(self.created),
            "modified": _ts_out(self.modified),
        }

    def is_expired(self, when: datetime | None = None) -> bool:
        if self.expiration is None:
            return True
        when = as_utc(when) if when is not None else now()
        return as_utc(self.expiration) <= when
