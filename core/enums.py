"""
core/enums.py -- String enums persisted by the identity store.

Values are the lowercase strings written to the database, so a TokenType read
back from a row is constructed directly from the column value.
"""

from __future__ import annotations

from enum import Enum


class _ParseMixin:
    """Case-insensitive parsing from strings, bytes, or existing members."""

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        if isinstance(value, str):
            key = value.strip().lower()
            if key == "":
                return cls("unknown")
            for member in cls:
                if member.value == key:
                    return member
            raise ValueError(f"invalid {cls.__name__} {value!r}")
        raise TypeError(f"cannot parse {type(value).__name__} into {cls.__name__}")


class TokenType(_ParseMixin, str, Enum):
    """What a verification token authorizes; decides what its resource_id refers to.

    reset_password and verify_email tokens point at a user; team_invite tokens
    point at the inviting team or resource. The store does not enforce this.
    """

    UNKNOWN = "unknown"
    RESET_PASSWORD = "reset_password"
    VERIFY_EMAIL = "verify_email"
    TEAM_INVITE = "team_invite"

    def __str__(self) -> str:
        return self.value


class APIKeyStatus(_ParseMixin, str, Enum):
    """Derived lifecycle label of an API key. Never persisted."""

    UNKNOWN = "unknown"
    UNUSED = "unused"
    ACTIVE = "active"
    STALE = "stale"
    REVOKED = "revoked"

    def __str__(self) -> str:
        return self.value
