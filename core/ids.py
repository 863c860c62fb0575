"""
core/ids.py -- Identifier and timestamp helpers shared by every entity.

IDs are UUIDv7 values: globally unique and ordered by creation time, so sorting
by ID approximates sorting by creation. The all-zero UUID is the "not yet
created" sentinel. Timestamps are always timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

import uuid7

ZERO_ID = UUID(int=0)


def new_id() -> UUID:
    return uuid7.create()


def is_zero(value: UUID | None) -> bool:
    return value is None or value == ZERO_ID


def now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
