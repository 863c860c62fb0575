"""
store/schema.py -- Table definitions and the schema migration runner.

The DDL lives in store/migrations/NNNN_snake_name.sql and is the source of
truth for the database; the SQLAlchemy Table objects below mirror it so the
backends can build queries with bound parameters instead of SQL strings.
metadata.create_all() is never called.

Migrations:
  Files are applied in numeric order when their number is greater than the
  last one recorded in the migrations table. Each file wraps its statements
  in BEGIN/COMMIT; once it has run, a (id, name, version, created) row is
  written. A file name that does not match NNNN_snake_name.sql, a duplicate
  number, or a failing script raises MigrationError -- that is a broken
  deployment, not something a request can recover from.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import Column, Integer, LargeBinary, MetaData, Table, Text, func, inspect, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from core import __version__
from core.errors import MigrationError
from core.ids import now

logger = logging.getLogger("idstore.schema")

MIGRATIONS_DIR = Path(__file__).parent / "migrations"
_MIGRATION_NAME = re.compile(r"^(\d+)_(\w+)\.sql$")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

migrations = Table(
    "migrations",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", Text, nullable=False),
    Column("version", Text, nullable=False),
    Column("created", Text, nullable=False),
)

users = Table(
    "users",
    metadata,
    Column("id", LargeBinary(16), primary_key=True),
    Column("name", Text),
    Column("email", Text, nullable=False, unique=True),
    Column("password", Text, nullable=False),  # pre-hashed by the caller
    Column("last_login", Text),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created", Text, nullable=False),
    Column("modified", Text, nullable=False),
)

roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", Text, nullable=False, unique=True),
    Column("description", Text),
    Column("is_default", Integer, nullable=False, server_default="0"),
    Column("created", Text, nullable=False),
    Column("modified", Text, nullable=False),
)

permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", Text, nullable=False, unique=True),
    Column("description", Text),
    Column("created", Text, nullable=False),
    Column("modified", Text, nullable=False),
)

role_permissions = Table(
    "role_permissions",
    metadata,
    Column("role_id", Integer, primary_key=True),
    Column("permission_id", Integer, primary_key=True),
    Column("created", Text, nullable=False),
    Column("modified", Text),
)

user_roles = Table(
    "user_roles",
    metadata,
    Column("user_id", LargeBinary(16), primary_key=True),
    Column("role_id", Integer, primary_key=True),
    Column("created", Text, nullable=False),
    Column("modified", Text),
)

api_keys = Table(
    "api_keys",
    metadata,
    Column("id", LargeBinary(16), primary_key=True),
    Column("description", Text),
    Column("client_id", Text, nullable=False, unique=True),
    Column("secret", Text, nullable=False),  # pre-hashed by the caller
    Column("created_by", LargeBinary(16), nullable=False),
    Column("last_seen", Text),
    Column("revoked", Text),  # NULL until revoked
    Column("created", Text, nullable=False),
    Column("modified", Text, nullable=False),
)

api_key_permissions = Table(
    "api_key_permissions",
    metadata,
    Column("api_key_id", LargeBinary(16), primary_key=True),
    Column("permission_id", Integer, primary_key=True),
    Column("created", Text, nullable=False),
    Column("modified", Text),
)

oidc_clients = Table(
    "oidc_clients",
    metadata,
    Column("id", LargeBinary(16), primary_key=True),
    Column("client_name", Text, nullable=False),
    Column("client_uri", Text),
    Column("logo_uri", Text),
    Column("policy_uri", Text),
    Column("tos_uri", Text),
    Column("redirect_uris", Text, nullable=False),  # JSON array
    Column("contacts", Text),  # JSON array or NULL
    Column("client_id", Text, nullable=False, unique=True),
    Column("secret", Text, nullable=False),
    Column("created_by", LargeBinary(16), nullable=False),
    Column("revoked", Text),
    Column("created", Text, nullable=False),
    Column("modified", Text, nullable=False),
)

vero_tokens = Table(
    "vero_tokens",
    metadata,
    Column("id", LargeBinary(16), primary_key=True),
    Column("token_type", Text, nullable=False),
    Column("resource_id", LargeBinary(16)),
    Column("email", Text, nullable=False),
    Column("expiration", Text, nullable=False),
    Column("signature", LargeBinary),  # opaque, produced by the external signer
    Column("sent_on", Text),
    Column("created", Text, nullable=False),
    Column("modified", Text, nullable=False),
)

# View: distinct (user_id, permission) pairs reachable through user_roles.
user_permissions = Table(
    "user_permissions",
    metadata,
    Column("user_id", LargeBinary(16)),
    Column("permission", Text),
)

TABLES = (
    "users",
    "roles",
    "permissions",
    "role_permissions",
    "user_roles",
    "api_keys",
    "api_key_permissions",
    "oidc_clients",
    "vero_tokens",
    "migrations",
)


def columns(table: Table, fields: tuple[str, ...]) -> list:
    """Columns of table in the order a model's FIELDS declares them."""
    return [table.c[name] for name in fields]


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------


@dataclass
class Migration:
    id: int
    name: str
    path: Path

    @classmethod
    def from_path(cls, path: Path) -> Migration:
        match = _MIGRATION_NAME.match(path.name)
        if match is None:
            raise MigrationError(f"could not parse migration filename {path.name!r}")
        return cls(id=int(match.group(1)), name=match.group(2).replace("_", " ").title(), path=path)

    def script(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise MigrationError(f"could not read migration {self.path.name!r}: {exc}") from exc


def load_migrations(directory: Path = MIGRATIONS_DIR) -> list[Migration]:
    """Every migration in directory, sorted by number."""
    found = sorted((Migration.from_path(p) for p in directory.iterdir() if p.is_file()), key=lambda m: m.id)
    seen: set[int] = set()
    for m in found:
        if m.id in seen:
            raise MigrationError(f"duplicate migration number {m.id}")
        seen.add(m.id)
    return found


def last_applied(conn: Connection) -> int:
    if not inspect(conn).has_table("migrations"):
        return 0
    return conn.execute(select(func.max(migrations.c.id))).scalar() or 0


def migrate(engine: Engine, directory: Path = MIGRATIONS_DIR) -> int:
    """Apply pending migrations and return how many were applied."""
    pending = load_migrations(directory)
    applied = 0
    with engine.connect() as conn:
        try:
            last = last_applied(conn)
            conn.commit()
        except SQLAlchemyError as exc:
            raise MigrationError(f"could not read migrations table: {exc}") from exc

        for m in pending:
            if m.id <= last:
                continue
            script = m.script()
            driver = conn.connection.driver_connection
            try:
                driver.executescript(script)
                conn.execute(
                    migrations.insert().values(id=m.id, name=m.name, version=__version__, created=now().isoformat())
                )
                conn.commit()
            except Exception as exc:
                if driver.in_transaction:
                    driver.rollback()
                raise MigrationError(f"could not apply migration {m.id} ({m.name}): {exc}") from exc
            logger.info("applied migration %04d %s", m.id, m.name)
            applied += 1
    return applied


def row_counts(conn: Connection) -> dict[str, int]:
    """Row count of every table; used by maintenance tooling and tests."""
    return {name: conn.execute(select(func.count()).select_from(metadata.tables[name])).scalar() for name in TABLES}
