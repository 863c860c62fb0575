"""
Tests for store/schema.py -- migration discovery and the migration runner.

Covers:
- migration file names parse into (id, title-cased name)
- bad names and duplicate numbers raise MigrationError
- a fresh database gets every migration applied and recorded
- re-running is a no-op
- a failing script is rolled back and not recorded
- the Table definitions match the columns the DDL actually created
"""

import shutil
from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect, select

from core import __version__
from core.errors import MigrationError
from store import schema
from store.schema import MIGRATIONS_DIR, Migration, last_applied, load_migrations, migrate


def _engine(tmp_path: Path):
    return create_engine(f"sqlite:///{tmp_path / 'schema.db'}")


class TestMigrationFiles:
    def test_from_path(self) -> None:
        m = Migration.from_path(Path("0002_oidc_clients.sql"))
        assert m.id == 2
        assert m.name == "Oidc Clients"

    @pytest.mark.parametrize("name", ["initial.sql", "0001-initial.sql", "0001_initial.txt"])
    def test_bad_names(self, name: str) -> None:
        with pytest.raises(MigrationError):
            Migration.from_path(Path(name))

    def test_shipped_migrations_are_ordered(self) -> None:
        assert [m.id for m in load_migrations()] == [1, 2]

    def test_duplicate_numbers(self, tmp_path: Path) -> None:
        (tmp_path / "0001_first.sql").write_text("SELECT 1;")
        (tmp_path / "0001_second.sql").write_text("SELECT 1;")
        with pytest.raises(MigrationError, match="duplicate"):
            load_migrations(tmp_path)

    def test_unreadable_script(self, tmp_path: Path) -> None:
        with pytest.raises(MigrationError, match="could not read"):
            Migration.from_path(tmp_path / "0009_missing.sql").script()


class TestMigrate:
    def test_fresh_database(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        try:
            assert migrate(engine) == 2
            with engine.connect() as conn:
                rows = conn.execute(
                    select(schema.migrations.c.id, schema.migrations.c.name, schema.migrations.c.version)
                ).fetchall()
            assert [tuple(r) for r in rows] == [
                (1, "Initial Schema", __version__),
                (2, "Oidc Clients", __version__),
            ]
        finally:
            engine.dispose()

    def test_rerun_is_noop(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        try:
            migrate(engine)
            assert migrate(engine) == 0
        finally:
            engine.dispose()

    def test_failing_migration_is_rolled_back(self, tmp_path: Path) -> None:
        directory = tmp_path / "migrations"
        shutil.copytree(MIGRATIONS_DIR, directory)
        (directory / "0003_broken.sql").write_text(
            "BEGIN;\nCREATE TABLE broken (id INTEGER);\nINSERT INTO no_such_table VALUES (1);\nCOMMIT;\n"
        )
        engine = _engine(tmp_path)
        try:
            with pytest.raises(MigrationError, match="migration 3"):
                migrate(engine, directory)
            with engine.connect() as conn:
                assert last_applied(conn) == 2
                assert not inspect(conn).has_table("broken")
        finally:
            engine.dispose()

    def test_tables_match_ddl(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        try:
            migrate(engine)
            inspector = inspect(engine)
            for name in schema.TABLES:
                declared = [c.name for c in schema.metadata.tables[name].columns]
                actual = [c["name"] for c in inspector.get_columns(name)]
                assert declared == actual, name
            assert "user_permissions" in inspector.get_view_names()
        finally:
            engine.dispose()
