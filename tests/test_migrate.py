"""Unit tests for migrate.py - Schema migrations."""

import pytest
from unittest.mock import AsyncMock, MagicMock
from contextlib import asynccontextmanager

import migrate
from migrate import (
    MIGRATION_LOCK_ID,
    apply_migration,
    discover_migrations,
    ensure_migration_table,
    get_applied_versions,
    run_migrations,
)


def make_connection(applied=()):
    conn = AsyncMock()
    conn.fetch = AsyncMock(return_value=[{"version": v} for v in applied])
    mock_transaction = AsyncMock()
    mock_transaction.__aenter__ = AsyncMock(return_value=mock_transaction)
    mock_transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=mock_transaction)
    return conn


def make_pool(conn):
    pool = MagicMock()

    @asynccontextmanager
    async def mock_acquire():
        yield conn

    pool.acquire = mock_acquire
    return pool


def executed_sql(conn):
    return [c[0][0] for c in conn.execute.call_args_list]


class TestDiscoverMigrations:
    """Tests for discover_migrations function."""

    def test_sorted_by_version(self, tmp_path):
        (tmp_path / "010_later.sql").write_text("SELECT 10;")
        (tmp_path / "001_initial.sql").write_text("SELECT 1;")
        (tmp_path / "002_pods.sql").write_text("SELECT 2;")

        result = discover_migrations(tmp_path)

        assert [m[0] for m in result] == ["001", "002", "010"]
        assert result[0][1] == "001_initial.sql"
        assert result[0][2] == tmp_path / "001_initial.sql"

    def test_ignores_other_files(self, tmp_path):
        (tmp_path / "001_initial.sql").write_text("SELECT 1;")
        (tmp_path / "002_notes.txt").write_text("not a migration")
        (tmp_path / "schema.sql").write_text("SELECT 1;")
        (tmp_path / "1_short.sql").write_text("SELECT 1;")
        (tmp_path / "003_dir.sql").mkdir()

        assert [m[0] for m in discover_migrations(tmp_path)] == ["001"]

    def test_default_directory(self, tmp_path, monkeypatch):
        (tmp_path / "001_initial.sql").write_text("SELECT 1;")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        assert len(discover_migrations()) == 1

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            discover_migrations(tmp_path / "missing")

    def test_shipped_migrations(self):
        result = discover_migrations()
        assert result[0][1] == "001_initial.sql"
        sql = result[0][2].read_text()
        assert "CREATE TABLE IF NOT EXISTS postgresqls" in sql
        assert "CREATE TABLE IF NOT EXISTS pods" in sql
        assert "deletion_timestamp" in sql


@pytest.mark.asyncio
class TestMigrationHelpers:
    """Tests for the per-connection helpers."""

    async def test_ensure_migration_table(self):
        conn = AsyncMock()
        await ensure_migration_table(conn)
        sql = conn.execute.call_args[0][0]
        assert "CREATE TABLE IF NOT EXISTS schema_migrations" in sql

    async def test_get_applied_versions(self):
        conn = make_connection(applied=["001", "002"])
        assert await get_applied_versions(conn) == {"001", "002"}

    async def test_apply_migration_records_version(self, tmp_path):
        path = tmp_path / "001_initial.sql"
        path.write_text("CREATE TABLE t (id INT);")
        conn = make_connection()

        await apply_migration(conn, "001", "001_initial.sql", path)

        conn.transaction.assert_called_once()
        conn.execute.assert_any_call("CREATE TABLE t (id INT);")
        conn.execute.assert_any_call(
            "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
            "001",
            "001_initial.sql",
        )

    async def test_apply_migration_propagates_errors(self, tmp_path):
        path = tmp_path / "001_bad.sql"
        path.write_text("NOT SQL;")
        conn = make_connection()
        conn.execute = AsyncMock(side_effect=Exception("syntax error"))

        with pytest.raises(Exception, match="syntax error"):
            await apply_migration(conn, "001", "001_bad.sql", path)


@pytest.mark.asyncio
class TestRunMigrations:
    """Tests for run_migrations function."""

    async def test_applies_only_pending(self, tmp_path):
        (tmp_path / "001_initial.sql").write_text("SELECT 1;")
        (tmp_path / "002_more.sql").write_text("SELECT 2;")
        (tmp_path / "003_most.sql").write_text("SELECT 3;")
        conn = make_connection(applied=["001"])

        result = await run_migrations(make_pool(conn), tmp_path)

        assert result == 2
        sql = executed_sql(conn)
        assert "SELECT 1;" not in sql
        assert sql.index("SELECT 2;") < sql.index("SELECT 3;")

    async def test_up_to_date(self, tmp_path):
        (tmp_path / "001_initial.sql").write_text("SELECT 1;")
        conn = make_connection(applied=["001"])

        assert await run_migrations(make_pool(conn), tmp_path) == 0

    async def test_holds_advisory_lock(self, tmp_path):
        (tmp_path / "001_initial.sql").write_text("SELECT 1;")
        conn = make_connection()

        await run_migrations(make_pool(conn), tmp_path)

        calls = conn.execute.call_args_list
        assert calls[0][0] == ("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_ID)
        assert "schema_migrations" in calls[1][0][0]
        assert calls[-1][0] == ("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)

    async def test_unlocks_after_failure(self, tmp_path):
        (tmp_path / "001_bad.sql").write_text("NOT SQL;")
        conn = make_connection()

        async def execute(sql, *args):
            if sql == "NOT SQL;":
                raise Exception("syntax error")

        conn.execute = AsyncMock(side_effect=execute)

        with pytest.raises(Exception, match="syntax error"):
            await run_migrations(make_pool(conn), tmp_path)

        assert conn.execute.call_args[0] == (
            "SELECT pg_advisory_unlock($1)",
            MIGRATION_LOCK_ID,
        )

    async def test_missing_directory_touches_nothing(self, tmp_path):
        conn = make_connection()

        with pytest.raises(FileNotFoundError):
            await run_migrations(make_pool(conn), tmp_path / "missing")

        conn.execute.assert_not_called()
