"""Tests for the file-based migration system in teamwatch.db."""

import re
import sqlite3
from pathlib import Path

import pytest

import teamwatch.db as db_mod
from teamwatch.db import (
    MIGRATIONS,
    REQUIRED_TABLES,
    _backup_db,
    _load_migrations,
    _verify_db_health,
    ensure_schema,
    get_connection,
)


def _forget(db_file):
    with db_mod._schema_lock:
        db_mod._schema_verified.pop(str(db_file), None)


# ---------------------------------------------------------------------------
# Migration discovery
# ---------------------------------------------------------------------------

class TestMigrationDiscovery:
    def test_loads_all_migration_files(self):
        """_load_migrations discovers all V*.sql files in order."""
        assert len(_load_migrations()) >= 1

    def test_migrations_are_non_empty(self):
        for i, sql in enumerate(MIGRATIONS, start=1):
            assert sql.strip(), f"Migration V{i:03d} is empty"

    def test_no_gaps_in_numbering(self):
        """Migration files are numbered consecutively without gaps."""
        migrations_dir = Path(__file__).parent.parent / "teamwatch" / "migrations"
        files = sorted(
            p for p in migrations_dir.iterdir()
            if re.match(r"^V\d+\.sql$", p.name)
        )
        for idx, f in enumerate(files, start=1):
            assert f.name == f"V{idx:03d}.sql"

    def test_comments_do_not_split_statements(self):
        """Statements are split on ';', so comments must not contain one."""
        for sql in MIGRATIONS:
            for line in sql.splitlines():
                if line.strip().startswith("--"):
                    assert ";" not in line


# ---------------------------------------------------------------------------
# Backup
# ---------------------------------------------------------------------------

class TestBackup:
    def test_backup_creates_file(self, db_file):
        """_backup_db copies the DB next to itself."""
        conn = sqlite3.connect(str(db_file))
        conn.execute("CREATE TABLE t (id INTEGER)")
        conn.execute("INSERT INTO t VALUES (42)")
        conn.commit()
        conn.close()

        backup = _backup_db(db_file, 5)
        assert backup == db_file.with_name("db.sqlite.bak.V5")
        assert backup.exists()

        conn = sqlite3.connect(str(backup))
        assert conn.execute("SELECT id FROM t").fetchone()[0] == 42
        conn.close()

    def test_backup_returns_none_for_nonexistent_db(self, db_file):
        assert _backup_db(db_file, 1) is None


# ---------------------------------------------------------------------------
# Health verification
# ---------------------------------------------------------------------------

class TestHealthVerification:
    def test_healthy_db_passes(self, db_file):
        ensure_schema(db_file)
        conn = get_connection(db_file)
        _verify_db_health(conn)
        conn.close()

    def test_missing_tables_fail(self, db_file):
        conn = sqlite3.connect(str(db_file), isolation_level=None)
        conn.execute("CREATE TABLE schema_meta (version INTEGER PRIMARY KEY)")
        with pytest.raises(RuntimeError, match="missing tables"):
            _verify_db_health(conn)
        conn.close()


# ---------------------------------------------------------------------------
# Full migration flow
# ---------------------------------------------------------------------------

class TestEnsureSchema:
    def test_fresh_db_applies_all_migrations(self, db_file):
        ensure_schema(db_file)
        conn = get_connection(db_file)
        assert conn.execute("SELECT MAX(version) FROM schema_meta").fetchone()[0] == len(MIGRATIONS)
        tables = {
            r[0] for r in
            conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        }
        assert REQUIRED_TABLES <= tables
        conn.close()

    def test_idempotent(self, db_file):
        ensure_schema(db_file)
        _forget(db_file)
        ensure_schema(db_file)

    def test_creates_parent_directory(self, tmp_path):
        db_file = tmp_path / "nested" / "home" / "db.sqlite"
        ensure_schema(db_file)
        assert db_file.exists()

    def test_wal_mode(self, db_file):
        conn = get_connection(db_file)
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        conn.close()

    def test_rollback_on_bad_migration(self, db_file):
        """If a migration fails, the DB is restored from backup."""
        ensure_schema(db_file)
        conn = get_connection(db_file)
        conn.execute(
            "INSERT INTO sessions (team_name, created_at, started_at) VALUES ('alpha', 1, 'x')"
        )
        conn.close()

        original = db_mod.MIGRATIONS[:]
        db_mod.MIGRATIONS.append("INVALID SQL THAT WILL FAIL;")
        _forget(db_file)
        try:
            with pytest.raises(sqlite3.Error):
                ensure_schema(db_file)

            assert db_file.with_name(f"db.sqlite.bak.V{len(original) + 1}").exists()
            conn = sqlite3.connect(str(db_file))
            row = conn.execute("SELECT team_name FROM sessions").fetchone()
            assert row[0] == "alpha"
            assert conn.execute("SELECT MAX(version) FROM schema_meta").fetchone()[0] == len(original)
            conn.close()
        finally:
            db_mod.MIGRATIONS[:] = original
            _forget(db_file)
