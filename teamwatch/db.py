"""SQLite session-history database with file-based versioned migrations.

The database lives at ``<TEAMWATCH_HOME>/db.sqlite``.  On first access the
``schema_meta`` table is created and pending migrations are applied in
order.  Each migration is idempotent (uses ``IF NOT EXISTS``).

Migrations live as numbered SQL files in ``teamwatch/migrations/V001.sql``,
``V002.sql``, etc.  ``ensure_schema()`` discovers them at import time,
creates an automatic backup before applying new ones, runs an integrity
check afterwards, and restores the backup on failure.

Usage::

    from teamwatch.db import get_connection, ensure_schema

    ensure_schema(db_path)          # at startup (or lazily on first query)

    conn = get_connection(db_path)
    ...
    conn.close()
"""

import logging
import re
import shutil
import sqlite3
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

# Per-process cache to avoid redundant schema checks, keyed by DB path.
_schema_verified: dict[str, int] = {}
_schema_lock = threading.Lock()

BUSY_TIMEOUT_MS = 5000

# ---------------------------------------------------------------------------
# Migration registry  (file-based)
# ---------------------------------------------------------------------------
# To add a new migration, create a new V{N+1}.sql file.  NEVER reorder or
# modify existing files.

def _load_migrations() -> list[str]:
    """Load migration SQL from teamwatch/migrations/V{NNN}.sql files.

    Files are sorted numerically by version number.  Returns a list of SQL
    strings where index 0 is V001, index 1 is V002, etc.
    """
    migrations_dir = Path(__file__).parent / "migrations"
    if not migrations_dir.is_dir():
        return []

    files: list[tuple[int, Path]] = []
    for p in migrations_dir.iterdir():
        m = re.match(r"^V(\d+)\.sql$", p.name)
        if m:
            files.append((int(m.group(1)), p))

    files.sort(key=lambda t: t[0])

    for idx, (version, _path) in enumerate(files, start=1):
        if version != idx:
            raise RuntimeError(
                f"Migration gap: expected V{idx:03d}.sql but found V{version:03d}.sql"
            )

    return [p.read_text() for _, p in files]


MIGRATIONS: list[str] = _load_migrations()

REQUIRED_TABLES = frozenset(
    {"schema_meta", "sessions", "session_members", "session_messages", "session_tasks"}
)


# ---------------------------------------------------------------------------
# Schema management
# ---------------------------------------------------------------------------

def _current_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied migration version, or 0."""
    row = conn.execute("SELECT MAX(version) FROM schema_meta").fetchone()
    return row[0] or 0


def _backup_db(db_path: Path, version: int) -> Path | None:
    """Copy the DB to ``db.sqlite.bak.V{version}`` next to it.

    Returns the backup path, or None if the source DB doesn't exist yet.
    """
    if not db_path.exists():
        return None
    backup_path = db_path.with_name(f"{db_path.name}.bak.V{version}")
    shutil.copy2(str(db_path), str(backup_path))
    logger.info("DB backup created: %s", backup_path)
    return backup_path


def _verify_db_health(conn: sqlite3.Connection) -> None:
    """Run a quick integrity check on the database.

    Raises RuntimeError if the DB is corrupt or core tables are missing.
    """
    result = conn.execute("PRAGMA integrity_check").fetchone()
    if result[0] != "ok":
        raise RuntimeError(f"DB integrity check failed: {result[0]}")

    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    missing = REQUIRED_TABLES - {row[0] for row in rows}
    if missing:
        raise RuntimeError(f"DB health check: missing tables {sorted(missing)}")


def ensure_schema(db_path: Path) -> None:
    """Apply any pending migrations to the database at *db_path*.

    Safe to call repeatedly, from several threads or processes: each
    migration step runs inside ``BEGIN IMMEDIATE`` and re-checks the
    applied version once it holds the write lock.

    Raises ``sqlite3.OperationalError`` if the location is unwritable;
    callers treat that as a fatal startup failure.
    """
    key = str(db_path)
    target_version = len(MIGRATIONS)

    with _schema_lock:
        if _schema_verified.get(key) == target_version:
            return

    db_path.parent.mkdir(parents=True, exist_ok=True)

    # Autocommit mode: BEGIN / COMMIT / ROLLBACK are managed explicitly.
    conn = sqlite3.connect(str(db_path), isolation_level=None, timeout=BUSY_TIMEOUT_MS / 1000)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")

        conn.execute("BEGIN IMMEDIATE")
        conn.execute("""\
            CREATE TABLE IF NOT EXISTS schema_meta (
                version    INTEGER PRIMARY KEY,
                applied_at TEXT    NOT NULL
                           DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
            )
        """)
        conn.execute("COMMIT")

        current = _current_version(conn)
        if current < target_version:
            _apply_pending(conn, db_path, current)

        _verify_db_health(conn)
    finally:
        conn.close()

    with _schema_lock:
        _schema_verified[key] = target_version


def _apply_pending(conn: sqlite3.Connection, db_path: Path, current: int) -> None:
    backup_path = _backup_db(db_path, current + 1)
    try:
        for version, sql in enumerate(MIGRATIONS[current:], start=current + 1):
            stmts = [s.strip() for s in sql.split(";") if s.strip()]
            try:
                conn.execute("BEGIN IMMEDIATE")
                if _current_version(conn) >= version:
                    # Another process applied it while we waited for the lock.
                    conn.execute("COMMIT")
                    continue
                logger.info("Applying migration V%d", version)
                for stmt in stmts:
                    conn.execute(stmt)
                conn.execute("INSERT INTO schema_meta (version) VALUES (?)", (version,))
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
            logger.info("Migration V%d applied", version)
    except Exception:
        if backup_path and backup_path.exists():
            logger.error("Migration failed, restoring DB from backup %s", backup_path)
            shutil.copy2(str(backup_path), str(db_path))
        raise


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Open a connection with row_factory, WAL and foreign keys enabled.

    The schema is brought up to date first.  Callers are responsible for
    closing the connection.  The connection is in autocommit mode; use
    ``BEGIN IMMEDIATE`` / ``COMMIT`` for multi-statement writes.
    """
    ensure_schema(db_path)
    conn = sqlite3.connect(
        str(db_path),
        isolation_level=None,
        timeout=BUSY_TIMEOUT_MS / 1000,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn
