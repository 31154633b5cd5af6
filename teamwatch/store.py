"""Durable, idempotent history of observed team sessions.

A *session* is one run of a team, identified by ``(team name, createdAt)``
from the team's config.  Rows below a session are keyed so that replaying
the same file content any number of times adds nothing:

* ``sessions``          UNIQUE (team_name, created_at), refetch on conflict
* ``session_members``   lookup-or-insert on (session, agent_id) in one batch
* ``session_messages``  UNIQUE (session, recipient, sender, timestamp), ignore
* ``session_tasks``     UNIQUE (session, task_id), upsert (latest wins)

No in-process lock protects these invariants.  Every write runs in its own
``BEGIN IMMEDIATE`` transaction on its own connection, so the store stays
correct when several threads or processes write concurrently.
"""

import contextlib
import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone
from pathlib import Path

from teamwatch.db import ensure_schema, get_connection
from teamwatch.models import ChangeKind, InboxMessage, Member, Task, TeamChange, TeamConfig

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _epoch_ms_to_iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@contextlib.contextmanager
def _transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the body as one write transaction (write lock taken up front)."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


class SessionStore:
    """SQLite mirror of the aggregated model, keyed by session."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        # team name -> id of the session its latest config belongs to
        self._current: dict[str, int] = {}
        ensure_schema(db_path)

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def ensure_session(self, config: TeamConfig) -> int:
        """Return the session id for *config*, creating the session if needed.

        Concurrent callers with the same ``(name, created_at)`` all get the
        same id: the loser of the INSERT race hits the UNIQUE constraint and
        refetches the winner's row.  Creating a session closes any older
        open session of the same team.
        """
        conn = self._connect()
        try:
            existing = self._find_session(conn, config.name, config.created_at)
            if existing is not None:
                return existing

            started_at = _epoch_ms_to_iso(config.created_at)
            try:
                with _transaction(conn):
                    cur = conn.execute(
                        "INSERT INTO sessions "
                        "(team_name, created_at, description, lead_agent_id, config_json, started_at) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        (
                            config.name,
                            config.created_at,
                            config.description,
                            config.lead_agent_id,
                            json.dumps(config.to_dict()),
                            started_at,
                        ),
                    )
                    session_id = cur.lastrowid
                    conn.execute(
                        "UPDATE sessions SET ended_at = ? "
                        "WHERE team_name = ? AND created_at < ? AND ended_at IS NULL",
                        (started_at, config.name, config.created_at),
                    )
            except sqlite3.IntegrityError:
                session_id = self._find_session(conn, config.name, config.created_at)
                if session_id is None:
                    raise
                logger.debug(
                    "Session created concurrently, reusing | team=%s | created_at=%d | session=%d",
                    config.name, config.created_at, session_id,
                )
                return session_id

            logger.info(
                "Session created | team=%s | created_at=%d | session=%d",
                config.name, config.created_at, session_id,
            )
            return session_id
        finally:
            conn.close()

    @staticmethod
    def _find_session(conn: sqlite3.Connection, team_name: str, created_at: int) -> int | None:
        row = conn.execute(
            "SELECT id FROM sessions WHERE team_name = ? AND created_at = ?",
            (team_name, created_at),
        ).fetchone()
        return row["id"] if row else None

    def record_members(self, session_id: int, members: Iterable[Member]) -> int:
        """Insert the roster in one transaction; returns how many were new.

        A member already recorded for this session is left untouched.
        """
        inserted = 0
        conn = self._connect()
        try:
            with _transaction(conn):
                for m in members:
                    row = conn.execute(
                        "SELECT 1 FROM session_members WHERE session_id = ? AND agent_id = ?",
                        (session_id, m.agent_id),
                    ).fetchone()
                    if row:
                        continue
                    conn.execute(
                        "INSERT INTO session_members "
                        "(session_id, agent_id, name, agent_type, model, color, joined_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (session_id, m.agent_id, m.name, m.agent_type, m.model, m.color, m.joined_at),
                    )
                    inserted += 1
        finally:
            conn.close()
        return inserted

    @staticmethod
    def _insert_message(
        conn: sqlite3.Connection, session_id: int, recipient: str, message: InboxMessage,
    ) -> bool:
        cur = conn.execute(
            "INSERT OR IGNORE INTO session_messages "
            "(session_id, recipient, sender, timestamp, text, color, read, message_type, structured_json) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                session_id,
                recipient,
                message.sender,
                message.timestamp,
                message.text,
                message.color,
                int(message.read),
                message.message_type.value,
                json.dumps(message.structured) if message.structured is not None else None,
            ),
        )
        return cur.rowcount == 1

    def record_message(self, session_id: int, recipient: str, message: InboxMessage) -> bool:
        """Insert one message; returns False if it was already recorded."""
        conn = self._connect()
        try:
            with _transaction(conn):
                return self._insert_message(conn, session_id, recipient, message)
        finally:
            conn.close()

    def record_inbox(self, session_id: int, recipient: str, messages: Iterable[InboxMessage]) -> int:
        """Insert a whole inbox in one transaction; returns how many were new."""
        conn = self._connect()
        try:
            with _transaction(conn):
                return sum(
                    self._insert_message(conn, session_id, recipient, m) for m in messages
                )
        finally:
            conn.close()

    def record_task(self, session_id: int, task: Task) -> None:
        """Insert or fully replace the row for ``(session_id, task.id)``."""
        conn = self._connect()
        try:
            with _transaction(conn):
                conn.execute(
                    "INSERT INTO session_tasks "
                    "(session_id, task_id, subject, description, active_form, status, owner, "
                    " blocks_json, blocked_by_json, internal, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT (session_id, task_id) DO UPDATE SET "
                    " subject = excluded.subject, description = excluded.description, "
                    " active_form = excluded.active_form, status = excluded.status, "
                    " owner = excluded.owner, blocks_json = excluded.blocks_json, "
                    " blocked_by_json = excluded.blocked_by_json, internal = excluded.internal, "
                    " updated_at = excluded.updated_at",
                    (
                        session_id,
                        task.id,
                        task.subject,
                        task.description,
                        task.active_form,
                        task.status,
                        task.owner,
                        json.dumps(list(task.blocks)),
                        json.dumps(list(task.blocked_by)),
                        int(task.internal),
                        _now_iso(),
                    ),
                )
        finally:
            conn.close()

    def end_session(self, session_id: int, ended_at: str | None = None) -> None:
        """Record the session's end time (first call wins)."""
        conn = self._connect()
        try:
            with _transaction(conn):
                conn.execute(
                    "UPDATE sessions SET ended_at = ? WHERE id = ? AND ended_at IS NULL",
                    (ended_at or _now_iso(), session_id),
                )
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Aggregator consumer
    # ------------------------------------------------------------------

    def _session_for(self, team: str) -> int | None:
        if team in self._current:
            return self._current[team]
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT id FROM sessions WHERE team_name = ? "
                "ORDER BY created_at DESC, id DESC LIMIT 1",
                (team,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        self._current[team] = row["id"]
        return row["id"]

    def handle_change(self, change: TeamChange) -> None:
        """Mirror one aggregator ``TeamChange`` into the database."""
        if change.kind is ChangeKind.CONFIG:
            session_id = self.ensure_session(change.config)
            self._current[change.team] = session_id
            added = self.record_members(session_id, change.config.members)
            if added:
                logger.info("Recorded %d member(s) | team=%s | session=%d", added, change.team, session_id)
            return

        session_id = self._session_for(change.team)
        if session_id is None:
            logger.debug(
                "No session yet for team %s, skipping %s change", change.team, change.kind.value,
            )
            return

        if change.kind is ChangeKind.INBOX:
            added = self.record_inbox(session_id, change.agent, change.inbox or ())
            if added:
                logger.info(
                    "Recorded %d message(s) | team=%s | recipient=%s | session=%d",
                    added, change.team, change.agent, session_id,
                )
        elif change.kind is ChangeKind.TASK:
            task = (change.tasks or {}).get(change.task_id)
            if task is not None:
                self.record_task(session_id, task)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_sessions(self) -> list[dict]:
        """History index, newest session first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT s.id, s.team_name, s.description, s.created_at, s.started_at, s.ended_at,
                       (SELECT COUNT(*) FROM session_members m WHERE m.session_id = s.id) AS member_count,
                       (SELECT COUNT(*) FROM session_messages g WHERE g.session_id = s.id) AS message_count,
                       (SELECT COUNT(*) FROM session_tasks t
                         WHERE t.session_id = s.id AND t.internal = 0 AND t.status != 'deleted') AS task_count
                FROM sessions s
                ORDER BY s.created_at DESC, s.id DESC
                """
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def get_session(self, session_id: int) -> dict | None:
        """Full detail for one session, or None if it does not exist.

        Internal and deleted tasks are omitted.
        """
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
            if row is None:
                return None
            session = dict(row)
            config = json.loads(session.pop("config_json") or "{}")

            members = [
                dict(r) for r in conn.execute(
                    "SELECT agent_id, name, agent_type, model, color, joined_at "
                    "FROM session_members WHERE session_id = ? ORDER BY id",
                    (session_id,),
                ).fetchall()
            ]

            messages = []
            for r in conn.execute(
                "SELECT recipient, sender, timestamp, text, color, read, message_type, structured_json "
                "FROM session_messages WHERE session_id = ? ORDER BY timestamp, id",
                (session_id,),
            ).fetchall():
                d = dict(r)
                raw = d.pop("structured_json")
                d["structured"] = json.loads(raw) if raw else None
                d["read"] = bool(d["read"])
                messages.append(d)

            tasks = []
            for r in conn.execute(
                "SELECT task_id, subject, description, active_form, status, owner, "
                "blocks_json, blocked_by_json, updated_at "
                "FROM session_tasks "
                "WHERE session_id = ? AND internal = 0 AND status != 'deleted' "
                "ORDER BY LENGTH(task_id), task_id",
                (session_id,),
            ).fetchall():
                d = dict(r)
                d["blocks"] = json.loads(d.pop("blocks_json"))
                d["blocked_by"] = json.loads(d.pop("blocked_by_json"))
                tasks.append(d)

            return {
                "session": session,
                "config": config,
                "members": members,
                "messages": messages,
                "tasks": tasks,
            }
        finally:
            conn.close()
