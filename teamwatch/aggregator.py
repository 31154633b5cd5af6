"""Canonical in-memory model of every observed team.

``StateAggregator.apply()`` merges one classified ``FileChange`` into the
model: it re-reads the file, parses it, and on success swaps in a new
``Team`` object.  Any read or parse failure leaves the previous value in
place; the next notification for the same file heals the state.

Only one consumer may call ``apply()`` at a time (``run()`` is that
consumer).  Readers call ``snapshot()`` from any thread: ``Team`` objects
are replaced whole under a short lock and never mutated after publication,
so a snapshot sees either the pre- or post-merge team, never a mix.
"""

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, replace
from typing import Awaitable, Callable

from teamwatch.classify import ChangeType, FileChange
from teamwatch.logging_setup import log_caller, team_context
from teamwatch.models import (
    ChangeKind,
    ParseError,
    Team,
    TeamChange,
    parse_inbox,
    parse_task,
    parse_team_config,
)

logger = logging.getLogger(__name__)

# Errors that mean "file is missing, mid-write or malformed right now".
_TRANSIENT_ERRORS = (OSError, UnicodeDecodeError, json.JSONDecodeError, ParseError)

Listener = Callable[[TeamChange], Awaitable[None] | None]

# Sentinel placed on the event queue to end ``run()`` after draining.
STOP = object()


@dataclass(frozen=True)
class StateSnapshot:
    teams: dict[str, Team]
    active_team: str | None

    def to_dict(self) -> dict:
        return {
            "teams": {name: team.to_dict() for name, team in self.teams.items()},
            "active_team": self.active_team,
        }


def _read_json(path: str):
    with open(path, encoding="utf-8") as f:
        return json.load(f)


class StateAggregator:
    """Owns the ``Team`` mapping and merges file changes into it."""

    def __init__(self) -> None:
        self._teams: dict[str, Team] = {}
        self._active_team: str | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return StateSnapshot(teams=dict(self._teams), active_team=self._active_team)

    def get_team(self, name: str) -> Team | None:
        with self._lock:
            return self._teams.get(name)

    @property
    def active_team(self) -> str | None:
        with self._lock:
            return self._active_team

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def _publish(self, team: Team, *, activate: bool = False) -> None:
        with self._lock:
            self._teams[team.name] = team
            if activate:
                self._active_team = team.name

    def apply(self, change: FileChange) -> TeamChange | None:
        """Merge one file change.  Returns the resulting ``TeamChange``, or
        None if the change was ignored or the file could not be read."""
        if change.ignored or not change.team:
            return None

        try:
            raw = _read_json(change.path)
            if change.type is ChangeType.TEAM_CONFIG:
                return self._merge_config(change, raw)
            if change.type is ChangeType.INBOX:
                return self._merge_inbox(change, raw)
            if change.type is ChangeType.TASK:
                return self._merge_task(change, raw)
        except _TRANSIENT_ERRORS as e:
            logger.warning(
                "Keeping previous state | type=%s | team=%s | path=%s | error=%s",
                change.type.value, change.team, change.path, e,
            )
        return None

    def _current(self, name: str) -> Team:
        return self.get_team(name) or Team(name=name)

    def _merge_config(self, change: FileChange, raw) -> TeamChange:
        config = parse_team_config(raw, change.team)
        team = replace(self._current(change.team), config=config)
        self._publish(team, activate=True)
        logger.info(
            "Team config updated | team=%s | members=%d | created_at=%d",
            change.team, len(config.members), config.created_at,
        )
        return TeamChange(team=change.team, kind=ChangeKind.CONFIG, config=config)

    def _merge_inbox(self, change: FileChange, raw) -> TeamChange:
        messages = parse_inbox(raw)
        current = self._current(change.team)
        inboxes = dict(current.inboxes)
        inboxes[change.agent] = messages
        self._publish(replace(current, inboxes=inboxes))
        logger.debug(
            "Inbox replaced | team=%s | agent=%s | messages=%d",
            change.team, change.agent, len(messages),
        )
        return TeamChange(
            team=change.team, kind=ChangeKind.INBOX, agent=change.agent, inbox=messages,
        )

    def _merge_task(self, change: FileChange, raw) -> TeamChange:
        task = parse_task(raw, change.task_id)
        current = self._current(change.team)
        tasks = dict(current.tasks)
        tasks[task.id] = task
        self._publish(replace(current, tasks=tasks))
        logger.debug(
            "Task replaced | team=%s | task=%s | status=%s | internal=%s",
            change.team, task.id, task.status, task.internal,
        )
        return TeamChange(
            team=change.team, kind=ChangeKind.TASK, task_id=task.id, tasks=tasks,
        )

    # ------------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------------

    async def run(self, events: asyncio.Queue, listeners: list[Listener]) -> None:
        """Consume *events* in arrival order until ``STOP`` is dequeued.

        File reads run in a worker thread so the event loop stays free.
        Each successful ``TeamChange`` is passed to every listener.  Neither
        a merge nor a listener that raises stops the loop; both are logged.
        """
        log_caller.set("aggregator")
        while True:
            change = await events.get()
            try:
                if change is STOP:
                    return
                with team_context(change.team):
                    await self._process(change, listeners)
            finally:
                events.task_done()

    async def _process(self, change: FileChange, listeners: list[Listener]) -> None:
        try:
            result = await asyncio.to_thread(self.apply, change)
        except Exception:
            logger.exception("Merge failed, keeping previous state | path=%s", change.path)
            return
        if result is None:
            return
        for listener in listeners:
            try:
                outcome = listener(result)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                logger.exception("Listener failed for %s change", result.kind.value)
