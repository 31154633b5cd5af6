"""Pipeline wiring: watcher → aggregator → {store, hub}.

``Monitor`` owns one instance of each stage and the queues between them:

* the watcher's threads hand ``FileChange`` events to the event loop via
  ``call_soon_threadsafe`` onto ``events``;
* a single aggregator task drains ``events`` in arrival order;
* each resulting ``TeamChange`` is enqueued for the store task (durable,
  runs writes in a worker thread) and published to the hub (ephemeral,
  per-observer queues), so neither consumer can hold up the other.

Shutdown order matters: stop the watcher, let the aggregator drain what
was already queued, let the store drain and finish its writes, then close
observer connections.
"""

import asyncio
import contextlib
import logging
from pathlib import Path

from teamwatch.aggregator import STOP, StateAggregator
from teamwatch.classify import FileChange
from teamwatch.config import Settings
from teamwatch.hub import BroadcastHub
from teamwatch.logging_setup import log_caller, team_context
from teamwatch.models import TeamChange
from teamwatch.store import SessionStore
from teamwatch.watcher import FileWatcher

logger = logging.getLogger(__name__)


def _report_stage_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Pipeline stage %s died", task.get_name(), exc_info=exc)


async def _finish(task: asyncio.Task) -> None:
    """Wait for a stage to drain.  A stage that already died was reported
    by ``_report_stage_exit``; shutdown carries on regardless."""
    if task.done():
        return
    with contextlib.suppress(Exception):
        await task


class Monitor:
    def __init__(self, settings: Settings, db_path: Path) -> None:
        self.settings = settings
        self.aggregator = StateAggregator()
        self.store = SessionStore(db_path)
        self.hub = BroadcastHub(self.aggregator.snapshot, self.store)
        self.watcher: FileWatcher | None = None

        self._events: asyncio.Queue | None = None
        self._persist: asyncio.Queue | None = None
        self._aggregator_task: asyncio.Task | None = None
        self._store_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._aggregator_task is not None

    async def start(self) -> None:
        """Scan the watched roots and start every stage.

        Raises ``WatchRootError`` if a root is unusable; nothing is left
        running in that case.
        """
        if self.running:
            return
        loop = asyncio.get_running_loop()
        events: asyncio.Queue = asyncio.Queue()
        persist: asyncio.Queue = asyncio.Queue()

        def emit(change: FileChange) -> None:
            loop.call_soon_threadsafe(events.put_nowait, change)

        watcher = FileWatcher(
            self.settings.teams_root,
            self.settings.tasks_root,
            emit,
            debounce_seconds=self.settings.debounce_seconds,
        )
        await asyncio.to_thread(watcher.start)

        self.watcher = watcher
        self._events = events
        self._persist = persist
        self._aggregator_task = asyncio.create_task(
            self.aggregator.run(events, [persist.put_nowait, self.hub.publish]), name="aggregator",
        )
        self._store_task = asyncio.create_task(self._persist_loop(persist), name="store")
        for task in (self._aggregator_task, self._store_task):
            task.add_done_callback(_report_stage_exit)
        self._heartbeat_task = asyncio.create_task(
            self.hub.heartbeat_loop(self.settings.heartbeat_seconds)
        )
        logger.info("Monitor started")

    async def _persist_loop(self, persist: asyncio.Queue) -> None:
        log_caller.set("store")
        while True:
            change: TeamChange = await persist.get()
            try:
                if change is STOP:
                    return
                with team_context(change.team):
                    await asyncio.to_thread(self.store.handle_change, change)
            except Exception:
                logger.exception(
                    "Failed to persist %s change for team %s", change.kind.value, change.team,
                )
            finally:
                persist.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been merged and persisted."""
        if self._events is not None:
            await self._events.join()
        if self._persist is not None:
            await self._persist.join()

    async def stop(self) -> None:
        if not self.running:
            return

        if self.watcher is not None:
            await asyncio.to_thread(self.watcher.stop)

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat_task

        await self._events.put(STOP)
        await _finish(self._aggregator_task)
        await self._persist.put(STOP)
        await _finish(self._store_task)

        await self.hub.close()

        self._aggregator_task = self._store_task = self._heartbeat_task = None
        logger.info("Monitor stopped")
