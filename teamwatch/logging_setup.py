"""Logging for the teamwatch pipeline.

All stages write to one rotated file under the teamwatch home (plus stderr).
Two context variables tag every record:

* ``log_caller``: which stage emitted it (``watcher``, ``aggregator``,
  ``store``, ``hub``; ``monitor`` outside any stage task);
* ``log_team``: the team the stage is currently working on, ``-`` if none.

Each stage sets ``log_caller`` once at the top of its task.  The
aggregator and the store wrap each change in ``team_context()`` so lines
logged from worker threads (``asyncio.to_thread`` copies the context)
still name the team.

Usage::

    from teamwatch.logging_setup import configure_logging, log_caller, team_context

    configure_logging(tw_home)
    log_caller.set("store")
    with team_context(change.team):
        ...
"""

import contextlib
import contextvars
import logging
import logging.handlers
from collections.abc import Iterator
from pathlib import Path

from teamwatch.paths import log_path

log_caller: contextvars.ContextVar[str] = contextvars.ContextVar("log_caller", default="monitor")
log_team: contextvars.ContextVar[str] = contextvars.ContextVar("log_team", default="-")

LOG_FORMAT = "%(asctime)s [%(caller)s] [%(team)s] %(levelname)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5

_configured = False


class _PipelineContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.caller = log_caller.get()  # type: ignore[attr-defined]
        record.team = log_team.get()  # type: ignore[attr-defined]
        return True


@contextlib.contextmanager
def team_context(team: str | None) -> Iterator[None]:
    """Tag log lines emitted inside the block with *team*."""
    token = log_team.set(team or "-")
    try:
        yield
    finally:
        log_team.reset(token)


def _attach(root: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    handler.addFilter(_PipelineContextFilter())
    root.addHandler(handler)


def configure_logging(
    tw_home: Path | None = None,
    *,
    level: int = logging.INFO,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    console: bool = True,
) -> None:
    """Install the file and console handlers on the root logger.

    Only the first call in a process has any effect, so both the CLI and
    ``create_app()`` may call it.
    """
    global _configured
    if _configured:
        return
    _configured = True

    root = logging.getLogger()
    root.setLevel(level)

    if tw_home is not None:
        tw_home.mkdir(parents=True, exist_ok=True)
        _attach(
            root,
            logging.handlers.RotatingFileHandler(
                str(log_path(tw_home)), maxBytes=max_bytes, backupCount=backup_count,
            ),
            level,
        )
    if console:
        _attach(root, logging.StreamHandler(), level)
    # watchdog logs every inotify event at DEBUG
    logging.getLogger("watchdog").setLevel(max(level, logging.INFO))
