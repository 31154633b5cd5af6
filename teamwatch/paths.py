"""Centralized path computations for teamwatch.

Our own state lives under a single home directory (``~/.teamwatch`` by
default).  The ``TEAMWATCH_HOME`` environment variable overrides the default
for testing.

Layout::

    ~/.teamwatch/
      config.yaml
      teamwatch.log
      db.sqlite

The watched trees belong to the agent runtime and are never written to::

    ~/.claude/teams/<team>/config.json
    ~/.claude/teams/<team>/inboxes/<agent>.json
    ~/.claude/tasks/<team>/<task_id>.json
"""

import os
from pathlib import Path

_DEFAULT_HOME = Path.home() / ".teamwatch"
_DEFAULT_AGENT_HOME = Path.home() / ".claude"

CONFIG_FILENAME = "config.json"
INBOX_DIRNAME = "inboxes"


def home(override: Path | None = None) -> Path:
    """Return the teamwatch home directory.

    Resolution order:
    1. *override* argument (used in tests)
    2. ``TEAMWATCH_HOME`` environment variable
    3. ``~/.teamwatch``
    """
    if override is not None:
        return override
    env = os.environ.get("TEAMWATCH_HOME")
    if env:
        return Path(env)
    return _DEFAULT_HOME


def config_path(tw_home: Path) -> Path:
    """Settings file: ``<home>/config.yaml``."""
    return tw_home / "config.yaml"


def db_path(tw_home: Path) -> Path:
    """Session history database: ``<home>/db.sqlite``."""
    return tw_home / "db.sqlite"


def log_path(tw_home: Path) -> Path:
    """Rotated log file: ``<home>/teamwatch.log``."""
    return tw_home / "teamwatch.log"


# --- Watched trees (read-only) ---

def default_teams_root() -> Path:
    return _DEFAULT_AGENT_HOME / "teams"


def default_tasks_root() -> Path:
    return _DEFAULT_AGENT_HOME / "tasks"


def team_config_path(teams_root: Path, team: str) -> Path:
    """``<teams_root>/<team>/config.json``."""
    return teams_root / team / CONFIG_FILENAME


def inbox_path(teams_root: Path, team: str, agent: str) -> Path:
    """``<teams_root>/<team>/inboxes/<agent>.json``."""
    return teams_root / team / INBOX_DIRNAME / f"{agent}.json"


def task_path(tasks_root: Path, team: str, task_id: str) -> Path:
    """``<tasks_root>/<team>/<task_id>.json``."""
    return tasks_root / team / f"{task_id}.json"
