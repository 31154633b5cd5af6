"""Settings stored in ``~/.teamwatch/config.yaml``.

Manages:
- the two watched roots (teams, tasks)
- web server port
- debounce delay and heartbeat interval

Every key is optional; missing keys fall back to the defaults below.
``TEAMWATCH_TEAMS_ROOT`` / ``TEAMWATCH_TASKS_ROOT`` override the file.
"""

import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from teamwatch.paths import config_path, default_tasks_root, default_teams_root

DEFAULT_PORT = 3549
DEFAULT_DEBOUNCE_MS = 100
DEFAULT_HEARTBEAT_SECONDS = 5.0

VALID_KEYS = ("teams_root", "tasks_root", "port", "debounce_ms", "heartbeat_seconds")


@dataclass
class Settings:
    teams_root: Path
    tasks_root: Path
    port: int = DEFAULT_PORT
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0


def _read(tw_home: Path) -> dict:
    """Read config.yaml, returning empty dict if missing."""
    cp = config_path(tw_home)
    if cp.exists():
        return yaml.safe_load(cp.read_text()) or {}
    return {}


def _write(tw_home: Path, data: dict) -> None:
    """Write config.yaml (creates parent dirs if needed)."""
    cp = config_path(tw_home)
    cp.parent.mkdir(parents=True, exist_ok=True)
    cp.write_text(yaml.dump(data, default_flow_style=False, sort_keys=False))


def load_settings(tw_home: Path) -> Settings:
    """Return effective settings: defaults, then config.yaml, then env vars."""
    data = _read(tw_home)

    teams_root = os.environ.get("TEAMWATCH_TEAMS_ROOT") or data.get("teams_root")
    tasks_root = os.environ.get("TEAMWATCH_TASKS_ROOT") or data.get("tasks_root")

    return Settings(
        teams_root=Path(teams_root).expanduser() if teams_root else default_teams_root(),
        tasks_root=Path(tasks_root).expanduser() if tasks_root else default_tasks_root(),
        port=int(data.get("port", DEFAULT_PORT)),
        debounce_ms=int(data.get("debounce_ms", DEFAULT_DEBOUNCE_MS)),
        heartbeat_seconds=float(data.get("heartbeat_seconds", DEFAULT_HEARTBEAT_SECONDS)),
    )


def set_value(tw_home: Path, key: str, value: str) -> None:
    """Persist a single setting.

    Raises:
        KeyError: If *key* is not a known setting.
        ValueError: If *value* does not convert to the setting's type.
    """
    if key not in VALID_KEYS:
        raise KeyError(f"Unknown setting '{key}' (expected one of: {', '.join(VALID_KEYS)})")

    converted: str | int | float
    if key in ("port", "debounce_ms"):
        converted = int(value)
    elif key == "heartbeat_seconds":
        converted = float(value)
    else:
        converted = str(Path(value).expanduser())

    data = _read(tw_home)
    data[key] = converted
    _write(tw_home, data)
