"""Map raw filesystem paths to typed change descriptors.

``classify_path()`` is pure and total: every input maps to exactly one
``FileChange`` and it never raises.  Separators are normalised to ``/`` so
Windows-style paths classify the same way as POSIX ones.

Recognised shapes (relative to the watched roots)::

    <teams_root>/<team>/config.json              -> TEAM_CONFIG
    <teams_root>/<team>/inboxes/<agent>.json     -> INBOX
    <tasks_root>/<team>/<task_id>.json           -> TASK

Anything else, including every non-JSON file, is IGNORED.
"""

import enum
from dataclasses import dataclass
from pathlib import Path

from teamwatch.paths import CONFIG_FILENAME, INBOX_DIRNAME


class ChangeType(str, enum.Enum):
    TEAM_CONFIG = "team_config"
    INBOX = "inbox"
    TASK = "task"
    IGNORED = "ignored"


@dataclass(frozen=True)
class FileChange:
    type: ChangeType
    path: str
    team: str | None = None
    agent: str | None = None
    task_id: str | None = None

    @property
    def ignored(self) -> bool:
        return self.type is ChangeType.IGNORED


def _normalize(path: str | Path) -> str:
    return str(path).replace("\\", "/").rstrip("/")


def _relative_parts(path: str, root: str) -> list[str] | None:
    """Return *path*'s components below *root*, or None if not beneath it."""
    if not root or not path.startswith(root + "/"):
        return None
    return [p for p in path[len(root) + 1:].split("/") if p]


def classify_path(path: str | Path, teams_root: str | Path, tasks_root: str | Path) -> FileChange:
    """Classify *path* against the two watched roots."""
    try:
        norm = _normalize(path)
        if not norm.lower().endswith(".json"):
            return FileChange(ChangeType.IGNORED, norm)

        parts = _relative_parts(norm, _normalize(teams_root))
        if parts is not None:
            if len(parts) == 2 and parts[1] == CONFIG_FILENAME:
                return FileChange(ChangeType.TEAM_CONFIG, norm, team=parts[0])
            if len(parts) == 3 and parts[1] == INBOX_DIRNAME:
                agent = parts[2][: -len(".json")]
                if agent:
                    return FileChange(ChangeType.INBOX, norm, team=parts[0], agent=agent)
            return FileChange(ChangeType.IGNORED, norm)

        parts = _relative_parts(norm, _normalize(tasks_root))
        if parts is not None and len(parts) == 2:
            task_id = parts[1][: -len(".json")]
            if task_id:
                return FileChange(ChangeType.TASK, norm, team=parts[0], task_id=task_id)

        return FileChange(ChangeType.IGNORED, norm)
    except Exception:  # noqa: BLE001
        return FileChange(ChangeType.IGNORED, str(path))
