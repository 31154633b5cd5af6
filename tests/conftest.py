"""Shared test fixtures for teamwatch tests."""

import json
import os
from pathlib import Path

import pytest

from teamwatch.config import Settings
from teamwatch.paths import inbox_path, task_path, team_config_path

SAMPLE_TEAM = "alpha"
SAMPLE_CREATED_AT = 1_700_000_000_000


def sample_config(name: str = SAMPLE_TEAM, created_at: int = SAMPLE_CREATED_AT, members=None) -> dict:
    if members is None:
        members = [
            {"agentId": "lead@alpha", "name": "team-lead", "agentType": "lead",
             "model": "opus", "color": "blue", "joinedAt": created_at},
            {"agentId": "worker@alpha", "name": "worker", "agentType": "general-purpose",
             "model": "sonnet", "color": "green", "joinedAt": created_at + 10},
        ]
    return {
        "name": name,
        "description": "Sample team",
        "createdAt": created_at,
        "leadAgentId": "lead@alpha",
        "members": members,
    }


def sample_task(task_id: str = "1", status: str = "pending", **overrides) -> dict:
    task = {
        "id": task_id,
        "subject": f"Task {task_id}",
        "description": "Do the thing",
        "activeForm": "Doing the thing",
        "status": status,
        "owner": "worker",
        "blocks": [],
        "blockedBy": [],
        "metadata": {},
    }
    task.update(overrides)
    return task


class WatchedTree:
    """Writes files into temp teams/tasks roots the way the runtime does."""

    def __init__(self, teams_root: Path, tasks_root: Path) -> None:
        self.teams_root = teams_root
        self.tasks_root = tasks_root

    @staticmethod
    def _write(path: Path, data) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data) if not isinstance(data, str) else data)
        return path

    def write_config(self, team: str = SAMPLE_TEAM, data=None) -> Path:
        return self._write(team_config_path(self.teams_root, team), data or sample_config(team))

    def write_inbox(self, agent: str, messages, team: str = SAMPLE_TEAM) -> Path:
        return self._write(inbox_path(self.teams_root, team, agent), messages)

    def write_task(self, task_id: str, data=None, team: str = SAMPLE_TEAM) -> Path:
        return self._write(task_path(self.tasks_root, team, task_id), data or sample_task(task_id))


@pytest.fixture
def tw_home(tmp_path):
    """Isolated teamwatch home directory; also exported as TEAMWATCH_HOME."""
    home = tmp_path / "tw"
    home.mkdir()
    old_env = os.environ.get("TEAMWATCH_HOME")
    os.environ["TEAMWATCH_HOME"] = str(home)
    yield home
    if old_env is None:
        os.environ.pop("TEAMWATCH_HOME", None)
    else:
        os.environ["TEAMWATCH_HOME"] = old_env


@pytest.fixture
def tree(tmp_path):
    """Empty watched teams/tasks roots."""
    teams_root = tmp_path / "agent" / "teams"
    tasks_root = tmp_path / "agent" / "tasks"
    teams_root.mkdir(parents=True)
    tasks_root.mkdir(parents=True)
    return WatchedTree(teams_root, tasks_root)


@pytest.fixture
def settings(tree):
    """Settings pointing at the temp tree, with a short debounce."""
    return Settings(
        teams_root=tree.teams_root,
        tasks_root=tree.tasks_root,
        debounce_ms=20,
        heartbeat_seconds=60.0,
    )


@pytest.fixture
def db_file(tw_home):
    return tw_home / "db.sqlite"
