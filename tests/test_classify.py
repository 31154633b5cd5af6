"""Tests for teamwatch/classify.py: path classification."""

import pytest

from teamwatch.classify import ChangeType, classify_path

TEAMS = "/home/u/.claude/teams"
TASKS = "/home/u/.claude/tasks"


def _classify(path):
    return classify_path(path, TEAMS, TASKS)


class TestTeamConfig:
    def test_config_file(self):
        """teams/<team>/config.json is a team config with the team name."""
        change = _classify(f"{TEAMS}/alpha/config.json")
        assert change.type is ChangeType.TEAM_CONFIG
        assert change.team == "alpha"
        assert change.agent is None

    def test_config_under_inboxes_is_not_team_config(self):
        """A file named config.json inside inboxes/ is an agent's inbox."""
        change = _classify(f"{TEAMS}/alpha/inboxes/config.json")
        assert change.type is ChangeType.INBOX
        assert change.agent == "config"

    def test_nested_config_is_ignored(self):
        change = _classify(f"{TEAMS}/alpha/sub/config.json")
        assert change.type is ChangeType.IGNORED


class TestInbox:
    def test_inbox_file(self):
        """teams/<team>/inboxes/<agent>.json extracts team and agent."""
        change = _classify(f"{TEAMS}/alpha/inboxes/worker-1.json")
        assert change.type is ChangeType.INBOX
        assert change.team == "alpha"
        assert change.agent == "worker-1"

    def test_inbox_directory_itself_is_ignored(self):
        assert _classify(f"{TEAMS}/alpha/inboxes").ignored


class TestTask:
    def test_task_file(self):
        """tasks/<team>/<id>.json extracts team and task id."""
        change = _classify(f"{TASKS}/alpha/7.json")
        assert change.type is ChangeType.TASK
        assert change.team == "alpha"
        assert change.task_id == "7"

    def test_task_too_deep_is_ignored(self):
        assert _classify(f"{TASKS}/alpha/archive/7.json").ignored

    def test_file_directly_under_tasks_root_is_ignored(self):
        assert _classify(f"{TASKS}/7.json").ignored


class TestIgnored:
    @pytest.mark.parametrize("path", [
        f"{TEAMS}/alpha/config.json.tmp",
        f"{TEAMS}/alpha/inboxes/worker.lock",
        f"{TASKS}/alpha/1.json.swp",
        f"{TASKS}/alpha/.lock",
        "/somewhere/else/config.json",
        f"{TEAMS}2/alpha/config.json",
        "",
    ])
    def test_ignored_paths(self, path):
        """Non-JSON files and paths outside the shapes are ignored."""
        assert _classify(path).type is ChangeType.IGNORED

    def test_never_raises_on_odd_input(self):
        """Classification is total, even for non-path input."""
        assert _classify(None).ignored
        assert _classify(12345).ignored


class TestSeparators:
    def test_windows_separators(self):
        """Backslash paths classify the same as forward-slash ones."""
        change = classify_path(
            r"C:\Users\u\.claude\teams\alpha\inboxes\lead.json",
            r"C:\Users\u\.claude\teams",
            r"C:\Users\u\.claude\tasks",
        )
        assert change.type is ChangeType.INBOX
        assert change.team == "alpha"
        assert change.agent == "lead"

    def test_trailing_slash_on_root(self):
        change = classify_path(f"{TASKS}/alpha/3.json", TEAMS + "/", TASKS + "/")
        assert change.type is ChangeType.TASK
        assert change.task_id == "3"
