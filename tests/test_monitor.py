"""Tests for teamwatch/monitor.py: stage wiring and shutdown."""

import asyncio
import logging
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from teamwatch.monitor import Monitor
from teamwatch.watcher import WatchRootError


def _socket():
    ws = MagicMock()
    ws.send_json = AsyncMock()
    ws.close = AsyncMock()
    return ws


class TestLifecycle:
    def test_scanned_files_are_persisted_before_stop(self, settings, db_file, tree):
        tree.write_config()
        tree.write_task("1")
        monitor = Monitor(settings, db_file)

        async def scenario():
            await monitor.start()
            await asyncio.sleep(0)
            await monitor.drain()
            await monitor.stop()

        asyncio.run(scenario())
        sessions = monitor.store.list_sessions()
        assert len(sessions) == 1
        assert sessions[0]["task_count"] == 1
        assert not monitor.running

    def test_missing_root_fails_start(self, settings, db_file, tmp_path):
        monitor = Monitor(replace(settings, teams_root=tmp_path / "absent"), db_file)

        with pytest.raises(WatchRootError):
            asyncio.run(monitor.start())
        assert not monitor.running


class TestStageFailure:
    def test_stop_finishes_after_aggregator_dies(self, settings, db_file, caplog):
        monitor = Monitor(settings, db_file)
        ws = _socket()
        seen = {}

        async def scenario():
            with patch.object(monitor.aggregator, "run", AsyncMock(side_effect=RuntimeError("boom"))):
                await monitor.start()
                monitor.hub.register(ws)
                for _ in range(5):
                    await asyncio.sleep(0)
                seen["store_task"] = monitor._store_task
                await monitor.stop()

        with caplog.at_level(logging.ERROR, logger="teamwatch.monitor"):
            asyncio.run(scenario())

        assert "Pipeline stage aggregator died" in caplog.text
        assert seen["store_task"].done() and not seen["store_task"].cancelled()
        ws.close.assert_awaited_once()
        assert monitor.hub.count == 0
        assert not monitor.running
