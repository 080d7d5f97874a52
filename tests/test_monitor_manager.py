"""
Monitor Manager Tests

Raw signals (conversation, file changes, git polling) flowing into one
EventAggregator.
"""

import asyncio

import pytest

from devflow.config import ConfigManager, MonitoringConfig, ProjectConfig
from devflow.event_model import MonitoringEventType
from devflow.monitor_manager import MonitorManager
from tests.conftest import PROJECT_PATH, app_config, async_test


def _manager(temp_dir, projects=(), monitoring=None):
    config = app_config(temp_dir)
    config.projects = [ProjectConfig(path=p) for p in projects]
    if monitoring is not None:
        config.monitoring = monitoring
    config_manager = ConfigManager(temp_dir / "config.yml")
    config_manager.save(config)
    return MonitorManager(config_manager)


def _types(manager):
    return [e.type for e in manager.aggregator.get_recent_events(100)]


class TestSignals:
    def test_conversation_defaults_to_first_project(self, temp_dir):
        manager = _manager(temp_dir, projects=["/work/first", "/work/second"])
        events = manager.process_conversation_message("Fixed the bug in checkout", "assistant")

        assert [e.type for e in events] == [MonitoringEventType.BUG_FIXED]
        assert events[0].project_path == "/work/first"
        assert _types(manager) == [MonitoringEventType.BUG_FIXED]

    def test_conversation_tracking_can_be_disabled(self, temp_dir):
        manager = _manager(temp_dir, monitoring=MonitoringConfig(conversation_tracking=False))
        assert manager.process_conversation_message("fixed the bug", "user", PROJECT_PATH) == []
        assert _types(manager) == []

    @async_test
    async def test_ignored_file_change(self, temp_dir):
        manager = _manager(temp_dir)
        assert await manager.handle_file_change(PROJECT_PATH, "node_modules/x/index.js", "change") is None
        assert _types(manager) == []

    @async_test
    async def test_insignificant_file_change(self, temp_dir):
        manager = _manager(temp_dir)
        event = await manager.handle_file_change(PROJECT_PATH, "notes.txt", "add")

        assert event.type == MonitoringEventType.FILE_CHANGE
        assert _types(manager) == [MonitoringEventType.FILE_CHANGE]

    @async_test
    async def test_significant_file_checks_git(self, temp_dir, git_repo):
        manager = _manager(temp_dir)
        (git_repo / "app.py").write_text("x = 1\n")

        await manager.handle_file_change(str(git_repo), "app.py", "add")

        assert _types(manager) == [MonitoringEventType.FILE_CHANGE, MonitoringEventType.GIT_STATE_CHANGE]

    @async_test
    async def test_unknown_change_type(self, temp_dir):
        with pytest.raises(ValueError):
            await _manager(temp_dir).handle_file_change(PROJECT_PATH, "app.py", "rename")


class TestLifecycle:
    @async_test
    async def test_polls_each_project(self, temp_dir, git_repo):
        manager = _manager(temp_dir, projects=[str(git_repo)], monitoring=MonitoringConfig(git_poll_interval=60))
        await manager.initialize()
        await manager.start()
        await manager.start()

        for _ in range(100):
            if MonitoringEventType.GIT_STATE_CHANGE in _types(manager):
                break
            await asyncio.sleep(0.05)

        state = manager.get_monitoring_state()
        assert state["running"]
        assert state["active_monitors"] == [str(git_repo)]
        assert state["recent_events"][0]["type"] == "git_state_change"

        await manager.stop()
        assert not manager.is_running
        assert manager.get_monitoring_state()["active_monitors"] == []

    @async_test
    async def test_disabled_monitoring_does_not_start(self, temp_dir):
        manager = _manager(temp_dir, projects=["/work/demo"], monitoring=MonitoringConfig(enabled=False))
        await manager.start()

        assert not manager.is_running
        assert manager.get_monitoring_state()["active_monitors"] == []

    @async_test
    async def test_initialize_reports_automation(self, temp_dir):
        manager = _manager(temp_dir)
        assert await manager.initialize()
        assert manager.get_monitoring_state()["stats"]["automation_active"]
