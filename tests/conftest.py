"""
Pytest configuration for devflow tests.

This module provides:
1. Async test support without pytest-asyncio
2. Common fixtures and builders for events, decisions and contexts
3. A throwaway git repository fixture (skipped when git is missing)
"""

import asyncio
import functools
import json
import shutil
import subprocess
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any

import pytest

from devflow.config import AppConfig, AutomationConfig, AutomationMode, WorkingHours
from devflow.decision_model import DecisionContext, LLMDecision, ProjectState, TimeContext
from devflow.event_model import MonitoringEvent, MonitoringEventType
from devflow.llm_providers import BaseLLMProvider, LLMProviderConfig, LLMResponse


# -----------------------------------------------------------------------------
# Async Test Support
# -----------------------------------------------------------------------------
def async_test(func):
    """
    Decorator to run async tests without pytest-asyncio.

    Usage:
        @async_test
        async def test_something(self):
            result = await some_async_function()
            assert result is not None
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


# -----------------------------------------------------------------------------
# Builders
# -----------------------------------------------------------------------------
PROJECT_PATH = "/work/demo"
BASE_TIME = datetime(2024, 3, 4, 10, 0, 0)  # Monday


class FakeClock:
    """Settable time source for components that accept `clock`."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


def make_event(
    event_type: MonitoringEventType = MonitoringEventType.FEATURE_COMPLETE,
    project_path: str = PROJECT_PATH,
    timestamp: Optional[datetime] = None,
    data: Optional[Dict[str, Any]] = None,
) -> MonitoringEvent:
    return MonitoringEvent(
        type=event_type,
        project_path=project_path,
        timestamp=timestamp or BASE_TIME,
        data=data or {},
    )


def make_decision(action: str = "commit", confidence: float = 0.9, **kwargs) -> LLMDecision:
    kwargs.setdefault("reasoning", "Work looks complete")
    return LLMDecision(action=action, confidence=confidence, **kwargs)


def make_context(
    event: Optional[MonitoringEvent] = None,
    branch: str = "feature/login",
    is_protected: bool = False,
    uncommitted_changes: int = 3,
    test_status: str = "unknown",
    changed_files=(),
    moment: Optional[datetime] = None,
    working_hours: Optional[WorkingHours] = None,
) -> DecisionContext:
    return DecisionContext(
        current_event=event or make_event(),
        project_state=ProjectState(
            branch=branch,
            is_protected=is_protected,
            uncommitted_changes=uncommitted_changes,
            test_status=test_status,
            changed_files=tuple(changed_files),
        ),
        time_context=TimeContext.at(moment or BASE_TIME, working_hours),
    )


def automation_config(**overrides) -> AutomationConfig:
    """Enabled autonomous automation on the stub provider, tweaked per test."""
    config = AutomationConfig(enabled=True, mode=AutomationMode.AUTONOMOUS.value)
    config.llm.provider = "stub"
    config.llm.api_key_env = None
    for name, value in overrides.items():
        setattr(config, name, value)
    return config


def app_config(data_dir: Path, **automation_overrides) -> AppConfig:
    config = AppConfig(automation=automation_config(**automation_overrides))
    config.data_dir = data_dir
    return config


class ScriptedProvider(BaseLLMProvider):
    """
    Replays canned completions in order; the last one repeats.

    An Exception instance in the script is raised instead of returned.
    """

    def __init__(self, *replies, available: bool = True):
        super().__init__(LLMProviderConfig(model="scripted"))
        self.replies = list(replies)
        self.available = available
        self.calls = []

    @property
    def name(self) -> str:
        return "Scripted"

    async def is_available(self) -> bool:
        return self.available

    async def complete(self, messages):
        self.calls.append(messages)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(content=reply, model="scripted")


def decision_json(action: str = "commit", confidence: float = 0.9, **extra) -> str:
    return json.dumps({"action": action, "confidence": confidence, "reasoning": "Scripted decision", **extra})


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


def _git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@pytest.fixture
def git_repo(temp_dir):
    """Initialized repository on `main` with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    repo = temp_dir / "repo"
    repo.mkdir()
    _git(repo, "init")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo, "config", "user.email", "dev@example.com")
    _git(repo, "config", "user.name", "Dev")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# demo\n")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-m", "initial commit")
    return repo


git = _git


# -----------------------------------------------------------------------------
# Session Configuration
# -----------------------------------------------------------------------------
def pytest_configure(config):
    """Configure pytest session."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async (custom implementation)"
    )
