"""
Monitor Manager

Wires the raw-signal sources (conversation, git polling, file changes) to
one EventAggregator for the configured projects.

CONSTRAINTS:
- One polling task per project; start() is idempotent
- A failing poll is logged and the loop keeps running
- Ignored paths never reach the event store
"""

import asyncio
import logging
from typing import Optional, Dict, Any, List

from .config import AppConfig, ConfigManager
from .event_aggregator import EventAggregator
from .event_model import MonitoringEvent
from .git_ops import GitCollaborator
from .github_client import GitHubCollaborator
from .llm_providers import BaseLLMProvider
from .pattern_matchers import ConversationMonitor, FileChangeClassifier, GitStateDetector

logger = logging.getLogger("monitor_manager")


RECENT_EVENTS_IN_STATE = 10


class MonitorManager:
    def __init__(
        self,
        config_manager: ConfigManager,
        aggregator: Optional[EventAggregator] = None,
        git: Optional[GitCollaborator] = None,
        github: Optional[GitHubCollaborator] = None,
        provider: Optional[BaseLLMProvider] = None,
    ):
        self.config_manager = config_manager
        self.git = git or GitCollaborator()
        self.aggregator = aggregator or EventAggregator(git=self.git, github=github, provider=provider)
        self.conversation = ConversationMonitor(listener=self.aggregator.add_event)
        self.git_detector = GitStateDetector(self.git)
        self.file_classifier = FileChangeClassifier()

        self._running = False
        self._poll_tasks: Dict[str, asyncio.Task] = {}

    @property
    def config(self) -> AppConfig:
        return self.config_manager.get()

    @property
    def is_running(self) -> bool:
        return self._running

    async def initialize(self) -> bool:
        """Load config into the aggregator. Returns True when automation is live."""
        return await self.aggregator.initialize(self.config)

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------
    async def start(self) -> None:
        if self._running:
            return
        config = self.config
        if not config.monitoring.enabled:
            logger.info("Monitoring is disabled")
            return

        self._running = True
        for project in config.projects:
            self._poll_tasks[project.path] = asyncio.create_task(self._poll_loop(project.path))
        logger.info(f"Monitoring started for {len(self._poll_tasks)} project(s)")

    async def stop(self) -> None:
        self._running = False
        for task in self._poll_tasks.values():
            task.cancel()
        for task in self._poll_tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._poll_tasks.clear()
        await self.aggregator.wait_for_decisions()
        logger.info("Monitoring stopped")

    async def _poll_loop(self, project_path: str) -> None:
        while self._running:
            await self.check_git_state(project_path)
            await asyncio.sleep(self.config.monitoring.git_poll_interval)

    async def check_git_state(self, project_path: str) -> Optional[MonitoringEvent]:
        event = await self.git_detector.check(project_path)
        if event is not None:
            self.aggregator.add_event(event)
        return event

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------
    async def handle_file_change(
        self,
        project_path: str,
        file_path: str,
        change_type: str,
    ) -> Optional[MonitoringEvent]:
        """
        Record a FILE_CHANGE event. Significant files also trigger an
        immediate git-state check.

        Raises:
            ValueError: unknown change_type
        """
        if self.file_classifier.is_ignored(file_path):
            return None

        event = self.file_classifier.to_event(project_path, file_path, change_type)
        self.aggregator.add_event(event)
        if self.file_classifier.is_significant(file_path):
            await self.check_git_state(project_path)
        return event

    def process_conversation_message(
        self,
        message: str,
        role: str,
        project_path: Optional[str] = None,
    ) -> List[MonitoringEvent]:
        if not self.config.monitoring.conversation_tracking:
            return []
        if project_path is None:
            projects = self.config.projects
            project_path = projects[0].path if projects else ""
        return self.conversation.process_message(message, role, project_path)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------
    def get_monitoring_state(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "projects": [p.path for p in self.config.projects],
            "active_monitors": sorted(self._poll_tasks),
            "conversation_active": self.conversation.is_active(),
            "stats": self.aggregator.get_stats(),
            "recent_events": [e.to_dict() for e in self.aggregator.get_recent_events(RECENT_EVENTS_IN_STATE)],
        }
