"""
Pattern Matchers

Turn raw signals into typed MonitoringEvents:
- ConversationMonitor: regex table over chat messages
- GitStateDetector: hash-compare of branch / change count / HEAD
- FileChangeClassifier: file watcher callbacks to FILE_CHANGE events

CONSTRAINTS:
- Matchers never write to the Event Store; they hand events to a listener
  or return them to the caller
- Git errors inside the detector are logged and yield no event
"""

import json
import logging
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from fnmatch import fnmatch
from typing import Callable, Optional, Dict, Any, List, Tuple

from .event_model import MonitoringEvent, MonitoringEventType
from .git_ops import GitCollaborator, GitCommandError

logger = logging.getLogger("pattern_matchers")

EventListener = Callable[[MonitoringEvent], None]


# -----------------------------------------------------------------------------
# Conversation Patterns
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ConversationPattern:
    name: str
    regex: re.Pattern
    event_type: MonitoringEventType
    priority: str


def _pattern(name: str, regex: str, event_type: MonitoringEventType, priority: str) -> ConversationPattern:
    return ConversationPattern(name, re.compile(regex, re.IGNORECASE), event_type, priority)


CONVERSATION_PATTERNS: Tuple[ConversationPattern, ...] = (
    _pattern(
        "feature_complete",
        r"(?:implemented|created|added|built|finished)\s+(?:the\s+)?(?:new\s+)?feature",
        MonitoringEventType.FEATURE_COMPLETE, "high",
    ),
    _pattern(
        "feature_start",
        r"(?:let's|I'll|starting to|going to)\s+(?:implement|create|add|build)\s+(?:a\s+)?(?:new\s+)?feature",
        MonitoringEventType.FEATURE_START, "medium",
    ),
    _pattern(
        "bug_fix",
        r"(?:fixed|resolved|patched|corrected)\s+(?:the\s+)?(?:bug|issue|problem|error)",
        MonitoringEventType.BUG_FIXED, "high",
    ),
    _pattern(
        "bug_found",
        r"(?:found|discovered|there's|encountering)\s+(?:a\s+)?(?:bug|issue|problem|error)",
        MonitoringEventType.BUG_FOUND, "medium",
    ),
    _pattern(
        "tests_added",
        r"(?:added|created|wrote|implemented)\s+(?:new\s+)?tests?",
        MonitoringEventType.TESTS_ADDED, "medium",
    ),
    _pattern(
        "tests_passing",
        r"(?:all\s+)?tests?\s+(?:are\s+)?(?:passing|pass|green|successful)",
        MonitoringEventType.TESTS_PASSING, "high",
    ),
    _pattern(
        "tests_failing",
        r"tests?\s+(?:are\s+)?(?:failing|fail|red|broken)",
        MonitoringEventType.TESTS_FAILING, "high",
    ),
    _pattern(
        "refactor_complete",
        r"(?:refactored|reorganized|restructured|cleaned up)\s+(?:the\s+)?code",
        MonitoringEventType.REFACTOR_COMPLETE, "medium",
    ),
    _pattern(
        "docs_updated",
        r"(?:updated|added|wrote|created)\s+(?:the\s+)?(?:documentation|docs|README)",
        MonitoringEventType.DOCS_UPDATED, "low",
    ),
    _pattern(
        "ready_for_release",
        r"(?:ready\s+for|time\s+to|should\s+create)\s+(?:a\s+)?release",
        MonitoringEventType.READY_FOR_RELEASE, "high",
    ),
    _pattern(
        "deployment_ready",
        r"(?:ready\s+to|time\s+to|can\s+now)\s+deploy",
        MonitoringEventType.DEPLOYMENT_READY, "high",
    ),
    _pattern(
        "milestone_reached",
        r"(?:completed|finished|done with)\s+(?:the\s+)?(?:milestone|major\s+feature|sprint)",
        MonitoringEventType.MILESTONE_REACHED, "high",
    ),
    _pattern(
        "blocked",
        r"(?:blocked|stuck|can't\s+proceed|waiting\s+for)",
        MonitoringEventType.BLOCKED, "high",
    ),
)

FILE_MENTION_PATTERNS = (
    re.compile(r"(?:file|created|modified|updated|deleted)\s+`([^`]+)`", re.IGNORECASE),
    re.compile(r"(?:in|at|from)\s+([/\w\-.]+\.\w+)", re.IGNORECASE),
    re.compile(r"([/\w\-.]+\.\w+)(?:\s+(?:file|was|is))", re.IGNORECASE),
)

CODE_EXTENSIONS = (
    ".ts", ".js", ".tsx", ".jsx", ".py", ".java", ".go", ".rs",
    ".cpp", ".c", ".h", ".cs", ".rb", ".php", ".swift", ".kt",
    ".md", ".json", ".yaml", ".yml", ".xml", ".html", ".css",
    ".scss", ".less", ".sql", ".sh", ".bash", ".ps1",
)

MAX_MESSAGE_BUFFER = 100


def extract_file_mentions(message: str) -> List[str]:
    """Unique file paths mentioned in a message, in first-seen order."""
    files: List[str] = []
    for pattern in FILE_MENTION_PATTERNS:
        for match in pattern.finditer(message):
            candidate = match.group(1)
            if candidate.endswith(CODE_EXTENSIONS) and candidate not in files:
                files.append(candidate)
    return files


class ConversationMonitor:
    """Recognizes development progress in conversation messages."""

    def __init__(self, listener: Optional[EventListener] = None):
        self._listener = listener
        self._buffer: deque = deque(maxlen=MAX_MESSAGE_BUFFER)
        self._running = True

    def set_listener(self, listener: Optional[EventListener]) -> None:
        self._listener = listener

    def is_active(self) -> bool:
        return self._running

    def stop(self) -> None:
        self._running = False
        self._buffer.clear()
        self._listener = None

    def process_message(self, message: str, role: str, project_path: str = "") -> List[MonitoringEvent]:
        """
        Buffer one message and emit an event per matching pattern.

        Returns:
            The emitted events (empty when stopped or nothing matched)
        """
        if not self._running:
            return []

        now = datetime.utcnow()
        self._buffer.append({"message": message, "role": role, "timestamp": now})

        events = self.analyze_message(message, role, project_path, now)
        for event in events:
            if self._listener:
                self._listener(event)
        return events

    def analyze_message(
        self,
        message: str,
        role: str,
        project_path: str = "",
        timestamp: Optional[datetime] = None,
    ) -> List[MonitoringEvent]:
        timestamp = timestamp or datetime.utcnow()
        events = [
            MonitoringEvent(
                type=pattern.event_type,
                project_path=project_path,
                timestamp=timestamp,
                data={
                    "message": message,
                    "role": role,
                    "pattern": pattern.name,
                    "priority": pattern.priority,
                },
            )
            for pattern in CONVERSATION_PATTERNS
            if pattern.regex.search(message)
        ]

        files = extract_file_mentions(message)
        if files:
            events.append(MonitoringEvent(
                type=MonitoringEventType.FILES_MENTIONED,
                project_path=project_path,
                timestamp=timestamp,
                data={"files": files, "message": message, "role": role},
            ))

        if events:
            logger.debug(f"Conversation matched: {[e.type.value for e in events]}")
        return events

    def get_recent_context(self, message_count: int = 10) -> List[Dict[str, Any]]:
        if message_count <= 0:
            return []
        return list(self._buffer)[-message_count:]


# -----------------------------------------------------------------------------
# Git State Detector
# -----------------------------------------------------------------------------
class GitStateDetector:
    """Emits GIT_STATE_CHANGE when a project's git fingerprint changes."""

    def __init__(self, git: GitCollaborator):
        self._git = git
        self._last_states: Dict[str, str] = {}

    @staticmethod
    def state_hash(branch: str, change_count: int, latest_commit_hash: str) -> str:
        return json.dumps({
            "branch": branch,
            "change_count": change_count,
            "latest_commit_hash": latest_commit_hash,
        }, sort_keys=True)

    async def check(self, project_path: str) -> Optional[MonitoringEvent]:
        try:
            branch = await self._git.get_current_branch(project_path)
            changes = await self._git.get_uncommitted_changes(project_path)
            latest = await self._git.get_latest_commit(project_path)
        except GitCommandError as e:
            logger.error(f"Error checking git state for {project_path}: {e}")
            return None

        state = self.state_hash(
            branch,
            changes.file_count if changes else 0,
            latest.hash if latest else "",
        )
        if state == self._last_states.get(project_path):
            return None
        self._last_states[project_path] = state

        return MonitoringEvent(
            type=MonitoringEventType.GIT_STATE_CHANGE,
            project_path=project_path,
            data={
                "branch": branch,
                "uncommitted_changes": changes.to_dict() if changes else None,
                "latest_commit": latest.to_dict() if latest else None,
            },
        )

    def forget(self, project_path: str) -> None:
        self._last_states.pop(project_path, None)


# -----------------------------------------------------------------------------
# File Change Classifier
# -----------------------------------------------------------------------------
SIGNIFICANT_EXTENSIONS = (".ts", ".js", ".tsx", ".jsx", ".py", ".java", ".go", ".rs")
SIGNIFICANT_PATHS = ("src/", "lib/", "components/", "features/")

DEFAULT_IGNORE_PATTERNS = (
    ".git/*", "*/.git/*",
    "node_modules/*", "*/node_modules/*",
    "dist/*", "*/dist/*",
    "build/*", "*/build/*",
    "coverage/*", "*/coverage/*",
    "tmp/*", "*/tmp/*",
    "__pycache__/*", "*/__pycache__/*",
    ".venv/*", "*/.venv/*",
    "*.log",
    ".env.*.local", "*/.env.*.local",
)

CHANGE_TYPES = ("add", "change", "unlink")


class FileChangeClassifier:
    def __init__(self, ignore_patterns: Tuple[str, ...] = DEFAULT_IGNORE_PATTERNS):
        self._ignore = ignore_patterns

    @staticmethod
    def is_significant(file_path: str) -> bool:
        return file_path.endswith(SIGNIFICANT_EXTENSIONS) or any(p in file_path for p in SIGNIFICANT_PATHS)

    def is_ignored(self, relative_path: str) -> bool:
        path = relative_path.replace("\\", "/")
        if path.startswith("./"):
            path = path[2:]
        return any(fnmatch(path, pattern) for pattern in self._ignore)

    def to_event(
        self,
        project_path: str,
        file_path: str,
        change_type: str,
        timestamp: Optional[datetime] = None,
    ) -> MonitoringEvent:
        if change_type not in CHANGE_TYPES:
            raise ValueError(f"Unknown change type: {change_type}")
        return MonitoringEvent(
            type=MonitoringEventType.FILE_CHANGE,
            project_path=project_path,
            timestamp=timestamp or datetime.utcnow(),
            data={"file_path": file_path, "change_type": change_type},
        )
