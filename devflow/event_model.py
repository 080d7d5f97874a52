"""
Monitoring Event Model

Frozen dataclasses and closed enums for monitoring events, milestones,
suggestions and outgoing notifications.

CONSTRAINTS:
- MonitoringEvent is IMMUTABLE once created
- AggregatedMilestone is derived and never persisted
- Notifications are a CLOSED set of four variants
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, Tuple, Union


# -----------------------------------------------------------------------------
# Event Types
# -----------------------------------------------------------------------------
class MonitoringEventType(str, Enum):
    """Every kind of signal the aggregator understands."""
    # File and git signals
    FILE_CHANGE = "file_change"
    GIT_STATE_CHANGE = "git_state_change"
    COMMIT_CREATED = "commit_created"
    BRANCH_CREATED = "branch_created"
    BRANCH_SWITCHED = "branch_switched"

    # Development progress (from conversation)
    FEATURE_START = "feature_start"
    FEATURE_COMPLETE = "feature_complete"
    BUG_FOUND = "bug_found"
    BUG_FIXED = "bug_fixed"
    TESTS_ADDED = "tests_added"
    TESTS_PASSING = "tests_passing"
    TESTS_FAILING = "tests_failing"
    REFACTOR_COMPLETE = "refactor_complete"
    DOCS_UPDATED = "docs_updated"

    # Release readiness
    READY_FOR_RELEASE = "ready_for_release"
    DEPLOYMENT_READY = "deployment_ready"
    MILESTONE_REACHED = "milestone_reached"
    BLOCKED = "blocked"

    # Conversation context
    FILES_MENTIONED = "files_mentioned"
    COMMAND_EXECUTED = "command_executed"
    ERROR_DISCUSSED = "error_discussed"

    # Decision pipeline (derived internally)
    LLM_DECISION_REQUESTED = "llm_decision_requested"
    LLM_DECISION_MADE = "llm_decision_made"
    LLM_ACTION_EXECUTED = "llm_action_executed"
    LLM_ACTION_FAILED = "llm_action_failed"
    LLM_APPROVAL_REQUIRED = "llm_approval_required"
    LLM_FEEDBACK_RECEIVED = "llm_feedback_received"

    @property
    def is_decision_pipeline(self) -> bool:
        return self.value.startswith("llm_")


class MilestoneType(str, Enum):
    FEATURE_SHIPPED = "feature_shipped"
    RELEASE_READY = "release_ready"
    SPRINT_COMPLETE = "sprint_complete"
    MAJOR_REFACTOR = "major_refactor"


class SuggestionType(str, Enum):
    COMMIT = "commit"
    BRANCH = "branch"
    RELEASE = "release"
    PR = "pr"
    FIX = "fix"
    HELP = "help"
    CHECKPOINT = "checkpoint"
    WARNING = "warning"


class SuggestionPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 0, "medium": 1, "low": 2}[self.value]


# -----------------------------------------------------------------------------
# Monitoring Event (Frozen)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class MonitoringEvent:
    """
    A single typed signal for one project.

    FROZEN: Immutable once created. `data` is an opaque payload owned by the
    producer; consumers must not mutate it.
    """
    type: MonitoringEventType
    project_path: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "project_path": self.project_path,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitoringEvent":
        timestamp = data.get("timestamp")
        return cls(
            type=MonitoringEventType(data["type"]),
            project_path=data["project_path"],
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.utcnow(),
            data=dict(data.get("data") or {}),
        )


# -----------------------------------------------------------------------------
# Milestone (Frozen - derived, never persisted)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class AggregatedMilestone:
    type: MilestoneType
    timestamp: datetime
    events: Tuple[MonitoringEvent, ...]
    title: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "events": [e.to_dict() for e in self.events],
            "title": self.title,
            "description": self.description,
        }


# -----------------------------------------------------------------------------
# Suggestion (Frozen)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class MonitoringSuggestion:
    type: SuggestionType
    priority: SuggestionPriority
    message: str
    action: Optional[str] = None
    reason: Optional[str] = None
    related_events: Tuple[MonitoringEvent, ...] = ()
    project_path: Optional[str] = None
    confidence: Optional[float] = None
    from_llm: bool = False
    suggestion_id: str = field(default_factory=lambda: f"sugg-{uuid.uuid4().hex[:8]}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggestion_id": self.suggestion_id,
            "type": self.type.value,
            "priority": self.priority.value,
            "message": self.message,
            "action": self.action,
            "reason": self.reason,
            "related_events": [e.to_dict() for e in self.related_events],
            "project_path": self.project_path,
            "confidence": self.confidence,
            "from_llm": self.from_llm,
        }


# -----------------------------------------------------------------------------
# Notifications (closed set)
# -----------------------------------------------------------------------------
class NotificationKind(str, Enum):
    MILESTONE = "milestone"
    SUGGESTION = "suggestion"
    ACTION_READY = "action_ready"
    APPROVAL_REQUIRED = "approval_required"


@dataclass(frozen=True)
class MilestoneNotification:
    milestone: AggregatedMilestone
    kind: NotificationKind = field(default=NotificationKind.MILESTONE, init=False)


@dataclass(frozen=True)
class SuggestionNotification:
    suggestion: MonitoringSuggestion
    kind: NotificationKind = field(default=NotificationKind.SUGGESTION, init=False)


@dataclass(frozen=True)
class ActionReadyNotification:
    decision_id: str
    decision: Any  # LLMDecision
    context: Any  # DecisionContext
    kind: NotificationKind = field(default=NotificationKind.ACTION_READY, init=False)


@dataclass(frozen=True)
class ApprovalRequiredNotification:
    decision_id: str
    decision: Any  # LLMDecision
    context: Any  # DecisionContext
    kind: NotificationKind = field(default=NotificationKind.APPROVAL_REQUIRED, init=False)


Notification = Union[
    MilestoneNotification,
    SuggestionNotification,
    ActionReadyNotification,
    ApprovalRequiredNotification,
]
