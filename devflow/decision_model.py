"""
Decision Model

Frozen dataclasses for the decision pipeline: the context handed to the
decision agent, the decision it returns, and the result of executing it.

CONSTRAINTS:
- LLMDecision is IMMUTABLE: every adjustment produces a new object
  (`with_changes`)
- DecisionContext is built fresh per decision and never persisted, except
  as part of a FeedbackEntry snapshot
- RollbackInfo stores git argv tuples plus the project path; absence of
  RollbackInfo means the action is irreversible
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, Tuple

from .config import AutomationPreferences, WorkingHours
from .event_model import MonitoringEvent


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------
class ActionType(str, Enum):
    """Actions a decision may propose."""
    COMMIT = "commit"
    CHECKPOINT = "checkpoint"
    BRANCH = "branch"
    PR = "pr"
    STASH = "stash"
    WAIT = "wait"
    SUGGEST = "suggest"


# Actions that touch the repository or the remote
MUTATING_ACTIONS = frozenset({"commit", "checkpoint", "branch", "pr", "stash"})

# Actions refused outright on a protected branch
PROTECTED_BRANCH_ACTIONS = frozenset({"commit", "checkpoint"})

DEFAULT_POSSIBLE_ACTIONS: Tuple[str, ...] = ("commit", "branch", "pr", "stash", "wait", "suggest")


class TestStatus(str, Enum):
    __test__ = False

    PASSING = "passing"
    FAILING = "failing"
    UNKNOWN = "unknown"


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# -----------------------------------------------------------------------------
# Decision (Frozen)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class RiskAssessment:
    score: float
    factors: Tuple[str, ...]
    level: str  # low | medium | high | critical
    requires_approval: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "factors": list(self.factors),
            "level": self.level,
            "requires_approval": self.requires_approval,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskAssessment":
        return cls(
            score=float(data.get("score", 1.0)),
            factors=tuple(data.get("factors") or ()),
            level=data.get("level", "critical"),
            requires_approval=bool(data.get("requires_approval", True)),
        )


@dataclass(frozen=True)
class LLMDecision:
    """
    One proposed action.

    FROZEN: use `with_changes` to derive an adjusted decision.
    """
    action: str
    confidence: float
    reasoning: str
    requires_approval: bool = False
    alternative_actions: Tuple[str, ...] = ()
    risk_assessment: Optional[RiskAssessment] = None

    def with_changes(self, **changes: Any) -> "LLMDecision":
        return replace(self, **changes)

    @property
    def is_mutating(self) -> bool:
        return self.action in MUTATING_ACTIONS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "requires_approval": self.requires_approval,
            "alternative_actions": list(self.alternative_actions),
            "risk_assessment": self.risk_assessment.to_dict() if self.risk_assessment else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LLMDecision":
        risk = data.get("risk_assessment")
        return cls(
            action=data["action"],
            confidence=float(data["confidence"]),
            reasoning=data.get("reasoning", ""),
            requires_approval=bool(data.get("requires_approval", False)),
            alternative_actions=tuple(data.get("alternative_actions") or ()),
            risk_assessment=RiskAssessment.from_dict(risk) if risk else None,
        )


# -----------------------------------------------------------------------------
# Decision Context (Frozen, ephemeral)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ProjectState:
    branch: str
    is_protected: bool
    uncommitted_changes: int = 0
    last_commit_time: Optional[datetime] = None
    test_status: str = TestStatus.UNKNOWN.value
    build_status: str = "unknown"
    changed_files: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch": self.branch,
            "is_protected": self.is_protected,
            "uncommitted_changes": self.uncommitted_changes,
            "last_commit_time": self.last_commit_time.isoformat() if self.last_commit_time else None,
            "test_status": self.test_status,
            "build_status": self.build_status,
            "changed_files": list(self.changed_files),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectState":
        return cls(
            branch=data.get("branch", "main"),
            is_protected=bool(data.get("is_protected", False)),
            uncommitted_changes=int(data.get("uncommitted_changes", 0)),
            last_commit_time=_parse_datetime(data.get("last_commit_time")),
            test_status=data.get("test_status", TestStatus.UNKNOWN.value),
            build_status=data.get("build_status", "unknown"),
            changed_files=tuple(data.get("changed_files") or ()),
        )


@dataclass(frozen=True)
class TimeContext:
    current_time: datetime
    is_working_hours: bool = True
    last_user_activity: Optional[datetime] = None
    day_of_week: str = ""

    @classmethod
    def at(cls, moment: datetime, working_hours: Optional[WorkingHours] = None,
           last_user_activity: Optional[datetime] = None) -> "TimeContext":
        return cls(
            current_time=moment,
            is_working_hours=working_hours.contains(moment) if working_hours else True,
            last_user_activity=last_user_activity or moment,
            day_of_week=moment.strftime("%A"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_time": self.current_time.isoformat(),
            "is_working_hours": self.is_working_hours,
            "last_user_activity": self.last_user_activity.isoformat() if self.last_user_activity else None,
            "day_of_week": self.day_of_week,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeContext":
        return cls(
            current_time=datetime.fromisoformat(data["current_time"]),
            is_working_hours=bool(data.get("is_working_hours", True)),
            last_user_activity=_parse_datetime(data.get("last_user_activity")),
            day_of_week=data.get("day_of_week", ""),
        )


@dataclass(frozen=True)
class DecisionContext:
    """Everything the decision agent sees for one triggering event."""
    current_event: MonitoringEvent
    project_state: ProjectState
    recent_history: Tuple[MonitoringEvent, ...] = ()
    user_preferences: AutomationPreferences = field(default_factory=AutomationPreferences)
    possible_actions: Tuple[str, ...] = DEFAULT_POSSIBLE_ACTIONS
    time_context: Optional[TimeContext] = None

    @property
    def project_path(self) -> str:
        return self.current_event.project_path

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_event": self.current_event.to_dict(),
            "project_state": self.project_state.to_dict(),
            "recent_history": [e.to_dict() for e in self.recent_history],
            "user_preferences": self.user_preferences.to_dict(),
            "possible_actions": list(self.possible_actions),
            "time_context": self.time_context.to_dict() if self.time_context else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecisionContext":
        time_context = data.get("time_context")
        return cls(
            current_event=MonitoringEvent.from_dict(data["current_event"]),
            project_state=ProjectState.from_dict(data.get("project_state") or {}),
            recent_history=tuple(MonitoringEvent.from_dict(e) for e in data.get("recent_history") or []),
            user_preferences=AutomationPreferences.from_dict(data.get("user_preferences") or {}),
            possible_actions=tuple(data.get("possible_actions") or DEFAULT_POSSIBLE_ACTIONS),
            time_context=TimeContext.from_dict(time_context) if time_context else None,
        )


# -----------------------------------------------------------------------------
# Execution Results (Frozen)
# -----------------------------------------------------------------------------
GitArgv = Tuple[str, ...]


@dataclass(frozen=True)
class RollbackInfo:
    """Enough to undo one executed action in its original directory."""
    action: str
    previous_state: str
    commands: Tuple[GitArgv, ...]
    project_path: str

    @property
    def rollback_command(self) -> str:
        return " && ".join(" ".join(("git",) + argv) for argv in self.commands)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "previous_state": self.previous_state,
            "commands": [list(argv) for argv in self.commands],
            "rollback_command": self.rollback_command,
            "project_path": self.project_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackInfo":
        return cls(
            action=data["action"],
            previous_state=data.get("previous_state", ""),
            commands=tuple(tuple(argv) for argv in data.get("commands") or []),
            project_path=data["project_path"],
        )


@dataclass(frozen=True)
class ActionResult:
    success: bool
    action: str
    output: Optional[str] = None
    error: Optional[str] = None
    rollback_info: Optional[RollbackInfo] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action,
            "output": self.output,
            "error": self.error,
            "rollback_info": self.rollback_info.to_dict() if self.rollback_info else None,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionResult":
        rollback = data.get("rollback_info")
        timestamp = data.get("timestamp")
        return cls(
            success=bool(data["success"]),
            action=data["action"],
            output=data.get("output"),
            error=data.get("error"),
            rollback_info=RollbackInfo.from_dict(rollback) if rollback else None,
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.utcnow(),
        )
