"""
Learning Model

Feedback records and the structures derived from them.

CONSTRAINTS:
- FeedbackEntry is the ONLY durable record in the core
- Everything else here (stats, patterns, preferences, insights) is
  recomputed on demand from FeedbackEntry history
- Timestamps serialize as ISO-8601 and rehydrate to datetime on load
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List

from .decision_model import DecisionContext, LLMDecision


class FeedbackType(str, Enum):
    APPROVAL = "approval"
    REJECTION = "rejection"
    CORRECTION = "correction"
    IMPLICIT_APPROVAL = "implicit_approval"

    @property
    def is_approval(self) -> bool:
        return self in (FeedbackType.APPROVAL, FeedbackType.IMPLICIT_APPROVAL)


# -----------------------------------------------------------------------------
# Persisted Records
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class UserFeedback:
    type: FeedbackType
    reason: Optional[str] = None
    corrected_action: Optional[str] = None
    user_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "reason": self.reason,
            "corrected_action": self.corrected_action,
            "user_action": self.user_action,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserFeedback":
        return cls(
            type=FeedbackType(data["type"]),
            reason=data.get("reason"),
            corrected_action=data.get("corrected_action"),
            user_action=data.get("user_action"),
        )


@dataclass(frozen=True)
class ActionOutcome:
    success: bool
    error: Optional[str] = None
    user_satisfied: Optional[bool] = None
    follow_up_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "user_satisfied": self.user_satisfied,
            "follow_up_action": self.follow_up_action,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionOutcome":
        return cls(
            success=bool(data["success"]),
            error=data.get("error"),
            user_satisfied=data.get("user_satisfied"),
            follow_up_action=data.get("follow_up_action"),
        )


@dataclass
class FeedbackEntry:
    """
    One user-facing decision outcome.

    Append-only except for `outcome`, which is attached once the action's
    result is known.
    """
    id: str
    timestamp: datetime
    project_path: str
    decision: LLMDecision
    context: DecisionContext
    feedback: UserFeedback
    outcome: Optional[ActionOutcome] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "project_path": self.project_path,
            "decision": self.decision.to_dict(),
            "context": self.context.to_dict(),
            "feedback": self.feedback.to_dict(),
            "outcome": self.outcome.to_dict() if self.outcome else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedbackEntry":
        outcome = data.get("outcome")
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            project_path=data["project_path"],
            decision=LLMDecision.from_dict(data["decision"]),
            context=DecisionContext.from_dict(data["context"]),
            feedback=UserFeedback.from_dict(data["feedback"]),
            outcome=ActionOutcome.from_dict(outcome) if outcome else None,
        )


# -----------------------------------------------------------------------------
# Derived (never stored)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class PreferencePattern:
    pattern: str
    frequency: int
    confidence: float
    examples: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern": self.pattern,
            "frequency": self.frequency,
            "confidence": self.confidence,
            "examples": list(self.examples),
        }


@dataclass
class FeedbackStats:
    total_decisions: int = 0
    approvals: int = 0
    rejections: int = 0
    corrections: int = 0
    implicit_approvals: int = 0
    success_rate: float = 0.0
    common_corrections: Dict[str, int] = field(default_factory=dict)
    preference_patterns: List[PreferencePattern] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_decisions": self.total_decisions,
            "approvals": self.approvals,
            "rejections": self.rejections,
            "corrections": self.corrections,
            "implicit_approvals": self.implicit_approvals,
            "success_rate": self.success_rate,
            "common_corrections": dict(self.common_corrections),
            "preference_patterns": [p.to_dict() for p in self.preference_patterns],
        }


@dataclass(frozen=True)
class UserPreference:
    type: str
    value: Any
    confidence: float
    evidence: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "value": self.value,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
        }


@dataclass
class HistoricalContext:
    similar_decisions: int
    approval_rate: float
    common_corrections: List[str] = field(default_factory=list)
    user_preferences: List[UserPreference] = field(default_factory=list)
    last_user_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "similar_decisions": self.similar_decisions,
            "approval_rate": self.approval_rate,
            "common_corrections": list(self.common_corrections),
            "user_preferences": [p.to_dict() for p in self.user_preferences],
            "last_user_action": self.last_user_action,
        }


@dataclass
class LearningInsights:
    should_proceed: bool
    confidence: float
    reasoning: List[str]
    historical_context: HistoricalContext
    adjusted_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_proceed": self.should_proceed,
            "confidence": self.confidence,
            "reasoning": list(self.reasoning),
            "historical_context": self.historical_context.to_dict(),
            "adjusted_action": self.adjusted_action,
        }
