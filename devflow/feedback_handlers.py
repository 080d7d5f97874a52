"""
Feedback Handlers

Session-scoped registry of decisions awaiting user feedback.

A registered decision stays pending until one of:
- explicit approval / rejection / correction
- the implicit-approval timeout elapses (recorded as implicit_approval)

CONSTRAINTS:
- Exactly one FeedbackEntry per decision: the pending entry is popped
  BEFORE any await, so a second call for the same id finds nothing
- The implicit-approval timer is a cancellable asyncio task keyed by
  decision id; explicit feedback cancels it
- Every recorded feedback is re-emitted as LLM_FEEDBACK_RECEIVED
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Dict, Any, List

from .decision_model import DecisionContext, LLMDecision
from .event_model import MonitoringEvent, MonitoringEventType
from .learning_engine import LearningEngine
from .learning_model import (
    ActionOutcome,
    FeedbackEntry,
    FeedbackStats,
    FeedbackType,
    UserFeedback,
    UserPreference,
)

logger = logging.getLogger("feedback_handlers")


DEFAULT_IMPLICIT_APPROVAL_TIMEOUT = 3600.0
NOT_FOUND = "Decision not found or already processed"


@dataclass
class FeedbackResponse:
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"success": self.success, "message": self.message}
        if self.data is not None:
            result.update(self.data)
        return result


@dataclass
class PendingDecision:
    decision_id: str
    decision: LLMDecision
    context: DecisionContext
    registered_at: datetime = field(default_factory=datetime.utcnow)
    timer: Optional[asyncio.Task] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "decision": self.decision.to_dict(),
            "project_path": self.context.project_path,
            "trigger_event": self.context.current_event.type.value,
            "registered_at": self.registered_at.isoformat(),
        }


class FeedbackHandlers:
    """
    Maps live decision ids to their pending {decision, context} and turns
    user responses into FeedbackEntry records via the LearningEngine.
    """

    def __init__(
        self,
        engine: LearningEngine,
        timeout: Optional[Callable[[], float]] = None,
        on_feedback: Optional[Callable[[MonitoringEvent], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            engine: Learning engine that records entries
            timeout: Seconds before implicit approval (read at registration)
            on_feedback: Receives one LLM_FEEDBACK_RECEIVED event per record
            clock: Timestamp source for registrations and events (optional, for testing)
        """
        self.engine = engine
        self._timeout = timeout or (lambda: DEFAULT_IMPLICIT_APPROVAL_TIMEOUT)
        self._on_feedback = on_feedback
        self._clock = clock or datetime.utcnow
        self._pending: Dict[str, PendingDecision] = {}
        self._recent_actions: Dict[str, str] = {}  # decision id -> feedback id
        self._held_outcomes: Dict[str, ActionOutcome] = {}

    def set_feedback_listener(self, listener: Optional[Callable[[MonitoringEvent], Any]]) -> None:
        self._on_feedback = listener

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------
    def register_decision(self, decision_id: str, decision: LLMDecision, context: DecisionContext) -> None:
        pending = PendingDecision(decision_id, decision, context, registered_at=self._clock())
        self._pending[decision_id] = pending

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop; implicit approval not scheduled for {decision_id}")
            return
        pending.timer = asyncio.create_task(self._implicit_approval(decision_id, self._timeout()))

    def is_pending(self, decision_id: str) -> bool:
        return decision_id in self._pending

    def get_pending(self, decision_id: str) -> Optional[PendingDecision]:
        return self._pending.get(decision_id)

    def pending_decisions(self) -> List[PendingDecision]:
        return list(self._pending.values())

    def feedback_id_for(self, decision_id: str) -> Optional[str]:
        return self._recent_actions.get(decision_id)

    def _take(self, decision_id: str) -> Optional[PendingDecision]:
        pending = self._pending.pop(decision_id, None)
        if pending and pending.timer and not pending.timer.done():
            pending.timer.cancel()
        return pending

    def clear_pending_decisions(self) -> None:
        for pending in self._pending.values():
            if pending.timer and not pending.timer.done():
                pending.timer.cancel()
        self._pending.clear()
        self._recent_actions.clear()
        self._held_outcomes.clear()

    # -------------------------------------------------------------------------
    # Feedback
    # -------------------------------------------------------------------------
    async def handle_approval(self, decision_id: str, reason: Optional[str] = None) -> FeedbackResponse:
        pending = self._take(decision_id)
        if pending is None:
            return FeedbackResponse(False, NOT_FOUND)

        await self._record(pending, UserFeedback(FeedbackType.APPROVAL, reason=reason), {"reason": reason})
        return FeedbackResponse(True, "Approval recorded successfully")

    async def handle_rejection(self, decision_id: str, reason: Optional[str] = None) -> FeedbackResponse:
        pending = self._take(decision_id)
        if pending is None:
            return FeedbackResponse(False, NOT_FOUND)

        await self._record(pending, UserFeedback(FeedbackType.REJECTION, reason=reason), {"reason": reason})
        return FeedbackResponse(True, "Rejection recorded successfully")

    async def handle_correction(
        self,
        decision_id: str,
        corrected_action: str,
        reason: Optional[str] = None,
    ) -> FeedbackResponse:
        pending = self._take(decision_id)
        if pending is None:
            return FeedbackResponse(False, NOT_FOUND)

        feedback = UserFeedback(
            FeedbackType.CORRECTION,
            reason=reason,
            corrected_action=corrected_action,
            user_action=corrected_action,
        )
        await self._record(pending, feedback, {
            "reason": reason,
            "original_action": pending.decision.action,
            "corrected_action": corrected_action,
        })

        insights = self.engine.analyze_decision(
            pending.decision.with_changes(action=corrected_action),
            pending.context,
        )
        return FeedbackResponse(True, "Correction recorded and learned", {"insights": insights.to_dict()})

    async def record_outcome(self, decision_id: str, outcome: ActionOutcome) -> FeedbackResponse:
        feedback_id = self._recent_actions.get(decision_id)
        if feedback_id is not None:
            await self.engine.update_outcome(feedback_id, outcome)
            return FeedbackResponse(True, "Outcome recorded successfully")

        if decision_id in self._pending:
            self._held_outcomes[decision_id] = outcome
            return FeedbackResponse(True, "Outcome will be attached when feedback is recorded")

        return FeedbackResponse(False, "No feedback record found for this decision")

    async def _implicit_approval(self, decision_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        pending = self._pending.pop(decision_id, None)
        if pending is None:
            return
        logger.info(f"No feedback for {decision_id} after {delay:.0f}s; recording implicit approval")
        await self._record(pending, UserFeedback(FeedbackType.IMPLICIT_APPROVAL), {})

    async def _record(self, pending: PendingDecision, feedback: UserFeedback, extra: Dict[str, Any]) -> str:
        outcome = self._held_outcomes.pop(pending.decision_id, None)
        feedback_id = await self.engine.record_feedback(pending.decision, pending.context, feedback, outcome)
        self._recent_actions[pending.decision_id] = feedback_id

        data = {"feedback_type": feedback.type.value, "decision_id": pending.decision_id}
        data.update(extra)
        self._emit(MonitoringEvent(
            type=MonitoringEventType.LLM_FEEDBACK_RECEIVED,
            project_path=pending.context.project_path,
            timestamp=self._clock(),
            data=data,
        ))
        return feedback_id

    def _emit(self, event: MonitoringEvent) -> None:
        if self._on_feedback is None:
            return
        try:
            self._on_feedback(event)
        except Exception as e:
            logger.error(f"Feedback listener failed: {e}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------
    def get_stats(self, project_path: Optional[str] = None) -> FeedbackStats:
        return self.engine.get_stats(project_path)

    def get_recent_feedback(self, limit: int = 10, project_path: Optional[str] = None) -> List[FeedbackEntry]:
        return self.engine.store.get_recent_feedback(limit, project_path)

    def get_learned_preferences(self, project_path: Optional[str] = None) -> List[UserPreference]:
        return self.engine.get_learned_preferences(project_path)
