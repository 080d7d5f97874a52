"""
Learning Engine

Derives historical context from the FeedbackStore and feeds it back into
decisions: approval-rate based confidence adjustment, learned corrections
and preference patterns.

CONSTRAINTS:
- Read-only over FeedbackStore except record_feedback()
- adjust_confidence() always returns a value in [0.1, 1.0]
- learn_from_correction() is best-effort: a failure never undoes the
  recorded feedback
- Insights are cached per (project, action, branch) and dropped whenever
  new feedback arrives for that key
"""

import logging
import re
from datetime import datetime
from typing import Callable, Optional, Dict, List, Any

from .config import AutomationConfig
from .decision_model import DecisionContext, LLMDecision
from .feedback_store import FeedbackStore
from .learning_model import (
    ActionOutcome,
    FeedbackEntry,
    FeedbackStats,
    FeedbackType,
    HistoricalContext,
    LearningInsights,
    UserFeedback,
    UserPreference,
)

logger = logging.getLogger("learning_engine")


SIMILAR_LIMIT = 5
MIN_SIMILAR_FOR_RATE = 3
LOW_APPROVAL_RATE = 0.3
HIGH_APPROVAL_RATE = 0.8
STRONG_PREFERENCE = 0.7
CORRECTION_PREFERENCE_MIN = 3

KEBAB_CASE = re.compile(r"^[a-z-]+$")


class LearningEngine:
    """
    Turns feedback history into decision adjustments.

    The decision agent is attached after construction (set_decision_agent)
    so corrections can be relayed into its prompt as learning notes.
    """

    def __init__(
        self,
        store: FeedbackStore,
        config: Callable[[], AutomationConfig],
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self._config = config
        self._clock = clock or datetime.utcnow
        self._agent: Optional[Any] = None
        self._insights: Dict[str, LearningInsights] = {}

    @property
    def config(self) -> AutomationConfig:
        return self._config()

    def set_decision_agent(self, agent: Any) -> None:
        """Agent must expose add_learning_note(note: str)."""
        self._agent = agent

    async def initialize(self) -> None:
        await self.store.initialize()

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------
    def analyze_decision(self, decision: LLMDecision, context: DecisionContext) -> LearningInsights:
        similar = self.store.find_similar_decisions(context, limit=SIMILAR_LIMIT)
        stats = self.store.get_stats(context.project_path)
        history = self._build_historical_context(decision, similar, stats)
        insights = self._generate_insights(decision, context, history)

        self._insights[_insight_key(decision, context)] = insights
        return insights

    def get_cached_insights(self, decision: LLMDecision, context: DecisionContext) -> Optional[LearningInsights]:
        return self._insights.get(_insight_key(decision, context))

    def adjust_confidence(self, decision: LLMDecision, context: DecisionContext) -> float:
        history = self.analyze_decision(decision, context).historical_context
        confidence = decision.confidence

        if history.similar_decisions >= MIN_SIMILAR_FOR_RATE:
            confidence *= 0.5 + 0.5 * history.approval_rate

        if history.common_corrections:
            confidence *= 0.8

        if history.user_preferences:
            avg = sum(p.confidence for p in history.user_preferences) / len(history.user_preferences)
            confidence *= 0.7 + 0.3 * avg

        return max(0.1, min(1.0, confidence))

    def _build_historical_context(
        self,
        decision: LLMDecision,
        similar: List[FeedbackEntry],
        stats: FeedbackStats,
    ) -> HistoricalContext:
        if similar:
            approvals = sum(1 for e in similar if e.feedback.type.is_approval)
            approval_rate = approvals / len(similar)
        else:
            approval_rate = 0.5

        corrections: List[str] = []
        for entry in similar:
            if entry.feedback.type != FeedbackType.CORRECTION or entry.decision.action != decision.action:
                continue
            corrected = entry.feedback.corrected_action or entry.feedback.user_action or ""
            if corrected not in corrections:
                corrections.append(corrected)

        last_user_action = next(
            (e.feedback.user_action for e in similar if e.decision.action == decision.action),
            None,
        )

        preferences: List[UserPreference] = []
        if self.config.learning.preference_learning:
            preferences = self._extract_preferences(similar, stats)

        return HistoricalContext(
            similar_decisions=len(similar),
            approval_rate=approval_rate,
            common_corrections=corrections,
            user_preferences=preferences,
            last_user_action=last_user_action,
        )

    def _extract_preferences(self, similar: List[FeedbackEntry], stats: FeedbackStats) -> List[UserPreference]:
        preferences = [
            UserPreference(
                type=p.pattern,
                value=list(p.examples),
                confidence=p.confidence,
                evidence=[f"Pattern observed {p.frequency} times"],
            )
            for p in stats.preference_patterns
        ]

        commits = [e for e in similar if e.decision.action == "commit"]
        if len(commits) >= 5:
            rate = sum(1 for e in commits if e.feedback.type.is_approval) / len(commits)
            if rate > 0.8:
                preferences.append(UserPreference(
                    type="commit_style",
                    value="frequent",
                    confidence=0.8,
                    evidence=[f"{round(rate * 100)}% approval rate for commits"],
                ))
            elif rate < 0.3:
                preferences.append(UserPreference(
                    type="commit_style",
                    value="conservative",
                    confidence=0.8,
                    evidence=[f"Only {round(rate * 100)}% approval rate for commits"],
                ))

        branch_names = [
            e.feedback.corrected_action for e in similar
            if e.decision.action == "branch"
            and e.feedback.type == FeedbackType.CORRECTION
            and e.feedback.corrected_action
        ]
        if len(branch_names) >= 3:
            if all("/" in name for name in branch_names):
                preferences.append(UserPreference(
                    type="branch_naming",
                    value="always uses prefixes",
                    confidence=0.9,
                    evidence=branch_names,
                ))
            elif all(KEBAB_CASE.match(name) for name in branch_names):
                preferences.append(UserPreference(
                    type="branch_naming",
                    value="uses kebab-case",
                    confidence=0.9,
                    evidence=branch_names,
                ))

        return preferences

    def _generate_insights(
        self,
        decision: LLMDecision,
        context: DecisionContext,
        history: HistoricalContext,
    ) -> LearningInsights:
        reasoning: List[str] = []
        should_proceed = True
        confidence = decision.confidence
        adjusted_action: Optional[str] = None
        rate_pct = round(history.approval_rate * 100)

        if history.similar_decisions >= MIN_SIMILAR_FOR_RATE:
            if history.approval_rate < LOW_APPROVAL_RATE:
                should_proceed = False
                confidence *= 0.5
                reasoning.append(f"Low historical approval rate ({rate_pct}%)")
            elif history.approval_rate > HIGH_APPROVAL_RATE:
                confidence = min(1.0, confidence * 1.2)
                reasoning.append(f"High historical approval rate ({rate_pct}%)")

        if history.common_corrections:
            reasoning.append(f"User often corrects to: {', '.join(history.common_corrections)}")
            # Only a single recurring correction is confident enough to apply
            if len(history.common_corrections) == 1:
                adjusted_action = history.common_corrections[0]
                reasoning.append(f"Suggesting learned correction: {adjusted_action}")

        for pref in history.user_preferences:
            if pref.confidence <= STRONG_PREFERENCE:
                continue
            reasoning.append(f"Strong preference detected: {pref.type}")

            if pref.type == "working_hours":
                moment = context.time_context.current_time if context.time_context else self._clock()
                preferred = {int(example.split(":")[0]) for example in pref.value}
                if moment.hour not in preferred:
                    should_proceed = False
                    reasoning.append("Outside preferred working hours")

            elif pref.type == "commit_frequency":
                if "prefers fewer commits" in pref.value and decision.action == "commit":
                    confidence *= 0.7
                    reasoning.append("User prefers fewer commits")

        if history.last_user_action:
            reasoning.append(f"Last similar action by user: {history.last_user_action}")

        return LearningInsights(
            should_proceed=should_proceed,
            confidence=confidence,
            reasoning=reasoning,
            historical_context=history,
            adjusted_action=adjusted_action,
        )

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------
    async def record_feedback(
        self,
        decision: LLMDecision,
        context: DecisionContext,
        feedback: UserFeedback,
        outcome: Optional[ActionOutcome] = None,
    ) -> str:
        """Write one FeedbackEntry. Corrections are also relayed to the agent."""
        self.store.persist = self.config.learning.store_feedback
        feedback_id = await self.store.record_feedback(decision, context, feedback, outcome)

        if feedback.type == FeedbackType.CORRECTION:
            await self.learn_from_correction(decision, context, feedback)

        self._insights.pop(_insight_key(decision, context), None)
        return feedback_id

    async def update_outcome(self, feedback_id: str, outcome: ActionOutcome) -> bool:
        return await self.store.update_outcome(feedback_id, outcome)

    async def learn_from_correction(
        self,
        decision: LLMDecision,
        context: DecisionContext,
        feedback: UserFeedback,
    ) -> None:
        if not self.config.learning.adapt_to_patterns:
            return

        note = (
            f"User corrected {decision.action} to {feedback.corrected_action} "
            f"({feedback.reason or 'Not provided'}) for {context.current_event.type.value} "
            f"on {context.project_state.branch}"
        )
        logger.info(f"Learning from correction: {note}")

        if self._agent is None:
            return
        try:
            self._agent.add_learning_note(note)
        except Exception as e:
            logger.warning(f"Failed to relay correction to decision agent: {e}")

    # -------------------------------------------------------------------------
    # Preferences / Stats
    # -------------------------------------------------------------------------
    def get_learned_preferences(self, project_path: Optional[str] = None) -> List[UserPreference]:
        stats = self.store.get_stats(project_path)
        preferences = [
            UserPreference(
                type=p.pattern,
                value=list(p.examples),
                confidence=p.confidence,
                evidence=[f"Observed {p.frequency} times"],
            )
            for p in stats.preference_patterns
        ]

        for correction, count in stats.common_corrections.items():
            if count < CORRECTION_PREFERENCE_MIN:
                continue
            original, _, corrected = correction.partition(" -> ")
            preferences.append(UserPreference(
                type="action_correction",
                value={"from": original, "to": corrected},
                confidence=min(0.9, count / 10),
                evidence=[f"Corrected {count} times"],
            ))

        return preferences

    def get_stats(self, project_path: Optional[str] = None) -> FeedbackStats:
        return self.store.get_stats(project_path)


def _insight_key(decision: LLMDecision, context: DecisionContext) -> str:
    return f"{context.project_path}-{decision.action}-{context.project_state.branch}"
