"""
Suggestion Engine

Two rule sets that never depend on automation being enabled:

- SuggestionGenerator: one suggestion per incoming MonitoringEvent,
  cooldown-gated per (event type, project path)
- SuggestionEngine: heuristics over a DevelopmentStatus snapshot, plus one
  optional LLM-derived suggestion when a decision agent is attached

CONSTRAINTS:
- Cooldown is measured on event timestamps, not wall-clock time
- The cooldown map is pruned on every emission
- LLM failures are logged and ignored; rule-based output is unaffected
- Results are sorted high -> medium -> low, then by confidence
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Dict, List, Tuple

from .config import AppConfig, AutomationMode, SuggestionConfig
from .decision_agent import DecisionError
from .decision_model import DecisionContext, LLMDecision, ProjectState, TimeContext
from .event_model import (
    MonitoringEvent,
    MonitoringEventType,
    MonitoringSuggestion,
    SuggestionPriority,
    SuggestionType,
)
from .event_store import EventStore
from .git_ops import DevelopmentStatus, FileStatus
from .llm_providers import LLMProviderError

logger = logging.getLogger("suggestion_engine")


SUGGESTION_COOLDOWN = timedelta(minutes=10)
BUG_FIX_WINDOW = timedelta(hours=24)
BUG_FIX_RELEASE_MIN = 3

TEST_MARKERS = ("test", "spec", "__tests__")
CODE_SUFFIXES = (".ts", ".js", ".tsx", ".jsx", ".py")
FEATURE_DIRS = ("components/", "features/", "pages/")
LLM_POSSIBLE_ACTIONS = ("commit", "branch", "pr", "wait", "suggest")

HINT_WINDOW = timedelta(minutes=5)


def sort_suggestions(suggestions: List[MonitoringSuggestion]) -> List[MonitoringSuggestion]:
    return sorted(suggestions, key=lambda s: (s.priority.rank, -(s.confidence or 0)))


# -----------------------------------------------------------------------------
# Event-based suggestions
# -----------------------------------------------------------------------------
class SuggestionGenerator:
    """
    Maps a single event to at most one suggestion.

    The last emission time is tracked per (event type, project path); a
    second event of the same key within the cooldown yields nothing.
    """

    def __init__(
        self,
        store: EventStore,
        app_config: Callable[[], AppConfig],
        cooldown: timedelta = SUGGESTION_COOLDOWN,
    ):
        self.store = store
        self._app_config = app_config
        self._cooldown = cooldown
        self._last_emitted: Dict[Tuple[MonitoringEventType, str], datetime] = {}

    def generate(self, event: MonitoringEvent) -> Optional[MonitoringSuggestion]:
        key = (event.type, event.project_path)
        last = self._last_emitted.get(key)
        if last is not None and event.timestamp - last < self._cooldown:
            logger.debug(f"Suggestion for {event.type.value} suppressed by cooldown")
            return None

        suggestion = self._build(event)
        if suggestion is None:
            return None

        self._last_emitted[key] = event.timestamp
        self._prune(event.timestamp)
        return suggestion

    def _prune(self, now: datetime) -> None:
        expired = [k for k, t in self._last_emitted.items() if now - t >= self._cooldown]
        for key in expired:
            del self._last_emitted[key]

    def clear(self) -> None:
        self._last_emitted.clear()

    def _build(self, event: MonitoringEvent) -> Optional[MonitoringSuggestion]:
        project_path = event.project_path

        if event.type == MonitoringEventType.FEATURE_COMPLETE:
            return MonitoringSuggestion(
                type=SuggestionType.COMMIT,
                priority=SuggestionPriority.HIGH,
                message="Feature completed! Time to commit your changes.",
                action="dev_checkpoint",
                reason="Committing completed features helps track progress and enables rollback if needed.",
                related_events=(event,),
                project_path=project_path,
            )

        if event.type == MonitoringEventType.TESTS_FAILING:
            return MonitoringSuggestion(
                type=SuggestionType.FIX,
                priority=SuggestionPriority.HIGH,
                message="Tests are failing. Focus on fixing them before continuing.",
                reason="Keeping tests green ensures code quality and prevents regressions.",
                related_events=(event,),
                project_path=project_path,
            )

        if event.type == MonitoringEventType.BUG_FIXED:
            fixes = self.store.events_since(
                event.timestamp - BUG_FIX_WINDOW,
                project_path=project_path,
                types=[MonitoringEventType.BUG_FIXED],
            )
            if len(fixes) < BUG_FIX_RELEASE_MIN:
                return None
            return MonitoringSuggestion(
                type=SuggestionType.RELEASE,
                priority=SuggestionPriority.MEDIUM,
                message="Multiple bugs fixed. Consider creating a patch release.",
                action="dev_release",
                reason="Patch releases help users get bug fixes quickly.",
                related_events=tuple(fixes),
                project_path=project_path,
            )

        if event.type == MonitoringEventType.READY_FOR_RELEASE:
            return MonitoringSuggestion(
                type=SuggestionType.RELEASE,
                priority=SuggestionPriority.HIGH,
                message="Project is ready for release!",
                action="dev_release",
                reason="Regular releases keep users engaged and showcase progress.",
                related_events=(event,),
                project_path=project_path,
            )

        if event.type == MonitoringEventType.BLOCKED:
            return MonitoringSuggestion(
                type=SuggestionType.HELP,
                priority=SuggestionPriority.HIGH,
                message="You seem to be blocked. Consider creating an issue or asking for help.",
                action="dev_issue_create",
                reason="Getting unblocked quickly keeps development momentum.",
                related_events=(event,),
                project_path=project_path,
            )

        if event.type == MonitoringEventType.GIT_STATE_CHANGE:
            changes = event.data.get("uncommitted_changes") or {}
            file_count = int(changes.get("file_count", 0))
            threshold = self._app_config().suggestion_config_for(project_path).large_changeset.threshold
            if file_count < threshold:
                return None
            return MonitoringSuggestion(
                type=SuggestionType.COMMIT,
                priority=SuggestionPriority.MEDIUM,
                message=f"You have {file_count} uncommitted files. Consider committing your progress.",
                action="dev_checkpoint",
                reason="Smaller commits are easier to review and revert if needed.",
                related_events=(event,),
                project_path=project_path,
            )

        return None


# -----------------------------------------------------------------------------
# Status-based suggestions
# -----------------------------------------------------------------------------
@dataclass
class WorkContext:
    session_start: datetime
    last_commit_time: Optional[datetime] = None
    uncommitted_start: Optional[datetime] = None
    last_status_check: Optional[datetime] = None


_LLM_SUGGESTION_TYPES = {
    "commit": SuggestionType.COMMIT,
    "branch": SuggestionType.BRANCH,
    "pr": SuggestionType.PR,
    "checkpoint": SuggestionType.CHECKPOINT,
    "suggest": SuggestionType.WARNING,
}

_LLM_ACTIONS = {
    "commit": "dev_checkpoint",
    "branch": "dev_create_branch",
    "pr": "dev_create_pull_request",
}


class SuggestionEngine:
    """Heuristic advisor over a point-in-time DevelopmentStatus."""

    def __init__(
        self,
        app_config: Callable[[], AppConfig],
        agent: Optional[object] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._app_config = app_config
        self.agent = agent
        self._clock = clock or datetime.utcnow
        self._contexts: Dict[str, WorkContext] = {}

    def get_work_context(self, project_path: str) -> WorkContext:
        if project_path not in self._contexts:
            self._contexts[project_path] = WorkContext(session_start=self._clock())
        return self._contexts[project_path]

    def _update_context(self, project_path: str, status: DevelopmentStatus) -> WorkContext:
        context = self.get_work_context(project_path)
        now = self._clock()
        context.last_status_check = now
        if status.uncommitted_changes and status.uncommitted_changes.file_count > 0:
            if context.uncommitted_start is None:
                context.uncommitted_start = now
        else:
            context.uncommitted_start = None
            context.last_commit_time = now
        return context

    async def analyze_situation(self, project_path: str, status: DevelopmentStatus) -> List[MonitoringSuggestion]:
        config = self._app_config()
        suggestion_config = config.suggestion_config_for(project_path)
        if not suggestion_config.enabled:
            return []

        context = self._update_context(project_path, status)
        suggestions: List[MonitoringSuggestion] = []

        if self.agent is not None and config.automation.mode != AutomationMode.OFF.value:
            suggestions.extend(await self._llm_suggestions(project_path, status, context, config))

        if suggestion_config.protected_branch_warnings:
            suggestions.extend(self._check_protected_branch(status))
        if suggestion_config.large_changeset.enabled or suggestion_config.change_pattern_suggestions:
            suggestions.extend(self._check_uncommitted_changes(status, suggestion_config))
        if suggestion_config.time_reminders.enabled:
            suggestions.extend(self._check_time_based(status, context, suggestion_config))
        if suggestion_config.pattern_recognition:
            suggestions.extend(self._check_change_patterns(status))
        if suggestion_config.branch_suggestions:
            suggestions.extend(self._check_branch_suggestions(status, config.git_workflow.main_branch))
        if suggestion_config.pr_suggestions:
            suggestions.extend(self._check_pr_readiness(status, config.git_workflow.main_branch))

        return sort_suggestions(_deduplicate(suggestions))

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------
    def _check_protected_branch(self, status: DevelopmentStatus) -> List[MonitoringSuggestion]:
        changes = status.uncommitted_changes
        if not (status.is_protected and changes and changes.file_count > 0):
            return []
        return [MonitoringSuggestion(
            type=SuggestionType.WARNING,
            priority=SuggestionPriority.HIGH,
            message=f"You're working directly on protected branch '{status.branch}'",
            action="dev_create_branch",
            reason="Protected branches should not receive direct commits. Create a feature branch instead.",
            project_path=status.project_path,
        )]

    def _check_uncommitted_changes(
        self,
        status: DevelopmentStatus,
        config: SuggestionConfig,
    ) -> List[MonitoringSuggestion]:
        changes = status.uncommitted_changes
        if not changes:
            return []
        suggestions = []

        if config.large_changeset.enabled and changes.file_count >= config.large_changeset.threshold:
            suggestions.append(MonitoringSuggestion(
                type=SuggestionType.COMMIT,
                priority=SuggestionPriority.MEDIUM,
                message=f"You have {changes.file_count} uncommitted files",
                action="dev_checkpoint",
                reason="Large changesets are harder to review. Consider committing your progress.",
                project_path=status.project_path,
            ))

        if config.change_pattern_suggestions and changes.added and changes.modified and changes.deleted:
            suggestions.append(MonitoringSuggestion(
                type=SuggestionType.COMMIT,
                priority=SuggestionPriority.MEDIUM,
                message="You have mixed changes (additions, modifications, and deletions)",
                reason="Consider splitting these into atomic commits for better history.",
                project_path=status.project_path,
            ))

        return suggestions

    def _check_time_based(
        self,
        status: DevelopmentStatus,
        context: WorkContext,
        config: SuggestionConfig,
    ) -> List[MonitoringSuggestion]:
        changes = status.uncommitted_changes
        if context.uncommitted_start is None or not changes or changes.file_count == 0:
            return []

        minutes = (self._clock() - context.uncommitted_start).total_seconds() / 60
        if minutes > config.time_reminders.warning_threshold_minutes:
            return [MonitoringSuggestion(
                type=SuggestionType.CHECKPOINT,
                priority=SuggestionPriority.HIGH,
                message=f"You have uncommitted changes for over {int(minutes / 60 + 0.5)} hours",
                action="dev_checkpoint",
                reason="Don't lose your work! Regular commits help you track progress and recover from mistakes.",
                project_path=status.project_path,
            )]
        if minutes > config.time_reminders.reminder_threshold_minutes:
            return [MonitoringSuggestion(
                type=SuggestionType.CHECKPOINT,
                priority=SuggestionPriority.MEDIUM,
                message="Consider committing your progress",
                action="dev_checkpoint",
                reason="Regular commits make it easier to track your work and collaborate.",
                project_path=status.project_path,
            )]
        return []

    def _check_change_patterns(self, status: DevelopmentStatus) -> List[MonitoringSuggestion]:
        if not status.uncommitted_changes:
            return []
        paths = status.uncommitted_changes.all_paths
        suggestions = []

        is_test = [any(marker in p for marker in TEST_MARKERS) for p in paths]
        if any(is_test) and not all(is_test):
            suggestions.append(MonitoringSuggestion(
                type=SuggestionType.COMMIT,
                priority=SuggestionPriority.LOW,
                message="You have both implementation and test changes",
                reason="Good practice! Consider committing them together to maintain test coverage.",
                project_path=status.project_path,
            ))

        has_docs = any(p.endswith(".md") or "docs/" in p for p in paths)
        has_code = any(p.endswith(CODE_SUFFIXES) for p in paths)
        if has_docs and has_code:
            suggestions.append(MonitoringSuggestion(
                type=SuggestionType.COMMIT,
                priority=SuggestionPriority.LOW,
                message="Documentation is updated along with code",
                reason="Excellent! Keeping docs in sync with code changes.",
                project_path=status.project_path,
            ))

        return suggestions

    def _check_branch_suggestions(self, status: DevelopmentStatus, main_branch: str) -> List[MonitoringSuggestion]:
        if not status.uncommitted_changes or status.branch != main_branch:
            return []
        new_features = [
            p for p in status.uncommitted_changes.paths(FileStatus.ADDED)
            if any(d in p for d in FEATURE_DIRS)
        ]
        if not new_features:
            return []
        return [MonitoringSuggestion(
            type=SuggestionType.BRANCH,
            priority=SuggestionPriority.HIGH,
            message="You appear to be adding new features on the main branch",
            action="dev_create_branch",
            reason="New features should be developed in feature branches for easier review and rollback.",
            project_path=status.project_path,
        )]

    def _check_pr_readiness(self, status: DevelopmentStatus, main_branch: str) -> List[MonitoringSuggestion]:
        changes = status.uncommitted_changes
        if status.branch == main_branch or status.is_protected or (changes and changes.file_count > 0):
            return []
        return [MonitoringSuggestion(
            type=SuggestionType.PR,
            priority=SuggestionPriority.MEDIUM,
            message="Your branch appears ready for a pull request",
            action="dev_create_pull_request",
            reason="Clean working directory and feature branch - perfect time for code review!",
            project_path=status.project_path,
        )]

    # -------------------------------------------------------------------------
    # LLM
    # -------------------------------------------------------------------------
    async def _llm_suggestions(
        self,
        project_path: str,
        status: DevelopmentStatus,
        work: WorkContext,
        config: AppConfig,
    ) -> List[MonitoringSuggestion]:

        now = self._clock()
        file_count = status.uncommitted_changes.file_count if status.uncommitted_changes else 0
        context = DecisionContext(
            current_event=MonitoringEvent(
                type=MonitoringEventType.FILE_CHANGE,
                project_path=project_path,
                timestamp=now,
                data={"file_count": file_count},
            ),
            project_state=ProjectState(
                branch=status.branch,
                is_protected=status.is_protected,
                uncommitted_changes=file_count,
                last_commit_time=work.last_commit_time or now,
                changed_files=tuple(status.uncommitted_changes.all_paths) if status.uncommitted_changes else (),
            ),
            user_preferences=config.automation.preferences,
            possible_actions=LLM_POSSIBLE_ACTIONS,
            time_context=TimeContext.at(now),
        )

        try:
            decision: LLMDecision = await self.agent.make_decision(context)
        except (DecisionError, LLMProviderError) as e:
            logger.error(f"Error getting LLM suggestions: {e}")
            return []

        if decision.action == "wait":
            return []

        if decision.confidence > 0.8:
            priority = SuggestionPriority.HIGH
        elif decision.confidence > 0.5:
            priority = SuggestionPriority.MEDIUM
        else:
            priority = SuggestionPriority.LOW

        return [MonitoringSuggestion(
            type=_LLM_SUGGESTION_TYPES.get(decision.action, SuggestionType.WARNING),
            priority=priority,
            message=decision.reasoning,
            action=_LLM_ACTIONS.get(decision.action),
            reason=f"AI confidence: {round(decision.confidence * 100)}%",
            project_path=project_path,
            confidence=decision.confidence,
            from_llm=True,
        )]

    # -------------------------------------------------------------------------
    # Hints
    # -------------------------------------------------------------------------
    def get_contextual_hints(self, project_path: str) -> List[str]:
        context = self.get_work_context(project_path)
        now = self._clock()
        hints = []
        if now - context.session_start < HINT_WINDOW:
            hints.append("Starting a new session? Run 'dev_status' to see your current state.")
        if context.last_commit_time and now - context.last_commit_time < HINT_WINDOW:
            hints.append("Great job committing! Consider creating a PR if your feature is complete.")
        return hints


def _deduplicate(suggestions: List[MonitoringSuggestion]) -> List[MonitoringSuggestion]:
    """One suggestion per (type, action); LLM suggestions win."""
    seen: Dict[Tuple[SuggestionType, Optional[str]], MonitoringSuggestion] = {}
    for suggestion in suggestions:
        if suggestion.from_llm:
            seen[(suggestion.type, suggestion.action)] = suggestion
    for suggestion in suggestions:
        if not suggestion.from_llm:
            seen.setdefault((suggestion.type, suggestion.action), suggestion)
    return list(seen.values())
