"""
Event Aggregator

Central hub of the monitoring pipeline. One instance owns its event store,
milestone detector, suggestion generator, safety validator, action executor
and (when automation is active) decision agent plus feedback loop.

Flow per event:
    add_event -> store -> milestones -> suggestion -> decision cycle

Decision cycle:
    IDLE -> DECISION_REQUESTED -> DECISION_MADE -> {AUTO_EXECUTE | APPROVAL_REQUIRED}

CONSTRAINTS:
- At most ONE decision cycle in flight (`_processing_decision`); the flag
  is checked and set before any await
- Events that arrive during a cycle are recorded but do not trigger one
- llm_* events never trigger a decision cycle
- Provider/decision failures mean "no decision this cycle", never a crash
- Notification handlers that raise are logged and skipped
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Optional, Dict, Any, List, Set

from .action_executor import ActionExecutor
from .config import AppConfig, AutomationMode
from .decision_agent import DecisionError, LLMDecisionAgent
from .decision_model import (
    DEFAULT_POSSIBLE_ACTIONS,
    ActionResult,
    DecisionContext,
    LLMDecision,
    ProjectState,
    TestStatus,
    TimeContext,
)
from .event_model import (
    ActionReadyNotification,
    ApprovalRequiredNotification,
    MilestoneNotification,
    MonitoringEvent,
    MonitoringEventType,
    Notification,
    NotificationKind,
    SuggestionNotification,
)
from .event_store import EventStore
from .feedback_handlers import FeedbackHandlers
from .feedback_store import FeedbackStore
from .git_ops import GitCollaborator, GitCommandError
from .github_client import GitHubCollaborator
from .learning_engine import LearningEngine
from .learning_model import ActionOutcome
from .llm_providers import BaseLLMProvider, LLMProviderError
from .milestone_detector import MilestoneDetector
from .safety_validator import SafetyValidator
from .suggestion_engine import SuggestionGenerator

logger = logging.getLogger("event_aggregator")


HISTORY_FOR_DECISION = 10

NotificationHandler = Callable[[Notification], Any]


class EventAggregator:
    """
    Explicitly constructed pipeline instance.

    Until initialize() succeeds with automation active, the aggregator
    runs in suggestion-only mode: milestones and suggestions still fire.
    """

    def __init__(
        self,
        git: Optional[GitCollaborator] = None,
        github: Optional[GitHubCollaborator] = None,
        provider: Optional[BaseLLMProvider] = None,
        store: Optional[EventStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            git: Git collaborator for project state and execution
            github: GitHub collaborator for the pr action
            provider: Decision provider override (default: from config)
            store: Event store (default: a fresh bounded store)
            clock: Time source (optional, for testing)
        """
        self._config = AppConfig()
        self._clock = clock or datetime.utcnow
        self.git = git or GitCollaborator()
        self._provider = provider

        self.store = store or EventStore(clock=self._clock)
        self.milestones = MilestoneDetector(self.store)
        self.suggestions = SuggestionGenerator(self.store, self.get_config)
        self.validator = SafetyValidator(self._automation_config)
        self.executor = ActionExecutor(
            self.git,
            self.validator,
            self.get_config,
            github=github,
            on_event=self.add_event,
            clock=self._clock,
        )

        self.agent: Optional[LLMDecisionAgent] = None
        self.learning_engine: Optional[LearningEngine] = None
        self.feedback_handlers: Optional[FeedbackHandlers] = None

        self._handlers: Dict[NotificationKind, List[NotificationHandler]] = {kind: [] for kind in NotificationKind}
        self._processing_decision = False
        self._decision_counter = 0
        self._tasks: Set[asyncio.Task] = set()

    def get_config(self) -> AppConfig:
        return self._config

    def _automation_config(self):
        return self._config.automation

    @property
    def is_processing_decision(self) -> bool:
        return self._processing_decision

    @property
    def automation_active(self) -> bool:
        return self.agent is not None and self._config.automation.is_active

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------
    async def initialize(self, config: AppConfig) -> bool:
        """
        Apply config and, when automation is active, build the decision
        agent and feedback loop.

        Returns:
            True when the decision pipeline is live, False for
            suggestion-only mode
        """
        self._config = config
        if self.feedback_handlers is not None:
            self.feedback_handlers.clear_pending_decisions()
        self.agent = None
        self.learning_engine = None
        self.feedback_handlers = None
        self.executor.agent = None

        automation = config.automation
        if not automation.is_active:
            logger.info("Automation is off; running in suggestion-only mode")
            return False

        agent = LLMDecisionAgent(self._automation_config, provider=self._provider, clock=self._clock)
        try:
            await agent.initialize()
        except LLMProviderError as e:
            logger.warning(f"Failed to initialize decision agent ({e}); continuing in suggestion-only mode")
            return False

        if automation.learning.enabled:
            engine = LearningEngine(FeedbackStore(config.data_dir), self._automation_config, clock=self._clock)
            await engine.initialize()
            agent.set_learning_engine(engine)
            self.learning_engine = engine
            self.feedback_handlers = FeedbackHandlers(
                engine,
                timeout=lambda: self._config.automation.learning.implicit_approval_timeout,
                on_feedback=self.add_event,
                clock=self._clock,
            )

        self.agent = agent
        self.executor.agent = agent
        logger.info(f"Automation active in {automation.mode} mode")
        return True

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------
    def on(self, kind: NotificationKind, handler: NotificationHandler) -> None:
        self._handlers[kind].append(handler)

    def off(self, kind: NotificationKind, handler: NotificationHandler) -> None:
        if handler in self._handlers[kind]:
            self._handlers[kind].remove(handler)

    def _emit(self, notification: Notification) -> None:
        for handler in list(self._handlers[notification.kind]):
            try:
                handler(notification)
            except Exception as e:
                logger.error(f"{notification.kind.value} handler failed: {e}")

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------
    def add_event(self, event: MonitoringEvent) -> None:
        """
        Record one event. A triggered decision cycle is scheduled on the
        running loop; without one, only milestones and suggestions run.
        """
        if not self._ingest(event):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._processing_decision = False
            logger.debug(f"No running loop; skipping decision for {event.type.value}")
            return
        task = loop.create_task(self._decision_cycle(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def process_event(self, event: MonitoringEvent) -> Optional[str]:
        """
        Record one event and run any triggered decision cycle inline.

        Returns:
            The decision id, or None when no decision was made
        """
        if not self._ingest(event):
            return None
        return await self._decision_cycle(event)

    async def wait_for_decisions(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    def _ingest(self, event: MonitoringEvent) -> bool:
        """Store, detect, suggest. Returns True when a decision cycle was claimed."""
        self.store.add_event(event)

        for milestone in self.milestones.check(event):
            self._emit(MilestoneNotification(milestone))

        if self._config.suggestion_config_for(event.project_path).enabled:
            suggestion = self.suggestions.generate(event)
            if suggestion is not None:
                self._emit(SuggestionNotification(suggestion))

        if (
            self.agent is None
            or not self._config.automation.enabled
            or self._processing_decision
            or event.type.is_decision_pipeline
        ):
            return False
        self._processing_decision = True
        return True

    # -------------------------------------------------------------------------
    # Decision cycle
    # -------------------------------------------------------------------------
    def _next_decision_id(self) -> str:
        self._decision_counter += 1
        return f"decision-{int(time.time() * 1000)}-{self._decision_counter}"

    async def _decision_cycle(self, event: MonitoringEvent) -> Optional[str]:
        try:
            self.add_event(MonitoringEvent(
                type=MonitoringEventType.LLM_DECISION_REQUESTED,
                project_path=event.project_path,
                timestamp=self._clock(),
                data={"trigger_event": event.to_dict()},
            ))

            context = await self.build_decision_context(event)
            try:
                decision = await self.agent.make_decision(context)
            except (DecisionError, LLMProviderError) as e:
                logger.error(f"No decision for {event.type.value}: {e}")
                return None

            self.add_event(MonitoringEvent(
                type=MonitoringEventType.LLM_DECISION_MADE,
                project_path=event.project_path,
                timestamp=self._clock(),
                data={"decision": decision.to_dict()},
            ))

            decision_id = self._next_decision_id()
            if self.feedback_handlers is not None:
                self.feedback_handlers.register_decision(decision_id, decision, context)

            if decision.requires_approval:
                self._emit(ApprovalRequiredNotification(decision_id, decision, context))
                self.add_event(MonitoringEvent(
                    type=MonitoringEventType.LLM_APPROVAL_REQUIRED,
                    project_path=event.project_path,
                    timestamp=self._clock(),
                    data={"decision": decision.to_dict(), "reason": decision.reasoning, "decision_id": decision_id},
                ))
            elif decision.confidence >= self._config.automation.thresholds.auto_execute:
                self._emit(ActionReadyNotification(decision_id, decision, context))
                if decision.is_mutating and self._config.automation.mode == AutomationMode.AUTONOMOUS.value:
                    await self._auto_execute(decision_id, decision, context)

            return decision_id
        finally:
            self._processing_decision = False

    async def _auto_execute(self, decision_id: str, decision: LLMDecision, context: DecisionContext) -> ActionResult:
        result = await self.executor.execute_decision(decision, context)
        if self.feedback_handlers is not None:
            await self.feedback_handlers.record_outcome(
                decision_id,
                ActionOutcome(success=result.success, error=result.error),
            )
        return result

    async def build_decision_context(self, event: MonitoringEvent) -> DecisionContext:
        project_path = event.project_path
        automation = self._config.automation
        history = self.store.events_for_project(project_path, HISTORY_FOR_DECISION)

        return DecisionContext(
            current_event=event,
            project_state=await self._project_state(project_path, history),
            recent_history=tuple(history),
            user_preferences=automation.preferences,
            possible_actions=DEFAULT_POSSIBLE_ACTIONS,
            time_context=TimeContext.at(self._clock(), automation.preferences.working_hours),
        )

    async def _project_state(self, project_path: str, history: List[MonitoringEvent]) -> ProjectState:
        branch = self._config.git_workflow.main_branch
        changes = None
        latest = None
        try:
            branch = await self.git.get_current_branch(project_path)
            changes = await self.git.get_uncommitted_changes(project_path)
            latest = await self.git.get_latest_commit(project_path)
        except GitCommandError as e:
            logger.debug(f"Using default project state for {project_path}: {e}")

        test_status = TestStatus.UNKNOWN.value
        for past in reversed(history):
            if past.type == MonitoringEventType.TESTS_PASSING:
                test_status = TestStatus.PASSING.value
                break
            if past.type == MonitoringEventType.TESTS_FAILING:
                test_status = TestStatus.FAILING.value
                break

        return ProjectState(
            branch=branch,
            is_protected=self._config.git_workflow.is_protected(branch),
            uncommitted_changes=changes.file_count if changes else 0,
            last_commit_time=latest.date if latest else None,
            test_status=test_status,
            changed_files=tuple(changes.all_paths) if changes else (),
        )

    # -------------------------------------------------------------------------
    # Facade
    # -------------------------------------------------------------------------
    async def execute_decision(self, decision: LLMDecision, context: DecisionContext) -> ActionResult:
        return await self.executor.execute_decision(decision, context)

    async def rollback(self, result: ActionResult) -> bool:
        return await self.executor.rollback(result)

    def get_recent_events(self, count: int = 10) -> List[MonitoringEvent]:
        return self.store.get_recent_events(count)

    def get_pending_decisions(self) -> List[Dict[str, Any]]:
        if self.feedback_handlers is None:
            return []
        return [p.to_dict() for p in self.feedback_handlers.pending_decisions()]

    def get_stats(self) -> Dict[str, Any]:
        stats = self.store.get_stats()
        stats.update({
            "automation_active": self.automation_active,
            "processing_decision": self._processing_decision,
            "pending_decisions": len(self.feedback_handlers.pending_decisions()) if self.feedback_handlers else 0,
        })
        return stats

    def clear(self) -> None:
        self.store.clear()
        self.milestones.clear()
        self.suggestions.clear()
