"""
Decision Agent

Turns a DecisionContext into one LLMDecision via a pluggable provider,
then runs learning adjustment and safety post-processing.

Pipeline per call:
1. Build prompt (plus recent user-correction notes)
2. provider.complete() -> provider.parse_decision()
3. Learning: wait if history says so, else merge learned correction and
   replace confidence with the adjusted value
4. Safety post-processing (approval flags, emergency stop)

CONSTRAINTS:
- Never fabricates a decision: provider and parse failures raise
  DecisionError
- Every adjustment produces a NEW LLMDecision (frozen)
- Config is read at call time through the supplied getter
"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from fnmatch import fnmatch
from typing import Callable, Optional, Dict, List, Sequence

from .config import AutomationConfig, AutomationMode
from .decision_model import (
    DecisionContext,
    LLMDecision,
    ProjectState,
    RiskAssessment,
    TestStatus,
    TimeContext,
)
from .llm_providers import (
    BaseLLMProvider,
    LLMProviderError,
    ProviderUnavailableError,
    create_provider,
    parse_json,
    validate_provider,
)
from .prompt_builder import PromptBuilder

logger = logging.getLogger("decision_agent")


TEST_COMMAND_TIMEOUT = 300  # seconds
MAX_LEARNING_NOTES = 10


class DecisionError(Exception):
    """No decision could be produced this cycle."""


class LLMDecisionAgent:
    """
    Decision strategy backed by an LLMProvider.

    The provider is built from config on initialize() unless one is
    injected (tests inject StubProvider or a mock).
    """

    def __init__(
        self,
        config: Callable[[], AutomationConfig],
        provider: Optional[BaseLLMProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._config = config
        self.provider = provider
        self._clock = clock or datetime.utcnow
        self._learning_engine = None
        self._learning_notes: deque = deque(maxlen=MAX_LEARNING_NOTES)
        self._initialized = False

    @property
    def config(self) -> AutomationConfig:
        return self._config()

    @property
    def prompt_builder(self) -> PromptBuilder:
        return PromptBuilder(self.config)

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        Resolve and validate the provider. Safe to call repeatedly.

        Raises:
            LLMProviderError: unknown provider name
            ProviderUnavailableError: provider reports unavailable
        """
        if self._initialized:
            return
        if self.provider is None:
            self.provider = create_provider(self.config.llm)
        if not await validate_provider(self.provider):
            raise ProviderUnavailableError(f"{self.provider.name} provider is not available")
        self._initialized = True
        logger.info(f"Decision agent initialized with {self.provider.name} provider")

    # -------------------------------------------------------------------------
    # Learning hooks
    # -------------------------------------------------------------------------
    def set_learning_engine(self, engine) -> None:
        self._learning_engine = engine
        engine.set_decision_agent(self)

    def add_learning_note(self, note: str) -> None:
        self._learning_notes.append(note)

    @property
    def learning_notes(self) -> List[str]:
        return list(self._learning_notes)

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------
    async def make_decision(self, context: DecisionContext) -> LLMDecision:
        """
        Raises:
            DecisionError: agent not initialized, provider failed, or the
                response was not a valid decision
        """
        if self.provider is None:
            raise DecisionError("Decision agent is not initialized")

        messages = self.prompt_builder.build_decision_prompt(context, self.learning_notes)
        try:
            response = await self.provider.complete(messages)
            decision = self.provider.parse_decision(response.content)
        except LLMProviderError as e:
            logger.error(f"Decision provider failed: {e}")
            raise DecisionError(str(e)) from e

        config = self.config
        if self._learning_engine is not None and config.learning.enabled:
            insights = self._learning_engine.analyze_decision(decision, context)
            if not insights.should_proceed:
                return LLMDecision(
                    action="wait",
                    confidence=0.2,
                    reasoning=f"Learning system suggests waiting: {'; '.join(insights.reasoning)}",
                    requires_approval=True,
                )
            if insights.adjusted_action:
                decision = decision.with_changes(
                    action=insights.adjusted_action,
                    reasoning=f"{decision.reasoning} (Learning: {'; '.join(insights.reasoning)})",
                )
            decision = decision.with_changes(
                confidence=self._learning_engine.adjust_confidence(decision, context),
            )

        decision = await self.apply_safety_checks(decision, context)
        logger.info(
            f"Decision for {context.current_event.type.value}: {decision.action} "
            f"(confidence {decision.confidence:.2f}, approval={decision.requires_approval})"
        )
        return decision

    async def apply_safety_checks(self, decision: LLMDecision, context: DecisionContext) -> LLMDecision:
        config = self.config
        requires_approval = decision.requires_approval
        reasoning = decision.reasoning

        if not config.enabled or config.mode == AutomationMode.OFF.value:
            requires_approval = True

        if decision.confidence < config.thresholds.confidence:
            requires_approval = True

        working_hours = config.preferences.working_hours
        if working_hours:
            time_ctx = context.time_context or TimeContext.at(self._clock(), working_hours)
            if not time_ctx.is_working_hours:
                requires_approval = True
                reasoning += " (Outside working hours)"

        if self._touches_protected_files(context, config.safety.protected_files):
            requires_approval = True
            reasoning += " (Touches protected files)"

        if config.safety.require_tests_pass:
            status = context.project_state.test_status
            if status == TestStatus.UNKNOWN.value:
                status = await self.check_test_status(context.project_path, config.safety.test_command)
            if status != TestStatus.PASSING.value:
                requires_approval = True
                reasoning += " (Tests not passing)"

        if config.safety.emergency_stop:
            return decision.with_changes(
                action="wait",
                requires_approval=True,
                reasoning="Emergency stop is active",
            )

        return decision.with_changes(requires_approval=requires_approval, reasoning=reasoning)

    @staticmethod
    def _touches_protected_files(context: DecisionContext, patterns: Sequence[str]) -> bool:
        if not patterns:
            return False
        files = list(context.current_event.data.get("files") or [])
        file_path = context.current_event.data.get("file_path")
        if file_path:
            files.append(file_path)
        files.extend(context.project_state.changed_files)
        return any(fnmatch(f, p) for f in files for p in patterns)

    async def check_test_status(self, project_path: str, test_command: Optional[List[str]]) -> str:
        """Run the configured test command. No command leaves the status unknown."""
        if not test_command:
            return TestStatus.UNKNOWN.value

        try:
            process = await asyncio.create_subprocess_exec(
                *test_command,
                cwd=project_path or None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
            logger.error(f"Could not run test command {test_command}: {e}")
            return TestStatus.FAILING.value

        try:
            await asyncio.wait_for(process.communicate(), timeout=TEST_COMMAND_TIMEOUT)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"Test command timed out after {TEST_COMMAND_TIMEOUT}s")
            return TestStatus.FAILING.value

        return TestStatus.PASSING.value if process.returncode == 0 else TestStatus.FAILING.value

    # -------------------------------------------------------------------------
    # Generation helpers
    # -------------------------------------------------------------------------
    def _require_provider(self) -> BaseLLMProvider:
        if self.provider is None:
            raise DecisionError("Decision agent is not initialized")
        return self.provider

    async def generate_commit_message(
        self,
        diff_summary: str,
        project_state: ProjectState,
        recent_commits: Sequence[str],
    ) -> str:
        provider = self._require_provider()
        messages = self.prompt_builder.build_commit_message_prompt(diff_summary, project_state, recent_commits)
        response = await provider.complete(messages)
        return response.content.strip()

    async def generate_pr_description(
        self,
        branch: str,
        commits: Sequence[str],
        changes_summary: str,
    ) -> Dict[str, str]:
        """
        Raises:
            DecisionError: response had no title/body JSON
        """
        provider = self._require_provider()
        messages = self.prompt_builder.build_pr_description_prompt(branch, commits, changes_summary)
        response = await provider.complete(messages)
        parsed = parse_json(response.content)
        if not isinstance(parsed, dict) or "title" not in parsed:
            raise DecisionError("Failed to parse PR description")
        return {"title": str(parsed["title"]), "body": str(parsed.get("body", ""))}

    async def assess_risk(self, context: DecisionContext) -> RiskAssessment:
        provider = self._require_provider()
        messages = self.prompt_builder.build_risk_assessment_prompt(context)
        response = await provider.complete(messages)
        parsed = parse_json(response.content)
        if not isinstance(parsed, dict):
            return RiskAssessment(
                score=1.0,
                factors=("Failed to assess risk",),
                level="critical",
                requires_approval=True,
            )
        return RiskAssessment.from_dict(parsed)
