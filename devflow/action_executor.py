"""
Action Executor

Performs a gated decision against the git and GitHub collaborators and
records how to undo it.

Actions:
- commit / checkpoint: stage all + commit    rollback: reset --soft HEAD~1
- branch: checkout -b feature/auto-<ms>      rollback: checkout prev + branch -d
- pr: push + draft pull request              rollback: none (external side effect)
- stash: stash push                          rollback: stash pop

CONSTRAINTS:
- SafetyValidator runs before EVERY execution; there is no bypass
- Failures come back as ActionResult(success=False), never raised
- Every outcome lands in the execution history and is re-emitted as
  LLM_ACTION_EXECUTED / LLM_ACTION_FAILED
- rollback() returns False instead of raising, and only runs rollback
  info recorded by one of its own successful executions
"""

import logging
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Dict, Any, List

from .config import AppConfig
from .decision_agent import DecisionError
from .decision_model import ActionResult, DecisionContext, LLMDecision, RollbackInfo
from .event_model import MonitoringEvent, MonitoringEventType
from .git_ops import GitCollaborator, GitCommandError, parse_github_url
from .github_client import GitHubAPIError, GitHubCollaborator, parse_repo
from .llm_providers import LLMProviderError
from .safety_validator import SafetyValidator

logger = logging.getLogger("action_executor")


DEFAULT_COMMIT_MESSAGE = "feat: automated commit by LLM"
DEFAULT_PR_TITLE = "Automated PR by LLM"
DEFAULT_PR_BODY = "This PR was automatically created by the LLM automation system."
STASH_MESSAGE = "Auto-stashed by LLM"
MAX_HISTORY = 100


class ExecutorEvent(str, Enum):
    EXECUTION_START = "execution-start"
    EXECUTION_COMPLETE = "execution-complete"
    EXECUTION_FAILED = "execution-failed"
    ROLLBACK_COMPLETE = "rollback-complete"
    ROLLBACK_FAILED = "rollback-failed"


ExecutorListener = Callable[[ExecutorEvent, Dict[str, Any]], Any]


class ActionExecutor:
    """Executes approved decisions. One instance per aggregator."""

    def __init__(
        self,
        git: GitCollaborator,
        validator: SafetyValidator,
        app_config: Callable[[], AppConfig],
        github: Optional[GitHubCollaborator] = None,
        agent: Optional[Any] = None,
        on_event: Optional[Callable[[MonitoringEvent], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            git: Git collaborator used for every repository mutation
            validator: Safety gate consulted before each execution
            app_config: Config getter (workflow prefixes, project repos)
            github: GitHub collaborator for the pr action
            agent: Optional message generator (LLMDecisionAgent)
            on_event: Receives LLM_ACTION_EXECUTED / LLM_ACTION_FAILED
            clock: Timestamp source for emitted events (optional, for testing)
        """
        self.git = git
        self.validator = validator
        self.github = github
        self.agent = agent
        self._app_config = app_config
        self._on_event = on_event
        self._clock = clock or datetime.utcnow
        self._listeners: List[ExecutorListener] = []
        self._history: List[ActionResult] = []
        self._rollbacks: List[RollbackInfo] = []

    def add_listener(self, listener: ExecutorListener) -> None:
        self._listeners.append(listener)

    def set_event_listener(self, on_event: Optional[Callable[[MonitoringEvent], Any]]) -> None:
        self._on_event = on_event

    def get_history(self, limit: int = MAX_HISTORY) -> List[ActionResult]:
        return self._history[-limit:]

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------
    async def execute_decision(self, decision: LLMDecision, context: DecisionContext) -> ActionResult:
        check = self.validator.validate(decision, context)
        if not check.safe:
            result = ActionResult(
                success=False,
                action=decision.action,
                error=f"Safety check failed: {', '.join(check.reasons)}",
            )
            self._finish(result, decision, context)
            return result

        self._notify(ExecutorEvent.EXECUTION_START, {"decision": decision, "context": context})
        handler = {
            "commit": self._execute_commit,
            "checkpoint": self._execute_commit,
            "branch": self._execute_branch,
            "pr": self._execute_pr,
            "stash": self._execute_stash,
        }.get(decision.action)

        if handler is None:
            result = ActionResult(success=False, action=decision.action, error=f"Unknown action: {decision.action}")
        else:
            try:
                result = await handler(decision, context)
            except (GitCommandError, GitHubAPIError, LLMProviderError, DecisionError, ValueError) as e:
                logger.error(f"Action '{decision.action}' failed in {context.project_path}: {e}")
                result = ActionResult(success=False, action=decision.action, error=str(e))

        if result.success and decision.is_mutating:
            self.validator.rate_limiter.record()
        self._finish(result, decision, context)
        return result

    def _finish(self, result: ActionResult, decision: LLMDecision, context: DecisionContext) -> None:
        self._history.append(result)
        if len(self._history) > MAX_HISTORY:
            self._history = self._history[-MAX_HISTORY:]
        if result.success and result.rollback_info is not None:
            self._rollbacks.append(result.rollback_info)
            self._rollbacks = self._rollbacks[-MAX_HISTORY:]

        if result.success:
            logger.info(f"Executed '{result.action}' in {context.project_path}")
            self._notify(ExecutorEvent.EXECUTION_COMPLETE, {"result": result})
        else:
            self._notify(ExecutorEvent.EXECUTION_FAILED, {"result": result})

        if self._on_event is None:
            return
        event = MonitoringEvent(
            type=MonitoringEventType.LLM_ACTION_EXECUTED if result.success else MonitoringEventType.LLM_ACTION_FAILED,
            project_path=context.project_path,
            timestamp=self._clock(),
            data={
                "action": decision.action,
                "success": result.success,
                "confidence": decision.confidence,
                "output": result.output,
                "error": result.error,
            },
        )
        try:
            self._on_event(event)
        except Exception as e:
            logger.error(f"Action event listener failed: {e}")

    async def _execute_commit(self, decision: LLMDecision, context: DecisionContext) -> ActionResult:
        project_path = context.project_path
        message = await self._commit_message(context)
        await self.git.stage_all(project_path)
        commit_hash = await self.git.commit(project_path, message)
        return ActionResult(
            success=True,
            action=decision.action,
            output=f"Committed {commit_hash[:7]}: {message}",
            rollback_info=RollbackInfo(
                action=decision.action,
                previous_state=commit_hash,
                commands=(("reset", "--soft", "HEAD~1"),),
                project_path=project_path,
            ),
        )

    async def _execute_branch(self, decision: LLMDecision, context: DecisionContext) -> ActionResult:
        project_path = context.project_path
        previous = context.project_state.branch
        prefix = self._app_config().git_workflow.branch_prefixes.get("feature", "feature/")
        name = f"{prefix}auto-{int(time.time() * 1000)}"

        await self.git.create_branch(project_path, name)
        return ActionResult(
            success=True,
            action="branch",
            output=f"Created and switched to branch {name}",
            rollback_info=RollbackInfo(
                action="branch",
                previous_state=previous,
                commands=(("checkout", previous), ("branch", "-d", name)),
                project_path=project_path,
            ),
        )

    async def _execute_pr(self, decision: LLMDecision, context: DecisionContext) -> ActionResult:
        project_path = context.project_path
        if self.github is None or not self.github.is_configured():
            return ActionResult(success=False, action="pr", error="GitHub is not configured (set GITHUB_TOKEN)")

        config = self._app_config()
        project = config.get_project(project_path)
        if project and project.github_repo:
            owner, repo = parse_repo(project.github_repo)
        else:
            remote = await self.git.get_remote_url(project_path)
            parsed = parse_github_url(remote) if remote else None
            if parsed is None:
                return ActionResult(success=False, action="pr", error="Could not determine GitHub repository")
            owner, repo = parsed

        branch = context.project_state.branch
        await self.git.push_branch(project_path)
        title, body = await self._pr_text(context)
        pr = await self.github.create_pull_request(
            owner, repo,
            title=title,
            body=body,
            head=branch,
            base=config.git_workflow.main_branch,
            draft=True,
            reviewers=project.reviewers if project else None,
        )
        return ActionResult(success=True, action="pr", output=f"Created draft PR #{pr['number']}: {pr['url']}")

    async def _execute_stash(self, decision: LLMDecision, context: DecisionContext) -> ActionResult:
        project_path = context.project_path
        output = await self.git.stash(project_path, STASH_MESSAGE)
        return ActionResult(
            success=True,
            action="stash",
            output=output,
            rollback_info=RollbackInfo(
                action="stash",
                previous_state="",
                commands=(("stash", "pop"),),
                project_path=project_path,
            ),
        )

    # -------------------------------------------------------------------------
    # Generated text (falls back to fixed strings without an agent)
    # -------------------------------------------------------------------------
    async def _commit_message(self, context: DecisionContext) -> str:
        if self.agent is None or not self.agent.initialized:
            return DEFAULT_COMMIT_MESSAGE
        project_path = context.project_path
        try:
            changes = await self.git.get_uncommitted_changes(project_path)
            commits = await self.git.get_recent_commits(project_path, 5)
            message = await self.agent.generate_commit_message(
                changes.diff_summary if changes else "",
                context.project_state,
                [c.message for c in commits],
            )
        except (LLMProviderError, DecisionError) as e:
            logger.warning(f"Commit message generation failed, using default: {e}")
            return DEFAULT_COMMIT_MESSAGE
        return message or DEFAULT_COMMIT_MESSAGE

    async def _pr_text(self, context: DecisionContext):
        if self.agent is None or not self.agent.initialized:
            return DEFAULT_PR_TITLE, DEFAULT_PR_BODY
        project_path = context.project_path
        try:
            commits = await self.git.get_recent_commits(project_path, 10)
            description = await self.agent.generate_pr_description(
                context.project_state.branch,
                [c.message for c in commits],
                f"{context.project_state.uncommitted_changes} uncommitted files",
            )
        except (LLMProviderError, DecisionError) as e:
            logger.warning(f"PR description generation failed, using default: {e}")
            return DEFAULT_PR_TITLE, DEFAULT_PR_BODY
        return description["title"] or DEFAULT_PR_TITLE, description["body"] or DEFAULT_PR_BODY

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------
    async def rollback(self, result: ActionResult) -> bool:
        """
        Undo an action this executor performed. Only rollback info recorded
        by a successful execution is run, and at most once.
        """
        info = result.rollback_info
        if info is None or not info.commands:
            return False
        if info not in self._rollbacks:
            logger.warning(f"Refusing rollback of '{info.action}' in {info.project_path}: not an executed action")
            return False

        try:
            for argv in info.commands:
                await self.git.run_git(info.project_path, *argv)
        except GitCommandError as e:
            logger.error(f"Rollback of '{info.action}' failed ({info.rollback_command}): {e}")
            self._notify(ExecutorEvent.ROLLBACK_FAILED, {"result": result, "error": str(e)})
            return False

        self._rollbacks.remove(info)
        logger.info(f"Rolled back '{info.action}' in {info.project_path}")
        self._notify(ExecutorEvent.ROLLBACK_COMPLETE, {"result": result})
        return True

    def _notify(self, event: ExecutorEvent, payload: Dict[str, Any]) -> None:
        for listener in self._listeners:
            try:
                listener(event, payload)
            except Exception as e:
                logger.error(f"Executor listener failed on {event.value}: {e}")
