"""
Prompt Builder

Builds the message lists sent to the decision provider.

Prompts:
- decision: system (role, preferences, safety rules, output format) + user
  (event, project state, history, actions, time)
- commit message
- PR description (JSON title/body)
- risk assessment (JSON score/factors/level/requires_approval)
"""

from datetime import datetime
from typing import Optional, List, Sequence

from .config import AutomationConfig
from .decision_model import DecisionContext, ProjectState
from .event_model import MonitoringEvent, MonitoringEventType
from .llm_providers import LLMMessage

HISTORY_IN_PROMPT = 5

_EVENT_DESCRIPTIONS = {
    MonitoringEventType.FEATURE_COMPLETE: "Feature appears to be complete",
    MonitoringEventType.TESTS_PASSING: "All tests are passing",
    MonitoringEventType.TESTS_FAILING: "Tests are failing",
    MonitoringEventType.REFACTOR_COMPLETE: "Refactoring completed",
    MonitoringEventType.DOCS_UPDATED: "Documentation updated",
}


def describe_event(event: MonitoringEvent) -> str:
    if event.type == MonitoringEventType.FILE_CHANGE:
        files = event.data.get("files") or []
        return f"Files changed: {len(files)}"
    return _EVENT_DESCRIPTIONS.get(event.type, event.type.value)


def time_since(moment: Optional[datetime], now: Optional[datetime] = None) -> str:
    if moment is None:
        return "unknown"
    seconds = ((now or datetime.utcnow()) - moment).total_seconds()
    minutes = int(seconds // 60)
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"{days} day{'s' if days > 1 else ''} ago"
    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
    return "just now"


class PromptBuilder:
    def __init__(self, config: AutomationConfig):
        self.config = config

    # -------------------------------------------------------------------------
    # Decision
    # -------------------------------------------------------------------------
    def build_decision_prompt(
        self,
        context: DecisionContext,
        learning_notes: Sequence[str] = (),
    ) -> List[LLMMessage]:
        return [
            LLMMessage("system", self.build_system_prompt(learning_notes)),
            LLMMessage("user", self.build_user_prompt(context)),
        ]

    def build_system_prompt(self, learning_notes: Sequence[str] = ()) -> str:
        prefs = self.config.preferences
        thresholds = self.config.thresholds
        hours = (
            f"{prefs.working_hours.start}-{prefs.working_hours.end}"
            if prefs.working_hours else "Not specified"
        )

        prompt = f"""You are an intelligent Git workflow assistant that makes decisions about when and how to perform Git operations.

Your role:
1. Analyze the current development context
2. Decide what action to take (if any)
3. Provide clear reasoning for your decision
4. Assess confidence level (0-1)
5. Determine if manual approval is needed

User Preferences:
- Commit Style: {prefs.commit_style}
- Commit Frequency: {prefs.commit_frequency}
- Risk Tolerance: {prefs.risk_tolerance}
- Working Hours: {hours}

Safety Rules:
- Never auto-execute if confidence < {thresholds.auto_execute}
- Always require approval if confidence < {thresholds.require_approval}
- Respect protected branches and files
- Consider test status when available

Output Format: JSON with fields:
{{
  "action": "commit|branch|pr|stash|wait|suggest",
  "confidence": 0.0-1.0,
  "reasoning": "explanation of decision",
  "requires_approval": true/false,
  "alternative_actions": ["other viable options"],
  "risk_assessment": {{ optional risk details }}
}}"""

        if learning_notes:
            notes = "\n".join(f"- {note}" for note in learning_notes)
            prompt += f"\n\nRecent user corrections:\n{notes}"
        return prompt

    def build_user_prompt(self, context: DecisionContext, now: Optional[datetime] = None) -> str:
        event = context.current_event
        state = context.project_state
        time_ctx = context.time_context
        history = "\n".join(
            f"- {time_since(e.timestamp, now)}: {describe_event(e)}"
            for e in context.recent_history[-HISTORY_IN_PROMPT:]
        )

        return f"""Analyze the current situation and decide what action to take:

CURRENT EVENT:
- Type: {event.type.value}
- Description: {describe_event(event)}
- Timestamp: {event.timestamp.isoformat()}

PROJECT STATE:
- Branch: {state.branch}
- Protected: {state.is_protected}
- Uncommitted Changes: {state.uncommitted_changes} files
- Last Commit: {time_since(state.last_commit_time, now)}
- Test Status: {state.test_status}
- Build Status: {state.build_status}

RECENT HISTORY:
{history}

AVAILABLE ACTIONS:
{', '.join(context.possible_actions)}

TIME CONTEXT:
- Current Time: {time_ctx.current_time.isoformat() if time_ctx else 'unknown'}
- Is Working Hours: {time_ctx.is_working_hours if time_ctx else 'unknown'}
- Last User Activity: {time_since(time_ctx.last_user_activity, now) if time_ctx else 'unknown'}

Based on the user's preferences and current context, what action should be taken?"""

    # -------------------------------------------------------------------------
    # Commit / PR / Risk
    # -------------------------------------------------------------------------
    def build_commit_message_prompt(
        self,
        diff_summary: str,
        project_state: ProjectState,
        recent_commits: Sequence[str],
    ) -> List[LLMMessage]:
        style = self.config.preferences.commit_style
        rules = [
            "Keep the first line under 72 characters",
            "Use active voice and present tense",
            "Be specific about what changed and why",
            "Follow the repository's existing commit style",
        ]
        if style == "conventional":
            rules.append("Use conventional commit format (type: subject)")
        numbered = "\n".join(f"{i}. {rule}" for i, rule in enumerate(rules, 1))

        system = (
            "You are a Git commit message generator. Generate professional commit "
            f"messages following the {style} style.\n\nRules:\n{numbered}"
        )
        user = f"""Generate a commit message for the following changes:

DIFF SUMMARY:
{diff_summary}

PROJECT INFO:
- Branch: {project_state.branch}
- Test Status: {project_state.test_status}

RECENT COMMITS (for style reference):
{chr(10).join(recent_commits[:5])}

Generate a commit message following the team's style."""
        return [LLMMessage("system", system), LLMMessage("user", user)]

    def build_pr_description_prompt(
        self,
        branch: str,
        commits: Sequence[str],
        changes_summary: str,
    ) -> List[LLMMessage]:
        system = (
            "You are a GitHub Pull Request description generator. Create comprehensive "
            "PR descriptions that help reviewers understand the changes.\n\n"
            'Output format: JSON with "title" and "body" fields.'
        )
        user = f"""Create a pull request description:

BRANCH: {branch}
COMMITS:
{chr(10).join(commits)}

CHANGES SUMMARY:
{changes_summary}

Generate a JSON response with:
- title: Clear, concise PR title
- body: Comprehensive description including summary, motivation, type of change, and testing performed"""
        return [LLMMessage("system", system), LLMMessage("user", user)]

    def build_risk_assessment_prompt(self, context: DecisionContext) -> List[LLMMessage]:
        state = context.project_state
        time_ctx = context.time_context
        system = (
            "You are a risk assessment system for Git automation. Evaluate the risk "
            "level of proposed actions.\n\n"
            "Output format: JSON with score (0-1), factors (array), level "
            "(low/medium/high/critical), and requires_approval (boolean)."
        )
        user = f"""Assess the risk of this action:

ACTION: {context.current_event.type.value}
PROJECT STATE:
- Branch: {state.branch}
- Protected: {state.is_protected}
- Uncommitted Changes: {state.uncommitted_changes}
- Tests: {state.test_status}

TIME CONTEXT:
- Current Time: {time_ctx.current_time.isoformat() if time_ctx else 'unknown'}
- Working Hours: {time_ctx.is_working_hours if time_ctx else 'unknown'}

Evaluate risk considering branch protection, test status, time of day, and change scope."""
        return [LLMMessage("system", system), LLMMessage("user", user)]
