"""
Event Aggregator Tests

1. Suggestion-only mode - milestones and suggestions without a decision agent
2. Decision cycle - approval-required, action-ready, autonomous execution
3. Concurrency - at most one decision in flight
4. Failure handling - provider errors and raising notification handlers
"""

import asyncio

import pytest

from devflow.config import AppConfig, AutomationMode
from devflow.event_aggregator import EventAggregator
from devflow.event_model import (
    ApprovalRequiredNotification,
    MilestoneType,
    MonitoringEventType,
    NotificationKind,
    SuggestionType,
)
from devflow.llm_providers import LLMProviderError
from tests.conftest import (
    PROJECT_PATH,
    FakeClock,
    ScriptedProvider,
    app_config,
    async_test,
    decision_json,
    git,
    make_event,
)


class GatedProvider(ScriptedProvider):
    """Blocks every completion until `gate` is set."""

    def __init__(self, *replies):
        super().__init__(*replies)
        self.gate = asyncio.Event()

    async def complete(self, messages):
        await self.gate.wait()
        return await super().complete(messages)


def _collect(aggregator):
    received = {kind: [] for kind in NotificationKind}
    for kind in NotificationKind:
        aggregator.on(kind, received[kind].append)
    return received


def _types(aggregator):
    return [e.type for e in aggregator.get_recent_events(100)]


# =============================================================================
# Suggestion-only Mode
# =============================================================================
class TestSuggestionOnlyMode:
    @async_test
    async def test_automation_off_keeps_suggestions(self):
        aggregator = EventAggregator(clock=FakeClock())
        received = _collect(aggregator)

        assert not await aggregator.initialize(AppConfig())
        decision_id = await aggregator.process_event(make_event(MonitoringEventType.FEATURE_COMPLETE))

        assert decision_id is None
        assert not aggregator.automation_active
        assert [n.suggestion.type for n in received[NotificationKind.SUGGESTION]] == [SuggestionType.COMMIT]
        assert received[NotificationKind.APPROVAL_REQUIRED] == []

    def test_milestones_without_a_loop(self):
        aggregator = EventAggregator(clock=FakeClock())
        received = _collect(aggregator)

        for event_type in (
            MonitoringEventType.FEATURE_COMPLETE,
            MonitoringEventType.TESTS_PASSING,
            MonitoringEventType.DOCS_UPDATED,
        ):
            aggregator.add_event(make_event(event_type))

        milestones = [n.milestone.type for n in received[NotificationKind.MILESTONE]]
        assert milestones == [MilestoneType.FEATURE_SHIPPED]

    def test_disabled_suggestions_are_not_generated(self):
        config = AppConfig()
        config.suggestions.enabled = False
        aggregator = EventAggregator(clock=FakeClock())
        asyncio.run(aggregator.initialize(config))
        received = _collect(aggregator)

        aggregator.add_event(make_event(MonitoringEventType.BLOCKED))
        assert received[NotificationKind.SUGGESTION] == []

    @async_test
    async def test_unavailable_provider_falls_back(self, temp_dir):
        aggregator = EventAggregator(provider=ScriptedProvider(decision_json(), available=False))
        assert not await aggregator.initialize(app_config(temp_dir))
        assert aggregator.agent is None

    def test_raising_handler_does_not_stop_others(self):
        aggregator = EventAggregator(clock=FakeClock())
        seen = []

        def broken(notification):
            raise RuntimeError("handler bug")

        aggregator.on(NotificationKind.SUGGESTION, broken)
        aggregator.on(NotificationKind.SUGGESTION, seen.append)
        aggregator.add_event(make_event(MonitoringEventType.BLOCKED))

        assert len(seen) == 1

    def test_off_unsubscribes(self):
        aggregator = EventAggregator(clock=FakeClock())
        seen = []
        aggregator.on(NotificationKind.SUGGESTION, seen.append)
        aggregator.off(NotificationKind.SUGGESTION, seen.append)

        aggregator.add_event(make_event(MonitoringEventType.BLOCKED))
        assert seen == []


# =============================================================================
# Decision Cycle
# =============================================================================
class TestDecisionCycle:
    @async_test
    async def test_low_confidence_requires_approval(self, temp_dir):
        aggregator = EventAggregator(provider=ScriptedProvider(decision_json("commit", 0.5)), clock=FakeClock())
        received = _collect(aggregator)
        assert await aggregator.initialize(app_config(temp_dir))

        decision_id = await aggregator.process_event(make_event(MonitoringEventType.FEATURE_COMPLETE))

        assert decision_id.startswith("decision-")
        approvals = received[NotificationKind.APPROVAL_REQUIRED]
        assert len(approvals) == 1
        assert isinstance(approvals[0], ApprovalRequiredNotification)
        assert approvals[0].decision_id == decision_id
        assert _types(aggregator) == [
            MonitoringEventType.FEATURE_COMPLETE,
            MonitoringEventType.LLM_DECISION_REQUESTED,
            MonitoringEventType.LLM_DECISION_MADE,
            MonitoringEventType.LLM_APPROVAL_REQUIRED,
        ]
        assert [p["decision_id"] for p in aggregator.get_pending_decisions()] == [decision_id]

        response = await aggregator.feedback_handlers.handle_approval(decision_id)
        assert response.success
        assert aggregator.get_pending_decisions() == []
        assert _types(aggregator)[-1] == MonitoringEventType.LLM_FEEDBACK_RECEIVED

    @async_test
    async def test_context_uses_defaults_outside_a_repository(self, temp_dir):
        aggregator = EventAggregator(provider=ScriptedProvider(decision_json()), clock=FakeClock())
        await aggregator.initialize(app_config(temp_dir))
        aggregator.store.add_event(make_event(MonitoringEventType.TESTS_FAILING))

        context = await aggregator.build_decision_context(make_event(project_path=PROJECT_PATH))

        assert context.project_state.branch == "main"
        assert context.project_state.is_protected
        assert context.project_state.uncommitted_changes == 0
        assert context.project_state.test_status == "failing"
        assert len(context.recent_history) == 1

    @async_test
    async def test_context_reads_repository(self, temp_dir, git_repo):
        aggregator = EventAggregator(provider=ScriptedProvider(decision_json()), clock=FakeClock())
        await aggregator.initialize(app_config(temp_dir))
        git(git_repo, "checkout", "-b", "feature/login")
        (git_repo / "app.py").write_text("x = 1\n")

        context = await aggregator.build_decision_context(make_event(project_path=str(git_repo)))

        assert context.project_state.branch == "feature/login"
        assert not context.project_state.is_protected
        assert context.project_state.changed_files == ("app.py",)

    @async_test
    async def test_autonomous_mode_executes(self, temp_dir, git_repo):
        aggregator = EventAggregator(provider=ScriptedProvider(decision_json("stash", 0.99)), clock=FakeClock())
        received = _collect(aggregator)
        await aggregator.initialize(app_config(temp_dir))
        (git_repo / "README.md").write_text("# halfway\n")

        decision_id = await aggregator.process_event(make_event(project_path=str(git_repo)))

        assert [n.decision_id for n in received[NotificationKind.ACTION_READY]] == [decision_id]
        assert MonitoringEventType.LLM_ACTION_EXECUTED in _types(aggregator)
        assert git(git_repo, "status", "--porcelain") == ""

    @async_test
    async def test_assisted_mode_only_announces(self, temp_dir, git_repo):
        config = app_config(temp_dir, mode=AutomationMode.ASSISTED.value)
        aggregator = EventAggregator(provider=ScriptedProvider(decision_json("stash", 0.99)), clock=FakeClock())
        received = _collect(aggregator)
        await aggregator.initialize(config)
        (git_repo / "README.md").write_text("# halfway\n")

        await aggregator.process_event(make_event(project_path=str(git_repo)))

        assert len(received[NotificationKind.ACTION_READY]) == 1
        assert MonitoringEventType.LLM_ACTION_EXECUTED not in _types(aggregator)
        assert git(git_repo, "status", "--porcelain") != ""

    @async_test
    async def test_mid_confidence_is_neither(self, temp_dir):
        aggregator = EventAggregator(provider=ScriptedProvider(decision_json("commit", 0.8)), clock=FakeClock())
        received = _collect(aggregator)
        await aggregator.initialize(app_config(temp_dir))

        assert await aggregator.process_event(make_event()) is not None
        assert received[NotificationKind.ACTION_READY] == []
        assert received[NotificationKind.APPROVAL_REQUIRED] == []

    @async_test
    async def test_provider_failure_means_no_decision(self, temp_dir):
        provider = ScriptedProvider(LLMProviderError("overloaded"))
        aggregator = EventAggregator(provider=provider, clock=FakeClock())
        await aggregator.initialize(app_config(temp_dir))

        assert await aggregator.process_event(make_event()) is None
        assert not aggregator.is_processing_decision
        assert MonitoringEventType.LLM_DECISION_MADE not in _types(aggregator)

    @async_test
    async def test_malformed_risk_score_means_no_decision(self, temp_dir):
        reply = decision_json("commit", 0.9, risk_assessment={"score": "high"})
        aggregator = EventAggregator(provider=ScriptedProvider(reply), clock=FakeClock())
        await aggregator.initialize(app_config(temp_dir))

        assert await aggregator.process_event(make_event()) is None
        assert not aggregator.is_processing_decision
        assert MonitoringEventType.LLM_DECISION_MADE not in _types(aggregator)

    @async_test
    async def test_llm_events_never_trigger(self, temp_dir):
        provider = ScriptedProvider(decision_json())
        aggregator = EventAggregator(provider=provider, clock=FakeClock())
        await aggregator.initialize(app_config(temp_dir))

        assert await aggregator.process_event(make_event(MonitoringEventType.LLM_ACTION_EXECUTED)) is None
        assert provider.calls == []

    @async_test
    async def test_reinitialize_clears_pending(self, temp_dir):
        config = app_config(temp_dir)
        aggregator = EventAggregator(provider=ScriptedProvider(decision_json("commit", 0.5)), clock=FakeClock())
        await aggregator.initialize(config)
        await aggregator.process_event(make_event())
        assert len(aggregator.get_pending_decisions()) == 1

        await aggregator.initialize(config)
        assert aggregator.get_pending_decisions() == []

    @async_test
    async def test_stats(self, temp_dir):
        aggregator = EventAggregator(provider=ScriptedProvider(decision_json("commit", 0.5)), clock=FakeClock())
        await aggregator.initialize(app_config(temp_dir))
        await aggregator.process_event(make_event())

        stats = aggregator.get_stats()
        assert stats["automation_active"] is True
        assert stats["processing_decision"] is False
        assert stats["pending_decisions"] == 1
        assert stats["total_events"] == 4

        aggregator.clear()
        assert aggregator.get_stats()["total_events"] == 0


class TestSingleDecisionInFlight:
    @async_test
    async def test_events_during_a_cycle_do_not_start_another(self, temp_dir):
        provider = GatedProvider(decision_json("commit", 0.5))
        aggregator = EventAggregator(provider=provider, clock=FakeClock())
        await aggregator.initialize(app_config(temp_dir))

        aggregator.add_event(make_event(MonitoringEventType.FEATURE_COMPLETE))
        assert aggregator.is_processing_decision
        aggregator.add_event(make_event(MonitoringEventType.BUG_FIXED))
        aggregator.add_event(make_event(MonitoringEventType.TESTS_PASSING))

        await asyncio.sleep(0)
        provider.gate.set()
        await aggregator.wait_for_decisions()

        assert len(provider.calls) == 1
        assert _types(aggregator).count(MonitoringEventType.LLM_DECISION_REQUESTED) == 1
        assert not aggregator.is_processing_decision

    @async_test
    async def test_next_event_after_cycle_triggers_again(self, temp_dir):
        provider = ScriptedProvider(decision_json("commit", 0.5))
        aggregator = EventAggregator(provider=provider, clock=FakeClock())
        await aggregator.initialize(app_config(temp_dir))

        first = await aggregator.process_event(make_event())
        second = await aggregator.process_event(make_event(MonitoringEventType.BUG_FIXED))

        assert first != second
        assert len(provider.calls) == 2

    def test_no_running_loop_releases_the_claim(self, temp_dir):
        aggregator = EventAggregator(provider=ScriptedProvider(decision_json()), clock=FakeClock())
        assert asyncio.run(aggregator.initialize(app_config(temp_dir)))

        aggregator.add_event(make_event())
        assert not aggregator.is_processing_decision
        assert _types(aggregator) == [MonitoringEventType.FEATURE_COMPLETE]


@pytest.mark.parametrize("confidence", [0.95, 0.99])
def test_auto_execute_threshold_is_inclusive(temp_dir, confidence):
    async def scenario():
        aggregator = EventAggregator(provider=ScriptedProvider(decision_json("wait", confidence)), clock=FakeClock())
        received = _collect(aggregator)
        await aggregator.initialize(app_config(temp_dir))
        await aggregator.process_event(make_event())
        return received

    received = asyncio.run(scenario())
    assert len(received[NotificationKind.ACTION_READY]) == 1
