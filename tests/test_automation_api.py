"""
HTTP Facade and Operator Tools Tests

1. FastAPI endpoints over one MonitorManager (TestClient)
2. Approval flow end to end: event -> pending decision -> feedback
3. AutomationTools / FeedbackTools used directly
"""

import pytest
from fastapi.testclient import TestClient

from devflow import main
from devflow.automation_tools import AutomationTools, FeedbackTools
from devflow.config import AutomationMode, ConfigManager
from devflow.monitor_manager import MonitorManager
from tests.conftest import PROJECT_PATH, ScriptedProvider, app_config, async_test, decision_json


def _config_manager(temp_dir, **automation_overrides):
    config_manager = ConfigManager(temp_dir / "config.yml")
    config_manager.save(app_config(temp_dir, **automation_overrides))
    return config_manager


@pytest.fixture
def api(temp_dir):
    config_manager = _config_manager(temp_dir, mode=AutomationMode.ASSISTED.value)
    monitor = MonitorManager(config_manager, provider=ScriptedProvider(decision_json("commit", 0.5)))
    main.configure(monitor)
    with TestClient(main.app) as client:
        client.monitor = monitor
        yield client
    main.manager = None
    main.suggestion_engine = None


def _settle(client):
    client.portal.call(client.monitor.aggregator.wait_for_decisions)


def _post_event(client, event_type="feature_complete", **data):
    response = client.post("/events", json={"type": event_type, "project_path": PROJECT_PATH, "data": data})
    assert response.status_code == 200
    _settle(client)
    return response.json()


def _pending_id(client):
    pending = client.get("/decisions/pending").json()["pending"]
    assert len(pending) == 1
    return pending[0]["decision_id"]


# =============================================================================
# Health and Events
# =============================================================================
class TestHealthAndEvents:
    def test_root(self, api):
        data = api.get("/").json()
        assert data["service"] == "devflow"
        assert data["status"] == "running"

    def test_health_includes_monitoring_state(self, api):
        data = api.get("/health").json()
        assert data["status"] == "healthy"
        assert data["monitoring"]["running"]
        assert data["monitoring"]["stats"]["automation_active"]

    def test_event_ingest_and_history(self, api):
        data = _post_event(api, "tests_passing")
        assert data["event"]["type"] == "tests_passing"

        types = [e["type"] for e in api.get("/events/recent", params={"count": 50}).json()["events"]]
        assert types[0] == "tests_passing"
        assert "llm_decision_made" in types

        assert api.get("/events/stats").json()["total_events"] == len(types)

        assert api.delete("/events").json()["success"]
        assert api.get("/events/recent").json()["events"] == []

    def test_unknown_event_type_is_rejected(self, api):
        response = api.post("/events", json={"type": "coffee_break", "project_path": PROJECT_PATH})
        assert response.status_code == 422

    def test_conversation(self, api):
        events = api.post("/conversation", json={
            "message": "I fixed the bug in the login form",
            "role": "assistant",
            "project_path": PROJECT_PATH,
        }).json()["events"]
        assert [e["type"] for e in events] == ["bug_fixed"]


# =============================================================================
# Approval flow
# =============================================================================
class TestFeedbackEndpoints:
    def test_approve_pending_decision(self, api):
        _post_event(api)
        decision_id = _pending_id(api)

        response = api.post(f"/feedback/{decision_id}/approve", json={"reason": "looks right"})
        assert response.status_code == 200
        assert response.json()["success"]

        assert api.get("/decisions/pending").json()["pending"] == []
        assert api.post(f"/feedback/{decision_id}/approve").status_code == 404

        stats = api.get("/feedback/stats").json()["stats"]
        assert stats["total_decisions"] == 1
        assert stats["approvals"] == 1

    def test_reject_pending_decision(self, api):
        _post_event(api)
        response = api.post(f"/feedback/{_pending_id(api)}/reject")
        assert response.json()["message"] == "Rejection recorded successfully"

    def test_correction_returns_insights(self, api):
        _post_event(api)
        response = api.post(f"/feedback/{_pending_id(api)}/correct", json={
            "corrected_action": "wait",
            "reason": "still iterating",
        })

        data = response.json()
        assert data["success"]
        assert "insights" in data
        assert isinstance(api.get("/feedback/preferences").json()["preferences"], list)

    def test_unknown_decision_is_404(self, api):
        assert api.post("/feedback/decision-missing/reject").status_code == 404
        response = api.post("/feedback/decision-missing/correct", json={"corrected_action": "wait"})
        assert response.status_code == 404

    def test_feedback_unavailable_when_automation_off(self, api):
        assert api.post("/automation/disable").status_code == 200
        assert api.get("/feedback/stats").status_code == 503


# =============================================================================
# Automation policy
# =============================================================================
class TestAutomationEndpoints:
    def test_status(self, api):
        data = api.get("/automation/status").json()
        assert data["enabled"]
        assert data["mode"] == "assisted"
        assert data["active"]

    def test_enable_rejects_unknown_mode(self, api):
        response = api.post("/automation/enable", json={"mode": "turbo"})
        assert response.status_code == 400
        assert "Invalid mode" in response.json()["detail"]

    def test_enable_persists(self, api, temp_dir):
        data = api.post("/automation/enable", json={"mode": "autonomous"}).json()
        assert data["message"] == "Automation enabled in autonomous mode"
        assert ConfigManager(temp_dir / "config.yml").load().automation.mode == "autonomous"

    def test_emergency_disable(self, api, temp_dir):
        data = api.post("/automation/disable", json={"emergency": True}).json()
        assert data["message"] == "Emergency stop activated"

        saved = ConfigManager(temp_dir / "config.yml").load().automation
        assert not saved.enabled
        assert saved.safety.emergency_stop
        assert not api.get("/automation/status").json()["active"]

    def test_invalid_thresholds(self, api, temp_dir):
        response = api.post("/automation/configure", json={"thresholds": {"confidence": 2.0}})
        assert response.status_code == 400
        assert ConfigManager(temp_dir / "config.yml").load().automation.thresholds.confidence == 0.7

    def test_configure_thresholds(self, api):
        data = api.post("/automation/configure", json={"thresholds": {"auto_execute": 0.9}}).json()
        assert data["automation"]["thresholds"]["auto_execute"] == 0.9

    def test_learning_settings(self, api):
        data = api.post("/automation/learning", json={"implicit_approval_timeout": 120}).json()
        assert data["message"] == "Learning configuration updated"
        assert data["automation"]["learning"]["implicit_approval_timeout"] == 120

    def test_config_change_clears_pending(self, api):
        _post_event(api)
        api.post("/automation/enable", json={"mode": "assisted"})
        assert api.get("/decisions/pending").json()["pending"] == []


# =============================================================================
# Decisions and suggestions
# =============================================================================
class TestDecisionEndpoints:
    def test_manual_execute_goes_through_safety(self, api):
        response = api.post("/decisions/execute", json={
            "project_path": PROJECT_PATH,
            "decision": {"action": "commit", "confidence": 0.99, "reasoning": "ship it"},
        })

        data = response.json()
        assert response.status_code == 200
        assert not data["success"]
        assert data["error"] == "Safety check failed: Not in autonomous mode"

    def test_malformed_decision(self, api):
        response = api.post("/decisions/execute", json={"project_path": PROJECT_PATH, "decision": {}})
        assert response.status_code == 422

    def test_rollback_without_info(self, api):
        response = api.post("/actions/rollback", json={"result": {"success": True, "action": "pr"}})
        assert response.json() == {"success": False}

    def test_rollback_rejects_commands_it_did_not_record(self, api, git_repo, temp_dir):
        marker = temp_dir / "marker"
        response = api.post("/actions/rollback", json={"result": {
            "success": True,
            "action": "commit",
            "rollback_info": {
                "action": "commit",
                "previous_state": "",
                "commands": [["-c", f"alias.x=!touch {marker}", "x"]],
                "project_path": str(git_repo),
            },
        }})

        assert response.json() == {"success": False}
        assert not marker.exists()

    def test_analyze_with_supplied_status(self, api):
        data = api.post("/suggestions/analyze", json={
            "project_path": PROJECT_PATH,
            "status": {"branch": "feature/login"},
        }).json()

        assert "pr" in [s["type"] for s in data["suggestions"]]
        assert data["hints"]

    def test_analyze_reads_git(self, api, git_repo):
        (git_repo / "notes.md").write_text("draft\n")
        data = api.post("/suggestions/analyze", json={"project_path": str(git_repo)}).json()
        assert "You're working directly on protected branch 'main'" in [s["message"] for s in data["suggestions"]]

    def test_analyze_outside_a_repository(self, api, temp_dir):
        response = api.post("/suggestions/analyze", json={"project_path": str(temp_dir / "nowhere")})
        assert response.status_code == 400


class TestWithoutManager:
    def test_endpoints_report_unavailable(self):
        main.manager = None
        client = TestClient(main.app)
        assert client.get("/health").status_code == 503
        assert client.get("/automation/status").status_code == 503


# =============================================================================
# Tools used directly
# =============================================================================
class TestAutomationTools:
    @async_test
    async def test_invalid_change_leaves_config_untouched(self, temp_dir):
        config_manager = _config_manager(temp_dir)
        monitor = MonitorManager(config_manager)
        tools = AutomationTools(config_manager, monitor.aggregator)

        result = await tools.configure_learning(implicit_approval_timeout=-5)

        assert result["success"] is False
        assert result["error"] == "Invalid configuration"
        assert result["errors"]
        reloaded = ConfigManager(temp_dir / "config.yml").load()
        assert reloaded.automation.learning.implicit_approval_timeout == 3600.0

    @async_test
    async def test_enable_activates_aggregator(self, temp_dir):
        config_manager = _config_manager(temp_dir, enabled=False, mode=AutomationMode.OFF.value)
        monitor = MonitorManager(config_manager)
        await monitor.initialize()
        tools = AutomationTools(config_manager, monitor.aggregator)
        assert not tools.status()["active"]

        result = await tools.enable("assisted")

        assert result["success"]
        assert result["active"]
        assert monitor.aggregator.feedback_handlers is not None

    @async_test
    async def test_feedback_tools_need_handlers(self, temp_dir):
        monitor = MonitorManager(_config_manager(temp_dir))
        with pytest.raises(RuntimeError):
            await FeedbackTools(monitor.aggregator).approve("decision-1")
