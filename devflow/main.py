"""
devflow - FastAPI Application

HTTP tool facade over one MonitorManager (and through it, one
EventAggregator). Intended for a local tool-calling client.

Endpoint groups:
- Health: /, /health
- Events: ingest, recent, stats, clear
- Conversation: message -> pattern events
- Suggestions: status-based analysis + contextual hints
- Decisions: pending registry, manual execute, rollback
- Feedback: approve / reject / correct, stats, learned preferences
- Automation: status, enable, disable, configure, learning

CONSTRAINTS:
- Manual execution goes through the same SafetyValidator as automatic
  execution
- Unknown decision ids are 404, never a silent success
- Rollback only replays rollback info the executor recorded itself
- Feedback endpoints are 503 until the learning loop is wired
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import __version__, PACKAGE_DESCRIPTION
from .automation_tools import AutomationTools, FeedbackTools
from .config import ConfigManager
from .decision_model import ActionResult, LLMDecision
from .event_model import MonitoringEvent, MonitoringEventType, NotificationKind
from .feedback_handlers import NOT_FOUND
from .git_ops import DevelopmentStatus, GitCommandError
from .github_client import GitHubCollaborator
from .monitor_manager import MonitorManager
from .suggestion_engine import SuggestionEngine

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=os.getenv("DEVFLOW_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("devflow")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765

# -----------------------------------------------------------------------------
# Application State
# -----------------------------------------------------------------------------
manager: Optional[MonitorManager] = None
suggestion_engine: Optional[SuggestionEngine] = None


def configure(monitor_manager: MonitorManager) -> None:
    """Install the manager every endpoint works against."""
    global manager, suggestion_engine
    manager = monitor_manager
    suggestion_engine = SuggestionEngine(monitor_manager.config_manager.get)
    aggregator = monitor_manager.aggregator
    aggregator.on(NotificationKind.MILESTONE, _log_notification)
    aggregator.on(NotificationKind.SUGGESTION, _log_notification)
    aggregator.on(NotificationKind.ACTION_READY, _log_notification)
    aggregator.on(NotificationKind.APPROVAL_REQUIRED, _log_notification)


def _log_notification(notification) -> None:
    if notification.kind == NotificationKind.MILESTONE:
        logger.info(f"Milestone: {notification.milestone.title}")
    elif notification.kind == NotificationKind.SUGGESTION:
        logger.info(f"Suggestion: {notification.suggestion.message}")
    else:
        logger.info(
            f"{notification.kind.value}: {notification.decision.action} "
            f"(decision {notification.decision_id}, confidence {notification.decision.confidence:.2f})"
        )


def _manager() -> MonitorManager:
    if manager is None:
        raise HTTPException(status_code=503, detail="Monitoring is not initialized")
    return manager


def _automation() -> AutomationTools:
    current = _manager()
    return AutomationTools(current.config_manager, current.aggregator)


def _feedback() -> FeedbackTools:
    tools = FeedbackTools(_manager().aggregator)
    if tools.aggregator.feedback_handlers is None:
        raise HTTPException(status_code=503, detail="Feedback system not initialized")
    return tools


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class EventRequest(BaseModel):
    type: MonitoringEventType
    project_path: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None


class ConversationRequest(BaseModel):
    message: str
    role: str = "user"
    project_path: Optional[str] = None


class AnalyzeRequest(BaseModel):
    project_path: str
    status: Optional[Dict[str, Any]] = None


class ExecuteRequest(BaseModel):
    project_path: str
    decision: Dict[str, Any]


class RollbackRequest(BaseModel):
    result: Dict[str, Any]


class FeedbackRequest(BaseModel):
    reason: Optional[str] = None


class CorrectionRequest(BaseModel):
    corrected_action: str
    reason: Optional[str] = None


class EnableRequest(BaseModel):
    mode: str = "assisted"


class DisableRequest(BaseModel):
    emergency: bool = False


class ConfigureRequest(BaseModel):
    thresholds: Optional[Dict[str, Any]] = None
    preferences: Optional[Dict[str, Any]] = None
    safety: Optional[Dict[str, Any]] = None


class LearningRequest(BaseModel):
    enabled: Optional[bool] = None
    store_feedback: Optional[bool] = None
    adapt_to_patterns: Optional[bool] = None
    preference_learning: Optional[bool] = None
    implicit_approval_timeout: Optional[float] = None


# -----------------------------------------------------------------------------
# Application
# -----------------------------------------------------------------------------
app = FastAPI(
    title="devflow",
    description=PACKAGE_DESCRIPTION,
    version=__version__
)


@app.on_event("startup")
async def startup_event():
    """Build (unless already configured), initialize and start monitoring."""
    if manager is None:
        configure(MonitorManager(ConfigManager(), github=GitHubCollaborator()))
    active = await manager.initialize()
    await manager.start()
    logger.info(f"devflow {__version__} started (automation {'active' if active else 'inactive'})")


@app.on_event("shutdown")
async def shutdown_event():
    if manager is not None:
        await manager.stop()
    logger.info("devflow shutting down")


# -----------------------------------------------------------------------------
# API Endpoints - Health
# -----------------------------------------------------------------------------
@app.get("/")
async def root():
    return {
        "service": "devflow",
        "status": "running",
        "version": __version__
    }


@app.get("/health")
async def health_check():
    current = _manager()
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__,
        "monitoring": current.get_monitoring_state(),
    }


# -----------------------------------------------------------------------------
# API Endpoints - Events
# -----------------------------------------------------------------------------
@app.post("/events")
async def add_event(request: EventRequest):
    timestamp = request.timestamp or datetime.utcnow()
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
    event = MonitoringEvent(
        type=request.type,
        project_path=request.project_path,
        timestamp=timestamp,
        data=request.data,
    )
    _manager().aggregator.add_event(event)
    return {"success": True, "event": event.to_dict()}


@app.get("/events/recent")
async def recent_events(count: int = 10):
    events = _manager().aggregator.get_recent_events(count)
    return {"events": [e.to_dict() for e in events]}


@app.get("/events/stats")
async def event_stats():
    return _manager().aggregator.get_stats()


@app.delete("/events")
async def clear_events():
    _manager().aggregator.clear()
    return {"success": True, "message": "Event history cleared"}


@app.post("/conversation")
async def process_conversation(request: ConversationRequest):
    events = _manager().process_conversation_message(request.message, request.role, request.project_path)
    return {"events": [e.to_dict() for e in events]}


# -----------------------------------------------------------------------------
# API Endpoints - Suggestions
# -----------------------------------------------------------------------------
@app.post("/suggestions/analyze")
async def analyze_suggestions(request: AnalyzeRequest):
    current = _manager()
    if request.status is not None:
        status = DevelopmentStatus.from_dict({"project_path": request.project_path, **request.status})
    else:
        try:
            status = await current.git.get_status(request.project_path, current.config.git_workflow)
        except GitCommandError as e:
            raise HTTPException(status_code=400, detail=f"Could not read git status: {e}")

    suggestion_engine.agent = current.aggregator.agent
    suggestions = await suggestion_engine.analyze_situation(request.project_path, status)
    return {
        "suggestions": [s.to_dict() for s in suggestions],
        "hints": suggestion_engine.get_contextual_hints(request.project_path),
    }


# -----------------------------------------------------------------------------
# API Endpoints - Decisions
# -----------------------------------------------------------------------------
@app.get("/decisions/pending")
async def pending_decisions():
    return {"pending": _manager().aggregator.get_pending_decisions()}


@app.post("/decisions/execute")
async def execute_decision(request: ExecuteRequest):
    aggregator = _manager().aggregator
    try:
        decision = LLMDecision.from_dict(request.decision)
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid decision: {e}")

    trigger = MonitoringEvent(
        type=MonitoringEventType.COMMAND_EXECUTED,
        project_path=request.project_path,
        data={"command": "execute_decision", "action": decision.action},
    )
    context = await aggregator.build_decision_context(trigger)
    result = await aggregator.execute_decision(decision, context)
    return result.to_dict()


@app.post("/actions/rollback")
async def rollback_action(request: RollbackRequest):
    """Undo a result returned by /decisions/execute or automatic execution."""
    try:
        result = ActionResult.from_dict(request.result)
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid action result: {e}")
    success = await _manager().aggregator.rollback(result)
    return {"success": success}


# -----------------------------------------------------------------------------
# API Endpoints - Feedback
# -----------------------------------------------------------------------------
def _feedback_response(response: Dict[str, Any]) -> Dict[str, Any]:
    if not response["success"] and response["message"] == NOT_FOUND:
        raise HTTPException(status_code=404, detail=NOT_FOUND)
    return response


@app.post("/feedback/{decision_id}/approve")
async def approve_decision(decision_id: str, request: Optional[FeedbackRequest] = None):
    reason = request.reason if request else None
    return _feedback_response(await _feedback().approve(decision_id, reason))


@app.post("/feedback/{decision_id}/reject")
async def reject_decision(decision_id: str, request: Optional[FeedbackRequest] = None):
    reason = request.reason if request else None
    return _feedback_response(await _feedback().reject(decision_id, reason))


@app.post("/feedback/{decision_id}/correct")
async def correct_decision(decision_id: str, request: CorrectionRequest):
    return _feedback_response(
        await _feedback().correct(decision_id, request.corrected_action, request.reason)
    )


@app.get("/feedback/stats")
async def feedback_stats(project_path: Optional[str] = None):
    return _feedback().stats(project_path)


@app.get("/feedback/preferences")
async def feedback_preferences(project_path: Optional[str] = None):
    return _feedback().preferences(project_path)


# -----------------------------------------------------------------------------
# API Endpoints - Automation
# -----------------------------------------------------------------------------
@app.get("/automation/status")
async def automation_status():
    return _automation().status()


@app.post("/automation/enable")
async def enable_automation(request: EnableRequest):
    result = await _automation().enable(request.mode)
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result["error"])
    return result


@app.post("/automation/disable")
async def disable_automation(request: Optional[DisableRequest] = None):
    return await _automation().disable(emergency=request.emergency if request else False)


@app.post("/automation/configure")
async def configure_automation(request: ConfigureRequest):
    result = await _automation().configure(request.thresholds, request.preferences, request.safety)
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result.get("errors") or result["error"])
    return result


@app.post("/automation/learning")
async def configure_learning(request: LearningRequest):
    settings = {k: v for k, v in request.model_dump().items() if v is not None}
    result = await _automation().configure_learning(**settings)
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result.get("errors") or result["error"])
    return result


def run() -> None:
    import uvicorn
    uvicorn.run(
        app,
        host=os.getenv("DEVFLOW_HOST", DEFAULT_HOST),
        port=int(os.getenv("DEVFLOW_PORT", str(DEFAULT_PORT))),
    )


if __name__ == "__main__":
    run()
