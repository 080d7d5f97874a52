"""
Automation Tools

Operator controls for automation policy and the feedback loop. Every
operation returns a plain dict carrying `success`, ready for the HTTP
facade.

CONSTRAINTS:
- Config changes are validated before they are persisted; an invalid
  change leaves the saved config untouched
- A persisted change re-initializes the aggregator so the next decision
  sees it
"""

import copy
import logging
from typing import Optional, Dict, Any

from .config import (
    AppConfig,
    AutomationMode,
    ConfigError,
    ConfigManager,
    ConfigValidator,
)
from .event_aggregator import EventAggregator
from .feedback_handlers import FeedbackHandlers

logger = logging.getLogger("automation_tools")


class AutomationTools:
    def __init__(self, config_manager: ConfigManager, aggregator: EventAggregator):
        self.config_manager = config_manager
        self.aggregator = aggregator
        self.validator = ConfigValidator()

    def status(self) -> Dict[str, Any]:
        config = self.config_manager.get()
        automation = config.automation.to_dict()
        result = self.validator.validate(config)
        return {
            "success": True,
            "enabled": automation["enabled"],
            "mode": automation["mode"],
            "active": self.aggregator.automation_active,
            "thresholds": automation["thresholds"],
            "safety": automation["safety"],
            "learning": automation["learning"],
            "warnings": [f"{w.field}: {w.message}" for w in result.warnings],
        }

    async def enable(self, mode: str = AutomationMode.ASSISTED.value) -> Dict[str, Any]:
        valid_modes = [m.value for m in AutomationMode if m != AutomationMode.OFF]
        if mode not in valid_modes:
            return {"success": False, "error": f"Invalid mode '{mode}'. Must be one of: {', '.join(valid_modes)}"}

        def change(automation: Dict[str, Any]) -> None:
            automation["enabled"] = True
            automation["mode"] = mode
            automation["safety"]["emergency_stop"] = False

        result = await self._apply(change)
        if result["success"]:
            result["message"] = f"Automation enabled in {mode} mode"
            result["active"] = self.aggregator.automation_active
        return result

    async def disable(self, emergency: bool = False) -> Dict[str, Any]:
        def change(automation: Dict[str, Any]) -> None:
            automation["enabled"] = False
            if emergency:
                automation["safety"]["emergency_stop"] = True

        result = await self._apply(change)
        if result["success"]:
            result["message"] = "Emergency stop activated" if emergency else "Automation disabled"
            if emergency:
                logger.warning("Emergency stop activated")
        return result

    async def configure(
        self,
        thresholds: Optional[Dict[str, Any]] = None,
        preferences: Optional[Dict[str, Any]] = None,
        safety: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        def change(automation: Dict[str, Any]) -> None:
            for name, section in (("thresholds", thresholds), ("preferences", preferences), ("safety", safety)):
                if section:
                    automation[name].update(section)

        result = await self._apply(change)
        if result["success"]:
            result["message"] = "Automation configuration updated"
        return result

    async def configure_learning(self, **settings: Any) -> Dict[str, Any]:
        def change(automation: Dict[str, Any]) -> None:
            automation["learning"].update(settings)

        result = await self._apply(change)
        if result["success"]:
            result["message"] = "Learning configuration updated"
        return result

    async def _apply(self, change) -> Dict[str, Any]:
        current = self.config_manager.get()
        automation = copy.deepcopy(current.automation.to_dict())
        change(automation)

        updated = AppConfig.from_dict({**current.to_dict(), "automation": automation})
        updated.data_dir = current.data_dir
        result = self.validator.validate(updated)
        if not result.valid:
            return {
                "success": False,
                "error": "Invalid configuration",
                "errors": [f"{e.field}: {e.message}" for e in result.errors],
            }

        try:
            self.config_manager.save(updated)
        except ConfigError as e:
            logger.error(str(e))
            return {"success": False, "error": str(e)}

        await self.aggregator.initialize(updated)
        return {
            "success": True,
            "automation": updated.automation.to_dict(),
            "warnings": [f"{w.field}: {w.message}" for w in result.warnings],
        }


class FeedbackTools:
    """Feedback operations against whichever handlers the aggregator holds."""

    def __init__(self, aggregator: EventAggregator):
        self.aggregator = aggregator

    def _handlers(self) -> FeedbackHandlers:
        handlers = self.aggregator.feedback_handlers
        if handlers is None:
            raise RuntimeError("Feedback system not initialized")
        return handlers

    async def approve(self, decision_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        response = await self._handlers().handle_approval(decision_id, reason)
        return response.to_dict()

    async def reject(self, decision_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        response = await self._handlers().handle_rejection(decision_id, reason)
        return response.to_dict()

    async def correct(self, decision_id: str, corrected_action: str, reason: Optional[str] = None) -> Dict[str, Any]:
        response = await self._handlers().handle_correction(decision_id, corrected_action, reason)
        return response.to_dict()

    def stats(self, project_path: Optional[str] = None) -> Dict[str, Any]:
        return {"success": True, "stats": self._handlers().get_stats(project_path).to_dict()}

    def preferences(self, project_path: Optional[str] = None) -> Dict[str, Any]:
        preferences = self._handlers().get_learned_preferences(project_path)
        return {"success": True, "preferences": [p.to_dict() for p in preferences]}
