"""
Safety Validator

Mandatory gate in front of every ActionExecutor invocation.

Checks (all independent, all contribute reasons; fail closed):
1. Automation master switch enabled
2. Mode is autonomous, unless the decision requires approval
3. Confidence >= auto_execute threshold
4. Rate limit not exceeded (sliding one-hour window)
5. No commit/checkpoint on a protected branch
6. Emergency stop not set

CONSTRAINTS:
- validate() has NO side effects; the executor records actions separately
- Config is read at call time through the supplied getter
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Dict, Any, List

from .config import AutomationConfig, AutomationMode
from .decision_model import DecisionContext, LLMDecision, PROTECTED_BRANCH_ACTIONS

logger = logging.getLogger("safety_validator")


RATE_WINDOW = timedelta(hours=1)


@dataclass(frozen=True)
class SafetyCheck:
    safe: bool
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"safe": self.safe, "reasons": list(self.reasons)}


class RateLimiter:
    """Sliding window of executed-action timestamps."""

    def __init__(self, window: timedelta = RATE_WINDOW, clock: Optional[Callable[[], datetime]] = None):
        self._window = window
        self._clock = clock or datetime.utcnow
        self._actions: deque = deque()

    def _prune(self) -> None:
        cutoff = self._clock() - self._window
        while self._actions and self._actions[0] < cutoff:
            self._actions.popleft()

    def count(self) -> int:
        self._prune()
        return len(self._actions)

    def record(self) -> None:
        self._actions.append(self._clock())

    def exceeded(self, max_per_window: int) -> bool:
        return self.count() >= max_per_window

    def reset(self) -> None:
        self._actions.clear()


class SafetyValidator:
    def __init__(
        self,
        config: Callable[[], AutomationConfig],
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self._config = config
        self.rate_limiter = rate_limiter or RateLimiter()

    def validate(self, decision: LLMDecision, context: DecisionContext) -> SafetyCheck:
        config = self._config()
        reasons: List[str] = []

        if not config.enabled:
            reasons.append("Automation is disabled")

        # Approval-required decisions go to a human, not the autonomous path
        if config.mode != AutomationMode.AUTONOMOUS.value and not decision.requires_approval:
            reasons.append("Not in autonomous mode")

        if decision.confidence < config.thresholds.auto_execute:
            reasons.append(f"Confidence {decision.confidence:.2f} below threshold")

        if self.rate_limiter.exceeded(config.safety.max_actions_per_hour):
            reasons.append("Rate limit exceeded")

        if decision.action in PROTECTED_BRANCH_ACTIONS and context.project_state.is_protected:
            reasons.append(f"Cannot {decision.action} to protected branch")

        if config.safety.emergency_stop:
            reasons.append("Emergency stop is active")

        if reasons:
            logger.info(f"Safety check failed for '{decision.action}': {'; '.join(reasons)}")
        return SafetyCheck(safe=not reasons, reasons=reasons)
