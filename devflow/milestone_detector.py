"""
Milestone Detector

Correlates the events of the last MILESTONE_WINDOW into higher-level
milestones.

Rules (independent, both may fire for one triggering event):
- feature_shipped: a FEATURE_COMPLETE plus at least 2 supporting events
  (TESTS_PASSING, DOCS_UPDATED, BUG_FIXED) inside the window. Evaluated when
  the feature event arrives and again when a supporting event completes the
  set. Each FEATURE_COMPLETE ships at most once.
- release_ready: >= 3 FEATURE_COMPLETE, OR (>= 1 FEATURE_COMPLETE AND
  >= 2 BUG_FIXED AND >= 1 TESTS_PASSING). Evaluated only when the triggering
  event adds release evidence.

`detect_milestones` is a PURE function. `MilestoneDetector` adds the window
slicing and the shipped-feature bookkeeping.
"""

import logging
from datetime import datetime, timedelta
from typing import FrozenSet, List, Optional, Sequence, Set, Tuple

from .event_model import (
    AggregatedMilestone,
    MilestoneType,
    MonitoringEvent,
    MonitoringEventType,
)
from .event_store import EventStore

logger = logging.getLogger("milestone_detector")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
MILESTONE_WINDOW = timedelta(minutes=5)
FEATURE_SUPPORT_MIN = 2

SUPPORTING_TYPES = frozenset({
    MonitoringEventType.TESTS_PASSING,
    MonitoringEventType.DOCS_UPDATED,
    MonitoringEventType.BUG_FIXED,
})
RELEASE_EVIDENCE_TYPES = frozenset({
    MonitoringEventType.FEATURE_COMPLETE,
    MonitoringEventType.BUG_FIXED,
    MonitoringEventType.TESTS_PASSING,
})

EventKey = Tuple[str, str, str]


def event_key(event: MonitoringEvent) -> EventKey:
    return (event.type.value, event.project_path, event.timestamp.isoformat())


# -----------------------------------------------------------------------------
# Pure Detection
# -----------------------------------------------------------------------------
def detect_milestones(
    trigger: MonitoringEvent,
    window: Sequence[MonitoringEvent],
    shipped_features: FrozenSet[EventKey] = frozenset(),
) -> List[AggregatedMilestone]:
    """
    Evaluate milestone rules for one triggering event.

    Args:
        trigger: The event that just arrived (already part of `window`)
        window: Events inside the milestone window, in insertion order
        shipped_features: Keys of FEATURE_COMPLETE events already reported

    Returns:
        Zero, one or two milestones.
    """
    milestones: List[AggregatedMilestone] = []

    shipped = _check_feature_shipped(trigger, window, shipped_features)
    if shipped:
        milestones.append(shipped)

    if trigger.type in RELEASE_EVIDENCE_TYPES:
        release = _check_release_ready(trigger, window)
        if release:
            milestones.append(release)

    return milestones


def _check_feature_shipped(
    trigger: MonitoringEvent,
    window: Sequence[MonitoringEvent],
    shipped_features: FrozenSet[EventKey],
) -> Optional[AggregatedMilestone]:
    supporting = [e for e in window if e.type in SUPPORTING_TYPES]
    if len(supporting) < FEATURE_SUPPORT_MIN:
        return None

    if trigger.type == MonitoringEventType.FEATURE_COMPLETE:
        feature = trigger
    elif trigger.type in SUPPORTING_TYPES:
        pending = [
            e for e in window
            if e.type == MonitoringEventType.FEATURE_COMPLETE
            and event_key(e) not in shipped_features
        ]
        if not pending:
            return None
        feature = pending[-1]
    else:
        return None

    if event_key(feature) in shipped_features:
        return None

    return AggregatedMilestone(
        type=MilestoneType.FEATURE_SHIPPED,
        timestamp=trigger.timestamp,
        events=tuple([feature] + supporting),
        title="Feature Complete with Tests and Documentation",
        description="A feature has been implemented with tests passing and documentation updated.",
    )


def _check_release_ready(
    trigger: MonitoringEvent,
    window: Sequence[MonitoringEvent],
) -> Optional[AggregatedMilestone]:
    features = [e for e in window if e.type == MonitoringEventType.FEATURE_COMPLETE]
    bug_fixes = [e for e in window if e.type == MonitoringEventType.BUG_FIXED]
    tests_passing = [e for e in window if e.type == MonitoringEventType.TESTS_PASSING]

    ready = len(features) >= 3 or (
        len(features) >= 1 and len(bug_fixes) >= 2 and len(tests_passing) >= 1
    )
    if not ready:
        return None

    return AggregatedMilestone(
        type=MilestoneType.RELEASE_READY,
        timestamp=trigger.timestamp,
        events=tuple(features + bug_fixes + tests_passing),
        title="Multiple Features Ready for Release",
        description=(
            f"{len(features)} features completed, {len(bug_fixes)} bugs fixed. "
            "Consider creating a release."
        ),
    )


# -----------------------------------------------------------------------------
# Detector (window slicing + shipped-feature bookkeeping)
# -----------------------------------------------------------------------------
class MilestoneDetector:
    """Runs `detect_milestones` against the store for each new event."""

    def __init__(self, store: EventStore, window: timedelta = MILESTONE_WINDOW):
        self._store = store
        self._window = window
        self._shipped: Set[EventKey] = set()

    def check(self, trigger: MonitoringEvent) -> List[AggregatedMilestone]:
        since: datetime = trigger.timestamp - self._window
        window = [
            e for e in self._store.events_since(since, project_path=trigger.project_path)
            if e.timestamp <= trigger.timestamp
        ]
        milestones = detect_milestones(trigger, window, frozenset(self._shipped))

        for milestone in milestones:
            if milestone.type == MilestoneType.FEATURE_SHIPPED:
                self._shipped.add(event_key(milestone.events[0]))
            logger.info(f"Milestone detected: {milestone.type.value} ({trigger.project_path})")

        self._prune(since)
        return milestones

    def _prune(self, since: datetime) -> None:
        # Features older than the window can never ship again
        self._shipped = {k for k in self._shipped if datetime.fromisoformat(k[2]) >= since}

    def clear(self) -> None:
        self._shipped.clear()
