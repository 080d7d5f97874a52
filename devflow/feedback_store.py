"""
Feedback Store

Durable store of FeedbackEntry records plus statistics over them.

Storage: <data_dir>/learning/feedback.json, a JSON array rewritten whole on
every mutation.

CONSTRAINTS:
- Read fully into memory at initialize(); the cache serves all reads
- Writes are serialized by an asyncio.Lock and land via temp file + replace
- Disk errors are logged, never raised: the in-memory cache keeps working
- Capped at MAX_ENTRIES; the oldest entries (by timestamp) are trimmed
"""

import asyncio
import json
import logging
import time
import uuid
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Dict, List

from .decision_model import DecisionContext, LLMDecision
from .learning_model import (
    ActionOutcome,
    FeedbackEntry,
    FeedbackStats,
    FeedbackType,
    PreferencePattern,
    UserFeedback,
)

logger = logging.getLogger("feedback_store")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
MAX_ENTRIES = 10000
FEEDBACK_FILE = Path("learning") / "feedback.json"

BRANCH_PATTERN_MIN = 3
COMMIT_PATTERN_MIN = 5


def generate_feedback_id() -> str:
    return f"feedback-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class FeedbackStore:
    """In-memory cache of feedback entries backed by one JSON file."""

    def __init__(
        self,
        data_dir: Path,
        max_entries: int = MAX_ENTRIES,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            data_dir: Root data directory; the file lives under learning/
            max_entries: Cap before oldest-first trimming
            clock: Timestamp source (optional, for testing)
        """
        self._path = Path(data_dir) / FEEDBACK_FILE
        self._max_entries = max_entries
        self._clock = clock or datetime.utcnow
        self._cache: Dict[str, FeedbackEntry] = {}
        self._lock = asyncio.Lock()
        # When False, entries live only in memory
        self.persist = True

    @property
    def path(self) -> Path:
        return self._path

    def __len__(self) -> int:
        return len(self._cache)

    async def initialize(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Could not create feedback directory {self._path.parent}: {e}")

        for entry in self._load():
            self._cache[entry.id] = entry
        logger.info(f"Loaded {len(self._cache)} feedback entries from {self._path}")

        if len(self._cache) > self._max_entries:
            async with self._lock:
                self._trim()
                self._save()

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------
    async def record_feedback(
        self,
        decision: LLMDecision,
        context: DecisionContext,
        feedback: UserFeedback,
        outcome: Optional[ActionOutcome] = None,
    ) -> str:
        """Append one entry. Returns its id."""
        entry = FeedbackEntry(
            id=generate_feedback_id(),
            timestamp=self._clock(),
            project_path=context.project_path,
            decision=decision,
            context=context,
            feedback=feedback,
            outcome=outcome,
        )
        async with self._lock:
            self._cache[entry.id] = entry
            if len(self._cache) > self._max_entries:
                self._trim()
            self._save()

        logger.info(f"Recorded {feedback.type.value} feedback {entry.id} for '{decision.action}'")
        return entry.id

    async def update_outcome(self, feedback_id: str, outcome: ActionOutcome) -> bool:
        async with self._lock:
            entry = self._cache.get(feedback_id)
            if entry is None:
                return False
            entry.outcome = outcome
            self._save()
        return True

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()
            try:
                if self._path.exists():
                    self._path.unlink()
            except OSError as e:
                logger.error(f"Failed to remove feedback file: {e}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------
    def get(self, feedback_id: str) -> Optional[FeedbackEntry]:
        return self._cache.get(feedback_id)

    def _entries(self, project_path: Optional[str] = None) -> List[FeedbackEntry]:
        return [
            e for e in self._cache.values()
            if project_path is None or e.project_path == project_path
        ]

    def get_recent_feedback(self, limit: int = 10, project_path: Optional[str] = None) -> List[FeedbackEntry]:
        """Newest first."""
        entries = sorted(self._entries(project_path), key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    def find_similar_decisions(self, context: DecisionContext, limit: int = 5) -> List[FeedbackEntry]:
        """Same project, same branch, same triggering event type. Newest first."""
        similar = [
            e for e in self._cache.values()
            if e.project_path == context.project_path
            and e.context.project_state.branch == context.project_state.branch
            and e.context.current_event.type == context.current_event.type
        ]
        similar.sort(key=lambda e: e.timestamp, reverse=True)
        return similar[:limit]

    def get_stats(self, project_path: Optional[str] = None) -> FeedbackStats:
        entries = self._entries(project_path)
        counts = Counter(e.feedback.type for e in entries)
        corrections = Counter(
            f"{e.decision.action} -> {e.feedback.corrected_action}"
            for e in entries
            if e.feedback.type == FeedbackType.CORRECTION and e.feedback.corrected_action
        )
        successes = sum(1 for e in entries if e.outcome and e.outcome.success)

        return FeedbackStats(
            total_decisions=len(entries),
            approvals=counts[FeedbackType.APPROVAL],
            rejections=counts[FeedbackType.REJECTION],
            corrections=counts[FeedbackType.CORRECTION],
            implicit_approvals=counts[FeedbackType.IMPLICIT_APPROVAL],
            success_rate=successes / len(entries) if entries else 0.0,
            common_corrections=dict(corrections),
            preference_patterns=analyze_patterns(entries),
        )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    def _trim(self) -> None:
        newest = sorted(self._cache.values(), key=lambda e: e.timestamp, reverse=True)[:self._max_entries]
        dropped = len(self._cache) - len(newest)
        self._cache = {e.id: e for e in newest}
        logger.info(f"Trimmed {dropped} old feedback entries")

    def _load(self) -> List[FeedbackEntry]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Failed to load feedback file {self._path}: {e}")
            return []
        if not isinstance(data, list):
            logger.warning(f"Feedback file is not a list (was {type(data).__name__}), ignoring")
            return []

        entries = []
        for item in data:
            try:
                entries.append(FeedbackEntry.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed feedback entry: {e}")
        return entries

    def _save(self) -> None:
        if not self.persist:
            return
        temp_file = self._path.with_suffix(".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            payload = [e.to_dict() for e in self._cache.values()]
            temp_file.write_text(json.dumps(payload, indent=2))
            temp_file.replace(self._path)
        except (IOError, OSError) as e:
            logger.error(f"Failed to save feedback data: {e}")
            if temp_file.exists():
                temp_file.unlink()


# -----------------------------------------------------------------------------
# Pattern Analysis
# -----------------------------------------------------------------------------
def analyze_patterns(entries: List[FeedbackEntry]) -> List[PreferencePattern]:
    patterns = [
        _working_hours_pattern(entries),
        _branch_naming_pattern(entries),
        _commit_frequency_pattern(entries),
    ]
    return [p for p in patterns if p is not None]


def _working_hours_pattern(entries: List[FeedbackEntry]) -> Optional[PreferencePattern]:
    """Hours in which approvals outnumber rejections more than 2:1."""
    approvals: Counter = Counter()
    rejections: Counter = Counter()
    for entry in entries:
        hour = entry.timestamp.hour
        if entry.feedback.type.is_approval:
            approvals[hour] += 1
        elif entry.feedback.type == FeedbackType.REJECTION:
            rejections[hour] += 1

    hours = sorted(h for h in set(approvals) | set(rejections) if approvals[h] > rejections[h] * 2)
    if not hours:
        return None
    return PreferencePattern(
        pattern="working_hours",
        frequency=len(hours),
        confidence=0.8,
        examples=[f"{h}:00-{h + 1}:00" for h in hours],
    )


def _branch_naming_pattern(entries: List[FeedbackEntry]) -> Optional[PreferencePattern]:
    names = [
        e.feedback.user_action or ""
        for e in entries
        if e.feedback.type == FeedbackType.CORRECTION and e.decision.action == "branch"
    ]
    if len(names) < BRANCH_PATTERN_MIN:
        return None

    examples = []
    if any("/" in n for n in names):
        examples.append("uses prefixes")
    if any("-" in n for n in names):
        examples.append("uses kebab-case")
    if any("_" in n for n in names):
        examples.append("uses snake_case")
    return PreferencePattern(pattern="branch_naming", frequency=len(names), confidence=0.7, examples=examples)


def _commit_frequency_pattern(entries: List[FeedbackEntry]) -> Optional[PreferencePattern]:
    commits = [e for e in entries if e.decision.action == "commit"]
    approved = sum(1 for e in commits if e.feedback.type.is_approval)
    rejected = sum(1 for e in commits if e.feedback.type == FeedbackType.REJECTION)
    total = approved + rejected
    if total < COMMIT_PATTERN_MIN:
        return None

    rate = approved / total
    if rate > 0.7:
        example = "prefers frequent commits"
    elif rate < 0.3:
        example = "prefers fewer commits"
    else:
        example = "moderate commit frequency"
    return PreferencePattern(
        pattern="commit_frequency",
        frequency=total,
        confidence=abs(rate - 0.5) * 2,
        examples=[example],
    )
