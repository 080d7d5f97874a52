"""
devflow - Developer Workflow Assistant

Event aggregation, decision, safety-gating and learning loop that sits behind
a Git/GitHub tool server.

Pipeline:
- Pattern matchers turn raw signals (file changes, git state transitions,
  conversation text) into typed MonitoringEvents
- The Event Store keeps a bounded, insertion-ordered history
- The Milestone Detector correlates recent events into milestones
  (feature_shipped, release_ready)
- The Suggestion Generator emits cooldown-gated, rule-based suggestions
  (works with automation fully disabled)
- The Decision Agent asks a pluggable LLM provider for one action with a
  confidence score and rationale
- The Safety Validator gates every repository-mutating action (FAIL CLOSED)
- The Action Executor runs commit/branch/pr/stash and records rollback info
- The Feedback Loop persists approvals, rejections and corrections and feeds
  an adjusted confidence back into the next decision

CONSTRAINTS:
- Safety validation before EVERY executor invocation (no bypass)
- requiresApproval decisions are NEVER auto-executed
- Exactly one FeedbackEntry per user-facing decision outcome
- Only one decision in flight per aggregator instance
- FeedbackEntry history is the only durable state
"""

__version__ = "0.4.0"

PACKAGE_NAME = "devflow"
PACKAGE_DESCRIPTION = "Developer Workflow Assistant - event aggregation, decision and learning loop"
