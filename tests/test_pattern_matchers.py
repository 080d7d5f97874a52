"""
Pattern Matcher Tests

Raw signal -> MonitoringEvent translation:
1. ConversationMonitor - regex table, file mentions, buffer, listener
2. FileChangeClassifier - significance, ignore globs, FILE_CHANGE events
3. GitStateDetector - emits only when the git fingerprint changes
"""

import pytest

from devflow.event_model import MonitoringEventType
from devflow.git_ops import GitCollaborator, GitCommandError
from devflow.pattern_matchers import (
    MAX_MESSAGE_BUFFER,
    ConversationMonitor,
    FileChangeClassifier,
    GitStateDetector,
    extract_file_mentions,
)
from tests.conftest import PROJECT_PATH, async_test


# =============================================================================
# Conversation Monitor
# =============================================================================
class TestConversationMonitor:
    """Conversation text to progress events."""

    def test_emits_one_event_per_matching_pattern(self):
        monitor = ConversationMonitor()
        events = monitor.process_message(
            "I implemented the new feature and all tests are passing",
            "assistant",
            PROJECT_PATH,
        )

        types = [e.type for e in events]
        assert types == [MonitoringEventType.FEATURE_COMPLETE, MonitoringEventType.TESTS_PASSING]
        assert events[0].data["pattern"] == "feature_complete"
        assert events[0].data["priority"] == "high"
        assert events[0].data["role"] == "assistant"
        assert all(e.project_path == PROJECT_PATH for e in events)

    def test_matching_is_case_insensitive(self):
        events = ConversationMonitor().process_message("FIXED THE BUG in login", "user")
        assert MonitoringEventType.BUG_FIXED in [e.type for e in events]

    def test_blocked_message(self):
        events = ConversationMonitor().process_message("I'm stuck on the migration", "user")
        assert [e.type for e in events] == [MonitoringEventType.BLOCKED]

    def test_listener_receives_every_event(self):
        received = []
        monitor = ConversationMonitor(listener=received.append)
        events = monitor.process_message("Tests are failing after the merge", "user")

        assert received == events
        assert received[0].type == MonitoringEventType.TESTS_FAILING

    def test_file_mentions_emit_files_event(self):
        events = ConversationMonitor().process_message(
            "I updated `src/app.py` and the values in settings.yaml",
            "assistant",
        )
        mentioned = [e for e in events if e.type == MonitoringEventType.FILES_MENTIONED]
        assert len(mentioned) == 1
        assert mentioned[0].data["files"] == ["src/app.py", "settings.yaml"]

    def test_file_mentions_require_known_extension(self):
        assert extract_file_mentions("look in notes.xyz for details") == []

    def test_plain_message_yields_nothing(self):
        assert ConversationMonitor().process_message("Good morning", "user") == []

    def test_buffer_is_bounded(self):
        monitor = ConversationMonitor()
        for i in range(MAX_MESSAGE_BUFFER + 20):
            monitor.process_message(f"message {i}", "user")

        assert len(monitor.get_recent_context(MAX_MESSAGE_BUFFER + 50)) == MAX_MESSAGE_BUFFER
        recent = monitor.get_recent_context(2)
        assert [m["message"] for m in recent] == [
            f"message {MAX_MESSAGE_BUFFER + 18}",
            f"message {MAX_MESSAGE_BUFFER + 19}",
        ]

    def test_stopped_monitor_ignores_messages(self):
        received = []
        monitor = ConversationMonitor(listener=received.append)
        monitor.stop()

        assert not monitor.is_active()
        assert monitor.process_message("fixed the bug", "user") == []
        assert received == []


# =============================================================================
# File Change Classifier
# =============================================================================
class TestFileChangeClassifier:
    @pytest.fixture
    def classifier(self):
        return FileChangeClassifier()

    @pytest.mark.parametrize("path", ["app.py", "web/index.tsx", "src/styles.css", "lib/data.json"])
    def test_significant_files(self, path):
        assert FileChangeClassifier.is_significant(path)

    @pytest.mark.parametrize("path", ["README.md", "docs/guide.txt", "assets/logo.png"])
    def test_insignificant_files(self, path):
        assert not FileChangeClassifier.is_significant(path)

    @pytest.mark.parametrize("path", [
        ".git/HEAD",
        "node_modules/react/index.js",
        "packages/web/node_modules/x.js",
        "build/out.js",
        "server.log",
        ".env.production.local",
        "pkg/__pycache__/mod.cpython-311.pyc",
        "./dist/bundle.js",
    ])
    def test_ignored_paths(self, classifier, path):
        assert classifier.is_ignored(path)

    def test_source_paths_are_not_ignored(self, classifier):
        assert not classifier.is_ignored("src/builder.py")
        assert not classifier.is_ignored("distribution.md")

    def test_to_event(self, classifier):
        event = classifier.to_event(PROJECT_PATH, "src/app.py", "change")
        assert event.type == MonitoringEventType.FILE_CHANGE
        assert event.data == {"file_path": "src/app.py", "change_type": "change"}

    def test_unknown_change_type(self, classifier):
        with pytest.raises(ValueError):
            classifier.to_event(PROJECT_PATH, "src/app.py", "rename")


# =============================================================================
# Git State Detector
# =============================================================================
class FailingGit(GitCollaborator):
    async def run_git(self, project_path, *args, strip=True):
        raise GitCommandError(list(args), 128, "not a git repository")


class TestGitStateDetector:
    @async_test
    async def test_first_check_emits_then_quiet(self, git_repo):
        detector = GitStateDetector(GitCollaborator())

        first = await detector.check(str(git_repo))
        second = await detector.check(str(git_repo))

        assert first.type == MonitoringEventType.GIT_STATE_CHANGE
        assert first.data["branch"] == "main"
        assert first.data["uncommitted_changes"] is None
        assert first.data["latest_commit"]["message"] == "initial commit"
        assert second is None

    @async_test
    async def test_new_change_emits_again(self, git_repo):
        detector = GitStateDetector(GitCollaborator())
        await detector.check(str(git_repo))

        (git_repo / "feature.py").write_text("print('hi')\n")
        event = await detector.check(str(git_repo))

        assert event is not None
        assert event.data["uncommitted_changes"]["file_count"] == 1

    @async_test
    async def test_forget_resets_fingerprint(self, git_repo):
        detector = GitStateDetector(GitCollaborator())
        await detector.check(str(git_repo))
        detector.forget(str(git_repo))
        assert await detector.check(str(git_repo)) is not None

    @async_test
    async def test_git_errors_yield_no_event(self):
        detector = GitStateDetector(FailingGit())
        assert await detector.check(PROJECT_PATH) is None
