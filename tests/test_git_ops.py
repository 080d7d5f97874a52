"""
Git and GitHub Collaborator Tests

1. Parsing helpers (porcelain, remote URLs, owner/repo)
2. GitCollaborator against a real throwaway repository
3. GitHubCollaborator against httpx.MockTransport
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from devflow.config import GitWorkflowConfig
from devflow.git_ops import (
    FileStatus,
    GitCollaborator,
    GitCommandError,
    parse_github_url,
    parse_porcelain,
)
from devflow.github_client import GitHubAPIError, GitHubCollaborator, parse_repo
from tests.conftest import async_test, git


# =============================================================================
# Parsing
# =============================================================================
class TestParsing:
    def test_porcelain_statuses(self):
        output = (
            " M src/app.py\n"
            "A  src/new.py\n"
            " D old.txt\n"
            "?? notes.md\n"
            "R  a.py -> b.py\n"
        )
        changes = {c.path: c.status for c in parse_porcelain(output)}
        assert changes == {
            "src/app.py": FileStatus.MODIFIED,
            "src/new.py": FileStatus.ADDED,
            "old.txt": FileStatus.DELETED,
            "notes.md": FileStatus.ADDED,
            "b.py": FileStatus.RENAMED,
        }

    @pytest.mark.parametrize("url", [
        "https://github.com/acme/widgets.git",
        "https://github.com/acme/widgets",
        "git@github.com:acme/widgets.git",
    ])
    def test_github_urls(self, url):
        assert parse_github_url(url) == ("acme", "widgets")

    def test_non_github_url(self):
        assert parse_github_url("https://gitlab.com/acme/widgets.git") is None

    def test_parse_repo(self):
        assert parse_repo("acme/widgets") == ("acme", "widgets")
        with pytest.raises(ValueError):
            parse_repo("widgets")


# =============================================================================
# Git Collaborator (real git)
# =============================================================================
class TestGitCollaborator:
    @async_test
    async def test_clean_repository(self, git_repo):
        collaborator = GitCollaborator()
        assert await collaborator.get_current_branch(str(git_repo)) == "main"
        assert await collaborator.get_uncommitted_changes(str(git_repo)) is None

        commits = await collaborator.get_recent_commits(str(git_repo), 5)
        assert [c.message for c in commits] == ["initial commit"]
        assert commits[0].author == "Dev"
        assert commits[0].date.tzinfo is None

    @async_test
    async def test_uncommitted_changes(self, git_repo):
        (git_repo / "README.md").write_text("# changed\n")
        (git_repo / "src").mkdir()
        (git_repo / "src" / "app.py").write_text("x = 1\n")

        changes = await GitCollaborator().get_uncommitted_changes(str(git_repo))

        assert changes.file_count == 2
        assert changes.modified == ["README.md"]
        assert changes.added == ["src/app.py"]
        assert "README.md" in changes.diff_summary

    @async_test
    async def test_commit_returns_hash(self, git_repo):
        collaborator = GitCollaborator()
        (git_repo / "a.txt").write_text("a\n")

        await collaborator.stage_all(str(git_repo))
        commit_hash = await collaborator.commit(str(git_repo), "feat: add a")

        assert commit_hash == git(git_repo, "rev-parse", "HEAD")
        latest = await collaborator.get_latest_commit(str(git_repo))
        assert latest.message == "feat: add a"

    @async_test
    async def test_branch_lifecycle(self, git_repo):
        collaborator = GitCollaborator()
        await collaborator.create_branch(str(git_repo), "feature/x")
        assert await collaborator.get_current_branch(str(git_repo)) == "feature/x"

        await collaborator.checkout(str(git_repo), "main")
        await collaborator.delete_branch(str(git_repo), "feature/x")
        assert "feature/x" not in git(git_repo, "branch")

    @async_test
    async def test_stash_and_pop(self, git_repo):
        collaborator = GitCollaborator()
        (git_repo / "README.md").write_text("# wip\n")

        await collaborator.stash(str(git_repo), "parking")
        assert await collaborator.get_uncommitted_changes(str(git_repo)) is None

        await collaborator.stash_pop(str(git_repo))
        assert (git_repo / "README.md").read_text() == "# wip\n"

    @async_test
    async def test_status_marks_protected_branch(self, git_repo):
        status = await GitCollaborator().get_status(str(git_repo), GitWorkflowConfig())
        assert status.branch == "main"
        assert status.is_protected
        assert status.last_commit.message == "initial commit"

    @async_test
    async def test_remote_url_missing(self, git_repo):
        assert await GitCollaborator().get_remote_url(str(git_repo)) is None

    @async_test
    async def test_failed_command_raises(self, git_repo):
        with pytest.raises(GitCommandError) as exc:
            await GitCollaborator().checkout(str(git_repo), "does-not-exist")
        assert exc.value.returncode != 0

    @async_test
    async def test_missing_directory_raises(self, temp_dir):
        with pytest.raises(GitCommandError):
            await GitCollaborator().run_git(str(temp_dir / "missing"), "status")

    @async_test
    async def test_unreadable_directory_raises(self, temp_dir):
        denied = PermissionError(13, "Permission denied")
        with patch("devflow.git_ops.asyncio.create_subprocess_exec", AsyncMock(side_effect=denied)):
            with pytest.raises(GitCommandError) as exc:
                await GitCollaborator().run_git(str(temp_dir), "status")
        assert exc.value.returncode is None


# =============================================================================
# GitHub Collaborator
# =============================================================================
class TestGitHubCollaborator:
    def _client(self, handler, token="secret"):
        return GitHubCollaborator(token=token, transport=httpx.MockTransport(handler))

    def test_configuration_depends_on_token(self):
        assert GitHubCollaborator(token="abc").is_configured()
        assert not GitHubCollaborator(token="").is_configured()

    @async_test
    async def test_creates_draft_pull_request(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={
                "number": 42,
                "html_url": "https://github.com/acme/widgets/pull/42",
                "draft": True,
            })

        result = await self._client(handler).create_pull_request(
            "acme", "widgets", title="Add login", body="Body", head="feature/login", base="main",
        )

        assert result == {"number": 42, "url": "https://github.com/acme/widgets/pull/42", "draft": True}
        assert len(requests) == 1
        assert requests[0].url.path == "/repos/acme/widgets/pulls"
        assert requests[0].headers["Authorization"] == "token secret"
        payload = json.loads(requests[0].content)
        assert payload["draft"] is True
        assert payload["head"] == "feature/login"

    @async_test
    async def test_requests_reviewers(self):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(201, json={"number": 7, "html_url": "u", "draft": True})

        await self._client(handler).create_pull_request(
            "acme", "widgets", "t", "b", "feature/x", "main", reviewers=["alice"],
        )
        assert paths == ["/repos/acme/widgets/pulls", "/repos/acme/widgets/pulls/7/requested_reviewers"]

    @async_test
    async def test_error_status_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, json={"message": "Validation Failed"})

        with pytest.raises(GitHubAPIError) as exc:
            await self._client(handler).create_pull_request("acme", "widgets", "t", "b", "x", "main")
        assert exc.value.status_code == 422
        assert "Validation Failed" in str(exc.value)
