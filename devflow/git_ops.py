"""
Git Operations

Thin async wrapper over the `git` CLI. Used to build ProjectState, to
drive the git-state detector and to execute automated actions.

CONSTRAINTS:
- Every command runs with an explicit cwd (the project path)
- Every command has a timeout; a hung git process is killed
- A non-zero exit raises GitCommandError carrying stderr
- No retries
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

from .config import GitWorkflowConfig

logger = logging.getLogger("git_ops")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
GIT_TIMEOUT = 60  # seconds
DEFAULT_BRANCH = "main"
DIFF_SUMMARY_MAX_LINES = 50

_LOG_SEPARATOR = "\x1f"
_GITHUB_URL = re.compile(r"github\.com[:/]([^/]+)/([^/.]+)(\.git)?$")


class GitCommandError(Exception):
    """A git invocation could not start, exited non-zero or timed out."""

    def __init__(self, command: List[str], returncode: Optional[int], stderr: str):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"git {' '.join(command)} failed ({returncode}): {stderr.strip()}")


# -----------------------------------------------------------------------------
# Working Tree Model
# -----------------------------------------------------------------------------
class FileStatus(str, Enum):
    MODIFIED = "modified"
    ADDED = "added"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass(frozen=True)
class FileChange:
    path: str
    status: FileStatus

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "status": self.status.value}


@dataclass(frozen=True)
class UncommittedChanges:
    """Snapshot of a dirty working tree. Never built for a clean tree."""
    file_count: int
    files: Tuple[FileChange, ...] = ()
    diff_summary: str = ""

    def paths(self, status: FileStatus) -> List[str]:
        return [f.path for f in self.files if f.status == status]

    @property
    def added(self) -> List[str]:
        return self.paths(FileStatus.ADDED)

    @property
    def modified(self) -> List[str]:
        return self.paths(FileStatus.MODIFIED)

    @property
    def deleted(self) -> List[str]:
        return self.paths(FileStatus.DELETED)

    @property
    def all_paths(self) -> List[str]:
        return [f.path for f in self.files]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_count": self.file_count,
            "files": [f.to_dict() for f in self.files],
            "diff_summary": self.diff_summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UncommittedChanges":
        files = tuple(
            FileChange(path=f["path"], status=FileStatus(f.get("status", "modified")))
            for f in data.get("files") or []
        )
        return cls(
            file_count=int(data.get("file_count", len(files))),
            files=files,
            diff_summary=data.get("diff_summary", ""),
        )


@dataclass(frozen=True)
class CommitInfo:
    hash: str
    message: str
    author: str
    date: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "message": self.message,
            "author": self.author,
            "date": self.date.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommitInfo":
        return cls(
            hash=data["hash"],
            message=data.get("message", ""),
            author=data.get("author", ""),
            date=datetime.fromisoformat(data["date"]),
        )


@dataclass
class DevelopmentStatus:
    """Everything the status-based suggestion rules look at."""
    project_path: str
    branch: str
    is_protected: bool = False
    uncommitted_changes: Optional[UncommittedChanges] = None
    last_commit: Optional[CommitInfo] = None
    recent_commits: List[CommitInfo] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_path": self.project_path,
            "branch": self.branch,
            "is_protected": self.is_protected,
            "uncommitted_changes": self.uncommitted_changes.to_dict() if self.uncommitted_changes else None,
            "last_commit": self.last_commit.to_dict() if self.last_commit else None,
            "recent_commits": [c.to_dict() for c in self.recent_commits],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DevelopmentStatus":
        changes = data.get("uncommitted_changes")
        last_commit = data.get("last_commit")
        return cls(
            project_path=data.get("project_path", ""),
            branch=data.get("branch", DEFAULT_BRANCH),
            is_protected=bool(data.get("is_protected", False)),
            uncommitted_changes=UncommittedChanges.from_dict(changes) if changes else None,
            last_commit=CommitInfo.from_dict(last_commit) if last_commit else None,
            recent_commits=[CommitInfo.from_dict(c) for c in data.get("recent_commits") or []],
        )


def parse_porcelain(output: str) -> List[FileChange]:
    """Parse `git status --porcelain` (v1) output."""
    changes: List[FileChange] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        code, path = line[:2], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip('"')

        if code == "??" or "A" in code:
            status = FileStatus.ADDED
        elif "D" in code:
            status = FileStatus.DELETED
        elif "R" in code:
            status = FileStatus.RENAMED
        else:
            status = FileStatus.MODIFIED
        changes.append(FileChange(path=path, status=status))
    return changes


def parse_github_url(url: str) -> Optional[Tuple[str, str]]:
    """Extract (owner, repo) from an https or ssh GitHub remote URL."""
    match = _GITHUB_URL.search(url.strip())
    if not match:
        return None
    return match.group(1), match.group(2)


# -----------------------------------------------------------------------------
# Git Collaborator
# -----------------------------------------------------------------------------
class GitCollaborator:
    """Async git CLI wrapper. One instance serves every project."""

    def __init__(self, git_binary: str = "git", timeout: float = GIT_TIMEOUT):
        self._git = git_binary
        self._timeout = timeout

    async def run_git(self, project_path: str, *args: str, strip: bool = True) -> str:
        """
        Run one git command in `project_path`.

        Returns:
            stdout (stripped unless `strip` is False)

        Raises:
            GitCommandError: non-zero exit, timeout, or git could not be started
        """
        command = list(args)
        logger.debug(f"git {' '.join(command)} (cwd={project_path})")
        try:
            process = await asyncio.create_subprocess_exec(
                self._git, *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=project_path,
            )
        except OSError as e:
            raise GitCommandError(command, None, str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise GitCommandError(command, None, f"timed out after {self._timeout}s")

        if process.returncode != 0:
            raise GitCommandError(command, process.returncode, stderr.decode(errors="replace"))
        output = stdout.decode(errors="replace")
        return output.strip() if strip else output

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------
    async def get_current_branch(self, project_path: str) -> str:
        branch = await self.run_git(project_path, "rev-parse", "--abbrev-ref", "HEAD")
        if not branch or branch == "HEAD":
            # Unborn or detached HEAD
            try:
                branch = await self.run_git(project_path, "symbolic-ref", "--short", "HEAD")
            except GitCommandError:
                branch = ""
        return branch or DEFAULT_BRANCH

    async def get_uncommitted_changes(self, project_path: str) -> Optional[UncommittedChanges]:
        """None when the working tree is clean."""
        output = await self.run_git(project_path, "status", "--porcelain", "--untracked-files=all", strip=False)
        files = parse_porcelain(output)
        if not files:
            return None

        try:
            diff = await self.run_git(project_path, "diff", "HEAD", "--stat")
        except GitCommandError as e:
            # No HEAD yet in a fresh repository
            logger.debug(f"No diff summary for {project_path}: {e}")
            diff = ""

        lines = diff.splitlines()
        if len(lines) > DIFF_SUMMARY_MAX_LINES:
            diff = "\n".join(lines[:DIFF_SUMMARY_MAX_LINES]) + "\n... (truncated)"

        return UncommittedChanges(file_count=len(files), files=tuple(files), diff_summary=diff)

    async def get_recent_commits(self, project_path: str, count: int = 5) -> List[CommitInfo]:
        fmt = _LOG_SEPARATOR.join(["%H", "%s", "%an", "%aI"])
        try:
            output = await self.run_git(project_path, "log", f"-n{count}", f"--pretty=format:{fmt}")
        except GitCommandError as e:
            logger.debug(f"No commits in {project_path}: {e}")
            return []

        commits = []
        for line in output.splitlines():
            parts = line.split(_LOG_SEPARATOR)
            if len(parts) != 4:
                continue
            commit_date = datetime.fromisoformat(parts[3])
            if commit_date.tzinfo is not None:
                # Timestamps are naive UTC across the package
                commit_date = commit_date.astimezone(timezone.utc).replace(tzinfo=None)
            commits.append(CommitInfo(hash=parts[0], message=parts[1], author=parts[2], date=commit_date))
        return commits

    async def get_latest_commit(self, project_path: str) -> Optional[CommitInfo]:
        commits = await self.get_recent_commits(project_path, 1)
        return commits[0] if commits else None

    async def get_remote_url(self, project_path: str, remote: str = "origin") -> Optional[str]:
        try:
            return await self.run_git(project_path, "remote", "get-url", remote)
        except GitCommandError:
            return None

    async def get_status(
        self,
        project_path: str,
        git_workflow: Optional[GitWorkflowConfig] = None,
    ) -> DevelopmentStatus:
        workflow = git_workflow or GitWorkflowConfig()
        branch = await self.get_current_branch(project_path)
        commits = await self.get_recent_commits(project_path, 5)
        return DevelopmentStatus(
            project_path=project_path,
            branch=branch,
            is_protected=workflow.is_protected(branch),
            uncommitted_changes=await self.get_uncommitted_changes(project_path),
            last_commit=commits[0] if commits else None,
            recent_commits=commits,
        )

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------
    async def stage_all(self, project_path: str) -> None:
        await self.run_git(project_path, "add", "-A")

    async def commit(self, project_path: str, message: str) -> str:
        """Commit the index. Returns the new commit hash."""
        await self.run_git(project_path, "commit", "-m", message)
        return await self.run_git(project_path, "rev-parse", "HEAD")

    async def create_branch(self, project_path: str, name: str) -> None:
        await self.run_git(project_path, "checkout", "-b", name)

    async def checkout(self, project_path: str, branch: str) -> None:
        await self.run_git(project_path, "checkout", branch)

    async def delete_branch(self, project_path: str, name: str) -> None:
        await self.run_git(project_path, "branch", "-d", name)

    async def push_branch(self, project_path: str, remote: str = "origin") -> str:
        return await self.run_git(project_path, "push", "-u", remote, "HEAD")

    async def stash(self, project_path: str, message: str) -> str:
        return await self.run_git(project_path, "stash", "push", "-m", message)

    async def stash_pop(self, project_path: str) -> str:
        return await self.run_git(project_path, "stash", "pop")
