"""
GitHub Client

Minimal GitHub REST client used by the `pr` action.

CONSTRAINTS:
- Token comes from GITHUB_TOKEN unless passed explicitly
- Non-2xx responses raise GitHubAPIError (no retries)
- Pull requests are opened as drafts by default
"""

import logging
import os
import re
from typing import Optional, Dict, Any, List, Tuple

import httpx

logger = logging.getLogger("github_client")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
GITHUB_API_BASE = "https://api.github.com"
GITHUB_TIMEOUT = 30.0

_REPO_FORMAT = re.compile(r"^([\w.-]+)/([\w.-]+)$")


class GitHubAPIError(Exception):
    """GitHub returned an error status or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def parse_repo(repo: str) -> Tuple[str, str]:
    """
    Split an "owner/repo" string.

    Raises:
        ValueError: if the string is not owner/repo
    """
    match = _REPO_FORMAT.match(repo.strip())
    if not match:
        raise ValueError(f"Invalid GitHub repository format: {repo!r}")
    return match.group(1), match.group(2)


class GitHubCollaborator:
    """
    Async GitHub REST client.

    `transport` is for tests (httpx.MockTransport).
    """

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = GITHUB_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token if token is not None else os.getenv("GITHUB_TOKEN", "")
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    @property
    def headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github.v3+json"}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    def is_configured(self) -> bool:
        return bool(self.token)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=GITHUB_TIMEOUT,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async with self._client() as client:
            try:
                response = await client.request(method, path, json=payload)
            except httpx.HTTPError as e:
                raise GitHubAPIError(f"GitHub request failed: {e}") from e

        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            logger.error(f"GitHub {method} {path} failed: {response.status_code} {message}")
            raise GitHubAPIError(f"GitHub API error ({response.status_code}): {message}", response.status_code)

        return response.json() if response.content else {}

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
        draft: bool = True,
        reviewers: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Open a pull request and optionally request reviewers.

        Returns:
            {"number", "url", "draft"}
        """
        data = await self._request("POST", f"/repos/{owner}/{repo}/pulls", {
            "title": title,
            "body": body,
            "head": head,
            "base": base,
            "draft": draft,
        })
        number = data.get("number")
        logger.info(f"Created pull request #{number} in {owner}/{repo}")

        if reviewers and number is not None:
            await self._request(
                "POST",
                f"/repos/{owner}/{repo}/pulls/{number}/requested_reviewers",
                {"reviewers": list(reviewers)},
            )

        return {
            "number": number,
            "url": data.get("html_url", ""),
            "draft": data.get("draft", draft),
        }
