"""
GitHub repository fetcher.

Thin synchronous wrapper over the GitHub REST API: repository metadata,
recursive file tree, language breakdown and file contents. A missing or
private repository raises NotFoundError; every other upstream failure
raises CollaboratorError.
"""
import base64
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx

from unrepo.core.config import settings
from unrepo.core.errors import CollaboratorError, NotFoundError, ValidationError


logger = logging.getLogger(__name__)

GITHUB_TIMEOUT_SECONDS = 30.0
REPO_URL_RE = re.compile(r"^(?:https?://)?(?:www\.)?github\.com/([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)")
SHORT_REPO_RE = re.compile(r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)$")


def parse_repo_url(url: Optional[str]) -> Tuple[str, str]:
    """
    Return (owner, repo) from a GitHub URL or an "owner/repo" shorthand.

    Raises:
        ValidationError: not a GitHub repository reference
    """
    value = (url or "").strip()
    match = REPO_URL_RE.match(value) or SHORT_REPO_RE.match(value)
    if not match:
        raise ValidationError("Invalid GitHub URL format")
    owner, repo = match.group(1), match.group(2)
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    if not owner or not repo:
        raise ValidationError("Invalid GitHub URL format")
    return owner, repo


class GitHubService:
    def __init__(
        self,
        token: Optional[str] = None,
        *,
        api_url: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.token = token if token is not None else settings.GITHUB_ACCESS_TOKEN
        self.api_url = (api_url or settings.GITHUB_API_URL).rstrip("/")
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github+json", "X-GitHub-Api-Version": "2022-11-28"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        url = f"{self.api_url}{path}"
        try:
            if self._client is not None:
                return self._client.get(url, headers=self._headers(), params=params)
            with httpx.Client(timeout=GITHUB_TIMEOUT_SECONDS) as client:
                return client.get(url, headers=self._headers(), params=params)
        except httpx.HTTPError as e:
            raise CollaboratorError(f"GitHub request failed: {e}") from e

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = self._get(path, params)
        if response.status_code == 404:
            raise NotFoundError("Repository not found")
        if response.status_code >= 400:
            logger.warning("[github] %s returned %s", path, response.status_code)
            raise CollaboratorError(f"GitHub API error: {response.status_code}")
        return response.json()

    def get_repository(self, owner: str, repo: str) -> Dict[str, Any]:
        data = self._get_json(f"/repos/{owner}/{repo}")
        return {
            "description": data.get("description"),
            "stars": data.get("stargazers_count", 0),
            "forks": data.get("forks_count", 0),
            "language": data.get("language"),
            "branch": data.get("default_branch") or "main",
        }

    def get_languages(self, owner: str, repo: str) -> Dict[str, int]:
        return self._get_json(f"/repos/{owner}/{repo}/languages") or {}

    def get_file_tree(self, owner: str, repo: str, branch: str) -> List[Dict[str, Any]]:
        response = self._get(f"/repos/{owner}/{repo}/git/trees/{branch}", {"recursive": "1"})
        if response.status_code == 409:
            # Empty repository
            return []
        if response.status_code == 404:
            raise NotFoundError("Repository not found")
        if response.status_code >= 400:
            raise CollaboratorError(f"GitHub API error: {response.status_code}")
        items = response.json().get("tree", [])
        return [
            {"path": item.get("path"), "type": item.get("type"), "size": item.get("size")}
            for item in items
        ]

    def get_file_content(self, owner: str, repo: str, path: str, branch: Optional[str] = None) -> Optional[str]:
        """Decoded file content, or None when the file does not exist."""
        params = {"ref": branch} if branch else None
        response = self._get(f"/repos/{owner}/{repo}/contents/{path}", params)
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise CollaboratorError(f"GitHub API error: {response.status_code}")
        data = response.json()
        if not isinstance(data, dict):
            # A directory listing
            return None
        if data.get("encoding") == "base64":
            return base64.b64decode(data.get("content", "")).decode("utf-8", errors="replace")
        return data.get("content") or ""

    def get_multiple_files(
        self, owner: str, repo: str, paths: List[str], branch: Optional[str] = None
    ) -> List[Dict[str, str]]:
        """Fetch each path; missing or unreadable files are skipped."""
        files = []
        for path in paths:
            try:
                content = self.get_file_content(owner, repo, path, branch)
            except CollaboratorError as e:
                logger.warning("[github] skipping %s: %s", path, e.message)
                continue
            if content is not None:
                files.append({"path": path, "content": content})
        return files
