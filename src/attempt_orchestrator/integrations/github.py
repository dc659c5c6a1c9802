"""GitHub pull request provider over the REST API."""

import logging
from datetime import datetime

import httpx

from attempt_orchestrator.db.models import PullRequestInfo

logger = logging.getLogger(__name__)

API_URL = "https://api.github.com"


class GitHubError(Exception):
    """Raised when a GitHub API call fails."""


class GitHubProvider:
    """Creates and inspects pull requests for one ``owner/repo``."""

    def __init__(self, token: str | None, owner: str, repo: str, client: httpx.Client | None = None):
        self.owner = owner
        self.repo = repo
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.Client(base_url=API_URL, timeout=httpx.Timeout(15.0))
        self._headers = headers

    def close(self):
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"/repos/{self.owner}/{self.repo}{path}"
        try:
            resp = self._client.request(method, url, headers=self._headers, **kwargs)
        except httpx.HTTPError as e:
            raise GitHubError(f"GitHub request {method} {url} failed: {e}") from e
        if resp.status_code >= 400:
            message = resp.text
            try:
                message = resp.json().get("message", message)
            except ValueError:
                pass
            raise GitHubError(f"GitHub {method} {url} returned {resp.status_code}: {message}")
        return resp

    def create_pr(self, title: str, body: str | None, head: str, base: str) -> PullRequestInfo:
        resp = self._request(
            "POST", "/pulls",
            json={"title": title, "body": body or "", "head": head, "base": base},
        )
        return pr_info_from_json(resp.json())

    def get_pr(self, number: int) -> PullRequestInfo:
        return pr_info_from_json(self._request("GET", f"/pulls/{number}").json())

    def find_open_pr_for_branch(self, branch: str) -> PullRequestInfo | None:
        resp = self._request(
            "GET", "/pulls",
            params={"state": "open", "head": f"{self.owner}:{branch}", "per_page": 1},
        )
        items = resp.json()
        if not items:
            return None
        return pr_info_from_json(items[0])


def pr_info_from_json(data: dict) -> PullRequestInfo:
    """Map a GitHub pull request object to open/merged/closed."""
    merged_at = data.get("merged_at")
    if merged_at:
        status = "merged"
    elif data.get("state") == "closed":
        status = "closed"
    else:
        status = "open"
    return PullRequestInfo(
        number=data["number"],
        url=data["html_url"],
        status=status,
        merged_at=datetime.fromisoformat(merged_at) if merged_at else None,
        merge_commit_sha=data.get("merge_commit_sha") if merged_at else None,
    )
