"""
GitHub Pull Request tools — open, approve, poll and merge PRs via REST API.

Used by the orchestrator for the PR half of an activity cycle. HTTP failures
are translated into the bot's error taxonomy here, so callers never see httpx
exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from activity_bot.errors import (
    ApprovalError,
    MergeConflict,
    MergeRejected,
    PRCreateError,
    SyncError,
    TransientNetworkError,
)

log = structlog.get_logger()

GITHUB_API = "https://api.github.com"
_TIMEOUT = 30


def _headers(token: str) -> dict:
    """GitHub REST API headers."""
    if not token:
        raise ValueError("No GitHub token provided")
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github.v3+json",
        "User-Agent": "activity-bot",
    }


def _message(r: httpx.Response) -> str:
    try:
        data = r.json()
    except ValueError:
        return r.text[:200]
    if isinstance(data, dict):
        msg = data.get("message", "")
        errors = data.get("errors")
        if errors:
            msg = f"{msg} {errors}"
        return msg
    return str(data)[:200]


@dataclass(frozen=True)
class PRHandle:
    number: int
    html_url: str
    head: str
    base: str


@dataclass(frozen=True)
class MergeStatus:
    mergeable: Optional[bool]  # None while GitHub is still computing it
    state: str                 # mergeable_state: clean, dirty, blocked, behind, unstable, ...
    merged: bool = False


@dataclass(frozen=True)
class MergeHandle:
    sha: str
    message: str = ""


class PullRequestClient:
    """Pull request lifecycle for one repository.

    Args:
        repo:     "owner/name"
        token:    GitHub token with write access to the repo
        http:     optional httpx.Client (tests pass one wired to a mock transport)
        api_url:  REST base URL, for GitHub Enterprise
    """

    def __init__(self, repo: str, token: str, http: Optional[httpx.Client] = None,
                 api_url: str = GITHUB_API):
        self.repo = repo
        self._api = api_url.rstrip("/")
        self._http = http or httpx.Client(timeout=_TIMEOUT)
        self._owns_http = http is None
        self._hdrs = _headers(token)

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "PullRequestClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---------------------------------------------------------------------------
    # Low-level request helper
    # ---------------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request; transport failures, 5xx and 429 become TransientNetworkError."""
        url = f"{self._api}/repos/{self.repo}{path}"
        try:
            r = self._http.request(method, url, headers=self._hdrs, timeout=_TIMEOUT, **kwargs)
        except httpx.TransportError as e:
            log.warning("github_pr.transport_error", method=method, path=path,
                        error=str(e), error_type=type(e).__name__)
            raise TransientNetworkError(f"{method} {path}: {e}") from e

        if r.status_code >= 500 or r.status_code == 429:
            log.warning("github_pr.server_error", method=method, path=path,
                        status=r.status_code)
            raise TransientNetworkError(f"{method} {path}: HTTP {r.status_code} {_message(r)}")
        return r

    # ---------------------------------------------------------------------------
    # Repository helpers
    # ---------------------------------------------------------------------------

    def default_branch(self) -> str:
        """Return the repo's default branch name."""
        r = self._request("GET", "")
        if r.status_code != 200:
            raise SyncError(f"Cannot read repository {self.repo}: "
                            f"HTTP {r.status_code} {_message(r)}")
        branch = r.json()["default_branch"]
        log.info("github_pr.default_branch", repo=self.repo, branch=branch)
        return branch

    def delete_branch(self, branch: str) -> bool:
        """Delete a remote branch. Returns False if it was already gone."""
        r = self._request("DELETE", f"/git/refs/heads/{branch}")
        if r.status_code == 204:
            log.info("github_pr.branch_deleted", repo=self.repo, branch=branch)
            return True
        log.warning("github_pr.branch_delete_failed", repo=self.repo, branch=branch,
                    status=r.status_code, message=_message(r))
        return False

    # ---------------------------------------------------------------------------
    # Pull request lifecycle
    # ---------------------------------------------------------------------------

    def create_pull_request(self, head: str, base: str, title: str, body: str) -> PRHandle:
        """Create a pull request from `head` into `base`."""
        r = self._request("POST", "/pulls", json={
            "title": title,
            "body": body,
            "head": head,
            "base": base,
        })
        if r.status_code != 201:
            raise PRCreateError(f"HTTP {r.status_code}: {_message(r)}")
        pr = r.json()
        log.info("github_pr.pr_created",
                 repo=self.repo, number=pr["number"], url=pr["html_url"])
        return PRHandle(number=pr["number"], html_url=pr["html_url"], head=head, base=base)

    def approve(self, pr: PRHandle) -> None:
        """Submit an APPROVE review. GitHub refuses self-approval with 422."""
        r = self._request("POST", f"/pulls/{pr.number}/reviews", json={"event": "APPROVE"})
        if r.status_code != 200:
            raise ApprovalError(f"PR #{pr.number}: HTTP {r.status_code} {_message(r)}")
        log.info("github_pr.pr_approved", repo=self.repo, number=pr.number)

    def merge_status(self, pr: PRHandle) -> MergeStatus:
        r = self._request("GET", f"/pulls/{pr.number}")
        if r.status_code != 200:
            raise MergeRejected(f"PR #{pr.number}: HTTP {r.status_code} {_message(r)}")
        data = r.json()
        status = MergeStatus(
            mergeable=data.get("mergeable"),
            state=data.get("mergeable_state") or "unknown",
            merged=bool(data.get("merged")),
        )
        log.debug("github_pr.merge_status", number=pr.number,
                  mergeable=status.mergeable, state=status.state)
        return status

    def merge(self, pr: PRHandle, method: str = "squash") -> MergeHandle:
        """Merge the PR. 409 or a conflict message is a MergeConflict, other refusals MergeRejected."""
        r = self._request("PUT", f"/pulls/{pr.number}/merge", json={
            "merge_method": method,
            "commit_title": f"Merged bot update PR #{pr.number}",
        })
        if r.status_code == 200:
            data = r.json()
            log.info("github_pr.pr_merged", repo=self.repo, number=pr.number,
                     sha=data.get("sha", "")[:8])
            return MergeHandle(sha=data.get("sha", ""), message=data.get("message", ""))

        msg = _message(r)
        if r.status_code == 409 or "conflict" in msg.lower():
            raise MergeConflict(f"PR #{pr.number}: HTTP {r.status_code} {msg}")
        raise MergeRejected(f"PR #{pr.number}: HTTP {r.status_code} {msg}")
