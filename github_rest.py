"""github_rest.py

Thin GitHub REST v3 client covering the handful of endpoints the branch
protection run needs: the authenticated user, paginated repository listings
for a user or an organization, a single branch, and the (preview) branch
protection update.

The protection update goes through its own request encoder because the
endpoint treats a missing ``dismissal_restrictions`` key differently from an
empty one: absent keeps whatever restriction is configured, empty clears it.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import requests

DEFAULT_API_URL = "https://api.github.com/"
DEFAULT_ACCEPT = "application/vnd.github+json"
# TODO: drop the preview media type once branch protection is served on the stable surface.
MEDIA_TYPE_PROTECTED_BRANCHES_PREVIEW = "application/vnd.github.loki-preview+json"
USER_AGENT = "pepper/0.1.0"

PER_PAGE = 20

logger = logging.getLogger(__name__)


class GitHubAPIError(RuntimeError):
    """Raised when the GitHub API answers with an error status."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"GitHub API error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


def enterprise_api_url(url: str) -> str:
    """Return the REST root of a GitHub Enterprise instance at *url*."""
    return url.rstrip("/") + "/api/v3/"


# --- Resources --- #

@dataclass(frozen=True)
class Repository:
    owner: str
    name: str
    full_name: str
    default_branch: str

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Repository":
        return cls(
            owner=data["owner"]["login"],
            name=data["name"],
            full_name=data["full_name"],
            default_branch=data["default_branch"],
        )


@dataclass(frozen=True)
class Branch:
    name: str
    protected: Optional[bool] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Branch":
        return cls(name=data["name"], protected=data.get("protected"))


@dataclass
class RepositoryPage:
    """One page of a repository listing.

    *next_page* is ``None`` once the service reports there is nothing after
    this page.
    """

    repositories: List[Repository]
    next_page: Optional[int]


# --- Protection request encoder --- #

@dataclass
class DismissalRestrictions:
    users: List[str] = field(default_factory=list)
    teams: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, List[str]]:
        return {"users": list(self.users), "teams": list(self.teams)}


@dataclass
class PullRequestReviewEnforcement:
    """Pull request review settings sent with a protection update.

    The request shape differs from what GitHub returns for the same setting,
    so this is encoded by hand rather than echoed back from a response.
    """

    dismiss_stale_reviews: bool
    require_code_owner_reviews: bool
    # None means "nobody is restricted", sent as an empty object.
    dismissal_restrictions: Optional[DismissalRestrictions] = None

    def to_payload(self) -> Dict[str, Any]:
        restrictions = (
            self.dismissal_restrictions.to_payload()
            if self.dismissal_restrictions is not None
            else {}
        )
        return {
            "dismissal_restrictions": restrictions,
            "dismiss_stale_reviews": self.dismiss_stale_reviews,
            "require_code_owner_reviews": self.require_code_owner_reviews,
        }


@dataclass
class ProtectionRequest:
    """Desired protection state for one branch.

    GitHub requires every top-level key to be present, so unset status checks
    and restrictions go out as ``null``.
    """

    required_pull_request_reviews: Optional[PullRequestReviewEnforcement]
    enforce_admins: bool
    required_status_checks: Optional[Dict[str, Any]] = None
    restrictions: Optional[Dict[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        reviews = self.required_pull_request_reviews
        return {
            "required_status_checks": self.required_status_checks,
            "required_pull_request_reviews": reviews.to_payload() if reviews is not None else None,
            "enforce_admins": self.enforce_admins,
            "restrictions": self.restrictions,
        }


# --- Pagination helpers --- #

def _page_from_link(link: Dict[str, str]) -> Optional[int]:
    values = parse_qs(urlparse(link.get("url", "")).query).get("page")
    if not values:
        return None
    try:
        return int(values[0])
    except ValueError:
        return None


def next_page_from_links(links: Dict[str, Dict[str, str]], page: int) -> Optional[int]:
    """Return the page after *page* according to a parsed ``Link`` header.

    Returns ``None`` when *page* is the last page or there is no ``next``
    relation at all.
    """
    last_page = _page_from_link(links.get("last", {}))
    next_page = _page_from_link(links.get("next", {}))
    if page == last_page or next_page is None:
        return None
    return next_page


# --- Client --- #

class GitHubClient:
    """Authenticated REST client bound to one API root."""

    def __init__(self, token: str, base_url: str = DEFAULT_API_URL, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Accept": DEFAULT_ACCEPT,
                "Authorization": f"bearer {token}",
                "User-Agent": USER_AGENT,
            }
        )
        self.api_calls = 0

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        """Send one request and raise :class:`GitHubAPIError` on an error status."""
        url = self.base_url + path.lstrip("/")
        self.api_calls += 1
        start = time.perf_counter()
        resp = self.session.request(method, url, params=params, json=json, headers=headers)
        duration = time.perf_counter() - start
        logger.debug("%s %s -> %d in %.3fs", method, url, resp.status_code, duration)
        if resp.status_code >= 400:
            raise GitHubAPIError(resp.status_code, _error_detail(resp))
        return resp

    def get_authenticated_user(self) -> str:
        """Return the login of the token's owner."""
        return self._request("GET", "user").json()["login"]

    def _list_repos(self, path: str, page: int, per_page: int, params: Optional[Dict[str, Any]] = None) -> RepositoryPage:
        query = {"page": page, "per_page": per_page}
        query.update(params or {})
        resp = self._request("GET", path, params=query)
        repos = [Repository.from_json(item) for item in resp.json()]
        return RepositoryPage(repos, next_page_from_links(resp.links, page))

    def list_user_repos(self, page: int, per_page: int = PER_PAGE) -> RepositoryPage:
        """List one page of the authenticated user's repositories."""
        return self._list_repos("user/repos", page, per_page, {"affiliation": "owner"})

    def list_org_repos(self, org: str, page: int, per_page: int = PER_PAGE) -> RepositoryPage:
        """List one page of *org*'s repositories."""
        return self._list_repos(f"orgs/{org}/repos", page, per_page)

    def get_branch(self, owner: str, repo: str, branch: str) -> Branch:
        return Branch.from_json(self._request("GET", f"repos/{owner}/{repo}/branches/{branch}").json())

    def update_branch_protection(self, owner: str, repo: str, branch: str, request: ProtectionRequest) -> Dict[str, Any]:
        """Replace the protection of *branch* with *request*.

        Returns the protection object GitHub answers with.
        """
        resp = self._request(
            "PUT",
            f"repos/{owner}/{repo}/branches/{branch}/protection",
            json=request.to_payload(),
            headers={"Accept": MEDIA_TYPE_PROTECTED_BRANCHES_PREVIEW},
        )
        return resp.json()


def _error_detail(resp: requests.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return resp.text
