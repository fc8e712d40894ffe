from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from prbridge import settings
from prbridge.errors import (
    NotFoundError,
    PermanentDependencyError,
    TransientDependencyError,
)
from prbridge.github.auth import get_installation_token
from prbridge.logger import get_logger


logger = get_logger("prbridge.github.api")

REVIEW_STATES = ("approved", "changes_requested", "commented")
MAX_REVIEWS_PER_PAGE = 100


@dataclass
class PullRequestState:
    repo_full_name: str
    number: int
    state: str
    merged: bool
    review_state: Optional[str]

    @property
    def is_closed(self) -> bool:
        return self.state == "closed"


async def _headers(repo_full_name: str) -> dict[str, str]:
    token = await get_installation_token(repo_full_name)
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
    }


async def github_get(repo_full_name: str, endpoint: str) -> Any:
    """
    GET a GitHub API endpoint using the repository's installation token.
    """
    headers = await _headers(repo_full_name)
    url = f"{settings.GITHUB_API_URL}{endpoint}"

    async with httpx.AsyncClient(follow_redirects=True) as client:
        response = await client.get(url, headers=headers)

    status = response.status_code

    if status in (404, 410):
        logger.warning("GitHub resource unavailable (%s): %s", status, endpoint)
        raise NotFoundError(f"Repository or resource not found: {endpoint}")

    if status == 429 or (
        status == 403 and response.headers.get("x-ratelimit-remaining") == "0"
    ):
        logger.warning("GitHub rate limit hit (%s): %s", status, endpoint)
        retry_after = response.headers.get("retry-after")
        raise TransientDependencyError(
            f"GitHub rate limited: {endpoint}",
            retry_after=float(retry_after) if retry_after else None,
        )

    if status in (401, 403):
        logger.warning("Access denied (%s): %s", status, endpoint)
        raise PermanentDependencyError(f"Access denied or app uninstalled: {endpoint}")

    if status >= 500:
        logger.error("GitHub server error %s for %s", status, endpoint)
        raise TransientDependencyError(f"GitHub returned {status}: {endpoint}")

    if status >= 400:
        logger.error("GitHub API error %s for %s", status, endpoint)
        raise PermanentDependencyError(f"GitHub returned {status}: {endpoint}")

    try:
        return response.json()
    except ValueError as exc:
        logger.exception("Failed to decode JSON response from %s", endpoint)
        raise TransientDependencyError(f"Invalid JSON from GitHub: {endpoint}") from exc


def determine_review_state(reviews: List[Dict[str, Any]]) -> Optional[str]:
    """
    Overall review outcome from a PR's reviews.

    Only each reviewer's latest meaningful review counts; priority is
    changes_requested > approved > commented.
    """
    latest: Dict[str, str] = {}
    for review in reviews:
        login = (review.get("user") or {}).get("login")
        state = (review.get("state") or "").lower()
        if not login or state not in REVIEW_STATES:
            continue
        latest[login] = state

    states = set(latest.values())
    for candidate in ("changes_requested", "approved", "commented"):
        if candidate in states:
            return candidate
    return None


async def get_pull_request_with_reviews(repo_full_name: str, pr_number: int) -> PullRequestState:
    pr = await github_get(repo_full_name, f"/repos/{repo_full_name}/pulls/{pr_number}")

    state = pr.get("state", "open")
    merged = bool(pr.get("merged"))

    reviews = await github_get(
        repo_full_name,
        f"/repos/{repo_full_name}/pulls/{pr_number}/reviews?per_page={MAX_REVIEWS_PER_PAGE}",
    )

    return PullRequestState(
        repo_full_name=repo_full_name,
        number=pr_number,
        state=state,
        merged=merged,
        review_state=determine_review_state(reviews or []),
    )


async def get_review_state(repo_full_name: str, pr_number: int) -> Optional[str]:
    reviews = await github_get(
        repo_full_name,
        f"/repos/{repo_full_name}/pulls/{pr_number}/reviews?per_page={MAX_REVIEWS_PER_PAGE}",
    )
    return determine_review_state(reviews or [])
