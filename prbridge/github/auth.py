import time
from typing import Dict, Optional, Tuple

import httpx
import jwt

from prbridge import settings
from prbridge.errors import NotFoundError, PermanentDependencyError, TransientDependencyError
from prbridge.logger import get_logger


logger = get_logger("prbridge.github.auth")

_PRIVATE_KEY: Optional[str] = None

# installation id -> (token, expiry)
_TOKENS: Dict[int, Tuple[str, float]] = {}
# repo full name -> installation id
_INSTALLATIONS: Dict[str, int] = {}


def _load_private_key() -> str:
    global _PRIVATE_KEY

    if _PRIVATE_KEY is not None:
        return _PRIVATE_KEY

    if not settings.GITHUB_PRIVATE_KEY_PATH:
        raise RuntimeError("GITHUB_PRIVATE_KEY_PATH is not set")

    try:
        with open(settings.GITHUB_PRIVATE_KEY_PATH, "r") as f:
            _PRIVATE_KEY = f.read()
            return _PRIVATE_KEY
    except OSError as exc:
        raise RuntimeError(
            f"Failed to read GitHub private key at {settings.GITHUB_PRIVATE_KEY_PATH}"
        ) from exc


def create_jwt() -> str:
    if not settings.GITHUB_APP_ID:
        raise RuntimeError("GITHUB_APP_ID is not set")

    now = int(time.time())
    payload = {
        "iat": now - 30,
        "exp": now + 9 * 60,
        "iss": int(settings.GITHUB_APP_ID),
    }

    private_key = _load_private_key()
    return jwt.encode(payload, private_key, algorithm="RS256")


def _app_headers() -> dict:
    return {
        "Authorization": f"Bearer {create_jwt()}",
        "Accept": "application/vnd.github+json",
    }


def _check(response: httpx.Response, what: str):
    status = response.status_code

    if status in (404, 410):
        raise NotFoundError(f"GitHub App has no access: {what}")
    if status == 429 or status >= 500:
        raise TransientDependencyError(f"GitHub returned {status} for {what}")
    if status >= 400:
        raise PermanentDependencyError(f"GitHub returned {status} for {what}")


async def _installation_id_for_repo(client: httpx.AsyncClient, repo_full_name: str) -> int:
    cached = _INSTALLATIONS.get(repo_full_name)
    if cached is not None:
        return cached

    resp = await client.get(
        f"{settings.GITHUB_API_URL}/repos/{repo_full_name}/installation",
        headers=_app_headers(),
    )
    _check(resp, f"installation for {repo_full_name}")

    installation_id = resp.json()["id"]
    _INSTALLATIONS[repo_full_name] = installation_id
    return installation_id


async def get_installation_token(repo_full_name: str) -> str:
    """
    Return an installation access token for the installation covering the
    repository. Cached until expiry to avoid unnecessary regeneration.
    """
    async with httpx.AsyncClient() as client:
        installation_id = await _installation_id_for_repo(client, repo_full_name)

        cached = _TOKENS.get(installation_id)
        if cached and time.time() < cached[1]:
            return cached[0]

        token_resp = await client.post(
            f"{settings.GITHUB_API_URL}/app/installations/{installation_id}/access_tokens",
            headers=_app_headers(),
        )
        _check(token_resp, f"access token for installation {installation_id}")

        token = token_resp.json()["token"]
        # GitHub tokens expire in 1 hour; subtract buffer
        _TOKENS[installation_id] = (token, time.time() + 50 * 60)

        logger.info("GitHub installation token obtained: installation_id=%s", installation_id)

        return token
