import re
from typing import Any, Dict, Optional

import httpx

from prbridge import settings
from prbridge.errors import (
    ErrorKind,
    NotFoundError,
    PermanentDependencyError,
    TransientDependencyError,
)
from prbridge.logger import get_logger
from prbridge.store import store


logger = get_logger("prbridge.slack.api")

CHANNEL_ID_RE = re.compile(r"^[CG][A-Z0-9]{6,}$")

TRANSIENT_ERRORS = {
    "ratelimited",
    "internal_error",
    "service_unavailable",
    "fatal_error",
    "request_timeout",
}

# Expected outcomes of idempotent reaction writes
ALREADY_REACTED = "already_reacted"
NO_REACTION = "no_reaction"
GONE_ERRORS = {"message_not_found", "channel_not_found"}


class SlackMethodError(Exception):
    """
    A Slack Web API call that returned ok=false or a failing HTTP status.
    """

    def __init__(self, code: str, method: str, retry_after: Optional[float] = None):
        super().__init__(f"Slack API {method} failed: {code}")
        self.code = code
        self.method = method
        self.retry_after = retry_after

    @property
    def kind(self) -> ErrorKind:
        if self.code in TRANSIENT_ERRORS:
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT

    def as_bridge_error(self):
        if self.kind is ErrorKind.TRANSIENT:
            return TransientDependencyError(str(self), retry_after=self.retry_after)
        return PermanentDependencyError(str(self))


def check_response(method: str, response: httpx.Response) -> Dict[str, Any]:
    """
    Turn a Slack HTTP response into its JSON body or raise SlackMethodError.
    """
    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        raise SlackMethodError(
            "ratelimited",
            method,
            retry_after=float(retry_after) if retry_after else None,
        )

    if response.status_code >= 500:
        raise SlackMethodError("service_unavailable", method)

    if response.status_code >= 400:
        raise SlackMethodError(f"http_{response.status_code}", method)

    try:
        data = response.json()
    except ValueError:
        logger.exception("Failed to decode JSON response from %s", method)
        raise SlackMethodError("invalid_response", method)

    if not data.get("ok"):
        raise SlackMethodError(data.get("error") or "unknown_error", method)

    return data


async def _call(team_id: str, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    token = await store.get_workspace_token(team_id)
    if not token:
        raise PermanentDependencyError(f"Workspace not installed: {team_id}")

    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json; charset=utf-8",
    }

    async with httpx.AsyncClient(timeout=settings.SLACK_TIMEOUT_SECONDS) as client:
        response = await client.post(
            f"{settings.SLACK_API_URL}/{method}",
            headers=headers,
            json=payload,
        )

    return check_response(method, response)


def _raise(exc: SlackMethodError, **context):
    logger.error(
        "Slack API error %s on %s %s",
        exc.code,
        exc.method,
        " ".join(f"{k}={v}" for k, v in context.items()),
    )
    raise exc.as_bridge_error() from exc


# =========================================================
# Public helpers
# =========================================================

async def post_message(team_id: str, channel: str, text: str) -> str:
    """
    Post a message and return its timestamp.
    """
    try:
        data = await _call(team_id, "chat.postMessage", {
            "channel": channel,
            "text": text,
            "unfurl_links": False,
            "unfurl_media": False,
        })
    except SlackMethodError as exc:
        _raise(exc, team_id=team_id, channel=channel)

    return data["ts"]


async def add_reaction(team_id: str, channel: str, ts: str, emoji: str) -> bool:
    """
    Add a reaction. Returns False when it was already present.
    """
    try:
        await _call(team_id, "reactions.add", {
            "channel": channel,
            "timestamp": ts,
            "name": emoji,
        })
    except SlackMethodError as exc:
        if exc.code == ALREADY_REACTED:
            return False
        _raise(exc, team_id=team_id, channel=channel, ts=ts, emoji=emoji)

    return True


async def remove_reaction(team_id: str, channel: str, ts: str, emoji: str) -> bool:
    """
    Remove a reaction. Returns False when there was nothing to remove.
    """
    try:
        await _call(team_id, "reactions.remove", {
            "channel": channel,
            "timestamp": ts,
            "name": emoji,
        })
    except SlackMethodError as exc:
        if exc.code == NO_REACTION or exc.code in GONE_ERRORS:
            return False
        _raise(exc, team_id=team_id, channel=channel, ts=ts, emoji=emoji)

    return True


async def delete_message(team_id: str, channel: str, ts: str) -> bool:
    """
    Delete a message. Returns False when it no longer exists.
    """
    try:
        await _call(team_id, "chat.delete", {"channel": channel, "ts": ts})
    except SlackMethodError as exc:
        if exc.code in GONE_ERRORS:
            return False
        _raise(exc, team_id=team_id, channel=channel, ts=ts)

    logger.info("Deleted Slack message: team_id=%s channel=%s ts=%s", team_id, channel, ts)
    return True


async def resolve_channel_id(team_id: str, channel: str) -> str:
    """
    Resolve a channel name ("eng", "#eng") or id to a channel id.

    Raises NotFoundError when no public channel with that name exists.
    """
    name = channel.lstrip("#")
    if CHANNEL_ID_RE.match(name):
        return name

    cursor = None
    while True:
        payload = {"exclude_archived": True, "limit": 200, "types": "public_channel"}
        if cursor:
            payload["cursor"] = cursor

        try:
            data = await _call(team_id, "conversations.list", payload)
        except SlackMethodError as exc:
            _raise(exc, team_id=team_id, channel=channel)

        for conv in data.get("channels", []):
            if conv.get("name") == name:
                return conv["id"]

        cursor = (data.get("response_metadata") or {}).get("next_cursor")
        if not cursor:
            break

    raise NotFoundError(settings.CHANNEL_NOT_FOUND_MESSAGE.format(channel=name))
