import uuid
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

import redis
from redis.exceptions import LockNotOwnedError

from prbridge import settings
from prbridge.errors import ReactionLockUnavailable
from prbridge.logger import get_logger
from prbridge.models import (
    ChannelConfig,
    LinkedUser,
    MessageSource,
    RepoRegistration,
    TrackedMessage,
    Workspace,
    utcnow,
)
from prbridge.store.keys import (
    CHANNEL_CONFIG_PREFIX,
    PENDING_CLAIM,
    REACTION_LOCK_PREFIX,
    REPO_PREFIX,
    REPO_WORKSPACES_PREFIX,
    TRACKED_BY_PR_PREFIX,
    TRACKED_MESSAGE_PREFIX,
    USER_BY_GITHUB_ID_PREFIX,
    USER_BY_GITHUB_LOGIN_PREFIX,
    USER_PREFIX,
    WORKSPACE_PREFIX,
    bot_message_key,
    location_key,
    manual_message_key,
    pr_key,
)
from prbridge.store.redis_client import get_redis, redis_op


logger = get_logger("prbridge.store")


# =========================================================
# Tracked messages
# =========================================================

def _tracked_key(message_id: str) -> str:
    return f"{TRACKED_MESSAGE_PREFIX}{message_id}"


def _decode_tracked(message_id: str, data: dict) -> Optional[TrackedMessage]:
    raw = data.get("data")
    if not raw:
        return None

    message = TrackedMessage.model_validate_json(raw)
    message.id = message_id
    message.deleted_by_user = bool(data.get("deleted_at"))
    return message


async def _write_tracked(message: TrackedMessage) -> None:
    r = get_redis()

    async with r.pipeline(transaction=True) as pipe:
        pipe.hset(
            _tracked_key(message.id),
            "data",
            message.model_dump_json(exclude={"deleted_by_user"}),
        )
        pipe.sadd(
            f"{TRACKED_BY_PR_PREFIX}{pr_key(message.repo_full_name, message.pr_number)}",
            message.id,
        )
        pipe.sadd(
            location_key(message.workspace_id, message.channel_id, message.message_ts),
            message.id,
        )
        await pipe.execute()


@redis_op("get tracked message")
async def get_tracked_message(message_id: str) -> Optional[TrackedMessage]:
    r = get_redis()
    data = await r.hgetall(_tracked_key(message_id))
    if not data:
        return None
    return _decode_tracked(message_id, data)


async def _load_tracked(ids) -> List[TrackedMessage]:
    messages = []
    for message_id in sorted(ids):
        message = await get_tracked_message(message_id)
        if message is None:
            logger.warning("Tracked message index points at missing record: %s", message_id)
            continue
        messages.append(message)
    return messages


@redis_op("list tracked messages for PR")
async def get_tracked_messages_for_pr(
    repo_full_name: str,
    pr_number: int,
    workspace_id: Optional[str] = None,
    include_deleted: bool = False,
) -> List[TrackedMessage]:
    r = get_redis()
    ids = await r.smembers(f"{TRACKED_BY_PR_PREFIX}{pr_key(repo_full_name, pr_number)}")

    messages = await _load_tracked(ids)
    return [
        m for m in messages
        if (workspace_id is None or m.workspace_id == workspace_id)
        and (include_deleted or not m.deleted_by_user)
    ]


@redis_op("list tracked messages at location")
async def get_tracked_messages_at(
    workspace_id: str,
    channel_id: str,
    message_ts: str,
) -> List[TrackedMessage]:
    r = get_redis()
    ids = await r.smembers(location_key(workspace_id, channel_id, message_ts))
    return await _load_tracked(ids)


@redis_op("claim bot message slot")
async def claim_bot_message(
    workspace_id: str,
    channel_id: str,
    repo_full_name: str,
    pr_number: int,
    ttl_seconds: Optional[int] = None,
) -> bool:
    """
    Atomically reserve the (workspace, channel, repo, PR) slot for a bot post.

    Returns False when a bot message already exists for the slot or another
    delivery is posting it right now.
    """
    r = get_redis()
    ttl = ttl_seconds or settings.BOT_MESSAGE_CLAIM_TTL_SECONDS
    key = bot_message_key(workspace_id, channel_id, repo_full_name, pr_number)
    return bool(await r.set(key, PENDING_CLAIM, nx=True, ex=ttl))


@redis_op("release bot message slot")
async def release_bot_message_claim(
    workspace_id: str,
    channel_id: str,
    repo_full_name: str,
    pr_number: int,
) -> None:
    r = get_redis()
    key = bot_message_key(workspace_id, channel_id, repo_full_name, pr_number)

    async with r.pipeline(transaction=True) as pipe:
        await pipe.watch(key)
        if await pipe.get(key) != PENDING_CLAIM:
            await pipe.unwatch()
            return
        pipe.multi()
        pipe.delete(key)
        try:
            await pipe.execute()
        except redis.WatchError:
            # Slot was completed or re-claimed meanwhile; leave it alone
            pass


@redis_op("create bot tracked message")
async def complete_bot_message(message: TrackedMessage) -> TrackedMessage:
    """
    Persist a posted bot message and turn its pending claim into a permanent
    record of the slot.
    """
    r = get_redis()
    message.id = message.id or uuid.uuid4().hex
    message.source = MessageSource.BOT

    await _write_tracked(message)
    await r.set(
        bot_message_key(
            message.workspace_id,
            message.channel_id,
            message.repo_full_name,
            message.pr_number,
        ),
        message.id,
    )
    return message


@redis_op("create manual tracked message")
async def create_manual_message_if_absent(
    message: TrackedMessage,
) -> Tuple[TrackedMessage, bool]:
    """
    Conditionally create a manual tracked message keyed by its location and PR.

    Returns (message, created). Redelivered jobs get the existing record back.
    """
    r = get_redis()
    key = manual_message_key(
        message.workspace_id,
        message.channel_id,
        message.message_ts,
        message.repo_full_name,
        message.pr_number,
    )

    message.id = message.id or uuid.uuid4().hex
    message.source = MessageSource.MANUAL

    if await r.set(key, message.id, nx=True):
        await _write_tracked(message)
        return message, True

    existing_id = await r.get(key)
    existing = await get_tracked_message(existing_id) if existing_id else None
    if existing is not None:
        return existing, False

    # Guard written but record missing (crash between the two writes)
    message.id = existing_id or message.id
    await _write_tracked(message)
    return message, True


@redis_op("mark tracked message deleted")
async def mark_tracked_message_deleted(message_id: str) -> bool:
    """
    Set the deleted-by-user flag once. Returns False if it was already set.
    """
    r = get_redis()
    return bool(await r.hsetnx(_tracked_key(message_id), "deleted_at", utcnow().isoformat()))


@asynccontextmanager
async def reaction_lock(message_id: str):
    """
    Hold the lock serializing reaction writes for one tracked message.

    Waiting is bounded by REACTION_LOCK_TIMEOUT_SECONDS. The lease lasts
    REACTION_LOCK_TTL_SECONDS and holders renew it with refresh_reaction_lock
    before every write. Not getting or not keeping the lock raises
    ReactionLockUnavailable.
    """
    r = get_redis()
    lock = r.lock(
        f"{REACTION_LOCK_PREFIX}{message_id}",
        timeout=settings.REACTION_LOCK_TTL_SECONDS,
        blocking_timeout=settings.REACTION_LOCK_TIMEOUT_SECONDS,
    )

    try:
        acquired = await lock.acquire()
    except redis.RedisError as exc:
        raise ReactionLockUnavailable(f"Could not take reaction lock for {message_id}") from exc

    if not acquired:
        raise ReactionLockUnavailable(f"Reaction lock for {message_id} is busy")

    try:
        yield lock
    finally:
        try:
            await lock.release()
        except LockNotOwnedError:
            logger.warning("Reaction lock for %s expired before release", message_id)


async def refresh_reaction_lock(lock) -> None:
    """
    Reset the lease of a held reaction lock.
    """
    try:
        await lock.reacquire()
    except redis.RedisError as exc:
        raise ReactionLockUnavailable(f"Lost reaction lock {lock.name}") from exc


# =========================================================
# Repository registrations
# =========================================================

def _repo_key(workspace_id: str, repo_full_name: str) -> str:
    return f"{REPO_PREFIX}{workspace_id}:{repo_full_name}"


@redis_op("get repo registration")
async def get_repo_registration(repo_full_name: str, workspace_id: str) -> Optional[RepoRegistration]:
    r = get_redis()
    raw = await r.get(_repo_key(workspace_id, repo_full_name))
    return RepoRegistration.model_validate_json(raw) if raw else None


@redis_op("list repo registrations")
async def get_repo_registrations(
    repo_full_name: str,
    enabled_only: bool = True,
) -> List[RepoRegistration]:
    r = get_redis()
    workspace_ids = await r.smembers(f"{REPO_WORKSPACES_PREFIX}{repo_full_name}")

    registrations = []
    for workspace_id in sorted(workspace_ids):
        registration = await get_repo_registration(repo_full_name, workspace_id)
        if registration is None:
            continue
        if enabled_only and not registration.enabled:
            continue
        registrations.append(registration)

    return registrations


@redis_op("register repo")
async def register_repo_if_absent(registration: RepoRegistration) -> bool:
    """
    Create the registration unless one exists. Returns True if created.
    """
    r = get_redis()
    created = await r.set(
        _repo_key(registration.workspace_id, registration.repo_full_name),
        registration.model_dump_json(),
        nx=True,
    )
    if created:
        await r.sadd(
            f"{REPO_WORKSPACES_PREFIX}{registration.repo_full_name}",
            registration.workspace_id,
        )
    return bool(created)


@redis_op("upsert repo registration")
async def upsert_repo_registration(repo_full_name: str, workspace_id: str, **fields) -> RepoRegistration:
    """
    Create or update a registration, merging the given fields into any
    existing record.
    """
    r = get_redis()
    key = _repo_key(workspace_id, repo_full_name)

    async with r.pipeline(transaction=True) as pipe:
        while True:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw:
                    registration = RepoRegistration.model_validate_json(raw)
                    registration = registration.model_copy(update=fields)
                else:
                    registration = RepoRegistration(
                        repo_full_name=repo_full_name,
                        workspace_id=workspace_id,
                        **fields,
                    )

                pipe.multi()
                pipe.set(key, registration.model_dump_json())
                pipe.sadd(f"{REPO_WORKSPACES_PREFIX}{repo_full_name}", workspace_id)
                await pipe.execute()
                return registration
            except redis.WatchError:
                continue


# =========================================================
# Channel configuration
# =========================================================

def _channel_key(workspace_id: str, channel_id: str) -> str:
    return f"{CHANNEL_CONFIG_PREFIX}{workspace_id}:{channel_id}"


@redis_op("get channel config")
async def get_channel_config(workspace_id: str, channel_id: str) -> Optional[ChannelConfig]:
    r = get_redis()
    raw = await r.get(_channel_key(workspace_id, channel_id))
    return ChannelConfig.model_validate_json(raw) if raw else None


async def is_manual_tracking_enabled(workspace_id: str, channel_id: str) -> bool:
    config = await get_channel_config(workspace_id, channel_id)
    if config is None:
        return True
    return config.manual_tracking_enabled


@redis_op("save channel config")
async def save_channel_config(config: ChannelConfig) -> None:
    r = get_redis()
    config.updated_at = utcnow()
    await r.set(_channel_key(config.workspace_id, config.channel_id), config.model_dump_json())


# =========================================================
# Linked users
# =========================================================

def _user_key(workspace_id: str, slack_user_id: str) -> str:
    return f"{USER_PREFIX}{workspace_id}:{slack_user_id}"


@redis_op("get user by Slack id")
async def get_user_by_slack_id(workspace_id: str, slack_user_id: str) -> Optional[LinkedUser]:
    r = get_redis()
    raw = await r.get(_user_key(workspace_id, slack_user_id))
    return LinkedUser.model_validate_json(raw) if raw else None


@redis_op("get user by GitHub identity")
async def get_user_by_github(
    github_user_id: Optional[int] = None,
    github_login: Optional[str] = None,
) -> Optional[LinkedUser]:
    r = get_redis()

    ref = None
    if github_user_id is not None:
        ref = await r.get(f"{USER_BY_GITHUB_ID_PREFIX}{github_user_id}")
    if ref is None and github_login:
        ref = await r.get(f"{USER_BY_GITHUB_LOGIN_PREFIX}{github_login.lower()}")
    if ref is None:
        return None

    raw = await r.get(f"{USER_PREFIX}{ref}")
    return LinkedUser.model_validate_json(raw) if raw else None


@redis_op("save user")
async def save_user(user: LinkedUser) -> None:
    r = get_redis()
    ref = f"{user.workspace_id}:{user.slack_user_id}"

    async with r.pipeline(transaction=True) as pipe:
        pipe.set(_user_key(user.workspace_id, user.slack_user_id), user.model_dump_json())
        if user.github_user_id is not None:
            pipe.set(f"{USER_BY_GITHUB_ID_PREFIX}{user.github_user_id}", ref)
        if user.github_login:
            pipe.set(f"{USER_BY_GITHUB_LOGIN_PREFIX}{user.github_login.lower()}", ref)
        await pipe.execute()


# =========================================================
# Workspaces
# =========================================================

@redis_op("get workspace")
async def get_workspace(team_id: str) -> Optional[Workspace]:
    r = get_redis()
    raw = await r.get(f"{WORKSPACE_PREFIX}{team_id}")
    return Workspace.model_validate_json(raw) if raw else None


async def get_workspace_token(team_id: str) -> Optional[str]:
    workspace = await get_workspace(team_id)
    return workspace.access_token if workspace else None


@redis_op("save workspace")
async def save_workspace(workspace: Workspace) -> None:
    r = get_redis()
    await r.set(f"{WORKSPACE_PREFIX}{workspace.team_id}", workspace.model_dump_json())
