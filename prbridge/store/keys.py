# ---------------------------------------------------------
# Tracked messages
# ---------------------------------------------------------

# Hash with fields "data" (JSON record) and "deleted_at" (set once)
TRACKED_MESSAGE_PREFIX = "prbridge:tracked:"

# Sets of tracked message ids
TRACKED_BY_PR_PREFIX = "prbridge:tracked_by_pr:"
TRACKED_BY_LOCATION_PREFIX = "prbridge:tracked_by_ts:"

# Natural-key guard for conditional creates. Value is the tracked id, or
# a short-lived "pending" marker while a bot message is being posted.
TRACKED_KEY_PREFIX = "prbridge:tracked_key:"
PENDING_CLAIM = "pending"


# ---------------------------------------------------------
# Repository registrations (multi-workspace fan-out key)
# ---------------------------------------------------------

# Key format:
#   prbridge:repo:{workspace_id}:{owner}/{repo}
REPO_PREFIX = "prbridge:repo:"

# Set of workspace ids per repository
REPO_WORKSPACES_PREFIX = "prbridge:repo_workspaces:"


# ---------------------------------------------------------
# Channel configuration, linked users, workspaces
# ---------------------------------------------------------

CHANNEL_CONFIG_PREFIX = "prbridge:channel_config:"

USER_PREFIX = "prbridge:user:"
USER_BY_GITHUB_ID_PREFIX = "prbridge:user_by_github_id:"
USER_BY_GITHUB_LOGIN_PREFIX = "prbridge:user_by_github_login:"

WORKSPACE_PREFIX = "prbridge:workspace:"


# ---------------------------------------------------------
# Per tracked message serialization of reaction writes
# ---------------------------------------------------------

REACTION_LOCK_PREFIX = "prbridge:lock:tracked:"


# ---------------------------------------------------------
# Durable job queue
# ---------------------------------------------------------

QUEUE_READY = "prbridge:queue:ready"
QUEUE_PROCESSING = "prbridge:queue:processing"
QUEUE_DELAYED = "prbridge:queue:delayed"
QUEUE_JOB_PREFIX = "prbridge:queue:job:"


def pr_key(repo_full_name: str, pr_number: int) -> str:
    return f"{repo_full_name}#{pr_number}"


def bot_message_key(workspace_id: str, channel_id: str, repo_full_name: str, pr_number: int) -> str:
    return f"{TRACKED_KEY_PREFIX}bot:{workspace_id}:{channel_id}:{pr_key(repo_full_name, pr_number)}"


def manual_message_key(
    workspace_id: str,
    channel_id: str,
    message_ts: str,
    repo_full_name: str,
    pr_number: int,
) -> str:
    return (
        f"{TRACKED_KEY_PREFIX}manual:{workspace_id}:{channel_id}:{message_ts}:"
        f"{pr_key(repo_full_name, pr_number)}"
    )


def location_key(workspace_id: str, channel_id: str, message_ts: str) -> str:
    return f"{TRACKED_BY_LOCATION_PREFIX}{workspace_id}:{channel_id}:{message_ts}"
