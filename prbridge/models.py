"""
Persisted records and job envelopes.

Records are stored in Redis as JSON; jobs travel through the queue as JSON.
Reaction state is deliberately absent: it is re-derived from GitHub on every
sync.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageSource(str, Enum):
    BOT = "bot"
    MANUAL = "manual"


class JobType(str, Enum):
    GITHUB_WEBHOOK = "github_webhook"
    MANUAL_PR_LINK = "manual_pr_link"
    REACTION_SYNC = "reaction_sync"
    DELETE_TRACKED_MESSAGE = "delete_tracked_message"


# =========================================================
# Records
# =========================================================

class TrackedMessage(BaseModel):
    id: str = ""
    pr_number: int = Field(gt=0)
    repo_full_name: str = Field(min_length=1)
    workspace_id: str = Field(min_length=1)
    channel_id: str = Field(min_length=1)
    message_ts: str = Field(min_length=1)
    source: MessageSource
    # Recorded for bot messages; authorizes deletion by the PR author
    author_github_login: Optional[str] = None
    author_github_id: Optional[int] = None
    user_to_cc: Optional[str] = None
    deleted_by_user: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class RepoRegistration(BaseModel):
    repo_full_name: str = Field(min_length=1)
    workspace_id: str = Field(min_length=1)
    enabled: bool = True
    default_channel: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ChannelConfig(BaseModel):
    workspace_id: str
    channel_id: str
    manual_tracking_enabled: bool = True
    configured_by: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class LinkedUser(BaseModel):
    """
    A Slack user linked to a GitHub identity. Written by the OAuth flow.
    """

    slack_user_id: str
    workspace_id: str
    github_login: Optional[str] = None
    github_user_id: Optional[int] = None
    verified: bool = False
    default_channel: Optional[str] = None
    notifications_enabled: bool = True
    tagging_enabled: bool = True

    def matches_github_identity(self, login: Optional[str], user_id: Optional[int]) -> bool:
        if user_id is not None and self.github_user_id is not None:
            return self.github_user_id == user_id
        if login and self.github_login:
            return self.github_login.lower() == login.lower()
        return False


class Workspace(BaseModel):
    team_id: str
    access_token: str
    bot_user_id: Optional[str] = None
    team_name: Optional[str] = None


# =========================================================
# Jobs
# =========================================================

class Job(BaseModel):
    id: str = Field(min_length=1)
    type: JobType
    trace_id: str = Field(min_length=1)
    payload: Dict[str, Any]


class WebhookJob(BaseModel):
    id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    # Carried for log correlation; deliveries are not deduplicated by it
    delivery_id: str = Field(min_length=1)
    trace_id: str = Field(min_length=1)
    payload: str = Field(min_length=1)
    received_at: datetime = Field(default_factory=utcnow)


class ManualLinkJob(BaseModel):
    id: str = Field(min_length=1)
    pr_number: int = Field(gt=0)
    repo_full_name: str = Field(min_length=1)
    workspace_id: str = Field(min_length=1)
    channel_id: str = Field(min_length=1)
    message_ts: str = Field(min_length=1)
    trace_id: str = Field(min_length=1)


class ReactionSyncJob(BaseModel):
    id: str = Field(min_length=1)
    pr_number: int = Field(gt=0)
    repo_full_name: str = Field(min_length=1)
    trace_id: str = Field(min_length=1)


class DeleteTrackedMessageJob(BaseModel):
    id: str = Field(min_length=1)
    tracked_message_id: str = Field(min_length=1)
    workspace_id: str = Field(min_length=1)
    channel_id: str = Field(min_length=1)
    message_ts: str = Field(min_length=1)
    trace_id: str = Field(min_length=1)


def wrap(job_type: JobType, inner: BaseModel) -> Job:
    """
    Build the queue envelope for a typed job payload.
    """
    return Job(
        id=inner.id,
        type=job_type,
        trace_id=inner.trace_id,
        payload=inner.model_dump(mode="json"),
    )
