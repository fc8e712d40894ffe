import uuid
from typing import List, Optional

from prbridge import settings
from prbridge.commands.parser import extract_pr_links
from prbridge.errors import NotFoundError
from prbridge.models import (
    DeleteTrackedMessageJob,
    Job,
    JobType,
    ManualLinkJob,
    MessageSource,
    ReactionSyncJob,
    TrackedMessage,
    wrap,
)
from prbridge.slack import api as slack_api
from prbridge.slack.events import MessagePosted, ReactionAdded
from prbridge.store import store
from prbridge.workers import queue


# Plain messages and these subtypes can carry a PR link worth tracking
TRACKED_SUBTYPES = (None, "thread_broadcast", "file_share")


def _trace_id(event_id: Optional[str]) -> str:
    return event_id or uuid.uuid4().hex


# =========================================================
# Manual PR links
# =========================================================

async def handle_message_posted(event: MessagePosted, log) -> Optional[ManualLinkJob]:
    """
    Enqueue tracking for a chat message that links exactly one PR.
    """
    log = log.bind(workspace_id=event.team_id, channel=event.channel_id, ts=event.ts)

    if event.bot_id or event.subtype == "bot_message":
        return None

    if event.subtype not in TRACKED_SUBTYPES:
        return None

    if not event.text.strip():
        return None

    links = extract_pr_links(event.text)
    if not links:
        return None

    if len(links) > 1:
        log.info("Message links %s different PRs, not tracking", len(links))
        return None

    if not await store.is_manual_tracking_enabled(event.team_id, event.channel_id):
        log.info("Manual tracking disabled for channel")
        return None

    link = links[0]
    job = ManualLinkJob(
        id=uuid.uuid4().hex,
        pr_number=link.pr_number,
        repo_full_name=link.repo_full_name,
        workspace_id=event.team_id,
        channel_id=event.channel_id,
        message_ts=event.ts,
        trace_id=_trace_id(event.event_id),
    )
    await queue.enqueue(wrap(JobType.MANUAL_PR_LINK, job))

    log.info("Manual PR link queued: %s#%s", link.repo_full_name, link.pr_number)
    return job


async def process_manual_link_job(job: Job, log) -> TrackedMessage:
    request = ManualLinkJob.model_validate(job.payload)
    log = log.bind(
        repo=request.repo_full_name,
        pr_number=request.pr_number,
        workspace_id=request.workspace_id,
        channel=request.channel_id,
    )

    registration = await store.get_repo_registration(request.repo_full_name, request.workspace_id)
    if registration is None or not registration.enabled:
        raise NotFoundError(
            f"{request.repo_full_name} is not registered in workspace {request.workspace_id}"
        )

    message, created = await store.create_manual_message_if_absent(TrackedMessage(
        pr_number=request.pr_number,
        repo_full_name=request.repo_full_name,
        workspace_id=request.workspace_id,
        channel_id=request.channel_id,
        message_ts=request.message_ts,
        source=MessageSource.MANUAL,
    ))

    if created:
        log.info("Tracking manual PR link: tracked_message_id=%s", message.id)
    else:
        log.info("Manual PR link already tracked: tracked_message_id=%s", message.id)

    # Backfill the current PR state onto the message
    await queue.enqueue(wrap(JobType.REACTION_SYNC, ReactionSyncJob(
        id=uuid.uuid4().hex,
        pr_number=request.pr_number,
        repo_full_name=request.repo_full_name,
        trace_id=request.trace_id,
    )))

    return message


# =========================================================
# Deletion by the PR author
# =========================================================

async def handle_reaction_added(event: ReactionAdded, log) -> List[DeleteTrackedMessageJob]:
    """
    Queue deletion of bot messages the PR author reacted to with the
    delete emoji. Reactions from anyone else are ignored.
    """
    if event.reaction != settings.EMOJI_DELETE:
        return []

    if not event.channel_id or not event.item_ts:
        return []

    log = log.bind(
        workspace_id=event.team_id,
        channel=event.channel_id,
        ts=event.item_ts,
        slack_user=event.user_id,
    )

    messages = [
        m for m in await store.get_tracked_messages_at(event.team_id, event.channel_id, event.item_ts)
        if m.source is MessageSource.BOT and not m.deleted_by_user
    ]
    if not messages:
        return []

    user = await store.get_user_by_slack_id(event.team_id, event.user_id)
    if user is None or not user.verified:
        log.info("Delete reaction from user without a verified GitHub link, ignoring")
        return []

    jobs = []
    for message in messages:
        if not user.matches_github_identity(message.author_github_login, message.author_github_id):
            log.info(
                "Delete reaction from someone other than the PR author, ignoring: tracked_message_id=%s",
                message.id,
            )
            continue

        job = DeleteTrackedMessageJob(
            id=uuid.uuid4().hex,
            tracked_message_id=message.id,
            workspace_id=message.workspace_id,
            channel_id=message.channel_id,
            message_ts=message.message_ts,
            trace_id=_trace_id(event.event_id),
        )
        await queue.enqueue(wrap(JobType.DELETE_TRACKED_MESSAGE, job))
        jobs.append(job)

    return jobs


async def process_delete_job(job: Job, log):
    request = DeleteTrackedMessageJob.model_validate(job.payload)
    log = log.bind(
        tracked_message_id=request.tracked_message_id,
        workspace_id=request.workspace_id,
        channel=request.channel_id,
        ts=request.message_ts,
    )

    message = await store.get_tracked_message(request.tracked_message_id)
    if message is None:
        raise NotFoundError(f"Tracked message {request.tracked_message_id} does not exist")

    if message.deleted_by_user:
        log.info("Tracked message already deleted")
        return

    deleted = await slack_api.delete_message(
        message.workspace_id,
        message.channel_id,
        message.message_ts,
    )
    if not deleted:
        log.info("Slack message was already gone")

    await store.mark_tracked_message_deleted(message.id)
    log.info("Tracked message deleted by PR author")
