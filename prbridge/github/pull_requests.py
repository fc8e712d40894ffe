from typing import Any, Dict, Optional

from prbridge.commands.parser import PRDirectives, parse_pr_directives
from prbridge.errors import (
    ErrorKind,
    NotFoundError,
    TransientDependencyError,
    ValidationError,
    classify,
)
from prbridge.github import api as github_api
from prbridge.models import LinkedUser, MessageSource, RepoRegistration, TrackedMessage
from prbridge.reactions.sync import (
    PRState,
    collect_tracked_messages,
    sync_across_workspaces,
)
from prbridge.slack import api as slack_api
from prbridge.slack.formatter import format_pr_message
from prbridge.store import store


def _pr_identity(payload: Dict[str, Any]):
    pr = payload.get("pull_request") or {}
    repo_full_name = (payload.get("repository") or {}).get("full_name")
    pr_number = pr.get("number")

    if not repo_full_name or not pr_number:
        raise ValidationError("pull_request payload without repository or number")

    return pr, repo_full_name, int(pr_number)


async def _target_channel(
    registration: RepoRegistration,
    directives: PRDirectives,
    author: Optional[LinkedUser],
) -> Optional[str]:
    """
    Channel priority: description directive, then the author's own default
    (only in the author's workspace), then the registration default.
    """
    workspace_id = registration.workspace_id

    if directives.channel:
        return await slack_api.resolve_channel_id(workspace_id, directives.channel)

    if (
        author is not None
        and author.verified
        and author.workspace_id == workspace_id
        and author.default_channel
    ):
        return await slack_api.resolve_channel_id(workspace_id, author.default_channel)

    if registration.default_channel:
        return await slack_api.resolve_channel_id(workspace_id, registration.default_channel)

    return None


async def _notify_workspace(
    registration: RepoRegistration,
    pr: Dict[str, Any],
    repo_full_name: str,
    pr_number: int,
    directives: PRDirectives,
    author: Optional[LinkedUser],
    log,
) -> Optional[TrackedMessage]:
    workspace_id = registration.workspace_id

    channel_id = await _target_channel(registration, directives, author)
    if not channel_id:
        log.info("No target channel in workspace, skipping")
        return None

    log = log.bind(channel=channel_id)

    if not await store.claim_bot_message(workspace_id, channel_id, repo_full_name, pr_number):
        log.info("Bot message already posted for this PR, skipping")
        return None

    user = pr.get("user") or {}
    tag_author = (
        author is not None
        and author.verified
        and author.tagging_enabled
        and author.workspace_id == workspace_id
    )

    text = format_pr_message(
        title=pr.get("title") or f"PR #{pr_number}",
        url=pr.get("html_url") or f"https://github.com/{repo_full_name}/pull/{pr_number}",
        author_login=user.get("login") or "unknown",
        lines_changed=int(pr.get("additions") or 0) + int(pr.get("deletions") or 0),
        author_slack_user_id=author.slack_user_id if tag_author else None,
        user_to_cc=directives.user_to_cc,
        custom_emoji=directives.custom_emoji,
    )

    try:
        ts = await slack_api.post_message(workspace_id, channel_id, text)
    except Exception:
        await store.release_bot_message_claim(workspace_id, channel_id, repo_full_name, pr_number)
        raise

    message = await store.complete_bot_message(TrackedMessage(
        pr_number=pr_number,
        repo_full_name=repo_full_name,
        workspace_id=workspace_id,
        channel_id=channel_id,
        message_ts=ts,
        source=MessageSource.BOT,
        author_github_login=user.get("login"),
        author_github_id=user.get("id"),
        user_to_cc=directives.user_to_cc,
    ))

    log.info("Posted PR notification: ts=%s tracked_message_id=%s", ts, message.id)
    return message


async def handle_opened(payload: Dict[str, Any], log):
    """
    Post a notification for a newly opened (or ready for review) PR in
    every workspace that registered the repository.
    """
    pr, repo_full_name, pr_number = _pr_identity(payload)
    log = log.bind(repo=repo_full_name, pr_number=pr_number)

    if pr.get("draft"):
        log.info("Draft PR, no notification")
        return

    directives = parse_pr_directives(pr.get("body"))
    if directives.skip:
        log.info("Notification skipped by PR description directive")
        return

    user = pr.get("user") or {}
    author = await store.get_user_by_github(
        github_user_id=user.get("id"),
        github_login=user.get("login"),
    )

    if author is not None and not author.notifications_enabled and not directives.channel:
        log.info("Author disabled notifications, skipping")
        return

    registrations = await store.get_repo_registrations(repo_full_name)

    if not registrations:
        if author is None or not author.verified or not author.notifications_enabled:
            log.info("Repository not registered in any workspace, skipping")
            return

        created = await store.register_repo_if_absent(RepoRegistration(
            repo_full_name=repo_full_name,
            workspace_id=author.workspace_id,
        ))
        log.info(
            "Auto-registered repository in author's workspace: workspace_id=%s created=%s",
            author.workspace_id,
            created,
        )
        registrations = await store.get_repo_registrations(repo_full_name)

    transient_failures = 0
    retry_after = None

    for registration in registrations:
        ws_log = log.bind(workspace_id=registration.workspace_id)
        try:
            await _notify_workspace(
                registration, pr, repo_full_name, pr_number, directives, author, ws_log,
            )
        except NotFoundError as exc:
            ws_log.warning("Notification not posted: %s", exc)
        except Exception as exc:
            ws_log.exception("Failed to notify workspace")
            if classify(exc) is ErrorKind.TRANSIENT:
                transient_failures += 1
                if getattr(exc, "retry_after", None):
                    retry_after = max(retry_after or 0, exc.retry_after)

    if transient_failures:
        raise TransientDependencyError(
            f"{transient_failures} workspace notification(s) failed transiently",
            retry_after=retry_after,
        )


async def handle_closed(payload: Dict[str, Any], log):
    pr, repo_full_name, pr_number = _pr_identity(payload)
    log = log.bind(repo=repo_full_name, pr_number=pr_number)

    state = PRState.MERGED if pr.get("merged") else PRState.CLOSED

    messages = await collect_tracked_messages(repo_full_name, pr_number)
    if not messages:
        log.info("No tracked messages for closed PR")
        return

    review_state = None
    try:
        outcome = await github_api.get_review_state(repo_full_name, pr_number)
        review_state = PRState(outcome) if outcome else PRState.NONE
    except Exception:
        log.exception("Could not fetch review outcome, leaving review reactions as they are")

    report = await sync_across_workspaces(messages, state, review_state, log)
    log.info(
        "Closed PR synced: state=%s applied=%s failed=%s",
        state.value,
        report.applied,
        report.failed,
    )
