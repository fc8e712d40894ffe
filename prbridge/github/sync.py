from typing import Optional, Tuple

from prbridge.github import api as github_api
from prbridge.models import Job, ReactionSyncJob
from prbridge.reactions.sync import (
    PRState,
    SyncReport,
    collect_tracked_messages,
    sync_across_workspaces,
)


def desired_state(pr: github_api.PullRequestState) -> Tuple[PRState, Optional[PRState]]:
    """
    (state, preserved review outcome) for a PR as GitHub reports it now.
    """
    review = PRState(pr.review_state) if pr.review_state else PRState.NONE

    if pr.is_closed:
        return (PRState.MERGED if pr.merged else PRState.CLOSED), review

    return review, None


async def sync_pr_reactions(repo_full_name: str, pr_number: int, log) -> SyncReport:
    """
    Re-derive the PR's state from GitHub and apply it to all its tracked
    messages.
    """
    log = log.bind(repo=repo_full_name, pr_number=pr_number)

    messages = await collect_tracked_messages(repo_full_name, pr_number)
    if not messages:
        log.info("No tracked messages to sync")
        return SyncReport()

    pr = await github_api.get_pull_request_with_reviews(repo_full_name, pr_number)
    state, review_state = desired_state(pr)

    report = await sync_across_workspaces(messages, state, review_state, log)
    log.info(
        "Live reaction sync done: state=%s review=%s applied=%s failed=%s skipped=%s",
        state.value,
        review_state.value if review_state else None,
        report.applied,
        report.failed,
        report.skipped,
    )
    return report


async def process_reaction_sync_job(job: Job, log) -> SyncReport:
    request = ReactionSyncJob.model_validate(job.payload)
    return await sync_pr_reactions(request.repo_full_name, request.pr_number, log)
