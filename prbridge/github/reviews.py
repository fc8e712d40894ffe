from typing import Any, Dict

from prbridge.errors import ValidationError
from prbridge.reactions.sync import (
    REVIEW_STATES,
    PRState,
    collect_tracked_messages,
    sync_across_workspaces,
)


async def handle_review(action: str, payload: Dict[str, Any], log):
    """
    Reflect a submitted or dismissed review on every tracked message of
    the PR.
    """
    pr = payload.get("pull_request") or {}
    repo_full_name = (payload.get("repository") or {}).get("full_name")
    pr_number = pr.get("number")

    if not repo_full_name or not pr_number:
        raise ValidationError("pull_request_review payload without repository or number")

    log = log.bind(repo=repo_full_name, pr_number=pr_number, action=action)

    if action == "submitted":
        raw_state = ((payload.get("review") or {}).get("state") or "").lower()
        desired = next((s for s in REVIEW_STATES if s.value == raw_state), None)
        if desired is None:
            log.info("Ignoring review with state %r", raw_state)
            return
    elif action == "dismissed":
        desired = PRState.NONE
    else:
        log.info("Ignoring review action")
        return

    messages = await collect_tracked_messages(repo_full_name, int(pr_number))
    if not messages:
        log.info("No tracked messages for PR")
        return

    if pr.get("state") == "closed":
        terminal = PRState.MERGED if (pr.get("merged") or pr.get("merged_at")) else PRState.CLOSED
        report = await sync_across_workspaces(messages, terminal, desired, log)
    else:
        report = await sync_across_workspaces(messages, desired, None, log)

    log.info(
        "Review synced: state=%s applied=%s failed=%s",
        desired.value,
        report.applied,
        report.failed,
    )
