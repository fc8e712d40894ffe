import json
from typing import Any, Dict

from prbridge.errors import ValidationError
from prbridge.github import pull_requests, reviews
from prbridge.github.sync import sync_pr_reactions
from prbridge.models import Job, WebhookJob


async def _handle_pull_request(action: str, payload: Dict[str, Any], log):
    if action in ("opened", "ready_for_review"):
        await pull_requests.handle_opened(payload, log)
    elif action == "closed":
        await pull_requests.handle_closed(payload, log)
    elif action == "reopened":
        repo_full_name = payload["repository"]["full_name"]
        pr_number = int(payload["pull_request"]["number"])
        await sync_pr_reactions(repo_full_name, pr_number, log)
    else:
        log.info("Ignoring pull_request action")


async def process_webhook_job(job: Job, log):
    """
    Decode a queued GitHub delivery and route it by event and action.
    """
    webhook = WebhookJob.model_validate(job.payload)

    try:
        payload = json.loads(webhook.payload)
    except ValueError as exc:
        raise ValidationError("Webhook payload is not valid JSON") from exc

    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload is not a JSON object")

    action = payload.get("action")
    log = log.bind(
        event=webhook.event_type,
        action=action,
        delivery_id=webhook.delivery_id,
    )

    try:
        match webhook.event_type:
            case "pull_request":
                await _handle_pull_request(action, payload, log)
            case "pull_request_review":
                await reviews.handle_review(action, payload, log)
            case _:
                log.info("Ignoring GitHub event")
    except (KeyError, TypeError) as exc:
        raise ValidationError(f"Malformed {webhook.event_type} payload: {exc!r}") from exc
