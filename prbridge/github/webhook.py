import json
import time
import uuid
from typing import Any, Dict, Mapping, Optional

from prbridge.errors import SignatureError, ValidationError
from prbridge.logger import get_logger
from prbridge.models import JobType, WebhookJob, wrap
from prbridge.security.webhook_verify import verify_signature
from prbridge.workers import queue


logger = get_logger("prbridge.webhooks")

ACCEPTED_EVENTS = ("pull_request", "pull_request_review")


def trace_id_from_headers(headers: Mapping[str, str]) -> str:
    """
    Reuse an inbound trace id (Cloud Trace "TRACE/SPAN;o=1" or X-Request-ID)
    when present.
    """
    cloud_trace = headers.get("x-cloud-trace-context")
    if cloud_trace:
        trace_id = cloud_trace.split("/", 1)[0].strip()
        if trace_id:
            return trace_id

    request_id = headers.get("x-request-id")
    if request_id and request_id.strip():
        return request_id.strip()

    return uuid.uuid4().hex


def parse_webhook_body(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationError("Body is not valid JSON") from exc

    if not isinstance(payload, dict):
        raise ValidationError("Body is not a JSON object")

    if not payload.get("action") or not isinstance(payload.get("repository"), dict):
        raise ValidationError("Payload is missing action or repository")

    return payload


async def receive_github_webhook(
    raw_body: bytes,
    event_type: Optional[str],
    delivery_id: Optional[str],
    signature: Optional[str],
    headers: Mapping[str, str],
) -> Dict[str, Any]:
    """
    Verify a GitHub delivery and put it on the queue.

    Raises ValidationError / SignatureError for rejected requests and lets
    enqueue failures propagate.
    """
    started = time.monotonic()

    if not event_type or not delivery_id:
        raise ValidationError("Missing X-GitHub-Event or X-GitHub-Delivery header")

    if not verify_signature(raw_body, signature):
        logger.warning("Invalid GitHub webhook signature: delivery_id=%s", delivery_id)
        raise SignatureError("Invalid GitHub signature")

    if event_type not in ACCEPTED_EVENTS:
        logger.info("Ignoring GitHub event: %s delivery_id=%s", event_type, delivery_id)
        return {"status": "ignored"}

    parse_webhook_body(raw_body)

    webhook = WebhookJob(
        id=uuid.uuid4().hex,
        event_type=event_type,
        delivery_id=delivery_id,
        trace_id=trace_id_from_headers(headers),
        payload=raw_body.decode("utf-8"),
    )
    job_id = await queue.enqueue(wrap(JobType.GITHUB_WEBHOOK, webhook))

    logger.info(
        "Verified GitHub event queued: %s delivery_id=%s job_id=%s",
        event_type,
        delivery_id,
        job_id,
    )

    return {
        "status": "queued",
        "job_id": job_id,
        "processing_time_ms": round((time.monotonic() - started) * 1000, 2),
    }
