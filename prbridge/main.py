from prbridge import settings  # load .env
from fastapi import FastAPI, Request, Header, HTTPException
from contextlib import asynccontextmanager
from urllib.parse import parse_qs
import asyncio
import json

from prbridge.errors import BridgeError, ValidationError, http_status_for
from prbridge.github.webhook import receive_github_webhook
from prbridge.logger import bind, get_logger
from prbridge.security.webhook_verify import verify_slack_signature
from prbridge.settings import (
    validate_github_settings,
    validate_slack_settings,
    validate_worker_settings,
)
from prbridge.slack.events import parse_event, parse_interaction
from prbridge.slack.handlers import handle_event, handle_interaction
from prbridge.store.redis_client import close_redis
from prbridge.workers import queue
from prbridge.workers.job_worker import worker_loop


logger = get_logger()

_worker_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _worker_task

    # Validate critical configuration early
    validate_github_settings()
    validate_slack_settings()
    validate_worker_settings()

    if settings.WORKER_ENABLED:
        await queue.requeue_inflight()
        _worker_task = asyncio.create_task(worker_loop())
        logger.info("Job worker started")

    try:
        yield
    finally:
        # Shutdown: cancel background task cleanly
        if _worker_task:
            _worker_task.cancel()
            try:
                await _worker_task
            except asyncio.CancelledError:
                pass
            _worker_task = None
            logger.info("Job worker stopped")

        await close_redis()


app = FastAPI(lifespan=lifespan)


def _reject(exc: BridgeError):
    raise HTTPException(status_code=http_status_for(exc), detail=str(exc))


@app.post("/webhooks/github")
async def github_webhook(
    request: Request,
    x_github_event: str | None = Header(None),
    x_github_delivery: str | None = Header(None),
    x_hub_signature_256: str | None = Header(None),
):
    body = await request.body()

    try:
        return await receive_github_webhook(
            body,
            x_github_event,
            x_github_delivery,
            x_hub_signature_256,
            request.headers,
        )
    except BridgeError as exc:
        if http_status_for(exc) >= 500:
            logger.error("Failed to queue GitHub event %s: %s", x_github_event, exc)
        _reject(exc)


async def _verified_slack_body(request: Request) -> bytes:
    body = await request.body()

    if not verify_slack_signature(
        body,
        request.headers.get("x-slack-request-timestamp"),
        request.headers.get("x-slack-signature"),
    ):
        logger.warning("Invalid Slack request signature")
        raise HTTPException(status_code=401, detail="Invalid Slack signature")

    return body


@app.post("/webhooks/slack/events")
async def slack_events(request: Request):
    body = await _verified_slack_body(request)

    try:
        envelope = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")

    if not isinstance(envelope, dict):
        raise HTTPException(status_code=400, detail="Body is not a JSON object")

    envelope_type = envelope.get("type")

    if envelope_type == "url_verification":
        return {"challenge": envelope.get("challenge")}

    if envelope_type != "event_callback":
        return {"ok": True}

    try:
        event = parse_event(envelope)
    except ValidationError as exc:
        _reject(exc)

    log = bind(logger, trace_id=envelope.get("event_id"), workspace_id=envelope.get("team_id"))
    try:
        await handle_event(event, log)
    except Exception:
        # always acknowledged so Slack does not redeliver
        log.exception("Failed to handle Slack event %s", type(event).__name__)

    return {"ok": True}


@app.post("/webhooks/slack/interactions")
async def slack_interactions(request: Request):
    body = await _verified_slack_body(request)

    form = parse_qs(body.decode("utf-8", errors="replace"))
    raw = (form.get("payload") or [None])[0]
    if not raw:
        raise HTTPException(status_code=400, detail="Missing payload")

    try:
        payload = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Payload is not valid JSON")

    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload is not a JSON object")

    await handle_interaction(parse_interaction(payload))
    return {"ok": True}


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


# 👇 This makes `python -m prbridge.main` work
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "prbridge.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
    )
