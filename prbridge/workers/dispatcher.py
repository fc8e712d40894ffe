import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from prbridge import settings
from prbridge.errors import ErrorKind, ValidationError, classify
from prbridge.github import events as github_events
from prbridge.github import sync as github_sync
from prbridge.logger import bind, get_logger
from prbridge.models import Job, JobType
from prbridge.slack import manual_links


logger = get_logger("prbridge.workers.dispatcher")


class Outcome(str, Enum):
    PROCESSED = "processed"
    RETRY = "retry"
    FAILED = "failed"
    ABANDONED = "abandoned"


async def _route(job: Job, log):
    match job.type:
        case JobType.GITHUB_WEBHOOK:
            await github_events.process_webhook_job(job, log)
        case JobType.MANUAL_PR_LINK:
            await manual_links.process_manual_link_job(job, log)
        case JobType.REACTION_SYNC:
            await github_sync.process_reaction_sync_job(job, log)
        case JobType.DELETE_TRACKED_MESSAGE:
            await manual_links.process_delete_job(job, log)
        case _:
            raise ValidationError(f"Unknown job type: {job.type}")


@dataclass
class Dispatched:
    outcome: Outcome
    # Minimum wait before redelivery, as requested by a rate-limited platform
    retry_after: Optional[float] = None


async def execute(job: Job, retry_count: int) -> Dispatched:
    """
    Run one delivery of a job and decide what the queue should do with it.

    Jobs at the attempt limit are abandoned without running. Otherwise the
    job runs under the processing deadline and its failure, if any, is
    classified: transient errors retry, not-found is a no-op, everything
    else fails for good.
    """
    job_type = getattr(job.type, "value", job.type)
    log = bind(
        logger,
        trace_id=job.trace_id,
        job_id=job.id,
        job_type=job_type,
        attempt=retry_count + 1,
    )

    if retry_count >= settings.JOB_MAX_ATTEMPTS:
        log.error(
            "Abandoning job after %s attempts: payload=%s",
            retry_count,
            job.payload,
        )
        return Dispatched(Outcome.ABANDONED)

    if retry_count >= settings.JOB_RETRY_WARNING_THRESHOLD:
        log.warning("Job has been retried %s times", retry_count)

    started = time.monotonic()

    try:
        await asyncio.wait_for(
            _route(job, log),
            timeout=settings.JOB_PROCESSING_TIMEOUT_SECONDS,
        )
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        kind = classify(exc)

        if kind is ErrorKind.NOT_FOUND:
            log.info("Nothing to act on: %s", exc)
            return Dispatched(Outcome.PROCESSED)

        if kind is ErrorKind.TRANSIENT:
            retry_after = getattr(exc, "retry_after", None)
            log.warning(
                "Transient failure, job will be retried (retry_after=%s): %r",
                retry_after,
                exc,
                exc_info=True,
            )
            return Dispatched(Outcome.RETRY, retry_after)

        log.error("Job failed (%s): %r", kind.value, exc, exc_info=True)
        return Dispatched(Outcome.FAILED)

    log.info("Job processed in %.0fms", (time.monotonic() - started) * 1000)
    return Dispatched(Outcome.PROCESSED)


async def dispatch(job: Job, retry_count: int) -> Outcome:
    return (await execute(job, retry_count)).outcome
