"""
Durable at-least-once job queue on Redis.

Job ids move between three structures:

- ready list:      LPUSH on enqueue, popped from the right by consumers
- processing list: jobs a consumer has claimed but not yet acked
- delayed zset:    jobs waiting for their retry time (score = due time)

The envelope and its retry counter live in a hash per job.
"""

import time
from dataclasses import dataclass
from typing import Dict, Optional

import pydantic

from prbridge import settings
from prbridge.logger import get_logger
from prbridge.models import Job
from prbridge.store.keys import (
    QUEUE_DELAYED,
    QUEUE_JOB_PREFIX,
    QUEUE_PROCESSING,
    QUEUE_READY,
)
from prbridge.store.redis_client import get_redis, redis_op


logger = get_logger("prbridge.workers.queue")


@dataclass
class QueuedJob:
    job: Job
    retry_count: int


def _job_key(job_id: str) -> str:
    return f"{QUEUE_JOB_PREFIX}{job_id}"


def retry_delay(retry_count: int) -> float:
    """
    Exponential backoff for the n-th retry, capped.
    """
    exponent = max(retry_count - 1, 0)
    delay = settings.JOB_RETRY_BASE_DELAY_SECONDS * (2 ** exponent)
    return min(delay, settings.JOB_RETRY_MAX_DELAY_SECONDS)


@redis_op("enqueue job")
async def enqueue(job: Job) -> str:
    r = get_redis()

    async with r.pipeline(transaction=True) as pipe:
        pipe.hset(_job_key(job.id), mapping={
            "job": job.model_dump_json(),
            "retry_count": 0,
        })
        pipe.lpush(QUEUE_READY, job.id)
        await pipe.execute()

    logger.info("Job enqueued: job_id=%s type=%s", job.id, job.type.value)
    return job.id


async def _drop(job_id: str):
    r = get_redis()
    async with r.pipeline(transaction=True) as pipe:
        pipe.lrem(QUEUE_PROCESSING, 0, job_id)
        pipe.delete(_job_key(job_id))
        await pipe.execute()


@redis_op("claim job")
async def claim(block_seconds: Optional[float] = None) -> Optional[QueuedJob]:
    """
    Move the oldest ready job to the processing list and return it.

    Blocks up to block_seconds when given; returns None if nothing is ready
    or the claimed entry could not be decoded (it is dropped).
    """
    r = get_redis()

    if block_seconds:
        job_id = await r.blmove(QUEUE_READY, QUEUE_PROCESSING, block_seconds, "RIGHT", "LEFT")
    else:
        job_id = await r.lmove(QUEUE_READY, QUEUE_PROCESSING, "RIGHT", "LEFT")

    if job_id is None:
        return None

    data = await r.hgetall(_job_key(job_id))
    raw = data.get("job")
    if not raw:
        logger.warning("Dropping queue entry without envelope: job_id=%s", job_id)
        await _drop(job_id)
        return None

    try:
        job = Job.model_validate_json(raw)
    except pydantic.ValidationError:
        logger.exception("Dropping undecodable job: job_id=%s", job_id)
        await _drop(job_id)
        return None

    return QueuedJob(job=job, retry_count=int(data.get("retry_count", 0)))


@redis_op("ack job")
async def ack(job_id: str) -> None:
    await _drop(job_id)


@redis_op("schedule job retry")
async def retry(
    job_id: str,
    delay: Optional[float] = None,
    retry_after: Optional[float] = None,
) -> int:
    """
    Put a claimed job back for redelivery after a backoff delay.

    Without an explicit delay the wait is the exponential backoff, raised to
    retry_after when a platform asked for longer. Returns the new retry count.
    """
    r = get_redis()

    retry_count = await r.hincrby(_job_key(job_id), "retry_count", 1)
    if delay is None:
        delay = max(retry_delay(retry_count), retry_after or 0)
    due_at = time.time() + delay

    async with r.pipeline(transaction=True) as pipe:
        pipe.lrem(QUEUE_PROCESSING, 0, job_id)
        pipe.zadd(QUEUE_DELAYED, {job_id: due_at})
        await pipe.execute()

    return retry_count


@redis_op("promote delayed jobs")
async def promote_due(now: Optional[float] = None) -> int:
    r = get_redis()
    now = time.time() if now is None else now

    promoted = 0
    for job_id in await r.zrangebyscore(QUEUE_DELAYED, 0, now):
        # Only the consumer that removes the entry promotes it
        if await r.zrem(QUEUE_DELAYED, job_id):
            await r.lpush(QUEUE_READY, job_id)
            promoted += 1

    return promoted


@redis_op("requeue in-flight jobs")
async def requeue_inflight() -> int:
    """
    Return jobs left in processing by a previous run to the ready list.

    Counts as a redelivery, so the retry counter goes up.
    """
    r = get_redis()

    requeued = 0
    for job_id in await r.lrange(QUEUE_PROCESSING, 0, -1):
        if not await r.lrem(QUEUE_PROCESSING, 0, job_id):
            continue
        await r.hincrby(_job_key(job_id), "retry_count", 1)
        await r.rpush(QUEUE_READY, job_id)
        requeued += 1

    if requeued:
        logger.info("Requeued %s in-flight jobs", requeued)
    return requeued


@redis_op("read queue depth")
async def stats() -> Dict[str, int]:
    r = get_redis()
    return {
        "ready": await r.llen(QUEUE_READY),
        "processing": await r.llen(QUEUE_PROCESSING),
        "delayed": await r.zcard(QUEUE_DELAYED),
    }
