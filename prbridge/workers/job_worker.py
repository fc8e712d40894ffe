import asyncio
from typing import Optional

from prbridge import settings
from prbridge.logger import get_logger
from prbridge.workers import queue
from prbridge.workers.dispatcher import Outcome, execute


logger = get_logger("prbridge.workers.job_worker")

ERROR_BACKOFF_SECONDS = 1


async def process_next(block_seconds: Optional[float] = None) -> Optional[Outcome]:
    """
    Promote due retries, then claim and run one job.

    Returns the outcome, or None when no job was ready.
    """
    await queue.promote_due()

    queued = await queue.claim(block_seconds)
    if queued is None:
        return None

    result = await execute(queued.job, queued.retry_count)

    if result.outcome is Outcome.RETRY:
        await queue.retry(queued.job.id, retry_after=result.retry_after)
    else:
        await queue.ack(queued.job.id)

    return result.outcome


async def _consumer(index: int):
    while True:
        try:
            await process_next(settings.QUEUE_POLL_TIMEOUT_SECONDS)
        except asyncio.CancelledError:
            logger.info("Job consumer %s cancelled", index)
            raise
        except Exception:
            logger.exception("Job consumer %s error", index)
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)


async def worker_loop(concurrency: Optional[int] = None):
    count = concurrency or settings.WORKER_CONCURRENCY
    logger.info("Starting %s job consumers", count)
    await asyncio.gather(*(_consumer(i) for i in range(count)))
