"""The main/retry queue pair and the two admission paths into it."""
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog

from . import metrics
from .config import Settings
from .queue import QueueEntry, QueueListener, QueueOptions, TransactionQueue, compute_backoff

logger = structlog.stdlib.get_logger(__name__)

MAIN_QUEUE_NAME = "relayer-tx-main"
RETRY_QUEUE_NAME = "relayer-tx-retry"


def main_queue_options(settings: Settings) -> QueueOptions:
    # failures are handed to the retry queue, never retried in place
    return QueueOptions(
        name=MAIN_QUEUE_NAME,
        attempts=1,
        timeout=settings.job_timeout_seconds,
        lock_duration=settings.lock_duration_seconds,
        max_stalled_count=settings.main_max_stalled_count,
        keep_completed=settings.main_keep_completed,
        keep_failed=None,
    )


def retry_queue_options(settings: Settings) -> QueueOptions:
    return QueueOptions(
        name=RETRY_QUEUE_NAME,
        attempts=settings.retry_attempts,
        backoff_base=settings.retry_backoff_seconds,
        backoff_factor=2.0,
        timeout=settings.job_timeout_seconds,
        lock_duration=settings.lock_duration_seconds,
        max_stalled_count=settings.retry_max_stalled_count,
        keep_completed=settings.retry_keep_completed,
        keep_failed=settings.retry_keep_failed,
    )


def retry_job_id(original_id: str) -> str:
    return f"retry-{original_id}"


@dataclass
class QueuePair:
    main: TransactionQueue
    retry: TransactionQueue
    initial_retry_delay: float

    @classmethod
    def from_settings(cls, redis_client, settings: Settings, clock: Callable[[], float] = time.time) -> "QueuePair":
        retry_options = retry_queue_options(settings)
        return cls(
            main=TransactionQueue(redis_client, main_queue_options(settings), prefix=settings.queue_prefix, clock=clock),
            retry=TransactionQueue(redis_client, retry_options, prefix=settings.queue_prefix, clock=clock),
            initial_retry_delay=compute_backoff(0, retry_options.backoff_base, retry_options.backoff_factor),
        )

    def queues(self):
        return (self.main, self.retry)

    def subscribe(self, listener: QueueListener) -> None:
        for queue in self.queues():
            queue.subscribe(listener)

    def unsubscribe(self, listener: QueueListener) -> None:
        for queue in self.queues():
            queue.unsubscribe(listener)


async def enqueue_transaction(pair: QueuePair, job) -> QueueEntry:
    """Admit a validated job to the main queue. Returns as soon as the entry is stored."""
    start = time.time()
    try:
        entry = await pair.main.add(job.to_payload())
    finally:
        metrics.enqueue_latency_seconds.observe(time.time() - start)
    metrics.jobs_enqueued_total.labels(queue=pair.main.name).inc()
    logger.info("transaction_queued", jobId=entry.id, type=entry.job_type)
    return entry


async def move_to_retry_queue(
    pair: QueuePair,
    job_data: Dict[str, Any],
    original_id: str,
    error: Optional[str] = None,
) -> QueueEntry:
    """Create the ``retry-<id>`` entry carrying the original payload unchanged."""
    entry = await pair.retry.add(job_data, job_id=retry_job_id(original_id), delay=pair.initial_retry_delay)
    metrics.jobs_enqueued_total.labels(queue=pair.retry.name).inc()
    logger.warning(
        "transaction_moved_to_retry",
        jobId=original_id,
        retryJobId=entry.id,
        type=entry.job_type,
        delaySeconds=pair.initial_retry_delay,
        error=error,
    )
    return entry
