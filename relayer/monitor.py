"""Passive observer of queue lifecycle events and the queue health snapshot."""
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog

from . import metrics
from .queue import COMPLETED, FAILED, QueueCounts, QueueEvent
from .tx_queue import QueuePair

logger = structlog.stdlib.get_logger(__name__)

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"

FAILURE_RATE_THRESHOLD = 10.0
BACKLOG_THRESHOLD = 100
STALLED_THRESHOLD = 5

_SEVERITY = {HEALTHY: 0, WARNING: 1, CRITICAL: 2}

COUNTER_FIELDS = ("completed", "handed_off", "failed", "stalled", "retry_failures", "exhausted")
LAST_FAILURE_FIELD = "last_failure"


@dataclass(frozen=True)
class MonitorCounters:
    completed: int = 0
    handed_off: int = 0
    failed: int = 0
    stalled: int = 0
    retry_failures: int = 0
    exhausted: int = 0
    last_failure: Optional[Dict[str, Any]] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def compute_health(
    main: QueueCounts, retry: QueueCounts, stalled: int
) -> Tuple[str, List[str], float, int]:
    """Classify queue health. Returns (health, warnings, failure_rate, backlog).

    Every threshold is strict: a failure rate of exactly 10% or a backlog of
    exactly 100 does not raise a warning.
    """
    total = main.completed + main.failed + retry.completed + retry.failed
    failure_rate = (main.failed + retry.failed) * 100 / total if total > 0 else 0.0
    backlog = main.waiting + main.delayed + retry.waiting + retry.delayed

    health = HEALTHY
    warnings: List[str] = []

    def raise_to(level: str, message: str) -> None:
        nonlocal health
        if _SEVERITY[level] > _SEVERITY[health]:
            health = level
        warnings.append(message)

    if failure_rate > FAILURE_RATE_THRESHOLD:
        raise_to(WARNING, f"High failure rate: {failure_rate:.2f}%")
    if backlog > BACKLOG_THRESHOLD:
        raise_to(WARNING, f"Large backlog: {backlog} jobs waiting")
    if stalled > STALLED_THRESHOLD:
        raise_to(CRITICAL, f"High stall count: {stalled} jobs stalled")
    if main.active == 0 and main.waiting > 0:
        raise_to(CRITICAL, "Worker may be stuck - jobs waiting but none active")
    return health, warnings, failure_rate, backlog


class QueueMonitor:
    """Counts lifecycle events from both queues.

    Counters and the last failure live in one Redis hash, so a monitor in the
    API process reports what a worker in another process observed. They only
    grow until :meth:`reset`.
    """

    def __init__(self, pair: QueuePair, redis_client, prefix: str = "relayer"):
        self.pair = pair
        self.redis = redis_client
        self.key = f"{prefix}:monitor"
        self.attached = False

    async def reset(self) -> None:
        await self.redis.hdel(self.key, *COUNTER_FIELDS, LAST_FAILURE_FIELD)
        logger.info("queue_monitor_reset")

    async def counters(self) -> MonitorCounters:
        raw = await self.redis.hgetall(self.key)
        last_failure = raw.get(LAST_FAILURE_FIELD)
        return MonitorCounters(
            **{name: int(raw.get(name, 0)) for name in COUNTER_FIELDS},
            last_failure=json.loads(last_failure) if last_failure else None,
        )

    async def _count(self, name: str) -> None:
        await self.redis.hincrby(self.key, name, 1)

    def attach(self) -> None:
        if self.attached:
            return
        self.pair.subscribe(self.handle_event)
        self.attached = True
        logger.info("queue_monitor_attached", queues=[q.name for q in self.pair.queues()])

    def detach(self) -> None:
        if not self.attached:
            return
        self.pair.unsubscribe(self.handle_event)
        self.attached = False

    async def _record_failure(self, event: QueueEvent) -> None:
        entry = event.entry
        last_failure = {
            "jobId": entry.id if entry is not None else "unknown",
            "queue": event.queue,
            "type": entry.job_type if entry is not None else "unknown",
            "error": event.error,
            "timestamp": _now_iso(),
        }
        await self.redis.hset(self.key, LAST_FAILURE_FIELD, json.dumps(last_failure))

    async def handle_event(self, event: QueueEvent) -> None:
        entry = event.entry
        job_id = entry.id if entry is not None else None
        job_type = entry.job_type if entry is not None else "unknown"
        on_main = event.queue == self.pair.main.name

        if event.kind == COMPLETED:
            result = event.result or {}
            if result.get("movedToRetry"):
                await self._count("handed_off")
                metrics.jobs_handed_off_total.labels(type=job_type).inc()
                logger.warning("main_job_handed_off", jobId=job_id, type=job_type, error=result.get("error"))
                return
            await self._count("completed")
            metrics.jobs_executed_total.labels(queue=event.queue, type=job_type).inc()
            logger.info(
                "queue_job_completed",
                queue=event.queue,
                jobId=job_id,
                type=job_type,
                txHash=result.get("txHash"),
            )
        elif event.kind == FAILED:
            metrics.jobs_failed_total.labels(queue=event.queue, type=job_type).inc()
            if on_main:
                await self._count("failed")
                await self._record_failure(event)
                logger.error("main_job_failed", jobId=job_id, type=job_type, error=event.error)
            elif event.final:
                await self._count("failed")
                await self._count("exhausted")
                await self._record_failure(event)
                metrics.retry_exhausted_total.labels(type=job_type).inc()
                logger.critical(
                    "retry_job_exhausted",
                    jobId=job_id,
                    type=job_type,
                    attempts=entry.attempts_made if entry is not None else None,
                    error=event.error,
                    data=entry.data if entry is not None else None,
                )
            else:
                await self._count("retry_failures")
                logger.warning(
                    "retry_job_failed_will_retry",
                    jobId=job_id,
                    type=job_type,
                    attempt=entry.attempts_made if entry is not None else None,
                    maxAttempts=entry.max_attempts if entry is not None else None,
                    eligibleAt=entry.eligible_at if entry is not None else None,
                    error=event.error,
                )
        elif event.kind == "stalled":
            await self._count("stalled")
            metrics.jobs_stalled_total.labels(queue=event.queue).inc()
            logger.warning(
                "queue_job_stalled",
                queue=event.queue,
                jobId=job_id,
                type=job_type,
                stalledCount=entry.stalled_count if entry is not None else None,
            )
        elif event.kind == "error":
            metrics.error_count.labels(source=event.queue).inc()
            logger.error("queue_error", queue=event.queue, error=event.error)

    async def snapshot(self) -> Dict[str, Any]:
        main = await self.pair.main.counts()
        retry = await self.pair.retry.counts()
        for queue, counts in ((self.pair.main, main), (self.pair.retry, retry)):
            for state, value in counts.as_dict().items():
                metrics.queue_jobs.labels(queue=queue.name, state=state).set(value)

        counters = await self.counters()
        health, warnings, failure_rate, backlog = compute_health(main, retry, counters.stalled)
        body: Dict[str, Any] = {"success": True, "health": health}
        if warnings:
            body["warnings"] = warnings
        body["queues"] = {
            "main": {"name": self.pair.main.name, **main.as_dict()},
            "retry": {"name": self.pair.retry.name, **retry.as_dict()},
        }
        body["metrics"] = {
            "totalCompleted": counters.completed,
            "totalHandedOff": counters.handed_off,
            "totalFailed": counters.failed,
            "totalStalled": counters.stalled,
            "retryAttemptsFailed": counters.retry_failures,
            "totalExhausted": counters.exhausted,
            "failureRate": f"{failure_rate:.2f}%",
            "backlogSize": backlog,
            "lastFailure": counters.last_failure,
        }
        body["timestamp"] = _now_iso()
        return body
