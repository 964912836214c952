"""Single consumer of the main and retry queues.

Both consumer loops share one execution slot, so at most one chain-mutating
call is in flight in this process at any time. The signer reads its nonce as
the pending transaction count when it submits, and that is only coherent while
submissions are strictly sequential.
"""
import asyncio
import contextlib
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from . import metrics
from .errors import (
    ConfirmationTimeoutError,
    JobValidationError,
    RetryExhaustedError,
    SubmissionError,
    TransactionError,
    UnknownJobTypeError,
)
from .executor import TransactionExecutor
from .jobs import JOB_TYPES, job_type_of, parse_job
from .queue import QueueEntry, TransactionQueue
from .tx_queue import QueuePair, move_to_retry_queue

logger = structlog.stdlib.get_logger(__name__)

Processor = Callable[[QueueEntry], Awaitable[Dict[str, Any]]]


class TransactionWorker:
    def __init__(
        self,
        pair: QueuePair,
        executor: TransactionExecutor,
        poll_interval: float = 0.5,
        stalled_interval: float = 5.0,
    ):
        self.pair = pair
        self.executor = executor
        self.poll_interval = poll_interval
        self.stalled_interval = stalled_interval
        self._chain_slot = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    # job processing

    @staticmethod
    def _load_job(entry: QueueEntry):
        try:
            return parse_job(entry.data)
        except JobValidationError as exc:
            job_type = job_type_of(entry.data)
            if job_type not in JOB_TYPES:
                raise UnknownJobTypeError(job_type) from exc
            raise SubmissionError(f"Stored payload is invalid: {exc.message}", code="INVALID_PAYLOAD") from exc

    async def _execute(self, queue: TransactionQueue, entry: QueueEntry) -> Dict[str, Any]:
        job = self._load_job(entry)

        async def on_submitted(tx_hash: str) -> None:
            await queue.record_tx_hash(entry, tx_hash)

        async with self._chain_slot:
            start = time.time()
            try:
                return await asyncio.wait_for(
                    self.executor.execute(job, resume_tx_hash=entry.tx_hash, on_submitted=on_submitted),
                    timeout=queue.options.timeout,
                )
            finally:
                metrics.execution_latency_seconds.labels(type=entry.job_type).observe(time.time() - start)

    async def process_main_job(self, entry: QueueEntry) -> Dict[str, Any]:
        """One attempt. A failed attempt is handed to the retry queue and the entry completes."""
        logger.info("main_job_processing", jobId=entry.id, type=entry.job_type, attempt=entry.attempts_made + 1)
        try:
            result = await self._execute(self.pair.main, entry)
        except ConfirmationTimeoutError:
            raise
        except TransactionError as exc:
            logger.error(
                "main_job_failed_moving_to_retry",
                jobId=entry.id,
                type=entry.job_type,
                error=exc.message,
                code=exc.code,
            )
            await move_to_retry_queue(self.pair, entry.data, entry.id, exc.message)
            return {"success": False, "movedToRetry": True, "error": exc.message, "code": exc.code}

        logger.info("main_job_completed", jobId=entry.id, type=entry.job_type, txHash=result["txHash"])
        return {"success": True, **result}

    async def process_retry_job(self, entry: QueueEntry) -> Dict[str, Any]:
        """Failures propagate so the retry queue's backoff schedules the next attempt."""
        logger.info(
            "retry_job_processing",
            jobId=entry.id,
            type=entry.job_type,
            attempt=entry.attempts_made + 1,
            maxAttempts=entry.max_attempts,
        )
        try:
            result = await self._execute(self.pair.retry, entry)
        except ConfirmationTimeoutError:
            raise
        except TransactionError as exc:
            if entry.is_final_attempt:
                # the queue records this as the terminal failure reason
                raise RetryExhaustedError(
                    entry.id, entry.job_type, entry.attempts_made + 1, exc.message, code=exc.code
                ) from exc
            raise

        logger.info(
            "retry_job_succeeded",
            jobId=entry.id,
            type=entry.job_type,
            attempt=entry.attempts_made + 1,
            txHash=result["txHash"],
        )
        return {"success": True, "wasRetry": True, **result}

    async def _heartbeat(self, queue: TransactionQueue, entry: QueueEntry) -> None:
        interval = queue.options.lock_duration / 2
        while True:
            await asyncio.sleep(interval)
            if not await queue.extend_lease(entry):
                logger.warning("lease_lost", queue=queue.name, jobId=entry.id)
                return

    async def run_once(self, queue: TransactionQueue, processor: Processor) -> bool:
        """Claim and process at most one entry. Returns False when nothing was waiting."""
        entry = await queue.claim()
        if entry is None:
            return False

        heartbeat = asyncio.create_task(self._heartbeat(queue, entry))
        try:
            result = await processor(entry)
        except ConfirmationTimeoutError as exc:
            logger.warning("job_unconfirmed", queue=queue.name, jobId=entry.id, txHash=exc.tx_hash)
            await queue.release_stalled(entry, exc.message)
        except asyncio.TimeoutError:
            reason = f"job timed out after {queue.options.timeout}s"
            logger.warning("job_timed_out", queue=queue.name, jobId=entry.id, txHash=entry.tx_hash)
            await queue.release_stalled(entry, reason)
        except TransactionError as exc:
            await queue.fail(entry, exc.message)
        except Exception as exc:
            logger.exception("job_processing_error", queue=queue.name, jobId=entry.id)
            metrics.error_count.labels(source="worker").inc()
            await queue.report_error(exc)
            await queue.fail(entry, str(exc) or type(exc).__name__)
        else:
            await queue.complete(entry, result)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
        return True

    # loops

    async def _idle(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)

    async def _consume(self, queue: TransactionQueue, processor: Processor) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once(queue, processor)
            except Exception as exc:
                logger.exception("queue_consumer_error", queue=queue.name)
                metrics.error_count.labels(source="worker").inc()
                await queue.report_error(exc)
                processed = False
            if not processed:
                await self._idle(self.poll_interval)

    async def _sweep_stalled(self) -> None:
        while not self._stopping.is_set():
            for queue in self.pair.queues():
                try:
                    recovered = await queue.recover_stalled()
                except Exception as exc:
                    logger.exception("stall_sweep_error", queue=queue.name)
                    await queue.report_error(exc)
                    continue
                if recovered:
                    logger.warning("stalled_jobs_recovered", queue=queue.name, jobIds=[e.id for e in recovered])
            await self._idle(self.stalled_interval)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        logger.info(
            "worker_starting",
            concurrency=1,
            mainQueue=self.pair.main.name,
            retryQueue=self.pair.retry.name,
        )
        self._tasks = [
            asyncio.create_task(self._consume(self.pair.main, self.process_main_job), name="relayer-main-consumer"),
            asyncio.create_task(self._consume(self.pair.retry, self.process_retry_job), name="relayer-retry-consumer"),
            asyncio.create_task(self._sweep_stalled(), name="relayer-stall-sweeper"),
        ]

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Let the in-flight entry finish, then stop every loop."""
        if not self._tasks:
            return
        logger.info("worker_stopping")
        self._stopping.set()
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info("worker_stopped")
