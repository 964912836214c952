"""Redis-backed job queue with leases, delayed redelivery and stall recovery.

Key layout for a queue named ``q`` under ``prefix``::

    prefix:q:id         INCR counter for entry ids
    prefix:q:entries    hash  id -> entry JSON
    prefix:q:wait       list  FIFO of ids ready to run
    prefix:q:active     list  ids currently leased
    prefix:q:leases     zset  id -> lease expiry
    prefix:q:delayed    zset  id -> time the entry becomes eligible
    prefix:q:completed  list  newest first, trimmed to keep_completed
    prefix:q:failed     list  newest first, trimmed to keep_failed

Every transition out of ``active`` or ``delayed`` is decided by the return
value of LREM / ZREM, so only one caller can ever own a given transition.
"""
import asyncio
import inspect
import json
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

logger = structlog.stdlib.get_logger(__name__)

WAITING = "waiting"
DELAYED = "delayed"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

STALLED_LIMIT_REASON = "job stalled more than allowable limit"


def compute_backoff(attempts_made: int, base: float, factor: float = 2.0) -> float:
    """Delay before the next attempt once ``attempts_made`` attempts have failed."""
    return base * factor ** attempts_made


@dataclass(frozen=True)
class QueueOptions:
    name: str
    attempts: int = 1
    backoff_base: float = 0.0
    backoff_factor: float = 2.0
    timeout: float = 60.0
    lock_duration: float = 30.0
    max_stalled_count: int = 3
    keep_completed: Optional[int] = 100
    keep_failed: Optional[int] = None


@dataclass
class QueueEntry:
    id: str
    queue: str
    data: Dict[str, Any]
    max_attempts: int
    created_at: float
    attempts_made: int = 0
    status: str = WAITING
    processed_at: Optional[float] = None
    finished_at: Optional[float] = None
    eligible_at: Optional[float] = None
    stalled_count: int = 0
    tx_hash: Optional[str] = None
    failed_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def job_type(self) -> str:
        value = self.data.get("type") if isinstance(self.data, dict) else None
        return value if isinstance(value, str) else "unknown"

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made + 1 >= self.max_attempts

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "QueueEntry":
        return cls(**json.loads(raw))

    def public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "type": self.job_type,
            "status": self.status,
            "attemptsMade": self.attempts_made,
            "maxAttempts": self.max_attempts,
            "stalledCount": self.stalled_count,
            "txHash": self.tx_hash,
            "failedReason": self.failed_reason,
            "result": self.result,
            "createdAt": self.created_at,
            "processedAt": self.processed_at,
            "finishedAt": self.finished_at,
            "eligibleAt": self.eligible_at,
        }


@dataclass(frozen=True)
class QueueCounts:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class QueueEvent:
    kind: str
    queue: str
    entry: Optional[QueueEntry] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    final: bool = False


QueueListener = Callable[[QueueEvent], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class _Keys:
    id: str
    entries: str
    wait: str
    active: str
    leases: str
    delayed: str
    completed: str
    failed: str


class TransactionQueue:
    def __init__(self, redis_client, options: QueueOptions, prefix: str = "relayer", clock: Callable[[], float] = time.time):
        self.redis = redis_client
        self.options = options
        self._clock = clock
        base = f"{prefix}:{options.name}"
        self._keys = _Keys(
            id=f"{base}:id",
            entries=f"{base}:entries",
            wait=f"{base}:wait",
            active=f"{base}:active",
            leases=f"{base}:leases",
            delayed=f"{base}:delayed",
            completed=f"{base}:completed",
            failed=f"{base}:failed",
        )
        self._listeners: List[QueueListener] = []
        # claim and stall recovery must not interleave inside one process
        self._transition_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.options.name

    # observers

    def subscribe(self, listener: QueueListener) -> QueueListener:
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: QueueListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit(self, event: QueueEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("queue_listener_failed", queue=self.name, kind=event.kind)

    async def report_error(self, exc: BaseException) -> None:
        await self._emit(QueueEvent(kind="error", queue=self.name, error=str(exc) or type(exc).__name__))

    # storage

    async def get(self, entry_id: str) -> Optional[QueueEntry]:
        raw = await self.redis.hget(self._keys.entries, entry_id)
        if raw is None:
            return None
        return QueueEntry.from_json(raw)

    async def _save(self, entry: QueueEntry) -> None:
        await self.redis.hset(self._keys.entries, entry.id, entry.to_json())

    async def _trim(self, key: str, keep: Optional[int]) -> None:
        if keep is None:
            return
        stale = await self.redis.lrange(key, keep, -1)
        if stale:
            await self.redis.ltrim(key, 0, keep - 1)
            await self.redis.hdel(self._keys.entries, *stale)

    # admission

    async def add(self, data: Dict[str, Any], job_id: Optional[str] = None, delay: float = 0.0) -> QueueEntry:
        """Admit ``data``. Adding an explicit ``job_id`` that already exists returns the existing entry."""
        entry_id = job_id if job_id is not None else str(await self.redis.incr(self._keys.id))
        now = self._clock()
        entry = QueueEntry(
            id=entry_id,
            queue=self.name,
            data=json.loads(json.dumps(data)),
            max_attempts=self.options.attempts,
            created_at=now,
        )
        if delay > 0:
            entry.status = DELAYED
            entry.eligible_at = now + delay

        created = await self.redis.hsetnx(self._keys.entries, entry_id, entry.to_json())
        if not created:
            existing = await self.get(entry_id)
            logger.info("queue_duplicate_add_ignored", queue=self.name, jobId=entry_id)
            return existing if existing is not None else entry

        if delay > 0:
            await self.redis.zadd(self._keys.delayed, {entry_id: entry.eligible_at})
        else:
            await self.redis.rpush(self._keys.wait, entry_id)
        return entry

    async def promote_delayed(self) -> int:
        """Move every delayed entry whose time has come onto the wait list, earliest first."""
        now = self._clock()
        due = await self.redis.zrangebyscore(self._keys.delayed, 0, now)
        promoted = 0
        for entry_id in due:
            if await self.redis.zrem(self._keys.delayed, entry_id) != 1:
                continue
            entry = await self.get(entry_id)
            if entry is None:
                continue
            entry.status = WAITING
            entry.eligible_at = None
            await self._save(entry)
            await self.redis.rpush(self._keys.wait, entry_id)
            promoted += 1
        return promoted

    # processing

    async def claim(self) -> Optional[QueueEntry]:
        """Take the head of the wait list under a fresh lease, or return None."""
        async with self._transition_lock:
            await self.promote_delayed()
            while True:
                entry_id = await self.redis.lmove(self._keys.wait, self._keys.active, "LEFT", "RIGHT")
                if entry_id is None:
                    return None
                now = self._clock()
                await self.redis.zadd(self._keys.leases, {entry_id: now + self.options.lock_duration})
                entry = await self.get(entry_id)
                if entry is None:
                    await self._release(entry_id)
                    continue
                entry.status = ACTIVE
                entry.processed_at = now
                await self._save(entry)
                return entry

    async def extend_lease(self, entry: QueueEntry) -> bool:
        if await self.redis.zscore(self._keys.leases, entry.id) is None:
            return False
        await self.redis.zadd(self._keys.leases, {entry.id: self._clock() + self.options.lock_duration})
        return True

    async def record_tx_hash(self, entry: QueueEntry, tx_hash: str) -> None:
        entry.tx_hash = tx_hash
        await self._save(entry)

    async def _release(self, entry_id: str) -> bool:
        removed = await self.redis.lrem(self._keys.active, 1, entry_id)
        await self.redis.zrem(self._keys.leases, entry_id)
        return removed == 1

    async def complete(self, entry: QueueEntry, result: Dict[str, Any]) -> bool:
        if not await self._release(entry.id):
            logger.error("queue_lease_lost", queue=self.name, jobId=entry.id, transition=COMPLETED)
            return False
        entry.status = COMPLETED
        entry.result = result
        entry.finished_at = self._clock()
        await self._save(entry)
        await self.redis.lpush(self._keys.completed, entry.id)
        await self._trim(self._keys.completed, self.options.keep_completed)
        await self._emit(QueueEvent(kind=COMPLETED, queue=self.name, entry=entry, result=result))
        return True

    async def fail(self, entry: QueueEntry, error: str) -> bool:
        """Record a failed attempt. Returns True when another attempt has been scheduled."""
        if not await self._release(entry.id):
            logger.error("queue_lease_lost", queue=self.name, jobId=entry.id, transition=FAILED)
            return False
        entry.attempts_made += 1
        entry.failed_reason = error
        if entry.attempts_made < entry.max_attempts:
            delay = compute_backoff(entry.attempts_made, self.options.backoff_base, self.options.backoff_factor)
            entry.status = DELAYED
            entry.eligible_at = self._clock() + delay
            # the next attempt broadcasts afresh
            entry.tx_hash = None
            await self._save(entry)
            await self.redis.zadd(self._keys.delayed, {entry.id: entry.eligible_at})
            await self._emit(QueueEvent(kind=FAILED, queue=self.name, entry=entry, error=error, final=False))
            return True
        await self._finish_failed(entry, error)
        return False

    async def _finish_failed(self, entry: QueueEntry, error: str) -> None:
        entry.status = FAILED
        entry.failed_reason = error
        entry.finished_at = self._clock()
        entry.eligible_at = None
        await self._save(entry)
        await self.redis.lpush(self._keys.failed, entry.id)
        await self._trim(self._keys.failed, self.options.keep_failed)
        await self._emit(QueueEvent(kind=FAILED, queue=self.name, entry=entry, error=error, final=True))

    async def _stall(self, entry: QueueEntry, reason: str) -> None:
        entry.stalled_count += 1
        if entry.stalled_count > self.options.max_stalled_count:
            logger.error(
                "queue_job_abandoned",
                queue=self.name,
                jobId=entry.id,
                stalledCount=entry.stalled_count,
                reason=reason,
            )
            await self._finish_failed(entry, STALLED_LIMIT_REASON)
            return
        entry.status = WAITING
        entry.failed_reason = reason
        await self._save(entry)
        # a recovered entry goes back to the head so FIFO order is kept
        await self.redis.lpush(self._keys.wait, entry.id)
        await self._emit(QueueEvent(kind="stalled", queue=self.name, entry=entry, error=reason))

    async def release_stalled(self, entry: QueueEntry, reason: str) -> bool:
        """Give up the lease on ``entry`` and send it through stall recovery."""
        if not await self._release(entry.id):
            return False
        await self._stall(entry, reason)
        return True

    async def recover_stalled(self) -> List[QueueEntry]:
        """Recover active entries whose lease has expired (or was never granted)."""
        recovered = []
        async with self._transition_lock:
            now = self._clock()
            for entry_id in await self.redis.lrange(self._keys.active, 0, -1):
                expires = await self.redis.zscore(self._keys.leases, entry_id)
                if expires is not None and float(expires) > now:
                    continue
                if not await self._release(entry_id):
                    continue
                entry = await self.get(entry_id)
                if entry is None:
                    continue
                await self._stall(entry, "lease expired")
                recovered.append(entry)
        return recovered

    # inspection

    async def counts(self) -> QueueCounts:
        return QueueCounts(
            waiting=await self.redis.llen(self._keys.wait),
            active=await self.redis.llen(self._keys.active),
            completed=await self.redis.llen(self._keys.completed),
            failed=await self.redis.llen(self._keys.failed),
            delayed=await self.redis.zcard(self._keys.delayed),
        )

    async def waiting_ids(self) -> List[str]:
        return await self.redis.lrange(self._keys.wait, 0, -1)
