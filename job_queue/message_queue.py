"""
Pipeline message queue with receive counts, delayed redelivery and a DLQ.

Queues:
  pager:events    messages ready to be received
  pager:delayed   redeliveries waiting out their backoff, scored by visible_at
  pager:dlq       messages that used up their receives or can never succeed

A message is received, handed to a handler and then acknowledged. A failed
delivery is sent back through ``pager:delayed`` until it has been received
``max_receive_count`` times; a non-retryable error dead-letters it at once.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()

Handler = Callable[["QueueJob"], Awaitable[Any]]


class Queues:
    EVENTS = "pager:events"
    DELAYED = "pager:delayed"
    DLQ = "pager:dlq"


# ──────────────────────────────────────────────────────────────
#  Envelope
# ──────────────────────────────────────────────────────────────

def _new_job_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


@dataclass
class QueueJob:
    """One queue message and its delivery bookkeeping."""
    payload: dict[str, Any]
    job_id: str = field(default_factory=_new_job_id)
    receive_count: int = 0
    max_receive_count: int = 2
    sent_at: float = field(default_factory=time.time)
    visible_at: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def action(self) -> str:
        return str(self.payload.get("action") or self.payload.get("detail-type") or "")

    @property
    def receives_left(self) -> int:
        return max(self.max_receive_count - self.receive_count, 0)

    def redelivery(self, backoff_base: float, now: Optional[float] = None) -> QueueJob:
        """The same message, hidden for an exponential backoff."""
        now = time.time() if now is None else now
        delay = backoff_base * (2 ** max(self.receive_count - 1, 0))
        return replace(self, visible_at=now + delay,
                       metadata={**self.metadata, "last_failure_at": now})

    def to_fields(self) -> dict[str, str]:
        """Flat string mapping for Redis."""
        return {
            "job_id": self.job_id,
            "payload": json.dumps(self.payload),
            "receive_count": str(self.receive_count),
            "max_receive_count": str(self.max_receive_count),
            "sent_at": repr(self.sent_at),
            "visible_at": repr(self.visible_at),
            "metadata": json.dumps(self.metadata),
        }

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> QueueJob:
        return cls(
            payload=json.loads(fields["payload"]),
            job_id=fields["job_id"],
            receive_count=int(fields.get("receive_count", 0)),
            max_receive_count=int(fields.get("max_receive_count", 2)),
            sent_at=float(fields.get("sent_at") or 0),
            visible_at=float(fields.get("visible_at") or 0),
            metadata=json.loads(fields.get("metadata") or "{}"),
        )


def should_dead_letter(job: QueueJob, error: Optional[BaseException]) -> bool:
    if error is not None and not getattr(error, "retryable", True):
        return True
    return job.receives_left == 0


def _dead_letter_reason(job: QueueJob, error: Optional[BaseException]) -> str:
    if error is not None and not getattr(error, "retryable", True):
        return f"{type(error).__name__}: {error}"
    return f"Exceeded {job.max_receive_count} attempts"


# ──────────────────────────────────────────────────────────────
#  Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):

    def __init__(self, retry_backoff_base: float = 30):
        self.retry_backoff_base = retry_backoff_base

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def send(self, queue: str, job: QueueJob) -> None:
        """Make ``job`` receivable on ``queue`` now."""

    @abstractmethod
    async def send_delayed(self, job: QueueJob) -> None:
        """Hold ``job`` until ``job.visible_at``, then return it to the events queue."""

    @abstractmethod
    async def receive(self, queue: str, wait: float = 0) -> Optional[QueueJob]:
        """Take the next message, waiting up to ``wait`` seconds; counts one receive."""

    @abstractmethod
    async def ack(self, queue: str, job: QueueJob) -> None:
        """Forget a received message."""

    @abstractmethod
    async def queue_length(self, queue: str) -> int: ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        """Oldest ``count`` messages on ``queue``, left in place."""

    @abstractmethod
    async def promote_delayed(self, now: Optional[float] = None) -> int:
        """Return delayed messages that are due to the events queue."""

    async def submit(self, payload: dict[str, Any], max_receive_count: int = 2) -> QueueJob:
        job = QueueJob(payload=payload, max_receive_count=max_receive_count)
        await self.send(Queues.EVENTS, job)
        return job

    async def nack(self, queue: str, job: QueueJob, error: Optional[BaseException] = None) -> None:
        """Schedule a redelivery, or dead-letter the message when none is owed."""
        if should_dead_letter(job, error):
            dead = replace(job, metadata={
                **job.metadata,
                "dlq_reason": _dead_letter_reason(job, error),
                "source_queue": queue,
            })
            await self.send(Queues.DLQ, dead)
            logger.warning("message_dead_lettered", job_id=job.job_id, action=job.action,
                           receives=job.receive_count, reason=dead.metadata["dlq_reason"])
            return
        retry = job.redelivery(self.retry_backoff_base)
        await self.send_delayed(retry)
        logger.info("message_redelivery_scheduled", job_id=job.job_id, action=job.action,
                    receives=job.receive_count, visible_at=retry.visible_at)

    async def deliver(self, queue: str, job: QueueJob, handler: Handler) -> bool:
        """Run ``handler`` for a received message and settle it either way."""
        try:
            await handler(job)
            return True
        except Exception as e:
            logger.error("message_handler_failed", job_id=job.job_id, action=job.action,
                         error=str(e), error_type=type(e).__name__)
            await self.nack(queue, job, e)
            return False
        finally:
            await self.ack(queue, job)


# ──────────────────────────────────────────────────────────────
#  Redis (reliable lists)
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Each queue is a Redis list. ``receive`` atomically moves a message onto
    ``{queue}:inflight`` and ``ack`` removes it from there, so a worker that
    dies mid-delivery leaves the message visible to ``requeue_inflight``.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", retry_backoff_base: float = 30):
        super().__init__(retry_backoff_base)
        self._redis_url = redis_url
        self._redis = None
        self._received: dict[str, str] = {}

    async def connect(self) -> None:
        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(self._redis_url, decode_responses=True, max_connections=20)
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def _encode(job: QueueJob) -> str:
        return json.dumps(job.to_fields(), sort_keys=True)

    async def send(self, queue: str, job: QueueJob) -> None:
        await self._redis.lpush(queue, self._encode(job))
        logger.debug("message_sent", queue=queue, job_id=job.job_id, action=job.action)

    async def send_delayed(self, job: QueueJob) -> None:
        await self._redis.zadd(Queues.DELAYED, {self._encode(job): job.visible_at})

    async def receive(self, queue: str, wait: float = 0) -> Optional[QueueJob]:
        inflight = f"{queue}:inflight"
        if wait > 0:
            raw = await self._redis.blmove(queue, inflight, wait, src="RIGHT", dest="LEFT")
        else:
            raw = await self._redis.lmove(queue, inflight, src="RIGHT", dest="LEFT")
        if raw is None:
            return None
        job = QueueJob.from_fields(json.loads(raw))
        job.receive_count += 1
        self._received[job.job_id] = raw
        return job

    async def ack(self, queue: str, job: QueueJob) -> None:
        raw = self._received.pop(job.job_id, None)
        if raw is not None:
            await self._redis.lrem(f"{queue}:inflight", 1, raw)

    async def requeue_inflight(self, queue: str) -> int:
        """Return messages left in flight by a stopped worker; run before consuming."""
        moved = 0
        while await self._redis.lmove(f"{queue}:inflight", queue, src="RIGHT", dest="RIGHT"):
            moved += 1
        if moved:
            logger.warning("inflight_messages_requeued", queue=queue, count=moved)
        return moved

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return await self._redis.zcard(queue)
        return await self._redis.llen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        raws = await self._redis.lrange(queue, -count, -1)
        return [QueueJob.from_fields(json.loads(r)) for r in reversed(raws)]

    async def promote_delayed(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        promoted = 0
        for raw in await self._redis.zrangebyscore(Queues.DELAYED, "-inf", now):
            # zrem decides which promoter owns the message
            if await self._redis.zrem(Queues.DELAYED, raw):
                await self._redis.lpush(Queues.EVENTS, raw)
                promoted += 1
        if promoted:
            logger.info("delayed_messages_promoted", count=promoted)
        return promoted


# ──────────────────────────────────────────────────────────────
#  In-memory (development and tests)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """Single-process queue; nothing survives a restart."""

    POLL_INTERVAL = 0.05

    def __init__(self, retry_backoff_base: float = 30):
        super().__init__(retry_backoff_base)
        self._ready: dict[str, deque[QueueJob]] = {}
        self._delayed: list[tuple[float, int, QueueJob]] = []
        self._seq = itertools.count()

    def _queue(self, name: str) -> deque[QueueJob]:
        return self._ready.setdefault(name, deque())

    async def connect(self) -> None:
        logger.info("inmemory_queue_connected")

    async def close(self) -> None:
        pass

    async def send(self, queue: str, job: QueueJob) -> None:
        self._queue(queue).append(job)
        logger.debug("message_sent", queue=queue, job_id=job.job_id, action=job.action)

    async def send_delayed(self, job: QueueJob) -> None:
        heapq.heappush(self._delayed, (job.visible_at, next(self._seq), job))

    async def receive(self, queue: str, wait: float = 0) -> Optional[QueueJob]:
        ready = self._queue(queue)
        deadline = time.monotonic() + wait
        while not ready:
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(self.POLL_INTERVAL)
        job = ready.popleft()
        job.receive_count += 1
        return job

    async def ack(self, queue: str, job: QueueJob) -> None:
        pass

    async def drain(self, queue: str, handler: Handler) -> int:
        """Deliver every message currently receivable on ``queue``; returns the count."""
        handled = 0
        while (job := await self.receive(queue)) is not None:
            await self.deliver(queue, job, handler)
            handled += 1
        return handled

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return len(self._delayed)
        return len(self._queue(queue))

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        return list(itertools.islice(self._queue(queue), count))

    async def promote_delayed(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        promoted = 0
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job = heapq.heappop(self._delayed)
            self._queue(Queues.EVENTS).append(job)
            promoted += 1
        if promoted:
            logger.info("delayed_messages_promoted", count=promoted)
        return promoted

    @property
    def delayed_count(self) -> int:
        return len(self._delayed)


def create_message_queue(queue_config: Optional[dict[str, Any]] = None) -> MessageQueue:
    config = queue_config or {}
    backoff = float(config.get("retry_backoff_base", 30))
    if config.get("backend", "memory") == "redis":
        return RedisMessageQueue(config.get("redis_url", "redis://localhost:6379"), backoff)
    return InMemoryMessageQueue(backoff)
