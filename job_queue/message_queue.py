"""
Message Queue — Abstract interface with Redis Streams and in-memory backends.

Queue Topology:
  notifications:dispatch — Jobs ready for immediate execution
  notifications:delayed  — Retries waiting for their backoff to elapse (sorted set in Redis)
  notifications:dlq      — Dead-letter queue for jobs that will not be retried

Message Schema:
  {
      "job_id":       unique job identifier (stable across retries),
      "kind":         handler key, e.g. "SubscriptionMail",
      "payload":      JSON-encoded job data,
      "attempt":      current attempt number (for retries),
      "max_attempts": ceiling before DLQ,
      "scheduled_at": ISO timestamp when the job should execute,
      "created_at":   ISO timestamp when the job was enqueued,
      "metadata":     JSON-encoded extra data (last error, dlq_reason, ...),
  }
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class EnqueueError(Exception):
    """The queue backend refused a job after all publish attempts."""


class PermanentJobError(Exception):
    """A job that can never succeed (bad payload, render failure). Goes straight to the DLQ."""


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueJob:
    """A unit of work on the queue."""
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0
    max_attempts: int = 3
    scheduled_at: str = ""
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = _utcnow().isoformat()
        if not self.scheduled_at:
            self.scheduled_at = self.created_at

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["payload"] = json.dumps(d["payload"])
        d["metadata"] = json.dumps(d["metadata"])
        d["attempt"] = str(d["attempt"])
        d["max_attempts"] = str(d["max_attempts"])
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)  # copy
        if isinstance(data.get("payload"), str):
            data["payload"] = json.loads(data["payload"])
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"])
        data["attempt"] = int(data.get("attempt", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @property
    def scheduled_ts(self) -> float:
        try:
            return datetime.fromisoformat(self.scheduled_at).timestamp()
        except ValueError:
            return 0.0

    @property
    def is_scheduled_now(self) -> bool:
        return self.scheduled_ts <= _utcnow().timestamp()

    @property
    def exhausted(self) -> bool:
        return self.attempt + 1 >= self.max_attempts

    def next_retry_job(self, backoff_seconds: int = 60, error: str = "") -> QueueJob:
        """Create a copy with incremented attempt and backoff delay."""
        retry_at = _utcnow() + timedelta(
            seconds=backoff_seconds * (2 ** self.attempt)  # exponential backoff
        )
        return QueueJob(
            kind=self.kind,
            payload=self.payload,
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            scheduled_at=retry_at.isoformat(),
            created_at=self.created_at,
            metadata={**self.metadata, "last_failure_at": _utcnow().isoformat(), "last_error": error},
            job_id=self.job_id,  # same job_id across retries for tracing
        )


@dataclass(frozen=True)
class JobHandle:
    """Returned by enqueue(); the caller never waits on the job itself."""
    job_id: str
    queue: str
    enqueued_at: str


JobHandler = Callable[[QueueJob], Awaitable[Any]]


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    NOTIFY = "notifications:dispatch"
    DELAYED = "notifications:delayed"
    DLQ = "notifications:dlq"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract message queue interface."""

    def __init__(self, retry_backoff_base: int = 60, enqueue_attempts: int = 3):
        self.retry_backoff_base = retry_backoff_base
        self.enqueue_attempts = enqueue_attempts
        self._running = False

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def publish(self, queue: str, job: QueueJob):
        """Publish a job to a queue."""
        ...

    @abstractmethod
    async def publish_delayed(self, job: QueueJob):
        """Publish a job that should execute at job.scheduled_at."""
        ...

    @abstractmethod
    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        """
        Start consuming from a queue. Blocks and calls handler for each job,
        one at a time. A handler exception never ends the loop; the job is
        nacked instead.
        """
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Return the number of pending jobs in a queue."""
        ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        """Peek at jobs without consuming them."""
        ...

    @abstractmethod
    async def promote_delayed(self):
        """Move delayed jobs whose scheduled_at has arrived to the dispatch queue."""
        ...

    @abstractmethod
    async def delayed_count(self) -> int:
        ...

    # ── Shared behaviour ──────────────────────────────────────

    async def enqueue(self, job: QueueJob) -> JobHandle:
        """
        Hand a job to the backend. Returns once the backend has accepted it;
        never waits for the job to run. Publish errors are retried with
        exponential backoff before EnqueueError is raised.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.enqueue_attempts),
                wait=wait_exponential(multiplier=0.2, max=2),
                reraise=True,
            ):
                with attempt:
                    await self.publish(Queues.NOTIFY, job)
        except Exception as e:
            logger.error("job_enqueue_failed",
                         job_id=job.job_id,
                         kind=job.kind,
                         attempts=self.enqueue_attempts,
                         error=str(e))
            raise EnqueueError(f"Could not enqueue {job.kind} job {job.job_id}: {e}") from e
        return JobHandle(job_id=job.job_id, queue=Queues.NOTIFY, enqueued_at=_utcnow().isoformat())

    async def nack(self, queue: str, job: QueueJob, error: Optional[BaseException] = None):
        """Negative-acknowledge — route to retry or DLQ."""
        reason = str(error) if error else "unknown"
        if isinstance(error, PermanentJobError):
            await self.dead_letter(job, f"Permanent failure: {reason}")
        elif job.exhausted:
            await self.dead_letter(job, f"Exceeded {job.max_attempts} attempts: {reason}")
        else:
            retry_job = job.next_retry_job(self.retry_backoff_base, error=reason)
            await self.publish_delayed(retry_job)
            logger.info("job_scheduled_for_retry",
                        job_id=job.job_id,
                        attempt=retry_job.attempt,
                        scheduled_at=retry_job.scheduled_at)

    async def dead_letter(self, job: QueueJob, reason: str):
        job.metadata["dlq_reason"] = reason
        job.metadata["dead_lettered_at"] = _utcnow().isoformat()
        await self.publish(Queues.DLQ, job)
        logger.warning("job_moved_to_dlq",
                       job_id=job.job_id,
                       kind=job.kind,
                       attempts=job.attempt + 1,
                       reason=reason)

    async def dead_letters(self, count: int = 50) -> list[QueueJob]:
        return await self.peek(Queues.DLQ, count)

    def stop_consuming(self):
        self._running = False

    async def stats(self) -> dict[str, Any]:
        return {
            "backend": type(self).__name__,
            "dispatch": await self.queue_length(Queues.NOTIFY),
            "delayed": await self.delayed_count(),
            "dead_letter": await self.queue_length(Queues.DLQ),
        }


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - Dispatch queue uses a Redis Stream with consumer groups
    - Delayed queue uses a Redis Sorted Set (ZRANGEBYSCORE for promotion)
    - DLQ uses a Redis Stream for inspection
    - Entries left unacked longer than claim_idle_seconds are reclaimed (XAUTOCLAIM)
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        claim_idle_seconds: float = 60,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._redis_url = redis_url
        self._claim_idle_ms = int(claim_idle_seconds * 1000)
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.aclose()

    async def _ensure_group(self, queue: str, group: str):
        """Create consumer group if it doesn't exist."""
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, queue: str, job: QueueJob):
        await self._redis.xadd(queue, job.to_dict())
        logger.info("job_published",
                     queue=queue,
                     job_id=job.job_id,
                     kind=job.kind)

    async def publish_delayed(self, job: QueueJob):
        payload = json.dumps(job.to_dict())
        await self._redis.zadd(Queues.DELAYED, {payload: job.scheduled_ts})
        logger.info("delayed_job_published",
                     job_id=job.job_id,
                     scheduled_at=job.scheduled_at)

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self._ensure_group(queue, consumer_group)
        self._running = True
        logger.info("consumer_started",
                     queue=queue,
                     group=consumer_group,
                     consumer=consumer_name)

        while self._running:
            try:
                batch = await self._claim_stale(queue, consumer_group, consumer_name, batch_size)
                if not batch:
                    messages = await self._redis.xreadgroup(
                        groupname=consumer_group,
                        consumername=consumer_name,
                        streams={queue: ">"},
                        count=batch_size,
                        block=2000,  # block 2s waiting for messages
                    )
                    batch = [entry for _, entries in messages or [] for entry in entries]

                for message_id, fields in batch:
                    await self._process_message(queue, consumer_group, message_id, fields, handler)

            except asyncio.CancelledError:
                break
            except Exception as e:
                # unacked entries stay pending and are reclaimed once idle
                logger.error("consumer_error", queue=queue, error=str(e))
                await asyncio.sleep(1)

    async def _claim_stale(
        self, queue: str, group: str, consumer: str, count: int,
    ) -> list[tuple[str, dict[str, str]]]:
        """Take over entries another worker read but never acked (crash, lost nack)."""
        result = await self._redis.xautoclaim(
            queue, group, consumer,
            min_idle_time=self._claim_idle_ms,
            start_id="0-0",
            count=count,
        )
        entries = result[1]
        gone = [message_id for message_id, fields in entries if not fields]
        if gone:
            # trimmed from the stream while pending; nothing left to run
            await self._redis.xack(queue, group, *gone)
        claimed = [(message_id, fields) for message_id, fields in entries if fields]
        if claimed:
            logger.warning("stale_jobs_reclaimed",
                           queue=queue,
                           consumer=consumer,
                           count=len(claimed))
        return claimed

    async def _process_message(
        self,
        queue: str,
        group: str,
        message_id: str,
        fields: dict[str, str],
        handler: JobHandler,
    ):
        """Run one stream entry and ack it once its outcome is recorded."""
        try:
            job = QueueJob.from_dict(fields)
        except (ValueError, TypeError) as e:
            logger.error("job_decode_failed", queue=queue, message_id=message_id, error=str(e))
            broken = QueueJob(
                kind=fields.get("kind", "unknown"),
                metadata={"message_id": message_id, "raw": dict(fields)},
            )
            await self.dead_letter(broken, f"Undecodable message: {e}")
            await self._redis.xack(queue, group, message_id)
            return

        try:
            await handler(job)
        except Exception as e:
            logger.error("job_handler_error",
                         job_id=job.job_id,
                         error=str(e))
            try:
                await self.nack(queue, job, e)
            except Exception as nack_error:
                # not acked: the entry stays pending until _claim_stale picks it up
                logger.error("job_nack_failed",
                             job_id=job.job_id,
                             message_id=message_id,
                             error=str(nack_error))
                return
        await self._redis.xack(queue, group, message_id)

    async def queue_length(self, queue: str) -> int:
        return await self._redis.xlen(queue)

    async def delayed_count(self) -> int:
        return await self._redis.zcard(Queues.DELAYED)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        messages = await self._redis.xrange(queue, count=count)
        return [QueueJob.from_dict(fields) for _, fields in messages]

    async def promote_delayed(self):
        """Move jobs whose scheduled_at <= now from sorted set to dispatch stream."""
        now = _utcnow().timestamp()
        ready = await self._redis.zrangebyscore(Queues.DELAYED, "-inf", now)

        if not ready:
            return

        pipe = self._redis.pipeline()
        for payload in ready:
            job = QueueJob.from_dict(json.loads(payload))
            pipe.xadd(Queues.NOTIFY, job.to_dict())
            pipe.zrem(Queues.DELAYED, payload)
        await pipe.execute()

        logger.info("delayed_jobs_promoted", count=len(ready))


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no consumer groups or persistence.
    """

    def __init__(self, promote_interval: float = 5.0, **kwargs):
        super().__init__(**kwargs)
        self._queues: dict[str, asyncio.Queue] = {}
        self._delayed: list[tuple[float, QueueJob]] = []  # (timestamp, job)
        self._dlq: list[QueueJob] = []
        self._promote_interval = promote_interval
        self._delayed_promoter_task: Optional[asyncio.Task] = None

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def connect(self):
        # asyncio.Queue binds to the first loop that waits on it; rebuild on reconnect
        for name, old in list(self._queues.items()):
            fresh: asyncio.Queue = asyncio.Queue()
            while not old.empty():
                fresh.put_nowait(old.get_nowait())
            self._queues[name] = fresh
        self._delayed_promoter_task = asyncio.create_task(self._promote_loop())
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False
        if self._delayed_promoter_task:
            self._delayed_promoter_task.cancel()
            try:
                await self._delayed_promoter_task
            except asyncio.CancelledError:
                pass
            self._delayed_promoter_task = None

    async def publish(self, queue: str, job: QueueJob):
        if queue == Queues.DLQ:
            self._dlq.append(job)
            return
        q = self._get_queue(queue)
        await q.put(job)
        logger.info("job_published",
                     queue=queue,
                     job_id=job.job_id,
                     kind=job.kind)

    async def publish_delayed(self, job: QueueJob):
        self._delayed.append((job.scheduled_ts, job))
        self._delayed.sort(key=lambda x: x[0])
        logger.info("delayed_job_published",
                     job_id=job.job_id,
                     scheduled_at=job.scheduled_at)

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        q = self._get_queue(queue)
        self._running = True
        logger.info("consumer_started", queue=queue, consumer=consumer_name)

        while self._running:
            try:
                job = await asyncio.wait_for(q.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            try:
                await handler(job)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("job_handler_error",
                             job_id=job.job_id,
                             error=str(e))
                await self.nack(queue, job, e)
            finally:
                q.task_done()

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DLQ:
            return len(self._dlq)
        return self._get_queue(queue).qsize()

    async def delayed_count(self) -> int:
        return len(self._delayed)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        if queue == Queues.DLQ:
            return list(self._dlq[:count])
        q = self._get_queue(queue)
        # asyncio.Queue has no peek; read the underlying deque
        return list(q._queue)[:count]

    async def promote_delayed(self):
        ready, waiting = [], []
        for entry in self._delayed:
            (ready if entry[1].is_scheduled_now else waiting).append(entry)
        self._delayed = waiting

        for _, job in ready:
            await self.publish(Queues.NOTIFY, job)

        if ready:
            logger.info("delayed_jobs_promoted", count=len(ready))

    async def _promote_loop(self):
        """Background loop to promote delayed jobs."""
        while True:
            try:
                await self.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self._promote_interval)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    common = {
        "retry_backoff_base": config.get("retry_backoff_base", 60),
        "enqueue_attempts": config.get("enqueue_attempts", 3),
    }

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        _instance = RedisMessageQueue(
            redis_url=url,
            claim_idle_seconds=config.get("claim_idle_seconds", 60),
            **common,
        )
    else:
        _instance = InMemoryMessageQueue(
            promote_interval=config.get("delayed_promote_interval", 5), **common,
        )

    return _instance


def get_message_queue() -> MessageQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
