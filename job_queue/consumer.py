"""
Queue Consumer — Pulls notification jobs from the queue and runs their handlers.

Runs as one or more async tasks inside the application process.
For horizontal scaling, deploy multiple processes with the same consumer_group;
Redis Streams guarantees each job is delivered to exactly one consumer.

Topology:
  ┌──────────────┐       ┌─────────────────┐       ┌────────────┐
  │  Admission   │──pub──▶│ dispatch queue   │──────▶│  Consumer  │
  │  Engine      │       │ (Redis Stream)   │       │  Worker(s) │
  └──────────────┘       └─────────────────┘       └─────┬──────┘
                                                          │
                         ┌─────────────────┐              │
                         │ delayed (sorted  │◀── retry ───┤
                         │  set / promoter) │              │
                         └────────┬────────┘              │
                                  │ promote               │
                                  ▼                       │
                         ┌─────────────────┐              │
                         │ dispatch queue   │              │
                         └─────────────────┘              │
                                                          │
                         ┌─────────────────┐              │
                         │  DLQ            │◀── exhaust ──┘
                         └─────────────────┘
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from channels.base import MessageDeduplicator
from job_queue.message_queue import (
    JobHandler, MessageQueue, PermanentJobError, QueueJob, Queues,
    get_message_queue,
)

logger = structlog.get_logger()


class NotificationConsumer:
    """
    Consumes jobs from the dispatch queue and routes each one to the handler
    registered for its kind.

    Usage:
        consumer = NotificationConsumer(queue)
        consumer.register("SubscriptionMail", mail_job.handle)
        await consumer.start()             # blocks, runs until stop()
        await consumer.start_background()  # returns immediately, runs as task(s)
        await consumer.stop()
    """

    def __init__(
        self,
        queue: MessageQueue = None,
        consumer_group: str = "notification-workers",
        consumer_name: str = "",
        concurrency: int = 1,
        dedup_ttl_seconds: float = 3600.0,
    ):
        self.queue = queue or get_message_queue()
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or "worker"
        self.concurrency = max(1, concurrency)
        self._handlers: dict[str, JobHandler] = {}
        self._completed = MessageDeduplicator(ttl_seconds=dedup_ttl_seconds)
        self._tasks: list[asyncio.Task] = []
        self.processed = 0
        self.failed = 0

    def register(self, kind: str, handler: JobHandler) -> None:
        self._handlers[kind] = handler
        logger.info("job_handler_registered", kind=kind)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self, worker_index: int = 0):
        """Start consuming — blocks until stop() is called."""
        logger.info("notification_consumer_starting",
                    group=self.consumer_group,
                    consumer=self.consumer_name,
                    worker=worker_index)

        await self.queue.consume(
            queue=Queues.NOTIFY,
            handler=self._handle_job,
            consumer_group=self.consumer_group,
            consumer_name=f"{self.consumer_name}-{worker_index}",
        )

    async def start_background(self) -> list[asyncio.Task]:
        """Start `concurrency` consumer loops as background tasks."""
        for i in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self.start(worker_index=i)))
        return list(self._tasks)

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        self.queue.stop_consuming()
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("notification_consumer_stopped",
                    processed=self.processed,
                    failed=self.failed)

    async def _handle_job(self, job: QueueJob):
        """
        Process a single job.

        Flow:
        1. Skip job ids that already completed (redelivery after a crash)
        2. Look up the handler for job.kind; unknown kinds are permanent failures
        3. Run the handler; on success remember the job id
        4. On failure re-raise so the queue layer nacks (retry or DLQ)
        """
        if self._completed.seen(job.job_id):
            logger.info("job_duplicate_skipped", job_id=job.job_id, kind=job.kind)
            return

        logger.info("processing_job",
                    job_id=job.job_id,
                    kind=job.kind,
                    attempt=job.attempt)

        handler = self._handlers.get(job.kind)
        if handler is None:
            self.failed += 1
            raise PermanentJobError(f"No handler registered for job kind {job.kind!r}")

        try:
            await handler(job)
        except Exception as e:
            self.failed += 1
            logger.warning("job_processing_error",
                           job_id=job.job_id,
                           kind=job.kind,
                           attempt=job.attempt,
                           error=str(e))
            raise  # route to nack

        self._completed.mark(job.job_id)
        self.processed += 1
        logger.info("job_completed", job_id=job.job_id, kind=job.kind)


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically moves retry jobs whose scheduled_at
    has arrived into the dispatch queue.

    For Redis: runs ZRANGEBYSCORE + XADD pipeline.
    For in-memory: already handled inside InMemoryMessageQueue.
    """

    def __init__(self, queue: MessageQueue = None, interval_seconds: float = 5):
        self.queue = queue or get_message_queue()
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
