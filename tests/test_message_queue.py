"""
Tests for the message queue layer:
- QueueJob serialization and retry scheduling
- enqueue() bounded publish retries
- nack routing: retry, exhaustion, permanent failure
- In-memory delayed promotion and stats
- Redis consume loop: per-entry ack, undecodable entries, reclaiming idle entries
- Factory / singleton
"""
import json
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from job_queue.message_queue import (
    EnqueueError, InMemoryMessageQueue, PermanentJobError, QueueJob, Queues,
)


@pytest.fixture
def job():
    return QueueJob(
        kind="SubscriptionMail",
        payload={"meetup": {"meetup_id": "m1", "title": "Meetup"}, "user_name": "Grace"},
        max_attempts=3,
    )


# ──────────────────────────────────────────────────────────────
#  QueueJob
# ──────────────────────────────────────────────────────────────

class TestQueueJob:

    def test_defaults(self, job):
        assert job.job_id.startswith("job_")
        assert job.attempt == 0
        assert job.scheduled_at == job.created_at
        assert job.is_scheduled_now

    def test_redis_fields_are_strings(self, job):
        fields = job.to_dict()
        assert all(isinstance(v, str) for v in fields.values())
        restored = QueueJob.from_dict(fields)
        assert restored.payload == job.payload
        assert restored.max_attempts == 3

    def test_from_dict_ignores_unknown_fields(self, job):
        fields = {**job.to_dict(), "legacy_field": "x"}
        assert QueueJob.from_dict(fields).job_id == job.job_id

    def test_next_retry_job_backs_off_exponentially(self, job):
        first = job.next_retry_job(backoff_seconds=60, error="smtp down")
        second = first.next_retry_job(backoff_seconds=60)

        now = datetime.now(timezone.utc).timestamp()
        assert first.attempt == 1
        assert first.job_id == job.job_id
        assert first.metadata["last_error"] == "smtp down"
        assert 50 <= first.scheduled_ts - now <= 70
        assert 110 <= second.scheduled_ts - now <= 130
        assert not first.is_scheduled_now

    def test_exhausted(self, job):
        assert not job.exhausted
        assert job.next_retry_job(0).next_retry_job(0).exhausted


# ──────────────────────────────────────────────────────────────
#  enqueue()
# ──────────────────────────────────────────────────────────────

class TestEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_returns_handle(self, job):
        q = InMemoryMessageQueue()
        handle = await q.enqueue(job)
        assert handle.job_id == job.job_id
        assert handle.queue == Queues.NOTIFY
        assert await q.queue_length(Queues.NOTIFY) == 1

    @pytest.mark.asyncio
    async def test_enqueue_retries_transient_publish_errors(self, job):
        q = InMemoryMessageQueue(enqueue_attempts=3)
        q.publish = AsyncMock(side_effect=[ConnectionError("blip"), None])
        handle = await q.enqueue(job)
        assert handle.job_id == job.job_id
        assert q.publish.call_count == 2

    @pytest.mark.asyncio
    async def test_enqueue_gives_up_after_bounded_attempts(self, job):
        q = InMemoryMessageQueue(enqueue_attempts=2)
        q.publish = AsyncMock(side_effect=ConnectionError("down"))
        with pytest.raises(EnqueueError):
            await q.enqueue(job)
        assert q.publish.call_count == 2


# ──────────────────────────────────────────────────────────────
#  nack routing
# ──────────────────────────────────────────────────────────────

class TestNack:

    @pytest.mark.asyncio
    async def test_nack_schedules_retry(self, job):
        q = InMemoryMessageQueue(retry_backoff_base=60)
        await q.nack(Queues.NOTIFY, job, ConnectionError("smtp down"))
        assert await q.delayed_count() == 1
        assert await q.queue_length(Queues.DLQ) == 0

        # not due yet
        await q.promote_delayed()
        assert await q.queue_length(Queues.NOTIFY) == 0

    @pytest.mark.asyncio
    async def test_due_retry_is_promoted(self, job):
        q = InMemoryMessageQueue(retry_backoff_base=0)
        await q.nack(Queues.NOTIFY, job, ConnectionError("smtp down"))
        await q.promote_delayed()
        promoted = await q.peek(Queues.NOTIFY)
        assert len(promoted) == 1
        assert promoted[0].job_id == job.job_id
        assert promoted[0].attempt == 1
        assert await q.delayed_count() == 0

    @pytest.mark.asyncio
    async def test_exhausted_job_moves_to_dlq(self, job):
        q = InMemoryMessageQueue()
        job.attempt = job.max_attempts - 1
        await q.nack(Queues.NOTIFY, job, ConnectionError("smtp down"))
        assert await q.delayed_count() == 0
        dead = await q.dead_letters()
        assert len(dead) == 1
        assert "Exceeded 3 attempts" in dead[0].metadata["dlq_reason"]
        assert "dead_lettered_at" in dead[0].metadata

    @pytest.mark.asyncio
    async def test_permanent_error_skips_retries(self, job):
        q = InMemoryMessageQueue()
        await q.nack(Queues.NOTIFY, job, PermanentJobError("bad payload"))
        assert await q.delayed_count() == 0
        dead = await q.dead_letters()
        assert dead[0].metadata["dlq_reason"] == "Permanent failure: bad payload"

    @pytest.mark.asyncio
    async def test_stats(self, job):
        q = InMemoryMessageQueue()
        await q.enqueue(job)
        await q.nack(Queues.NOTIFY, QueueJob(kind="x"), PermanentJobError("no"))
        stats = await q.stats()
        assert stats == {
            "backend": "InMemoryMessageQueue",
            "dispatch": 1,
            "delayed": 0,
            "dead_letter": 1,
        }


# ──────────────────────────────────────────────────────────────
#  Redis consume loop (client mocked)
# ──────────────────────────────────────────────────────────────

class TestRedisConsume:

    @pytest.fixture
    def redis_queue(self):
        from job_queue.message_queue import RedisMessageQueue
        q = RedisMessageQueue(retry_backoff_base=0, claim_idle_seconds=30)
        q._redis = AsyncMock()
        q._redis.xautoclaim.return_value = ["0-0", [], []]
        return q

    @pytest.mark.asyncio
    async def test_success_is_acked(self, redis_queue, job):
        handler = AsyncMock()
        await redis_queue._process_message(Queues.NOTIFY, "workers", "1-0", job.to_dict(), handler)
        assert handler.await_args.args[0].job_id == job.job_id
        redis_queue._redis.xack.assert_awaited_once_with(Queues.NOTIFY, "workers", "1-0")

    @pytest.mark.asyncio
    async def test_failure_is_rescheduled_then_acked(self, redis_queue, job):
        handler = AsyncMock(side_effect=ConnectionError("smtp down"))
        await redis_queue._process_message(Queues.NOTIFY, "workers", "1-0", job.to_dict(), handler)
        redis_queue._redis.zadd.assert_awaited_once()
        redis_queue._redis.xack.assert_awaited_once_with(Queues.NOTIFY, "workers", "1-0")

    @pytest.mark.asyncio
    async def test_unrecorded_failure_stays_pending(self, redis_queue, job):
        redis_queue._redis.zadd.side_effect = ConnectionError("redis blip")
        handler = AsyncMock(side_effect=ConnectionError("smtp down"))
        await redis_queue._process_message(Queues.NOTIFY, "workers", "1-0", job.to_dict(), handler)
        redis_queue._redis.xack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_undecodable_entry_is_dead_lettered_and_acked(self, redis_queue):
        handler = AsyncMock()
        fields = {"kind": "SubscriptionMail", "payload": "{not json"}
        await redis_queue._process_message(Queues.NOTIFY, "workers", "7-0", fields, handler)

        handler.assert_not_awaited()
        queue_name, dead = redis_queue._redis.xadd.await_args.args
        assert queue_name == Queues.DLQ
        metadata = json.loads(dead["metadata"])
        assert metadata["dlq_reason"].startswith("Undecodable message")
        assert metadata["raw"] == fields
        redis_queue._redis.xack.assert_awaited_once_with(Queues.NOTIFY, "workers", "7-0")

    @pytest.mark.asyncio
    async def test_consume_reclaims_idle_entries(self, redis_queue, job):
        claims = [["0-0", [("1-0", job.to_dict()), ("2-0", None)], []]]

        async def autoclaim(*args, **kwargs):
            return claims.pop(0) if claims else ["0-0", [], []]

        async def read(**kwargs):
            redis_queue.stop_consuming()
            return []

        redis_queue._redis.xautoclaim.side_effect = autoclaim
        redis_queue._redis.xreadgroup.side_effect = read
        handler = AsyncMock()

        await redis_queue.consume(Queues.NOTIFY, handler, consumer_group="workers",
                                  consumer_name="w1")

        assert handler.await_count == 1
        assert handler.await_args.args[0].job_id == job.job_id
        assert redis_queue._redis.xautoclaim.await_args.kwargs["min_idle_time"] == 30000
        acked = [c.args for c in redis_queue._redis.xack.await_args_list]
        assert (Queues.NOTIFY, "workers", "2-0") in acked
        assert (Queues.NOTIFY, "workers", "1-0") in acked


# ──────────────────────────────────────────────────────────────
#  Queue Factory
# ──────────────────────────────────────────────────────────────

class TestQueueFactory:
    def setup_method(self):
        from job_queue.message_queue import reset_message_queue
        reset_message_queue()

    def teardown_method(self):
        from job_queue.message_queue import reset_message_queue
        reset_message_queue()

    def test_memory_queue_default(self):
        from job_queue.message_queue import create_message_queue
        q = create_message_queue({"backend": "memory"})
        assert isinstance(q, InMemoryMessageQueue)

    def test_redis_queue_selected(self):
        from job_queue.message_queue import create_message_queue, RedisMessageQueue
        q = create_message_queue({"backend": "redis", "redis_url": "redis://cache:6379"})
        assert isinstance(q, RedisMessageQueue)
        assert q._redis_url == "redis://cache:6379"
        assert q._claim_idle_ms == 60000

    def test_config_is_applied(self):
        from job_queue.message_queue import create_message_queue
        q = create_message_queue({"retry_backoff_base": 5, "enqueue_attempts": 7})
        assert q.retry_backoff_base == 5
        assert q.enqueue_attempts == 7

    def test_singleton(self):
        from job_queue.message_queue import create_message_queue, get_message_queue
        q = create_message_queue()
        assert get_message_queue() is q
