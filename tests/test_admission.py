"""
Tests for the admission engine:
- Ordered checks and their user-facing messages
- One write + one job on success, nothing on rejection
- Concurrent admissions for the same user
- Enqueue failures and caller cancellation after commit
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from models.schemas import AdmissionError


async def _dispatch_jobs(queue):
    from job_queue.message_queue import Queues
    return await queue.peek(Queues.NOTIFY, 100)


# ══════════════════════════════════════════════════════════════
#  Ordered checks
# ══════════════════════════════════════════════════════════════

class TestAdmissionChecks:

    @pytest.mark.asyncio
    async def test_unknown_meetup_is_not_found(self, engine):
        result = await engine.subscribe("3", "does-not-exist")
        assert not result.accepted
        assert result.error == AdmissionError.NOT_FOUND
        assert result.error.message == "Meetup not found"

    @pytest.mark.asyncio
    async def test_organizer_cannot_subscribe_to_own_meetup(self, engine, store):
        result = await engine.subscribe("1", "m_react")
        assert result.error == AdmissionError.SELF_SUBSCRIPTION_FORBIDDEN
        assert await store.count_subscriptions("1") == 0

    @pytest.mark.asyncio
    async def test_past_meetup_is_forbidden(self, engine, store):
        result = await engine.subscribe("3", "m_past")
        assert result.error == AdmissionError.PAST_MEETUP_FORBIDDEN
        assert result.error.message == "You can't subscribe to past meetups"
        assert await store.count_subscriptions("3") == 0

    @pytest.mark.asyncio
    async def test_self_check_runs_before_past_check(self, engine):
        # m_past belongs to user 1: both rules apply, the organizer rule wins
        result = await engine.subscribe("1", "m_past")
        assert result.error == AdmissionError.SELF_SUBSCRIPTION_FORBIDDEN

    @pytest.mark.asyncio
    async def test_second_subscription_is_already_subscribed(self, engine, store):
        first = await engine.subscribe("3", "m_react")
        second = await engine.subscribe("3", "m_react")
        assert first.accepted
        assert second.error == AdmissionError.ALREADY_SUBSCRIBED
        assert await store.count_subscriptions("3", "m_react") == 1

    @pytest.mark.asyncio
    async def test_same_instant_is_schedule_conflict(self, engine, store):
        first = await engine.subscribe("3", "m_react")
        second = await engine.subscribe("3", "m_python")
        assert first.accepted
        assert second.error == AdmissionError.SCHEDULE_CONFLICT
        assert second.error.message == "You can't subscribe to two meetups at the same time"
        assert await store.count_subscriptions("3") == 1

    @pytest.mark.asyncio
    async def test_different_instants_do_not_conflict(self, engine, store):
        assert (await engine.subscribe("3", "m_react")).accepted
        assert (await engine.subscribe("3", "m_workshop")).accepted
        assert await store.count_subscriptions("3") == 2

    @pytest.mark.asyncio
    async def test_conflict_is_per_user(self, engine):
        assert (await engine.subscribe("3", "m_react")).accepted
        # user 1 organizes m_react but not m_python
        assert (await engine.subscribe("1", "m_python")).accepted


# ══════════════════════════════════════════════════════════════
#  Side effects
# ══════════════════════════════════════════════════════════════

class TestAdmissionSideEffects:

    @pytest.mark.asyncio
    async def test_success_returns_confirmation(self, engine, meetups):
        result = await engine.subscribe("3", "m_react")
        assert result.accepted
        assert result.error is None
        assert result.confirmation.meetup_id == "m_react"
        assert result.confirmation.date == meetups[0].scheduled_at
        assert result.job_id.startswith("job_")

    @pytest.mark.asyncio
    async def test_success_enqueues_one_job_with_snapshot(self, engine, queue, meetups):
        result = await engine.subscribe("3", "m_react")
        jobs = await _dispatch_jobs(queue)
        assert len(jobs) == 1

        job = jobs[0]
        assert job.job_id == result.job_id
        assert job.kind == "SubscriptionMail"
        assert job.payload["user_name"] == "Grace Hopper"
        snapshot = job.payload["meetup"]
        assert snapshot["meetup_id"] == "m_react"
        assert snapshot["title"] == "React Native Meetup"
        assert snapshot["organizer_name"] == "Diego Fernandes"
        assert snapshot["organizer_email"] == "diego@meetapp.com"
        assert snapshot["organizer_locale"] == "pt-BR"

    @pytest.mark.asyncio
    async def test_snapshot_is_not_affected_by_later_meetup_edits(self, engine, store, queue, meetups):
        await engine.subscribe("3", "m_react")
        await store.upsert_meetup(meetups[0].model_copy(update={"title": "Renamed"}))
        jobs = await _dispatch_jobs(queue)
        assert jobs[0].payload["meetup"]["title"] == "React Native Meetup"

    @pytest.mark.asyncio
    async def test_rejections_write_nothing_and_enqueue_nothing(self, engine, store, queue):
        await engine.subscribe("3", "does-not-exist")
        await engine.subscribe("1", "m_react")
        await engine.subscribe("3", "m_past")
        assert await store.count_subscriptions("3") == 0
        assert await store.count_subscriptions("1") == 0
        assert await _dispatch_jobs(queue) == []

    @pytest.mark.asyncio
    async def test_unknown_subscriber_name_falls_back_to_id(self, engine, queue):
        result = await engine.subscribe("ghost", "m_react")
        assert result.accepted
        jobs = await _dispatch_jobs(queue)
        assert jobs[0].payload["user_name"] == "ghost"

    @pytest.mark.asyncio
    async def test_enqueue_failure_does_not_fail_admission(self, engine, store, queue):
        queue.publish = AsyncMock(side_effect=ConnectionError("redis down"))
        result = await engine.subscribe("3", "m_react")
        assert result.accepted
        assert result.job_id == ""
        assert await store.count_subscriptions("3", "m_react") == 1

    @pytest.mark.asyncio
    async def test_result_to_dict(self, engine):
        ok = await engine.subscribe("3", "m_react")
        rejected = await engine.subscribe("3", "m_react")
        assert ok.to_dict()["status"] == "accepted"
        assert ok.to_dict()["meetup_id"] == "m_react"
        assert rejected.to_dict() == {
            "status": "rejected",
            "error": "already_subscribed",
            "message": "You are already subscribed to this meetup",
        }


# ══════════════════════════════════════════════════════════════
#  Concurrency & cancellation
# ══════════════════════════════════════════════════════════════

class TestAdmissionConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_admit_once(self, engine, store, queue):
        results = await asyncio.gather(*[engine.subscribe("3", "m_react") for _ in range(10)])
        accepted = [r for r in results if r.accepted]
        rejected = [r for r in results if not r.accepted]
        assert len(accepted) == 1
        assert len(rejected) == 9
        assert all(r.error == AdmissionError.ALREADY_SUBSCRIBED for r in rejected)
        assert await store.count_subscriptions("3", "m_react") == 1
        assert len(await _dispatch_jobs(queue)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_same_instant_requests_admit_once(self, engine, store):
        results = await asyncio.gather(
            engine.subscribe("3", "m_react"),
            engine.subscribe("3", "m_python"),
        )
        errors = [r.error for r in results if not r.accepted]
        assert sum(r.accepted for r in results) == 1
        assert errors == [AdmissionError.SCHEDULE_CONFLICT]
        assert await store.count_subscriptions("3") == 1

    @pytest.mark.asyncio
    async def test_different_users_are_independent(self, engine, store):
        results = await asyncio.gather(
            engine.subscribe("2", "m_react"),
            engine.subscribe("3", "m_react"),
        )
        assert all(r.accepted for r in results)

    @pytest.mark.asyncio
    async def test_enqueue_completes_after_caller_cancelled(self, engine, store, queue):
        release = asyncio.Event()
        real_publish = queue.publish

        async def slow_publish(name, job):
            await release.wait()
            await real_publish(name, job)

        queue.publish = slow_publish
        task = asyncio.create_task(engine.subscribe("3", "m_react"))
        for _ in range(200):
            if await store.count_subscriptions("3", "m_react"):
                break
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        release.set()
        await engine.drain()
        assert await store.count_subscriptions("3", "m_react") == 1
        assert len(await _dispatch_jobs(queue)) == 1
