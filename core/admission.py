"""
Admission Engine — decides whether a user may subscribe to a meetup.

Checks run in a fixed order and the first failure wins:
  1. the meetup exists                         → NOT_FOUND
  2. the caller is not the organizer           → SELF_SUBSCRIPTION_FORBIDDEN
  3. the meetup has not started yet            → PAST_MEETUP_FORBIDDEN
  4. no subscription to this meetup yet        → ALREADY_SUBSCRIBED
  5. no subscription at the same instant       → SCHEDULE_CONFLICT

Checks 4-5 and the insert run inside the store's per-user section, so two
concurrent requests from the same user can never both pass. On success the
engine hands one SubscriptionMail job to the queue and returns without
waiting for delivery. Rejections are returned as values, never raised.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from backend.connector import MeetupDirectory
from database.store_base import BaseSubscriptionStore, DuplicateSubscriptionError
from job_queue.message_queue import MessageQueue, QueueJob
from models.schemas import (
    AdmissionError, AdmissionResult, Meetup, MeetupSnapshot, Subscription,
    SubscriptionConfirmation,
)
from notifications.subscription_mail import build_subscription_job

logger = structlog.get_logger()


class AdmissionEngine:
    """
    Usage:
        engine = AdmissionEngine(store, directory, queue)
        result = await engine.subscribe(user_id, meetup_id)
        if result.accepted: ...
    """

    def __init__(
        self,
        store: BaseSubscriptionStore,
        directory: MeetupDirectory,
        queue: MessageQueue,
        max_attempts: int = 3,
    ):
        self.store = store
        self.directory = directory
        self.queue = queue
        self.max_attempts = max_attempts
        self._enqueues: set[asyncio.Task] = set()

    async def subscribe(self, user_id: str, meetup_id: str) -> AdmissionResult:
        meetup = await self.directory.get_meetup(meetup_id)
        if meetup is None:
            return self._reject(AdmissionError.NOT_FOUND, user_id, meetup_id)
        if meetup.organizer_id == user_id:
            return self._reject(AdmissionError.SELF_SUBSCRIPTION_FORBIDDEN, user_id, meetup_id)
        if meetup.is_past:
            return self._reject(AdmissionError.PAST_MEETUP_FORBIDDEN, user_id, meetup_id)

        error: Optional[AdmissionError] = None
        subscription: Optional[Subscription] = None
        try:
            async with self.store.subscription_scope(user_id) as scope:
                if await scope.exists(meetup.id):
                    error = AdmissionError.ALREADY_SUBSCRIBED
                elif await scope.has_conflict(meetup.scheduled_at):
                    error = AdmissionError.SCHEDULE_CONFLICT
                else:
                    subscription = await scope.add(meetup.id, meetup.scheduled_at)
        except DuplicateSubscriptionError as e:
            error = (AdmissionError.ALREADY_SUBSCRIBED if e.same_meetup
                     else AdmissionError.SCHEDULE_CONFLICT)

        if error is not None:
            return self._reject(error, user_id, meetup_id)

        logger.info("subscription_created",
                    subscription_id=subscription.id,
                    user_id=user_id,
                    meetup_id=meetup.id,
                    scheduled_at=meetup.scheduled_at.isoformat())

        # Committed. Finish the hand-off even if the caller goes away now.
        task = asyncio.create_task(self._notify_organizer(user_id, meetup))
        self._enqueues.add(task)
        task.add_done_callback(self._enqueues.discard)
        job_id = await asyncio.shield(task)

        return AdmissionResult(
            confirmation=SubscriptionConfirmation(meetup_id=meetup.id, date=meetup.scheduled_at),
            job_id=job_id,
        )

    async def _notify_organizer(self, user_id: str, meetup: Meetup) -> str:
        """Build and enqueue the SubscriptionMail job. Returns the job id, or "" on failure."""
        job: Optional[QueueJob] = None
        try:
            if meetup.organizer is None:
                organizer = await self.directory.get_user(meetup.organizer_id)
                meetup = meetup.model_copy(update={"organizer": organizer})
            user = await self.directory.get_user(user_id)
            user_name = user.name if user and user.name else user_id

            job = build_subscription_job(
                MeetupSnapshot.from_meetup(meetup), user_name, self.max_attempts,
            )
            handle = await self.queue.enqueue(job)
        except Exception as e:
            logger.error("notification_enqueue_failed",
                         user_id=user_id,
                         meetup_id=meetup.id,
                         job_id=job.job_id if job else "",
                         error=str(e))
            return ""

        logger.info("notification_enqueued",
                    job_id=handle.job_id,
                    meetup_id=meetup.id,
                    user_id=user_id)
        return handle.job_id

    async def drain(self) -> None:
        """Wait for in-flight enqueues (used at shutdown)."""
        if self._enqueues:
            await asyncio.gather(*self._enqueues, return_exceptions=True)

    def _reject(self, error: AdmissionError, user_id: str, meetup_id: str) -> AdmissionResult:
        logger.info("subscription_rejected",
                    user_id=user_id,
                    meetup_id=meetup_id,
                    reason=error.value)
        return AdmissionResult.rejected(error)
