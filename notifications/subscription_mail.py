"""
SubscriptionMail — tells an organizer that someone subscribed to their meetup.

The job payload carries a snapshot of the meetup taken at admission time, so
later edits to the meetup never change what the organizer is told:

  {
      "meetup":    MeetupSnapshot as JSON,
      "user_name": subscriber display name,
  }

handle() renders the mail in the organizer's locale and makes exactly one
Mailer.send call. Retries belong to the queue: a DeliveryFault propagates
untouched, and anything wrong with the payload or the rendering is raised
as PermanentJobError so the job is dead-lettered instead of retried.
"""
from __future__ import annotations

import structlog
from typing import Any

from pydantic import ValidationError

from channels.base import MailMessage, Mailer
from job_queue.message_queue import PermanentJobError, QueueJob
from models.schemas import MeetupSnapshot
from utils.dates import format_meetup_date, normalize_locale

logger = structlog.get_logger()

SUBSCRIPTION_MAIL = "SubscriptionMail"


def build_subscription_job(
    snapshot: MeetupSnapshot, user_name: str, max_attempts: int = 3,
) -> QueueJob:
    return QueueJob(
        kind=SUBSCRIPTION_MAIL,
        payload={
            "meetup": snapshot.model_dump(mode="json"),
            "user_name": user_name,
        },
        max_attempts=max_attempts,
    )


class SubscriptionMail:
    """Renders and sends the organizer notification."""

    key = SUBSCRIPTION_MAIL
    template = "subscription"

    def __init__(
        self,
        mailer: Mailer,
        timezone: str = "America/Sao_Paulo",
        default_locale: str = "pt",
    ):
        self.mailer = mailer
        self.timezone = timezone
        self.default_locale = default_locale

    # ── Rendering ─────────────────────────────────────────────

    def _render_template(self, locale: str, data: dict[str, Any]) -> tuple[str, str]:
        """Returns (subject, body) for the given locale."""
        templates = {
            "pt": (
                "Nova Inscrição",
                f"Olá {data['organizer']},\n\n"
                f"{data['user']} acabou de se inscrever no seu meetup "
                f"\"{data['meetup']}\", que acontece em {data['date']}.\n\n"
                f"Equipe {self.mailer.from_name}",
            ),
            "en": (
                "New Subscription",
                f"Hi {data['organizer']},\n\n"
                f"{data['user']} just subscribed to your meetup "
                f"\"{data['meetup']}\", happening on {data['date']}.\n\n"
                f"The {self.mailer.from_name} team",
            ),
        }
        return templates[locale]

    def render(self, snapshot: MeetupSnapshot, user_name: str, locale: str = "") -> MailMessage:
        locale = normalize_locale(locale or snapshot.organizer_locale, self.default_locale)
        context = {
            "organizer": snapshot.organizer_name,
            "meetup": snapshot.title,
            "user": user_name,
            "date": format_meetup_date(snapshot.scheduled_at, locale, self.timezone),
            "locale": locale,
        }
        subject, body = self._render_template(locale, context)
        return MailMessage(
            to_address=snapshot.organizer_email,
            to_name=snapshot.organizer_name,
            subject=subject,
            template=self.template,
            context=context,
            body=body,
        )

    # ── Execution ─────────────────────────────────────────────

    def _parse(self, job: QueueJob) -> tuple[MeetupSnapshot, str]:
        try:
            snapshot = MeetupSnapshot.model_validate(job.payload["meetup"])
            user_name = str(job.payload["user_name"])
        except (KeyError, TypeError, ValidationError) as e:
            raise PermanentJobError(f"Malformed {self.key} payload: {e}") from e
        if not snapshot.organizer_email:
            raise PermanentJobError(f"Organizer of meetup {snapshot.meetup_id} has no email")
        return snapshot, user_name

    async def handle(self, job: QueueJob) -> dict[str, Any]:
        snapshot, user_name = self._parse(job)
        try:
            message = self.render(snapshot, user_name)
        except Exception as e:
            raise PermanentJobError(f"Could not render {self.key}: {e}") from e

        result = await self.mailer.send(
            to_address=message.to_address,
            to_name=message.to_name,
            subject=message.subject,
            template=message.template,
            context=message.context,
            body=message.body,
        )
        logger.info("subscription_mail_sent",
                    job_id=job.job_id,
                    meetup_id=snapshot.meetup_id,
                    organizer=snapshot.organizer_email,
                    locale=message.context["locale"])
        return result
