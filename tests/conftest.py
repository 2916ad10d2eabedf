"""Shared test fixtures for the Meetapp subscription service."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone

from models.schemas import Meetup, User


def _future(days: int, hour: int = 21, minute: int = 30) -> datetime:
    base = datetime.now(timezone.utc) + timedelta(days=days)
    return base.replace(hour=hour, minute=minute, second=0, microsecond=0)


@pytest.fixture
def users() -> list[User]:
    return [
        User(id="1", name="Diego Fernandes", email="diego@meetapp.com", locale="pt-BR"),
        User(id="2", name="Ada Lovelace", email="ada@example.com", locale="en"),
        User(id="3", name="Grace Hopper", email="grace@example.com"),
    ]


@pytest.fixture
def meetups() -> list[Meetup]:
    """
    m_react and m_python start at the same instant; m_workshop later;
    m_past already happened.
    """
    same_instant = _future(10)
    return [
        Meetup(id="m_react", organizer_id="1", title="React Native Meetup",
               location="Rua Guilherme Gembala, 260", scheduled_at=same_instant),
        Meetup(id="m_python", organizer_id="2", title="Python Async Night",
               location="Online", scheduled_at=same_instant),
        Meetup(id="m_workshop", organizer_id="2", title="Queue Patterns Workshop",
               location="Online", scheduled_at=_future(20, hour=18, minute=0)),
        Meetup(id="m_past", organizer_id="1", title="Last Year's Meetup",
               scheduled_at=datetime.now(timezone.utc) - timedelta(days=1)),
    ]


@pytest_asyncio.fixture
async def store(users, meetups):
    from database.store_memory import InMemorySubscriptionStore
    s = InMemorySubscriptionStore()
    for user in users:
        await s.upsert_user(user)
    for meetup in meetups:
        await s.upsert_meetup(meetup)
    return s


@pytest.fixture
def queue():
    """Unconnected in-memory queue; retries become due immediately."""
    from job_queue.message_queue import InMemoryMessageQueue
    return InMemoryMessageQueue(promote_interval=0.01, retry_backoff_base=0, enqueue_attempts=1)


@pytest.fixture
def engine(store, queue):
    from backend.connector import StoreMeetupDirectory
    from core.admission import AdmissionEngine
    return AdmissionEngine(store, StoreMeetupDirectory(store), queue)


@pytest.fixture
def mailer():
    from channels.email_adapter import LogMailer
    return LogMailer()
