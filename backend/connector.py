"""
Meetup Directory — Read-only access to meetups and users owned by the CRUD service.

Two implementations:
  - StoreMeetupDirectory: reads the tables this service shares with the CRUD app
  - RESTMeetupDirectory:  calls the CRUD service over HTTP

Either way the admission core only ever sees Meetup / User models, and
Meetup.is_past is recomputed from the clock on every read.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import DirectoryConfig, get_settings
from database.store_base import BaseSubscriptionStore
from models.schemas import Meetup, User

logger = structlog.get_logger()


class MeetupDirectory(abc.ABC):
    """Abstract base for meetup/user lookups."""

    @abc.abstractmethod
    async def get_meetup(self, meetup_id: str) -> Optional[Meetup]:
        """Fetch a meetup with its organizer, or None if it does not exist."""
        ...

    @abc.abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        """Fetch a user, or None if it does not exist."""
        ...

    async def close(self) -> None:
        pass


class StoreMeetupDirectory(MeetupDirectory):
    """Directory backed by the subscription store's own meetup/user tables."""

    def __init__(self, store: BaseSubscriptionStore):
        self.store = store

    async def get_meetup(self, meetup_id: str) -> Optional[Meetup]:
        return await self.store.get_meetup(meetup_id)

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self.store.get_user(user_id)


class RESTMeetupDirectory(MeetupDirectory):
    """
    REST API directory.
    Calls the configured CRUD-service endpoints; 404 means "does not exist".
    """

    def __init__(self, config: DirectoryConfig = None):
        self.config = config or get_settings().directory
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=30.0,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _request(self, endpoint: str, **path_params) -> Optional[dict[str, Any]]:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        for k, v in path_params.items():
            url = url.replace(f"{{{k}}}", str(v))

        response = await client.get(url)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def get_meetup(self, meetup_id: str) -> Optional[Meetup]:
        raw = await self._request("get_meetup", meetup_id=meetup_id)
        if raw is None:
            return None
        return self.normalize_meetup(raw)

    async def get_user(self, user_id: str) -> Optional[User]:
        raw = await self._request("get_user", user_id=user_id)
        if raw is None:
            return None
        return self.normalize_user(raw)

    def normalize_user(self, raw: dict[str, Any]) -> User:
        return User(
            id=str(raw.get("id", "")),
            name=raw.get("name", ""),
            email=raw.get("email", ""),
            locale=raw.get("locale", ""),
        )

    def normalize_meetup(self, raw: dict[str, Any]) -> Meetup:
        """
        Convert the CRUD service payload to a Meetup.
        Accepts both {organizer_id, organizer} and the legacy {user_id, user} shapes.
        The payload's own "past" flag is ignored; is_past is always recomputed.
        """
        organizer_raw = raw.get("organizer") or raw.get("user")
        organizer_id = str(raw.get("organizer_id", raw.get("user_id", "")))
        organizer = None
        if organizer_raw:
            organizer = self.normalize_user({"id": organizer_id, **organizer_raw})
        return Meetup(
            id=str(raw["id"]),
            organizer_id=organizer_id,
            organizer=organizer,
            title=raw.get("title", ""),
            description=raw.get("description") or "",
            location=raw.get("location") or "",
            scheduled_at=raw.get("scheduled_at", raw.get("date")),
        )

    async def close(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()


def create_meetup_directory(
    store: BaseSubscriptionStore, config: DirectoryConfig = None,
) -> MeetupDirectory:
    """Factory: build the directory named in settings."""
    config = config or get_settings().directory
    if config.type == "rest":
        logger.info("meetup_directory_created", type="rest", base_url=config.base_url)
        return RESTMeetupDirectory(config)
    logger.info("meetup_directory_created", type="store")
    return StoreMeetupDirectory(store)
