"""Contact avatars: taken from automation payloads or looked up on the provider."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import UUID

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_ingest.logging_config import get_logger
from crm_ingest.models import Connection, ConnectionSecret, Contact
from crm_ingest.services.background import DetachedTasks, task_failure

logger = get_logger("profile")


@dataclass(frozen=True)
class ProfileLookup:
    contact_id: UUID
    phone: str
    instance: str
    base_url: str
    token: str

    @property
    def url(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/findProfile/{self.instance}"


def set_profile_image(contact: Contact, image_url: Optional[str]) -> bool:
    if not image_url or contact.profile_image_url == image_url:
        return False
    now = datetime.now(timezone.utc)
    contact.profile_image_url = image_url
    contact.profile_image_updated_at = now
    contact.updated_at = now
    return True


def build_profile_lookup(db: Session, connection: Connection, contact: Contact) -> Optional[ProfileLookup]:
    """Lookup for a contact without an avatar, if the connection has provider credentials."""
    if contact.profile_image_url:
        return None
    secret = db.query(ConnectionSecret).filter(ConnectionSecret.connection_id == connection.id).first()
    if not secret:
        return None
    return ProfileLookup(
        contact_id=contact.id,
        phone=contact.phone,
        instance=connection.instance_name,
        base_url=secret.evolution_url,
        token=secret.token,
    )


def extract_profile_image(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    return data.get("profilePictureUrl") or data.get("picture") or None


class ProfileFetcher:
    """Fetches avatars from the provider in detached tasks; a failed lookup is only logged."""

    def __init__(
        self,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._session_factory = session_factory
        self._tasks = DetachedTasks()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def fetch(self, lookup: ProfileLookup, log=None) -> Optional[str]:
        log = log or logger
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await asyncio.wait_for(
                    client.post(lookup.url, json={"number": lookup.phone}, headers={"apikey": lookup.token}),
                    timeout=self.timeout_seconds + 1,
                )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            log.warning(
                "Profile lookup failed",
                extra={"context": {"contact_id": str(lookup.contact_id), "error": str(exc) or type(exc).__name__}},
            )
            return None

        if not response.is_success:
            log.warning(
                "Profile lookup rejected",
                extra={"context": {"contact_id": str(lookup.contact_id), "status": response.status_code}},
            )
            return None

        try:
            image_url = extract_profile_image(response.json())
        except ValueError:
            image_url = None
        if not image_url:
            log.info("No profile image for contact", extra={"context": {"contact_id": str(lookup.contact_id)}})
        return image_url

    def dispatch(self, lookup: Optional[ProfileLookup], log=None) -> Optional[asyncio.Task]:
        if lookup is None:
            return None
        log = log or logger
        return self._tasks.spawn(self.fetch(lookup, log), lambda done: self._finish(done, lookup, log))

    def _finish(self, task: asyncio.Task, lookup: ProfileLookup, log) -> None:
        failure = task_failure(task)
        if failure is not None:
            log.error("Profile lookup task did not complete", extra={"context": {"error": failure}})
            return
        image_url = task.result()
        if not image_url or self._session_factory is None:
            return
        self.store(lookup.contact_id, image_url, log)

    def store(self, contact_id: UUID, image_url: str, log=None) -> bool:
        log = log or logger
        try:
            with self._session_factory() as db:
                contact = db.query(Contact).filter(Contact.id == contact_id).first()
                if contact is None or not set_profile_image(contact, image_url):
                    return False
                db.commit()
        except SQLAlchemyError as e:
            log.warning("Failed to store profile image", extra={"context": {"error": str(e)}})
            return False
        log.info("Profile image stored", extra={"context": {"contact_id": str(contact_id)}})
        return True

    async def drain(self, timeout: Optional[float] = None) -> None:
        await self._tasks.drain(timeout or self.timeout_seconds + 1)
