"""Turn the two inbound webhook shapes into strict internal records."""

from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError

from crm_ingest.errors import BadRequestError
from crm_ingest.schemas.automation import AutomationMessageRequest
from crm_ingest.schemas.provider import ProviderEvent
from crm_ingest.services.phone import phone_from_remote_jid, sanitize_phone

MESSAGE_EVENTS = frozenset({"MESSAGES_UPSERT", "MESSAGES_UPDATE"})
ATTACHMENT_PLACEHOLDER = "📎 Arquivo"
DIRECTIONS = ("inbound", "outbound")

# Ordered: the first non-empty value wins.
_CONTENT_PATHS = (
    ("conversation",),
    ("extendedTextMessage", "text"),
    ("imageMessage", "caption"),
    ("videoMessage", "caption"),
    ("documentMessage", "caption"),
    ("documentWithCaptionMessage", "message", "documentMessage", "caption"),
)

_MEDIA_TYPES = (
    ("imageMessage", "image"),
    ("videoMessage", "video"),
    ("documentMessage", "document"),
    ("documentWithCaptionMessage", "document"),
    ("audioMessage", "audio"),
    ("stickerMessage", "sticker"),
)


@dataclass(frozen=True)
class InboundMessage:
    """Provider message event reduced to what ingestion needs."""

    instance: Optional[str]
    event_type: str
    external_id: Optional[str]
    remote_jid: Optional[str]
    from_me: Optional[bool]
    phone: str
    content: str
    message_type: str
    push_name: Optional[str]
    raw_data: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_inbound(self) -> bool:
        return self.from_me is False

    @property
    def is_message_event(self) -> bool:
        return self.event_type in MESSAGE_EVENTS


def normalize_event_type(event: Optional[str]) -> str:
    """messages.upsert -> MESSAGES_UPSERT"""
    return str(event or "").upper().replace(".", "_")


def _dig(payload: dict, path: tuple[str, ...]) -> Any:
    value: Any = payload
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def extract_content(message: Optional[dict]) -> str:
    if not message:
        return ""
    for path in _CONTENT_PATHS:
        value = _dig(message, path)
        if isinstance(value, str) and value.strip():
            return value
    return ATTACHMENT_PLACEHOLDER


def detect_message_type(message: Optional[dict]) -> str:
    if message:
        for key, message_type in _MEDIA_TYPES:
            if message.get(key):
                return message_type
    return "text"


def parse_provider_event(payload: dict) -> ProviderEvent:
    """Validate a raw provider body. Non-object ``data`` (batch events) is dropped."""
    candidate = dict(payload)
    if not isinstance(candidate.get("data"), dict):
        candidate["data"] = None
    try:
        return ProviderEvent.model_validate(candidate)
    except ValidationError as exc:
        raise BadRequestError("Invalid provider payload", details=str(exc)) from exc


def normalize_provider_message(event: ProviderEvent) -> Optional[InboundMessage]:
    """Build the internal record for a message event, or None if it carries no message."""
    data = event.data
    if data is None or data.key is None:
        return None

    message = data.message or {}
    return InboundMessage(
        instance=event.instance,
        event_type=normalize_event_type(event.event),
        external_id=data.key.id,
        remote_jid=data.key.remoteJid,
        from_me=data.key.fromMe,
        phone=phone_from_remote_jid(data.key.remoteJid),
        content=extract_content(message),
        message_type=detect_message_type(message),
        push_name=(data.pushName or "").strip() or None,
        raw_data=data.model_dump(mode="json", exclude_none=True),
    )


def parse_automation_request(payload: dict) -> AutomationMessageRequest:
    """Validate the automation-engine schema; the checks that need no store lookup."""
    try:
        request = AutomationMessageRequest.model_validate(payload)
    except ValidationError as exc:
        raise BadRequestError("Invalid payload", details=str(exc)) from exc

    if request.direction not in DIRECTIONS:
        raise BadRequestError("Invalid direction", message='direction must be "inbound" or "outbound"')
    if not request.phone_number or not sanitize_phone(request.phone_number):
        raise BadRequestError("Missing phone_number")
    return request
