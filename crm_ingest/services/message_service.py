import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from crm_ingest.models import Conversation, Message
from crm_ingest.services.conversation_service import touch_conversation
from crm_ingest.services.idempotency import find_message_by_external_id

SENDER_BY_DIRECTION = {"inbound": "contact", "outbound": "agent"}
STATUS_BY_DIRECTION = {"inbound": "received", "outbound": "sent"}
ORIGIN_BY_DIRECTION = {"inbound": "automatica", "outbound": "manual"}

# Fields the automation engine may patch on an existing message.
UPDATABLE_FIELDS = ("content", "file_url", "file_name", "mime_type")


def _dialect_insert(db: Session):
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


def save_message(
    db: Session,
    conversation: Conversation,
    *,
    workspace_id: UUID,
    external_id: str,
    content: str,
    direction: str,
    message_type: str = "text",
    sender_type: Optional[str] = None,
    file_url: Optional[str] = None,
    file_name: Optional[str] = None,
    mime_type: Optional[str] = None,
    message_metadata: Optional[dict] = None,
    idempotent: bool = False,
) -> Tuple[Message, bool]:
    """Persist a message under a fresh internal id and bump conversation activity.

    With ``idempotent`` the row is written with INSERT .. ON CONFLICT DO NOTHING
    on (workspace_id, external_id); a losing racer gets the surviving row back
    and ``created`` is False.
    """
    values = {
        "id": uuid.uuid4(),
        "workspace_id": workspace_id,
        "conversation_id": conversation.id,
        "external_id": external_id,
        "content": content,
        "message_type": message_type or "text",
        "sender_type": sender_type or SENDER_BY_DIRECTION[direction],
        "status": STATUS_BY_DIRECTION[direction],
        "origem_resposta": ORIGIN_BY_DIRECTION[direction],
        "file_url": file_url,
        "file_name": file_name,
        "mime_type": mime_type,
        "metadata": message_metadata or {},
        "created_at": datetime.now(timezone.utc),
    }

    if idempotent:
        insert = _dialect_insert(db)
        stmt = (
            insert(Message.__table__)
            .values(values)
            .on_conflict_do_nothing(index_elements=["workspace_id", "external_id"])
        )
        created = db.execute(stmt).rowcount > 0
        message = find_message_by_external_id(db, workspace_id, external_id)
    else:
        message = Message(
            id=values["id"],
            workspace_id=workspace_id,
            conversation_id=conversation.id,
            external_id=external_id,
            content=values["content"],
            message_type=values["message_type"],
            sender_type=values["sender_type"],
            status=values["status"],
            origem_resposta=values["origem_resposta"],
            file_url=file_url,
            file_name=file_name,
            mime_type=mime_type,
            message_metadata=values["metadata"],
            created_at=values["created_at"],
        )
        db.add(message)
        db.flush()
        created = True

    if created:
        touch_conversation(db, conversation)
    return message, created


def update_message(db: Session, message: Message, changes: dict, metadata: Optional[dict] = None) -> Message:
    """Patch whitelisted fields; metadata is merged, never replaced."""
    for field_name in UPDATABLE_FIELDS:
        value = changes.get(field_name)
        if value is not None:
            setattr(message, field_name, value)

    if metadata:
        message.message_metadata = {
            **(message.message_metadata or {}),
            **metadata,
            "message_flow": "n8n_response_update",
        }

    db.flush()
    return message
