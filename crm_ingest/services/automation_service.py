"""Message create/update requested by the automation engine."""

import uuid
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from crm_ingest.errors import BadRequestError
from crm_ingest.logging_config import get_logger
from crm_ingest.models import Connection, Conversation, Message
from crm_ingest.schemas.automation import AutomationMessageRequest
from crm_ingest.schemas.responses import WebhookResponse
from crm_ingest.services.conversation_service import get_or_create_contact, get_or_create_conversation
from crm_ingest.services.idempotency import find_message_by_external_id
from crm_ingest.services.message_service import UPDATABLE_FIELDS, save_message, update_message
from crm_ingest.services.phone import sanitize_phone
from crm_ingest.services.profile_service import set_profile_image
from crm_ingest.services.store import store_errors

logger = get_logger("automation")

PROCESSING_PLACEHOLDER = "Mensagem em processamento..."
FILE_PLACEHOLDER = "📎 {name}"


def _as_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def find_update_target(db: Session, external_id: str, workspace_id: Optional[UUID]) -> Optional[Message]:
    """Message the engine refers to by ``external_id``.

    The engine echoes back the internal message id it was forwarded in
    ``processed_data``; values that are not a UUID can never name an update
    target and fall through to create.
    """
    internal_id = _as_uuid(external_id)
    if internal_id is None:
        return None
    query = db.query(Message).filter(Message.id == internal_id)
    if workspace_id:
        query = query.filter(Message.workspace_id == workspace_id)
    return query.first()


def _contact_id_for(db: Session, conversation_id: UUID) -> Optional[UUID]:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    return conversation.contact_id if conversation else None


def is_inbound_original(message: Message) -> bool:
    metadata = message.message_metadata or {}
    return message.sender_type == "contact" and metadata.get("message_flow") == "inbound_original"


def handle_automation_message(
    db: Session,
    request: AutomationMessageRequest,
    *,
    request_id: str,
    idempotent_insert: bool = False,
    log=None,
) -> WebhookResponse:
    log = log or logger
    phone = sanitize_phone(request.phone_number)
    log.info(
        "Processing automation message",
        extra={"context": {"direction": request.direction, "external_id": request.external_id, "phone": phone}},
    )

    if request.external_id:
        with store_errors(db, "Failed to find message"):
            target = find_update_target(db, request.external_id, request.workspace_id)
        if target:
            return _update_existing(db, target, request, request_id=request_id, log=log)
        log.info("Message not found for update, creating", extra={"context": {"external_id": request.external_id}})

    return _create_message(
        db, request, phone, request_id=request_id, idempotent_insert=idempotent_insert, log=log
    )


def _update_existing(
    db: Session,
    message: Message,
    request: AutomationMessageRequest,
    *,
    request_id: str,
    log,
) -> WebhookResponse:
    if is_inbound_original(message):
        log.info("Inbound message re-sent by automation, skipping", extra={"context": {"message_id": str(message.id)}})
        return WebhookResponse(
            action="duplicate_skipped",
            message_id=message.id,
            workspace_id=message.workspace_id,
            conversation_id=message.conversation_id,
            contact_id=_contact_id_for(db, message.conversation_id),
            requestId=request_id,
        )

    with store_errors(db, "Failed to update message"):
        changes = {field_name: getattr(request, field_name) for field_name in UPDATABLE_FIELDS}
        update_message(db, message, changes, request.metadata)
        contact_id = _contact_id_for(db, message.conversation_id)
        db.commit()

    log.info("Message updated", extra={"context": {"message_id": str(message.id)}})
    return WebhookResponse(
        action="updated",
        message_id=message.id,
        workspace_id=message.workspace_id,
        conversation_id=message.conversation_id,
        contact_id=contact_id,
        requestId=request_id,
    )


def _create_message(
    db: Session,
    request: AutomationMessageRequest,
    phone: str,
    *,
    request_id: str,
    idempotent_insert: bool,
    log,
) -> WebhookResponse:
    content = request.content
    if not content and not request.file_url and not request.external_id:
        raise BadRequestError("Missing content", message="content, file_url, or external_id is required for messages")
    if not content and not request.file_url and request.direction == "outbound":
        content = PROCESSING_PLACEHOLDER
    if not request.workspace_id:
        raise BadRequestError("Missing workspace_id", message="workspace_id is required for new messages")

    workspace_id = request.workspace_id

    if request.external_id:
        with store_errors(db, "Failed to check duplicate message"):
            duplicate = find_message_by_external_id(db, workspace_id, request.external_id)
            if duplicate:
                log.info("Message with external_id already exists", extra={"context": {"external_id": request.external_id}})
                return WebhookResponse(
                    action="duplicate_prevented",
                    message_id=duplicate.id,
                    workspace_id=duplicate.workspace_id,
                    conversation_id=duplicate.conversation_id,
                    contact_id=_contact_id_for(db, duplicate.conversation_id),
                    requestId=request_id,
                )

    if idempotent_insert and request.metadata.get("origem_resposta") == "system":
        log.info("System message skipped to prevent loop")
        return WebhookResponse(
            action="skipped_system_message",
            message="System message skipped to prevent loop",
            workspace_id=workspace_id,
            requestId=request_id,
        )

    with store_errors(db, "Failed to create contact"):
        contact, _ = get_or_create_contact(db, workspace_id, phone, request.contact_name)
        set_profile_image(contact, request.profile_picture_url)

    with store_errors(db, "Failed to resolve conversation"):
        conversation, _ = get_or_create_conversation(db, workspace_id, contact.id, request.connection_id)

    if not content and request.file_url:
        content = FILE_PLACEHOLDER.format(name=request.file_name or "Arquivo")

    metadata = {
        "source": "n8n-response-v2",
        "direction": request.direction,
        "request_id": request_id,
        "message_flow": "n8n_bot_response" if request.direction == "outbound" else "n8n_new_message",
        **request.metadata,
    }

    with store_errors(db, "Failed to create message"):
        message, created = save_message(
            db,
            conversation,
            workspace_id=workspace_id,
            external_id=request.external_id or str(uuid.uuid4()),
            content=content or "",
            direction=request.direction,
            message_type=request.message_type,
            sender_type=request.sender_type,
            file_url=request.file_url,
            file_name=request.file_name,
            mime_type=request.mime_type,
            message_metadata=metadata,
            idempotent=idempotent_insert and bool(request.external_id),
        )
        connection_id = conversation.connection_id
        instance = None
        if connection_id:
            connection = db.query(Connection).filter(Connection.id == connection_id).first()
            instance = connection.instance_name if connection else None
        db.commit()

    if not created:
        log.info("Concurrent create collapsed onto existing row", extra={"context": {"message_id": str(message.id)}})
        return WebhookResponse(
            action="duplicate_prevented",
            message_id=message.id,
            workspace_id=workspace_id,
            conversation_id=message.conversation_id,
            contact_id=contact.id,
            requestId=request_id,
        )

    log.info("Message created", extra={"context": {"message_id": str(message.id), "conversation_id": str(conversation.id)}})
    return WebhookResponse(
        action="created",
        message_id=message.id,
        workspace_id=workspace_id,
        conversation_id=conversation.id,
        contact_id=contact.id,
        connection_id=connection_id,
        instance=instance,
        phone_number=request.phone_number,
        requestId=request_id,
    )
