"""Local persistence of inbound provider events (Contact -> Conversation -> Message)."""

import random
from dataclasses import asdict, dataclass
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_ingest.config import Settings
from crm_ingest.logging_config import get_logger
from crm_ingest.models import Connection
from crm_ingest.schemas.provider import ProviderEvent
from crm_ingest.services.conversation_service import get_or_create_contact, get_or_create_conversation
from crm_ingest.services.forwarder import ForwardTarget, resolve_forward_target
from crm_ingest.services.idempotency import find_message_by_external_id
from crm_ingest.services.message_service import save_message
from crm_ingest.services.payload_normalizer import InboundMessage, normalize_event_type, normalize_provider_message
from crm_ingest.services.profile_service import ProfileLookup, build_profile_lookup
from crm_ingest.services.queue_distributor import distribute_conversation
from crm_ingest.services.store import store_errors
from crm_ingest.services.webhook_log_service import NO_WEBHOOK_BODY, NOT_MESSAGE_BODY, record_webhook_event

logger = get_logger("provider_ingest")


@dataclass
class ProcessedData:
    message_id: UUID
    workspace_id: UUID
    conversation_id: UUID
    instance: Optional[str]
    phone_number: str
    contact_id: Optional[UUID] = None
    connection_id: Optional[UUID] = None
    duplicate_skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = {key: (str(value) if isinstance(value, UUID) else value) for key, value in asdict(self).items()}
        if not self.duplicate_skipped:
            data.pop("duplicate_skipped")
        return data


@dataclass
class IngestOutcome:
    workspace_id: Optional[UUID] = None
    connection: Optional[Connection] = None
    processed: Optional[ProcessedData] = None
    skipped_reason: Optional[str] = None
    target: Optional[ForwardTarget] = None
    profile_lookup: Optional[ProfileLookup] = None

    @property
    def duplicate(self) -> bool:
        return bool(self.processed and self.processed.duplicate_skipped)


def find_connection_by_instance(db: Session, instance: Optional[str]) -> Optional[Connection]:
    if not instance:
        return None
    return db.query(Connection).filter(Connection.instance_name == instance).first()


def ingest_provider_event(
    db: Session,
    event: ProviderEvent,
    raw_payload: dict,
    *,
    settings: Settings,
    request_id: str,
    idempotent_insert: bool = False,
    rng: Optional[random.Random] = None,
    log=None,
) -> IngestOutcome:
    """Persist what the event carries and pick its forwarding target; one commit at the end."""
    log = log or logger
    outcome = IngestOutcome()

    with store_errors(db, "Failed to resolve connection"):
        connection = find_connection_by_instance(db, event.instance)
    if connection:
        outcome.connection = connection
        outcome.workspace_id = connection.workspace_id
    else:
        log.warning("Connection not found for instance", extra={"context": {"instance": event.instance}})

    audit = dict(
        workspace_id=outcome.workspace_id,
        event_type=event.event,
        payload=raw_payload,
        request_id=request_id,
        log=log,
    )
    record_webhook_event(db, status="received", **audit)

    inbound = normalize_provider_message(event)
    if not connection:
        outcome.skipped_reason = "no_tenant"
    elif inbound is None or not inbound.is_message_event:
        outcome.skipped_reason = "not_message_event"
        log.info("Event not persisted", extra={"context": {"event": normalize_event_type(event.event)}})
        record_webhook_event(db, status="skipped_not_message", response_body=NOT_MESSAGE_BODY, **audit)
    elif inbound.from_me is True:
        outcome.skipped_reason = "outbound_echo"
        log.info("Outbound echo, forwarding only", extra={"context": {"external_id": inbound.external_id}})
    elif not inbound.is_inbound:
        outcome.skipped_reason = "unknown_direction"
    else:
        _persist_inbound(
            db,
            connection,
            inbound,
            outcome,
            request_id=request_id,
            idempotent_insert=idempotent_insert,
            rng=rng,
            log=log,
        )
        if outcome.processed is None:
            outcome.skipped_reason = "empty_message"

    if not outcome.duplicate:
        with store_errors(db, "Failed to resolve forwarding target"):
            outcome.target = resolve_forward_target(db, outcome.workspace_id, settings)
        if not outcome.target.enabled:
            log.info("No forwarding target configured", extra={"context": {"workspace_id": str(outcome.workspace_id)}})
            record_webhook_event(db, status="skipped_no_webhook", response_body=NO_WEBHOOK_BODY, **audit)

    with store_errors(db, "Failed to commit webhook event"):
        db.commit()
    return outcome


def _persist_inbound(
    db: Session,
    connection: Connection,
    inbound: InboundMessage,
    outcome: IngestOutcome,
    *,
    request_id: str,
    idempotent_insert: bool,
    rng: Optional[random.Random],
    log,
) -> None:
    workspace_id = connection.workspace_id

    with store_errors(db, "Failed to check duplicate message"):
        existing = find_message_by_external_id(db, workspace_id, inbound.external_id)
    if existing:
        log.info("Message already exists, skipping", extra={"context": {"external_id": inbound.external_id}})
        outcome.processed = ProcessedData(
            message_id=existing.id,
            workspace_id=workspace_id,
            conversation_id=existing.conversation_id,
            instance=inbound.instance,
            phone_number=inbound.phone,
            duplicate_skipped=True,
        )
        return

    if not inbound.phone or not inbound.content or not inbound.external_id:
        log.info(
            "Inbound message missing phone, content or id; not persisted",
            extra={"context": {"has_phone": bool(inbound.phone), "has_content": bool(inbound.content)}},
        )
        return

    with store_errors(db, "Failed to resolve contact"):
        contact, _ = get_or_create_contact(db, workspace_id, inbound.phone, inbound.push_name)
        outcome.profile_lookup = build_profile_lookup(db, connection, contact)

    with store_errors(db, "Failed to resolve conversation"):
        conversation, created = get_or_create_conversation(db, workspace_id, contact.id, connection.id)

    if created and connection.queue_id:
        try:
            with db.begin_nested():
                distribute_conversation(db, conversation, connection.queue_id, rng=rng, log=log)
        except SQLAlchemyError as e:
            log.error(
                "Queue distribution failed, conversation left unassigned",
                extra={"context": {"conversation_id": str(conversation.id), "error": str(e)}},
            )

    with store_errors(db, "Failed to create message"):
        message, saved = save_message(
            db,
            conversation,
            workspace_id=workspace_id,
            external_id=inbound.external_id,
            content=inbound.content,
            direction="inbound",
            message_type=inbound.message_type,
            sender_type="contact",
            message_metadata={
                "source": "evolution-webhook-v2",
                "evolution_data": inbound.raw_data,
                "request_id": request_id,
                "message_flow": "inbound_original",
            },
            idempotent=idempotent_insert,
        )

    outcome.processed = ProcessedData(
        message_id=message.id,
        workspace_id=workspace_id,
        conversation_id=message.conversation_id,
        instance=inbound.instance,
        phone_number=inbound.phone,
        contact_id=contact.id,
        connection_id=connection.id,
        duplicate_skipped=not saved,
    )
    log.info("Inbound message processed locally", extra={"context": outcome.processed.to_dict()})
