from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_ingest.logging_config import get_logger
from crm_ingest.models import WebhookLog

logger = get_logger("webhook_log")

NOT_MESSAGE_BODY = "Event logged but not processed - not a message event"
NO_WEBHOOK_BODY = "No N8N webhook configured"
MAX_RESPONSE_BODY = 2000


def record_webhook_event(
    db: Session,
    *,
    workspace_id: Optional[UUID],
    event_type: Optional[str],
    status: str,
    payload: dict,
    request_id: str,
    response_status: Optional[int] = None,
    response_body: Optional[str] = None,
    log=None,
) -> bool:
    """Append the raw event to webhook_logs. A failed write never fails the request."""
    log = log or logger
    try:
        with db.begin_nested():
            db.add(
                WebhookLog(
                    workspace_id=workspace_id,
                    event_type=event_type,
                    status=status,
                    payload_json=payload,
                    response_status=response_status,
                    response_body=response_body[:MAX_RESPONSE_BODY] if response_body else None,
                    request_id=request_id,
                    created_at=datetime.now(timezone.utc),
                )
            )
        return True
    except SQLAlchemyError as e:
        log.warning("Failed to record webhook event", extra={"context": {"error": str(e), "status": status}})
        return False


def _as_uuid(value) -> Optional[UUID]:
    try:
        return UUID(str(value)) if value else None
    except ValueError:
        return None


def record_forward_result(
    session_factory: Callable[[], Session],
    envelope: dict,
    *,
    delivered: bool,
    response_status: Optional[int],
    response_body: Optional[str],
    log=None,
) -> bool:
    """Log the outcome of a detached forward in its own short-lived session."""
    log = log or logger
    try:
        with session_factory() as db:
            recorded = record_webhook_event(
                db,
                workspace_id=_as_uuid(envelope.get("workspace_id")),
                event_type=envelope.get("event"),
                status="forwarded" if delivered else "forward_failed",
                payload=envelope,
                request_id=envelope.get("request_id"),
                response_status=response_status,
                response_body=response_body,
                log=log,
            )
            db.commit()
        return recorded
    except SQLAlchemyError as e:
        log.warning("Failed to record forward result", extra={"context": {"error": str(e)}})
        return False
