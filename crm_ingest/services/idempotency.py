from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from crm_ingest.models import Message


def find_message_by_external_id(db: Session, workspace_id: UUID, external_id: Optional[str]) -> Optional[Message]:
    """Existing row for (workspace, external id). Content is never compared."""
    if not external_id:
        return None
    return (
        db.query(Message)
        .filter(Message.workspace_id == workspace_id, Message.external_id == external_id)
        .first()
    )
