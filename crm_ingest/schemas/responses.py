from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    success: bool = True
    action: str
    message_id: Optional[UUID] = None
    workspace_id: Optional[UUID] = None
    conversation_id: Optional[UUID] = None
    contact_id: Optional[UUID] = None
    connection_id: Optional[UUID] = None
    instance: Optional[str] = None
    phone_number: Optional[str] = None
    message: Optional[str] = None
    requestId: Optional[str] = None

    def to_body(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)
