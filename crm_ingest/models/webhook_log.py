import uuid

from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from crm_ingest.database import Base, JSONDict


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True))
    event_type = Column(Text)
    # received, skipped_not_message, skipped_no_webhook, forwarded, forward_failed
    status = Column(Text, nullable=False)
    payload_json = Column(JSONDict)
    response_status = Column(Integer)
    response_body = Column(Text)
    request_id = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
