from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import UUID

from crm_ingest.database import Base


class WorkspaceWebhookSettings(Base):
    __tablename__ = "workspace_webhook_settings"

    workspace_id = Column(UUID(as_uuid=True), primary_key=True)
    webhook_url = Column(Text)
    webhook_secret = Column(Text)
