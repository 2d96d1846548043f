import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from crm_ingest.database import Base


class SystemUser(Base):
    __tablename__ = "system_users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    email = Column(Text)
    status = Column(Text, nullable=False, default="active")  # active, inactive
    created_at = Column(TIMESTAMP(timezone=True))
