import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from crm_ingest.database import Base


class Connection(Base):
    __tablename__ = "connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    instance_name = Column(Text, nullable=False, unique=True)
    status = Column(Text, default="connected")
    queue_id = Column(UUID(as_uuid=True), ForeignKey("queues.id"))
    created_at = Column(TIMESTAMP(timezone=True))

    queue = relationship("Queue")
    secret = relationship("ConnectionSecret", back_populates="connection", uselist=False)
