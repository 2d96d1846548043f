import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from crm_ingest.database import Base


class Queue(Base):
    __tablename__ = "queues"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(Text, nullable=False)
    distribution_type = Column(Text, nullable=False, default="sequential")  # sequential, random, ordered, disabled
    last_assigned_index = Column(Integer, nullable=False, default=0)
    ai_agent_id = Column(UUID(as_uuid=True))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True))

    members = relationship("QueueUser", back_populates="queue", order_by="QueueUser.order_position")


class QueueUser(Base):
    __tablename__ = "queue_users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    queue_id = Column(UUID(as_uuid=True), ForeignKey("queues.id"), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("system_users.id"), nullable=False)
    order_position = Column(Integer, nullable=False, default=0)

    queue = relationship("Queue", back_populates="members")
    user = relationship("SystemUser")
