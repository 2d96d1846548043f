import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from crm_ingest.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id"))
    queue_id = Column(UUID(as_uuid=True), ForeignKey("queues.id"))
    assigned_user_id = Column(UUID(as_uuid=True), ForeignKey("system_users.id"))
    assigned_at = Column(TIMESTAMP(timezone=True))
    status = Column(Text, nullable=False, default="open")  # open, closed, pending
    agent_active = Column(Boolean, nullable=False, default=False)
    last_activity_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True))

    contact = relationship("Contact", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
    assignments = relationship("ConversationAssignment", back_populates="conversation")
