import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from crm_ingest.database import Base


class ConversationAssignment(Base):
    """Append-only audit trail of conversation ownership changes."""

    __tablename__ = "conversation_assignments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False)
    from_assigned_user_id = Column(UUID(as_uuid=True))
    to_assigned_user_id = Column(UUID(as_uuid=True))
    changed_by = Column(UUID(as_uuid=True))
    action = Column(Text, nullable=False)  # assign, transfer, unassign
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="assignments")
