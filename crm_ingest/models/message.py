import uuid

from sqlalchemy import Column, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from crm_ingest.database import Base, JSONDict


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("workspace_id", "external_id", name="uq_messages_workspace_external_id"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False)
    external_id = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(Text, nullable=False, default="text")  # text, image, video, document, audio
    sender_type = Column(Text, nullable=False)  # contact, agent
    status = Column(Text, nullable=False)  # received, sent
    origem_resposta = Column(Text)  # automatica, manual
    file_url = Column(Text)
    file_name = Column(Text)
    mime_type = Column(Text)
    message_metadata = Column("metadata", JSONDict, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
