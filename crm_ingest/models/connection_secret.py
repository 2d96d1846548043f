import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from crm_ingest.database import Base


class ConnectionSecret(Base):
    """Provider API credentials of one connection (used for profile lookups)."""

    __tablename__ = "connection_secrets"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id"), nullable=False, unique=True)
    token = Column(Text, nullable=False)
    evolution_url = Column(Text, nullable=False)

    connection = relationship("Connection", back_populates="secret")
