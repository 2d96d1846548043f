from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class AutomationMessageRequest(BaseModel):
    """Normalized message payload sent by the automation engine."""

    model_config = ConfigDict(extra="ignore")

    direction: Optional[str] = None
    external_id: Optional[str] = None
    phone_number: Optional[str] = None
    content: Optional[str] = None
    message_type: str = "text"
    sender_type: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    workspace_id: Optional[UUID] = None
    connection_id: Optional[UUID] = None
    contact_name: Optional[str] = None
    profile_picture_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("profilePictureUrl", "profile_picture_url")
    )
    metadata: dict[str, Any] = {}

    @field_validator("external_id", "phone_number", mode="before")
    @classmethod
    def _coerce_identifier(cls, value):
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, bool):
            raise ValueError("identifier must be a string or an integer")
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError("identifier must be a whole number")
            return str(int(value))
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _coerce_metadata(cls, value):
        return value if isinstance(value, dict) else {}

    @field_validator("message_type", mode="before")
    @classmethod
    def _default_message_type(cls, value):
        return value or "text"
