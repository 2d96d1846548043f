from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ProviderMessageKey(BaseModel):
    remoteJid: Optional[str] = None
    id: Optional[str] = None
    fromMe: Optional[bool] = None


class ProviderEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    key: Optional[ProviderMessageKey] = None
    message: Optional[dict[str, Any]] = None
    pushName: Optional[str] = None
    messageType: Optional[str] = None


class ProviderEvent(BaseModel):
    """Webhook event as posted by the WhatsApp provider (Evolution API shape)."""

    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    instance: Optional[str] = Field(default=None, validation_alias=AliasChoices("instance", "instanceName"))
    data: Optional[ProviderEventData] = None
