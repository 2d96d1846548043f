from crm_ingest.schemas.automation import AutomationMessageRequest
from crm_ingest.schemas.provider import ProviderEvent, ProviderEventData, ProviderMessageKey
from crm_ingest.schemas.responses import WebhookResponse

__all__ = [
    "AutomationMessageRequest",
    "ProviderEvent",
    "ProviderEventData",
    "ProviderMessageKey",
    "WebhookResponse",
]
