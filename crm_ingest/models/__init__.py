from crm_ingest.models.assignment import ConversationAssignment
from crm_ingest.models.connection import Connection
from crm_ingest.models.connection_secret import ConnectionSecret
from crm_ingest.models.contact import Contact
from crm_ingest.models.conversation import Conversation
from crm_ingest.models.message import Message
from crm_ingest.models.queue import Queue, QueueUser
from crm_ingest.models.system_user import SystemUser
from crm_ingest.models.webhook_log import WebhookLog
from crm_ingest.models.webhook_settings import WorkspaceWebhookSettings

__all__ = [
    "Contact",
    "Conversation",
    "ConversationAssignment",
    "Connection",
    "ConnectionSecret",
    "Message",
    "Queue",
    "QueueUser",
    "SystemUser",
    "WebhookLog",
    "WorkspaceWebhookSettings",
]
