from crm_ingest.services.conversation_service import (
    get_or_create_contact,
    get_or_create_conversation,
    touch_conversation,
)
from crm_ingest.services.forwarder import Forwarder, ForwardTarget, resolve_forward_target
from crm_ingest.services.idempotency import find_message_by_external_id
from crm_ingest.services.message_service import save_message, update_message
from crm_ingest.services.phone import phone_from_remote_jid, sanitize_phone
from crm_ingest.services.queue_distributor import (
    DistributionPolicy,
    DistributionResult,
    distribute_conversation,
    parse_policy,
)
