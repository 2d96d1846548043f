from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from crm_ingest.models import Contact, Conversation, ConversationAssignment, Message, WebhookLog

from tests.conftest import provider_event, provider_headers


def post_event(client, **kwargs):
    return client.post("/webhook", json=provider_event(**kwargs), headers=provider_headers())


class TestInboundMessage:
    def test_persisted_and_forwarded(self, client, connection, forwarder, fetch):
        response = post_event(client)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["action"] == "processed_and_forwarded"
        assert body["workspace_id"] == str(connection.workspace_id)
        assert body["connection_id"] == str(connection.id)
        assert body["instance"] == "wa1"
        assert body["phone_number"] == "5511999990000"
        assert body["requestId"].startswith("evo_")

        [message] = fetch(Message)
        assert str(message.id) == body["message_id"]
        assert message.external_id == "EVT1"
        assert message.content == "oi"
        assert message.sender_type == "contact"
        assert message.status == "received"
        assert message.message_metadata["source"] == "evolution-webhook-v2"
        assert message.message_metadata["message_flow"] == "inbound_original"
        assert message.message_metadata["request_id"] == body["requestId"]

        [contact] = fetch(Contact)
        assert contact.phone == "5511999990000"
        assert contact.name == "Maria"
        assert str(contact.id) == body["contact_id"]

        [conversation] = fetch(Conversation)
        assert str(conversation.id) == body["conversation_id"]
        assert conversation.connection_id == connection.id
        assert conversation.last_activity_at is not None

        [dispatch] = forwarder.dispatched
        assert dispatch.target.source == "fallback"
        assert dispatch.envelope["request_id"] == body["requestId"]
        assert dispatch.envelope["workspace_id"] == str(connection.workspace_id)
        assert dispatch.envelope["processed_data"]["message_id"] == body["message_id"]
        assert "duplicate_skipped" not in dispatch.envelope["processed_data"]
        assert dispatch.envelope["data"]["key"]["id"] == "EVT1"

    def test_duplicate_event_is_not_persisted_or_forwarded(self, client, connection, forwarder, fetch):
        first = post_event(client).json()
        second = post_event(client).json()

        assert second["action"] == "duplicate_skipped"
        assert second["message_id"] == first["message_id"]
        assert second["conversation_id"] == first["conversation_id"]
        assert len(fetch(Message)) == 1
        assert len(forwarder.dispatched) == 1

    def test_duplicate_with_idempotent_inserts(self, make_client, settings, connection, forwarder, fetch):
        client = make_client(settings.model_copy(update={"enable_message_idempotency": True}))

        first = post_event(client).json()
        second = post_event(client).json()

        assert first["action"] == "processed_and_forwarded"
        assert second["action"] == "duplicate_skipped"
        assert len(fetch(Message)) == 1

    def test_second_message_reuses_thread(self, client, connection, fetch):
        first = post_event(client, message_id="EVT1").json()
        second = post_event(client, message_id="EVT2", message={"conversation": "tudo bem?"}).json()

        assert second["conversation_id"] == first["conversation_id"]
        assert second["contact_id"] == first["contact_id"]
        assert len(fetch(Message)) == 2
        assert len(fetch(Conversation)) == 1

    def test_workspace_forward_target(self, client, connection, webhook_settings, forwarder):
        post_event(client)

        [dispatch] = forwarder.dispatched
        assert dispatch.target.source == "workspace"
        assert dispatch.target.secret == "workspace-secret"

    def test_attachment_without_caption(self, client, connection, fetch):
        post_event(client, message={"imageMessage": {"url": "https://cdn.example.com/a.jpg"}})

        [message] = fetch(Message)
        assert message.content == "📎 Arquivo"
        assert message.message_type == "image"

    def test_c_us_suffix_stripped(self, client, connection):
        body = post_event(client, remote_jid="5511999990000@c.us").json()

        assert body["phone_number"] == "5511999990000"

    def test_instance_name_alias(self, client, connection, fetch):
        payload = provider_event()
        payload["instanceName"] = payload.pop("instance")

        response = client.post("/webhook", json=payload, headers=provider_headers())

        assert response.json()["workspace_id"] == str(connection.workspace_id)
        assert len(fetch(Message)) == 1


class TestNotPersisted:
    def test_outbound_echo_forwarded_only(self, client, connection, forwarder, fetch):
        response = post_event(client, from_me=True)

        assert response.status_code == 200
        body = response.json()
        assert body["action"] == "processed_and_forwarded"
        assert body["message"] == "outbound_echo"
        assert "message_id" not in body
        assert fetch(Message) == []
        assert fetch(Contact) == []

        [dispatch] = forwarder.dispatched
        assert dispatch.envelope["processed_data"] is None

    def test_unknown_instance_forwarded_to_fallback(self, client, connection, forwarder, fetch):
        response = post_event(client, instance="ghost")

        assert response.status_code == 200
        assert response.json()["message"] == "no_tenant"
        assert fetch(Message) == []

        [dispatch] = forwarder.dispatched
        assert dispatch.target.source == "fallback"
        assert dispatch.envelope["workspace_id"] is None

        [log_row] = fetch(WebhookLog)
        assert log_row.workspace_id is None
        assert log_row.status == "received"

    def test_non_message_event(self, client, connection, forwarder, fetch):
        payload = {"event": "connection.update", "instance": "wa1", "data": {"state": "open"}}

        response = client.post("/webhook", json=payload, headers=provider_headers())

        assert response.json()["message"] == "not_message_event"
        assert fetch(Message) == []
        assert len(forwarder.dispatched) == 1

        skipped = fetch(WebhookLog, status="skipped_not_message")
        assert len(skipped) == 1
        assert skipped[0].event_type == "connection.update"
        assert skipped[0].response_body == "Event logged but not processed - not a message event"
        assert len(fetch(WebhookLog, status="received")) == 1

    def test_empty_message(self, client, connection, fetch):
        response = post_event(client, message={})

        assert response.json()["message"] == "empty_message"
        assert fetch(Message) == []

    def test_nothing_forwarded_without_target(self, make_client, settings, connection, forwarder, fetch):
        client = make_client(settings.model_copy(update={"fallback_forward_url": None}))

        response = post_event(client)

        assert response.json()["action"] == "processed_and_forwarded"
        assert forwarder.dispatched == []

        [skipped] = fetch(WebhookLog, status="skipped_no_webhook")
        assert skipped.workspace_id == connection.workspace_id
        assert skipped.response_body == "No N8N webhook configured"
        assert skipped.request_id == response.json()["requestId"]


class TestAuditLog:
    def test_every_event_is_logged(self, client, connection, fetch):
        body = post_event(client).json()
        post_event(client)

        rows = fetch(WebhookLog)
        assert len(rows) == 2
        assert {row.workspace_id for row in rows} == {connection.workspace_id}
        assert body["requestId"] in {row.request_id for row in rows}
        assert rows[0].payload_json["data"]["key"]["id"] == "EVT1"

    def test_forwardable_events_log_no_skip(self, client, connection, fetch):
        post_event(client)

        assert [row.status for row in fetch(WebhookLog)] == ["received"]


class TestProfileLookup:
    def test_lookup_dispatched_for_new_contact(self, client, connection, connection_secret, profiles, fetch):
        post_event(client)

        [contact] = fetch(Contact)
        [lookup] = profiles.dispatched
        assert lookup.contact_id == contact.id
        assert lookup.phone == "5511999990000"
        assert lookup.url == "https://evolution.example.com/chat/findProfile/wa1"
        assert lookup.token == "instance-api-key"

    def test_no_lookup_without_provider_credentials(self, client, connection, profiles):
        assert post_event(client).status_code == 200
        assert profiles.dispatched == []

    def test_no_lookup_when_avatar_known(self, client, db_session, connection, connection_secret, profiles, fetch):
        post_event(client)
        [contact] = fetch(Contact)
        row = db_session.get(Contact, contact.id)
        row.profile_image_url = "https://cdn.example.com/maria.jpg"
        db_session.commit()
        profiles.dispatched.clear()

        post_event(client, message_id="EVT2")

        assert profiles.dispatched == []

    def test_no_lookup_for_duplicates(self, client, connection, connection_secret, profiles):
        post_event(client)
        post_event(client)

        assert len(profiles.dispatched) == 1


class TestQueueDistribution:
    def test_new_conversations_rotate_through_queue(
        self, client, db_session, connection, agents, make_queue, fetch
    ):
        a, b, c = agents
        queue = make_queue(agents)
        connection.queue_id = queue.id
        db_session.commit()

        post_event(client, message_id="EVT1", remote_jid="5511000000001@s.whatsapp.net")
        post_event(client, message_id="EVT2", remote_jid="5511000000002@s.whatsapp.net")
        # Existing thread; no new assignment.
        post_event(client, message_id="EVT3", remote_jid="5511000000001@s.whatsapp.net")
        post_event(client, message_id="EVT4", remote_jid="5511000000003@s.whatsapp.net")

        assigned = {
            conversation.contact_id: conversation.assigned_user_id for conversation in fetch(Conversation)
        }
        contacts = {contact.phone: contact.id for contact in fetch(Contact)}
        assert assigned[contacts["5511000000001"]] == b.id
        assert assigned[contacts["5511000000002"]] == c.id
        assert assigned[contacts["5511000000003"]] == a.id
        assert len(fetch(ConversationAssignment)) == 3

    def test_empty_queue_leaves_conversation_unassigned(
        self, client, db_session, connection, make_queue, fetch
    ):
        queue = make_queue([])
        connection.queue_id = queue.id
        db_session.commit()

        response = post_event(client)

        assert response.status_code == 200
        [conversation] = fetch(Conversation)
        assert conversation.assigned_user_id is None
        assert len(fetch(Message)) == 1

    def test_distribution_failure_does_not_block_the_message(
        self, client, db_session, connection, agents, make_queue, fetch
    ):
        queue = make_queue(agents)
        connection.queue_id = queue.id
        db_session.commit()

        with patch(
            "crm_ingest.services.provider_ingest.distribute_conversation",
            side_effect=OperationalError("UPDATE queues", {}, Exception("lock timeout")),
        ):
            response = post_event(client)

        assert response.status_code == 200
        assert len(fetch(Message)) == 1
        [conversation] = fetch(Conversation)
        assert conversation.assigned_user_id is None
