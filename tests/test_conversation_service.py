import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from crm_ingest.models import Connection, Contact, Conversation
from crm_ingest.services.conversation_service import (
    find_latest_conversation,
    get_or_create_contact,
    get_or_create_conversation,
    touch_conversation,
)


class TestGetOrCreateContact:
    def test_creates_with_push_name(self, db_session, workspace_id):
        contact, created = get_or_create_contact(db_session, workspace_id, "5511999990000", "Maria")

        assert created is True
        assert contact.phone == "5511999990000"
        assert contact.name == "Maria"

    def test_name_defaults_to_phone(self, db_session, workspace_id):
        contact, _ = get_or_create_contact(db_session, workspace_id, "5511999990000")
        assert contact.name == "5511999990000"

    def test_reuses_existing(self, db_session, workspace_id):
        first, _ = get_or_create_contact(db_session, workspace_id, "5511999990000", "Maria")
        second, created = get_or_create_contact(db_session, workspace_id, "5511999990000", "Other")

        assert created is False
        assert second.id == first.id
        assert second.name == "Maria"

    def test_same_phone_other_workspace_is_separate(self, db_session, workspace_id):
        first, _ = get_or_create_contact(db_session, workspace_id, "5511999990000")
        other, created = get_or_create_contact(db_session, uuid.uuid4(), "5511999990000")

        assert created is True
        assert other.id != first.id

    def test_lost_insert_race_returns_winner(self, db_session, workspace_id):
        winner = Contact(
            workspace_id=workspace_id,
            phone="5511999990000",
            name="Maria",
            created_at=datetime.now(timezone.utc),
        )
        db_session.add(winner)
        db_session.commit()

        # The first lookup misses, as it would for a concurrent first contact.
        with patch(
            "crm_ingest.services.conversation_service.find_contact",
            side_effect=[None, winner],
        ):
            contact, created = get_or_create_contact(db_session, workspace_id, "5511999990000", "Maria")

        assert created is False
        assert contact.id == winner.id
        db_session.commit()
        assert db_session.query(Contact).count() == 1


class TestGetOrCreateConversation:
    def test_one_thread_per_contact(self, db_session, workspace_id, connection):
        contact, _ = get_or_create_contact(db_session, workspace_id, "5511999990000")

        first, created_first = get_or_create_conversation(db_session, workspace_id, contact.id, connection.id)
        second, created_second = get_or_create_conversation(db_session, workspace_id, contact.id, connection.id)

        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        assert first.status == "open"
        assert first.agent_active is False
        assert db_session.query(Conversation).count() == 1

    def test_relinks_connection(self, db_session, workspace_id, connection):
        other = Connection(workspace_id=workspace_id, instance_name="wa2")
        db_session.add(other)
        db_session.flush()
        contact, _ = get_or_create_contact(db_session, workspace_id, "5511999990000")
        conversation, _ = get_or_create_conversation(db_session, workspace_id, contact.id, connection.id)

        reused, created = get_or_create_conversation(db_session, workspace_id, contact.id, other.id)

        assert created is False
        assert reused.id == conversation.id
        assert reused.connection_id == other.id

    def test_missing_connection_keeps_link(self, db_session, workspace_id, connection):
        contact, _ = get_or_create_contact(db_session, workspace_id, "5511999990000")
        get_or_create_conversation(db_session, workspace_id, contact.id, connection.id)

        reused, _ = get_or_create_conversation(db_session, workspace_id, contact.id, None)

        assert reused.connection_id == connection.id

    def test_latest_conversation_wins(self, db_session, workspace_id):
        contact, _ = get_or_create_contact(db_session, workspace_id, "5511999990000")
        now = datetime.now(timezone.utc)
        older = Conversation(
            workspace_id=workspace_id, contact_id=contact.id, status="closed", created_at=now - timedelta(days=2)
        )
        newer = Conversation(workspace_id=workspace_id, contact_id=contact.id, status="open", created_at=now)
        db_session.add_all([older, newer])
        db_session.flush()

        assert find_latest_conversation(db_session, workspace_id, contact.id).id == newer.id

    def test_touch_sets_activity(self, db_session, workspace_id):
        contact, _ = get_or_create_contact(db_session, workspace_id, "5511999990000")
        conversation, _ = get_or_create_conversation(db_session, workspace_id, contact.id)
        assert conversation.last_activity_at is None

        touch_conversation(db_session, conversation)

        assert conversation.last_activity_at is not None
