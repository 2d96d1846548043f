from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_ingest.models import Contact, Conversation


def find_contact(db: Session, workspace_id: UUID, phone: str) -> Optional[Contact]:
    return db.query(Contact).filter(Contact.workspace_id == workspace_id, Contact.phone == phone).first()


def get_or_create_contact(
    db: Session,
    workspace_id: UUID,
    phone: str,
    name: Optional[str] = None,
) -> Tuple[Contact, bool]:
    """Find contact by (workspace, phone digits) or create it.

    Two first-contact events can both miss the lookup. The loser of the insert
    hits the (workspace_id, phone) unique constraint and re-reads the winner.
    """
    contact = find_contact(db, workspace_id, phone)
    if contact:
        return contact, False

    now = datetime.now(timezone.utc)
    contact = Contact(workspace_id=workspace_id, phone=phone, name=name or phone, created_at=now, updated_at=now)
    try:
        with db.begin_nested():
            db.add(contact)
            db.flush()
    except IntegrityError:
        existing = find_contact(db, workspace_id, phone)
        if existing is None:
            raise
        return existing, False

    return contact, True


def find_latest_conversation(db: Session, workspace_id: UUID, contact_id: UUID) -> Optional[Conversation]:
    """Most recently created conversation for the contact, on any connection."""
    return (
        db.query(Conversation)
        .filter(Conversation.workspace_id == workspace_id, Conversation.contact_id == contact_id)
        .order_by(Conversation.created_at.desc())
        .first()
    )


def get_or_create_conversation(
    db: Session,
    workspace_id: UUID,
    contact_id: UUID,
    connection_id: Optional[UUID] = None,
) -> Tuple[Conversation, bool]:
    """Reuse the contact's thread or open a new one.

    A reused thread is re-linked to ``connection_id`` when the event arrived on
    a different connection; connection churn never forks the thread.
    """
    conversation = find_latest_conversation(db, workspace_id, contact_id)

    if conversation:
        if connection_id and conversation.connection_id != connection_id:
            conversation.connection_id = connection_id
            conversation.updated_at = datetime.now(timezone.utc)
            db.flush()
        return conversation, False

    now = datetime.now(timezone.utc)
    conversation = Conversation(
        workspace_id=workspace_id,
        contact_id=contact_id,
        connection_id=connection_id,
        status="open",
        agent_active=False,
        created_at=now,
        updated_at=now,
    )
    db.add(conversation)
    db.flush()
    return conversation, True


def touch_conversation(db: Session, conversation: Conversation) -> None:
    """Bump activity timestamps after a message lands."""
    now = datetime.now(timezone.utc)
    conversation.last_activity_at = now
    conversation.updated_at = now
    db.flush()
