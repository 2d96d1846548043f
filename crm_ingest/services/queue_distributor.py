"""Automatic assignment of new conversations to queue members."""

import random
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from crm_ingest.logging_config import get_logger
from crm_ingest.models import Conversation, ConversationAssignment, Queue, QueueUser, SystemUser

logger = get_logger("queue_distributor")


class DistributionPolicy(str, Enum):
    SEQUENTIAL = "sequential"
    RANDOM = "random"
    ORDERED = "ordered"
    DISABLED = "disabled"


# Names used by the administration surface of the CRM.
POLICY_ALIASES = {
    "sequencial": DistributionPolicy.SEQUENTIAL,
    "aleatoria": DistributionPolicy.RANDOM,
    "aleatória": DistributionPolicy.RANDOM,
    "ordenada": DistributionPolicy.ORDERED,
    "nao_distribuir": DistributionPolicy.DISABLED,
    "não distribuir": DistributionPolicy.DISABLED,
}


def parse_policy(value: Optional[str]) -> Optional[DistributionPolicy]:
    """Map a stored distribution_type onto a policy; unknown values give None."""
    if not value:
        return None
    normalized = value.strip().lower()
    try:
        return DistributionPolicy(normalized)
    except ValueError:
        return POLICY_ALIASES.get(normalized)


@dataclass
class DistributionResult:
    queue_id: Optional[UUID]
    policy: Optional[DistributionPolicy] = None
    assigned_user_id: Optional[UUID] = None
    index: Optional[int] = None
    skipped_reason: Optional[str] = None

    @property
    def assigned(self) -> bool:
        return self.assigned_user_id is not None


def load_active_members(db: Session, queue_id: UUID) -> list[QueueUser]:
    return (
        db.query(QueueUser)
        .join(SystemUser, SystemUser.id == QueueUser.user_id)
        .filter(QueueUser.queue_id == queue_id, SystemUser.status == "active")
        .order_by(QueueUser.order_position.asc())
        .all()
    )


def advance_cursor(db: Session, queue: Queue, member_count: int) -> int:
    """Atomically move the rotation cursor one step and return the new index.

    One UPDATE .. RETURNING statement, so concurrent distributions on the same
    queue each observe a distinct cursor value.
    """
    stmt = (
        update(Queue)
        .where(Queue.id == queue.id)
        .values(last_assigned_index=(func.coalesce(Queue.last_assigned_index, 0) + 1) % member_count)
        .returning(Queue.last_assigned_index)
        .execution_options(synchronize_session=False)
    )
    new_index = db.execute(stmt).scalar_one()
    db.expire(queue, ["last_assigned_index"])
    return new_index


def select_member_index(
    db: Session,
    queue: Queue,
    policy: DistributionPolicy,
    member_count: int,
    rng: Optional[random.Random] = None,
) -> Optional[int]:
    if member_count <= 0 or policy is DistributionPolicy.DISABLED:
        return None
    if policy is DistributionPolicy.SEQUENTIAL:
        return advance_cursor(db, queue, member_count)
    if policy is DistributionPolicy.RANDOM:
        return (rng or random).randrange(member_count)
    return 0


def assign_conversation(
    db: Session,
    conversation: Conversation,
    queue: Queue,
    user_id: UUID,
) -> ConversationAssignment:
    """Assign as accepted (not offered) and append the audit row."""
    now = datetime.now(timezone.utc)
    previous_user_id = conversation.assigned_user_id
    conversation.assigned_user_id = user_id
    conversation.assigned_at = now
    conversation.queue_id = queue.id
    conversation.status = "open"
    conversation.agent_active = bool(queue.ai_agent_id)
    conversation.updated_at = now

    assignment = ConversationAssignment(
        conversation_id=conversation.id,
        from_assigned_user_id=previous_user_id,
        to_assigned_user_id=user_id,
        changed_by=user_id,
        action="assign",
        created_at=now,
    )
    db.add(assignment)
    db.flush()
    return assignment


def distribute_conversation(
    db: Session,
    conversation: Conversation,
    queue_id: Optional[UUID],
    *,
    rng: Optional[random.Random] = None,
    log=None,
) -> DistributionResult:
    """Pick the next agent of ``queue_id`` for a brand-new conversation."""
    log = log or logger
    result = DistributionResult(queue_id=queue_id)
    if not queue_id:
        result.skipped_reason = "no_queue"
        return result

    queue = db.query(Queue).filter(Queue.id == queue_id, Queue.is_active.is_(True)).first()
    if not queue:
        log.info("Queue missing or inactive, not distributing", extra={"context": {"queue_id": str(queue_id)}})
        result.skipped_reason = "queue_inactive"
        return result

    policy = parse_policy(queue.distribution_type)
    result.policy = policy
    if policy is None:
        log.warning(
            "Unknown distribution type",
            extra={"context": {"queue_id": str(queue.id), "distribution_type": queue.distribution_type}},
        )
        result.skipped_reason = "unknown_policy"
        return result
    if policy is DistributionPolicy.DISABLED:
        result.skipped_reason = "disabled"
        return result

    members = load_active_members(db, queue.id)
    if not members:
        log.info("Queue has no active members", extra={"context": {"queue_id": str(queue.id), "queue": queue.name}})
        result.skipped_reason = "no_members"
        return result

    index = select_member_index(db, queue, policy, len(members), rng=rng)
    selected = members[index]
    assign_conversation(db, conversation, queue, selected.user_id)

    result.index = index
    result.assigned_user_id = selected.user_id
    log.info(
        "Conversation assigned from queue",
        extra={
            "context": {
                "conversation_id": str(conversation.id),
                "queue_id": str(queue.id),
                "policy": policy.value,
                "index": index,
                "user_id": str(selected.user_id),
            }
        },
    )
    return result
