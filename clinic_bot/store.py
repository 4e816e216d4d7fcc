"""Message persistence; status changes are single conditional UPDATEs."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select as sa_select, update
from sqlalchemy.orm import aliased
from sqlmodel import Session, select

from .models import Direction, Message, MessageStatus, utcnow
from .tenants import Tenant

logger = logging.getLogger(__name__)

PROGRESS = (
    MessageStatus.pending,
    MessageStatus.sent,
    MessageStatus.delivered,
    MessageStatus.read,
    MessageStatus.played,
)
RANK = {s.value: i for i, s in enumerate(PROGRESS, start=1)}

# provider numeric codes
STATUS_CODES = {
    0: MessageStatus.error,
    1: MessageStatus.pending,
    2: MessageStatus.sent,
    3: MessageStatus.delivered,
    4: MessageStatus.read,
    5: MessageStatus.played,
}


def status_from_code(code) -> MessageStatus:
    # only whole numbers map; strings, bools and fractions are unknown
    if isinstance(code, float) and code.is_integer():
        code = int(code)
    if isinstance(code, bool) or not isinstance(code, int):
        return MessageStatus.unknown
    return STATUS_CODES.get(code, MessageStatus.unknown)


def allowed_predecessors(new: MessageStatus) -> set:
    """Statuses a message may currently hold for ``new`` to be applied.

    Progress statuses only move forward (pending < sent < delivered < read <
    played). error / failed / unknown only land on a message that has not got
    past "sent". Re-applying the current status is a no-op.
    """
    new = MessageStatus(new)
    unranked = {s.value for s in MessageStatus if s.value not in RANK}
    if new.value in RANK:
        lower = {s for s, r in RANK.items() if r < RANK[new.value]}
        return lower | unranked
    early = {MessageStatus.pending.value, MessageStatus.sent.value}
    return early | (unranked - {new.value})


def can_transition(current: Optional[str], new: MessageStatus) -> bool:
    return current is None or current in allowed_predecessors(new)


def _transition(db: Session, new: MessageStatus, *where, **extra) -> int:
    stmt = (
        update(Message)
        .where(*where)
        .where(or_(Message.status.is_(None), Message.status.in_(allowed_predecessors(new))))
        .values(status=MessageStatus(new).value, updated_at=utcnow(), **extra)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount or 0


def _find_by_key(db: Session, tenant: Tenant, correlation_key: str) -> Optional[Message]:
    return db.exec(
        select(Message)
        .where(Message.whatsapp_session_id == tenant.id)
        .where(Message.provider_message_id == str(correlation_key))
    ).first()


def record_inbound(
    db: Session,
    tenant: Tenant,
    sender_id: str,
    content: str,
    timestamp: datetime,
    locale: str,
    correlation_key: Optional[str] = None,
) -> Message:
    """Always inserts; inbound messages are never merged."""
    msg = Message(
        whatsapp_session_id=tenant.id,
        sender_number=sender_id,
        recipient_number=tenant.session.phone_number,
        message_type='text',
        content=content,
        direction=Direction.inbound.value,
        status=MessageStatus.received.value,
        provider_message_id=str(correlation_key) if correlation_key else None,
        language_used=locale,
        timestamp=timestamp,
    )
    db.add(msg)
    db.commit()
    db.refresh(msg)
    logger.info("stored inbound message %s for session %s", msg.id, tenant.id)
    return msg


def record_outbound(db: Session, tenant: Tenant, recipient: str, content: str, locale: str) -> Message:
    msg = Message(
        whatsapp_session_id=tenant.id,
        sender_number=tenant.session.phone_number,
        recipient_number=recipient,
        message_type='text',
        content=content,
        direction=Direction.outbound.value,
        status=MessageStatus.pending.value,
        language_used=locale,
    )
    db.add(msg)
    db.commit()
    db.refresh(msg)
    return msg


def attach_correlation_key(db: Session, message_id: int, correlation_key: str) -> None:
    db.execute(
        update(Message)
        .where(Message.id == message_id)
        .where(Message.provider_message_id.is_(None))
        .values(provider_message_id=str(correlation_key), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def mark_failed(db: Session, message_id: int) -> int:
    return _transition(db, MessageStatus.failed, Message.id == message_id)


def mark_sent(
    db: Session,
    tenant: Tenant,
    correlation_key: Optional[str],
    success: bool,
    content: Optional[str] = None,
) -> int:
    """Record the provider's send confirmation for an outbound message.

    Matches on the provider message id first. Without one (or when nothing
    carries it) falls back to the oldest pending outbound message with the
    same text. That fallback cannot tell two identical replies apart: under
    concurrent sends of the same text the confirmation may land on the wrong
    one of them.
    """
    new = MessageStatus.sent if success else MessageStatus.failed
    base = (
        Message.whatsapp_session_id == tenant.id,
        Message.direction == Direction.outbound.value,
    )

    if correlation_key:
        rows = _transition(db, new, *base, Message.provider_message_id == str(correlation_key))
        if rows:
            logger.info("message %s marked %s", correlation_key, new.value)
            return rows
        existing = _find_by_key(db, tenant, correlation_key)
        if existing is not None:
            logger.info("message %s already %s; ignoring %s", correlation_key, existing.status, new.value)
            return 0

    if not content:
        logger.warning("sent event for %s matched no message", correlation_key)
        return 0

    # aliased so the subquery does not correlate with the UPDATE target
    m = aliased(Message)
    oldest_pending = (
        sa_select(func.min(m.id))
        .where(m.whatsapp_session_id == tenant.id)
        .where(m.direction == Direction.outbound.value)
        .where(m.content == content)
        .where(m.status == MessageStatus.pending.value)
    )
    extra = {}
    if correlation_key:
        # a message already correlated to another send is not this one
        oldest_pending = oldest_pending.where(
            or_(m.provider_message_id.is_(None), m.provider_message_id == str(correlation_key))
        )
        extra["provider_message_id"] = func.coalesce(Message.provider_message_id, str(correlation_key))
    oldest_pending = oldest_pending.scalar_subquery()
    rows = _transition(db, new, Message.id == oldest_pending, **extra)
    if rows:
        logger.info("pending message matched by content marked %s", new.value)
    else:
        logger.warning("sent event for session %s matched no pending message", tenant.id)
    return rows


def apply_status_update(db: Session, tenant: Tenant, correlation_key: Optional[str], numeric_status) -> int:
    """Apply a provider delivery status code; a miss is logged, never raised."""
    new = status_from_code(numeric_status)
    if not correlation_key:
        logger.warning("status update without message id for session %s", tenant.id)
        return 0

    rows = _transition(
        db, new,
        Message.whatsapp_session_id == tenant.id,
        Message.provider_message_id == str(correlation_key),
    )
    if rows:
        logger.info("message %s -> %s", correlation_key, new.value)
        return rows

    existing = _find_by_key(db, tenant, correlation_key)
    if existing is None:
        logger.warning("status update for unknown message %s (session %s)", correlation_key, tenant.id)
    else:
        logger.info("message %s stays %s; %s is not a forward move", correlation_key, existing.status, new.value)
    return 0
