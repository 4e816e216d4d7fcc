import logging
import re

from sqlmodel import Session

from . import store, wasender
from .models import Message
from .tenants import Tenant

logger = logging.getLogger(__name__)

_NOT_DIAL = re.compile(r'[^\d+]')


def normalize_recipient(recipient: str) -> str:
    """Keep digits and a single leading plus: '+971 50-123 4567' -> '+971501234567'.

    WhatsApp JIDs ('971501234567@s.whatsapp.net') reduce to their number.
    """
    number = (recipient or '').split('@', 1)[0]
    digits = _NOT_DIAL.sub('', number)
    plus = '+' if digits.startswith('+') else ''
    return plus + digits.replace('+', '')


def send_reply(db: Session, tenant: Tenant, recipient: str, text: str, locale: str) -> Message:
    """Record an outbound message and hand it to the provider.

    Raises WasenderError when the provider call fails; the message is left
    as "failed" in that case.
    """
    to = normalize_recipient(recipient)
    if not to.lstrip('+'):
        raise ValueError(f"recipient {recipient!r} has no digits")

    msg = store.record_outbound(db, tenant, to, text, locale)
    try:
        data = wasender.send_message(tenant.session.api_key, to, text)
    except wasender.WasenderError:
        store.mark_failed(db, msg.id)
        raise

    msg_id = data.get('msgId') or data.get('id')
    if msg_id is not None:
        store.attach_correlation_key(db, msg.id, str(msg_id))
    logger.info("reply %s sent to %s for session %s", msg.id, to, tenant.id)
    db.refresh(msg)
    return msg
