import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from dateutil import parser as date_parser, tz
from sqlmodel import Session

from . import dispatch, store
from .models import utcnow
from .responder import respond, select_locale
from .signature import verify
from .tenants import Tenant, TenantNotFound, resolve_tenant, resolve_tenant_by_session_id
from .wasender import WasenderError

logger = logging.getLogger(__name__)

INBOUND_MESSAGE = 'inbound-message'
OUTBOUND_SENT = 'outbound-sent'
STATUS_UPDATE = 'status-update'

EVENT_KINDS = {
    'messages.received': INBOUND_MESSAGE,
    'message.sent': OUTBOUND_SENT,
    'messages.update': STATUS_UPDATE,
}

ACCEPTED = 'accepted'
DROPPED = 'dropped'
IGNORED = 'ignored'


class InvalidEnvelope(Exception):
    pass


class SignatureRejected(Exception):
    pass


@dataclass
class Envelope:
    event: str
    data: Any
    timestamp: datetime

    @property
    def kind(self) -> Optional[str]:
        return EVENT_KINDS.get(self.event)


def parse_timestamp(value) -> datetime:
    """Epoch seconds (or ms), numeric string or ISO-8601 -> naive UTC."""
    if value is None or isinstance(value, bool) or value == '':
        return utcnow()
    try:
        if isinstance(value, str):
            try:
                value = float(value)
            except ValueError:
                dt = date_parser.isoparse(value)
                if dt.tzinfo is not None:
                    dt = dt.astimezone(tz.UTC).replace(tzinfo=None)
                return dt
        seconds = float(value)
        if seconds > 1e11:
            seconds /= 1000.0
        return datetime.fromtimestamp(seconds, tz.UTC).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning("unparseable event timestamp %r, using now", value)
        return utcnow()


def parse_envelope(raw_body: bytes) -> Envelope:
    try:
        body = json.loads(raw_body or b'')
    except ValueError as e:
        raise InvalidEnvelope("body is not valid JSON") from e
    if not isinstance(body, dict):
        raise InvalidEnvelope("body must be a JSON object")
    event = body.get('event')
    if not isinstance(event, str) or not event.strip():
        raise InvalidEnvelope("Invalid webhook data: missing event")
    return Envelope(
        event=event.strip(),
        data=body.get('data'),
        timestamp=parse_timestamp(body.get('timestamp')),
    )


def extract_text(message) -> str:
    if not isinstance(message, dict):
        return ''
    if isinstance(message.get('conversation'), str):
        return message['conversation']
    extended = message.get('extendedTextMessage')
    if isinstance(extended, dict) and isinstance(extended.get('text'), str):
        return extended['text']
    return ''


def _items(data) -> list:
    # some deliveries batch several updates in one event
    if isinstance(data, list):
        return [d for d in data if isinstance(d, dict)]
    if isinstance(data, dict):
        return [data]
    return []


# ---------- handlers ----------

def handle_inbound(db: Session, tenant: Tenant, item: dict, envelope: Envelope) -> None:
    key, message = item.get('key'), item.get('message')
    if not isinstance(key, dict) or not isinstance(message, dict):
        logger.warning("messages.received without key or message, skipping")
        return
    if key.get('fromMe'):
        logger.debug("ignoring own message echo %s", key.get('id'))
        return
    sender = key.get('remoteJid')
    content = extract_text(message)
    if not sender:
        logger.warning("messages.received without sender, skipping")
        return
    if not content:
        logger.info("no text content in message %s, skipping", key.get('id'))
        return

    locale = select_locale(content, tenant.config.language_preference)
    store.record_inbound(db, tenant, sender, content, envelope.timestamp, locale, key.get('id'))

    reply = respond(content, tenant.config, locale)
    if reply is None:
        return
    try:
        dispatch.send_reply(db, tenant, sender, reply, locale)
    except (WasenderError, ValueError):
        logger.exception("reply to %s failed for session %s", sender, tenant.id)


def handle_sent(db: Session, tenant: Tenant, item: dict, envelope: Envelope) -> None:
    key = item.get('key')
    if not isinstance(key, dict):
        logger.warning("message.sent without key, skipping")
        return
    content = extract_text(item.get('message')) or None
    store.mark_sent(db, tenant, key.get('id'), sent_ok(item.get('success')), content)


def sent_ok(value) -> bool:
    """A missing flag means the send went through; anything but true otherwise fails."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() == 'true'
    return value is True


def handle_status(db: Session, tenant: Tenant, item: dict, envelope: Envelope) -> None:
    key, update = item.get('key'), item.get('update')
    if not isinstance(key, dict) or not isinstance(update, dict):
        logger.warning("messages.update without key or update, skipping")
        return
    if update.get('status') is None:
        logger.warning("messages.update without status for %s", key.get('id'))
        return
    store.apply_status_update(db, tenant, key.get('id'), update['status'])


HANDLERS = {
    INBOUND_MESSAGE: handle_inbound,
    OUTBOUND_SENT: handle_sent,
    STATUS_UPDATE: handle_status,
}


def dispatch_event(db: Session, tenant: Tenant, envelope: Envelope) -> str:
    kind = envelope.kind
    if kind is None:
        logger.info("unhandled event type %s for session %s", envelope.event, tenant.id)
        return IGNORED

    handler = HANDLERS[kind]
    for item in _items(envelope.data):
        try:
            handler(db, tenant, item, envelope)
        except Exception:
            db.rollback()
            logger.exception("%s handler failed for session %s", kind, tenant.id)
    return ACCEPTED


def ingest(
    db: Session,
    raw_body: bytes,
    envelope: Envelope,
    signature_header: Optional[str],
    default_currency: str = 'USD',
    provider_session_id: Optional[str] = None,
) -> str:
    """Run one provider event through the pipeline.

    Returns ACCEPTED, IGNORED or DROPPED; raises SignatureRejected when the
    resolved tenant's secret does not vouch for the request.
    """
    try:
        if provider_session_id is not None:
            tenant = resolve_tenant_by_session_id(db, provider_session_id, default_currency)
        else:
            tenant = resolve_tenant(db, signature_header, default_currency)
    except TenantNotFound as e:
        logger.warning("dropping %s event: %s", envelope.event, e)
        return DROPPED

    if not verify(raw_body, signature_header, tenant.session.webhook_secret):
        logger.warning("invalid webhook signature for session %s (secret rotated?)", tenant.id)
        raise SignatureRejected(f"invalid signature for session {tenant.id}")

    logger.info("processing %s for session %s", envelope.event, tenant.id)
    return dispatch_event(db, tenant, envelope)
