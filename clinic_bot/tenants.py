import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

from .models import ClinicSetting, User, WhatsappSession
from .responder import ClinicConfig, KeywordRule, ServiceItem

logger = logging.getLogger(__name__)


class TenantNotFound(Exception):
    pass


@dataclass
class Tenant:
    session: WhatsappSession
    user: User
    config: ClinicConfig

    @property
    def id(self) -> int:
        return self.session.id


def build_config(user: User, setting: Optional[ClinicSetting], default_currency: str = 'USD') -> ClinicConfig:
    """Freeze a clinic's bot settings into a ClinicConfig."""
    hours = {}
    services = ()
    keywords = ()
    greeting_en = greeting_ar = None
    if setting is not None:
        greeting_en, greeting_ar = setting.greeting_en, setting.greeting_ar
        hours = {day: dict(slot or {}) for day, slot in (setting.working_hours or {}).items()}
        services = tuple(
            ServiceItem(name_en=s.name_en, name_ar=s.name_ar, price=s.price,
                        currency=s.currency, duration=s.duration)
            for s in setting.services
        )
        keywords = tuple(
            KeywordRule(keyword=k.keyword, response_en=k.response_en, response_ar=k.response_ar)
            for k in setting.keywords
        )
    return ClinicConfig(
        greeting_en=greeting_en,
        greeting_ar=greeting_ar,
        working_hours=hours,
        services=services,
        keywords=keywords,
        address=user.clinic_address,
        phone=user.clinic_phone,
        currency=user.currency or default_currency,
        language_preference=user.language_preference,
    )


def _resolve(db: Session, where, label: str, default_currency: str) -> Tenant:
    stmt = (
        select(WhatsappSession, User, ClinicSetting)
        .join(User, User.id == WhatsappSession.user_id)
        .join(ClinicSetting, ClinicSetting.user_id == User.id, isouter=True)
        .where(where)
        .options(selectinload(ClinicSetting.services), selectinload(ClinicSetting.keywords))
    )
    rows = db.exec(stmt).all()
    if not rows:
        raise TenantNotFound(f"no session for {label}")
    if len(rows) > 1:
        logger.error("%d sessions share the same %s; refusing to pick one", len(rows), label)
        raise TenantNotFound(f"ambiguous {label}")

    wa_session, user, setting = rows[0]
    if not user.is_active:
        raise TenantNotFound(f"account {user.id} is inactive")
    return Tenant(session=wa_session, user=user, config=build_config(user, setting, default_currency))


def resolve_tenant(db: Session, secret: Optional[str], default_currency: str = 'USD') -> Tenant:
    """Find the session whose webhook secret equals ``secret``."""
    if not secret:
        raise TenantNotFound("empty secret")
    return _resolve(db, WhatsappSession.webhook_secret == secret, "webhook secret", default_currency)


def resolve_tenant_by_session_id(db: Session, provider_session_id: str, default_currency: str = 'USD') -> Tenant:
    return _resolve(db, WhatsappSession.session_id == str(provider_session_id), "provider session id", default_currency)
