from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List

from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field, Relationship


def utcnow() -> datetime:
    # naive UTC, what SQLite hands back anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SessionStatus(str, Enum):
    pending = 'pending'
    connecting = 'connecting'
    connected = 'connected'
    disconnected = 'disconnected'
    error = 'error'


class Direction(str, Enum):
    inbound = 'inbound'
    outbound = 'outbound'


class MessageStatus(str, Enum):
    pending = 'pending'
    sent = 'sent'
    delivered = 'delivered'
    read = 'read'
    played = 'played'
    failed = 'failed'
    error = 'error'
    received = 'received'
    unknown = 'unknown'


class User(SQLModel, table=True):
    """A clinic account."""
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    clinic_name: str
    clinic_address: Optional[str] = None
    clinic_phone: Optional[str] = None
    language_preference: Optional[str] = None  # en | ar | bilingual
    currency: Optional[str] = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    clinic_setting: Optional['ClinicSetting'] = Relationship(
        back_populates='user',
        sa_relationship_kwargs={'cascade': 'all, delete-orphan', 'uselist': False},
    )
    sessions: List['WhatsappSession'] = Relationship(
        back_populates='user',
        sa_relationship_kwargs={'cascade': 'all, delete-orphan'},
    )


class ClinicSetting(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', unique=True)
    greeting_en: Optional[str] = None
    greeting_ar: Optional[str] = None
    # {"monday": {"open": "09:00", "close": "17:00"}, ...}
    working_hours: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    user: Optional[User] = Relationship(back_populates='clinic_setting')
    services: List['Service'] = Relationship(
        back_populates='clinic_setting',
        sa_relationship_kwargs={'cascade': 'all, delete-orphan', 'order_by': 'Service.id'},
    )
    keywords: List['CustomKeyword'] = Relationship(
        back_populates='clinic_setting',
        sa_relationship_kwargs={'cascade': 'all, delete-orphan', 'order_by': 'CustomKeyword.id'},
    )


class Service(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    clinic_setting_id: int = Field(foreign_key='clinicsetting.id', index=True)
    name_en: str
    name_ar: Optional[str] = None
    description_en: Optional[str] = None
    description_ar: Optional[str] = None
    price: float
    currency: Optional[str] = None
    duration: int  # minutes
    created_at: datetime = Field(default_factory=utcnow)

    clinic_setting: Optional[ClinicSetting] = Relationship(back_populates='services')


class CustomKeyword(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    clinic_setting_id: int = Field(foreign_key='clinicsetting.id', index=True)
    keyword: str
    response_en: str
    response_ar: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    clinic_setting: Optional[ClinicSetting] = Relationship(back_populates='keywords')


class WhatsappSession(SQLModel, table=True):
    """One clinic's connection to the messaging provider."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    session_id: str = Field(index=True)  # provider-side id
    api_key: str
    webhook_secret: str = Field(index=True)
    phone_number: str
    status: str = Field(default=SessionStatus.pending.value)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    user: Optional[User] = Relationship(back_populates='sessions')
    messages: List['Message'] = Relationship(
        back_populates='whatsapp_session',
        sa_relationship_kwargs={'cascade': 'all, delete-orphan'},
    )


class Message(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    whatsapp_session_id: int = Field(foreign_key='whatsappsession.id', index=True)
    sender_number: str
    recipient_number: str
    message_type: str = Field(default='text')
    content: str
    direction: str
    status: Optional[str] = None
    provider_message_id: Optional[str] = Field(default=None, index=True)
    language_used: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    whatsapp_session: Optional[WhatsappSession] = Relationship(back_populates='messages')
