from enum import Enum
from typing import Optional
from datetime import datetime
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field as ORMField

from .utils import as_utc, utcnow


class EnvelopeStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    COMPLETED = "completed"
    DECLINED = "declined"
    EXPIRED = "expired"


class SignerStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"


# Signers still expected to act
OUTSTANDING_SIGNER_STATUSES = (SignerStatus.PENDING, SignerStatus.SENT, SignerStatus.VIEWED)


class FieldType(str, Enum):
    SIGNATURE = "signature"
    INITIALS = "initials"
    DATE = "date"
    TEXT = "text"
    CHECKBOX = "checkbox"
    NAME = "name"
    EMAIL = "email"


# Stored value of a ticked checkbox field
CHECKBOX_TRUE = "true"


class ReminderInterval(str, Enum):
    ONE_DAY = "1_day"
    TWO_DAYS = "2_days"
    THREE_DAYS = "3_days"
    SEVEN_DAYS = "7_days"


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC in and out, whatever the backend keeps.

    SQLite drops the offset on the way in, so loaded values get it back here.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value) if value is not None else None

    def process_result_value(self, value, dialect):
        return as_utc(value) if value is not None else None


def _timestamp(**kwargs):
    return ORMField(sa_type=UTCDateTime, **kwargs)


class User(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    email: str = ORMField(index=True, unique=True)
    name: Optional[str] = None
    created_at: datetime = _timestamp(default_factory=utcnow)


class Envelope(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    slug: str = ORMField(index=True, unique=True)
    owner_id: int = ORMField(foreign_key="user.id", index=True)
    name: str
    message: Optional[str] = None
    status: str = ORMField(default=EnvelopeStatus.DRAFT.value, index=True)
    document_key: str
    document_hash: str
    final_document_key: Optional[str] = None
    final_document_hash: Optional[str] = None
    audit_trail_key: Optional[str] = None
    finalization_claimed: bool = False
    finalization_claimed_at: Optional[datetime] = _timestamp(default=None)
    rebuild_claimed_at: Optional[datetime] = _timestamp(default=None)
    reminder_enabled: bool = False
    reminder_interval: str = ReminderInterval.THREE_DAYS.value
    last_reminder_at: Optional[datetime] = _timestamp(default=None)
    expires_at: Optional[datetime] = _timestamp(default=None)
    created_at: datetime = _timestamp(default_factory=utcnow)
    completed_at: Optional[datetime] = _timestamp(default=None)


class Signer(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(foreign_key="envelope.id", index=True)
    email: str
    name: Optional[str] = None
    order: int = 0
    color: str = "#EF4444"
    token: str = ORMField(index=True, unique=True)
    status: str = SignerStatus.PENDING.value
    viewed_at: Optional[datetime] = _timestamp(default=None)
    signed_at: Optional[datetime] = _timestamp(default=None)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    signature_hash: Optional[str] = None
    decline_reason: Optional[str] = None
    phone_2fa_enabled: bool = False
    phone_2fa_number: Optional[str] = None
    phone_2fa_verified: bool = False


class Field(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(foreign_key="envelope.id", index=True)
    signer_id: int = ORMField(foreign_key="signer.id", index=True)
    type: str  # signature|initials|date|text|checkbox|name|email
    page: int = 0
    x: float
    y: float
    width: float
    height: float
    required: bool = True
    label: Optional[str] = None
    placeholder: Optional[str] = None
    value: Optional[str] = None
    filled_at: Optional[datetime] = _timestamp(default=None)


class AuditLog(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(foreign_key="envelope.id", index=True)
    signer_id: Optional[int] = None
    action: str = ORMField(index=True)
    details_json: str = "{}"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = _timestamp(default_factory=utcnow)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None


class EnvelopeTemplate(SQLModel, table=True):
    """A reusable document with signer roles and field layout, no people attached."""

    id: Optional[int] = ORMField(default=None, primary_key=True)
    slug: str = ORMField(index=True, unique=True)
    owner_id: int = ORMField(foreign_key="user.id", index=True)
    name: str
    description: Optional[str] = None
    document_key: str
    document_hash: str
    roles_json: str = "[]"  # [{"role": ..., "color": ...}], index = role position
    fields_json: str = "[]"  # field layout, "role" points into roles_json
    archived_at: Optional[datetime] = _timestamp(default=None)
    created_at: datetime = _timestamp(default_factory=utcnow)
