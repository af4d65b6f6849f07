
import re
from datetime import datetime
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional

from .models import FieldType, ReminderInterval

E164 = re.compile(r"^\+[1-9]\d{7,14}$")


class SignerCreate(BaseModel):
    email: str
    name: Optional[str] = None
    color: Optional[str] = None
    phone_2fa_enabled: bool = False
    phone_2fa_number: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _strip_email(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError("invalid email address")
        return v

    @field_validator("phone_2fa_number")
    @classmethod
    def _e164(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.replace(" ", "")
        if not E164.match(v):
            raise ValueError("phone number must be in E.164 format")
        return v


class SignersReplace(BaseModel):
    signers: List[SignerCreate]


class FieldCreate(BaseModel):
    signer_id: int
    type: FieldType
    page: int = Field(default=0, ge=0)
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    width: float = Field(gt=0.0, le=1.0)
    height: float = Field(gt=0.0, le=1.0)
    required: bool = True
    label: Optional[str] = None
    placeholder: Optional[str] = None


class FieldsReplace(BaseModel):
    fields: List[FieldCreate]


class EnvelopeSettings(BaseModel):
    reminder_enabled: Optional[bool] = None
    reminder_interval: Optional[ReminderInterval] = None
    expires_at: Optional[datetime] = None
    message: Optional[str] = None


class SignComplete(BaseModel):
    values: dict  # field_id -> value (text/date/"true"/signature data URL)


class SignDecline(BaseModel):
    reason: Optional[str] = None


class TemplateCreate(BaseModel):
    envelope_slug: str
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    # one label per signer, in signer order; defaults to the signers' names
    roles: Optional[List[str]] = None


class TemplateInstantiate(BaseModel):
    signers: List[SignerCreate] = Field(min_length=1)
    name: Optional[str] = None
    message: Optional[str] = None
    settings: Optional[EnvelopeSettings] = None
