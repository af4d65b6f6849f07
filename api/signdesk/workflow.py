"""
Envelope and signer state machine.

Envelope: draft -> pending -> completed | declined | expired.
Signer:   pending -> sent -> viewed -> signed | declined.

Signers and fields can only change while the envelope is a draft. Every
precondition is checked before anything is written, and every transition is
committed before its audit entry is appended.
"""
import logging
import math
from dataclasses import dataclass, field as dc_field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import delete, exists, update
from sqlmodel import Session, select

from . import audit, config, storage
from .audit import AuditAction
from .errors import AlreadySent, AlreadySigned, DuplicateSigner, InvalidState, MissingRequiredFields, NotFound
from .models import (
    CHECKBOX_TRUE,
    OUTSTANDING_SIGNER_STATUSES,
    Envelope,
    EnvelopeStatus,
    Field,
    FieldType,
    ReminderInterval,
    Signer,
    SignerStatus,
    User,
)
from .notifications import DeliveryResult, NotificationKind, OutgoingMessage, ThrottledNotifier
from .schemas import EnvelopeSettings, FieldCreate, SignerCreate
from .utils import as_utc, make_signer_token, make_slug, next_signer_color, utcnow

if TYPE_CHECKING:
    from .finalization import FinalizationReport

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    envelope: Envelope
    deliveries: list[DeliveryResult] = dc_field(default_factory=list)


@dataclass
class SigningLink:
    signer_id: int
    email: str
    name: Optional[str]
    url: str


@dataclass
class SigningResult:
    signer: Signer
    all_completed: bool
    proof: str
    finalization: Optional["FinalizationReport"] = None


# ---------- lookups ----------

def get_or_create_user(session: Session, email: str, name: Optional[str] = None) -> User:
    email = email.strip().lower()
    user = session.exec(select(User).where(User.email == email)).first()
    if user:
        return user
    user = User(email=email, name=name)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def get_envelope(session: Session, slug: str, owner: Optional[User] = None) -> Envelope:
    stmt = select(Envelope).where(Envelope.slug == slug)
    if owner is not None:
        stmt = stmt.where(Envelope.owner_id == owner.id)
    envelope = session.exec(stmt).first()
    if not envelope:
        raise NotFound("Envelope not found")
    return envelope


def get_signer_by_token(session: Session, token: str) -> Signer:
    signer = session.exec(select(Signer).where(Signer.token == token)).first()
    if not signer:
        raise NotFound("Invalid or expired signing link")
    return signer


def list_signers(session: Session, envelope_id: int) -> list[Signer]:
    return list(session.exec(
        select(Signer).where(Signer.envelope_id == envelope_id).order_by(Signer.order, Signer.id)
    ).all())


def list_fields(session: Session, envelope_id: int, signer_id: Optional[int] = None) -> list[Field]:
    stmt = select(Field).where(Field.envelope_id == envelope_id)
    if signer_id is not None:
        stmt = stmt.where(Field.signer_id == signer_id)
    return list(session.exec(stmt.order_by(Field.page, Field.id)).all())


def signing_link(signer: Signer) -> str:
    return f"{config.APP_URL}/sign/{signer.token}"


def _require_draft(envelope: Envelope):
    if envelope.status != EnvelopeStatus.DRAFT.value:
        raise InvalidState("Cannot modify sent envelope")


# ---------- draft editing ----------

def create_envelope(
    session: Session,
    owner: User,
    name: str,
    pdf_bytes: bytes,
    message: Optional[str] = None,
    settings: Optional[EnvelopeSettings] = None,
    template_slug: Optional[str] = None,
) -> Envelope:
    slug = make_slug()
    while session.exec(select(Envelope.id).where(Envelope.slug == slug)).first() is not None:
        slug = make_slug()
    key = storage.original_key(slug)
    storage.put_bytes(key, pdf_bytes, content_type="application/pdf")
    envelope = Envelope(
        slug=slug,
        owner_id=owner.id,
        name=name,
        message=message,
        document_key=key,
        document_hash=audit.document_hash(pdf_bytes),
    )
    if settings is not None:
        _apply_settings(envelope, settings)
    session.add(envelope)
    session.commit()
    session.refresh(envelope)
    audit.append(session, envelope.id, AuditAction.CREATED, details=audit.CreatedDetails(
        name=envelope.name, document_hash=envelope.document_hash, template=template_slug,
    ))
    return envelope


def add_signer(session: Session, envelope: Envelope, data: SignerCreate) -> Signer:
    _require_draft(envelope)
    existing = list_signers(session, envelope.id)
    if any(s.email.lower() == data.email.lower() for s in existing):
        raise DuplicateSigner(data.email)
    signer = Signer(
        envelope_id=envelope.id,
        email=data.email,
        name=data.name or None,
        order=len(existing),
        color=data.color or next_signer_color([s.color for s in existing]),
        token=make_signer_token(),
        phone_2fa_enabled=data.phone_2fa_enabled and bool(data.phone_2fa_number),
        phone_2fa_number=data.phone_2fa_number,
    )
    session.add(signer)
    session.commit()
    session.refresh(signer)
    return signer


def replace_signers(session: Session, envelope: Envelope, signers: list[SignerCreate]) -> list[Signer]:
    """Swap the whole signer list in one transaction.

    Every entry gets a fresh token, so links handed out for the previous list
    stop working. Fields addressed to the removed signers go with them.
    """
    _require_draft(envelope)
    seen = set()
    for s in signers:
        key = s.email.lower()
        if key in seen:
            raise DuplicateSigner(s.email)
        seen.add(key)

    session.execute(delete(Field).where(Field.envelope_id == envelope.id))
    session.execute(delete(Signer).where(Signer.envelope_id == envelope.id))
    colors = []
    created = []
    for index, s in enumerate(signers):
        color = s.color or next_signer_color(colors)
        colors.append(color)
        signer = Signer(
            envelope_id=envelope.id,
            email=s.email,
            name=s.name or None,
            order=index,
            color=color,
            token=make_signer_token(),
            phone_2fa_enabled=s.phone_2fa_enabled and bool(s.phone_2fa_number),
            phone_2fa_number=s.phone_2fa_number,
        )
        session.add(signer)
        created.append(signer)
    session.commit()
    for signer in created:
        session.refresh(signer)
    return created


def remove_signer(session: Session, envelope: Envelope, signer_id: int):
    _require_draft(envelope)
    signer = session.get(Signer, signer_id)
    if not signer or signer.envelope_id != envelope.id:
        raise NotFound("Signer not found")
    session.execute(delete(Field).where(Field.signer_id == signer.id))
    session.delete(signer)
    session.commit()


def set_fields(session: Session, envelope: Envelope, fields: list[FieldCreate]) -> list[Field]:
    """Replace the envelope's field set (delete then insert, no merge)."""
    _require_draft(envelope)
    signer_ids = {s.id for s in list_signers(session, envelope.id)}
    for f in fields:
        if f.signer_id not in signer_ids:
            raise NotFound(f"Signer {f.signer_id} is not part of this envelope")

    session.execute(delete(Field).where(Field.envelope_id == envelope.id))
    created = []
    for f in fields:
        row = Field(
            envelope_id=envelope.id,
            signer_id=f.signer_id,
            type=FieldType(f.type).value,
            page=f.page,
            x=f.x,
            y=f.y,
            width=f.width,
            height=f.height,
            required=f.required,
            label=f.label,
            placeholder=f.placeholder,
        )
        session.add(row)
        created.append(row)
    session.commit()
    for row in created:
        session.refresh(row)
    return created


def _apply_settings(envelope: Envelope, settings: EnvelopeSettings) -> dict:
    changes = settings.model_dump(exclude_unset=True)
    if "reminder_interval" in changes and changes["reminder_interval"] is not None:
        changes["reminder_interval"] = ReminderInterval(changes["reminder_interval"]).value
    if changes.get("expires_at") is not None:
        changes["expires_at"] = as_utc(changes["expires_at"])
    for key, value in changes.items():
        if key == "reminder_enabled" and value is None:
            continue
        setattr(envelope, key, value)
    return changes


def update_settings(session: Session, envelope: Envelope, settings: EnvelopeSettings) -> Envelope:
    if envelope.status not in (EnvelopeStatus.DRAFT.value, EnvelopeStatus.PENDING.value):
        raise InvalidState(f"Envelope is {envelope.status}")
    changes = _apply_settings(envelope, settings)
    session.add(envelope)
    session.commit()
    session.refresh(envelope)
    if changes:
        audit.append(session, envelope.id, AuditAction.EDITED, details=audit.EditedDetails(changes=changes))
    return envelope


# ---------- sending ----------

def _start(session: Session, envelope: Envelope) -> tuple[list[Signer], int]:
    if envelope.status == EnvelopeStatus.PENDING.value:
        raise AlreadySent()
    if envelope.status != EnvelopeStatus.DRAFT.value:
        raise InvalidState(f"Envelope is {envelope.status}")
    signers = list_signers(session, envelope.id)
    if not signers:
        raise InvalidState("At least one signer is required")
    field_count = len(list_fields(session, envelope.id))
    if field_count == 0:
        raise InvalidState("At least one field is required")

    result = session.execute(
        update(Envelope)
        .where(Envelope.id == envelope.id, Envelope.status == EnvelopeStatus.DRAFT.value)
        .values(status=EnvelopeStatus.PENDING.value)
    )
    if result.rowcount != 1:
        session.rollback()
        raise AlreadySent()
    session.execute(
        update(Signer).where(Signer.envelope_id == envelope.id).values(status=SignerStatus.SENT.value)
    )
    session.commit()
    session.refresh(envelope)
    for s in signers:
        session.refresh(s)
    return signers, field_count


def send(session: Session, envelope: Envelope, notifier: Optional[ThrottledNotifier] = None) -> SendResult:
    """Move a draft to pending and invite every signer.

    The envelope counts as sent once committed; invitation delivery results
    are reported but never undo the transition.
    """
    signers, field_count = _start(session, envelope)
    audit.append(session, envelope.id, AuditAction.SENT, details=audit.SentDetails(
        signer_count=len(signers), field_count=field_count,
    ))

    owner = session.get(User, envelope.owner_id)
    sender_name = (owner.name or owner.email) if owner else None
    notifier = notifier or ThrottledNotifier()
    deliveries = notifier.send_all([
        OutgoingMessage(s.email, NotificationKind.INVITATION, {
            "document_name": envelope.name,
            "sender_name": sender_name,
            "message": envelope.message,
            "signing_link": signing_link(s),
            "reply_to": owner.email if owner else None,
        })
        for s in signers
    ])
    failed = [d.to for d in deliveries if not d.delivered]
    if failed:
        logger.warning("Envelope %s sent, but invitations failed for: %s", envelope.slug, ", ".join(failed))
    return SendResult(envelope=envelope, deliveries=deliveries)


def generate_links(session: Session, envelope: Envelope) -> list[SigningLink]:
    """Same transition as ``send`` without emailing anyone."""
    signers, field_count = _start(session, envelope)
    audit.append(session, envelope.id, AuditAction.LINKS_GENERATED, details=audit.SentDetails(
        signer_count=len(signers), field_count=field_count,
    ))
    return [SigningLink(s.id, s.email, s.name, signing_link(s)) for s in signers]


# ---------- signer actions ----------

def _require_signable(envelope: Envelope, signer: Signer):
    if signer.status == SignerStatus.SIGNED.value:
        raise AlreadySigned()
    if signer.status == SignerStatus.DECLINED.value:
        raise InvalidState("You have declined this document")
    if envelope.status == EnvelopeStatus.EXPIRED.value:
        raise InvalidState("This document has expired")
    if envelope.status != EnvelopeStatus.PENDING.value:
        raise InvalidState(f"This document is {envelope.status}")


def load_for_signing(
    session: Session, token: str, ip: Optional[str] = None, ua: Optional[str] = None
) -> tuple[Signer, Envelope, list[Field]]:
    signer = get_signer_by_token(session, token)
    envelope = session.get(Envelope, signer.envelope_id)
    _require_signable(envelope, signer)
    if signer.viewed_at is None:
        signer.viewed_at = utcnow()
        signer.status = SignerStatus.VIEWED.value
        session.add(signer)
        session.commit()
        session.refresh(signer)
        audit.append(session, envelope.id, AuditAction.VIEWED, signer_id=signer.id, ip=ip, ua=ua)
    return signer, envelope, list_fields(session, envelope.id, signer.id)


def verify_phone_2fa(session: Session, token: str, ip: Optional[str] = None, ua: Optional[str] = None) -> Signer:
    signer = get_signer_by_token(session, token)
    envelope = session.get(Envelope, signer.envelope_id)
    _require_signable(envelope, signer)
    if not signer.phone_2fa_enabled:
        raise InvalidState("Phone verification is not enabled for this signer")
    signer.phone_2fa_verified = True
    session.add(signer)
    session.commit()
    session.refresh(signer)
    audit.append(
        session, envelope.id, AuditAction.PHONE_2FA_VERIFIED, signer_id=signer.id,
        details={"phone": signer.phone_2fa_number}, ip=ip, ua=ua,
    )
    return signer


def _normalize_value(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("value")
    if isinstance(value, bool):
        return CHECKBOX_TRUE if value else "false"
    if value is None:
        return None
    return str(value)


def is_filled(field_type: str, value: Optional[str]) -> bool:
    if FieldType(field_type) == FieldType.CHECKBOX:
        return value == CHECKBOX_TRUE
    return value is not None and value.strip() != ""


def missing_required(fields: list[Field], values: dict[int, Optional[str]]) -> list[int]:
    return [f.id for f in fields if f.required and not is_filled(f.type, values.get(f.id))]


def complete_signing(
    session: Session,
    signer: Signer,
    field_values: dict,
    ip: Optional[str] = None,
    ua: Optional[str] = None,
    finalize: bool = True,
    notifier: Optional[ThrottledNotifier] = None,
) -> SigningResult:
    """Record one signer's signature and finalize when it was the last one.

    Once the signature is committed the call succeeds; a failing
    finalization is logged and reported, never raised.
    """
    envelope = session.get(Envelope, signer.envelope_id)
    _require_signable(envelope, signer)
    if signer.phone_2fa_enabled and not signer.phone_2fa_verified:
        raise InvalidState("Phone verification required before signing")

    values = {}
    for key, raw in (field_values or {}).items():
        try:
            values[int(key)] = _normalize_value(raw)
        except (TypeError, ValueError):
            continue
    fields = list_fields(session, envelope.id, signer.id)
    missing = missing_required(fields, values)
    if missing:
        raise MissingRequiredFields(missing)

    signed_at = utcnow()
    proof = audit.signature_proof(envelope.document_hash, signer.id, signer.email, signed_at, ip, ua)
    # A decline or expiry may have committed since the checks above.
    envelope_open = exists().where(
        Envelope.id == envelope.id,
        Envelope.status == EnvelopeStatus.PENDING.value,
    )
    result = session.execute(
        update(Signer)
        .where(
            Signer.id == signer.id,
            Signer.status.in_([s.value for s in OUTSTANDING_SIGNER_STATUSES]),
            envelope_open,
        )
        .values(
            status=SignerStatus.SIGNED.value,
            signed_at=signed_at,
            ip_address=ip,
            user_agent=ua,
            signature_hash=proof,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        session.refresh(signer)
        session.refresh(envelope)
        if signer.status == SignerStatus.SIGNED.value:
            raise AlreadySigned()
        raise InvalidState(f"This document is {envelope.status}")
    filled = 0
    for f in fields:
        if f.id in values and values[f.id] is not None:
            f.value = values[f.id]
            f.filled_at = signed_at
            session.add(f)
            filled += 1
    session.commit()
    session.refresh(signer)

    audit.append(session, envelope.id, AuditAction.SIGNED, signer_id=signer.id, details=audit.SignedDetails(
        signature_hash=proof, email=signer.email, fields_count=filled,
    ), ip=ip, ua=ua)

    statuses = session.exec(select(Signer.status).where(Signer.envelope_id == envelope.id)).all()
    remaining = [s for s in statuses if s != SignerStatus.SIGNED.value]
    outcome = SigningResult(signer=signer, all_completed=not remaining, proof=proof)
    notifier = notifier or ThrottledNotifier()
    if not outcome.all_completed:
        _notify_owner_signed(session, envelope, signer, len(statuses) - len(remaining), len(statuses), notifier)
    elif finalize:
        from .finalization import finalize_envelope
        try:
            outcome.finalization = finalize_envelope(session, envelope.id, notifier=notifier)
        except Exception:
            session.rollback()
            logger.exception("Finalization of envelope %s failed after the last signature", envelope.slug)
    return outcome


def _notify_owner_signed(session: Session, envelope: Envelope, signer: Signer, signed: int, total: int, notifier):
    # The last signature is announced by the completion email instead.
    owner = session.get(User, envelope.owner_id)
    if not owner:
        return None
    return notifier.send(owner.email, NotificationKind.SIGNED, {
        "document_name": envelope.name,
        "signer_name": signer.name,
        "signer_email": signer.email,
        "signed_count": signed,
        "total_signers": total,
        "envelope_link": f"{config.APP_URL}/envelopes/{envelope.slug}",
    })


def decline(
    session: Session,
    signer: Signer,
    reason: Optional[str] = None,
    ip: Optional[str] = None,
    ua: Optional[str] = None,
    notifier: Optional[ThrottledNotifier] = None,
) -> Envelope:
    envelope = session.get(Envelope, signer.envelope_id)
    _require_signable(envelope, signer)
    result = session.execute(
        update(Envelope)
        .where(
            Envelope.id == envelope.id,
            Envelope.status == EnvelopeStatus.PENDING.value,
            Envelope.finalization_claimed.is_(False),
        )
        .values(status=EnvelopeStatus.DECLINED.value)
    )
    if result.rowcount != 1:
        session.rollback()
        raise InvalidState("This document can no longer be declined")
    signer.status = SignerStatus.DECLINED.value
    signer.decline_reason = reason
    session.add(signer)
    session.commit()
    session.refresh(envelope)
    audit.append(session, envelope.id, AuditAction.DECLINED, signer_id=signer.id, details=audit.DeclinedDetails(
        email=signer.email, reason=reason,
    ), ip=ip, ua=ua)

    owner = session.get(User, envelope.owner_id)
    if owner:
        (notifier or ThrottledNotifier()).send(owner.email, NotificationKind.DECLINED, {
            "document_name": envelope.name,
            "signer_name": signer.name,
            "signer_email": signer.email,
            "reason": reason,
        })
    return envelope


def record_download(session: Session, envelope: Envelope, ip: Optional[str] = None, ua: Optional[str] = None):
    audit.append(session, envelope.id, AuditAction.DOWNLOADED, ip=ip, ua=ua)


# ---------- expiry ----------

def days_remaining(envelope: Envelope, now: datetime) -> Optional[int]:
    if envelope.expires_at is None:
        return None
    return math.ceil((as_utc(envelope.expires_at) - as_utc(now)).total_seconds() / 86400)


def expire_overdue(session: Session, now: Optional[datetime] = None) -> list[Envelope]:
    now = as_utc(now) if now else utcnow()
    overdue = session.exec(
        select(Envelope).where(
            Envelope.status == EnvelopeStatus.PENDING.value,
            Envelope.expires_at.is_not(None),
            Envelope.expires_at <= now,
        )
    ).all()
    expired = []
    for envelope in overdue:
        result = session.execute(
            update(Envelope)
            .where(
                Envelope.id == envelope.id,
                Envelope.status == EnvelopeStatus.PENDING.value,
                Envelope.finalization_claimed.is_(False),
            )
            .values(status=EnvelopeStatus.EXPIRED.value)
        )
        session.commit()
        if result.rowcount != 1:
            continue
        session.refresh(envelope)
        audit.append(session, envelope.id, AuditAction.EXPIRED, details={"expires_at": envelope.expires_at})
        logger.info("Envelope %s expired", envelope.slug)
        expired.append(envelope)
    return expired
