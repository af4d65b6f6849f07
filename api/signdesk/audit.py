"""
Audit ledger: append-only, hash-chained events per envelope.

Every entry stores ``prev_hash`` (the previous entry's hash, or 64 zeros for
the first entry of an envelope) and ``hash = sha256(prev_hash + payload)``,
so rewriting or dropping an entry breaks ``verify_chain``.
"""
import hashlib
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .errors import NotFound
from .models import AuditLog, Envelope, Signer, SignerStatus, User
from .utils import canonical_json, iso_utc, sha256_bytes

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class AuditAction(str, Enum):
    CREATED = "created"
    SENT = "sent"
    VIEWED = "viewed"
    OPENED_NOTIFICATION = "opened_notification"
    STARTED_SIGNING = "started_signing"
    SIGNED = "signed"
    DECLINED = "declined"
    COMPLETED = "completed"
    DOWNLOADED = "downloaded"
    REMINDER_SENT = "reminder_sent"
    EXPIRED = "expired"
    LINKS_GENERATED = "links_generated"
    EDITED = "edited"
    PHONE_2FA_VERIFIED = "phone_2fa_verified"
    DOCUMENT_REBUILT = "document_rebuilt"


ACTION_LABELS = {
    AuditAction.CREATED: "Document created",
    AuditAction.SENT: "Sent for signature",
    AuditAction.VIEWED: "Document viewed",
    AuditAction.OPENED_NOTIFICATION: "Invitation email opened",
    AuditAction.STARTED_SIGNING: "Signing started",
    AuditAction.SIGNED: "Document signed",
    AuditAction.DECLINED: "Signature declined",
    AuditAction.COMPLETED: "All signatures completed",
    AuditAction.DOWNLOADED: "Document downloaded",
    AuditAction.REMINDER_SENT: "Reminder sent",
    AuditAction.EXPIRED: "Document expired",
    AuditAction.LINKS_GENERATED: "Signing links generated",
    AuditAction.EDITED: "Envelope edited",
    AuditAction.PHONE_2FA_VERIFIED: "Phone verified",
    AuditAction.DOCUMENT_REBUILT: "Signed document rebuilt",
}


# ---------- typed details ----------

class AuditDetails(BaseModel):
    # entries written by older code may carry keys we no longer know about
    model_config = ConfigDict(extra="allow")


class CreatedDetails(AuditDetails):
    name: Optional[str] = None
    document_hash: Optional[str] = None
    template: Optional[str] = None


class SentDetails(AuditDetails):
    signer_count: int = 0
    field_count: int = 0


class SignedDetails(AuditDetails):
    signature_hash: Optional[str] = None
    email: Optional[str] = None
    fields_count: int = 0


class DeclinedDetails(AuditDetails):
    email: Optional[str] = None
    reason: Optional[str] = None


class CompletedDetails(AuditDetails):
    total_signers: int = 0
    final_hash: Optional[str] = None
    error: Optional[str] = None
    stage: Optional[str] = None


class RebuiltDetails(AuditDetails):
    final_hash: Optional[str] = None
    rebuilt: list[str] = []


class ReminderDetails(AuditDetails):
    email: Optional[str] = None
    days_remaining: Optional[int] = None


class EditedDetails(AuditDetails):
    changes: dict = {}


DETAILS_BY_ACTION = {
    AuditAction.CREATED: CreatedDetails,
    AuditAction.SENT: SentDetails,
    AuditAction.LINKS_GENERATED: SentDetails,
    AuditAction.SIGNED: SignedDetails,
    AuditAction.DECLINED: DeclinedDetails,
    AuditAction.COMPLETED: CompletedDetails,
    AuditAction.REMINDER_SENT: ReminderDetails,
    AuditAction.EDITED: EditedDetails,
    AuditAction.DOCUMENT_REBUILT: RebuiltDetails,
}


def parse_details(action: str, raw: str | dict | None) -> AuditDetails:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw or "{}")
        except json.JSONDecodeError:
            raw = {"raw": raw}
    raw = raw or {}
    try:
        model = DETAILS_BY_ACTION.get(AuditAction(action), AuditDetails)
    except ValueError:
        model = AuditDetails
    return model.model_validate(raw)


# ---------- hashing ----------

def document_hash(pdf_bytes: bytes) -> str:
    return sha256_bytes(pdf_bytes)


def signature_proof(
    document_hash: str,
    signer_id: int,
    signer_email: str,
    signed_at: datetime,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> str:
    payload = "|".join([
        document_hash,
        str(signer_id),
        signer_email,
        iso_utc(signed_at),
        ip_address or "",
        user_agent or "",
    ])
    return sha256_bytes(payload.encode())


def _entry_payload(entry: AuditLog) -> str:
    return canonical_json({
        "envelope_id": entry.envelope_id,
        "signer_id": entry.signer_id,
        "action": entry.action,
        "details": json.loads(entry.details_json or "{}"),
        "ip": entry.ip_address,
        "ua": entry.user_agent,
        "at": iso_utc(entry.created_at),
    })


def _entry_hash(prev_hash: str, entry: AuditLog) -> str:
    return sha256_bytes((prev_hash + _entry_payload(entry)).encode())


# ---------- ledger ----------

def append(
    session: Session,
    envelope_id: int,
    action: AuditAction,
    signer_id: Optional[int] = None,
    details: AuditDetails | dict | None = None,
    ip: Optional[str] = None,
    ua: Optional[str] = None,
) -> Optional[AuditLog]:
    """Insert one entry and commit it.

    Never raises: a failed write is rolled back and logged, and the caller's
    operation carries on. The envelope's evidence is incomplete from then on,
    which is why it is logged at error level.
    """
    if isinstance(details, BaseModel):
        details = details.model_dump(exclude_none=True)
    action_value = AuditAction(action).value
    try:
        last = session.exec(
            select(AuditLog).where(AuditLog.envelope_id == envelope_id).order_by(AuditLog.id.desc())
        ).first()
        prev_hash = last.hash if last and last.hash else GENESIS_HASH
        entry = AuditLog(
            envelope_id=envelope_id,
            signer_id=signer_id,
            action=action_value,
            details_json=canonical_json(details or {}),
            ip_address=ip,
            user_agent=ua,
            prev_hash=prev_hash,
        )
        entry.hash = _entry_hash(prev_hash, entry)
        session.add(entry)
        session.commit()
        session.refresh(entry)
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Audit entry lost: %s for envelope %s (signer %s)", action_value, envelope_id, signer_id)
        return None
    logger.info("[audit] %s logged for envelope %s", action_value, envelope_id)
    return entry


def entries(session: Session, envelope_id: int, action: Optional[AuditAction] = None) -> list[AuditLog]:
    stmt = select(AuditLog).where(AuditLog.envelope_id == envelope_id)
    if action is not None:
        stmt = stmt.where(AuditLog.action == AuditAction(action).value)
    return list(session.exec(stmt.order_by(AuditLog.id)).all())


def verify_chain(session: Session, envelope_id: int) -> bool:
    prev_hash = GENESIS_HASH
    for entry in entries(session, envelope_id):
        if entry.prev_hash != prev_hash or entry.hash != _entry_hash(prev_hash, entry):
            return False
        prev_hash = entry.hash
    return True


def verify_signature_proof(session: Session, signer: Signer) -> bool:
    """Recompute a signer's proof from its row and its ``signed`` entry."""
    envelope = session.get(Envelope, signer.envelope_id)
    if envelope is None or signer.signed_at is None:
        return False
    signed = [e for e in entries(session, envelope.id, AuditAction.SIGNED) if e.signer_id == signer.id]
    if not signed:
        return False
    entry = signed[-1]
    recorded = parse_details(entry.action, entry.details_json)
    recomputed = signature_proof(
        envelope.document_hash,
        signer.id,
        signer.email,
        signer.signed_at,
        entry.ip_address,
        entry.user_agent,
    )
    return recomputed == recorded.signature_hash == signer.signature_hash


# ---------- audit trail document ----------

class AuditTrailActor(BaseModel):
    type: str  # owner|signer|system
    email: Optional[str] = None
    name: Optional[str] = None


class AuditTrailEvent(BaseModel):
    timestamp: datetime
    action: str
    label: str
    actor: AuditTrailActor
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: dict = {}


class AuditTrailSigner(BaseModel):
    email: str
    name: Optional[str] = None
    status: str
    signed_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    signature_hash: Optional[str] = None


class AuditTrailDocument(BaseModel):
    envelope_id: int
    slug: str
    document_name: str
    document_hash: str
    final_document_hash: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    owner: AuditTrailActor
    signers: list[AuditTrailSigner]
    events: list[AuditTrailEvent]
    certificate_id: str
    chain_valid: bool


def certificate_id(envelope_id: int, doc_hash: str) -> str:
    """Display fingerprint for cross-referencing, not a validity claim."""
    digest = hashlib.md5(f"{envelope_id}{doc_hash}".encode()).hexdigest().upper()
    return f"{digest[:8]}-{digest[8:12]}-{digest[12:16]}"


def build_audit_trail(session: Session, envelope_id: int) -> AuditTrailDocument:
    envelope = session.get(Envelope, envelope_id)
    if envelope is None:
        raise NotFound(f"Envelope {envelope_id} not found")
    owner = session.get(User, envelope.owner_id)
    signers = session.exec(
        select(Signer).where(Signer.envelope_id == envelope_id).order_by(Signer.order, Signer.id)
    ).all()
    by_id = {s.id: s for s in signers}

    events = []
    for entry in entries(session, envelope_id):
        signer = by_id.get(entry.signer_id) if entry.signer_id else None
        if signer is not None:
            actor = AuditTrailActor(type="signer", email=signer.email, name=signer.name)
        elif entry.action in (AuditAction.CREATED.value, AuditAction.SENT.value, AuditAction.EDITED.value):
            actor = AuditTrailActor(type="owner", email=owner.email if owner else None, name=owner.name if owner else None)
        else:
            actor = AuditTrailActor(type="system")
        try:
            label = ACTION_LABELS[AuditAction(entry.action)]
        except ValueError:
            label = entry.action
        events.append(AuditTrailEvent(
            timestamp=entry.created_at,
            action=entry.action,
            label=label,
            actor=actor,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            details=parse_details(entry.action, entry.details_json).model_dump(exclude_none=True),
        ))

    return AuditTrailDocument(
        envelope_id=envelope.id,
        slug=envelope.slug,
        document_name=envelope.name,
        document_hash=envelope.document_hash,
        final_document_hash=envelope.final_document_hash,
        created_at=envelope.created_at,
        completed_at=envelope.completed_at,
        owner=AuditTrailActor(type="owner", email=owner.email if owner else None, name=owner.name if owner else None),
        signers=[
            AuditTrailSigner(
                email=s.email,
                name=s.name,
                status=s.status,
                signed_at=s.signed_at,
                ip_address=s.ip_address,
                user_agent=s.user_agent,
                signature_hash=s.signature_hash,
            )
            for s in signers
        ],
        events=events,
        certificate_id=certificate_id(envelope.id, envelope.document_hash),
        chain_valid=verify_chain(session, envelope_id),
    )


def signer_status_label(status: str) -> str:
    if status == SignerStatus.SIGNED.value:
        return "Signed"
    if status == SignerStatus.DECLINED.value:
        return "Declined"
    return "Pending"
