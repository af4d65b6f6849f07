"""
Finalization orchestrator.

Runs once per envelope, after the last signature:

1. assemble the signed PDF with the service's signing identity,
2. store it and mark the envelope completed,
3. render and store the audit-trail PDF,
4. record the ``completed`` audit entry,
5. notify the owner, then every signer.

The envelope always ends up ``completed``: when assembly, storage or the
audit trail fail, the ``completed`` entry carries the error instead of the
final hash and the notifications go out without attachments, with a download
link instead. ``rebuild_final_document`` fills in the missing documents
later, so that link starts working.

If finalization itself dies after the claim, the claim is released and
``recover_finalizations`` picks the envelope up again.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from . import audit, config, pdf, storage
from .audit import AuditAction
from .certificates import CertificateAuthority, get_authority
from .errors import CollaboratorFailure, NotFound
from .models import Envelope, EnvelopeStatus, Field, Signer, SignerStatus, User
from .notifications import DeliveryResult, NotificationKind, OutgoingMessage, ThrottledNotifier
from .utils import make_download_token, utcnow

logger = logging.getLogger(__name__)


@dataclass
class FinalizationReport:
    envelope_id: int
    claimed: bool
    final_hash: Optional[str] = None
    failure: Optional[CollaboratorFailure] = None
    deliveries: list[DeliveryResult] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.failure is not None


@dataclass
class RebuildReport:
    envelope_id: int
    claimed: bool
    rebuilt: list[str] = field(default_factory=list)
    failure: Optional[CollaboratorFailure] = None


@dataclass
class RecoveryReport:
    finalized: list[FinalizationReport] = field(default_factory=list)
    rebuilt: list[RebuildReport] = field(default_factory=list)


def _stale_before() -> datetime:
    return utcnow() - timedelta(seconds=config.FINALIZATION_CLAIM_TTL_SECONDS)


def claim_finalization(session: Session, envelope_id: int) -> bool:
    """Single-winner guard: only one caller flips the flag on a pending envelope.

    A claim left behind by a finalizer that never finished can be taken over
    once it is older than ``FINALIZATION_CLAIM_TTL_SECONDS``.
    """
    result = session.execute(
        update(Envelope)
        .where(
            Envelope.id == envelope_id,
            Envelope.status == EnvelopeStatus.PENDING.value,
            or_(
                Envelope.finalization_claimed.is_(False),
                Envelope.finalization_claimed_at < _stale_before(),
            ),
        )
        .values(finalization_claimed=True, finalization_claimed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1


def _release_claim(session: Session, envelope_id: int):
    # Fresh session: the caller's transaction is the one that just failed.
    try:
        with Session(session.get_bind()) as fresh:
            fresh.execute(
                update(Envelope)
                .where(Envelope.id == envelope_id, Envelope.status == EnvelopeStatus.PENDING.value)
                .values(finalization_claimed=False, finalization_claimed_at=None)
            )
            fresh.commit()
    except SQLAlchemyError:
        logger.exception("[finalize] Could not release the claim on envelope %s; it expires on its own", envelope_id)


def download_link(envelope: Envelope) -> str:
    token = make_download_token({"slug": envelope.slug})
    return f"{config.APP_URL}/api/envelopes/{envelope.slug}/download?token={token}"


def _field_values(fields: list[Field]) -> list[dict]:
    return [
        {
            "type": f.type,
            "page": f.page,
            "x": f.x,
            "y": f.y,
            "width": f.width,
            "height": f.height,
            "value": f.value,
        }
        for f in fields
        if f.value is not None
    ]


def _pdf_attachment(filename: str, content: bytes) -> dict:
    return {"filename": filename, "content": content, "maintype": "application", "subtype": "pdf"}


def _base_name(name: str) -> str:
    return name[:-4] if name.lower().endswith(".pdf") else name


def _seal(session: Session, envelope: Envelope, authority: CertificateAuthority) -> bytes:
    """Assemble and store the signed PDF plus its detached signature.

    Sets the final key and hash on ``envelope`` without committing.
    """
    fields = list(session.exec(select(Field).where(Field.envelope_id == envelope.id)).all())
    stage = "pdf_assembly"
    try:
        identity = authority.get_signing_certificate()
        original = storage.get_bytes(envelope.document_key)
        signed_pdf, final_hash = pdf.assemble_signed_document(original, _field_values(fields), identity)
        stage = "storage"
        key = storage.signed_key(envelope.slug)
        storage.put_bytes(key, signed_pdf, content_type="application/pdf")
        storage.put_bytes(f"{key}.p7s", pdf.detached_signature(signed_pdf, identity), content_type="application/pkcs7-signature")
    except Exception as exc:
        raise CollaboratorFailure(stage, exc) from exc
    envelope.final_document_key = key
    envelope.final_document_hash = final_hash
    logger.info("[finalize] Signed PDF stored for %s (%d bytes)", envelope.slug, len(signed_pdf))
    return signed_pdf


def _store_audit_trail(session: Session, envelope: Envelope) -> bytes:
    try:
        trail = audit.build_audit_trail(session, envelope.id)
        audit_pdf = pdf.render_audit_trail(trail)
        trail_key = storage.audit_trail_key(envelope.slug)
        storage.put_bytes(trail_key, audit_pdf, content_type="application/pdf")
        envelope.audit_trail_key = trail_key
        session.add(envelope)
        session.commit()
        session.refresh(envelope)
    except Exception as exc:
        session.rollback()
        raise CollaboratorFailure("audit_trail", exc) from exc
    return audit_pdf


def _mark_completed(session: Session, envelope: Envelope, completed_at: datetime):
    envelope.status = EnvelopeStatus.COMPLETED.value
    envelope.completed_at = completed_at
    session.add(envelope)
    session.commit()
    session.refresh(envelope)


def finalize_envelope(
    session: Session,
    envelope_id: int,
    authority: Optional[CertificateAuthority] = None,
    notifier: Optional[ThrottledNotifier] = None,
    now: Optional[datetime] = None,
) -> FinalizationReport:
    if session.get(Envelope, envelope_id) is None:
        raise NotFound(f"Envelope {envelope_id} not found")
    if not claim_finalization(session, envelope_id):
        logger.info("Envelope %s already finalized or being finalized, skipping", envelope_id)
        return FinalizationReport(envelope_id=envelope_id, claimed=False)
    try:
        return _finalize_claimed(session, envelope_id, authority or get_authority(), notifier, now or utcnow())
    except Exception:
        session.rollback()
        _release_claim(session, envelope_id)
        raise


def _finalize_claimed(session, envelope_id, authority, notifier, completed_at) -> FinalizationReport:
    report = FinalizationReport(envelope_id=envelope_id, claimed=True)
    envelope = session.get(Envelope, envelope_id)
    session.refresh(envelope)
    signers = list(session.exec(
        select(Signer).where(Signer.envelope_id == envelope_id).order_by(Signer.order, Signer.id)
    ).all())
    logger.info("[finalize] All %d signers of %s signed, building final documents", len(signers), envelope.slug)

    signed_pdf = None
    try:
        signed_pdf = _seal(session, envelope, authority)
        report.final_hash = envelope.final_document_hash
    except CollaboratorFailure as failure:
        report.failure = failure
        logger.exception("[finalize] %s failed for envelope %s", failure.stage, envelope.slug)

    _mark_completed(session, envelope, completed_at)

    audit_pdf = None
    if not report.degraded:
        try:
            audit_pdf = _store_audit_trail(session, envelope)
        except CollaboratorFailure as failure:
            report.failure = failure
            logger.exception("[finalize] audit trail failed for envelope %s", envelope.slug)

    if report.degraded:
        details = audit.CompletedDetails(
            total_signers=len(signers), error=str(report.failure.cause), stage=report.failure.stage,
        )
    else:
        details = audit.CompletedDetails(total_signers=len(signers), final_hash=report.final_hash)
    audit.append(session, envelope.id, AuditAction.COMPLETED, details=details)

    report.deliveries = _notify(session, envelope, signers, signed_pdf, audit_pdf, report, notifier)
    return report


def _notify(session, envelope, signers, signed_pdf, audit_pdf, report, notifier) -> list[DeliveryResult]:
    owner = session.get(User, envelope.owner_id)
    link = download_link(envelope)
    base = {
        "document_name": envelope.name,
        "completed_at": envelope.completed_at,
        "final_hash": report.final_hash,
    }
    if report.degraded:
        attachments = []
    else:
        attachments = [_pdf_attachment(f"{_base_name(envelope.name)} - signed.pdf", signed_pdf)]
        if audit_pdf is not None:
            attachments.append(_pdf_attachment(f"{_base_name(envelope.name)} - audit trail.pdf", audit_pdf))

    messages = []
    if owner:
        messages.append(OutgoingMessage(owner.email, NotificationKind.COMPLETED, {
            **base, "attachments": attachments, "download_link": link,
        }))
    for s in signers:
        payload = {**base, "attachments": attachments}
        if report.degraded:
            payload["download_link"] = link
        messages.append(OutgoingMessage(s.email, NotificationKind.COMPLETED, payload))

    deliveries = (notifier or ThrottledNotifier()).send_all(messages)
    failed = [d.to for d in deliveries if not d.delivered]
    if failed:
        logger.error("[finalize] Completion email failed for %s: %s", envelope.slug, ", ".join(failed))
    return deliveries


# ---------- repair ----------

def _missing_documents():
    return or_(Envelope.final_document_key.is_(None), Envelope.audit_trail_key.is_(None))


def claim_rebuild(session: Session, envelope_id: int) -> bool:
    result = session.execute(
        update(Envelope)
        .where(
            Envelope.id == envelope_id,
            Envelope.status == EnvelopeStatus.COMPLETED.value,
            _missing_documents(),
            or_(Envelope.rebuild_claimed_at.is_(None), Envelope.rebuild_claimed_at < _stale_before()),
        )
        .values(rebuild_claimed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1


def rebuild_final_document(
    session: Session, envelope_id: int, authority: Optional[CertificateAuthority] = None
) -> RebuildReport:
    """Produce whatever a degraded finalization left out.

    Only completed envelopes qualify. The signed PDF comes first; the audit
    trail is rendered after the ``document_rebuilt`` entry so it lists it.
    """
    if session.get(Envelope, envelope_id) is None:
        raise NotFound(f"Envelope {envelope_id} not found")
    if not claim_rebuild(session, envelope_id):
        return RebuildReport(envelope_id=envelope_id, claimed=False)

    report = RebuildReport(envelope_id=envelope_id, claimed=True)
    envelope = session.get(Envelope, envelope_id)
    session.refresh(envelope)
    try:
        if envelope.final_document_key is None:
            _seal(session, envelope, authority or get_authority())
            session.add(envelope)
            session.commit()
            session.refresh(envelope)
            report.rebuilt.append("final_document")
            audit.append(session, envelope.id, AuditAction.DOCUMENT_REBUILT, details=audit.RebuiltDetails(
                final_hash=envelope.final_document_hash, rebuilt=["final_document"],
            ))
        if envelope.audit_trail_key is None:
            _store_audit_trail(session, envelope)
            report.rebuilt.append("audit_trail")
    except CollaboratorFailure as failure:
        report.failure = failure
        logger.exception("[rebuild] %s failed again for envelope %s", failure.stage, envelope_id)
    finally:
        session.rollback()
        session.execute(update(Envelope).where(Envelope.id == envelope_id).values(rebuild_claimed_at=None))
        session.commit()

    if report.rebuilt:
        logger.info("[rebuild] Envelope %s: rebuilt %s", envelope.slug, ", ".join(report.rebuilt))
    return report


def recover_finalizations(
    session: Session,
    authority: Optional[CertificateAuthority] = None,
    notifier: Optional[ThrottledNotifier] = None,
) -> RecoveryReport:
    """Finish what a crashed or failed finalization left behind.

    Fully signed envelopes still pending (unclaimed, or with a stale claim)
    are finalized; completed envelopes missing a document are rebuilt.
    """
    report = RecoveryReport()
    stalled = session.exec(
        select(Envelope).where(
            Envelope.status == EnvelopeStatus.PENDING.value,
            or_(Envelope.finalization_claimed.is_(False), Envelope.finalization_claimed_at < _stale_before()),
        ).order_by(Envelope.id)
    ).all()
    for envelope in stalled:
        statuses = session.exec(select(Signer.status).where(Signer.envelope_id == envelope.id)).all()
        if not statuses or any(s != SignerStatus.SIGNED.value for s in statuses):
            continue
        logger.warning("[recover] Envelope %s is fully signed but still pending, finalizing", envelope.slug)
        try:
            report.finalized.append(finalize_envelope(session, envelope.id, authority=authority, notifier=notifier))
        except Exception:
            session.rollback()
            logger.exception("[recover] Finalization of envelope %s failed again", envelope.slug)

    incomplete = session.exec(
        select(Envelope.id).where(Envelope.status == EnvelopeStatus.COMPLETED.value, _missing_documents())
        .order_by(Envelope.id)
    ).all()
    for envelope_id in incomplete:
        report.rebuilt.append(rebuild_final_document(session, envelope_id, authority=authority))
    return report
