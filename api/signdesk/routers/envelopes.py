from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import RedirectResponse
from itsdangerous import BadSignature
from sqlmodel import Session

from .. import audit, finalization, storage, workflow
from ..auth import require_owner
from ..config import DOWNLOAD_LINK_TTL_SECONDS
from ..db import get_session
from ..models import Envelope, EnvelopeStatus, User
from ..schemas import EnvelopeSettings, FieldsReplace, SignerCreate, SignersReplace
from ..utils import read_download_token

router = APIRouter()


def _client_ip(request: Request):
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _serialize(session: Session, env: Envelope) -> dict:
    return {
        "id": env.id,
        "slug": env.slug,
        "name": env.name,
        "message": env.message,
        "status": env.status,
        "document_hash": env.document_hash,
        "final_document_hash": env.final_document_hash,
        "reminder_enabled": env.reminder_enabled,
        "reminder_interval": env.reminder_interval,
        "expires_at": env.expires_at,
        "created_at": env.created_at,
        "completed_at": env.completed_at,
        "signers": [
            {
                "id": s.id,
                "email": s.email,
                "name": s.name,
                "order": s.order,
                "color": s.color,
                "status": s.status,
                "signed_at": s.signed_at,
            }
            for s in workflow.list_signers(session, env.id)
        ],
        "fields": [f.model_dump() for f in workflow.list_fields(session, env.id)],
    }


@router.post("")
async def create_envelope(
    name: str = Form(...),
    message: str | None = Form(default=None),
    file: UploadFile = File(...),
    session: Session = Depends(get_session),
    owner: User = Depends(require_owner),
):
    content = await file.read()
    if not content:
        raise HTTPException(400, "empty document")
    env = workflow.create_envelope(session, owner, name, content, message=message)
    return {"id": env.id, "slug": env.slug, "status": env.status, "document_hash": env.document_hash}


@router.get("/{slug}")
def get_envelope(slug: str, session: Session = Depends(get_session), owner: User = Depends(require_owner)):
    return _serialize(session, workflow.get_envelope(session, slug, owner))


@router.post("/{slug}/signers", status_code=201)
def add_signer(
    slug: str,
    payload: SignerCreate,
    session: Session = Depends(get_session),
    owner: User = Depends(require_owner),
):
    env = workflow.get_envelope(session, slug, owner)
    signer = workflow.add_signer(session, env, payload)
    return {"id": signer.id, "email": signer.email, "name": signer.name, "order": signer.order, "color": signer.color}


@router.put("/{slug}/signers")
def replace_signers(
    slug: str,
    payload: SignersReplace,
    session: Session = Depends(get_session),
    owner: User = Depends(require_owner),
):
    env = workflow.get_envelope(session, slug, owner)
    signers = workflow.replace_signers(session, env, payload.signers)
    return {"signers": [{"id": s.id, "email": s.email, "order": s.order, "color": s.color} for s in signers]}


@router.delete("/{slug}/signers/{signer_id}", status_code=204)
def remove_signer(
    slug: str,
    signer_id: int,
    session: Session = Depends(get_session),
    owner: User = Depends(require_owner),
):
    env = workflow.get_envelope(session, slug, owner)
    workflow.remove_signer(session, env, signer_id)


@router.put("/{slug}/fields")
def set_fields(
    slug: str,
    payload: FieldsReplace,
    session: Session = Depends(get_session),
    owner: User = Depends(require_owner),
):
    env = workflow.get_envelope(session, slug, owner)
    fields = workflow.set_fields(session, env, payload.fields)
    return {"fields": [f.model_dump() for f in fields]}


@router.patch("/{slug}/settings")
def update_settings(
    slug: str,
    payload: EnvelopeSettings,
    session: Session = Depends(get_session),
    owner: User = Depends(require_owner),
):
    env = workflow.get_envelope(session, slug, owner)
    return _serialize(session, workflow.update_settings(session, env, payload))


@router.post("/{slug}/send")
def send_envelope(slug: str, session: Session = Depends(get_session), owner: User = Depends(require_owner)):
    env = workflow.get_envelope(session, slug, owner)
    result = workflow.send(session, env)
    return {
        "status": result.envelope.status,
        "deliveries": [{"to": d.to, "delivered": d.delivered, "error": d.error} for d in result.deliveries],
    }


@router.post("/{slug}/generate-links")
def generate_links(slug: str, session: Session = Depends(get_session), owner: User = Depends(require_owner)):
    env = workflow.get_envelope(session, slug, owner)
    links = workflow.generate_links(session, env)
    return {
        "status": env.status,
        "links": [{"signer_id": link.signer_id, "email": link.email, "name": link.name, "url": link.url} for link in links],
    }


@router.get("/{slug}/audit-trail")
def get_audit_trail(slug: str, session: Session = Depends(get_session), owner: User = Depends(require_owner)):
    env = workflow.get_envelope(session, slug, owner)
    return audit.build_audit_trail(session, env.id)


@router.get("/{slug}/download")
def download_final(slug: str, token: str, request: Request, session: Session = Depends(get_session)):
    try:
        data = read_download_token(token, max_age=DOWNLOAD_LINK_TTL_SECONDS)
    except BadSignature:
        raise HTTPException(403, "invalid download link")
    if data.get("slug") != slug:
        raise HTTPException(403, "invalid download link")
    env = workflow.get_envelope(session, slug)
    if not env.final_document_key:
        if env.status != EnvelopeStatus.COMPLETED.value:
            raise HTTPException(404, "final document not ready")
        # Finalization ran degraded; build the document now.
        report = finalization.rebuild_final_document(session, env.id)
        session.refresh(env)
        if not env.final_document_key:
            if report.failure is not None:
                raise report.failure
            raise HTTPException(503, "final document is being rebuilt, retry shortly", headers={"Retry-After": "30"})
    workflow.record_download(session, env, ip=_client_ip(request), ua=request.headers.get("user-agent"))
    return RedirectResponse(storage.signed_get(env.final_document_key, DOWNLOAD_LINK_TTL_SECONDS), status_code=307)
