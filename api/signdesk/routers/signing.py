from fastapi import APIRouter, Depends, Request, Response
from sqlmodel import Session

from .. import storage, workflow
from ..db import get_session
from ..models import Envelope
from ..schemas import SignComplete, SignDecline
from .envelopes import _client_ip

router = APIRouter()


@router.get("/{token}")
def load_signing_session(token: str, request: Request, session: Session = Depends(get_session)):
    signer, env, fields = workflow.load_for_signing(
        session, token, ip=_client_ip(request), ua=request.headers.get("user-agent")
    )
    return {
        "id": signer.id,
        "name": signer.name,
        "email": signer.email,
        "color": signer.color,
        "phone_2fa": signer.phone_2fa_enabled,
        "phone_2fa_number": signer.phone_2fa_number,
        "phone_2fa_verified": signer.phone_2fa_verified,
        "envelope": {"slug": env.slug, "name": env.name, "status": env.status},
        "fields": [f.model_dump() for f in fields],
    }


@router.get("/{token}/pdf")
def get_original_pdf(token: str, session: Session = Depends(get_session)):
    signer = workflow.get_signer_by_token(session, token)
    env = session.get(Envelope, signer.envelope_id)
    return Response(content=storage.get_bytes(env.document_key), media_type="application/pdf")


@router.post("/{token}/verify-2fa")
def verify_2fa(token: str, request: Request, session: Session = Depends(get_session)):
    workflow.verify_phone_2fa(session, token, ip=_client_ip(request), ua=request.headers.get("user-agent"))
    return {"ok": True}


@router.post("/{token}/complete")
def complete_signing(token: str, payload: SignComplete, request: Request, session: Session = Depends(get_session)):
    signer = workflow.get_signer_by_token(session, token)
    result = workflow.complete_signing(
        session,
        signer,
        payload.values,
        ip=_client_ip(request) or "unknown",
        ua=request.headers.get("user-agent") or "unknown",
    )
    return {"ok": True, "all_completed": result.all_completed, "signature_hash": result.proof}


@router.post("/{token}/decline")
def decline(token: str, payload: SignDecline, request: Request, session: Session = Depends(get_session)):
    signer = workflow.get_signer_by_token(session, token)
    env = workflow.decline(
        session, signer, payload.reason, ip=_client_ip(request), ua=request.headers.get("user-agent")
    )
    return {"ok": True, "status": env.status}
