from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import templates, workflow
from ..auth import require_owner
from ..db import get_session
from ..models import EnvelopeTemplate, User
from ..schemas import TemplateCreate, TemplateInstantiate

router = APIRouter()


def _serialize(template: EnvelopeTemplate) -> dict:
    return {
        "id": template.id,
        "slug": template.slug,
        "name": template.name,
        "description": template.description,
        "document_hash": template.document_hash,
        "roles": templates.roles(template),
        "fields": templates.field_layout(template),
        "archived_at": template.archived_at,
        "created_at": template.created_at,
    }


@router.get("")
def list_templates(archived: bool = False, session: Session = Depends(get_session), owner: User = Depends(require_owner)):
    return {"templates": [_serialize(t) for t in templates.list_templates(session, owner, archived=archived)]}


@router.post("", status_code=201)
def create_template(payload: TemplateCreate, session: Session = Depends(get_session), owner: User = Depends(require_owner)):
    env = workflow.get_envelope(session, payload.envelope_slug, owner)
    template = templates.create_template(
        session, owner, env, payload.name, description=payload.description, role_names=payload.roles,
    )
    return _serialize(template)


@router.get("/{slug}")
def get_template(slug: str, session: Session = Depends(get_session), owner: User = Depends(require_owner)):
    return _serialize(templates.get_template(session, slug, owner))


@router.delete("/{slug}")
def delete_template(
    slug: str,
    permanently: bool = False,
    action: str | None = None,
    session: Session = Depends(get_session),
    owner: User = Depends(require_owner),
):
    template = templates.get_template(session, slug, owner, include_archived=True)
    if permanently:
        templates.delete_template(session, template)
    else:
        templates.set_archived(session, template, archived=action != "unarchive")
    return {"ok": True}


@router.post("/{slug}/envelopes", status_code=201)
def instantiate_template(
    slug: str,
    payload: TemplateInstantiate,
    session: Session = Depends(get_session),
    owner: User = Depends(require_owner),
):
    template = templates.get_template(session, slug, owner)
    env = templates.instantiate(
        session, owner, template, payload.signers,
        name=payload.name, message=payload.message, settings=payload.settings,
    )
    return {"id": env.id, "slug": env.slug, "status": env.status, "document_hash": env.document_hash}
