"""
Envelope templates.

A template keeps a copy of an envelope's document, one role per signer and
the field layout addressed to those roles. Instantiating it creates a fresh
draft through the regular draft operations, with real signers filling the
roles in order.
"""
import json
import logging
from typing import Optional

from sqlmodel import Session, select

from . import audit, storage, workflow
from .errors import CollaboratorFailure, NotFound, RoleMismatch
from .models import Envelope, EnvelopeTemplate, User
from .schemas import EnvelopeSettings, FieldCreate, SignerCreate
from .utils import make_slug, utcnow

logger = logging.getLogger(__name__)


def roles(template: EnvelopeTemplate) -> list[dict]:
    return json.loads(template.roles_json or "[]")


def field_layout(template: EnvelopeTemplate) -> list[dict]:
    return json.loads(template.fields_json or "[]")


def create_template(
    session: Session,
    owner: User,
    envelope: Envelope,
    name: str,
    description: Optional[str] = None,
    role_names: Optional[list[str]] = None,
) -> EnvelopeTemplate:
    """Capture ``envelope`` (any status) as a reusable template."""
    signers = workflow.list_signers(session, envelope.id)
    if role_names is not None and len(role_names) != len(signers):
        raise RoleMismatch(len(signers), len(role_names))
    position = {s.id: index for index, s in enumerate(signers)}
    role_list = [
        {
            "role": (role_names[index] if role_names else None) or s.name or s.email.split("@")[0],
            "color": s.color,
        }
        for index, s in enumerate(signers)
    ]
    layout = [
        {
            "role": position[f.signer_id],
            "type": f.type,
            "page": f.page,
            "x": f.x,
            "y": f.y,
            "width": f.width,
            "height": f.height,
            "required": f.required,
            "label": f.label,
            "placeholder": f.placeholder,
        }
        for f in workflow.list_fields(session, envelope.id)
    ]

    slug = make_slug(14)
    while session.exec(select(EnvelopeTemplate.id).where(EnvelopeTemplate.slug == slug)).first() is not None:
        slug = make_slug(14)
    document = storage.get_bytes(envelope.document_key)
    key = storage.template_key(slug)
    storage.put_bytes(key, document, content_type="application/pdf")

    template = EnvelopeTemplate(
        slug=slug,
        owner_id=owner.id,
        name=name.strip(),
        description=description,
        document_key=key,
        document_hash=audit.document_hash(document),
        roles_json=json.dumps(role_list),
        fields_json=json.dumps(layout),
    )
    session.add(template)
    session.commit()
    session.refresh(template)
    logger.info("Template %s created from envelope %s (%d roles)", template.slug, envelope.slug, len(role_list))
    return template


def list_templates(session: Session, owner: User, archived: bool = False) -> list[EnvelopeTemplate]:
    stmt = select(EnvelopeTemplate).where(EnvelopeTemplate.owner_id == owner.id)
    if archived:
        stmt = stmt.where(EnvelopeTemplate.archived_at.is_not(None))
    else:
        stmt = stmt.where(EnvelopeTemplate.archived_at.is_(None))
    return list(session.exec(stmt.order_by(EnvelopeTemplate.created_at.desc(), EnvelopeTemplate.id.desc())).all())


def get_template(session: Session, slug: str, owner: User, include_archived: bool = False) -> EnvelopeTemplate:
    stmt = select(EnvelopeTemplate).where(EnvelopeTemplate.slug == slug, EnvelopeTemplate.owner_id == owner.id)
    if not include_archived:
        stmt = stmt.where(EnvelopeTemplate.archived_at.is_(None))
    template = session.exec(stmt).first()
    if not template:
        raise NotFound("Template not found")
    return template


def set_archived(session: Session, template: EnvelopeTemplate, archived: bool = True) -> EnvelopeTemplate:
    template.archived_at = utcnow() if archived else None
    session.add(template)
    session.commit()
    session.refresh(template)
    return template


def delete_template(session: Session, template: EnvelopeTemplate):
    # The stored document stays; envelopes made from it keep their own copy.
    session.delete(template)
    session.commit()


def instantiate(
    session: Session,
    owner: User,
    template: EnvelopeTemplate,
    signers: list[SignerCreate],
    name: Optional[str] = None,
    message: Optional[str] = None,
    settings: Optional[EnvelopeSettings] = None,
) -> Envelope:
    """Create a draft from ``template``; ``signers[i]`` takes role ``i``."""
    role_list = roles(template)
    if len(signers) != len(role_list):
        raise RoleMismatch(len(role_list), len(signers))

    document = storage.get_bytes(template.document_key)
    if audit.document_hash(document) != template.document_hash:
        raise CollaboratorFailure("storage", ValueError(f"template {template.slug} document does not match its hash"))

    envelope = workflow.create_envelope(
        session, owner, name or template.name, document,
        message=message, settings=settings, template_slug=template.slug,
    )
    filled = [
        s if s.color else s.model_copy(update={"color": role["color"]})
        for s, role in zip(signers, role_list)
    ]
    created = workflow.replace_signers(session, envelope, filled)
    workflow.set_fields(session, envelope, [
        FieldCreate(
            signer_id=created[f["role"]].id,
            type=f["type"],
            page=f["page"],
            x=f["x"],
            y=f["y"],
            width=f["width"],
            height=f["height"],
            required=f["required"],
            label=f.get("label"),
            placeholder=f.get("placeholder"),
        )
        for f in field_layout(template)
    ])
    logger.info("Envelope %s created from template %s", envelope.slug, template.slug)
    return envelope
