from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session, select

from conftest import SIMPLE_PDF
from signdesk import audit, workflow
from signdesk.audit import AuditAction
from signdesk.errors import AlreadySent, AlreadySigned, DuplicateSigner, InvalidState, MissingRequiredFields, NotFound
from signdesk.models import Envelope, EnvelopeStatus, Field, Signer, SignerStatus
from signdesk.schemas import EnvelopeSettings, FieldCreate, SignerCreate
from signdesk.utils import utcnow


def make_draft(session, owner, signers=("alice@example.com",), field_type="signature"):
    env = workflow.create_envelope(session, owner, "Lease.pdf", SIMPLE_PDF)
    created = [workflow.add_signer(session, env, SignerCreate(email=email, name=email.split("@")[0])) for email in signers]
    workflow.set_fields(session, env, [
        FieldCreate(signer_id=s.id, type=field_type, page=0, x=0.1, y=0.1, width=0.3, height=0.1)
        for s in created
    ])
    return env, created


def test_create_envelope_stores_original_and_hash(session, owner, mock_storage):
    env = workflow.create_envelope(session, owner, "Lease.pdf", SIMPLE_PDF, message="Please sign")
    assert env.status == EnvelopeStatus.DRAFT.value
    assert mock_storage[env.document_key] == SIMPLE_PDF
    assert env.document_hash == audit.document_hash(SIMPLE_PDF)
    created = audit.entries(session, env.id, AuditAction.CREATED)
    assert len(created) == 1


def test_signers_get_order_color_and_unique_tokens(session, owner, mock_storage):
    env, (a, b) = make_draft(session, owner, signers=("a@example.com", "b@example.com"))
    assert (a.order, b.order) == (0, 1)
    assert a.color != b.color
    assert a.token != b.token and len(a.token) >= 32


def test_duplicate_signer_is_rejected_case_insensitively(session, owner, mock_storage):
    env, _ = make_draft(session, owner, signers=("alice@example.com",))
    with pytest.raises(DuplicateSigner):
        workflow.add_signer(session, env, SignerCreate(email="ALICE@example.com"))
    with pytest.raises(DuplicateSigner):
        workflow.replace_signers(session, env, [SignerCreate(email="x@example.com"), SignerCreate(email="X@example.com")])


def test_replace_signers_drops_their_fields(session, owner, mock_storage):
    env, (alice,) = make_draft(session, owner)
    new = workflow.replace_signers(session, env, [SignerCreate(email="bob@example.com")])
    assert [s.email for s in workflow.list_signers(session, env.id)] == ["bob@example.com"]
    assert workflow.list_fields(session, env.id) == []
    assert new[0].token != alice.token


def test_set_fields_rejects_foreign_signer(session, owner, mock_storage):
    env, _ = make_draft(session, owner)
    other, (stranger,) = make_draft(session, owner, signers=("eve@example.com",))
    with pytest.raises(NotFound):
        workflow.set_fields(session, env, [
            FieldCreate(signer_id=stranger.id, type="text", x=0, y=0, width=0.1, height=0.1)
        ])


def test_send_requires_signers_and_fields(session, owner, mock_storage, sent_emails):
    env = workflow.create_envelope(session, owner, "Empty.pdf", SIMPLE_PDF)
    with pytest.raises(InvalidState):
        workflow.send(session, env)
    workflow.add_signer(session, env, SignerCreate(email="alice@example.com"))
    with pytest.raises(InvalidState):
        workflow.send(session, env)
    assert env.status == EnvelopeStatus.DRAFT.value
    assert sent_emails == []


def test_send_moves_to_pending_and_invites_everyone(session, owner, mock_storage, sent_emails):
    env, signers = make_draft(session, owner, signers=("a@example.com", "b@example.com"))
    result = workflow.send(session, env)
    assert result.envelope.status == EnvelopeStatus.PENDING.value
    assert all(s.status == SignerStatus.SENT.value for s in workflow.list_signers(session, env.id))
    assert [m["to"] for m in sent_emails] == ["a@example.com", "b@example.com"]
    assert all("/sign/" in m["text"] for m in sent_emails)
    assert sent_emails[0]["reply_to"] == "owner@example.com"
    with pytest.raises(AlreadySent):
        workflow.send(session, env)


def test_send_survives_invitation_failure(session, owner, mock_storage, monkeypatch):
    from signdesk import email as email_module

    def broken(*args, **kwargs):
        raise RuntimeError("smtp down")

    monkeypatch.setattr(email_module, "send_email", broken)
    env, _ = make_draft(session, owner)
    result = workflow.send(session, env)
    assert env.status == EnvelopeStatus.PENDING.value
    assert [d.delivered for d in result.deliveries] == [False]
    assert "smtp down" in result.deliveries[0].error


def test_pending_envelope_is_frozen(session, owner, mock_storage, sent_emails):
    env, (alice, bob) = make_draft(session, owner, signers=("alice@example.com", "bob@example.com"))
    workflow.send(session, env)

    def snapshot():
        signers = [(s.id, s.email, s.token, s.order) for s in workflow.list_signers(session, env.id)]
        fields = [(f.id, f.signer_id, f.type, f.x, f.y) for f in workflow.list_fields(session, env.id)]
        return signers, fields

    before = snapshot()
    with pytest.raises(InvalidState):
        workflow.add_signer(session, env, SignerCreate(email="late@example.com"))
    with pytest.raises(InvalidState):
        workflow.replace_signers(session, env, [SignerCreate(email="mallory@example.com")])
    with pytest.raises(InvalidState):
        workflow.set_fields(session, env, [])
    with pytest.raises(InvalidState):
        workflow.remove_signer(session, env, alice.id)

    session.expire_all()
    assert snapshot() == before
    assert len(before[0]) == 2 and len(before[1]) == 2


def test_generate_links_sends_no_email(session, owner, mock_storage, sent_emails):
    env, (alice,) = make_draft(session, owner)
    links = workflow.generate_links(session, env)
    assert env.status == EnvelopeStatus.PENDING.value
    assert links[0].url.endswith(f"/sign/{alice.token}")
    assert sent_emails == []
    assert audit.entries(session, env.id, AuditAction.LINKS_GENERATED)


def test_first_view_is_recorded_once(session, owner, mock_storage, sent_emails):
    env, (alice,) = make_draft(session, owner)
    workflow.send(session, env)
    workflow.load_for_signing(session, alice.token, ip="1.2.3.4", ua="pytest")
    workflow.load_for_signing(session, alice.token, ip="1.2.3.4", ua="pytest")
    session.refresh(alice)
    assert alice.status == SignerStatus.VIEWED.value
    assert len(audit.entries(session, env.id, AuditAction.VIEWED)) == 1


def test_unknown_token_is_not_found(session, owner):
    with pytest.raises(NotFound):
        workflow.load_for_signing(session, "nope")


def test_missing_required_field_blocks_signing(session, owner, mock_storage, sent_emails):
    env, (alice,) = make_draft(session, owner, field_type="text")
    workflow.send(session, env)
    field = workflow.list_fields(session, env.id)[0]
    with pytest.raises(MissingRequiredFields) as excinfo:
        workflow.complete_signing(session, alice, {str(field.id): "   "}, finalize=False)
    assert excinfo.value.to_dict()["field_ids"] == [field.id]
    session.refresh(alice)
    assert alice.status == SignerStatus.SENT.value


def test_checkbox_counts_only_when_true(session, owner, mock_storage, sent_emails):
    env, (alice,) = make_draft(session, owner, field_type="checkbox")
    workflow.send(session, env)
    field = workflow.list_fields(session, env.id)[0]
    with pytest.raises(MissingRequiredFields):
        workflow.complete_signing(session, alice, {field.id: "false"}, finalize=False)
    result = workflow.complete_signing(session, alice, {field.id: True}, finalize=False)
    assert result.all_completed
    stored = session.get(Field, field.id)
    assert stored.value == "true"


def test_sign_twice_is_rejected(session, owner, mock_storage, sent_emails):
    env, (a, b) = make_draft(session, owner, signers=("a@example.com", "b@example.com"), field_type="text")
    workflow.send(session, env)
    fields = {f.signer_id: f for f in workflow.list_fields(session, env.id)}
    result = workflow.complete_signing(session, a, {fields[a.id].id: "Alice"}, ip="10.0.0.1", ua="ua")
    assert not result.all_completed
    with pytest.raises(AlreadySigned):
        workflow.complete_signing(session, a, {fields[a.id].id: "Alice"})
    assert len(audit.entries(session, env.id, AuditAction.SIGNED)) == 1


def test_signature_proof_is_reproducible(session, owner, mock_storage, sent_emails):
    env, (alice,) = make_draft(session, owner, field_type="text")
    workflow.send(session, env)
    field = workflow.list_fields(session, env.id)[0]
    result = workflow.complete_signing(session, alice, {field.id: "Alice"}, ip="10.0.0.1", ua="Mozilla", finalize=False)
    session.refresh(alice)
    assert alice.signature_hash == result.proof
    assert result.proof == audit.signature_proof(
        env.document_hash, alice.id, alice.email, alice.signed_at, "10.0.0.1", "Mozilla"
    )
    assert audit.verify_signature_proof(session, alice)


def test_phone_verification_gates_signing(session, owner, mock_storage, sent_emails):
    env = workflow.create_envelope(session, owner, "Lease.pdf", SIMPLE_PDF)
    signer = workflow.add_signer(session, env, SignerCreate(
        email="alice@example.com", phone_2fa_enabled=True, phone_2fa_number="+33612345678",
    ))
    workflow.set_fields(session, env, [FieldCreate(signer_id=signer.id, type="text", x=0, y=0, width=0.2, height=0.1)])
    workflow.send(session, env)
    field = workflow.list_fields(session, env.id)[0]
    with pytest.raises(InvalidState):
        workflow.complete_signing(session, signer, {field.id: "x"}, finalize=False)
    workflow.verify_phone_2fa(session, signer.token)
    session.refresh(signer)
    assert workflow.complete_signing(session, signer, {field.id: "x"}, finalize=False).all_completed


def test_decline_ends_envelope_and_notifies_owner(session, owner, mock_storage, sent_emails):
    env, (a, b) = make_draft(session, owner, signers=("a@example.com", "b@example.com"))
    workflow.send(session, env)
    sent_emails.clear()
    workflow.decline(session, a, "Wrong amount", ip="1.1.1.1", ua="ua")
    assert env.status == EnvelopeStatus.DECLINED.value
    assert [m["to"] for m in sent_emails] == ["owner@example.com"]
    assert "Wrong amount" in sent_emails[0]["text"]
    with pytest.raises(InvalidState):
        workflow.load_for_signing(session, b.token)


def test_settings_convert_aware_expiry_to_utc(session, owner, mock_storage):
    env = workflow.create_envelope(session, owner, "Lease.pdf", SIMPLE_PDF)
    aware = datetime(2030, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    workflow.update_settings(session, env, EnvelopeSettings(expires_at=aware, reminder_interval="1_day"))
    assert env.expires_at == datetime(2030, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert env.expires_at.utcoffset() == timedelta(0)
    assert env.reminder_interval == "1_day"
    assert audit.entries(session, env.id, AuditAction.EDITED)


def test_expire_overdue(session, owner, mock_storage, sent_emails):
    env, _ = make_draft(session, owner)
    workflow.send(session, env)
    env.expires_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
    session.add(env)
    session.commit()
    expired = workflow.expire_overdue(session, now=datetime(2020, 1, 2, tzinfo=timezone.utc))
    assert [e.id for e in expired] == [env.id]
    assert session.exec(select(Envelope).where(Envelope.id == env.id)).one().status == EnvelopeStatus.EXPIRED.value
    assert workflow.expire_overdue(session, now=datetime(2020, 1, 3, tzinfo=timezone.utc)) == []


def test_days_remaining_rounds_up(session, owner, mock_storage):
    env = workflow.create_envelope(session, owner, "Lease.pdf", SIMPLE_PDF)
    env.expires_at = datetime(2030, 1, 3, 0, 0, tzinfo=timezone.utc)
    assert workflow.days_remaining(env, datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)) == 2
    env.expires_at = None
    assert workflow.days_remaining(env, datetime(2030, 1, 1, tzinfo=timezone.utc)) is None


def test_signer_rows_unchanged_by_failed_precondition(session, owner, mock_storage):
    env, (alice,) = make_draft(session, owner)
    with pytest.raises(InvalidState):
        workflow.complete_signing(session, alice, {}, finalize=False)
    row = session.exec(select(Signer).where(Signer.id == alice.id)).one()
    assert row.status == SignerStatus.PENDING.value


def test_signature_racing_a_decline_is_refused(test_engine, session, owner, mock_storage, sent_emails):
    env, (a, b) = make_draft(session, owner, signers=("a@example.com", "b@example.com"), field_type="text")
    workflow.send(session, env)
    field = workflow.list_fields(session, env.id, a.id)[0]
    # Both rows loaded here; the decline below lands behind this session's back.
    assert (env.status, a.status) == (EnvelopeStatus.PENDING.value, SignerStatus.SENT.value)

    with Session(test_engine) as other:
        workflow.decline(other, other.get(Signer, b.id), "Changed my mind")

    with pytest.raises(InvalidState):
        workflow.complete_signing(session, a, {field.id: "Alice"}, finalize=False)
    session.expire_all()
    assert session.get(Signer, a.id).status == SignerStatus.SENT.value
    assert session.get(Envelope, env.id).status == EnvelopeStatus.DECLINED.value
    assert audit.entries(session, env.id, AuditAction.SIGNED) == []


def test_signature_racing_expiry_is_refused(test_engine, session, owner, mock_storage, sent_emails):
    env, (alice,) = make_draft(session, owner, field_type="text")
    workflow.send(session, env)
    field = workflow.list_fields(session, env.id)[0]
    assert (env.status, alice.status) == (EnvelopeStatus.PENDING.value, SignerStatus.SENT.value)

    with Session(test_engine) as other:
        stored = other.get(Envelope, env.id)
        stored.expires_at = utcnow() - timedelta(minutes=1)
        other.add(stored)
        other.commit()
        assert [e.id for e in workflow.expire_overdue(other)] == [env.id]

    with pytest.raises(InvalidState):
        workflow.complete_signing(session, alice, {field.id: "Alice"}, finalize=False)
    session.expire_all()
    assert session.get(Signer, alice.id).signed_at is None


def test_timestamps_come_back_as_aware_utc(session, owner, mock_storage):
    env = workflow.create_envelope(session, owner, "Lease.pdf", SIMPLE_PDF)
    session.expire_all()
    reloaded = session.get(Envelope, env.id)
    assert reloaded.created_at.utcoffset() == timedelta(0)
    assert audit.entries(session, env.id)[0].created_at.tzinfo is not None
    assert audit.verify_chain(session, env.id)
