from sqlalchemy.exc import OperationalError
from sqlmodel import select

from conftest import SIMPLE_PDF
from signdesk import audit, workflow
from signdesk.audit import AuditAction
from signdesk.models import AuditLog


def test_chain_links_every_entry(session, owner, mock_storage):
    env = workflow.create_envelope(session, owner, "Deed.pdf", SIMPLE_PDF)
    audit.append(session, env.id, AuditAction.DOWNLOADED, ip="9.9.9.9", ua="curl")
    audit.append(session, env.id, AuditAction.EDITED, details=audit.EditedDetails(changes={"message": "hi"}))

    rows = audit.entries(session, env.id)
    assert [r.action for r in rows] == ["created", "downloaded", "edited"]
    assert rows[0].prev_hash == audit.GENESIS_HASH
    assert rows[1].prev_hash == rows[0].hash
    assert rows[2].prev_hash == rows[1].hash
    assert audit.verify_chain(session, env.id)


def test_tampering_breaks_the_chain(session, owner, mock_storage):
    env = workflow.create_envelope(session, owner, "Deed.pdf", SIMPLE_PDF)
    audit.append(session, env.id, AuditAction.DOWNLOADED, ip="9.9.9.9")
    row = audit.entries(session, env.id, AuditAction.DOWNLOADED)[0]
    row.ip_address = "6.6.6.6"
    session.add(row)
    session.commit()
    assert not audit.verify_chain(session, env.id)


def test_chains_are_per_envelope(session, owner, mock_storage):
    first = workflow.create_envelope(session, owner, "One.pdf", SIMPLE_PDF)
    second = workflow.create_envelope(session, owner, "Two.pdf", SIMPLE_PDF)
    assert audit.entries(session, second.id)[0].prev_hash == audit.GENESIS_HASH
    assert audit.verify_chain(session, first.id) and audit.verify_chain(session, second.id)


def test_append_failure_is_swallowed_and_logged(session, owner, mock_storage, monkeypatch, caplog):
    env = workflow.create_envelope(session, owner, "Deed.pdf", SIMPLE_PDF)

    def failing_commit():
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    with monkeypatch.context() as m:
        m.setattr(session, "commit", failing_commit)
        assert audit.append(session, env.id, AuditAction.DOWNLOADED) is None
    assert "Audit entry lost" in caplog.text
    assert session.exec(select(AuditLog).where(AuditLog.action == "downloaded")).all() == []


def test_unknown_details_are_kept():
    parsed = audit.parse_details("signed", '{"signature_hash": "abc", "browser": "Firefox"}')
    assert parsed.signature_hash == "abc"
    assert parsed.model_dump()["browser"] == "Firefox"
    assert audit.parse_details("viewed", None).model_dump() == {}


def test_certificate_id_format():
    cid = audit.certificate_id(42, "ab" * 32)
    head, mid, tail = cid.split("-")
    assert (len(head), len(mid), len(tail)) == (8, 4, 4)
    assert cid == cid.upper()
    assert cid == audit.certificate_id(42, "ab" * 32)


def test_audit_trail_document(session, owner, mock_storage, sent_emails):
    from signdesk.schemas import FieldCreate, SignerCreate

    env = workflow.create_envelope(session, owner, "Deed.pdf", SIMPLE_PDF)
    signer = workflow.add_signer(session, env, SignerCreate(email="alice@example.com", name="Alice"))
    workflow.set_fields(session, env, [FieldCreate(signer_id=signer.id, type="text", x=0, y=0, width=0.2, height=0.1)])
    workflow.send(session, env)
    workflow.load_for_signing(session, signer.token, ip="1.2.3.4", ua="Firefox")

    trail = audit.build_audit_trail(session, env.id)
    assert trail.document_hash == env.document_hash
    assert trail.chain_valid
    assert [e.action for e in trail.events] == ["created", "sent", "viewed"]
    assert trail.events[0].actor.type == "owner"
    assert trail.events[2].actor.email == "alice@example.com"
    assert trail.events[2].label == "Document viewed"
    assert trail.signers[0].status == "viewed"
