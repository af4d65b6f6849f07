import os
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("EMAIL_SEND_DELAY_MS", "0")

from signdesk.main import app  # noqa: E402
from signdesk import config as config_module  # noqa: E402
from signdesk import db as db_module  # noqa: E402
from signdesk.db import get_session  # noqa: E402
from signdesk import storage as storage_module  # noqa: E402
from signdesk import email as email_module  # noqa: E402
from signdesk.certificates import CertificateAuthority, set_authority  # noqa: E402
from signdesk.workflow import get_or_create_user  # noqa: E402

SIMPLE_PDF = (
    b"%PDF-1.4\n"
    b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
    b"2 0 obj\n<< /Type /Pages /Count 1 /Kids [3 0 R] >>\nendobj\n"
    b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 300 144] /Contents 4 0 R >>\nendobj\n"
    b"4 0 obj\n<< /Length 44 >>\nstream\nBT /F1 24 Tf 72 100 Td (Hello) Tj ET\nendstream\nendobj\n"
    b"xref\n0 5\n"
    b"0000000000 65535 f \n"
    b"0000000010 00000 n \n"
    b"0000000057 00000 n \n"
    b"0000000116 00000 n \n"
    b"0000000211 00000 n \n"
    b"trailer\n<< /Size 5 /Root 1 0 R >>\nstartxref\n300\n%%EOF\n"
)

SIMPLE_SIGNATURE_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/Pf8icQAAAABJRU5ErkJggg=="
SIGNATURE_DATA_URL = f"data:image/png;base64,{SIMPLE_SIGNATURE_B64}"


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture(scope="session")
def authority():
    # Key generation is slow; one chain serves the whole run.
    ca = CertificateAuthority()
    ca.init()
    set_authority(ca)
    yield ca
    set_authority(None)


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(test_engine, setup_db, monkeypatch):
    monkeypatch.setattr(db_module, "engine", test_engine)
    with Session(test_engine) as s:
        yield s


@pytest.fixture(autouse=True)
def no_send_delay(monkeypatch):
    monkeypatch.setattr(config_module, "EMAIL_SEND_DELAY_MS", 0)


@pytest.fixture
def mock_storage(monkeypatch) -> Dict[str, bytes]:
    store: Dict[str, bytes] = {}

    def fake_put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
        store[key] = bytes(data)

    def fake_get_bytes(key: str) -> bytes:
        if key not in store:
            raise KeyError(key)
        return store[key]

    def fake_signed_get(key: str, ttl_seconds: int) -> str:
        return f"http://minio.test/{key}?ttl={ttl_seconds}"

    monkeypatch.setattr(storage_module, "put_bytes", fake_put_bytes)
    monkeypatch.setattr(storage_module, "get_bytes", fake_get_bytes)
    monkeypatch.setattr(storage_module, "signed_get", fake_signed_get)
    return store


@pytest.fixture
def sent_emails(monkeypatch):
    messages = []

    def fake_send_email(to, subject, body, html_body=None, attachments=None, sender_name=None, reply_to=None):
        messages.append(
            {
                "to": to,
                "subject": subject,
                "text": body,
                "html": html_body,
                "attachments": attachments or [],
                "sender_name": sender_name,
                "reply_to": reply_to,
            }
        )

    monkeypatch.setattr(email_module, "send_email", fake_send_email)
    return messages


@pytest.fixture
def owner(session):
    return get_or_create_user(session, "owner@example.com", "Olivia Owner")


@pytest.fixture
def client(test_engine, setup_db, mock_storage, authority, monkeypatch):
    monkeypatch.setattr(db_module, "engine", test_engine)

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
