import logging

from conftest import SIMPLE_PDF
from signdesk import config
from signdesk import email as email_module

PDF = {"filename": "Lease (signed).pdf", "content": SIMPLE_PDF, "maintype": "application", "subtype": "pdf"}


def test_message_goes_out_on_behalf_of_the_owner(monkeypatch):
    monkeypatch.setattr(config, "EMAIL_SENDER", "noreply@signdesk.test")
    msg = email_module.build_message(
        "alice@example.com", "Please sign: Lease", "Hello",
        html_body="<p>Hello</p>",
        attachments=[PDF, {"filename": "empty.txt"}],
        sender_name=email_module.sender_display_name("Olivia Owner"),
        reply_to="owner@example.com",
    )

    assert msg["From"] == "Olivia Owner via SignDesk <noreply@signdesk.test>"
    assert msg["Reply-To"] == "owner@example.com"
    assert msg["Message-ID"].endswith("@signdesk.test>")
    attachments = list(msg.iter_attachments())
    assert [a.get_filename() for a in attachments] == ["Lease (signed).pdf"]
    assert attachments[0].get_content_type() == "application/pdf"
    assert attachments[0].get_content() == SIMPLE_PDF


def test_sender_name_falls_back_to_the_service():
    assert email_module.sender_display_name() == "SignDesk"
    assert email_module.sender_display_name("   ") == "SignDesk"


def test_without_credentials_mail_is_logged(monkeypatch, caplog):
    monkeypatch.setattr(config, "SMTP_USER", None)
    monkeypatch.setattr(config, "SMTP_PASSWORD", None)

    def unreachable(*args, **kwargs):
        raise AssertionError("SMTP must not be used without credentials")

    monkeypatch.setattr(email_module.smtplib, "SMTP", unreachable)
    with caplog.at_level(logging.INFO, logger="signdesk.email"):
        message_id = email_module.send_email("bob@example.com", "Completed: Lease", "All done", attachments=[PDF])

    assert message_id.startswith("<")
    assert "not sent" in caplog.text
    assert "Lease (signed).pdf" in caplog.text


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port, self.timeout = host, port, timeout
        self.calls = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user, password))

    def send_message(self, msg):
        self.calls.append(("send", msg["To"], msg["Subject"]))


def test_credentials_deliver_over_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(config, "SMTP_HOST", "smtp.test")
    monkeypatch.setattr(config, "SMTP_PORT", 2525)
    monkeypatch.setattr(config, "SMTP_USER", "mailer")
    monkeypatch.setattr(config, "SMTP_PASSWORD", "pw")
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)

    email_module.send_email("carol@example.com", "Reminder: Lease", "Still waiting")

    [smtp] = FakeSMTP.instances
    assert (smtp.host, smtp.port) == ("smtp.test", 2525)
    assert smtp.calls == ["starttls", ("login", "mailer", "pw"), ("send", "carol@example.com", "Reminder: Lease")]
