"""
Outbound mail over SMTP.

``send_email`` is the single entry point the notifier uses. Messages are
always built in full; without SMTP credentials they are logged instead of
delivered, which is what development and test runs rely on.
"""
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from . import config

logger = logging.getLogger(__name__)


def sender_display_name(on_behalf_of: str | None = None) -> str:
    """``"Olivia via SignDesk"`` when mail goes out for an owner, else the service name."""
    service = (config.EMAIL_SENDER_NAME or "").strip() or "SignDesk"
    on_behalf_of = (on_behalf_of or "").strip()
    return f"{on_behalf_of} via {service}" if on_behalf_of else service


def _add_attachments(msg: EmailMessage, attachments: list[dict]) -> int:
    added = 0
    for attachment in attachments:
        content = (attachment or {}).get("content")
        if content is None:
            continue
        msg.add_attachment(
            content,
            maintype=attachment.get("maintype", "application"),
            subtype=attachment.get("subtype", "octet-stream"),
            filename=attachment.get("filename") or "attachment",
        )
        added += 1
    return added


def build_message(
    to: str,
    subject: str,
    body: str,
    html_body: str | None = None,
    attachments: list | None = None,
    sender_name: str | None = None,
    reply_to: str | None = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = formataddr((sender_name or sender_display_name(), config.EMAIL_SENDER))
    msg["To"] = to
    if reply_to:
        msg["Reply-To"] = reply_to
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain=config.EMAIL_SENDER.rpartition("@")[2] or None)
    msg.set_content(body or "")
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    _add_attachments(msg, attachments or [])
    return msg


def _deliver(msg: EmailMessage):
    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=config.SMTP_TIMEOUT) as smtp:
        smtp.starttls()
        smtp.login(config.SMTP_USER, config.SMTP_PASSWORD)
        smtp.send_message(msg)


def send_email(
    to: str,
    subject: str,
    body: str,
    html_body: str | None = None,
    attachments: list | None = None,
    sender_name: str | None = None,
    reply_to: str | None = None,
) -> str:
    """Send one message and return its Message-ID. SMTP errors propagate."""
    msg = build_message(to, subject, body, html_body, attachments, sender_name, reply_to)
    if config.SMTP_USER and config.SMTP_PASSWORD:
        _deliver(msg)
    else:
        files = [part.get_filename() for part in msg.iter_attachments()]
        logger.info(
            "EMAIL (not sent, no SMTP credentials) from=%s to=%s subject=%r attachments=%s\n%s",
            msg["From"], to, subject, files or "none", body,
        )
    return msg["Message-ID"]
