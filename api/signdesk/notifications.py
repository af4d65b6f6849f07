"""
Outbound notifications: templates plus a throttled, sequential sender.

Every send is fallible and reported as a ``DeliveryResult``; nothing here
raises into the workflow. Batches go out one by one with a fixed minimum gap
between sends.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from html import escape
from typing import Callable, Optional

from . import config
from . import email as email_module

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    INVITATION = "invitation"
    COMPLETED = "completed"
    REMINDER = "reminder"
    DECLINED = "declined"
    SIGNED = "signed"


@dataclass
class DeliveryResult:
    to: str
    kind: NotificationKind
    delivered: bool
    error: Optional[str] = None


@dataclass
class OutgoingMessage:
    to: str
    kind: NotificationKind
    payload: dict = field(default_factory=dict)


_CARD_OPEN = """
<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 520px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px; box-shadow: 0 10px 25px rgba(15,23,42,0.08);">"""
_CARD_CLOSE = """
    </div>
  </body>
</html>
"""


def _button(link: str, label: str) -> str:
    link_html = escape(link)
    return f"""
      <div style="margin: 24px 0;">
        <a href="{link_html}" style="display: inline-block; background: #2563eb; color: #fff; padding: 12px 24px; border-radius: 999px; text-decoration: none; font-weight: 600;">
          {escape(label)}
        </a>
      </div>
      <p style="font-size: 12px; color: #64748b;">If the button doesn&apos;t work, copy this link into your browser:<br /><a href="{link_html}">{link_html}</a></p>"""


def _paragraph(text: str) -> str:
    return f'\n      <p style="font-size: 14px; color: #1e293b; line-height: 1.5;">{escape(text)}</p>'


def _render_invitation(p: dict) -> tuple[str, str, str]:
    document = p.get("document_name") or "Document"
    sender = p.get("sender_name") or "Your contact"
    intro = p.get("message") or f"{sender} invited you to review and sign this document."
    link = p["signing_link"]
    subject = f"Signature Requested: {document}"
    text = f"""{sender} sent you a document to review and sign.
Document: "{document}"

{intro}

Open document: {link}
"""
    html = (
        _CARD_OPEN
        + '\n      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">Signature requested</h2>'
        + _paragraph(f"{sender} sent you a document to review and sign.")
        + _paragraph(intro)
        + _button(link, "Review & Sign")
        + _CARD_CLOSE
    )
    return subject, text, html


def _render_reminder(p: dict) -> tuple[str, str, str]:
    document = p.get("document_name") or "Document"
    sender = p.get("sender_name") or "Your contact"
    link = p["signing_link"]
    days = p.get("days_remaining")
    deadline = f"This document expires in {days} day(s)." if days is not None else ""
    subject = f"Reminder: {document} is waiting for your signature"
    text = f"""{sender} is still waiting for your signature on "{document}".
{deadline}

Open document: {link}
"""
    html = (
        _CARD_OPEN
        + '\n      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">Reminder</h2>'
        + _paragraph(f"{sender} is still waiting for your signature on {document}.")
        + (_paragraph(deadline) if deadline else "")
        + _button(link, "Review & Sign")
        + _CARD_CLOSE
    )
    return subject, text, html


def _render_completed(p: dict) -> tuple[str, str, str]:
    document = p.get("document_name") or "Document"
    completed_at = p.get("completed_at")
    when = completed_at.strftime("%Y-%m-%d %H:%M UTC") if isinstance(completed_at, datetime) else ""
    attachments = p.get("attachments") or []
    link = p.get("download_link")
    subject = f"Completed: {document}"
    lines = [f"All parties have finished signing {document}."]
    if when:
        lines.append(f"Completed on {when}.")
    if p.get("final_hash"):
        lines.append(f"Final SHA256: {p['final_hash']}")
    if attachments:
        lines.append("A copy of the executed PDF and its audit trail are attached for your records.")
    elif link:
        lines.append("The executed document is not attached; download it with the link below.")
    text = "\n".join(lines) + (f"\n\nDownload: {link}\n" if link else "\n")
    html = (
        _CARD_OPEN
        + '\n      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">Completed</h2>'
        + "".join(_paragraph(line) for line in lines)
        + (_button(link, "Download") if link else "")
        + _CARD_CLOSE
    )
    return subject, text, html


def _render_declined(p: dict) -> tuple[str, str, str]:
    document = p.get("document_name") or "Document"
    who = p.get("signer_name") or p.get("signer_email") or "A signer"
    reason = p.get("reason")
    subject = f"Declined: {document}"
    lines = [f"{who} declined to sign {document}."]
    if reason:
        lines.append(f"Reason: {reason}")
    text = "\n".join(lines) + "\n"
    html = (
        _CARD_OPEN
        + '\n      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">Declined</h2>'
        + "".join(_paragraph(line) for line in lines)
        + _CARD_CLOSE
    )
    return subject, text, html


def _render_signed(p: dict) -> tuple[str, str, str]:
    document = p.get("document_name") or "Document"
    who = p.get("signer_name") or p.get("signer_email") or "A signer"
    link = p.get("envelope_link")
    subject = f"Signed by {who}: {document}"
    lines = [f"{who} signed {document}."]
    if p.get("total_signers"):
        lines.append(f"{p.get('signed_count', 0)} of {p['total_signers']} signers have signed so far.")
    text = "\n".join(lines) + (f"\n\nView envelope: {link}\n" if link else "\n")
    html = (
        _CARD_OPEN
        + '\n      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">New signature</h2>'
        + "".join(_paragraph(line) for line in lines)
        + (_button(link, "View envelope") if link else "")
        + _CARD_CLOSE
    )
    return subject, text, html


def render(kind: NotificationKind, payload: dict) -> tuple[str, str, str]:
    kind = NotificationKind(kind)
    if kind == NotificationKind.INVITATION:
        return _render_invitation(payload)
    if kind == NotificationKind.REMINDER:
        return _render_reminder(payload)
    if kind == NotificationKind.SIGNED:
        return _render_signed(payload)
    if kind == NotificationKind.COMPLETED:
        return _render_completed(payload)
    return _render_declined(payload)


class Notifier:
    def send(self, to: str, kind: NotificationKind, payload: dict) -> DeliveryResult:
        kind = NotificationKind(kind)
        try:
            subject, text, html = render(kind, payload)
            email_module.send_email(
                to,
                subject,
                text,
                html_body=html,
                attachments=payload.get("attachments") or [],
                sender_name=email_module.sender_display_name(payload.get("sender_name")),
                reply_to=payload.get("reply_to"),
            )
        except Exception as exc:
            logger.warning("Failed to send %s email to %s: %s", kind.value, to, exc)
            return DeliveryResult(to=to, kind=kind, delivered=False, error=str(exc))
        logger.info("Sent %s email to %s", kind.value, to)
        return DeliveryResult(to=to, kind=kind, delivered=True)


class ThrottledNotifier:
    """Sends one message at a time, at least ``delay_seconds`` apart."""

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        delay_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.notifier = notifier or Notifier()
        if delay_seconds is None:
            delay_seconds = config.EMAIL_SEND_DELAY_MS / 1000.0
        self.delay_seconds = delay_seconds
        self._sleep = sleep
        self._clock = clock
        self._last_sent: Optional[float] = None

    def send(self, to: str, kind: NotificationKind, payload: dict) -> DeliveryResult:
        if self._last_sent is not None and self.delay_seconds > 0:
            wait = self.delay_seconds - (self._clock() - self._last_sent)
            if wait > 0:
                self._sleep(wait)
        try:
            return self.notifier.send(to, kind, payload)
        finally:
            self._last_sent = self._clock()

    def send_all(self, messages: list[OutgoingMessage]) -> list[DeliveryResult]:
        return [self.send(m.to, m.kind, m.payload) for m in messages]
