import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlmodel import Session, select

from . import audit
from .audit import AuditAction
from .models import OUTSTANDING_SIGNER_STATUSES, Envelope, EnvelopeStatus, ReminderInterval, Signer, User
from .notifications import NotificationKind, ThrottledNotifier
from .utils import as_utc, utcnow
from .workflow import days_remaining, signing_link

logger = logging.getLogger(__name__)

INTERVALS = {
    ReminderInterval.ONE_DAY.value: timedelta(days=1),
    ReminderInterval.TWO_DAYS.value: timedelta(days=2),
    ReminderInterval.THREE_DAYS.value: timedelta(days=3),
    ReminderInterval.SEVEN_DAYS.value: timedelta(days=7),
}
DEFAULT_INTERVAL = INTERVALS[ReminderInterval.THREE_DAYS.value]


@dataclass
class ReminderResult:
    envelope_id: int
    signer_email: str
    success: bool
    error: Optional[str] = None


@dataclass
class SweepReport:
    envelopes_checked: int = 0
    envelopes_reminded: int = 0
    results: list[ReminderResult] = field(default_factory=list)

    @property
    def reminders_sent(self) -> int:
        return sum(1 for r in self.results if r.success)


def is_due(envelope: Envelope, now: datetime) -> bool:
    interval = INTERVALS.get(envelope.reminder_interval, DEFAULT_INTERVAL)
    last = envelope.last_reminder_at or envelope.created_at
    return as_utc(now) - as_utc(last) >= interval


def run_reminder_sweep(
    session: Session, now: Optional[datetime] = None, notifier: Optional[ThrottledNotifier] = None
) -> SweepReport:
    """Remind outstanding signers of every pending envelope whose interval elapsed.

    ``last_reminder_at`` moves once per reminded envelope, whatever the
    individual deliveries did, so one bad address does not make the envelope
    due again on every tick.
    """
    now = as_utc(now) if now else utcnow()
    notifier = notifier or ThrottledNotifier()
    report = SweepReport()
    envelopes = session.exec(
        select(Envelope).where(
            Envelope.status == EnvelopeStatus.PENDING.value,
            Envelope.reminder_enabled.is_(True),
            or_(Envelope.expires_at.is_(None), Envelope.expires_at > now),
        ).order_by(Envelope.id)
    ).all()

    for envelope in envelopes:
        report.envelopes_checked += 1
        if not is_due(envelope, now):
            continue
        signers = session.exec(
            select(Signer).where(
                Signer.envelope_id == envelope.id,
                Signer.status.in_([s.value for s in OUTSTANDING_SIGNER_STATUSES]),
            ).order_by(Signer.order, Signer.id)
        ).all()
        if not signers:
            continue

        owner = session.get(User, envelope.owner_id)
        remaining = days_remaining(envelope, now)
        for signer in signers:
            result = notifier.send(signer.email, NotificationKind.REMINDER, {
                "document_name": envelope.name,
                "sender_name": (owner.name or owner.email) if owner else None,
                "signing_link": signing_link(signer),
                "days_remaining": remaining,
                "reply_to": owner.email if owner else None,
            })
            report.results.append(ReminderResult(envelope.id, signer.email, result.delivered, result.error))
            if result.delivered:
                audit.append(session, envelope.id, AuditAction.REMINDER_SENT, signer_id=signer.id,
                             details=audit.ReminderDetails(email=signer.email, days_remaining=remaining))

        envelope.last_reminder_at = now
        session.add(envelope)
        session.commit()
        report.envelopes_reminded += 1

    logger.info(
        "Reminder sweep: %d envelopes checked, %d reminded, %d reminders sent",
        report.envelopes_checked, report.envelopes_reminded, report.reminders_sent,
    )
    return report
