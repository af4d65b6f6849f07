import logging

from celery import Celery

from signdesk import finalization, reminders, workflow
from signdesk.config import FINALIZATION_RECOVERY_SECONDS, REDIS_URL, REMINDER_SWEEP_SECONDS, WORKER_QUEUE
from signdesk.db import new_session
from signdesk.logging_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

cel = Celery("signdesk", broker=REDIS_URL, backend=REDIS_URL)
cel.conf.task_default_queue = WORKER_QUEUE
cel.conf.beat_schedule = {
    "reminder-sweep": {"task": "reminder_sweep", "schedule": float(REMINDER_SWEEP_SECONDS)},
    "expire-envelopes": {"task": "expire_envelopes", "schedule": 3600.0},
    "recover-finalizations": {"task": "recover_finalizations", "schedule": float(FINALIZATION_RECOVERY_SECONDS)},
}


@cel.task(name="reminder_sweep", queue=WORKER_QUEUE)
def reminder_sweep():
    with new_session() as session:
        report = reminders.run_reminder_sweep(session)
    return {
        "envelopes_checked": report.envelopes_checked,
        "envelopes_reminded": report.envelopes_reminded,
        "reminders_sent": report.reminders_sent,
    }


@cel.task(name="expire_envelopes", queue=WORKER_QUEUE)
def expire_envelopes():
    with new_session() as session:
        expired = workflow.expire_overdue(session)
        return [env.slug for env in expired]


@cel.task(name="recover_finalizations", queue=WORKER_QUEUE)
def recover_finalizations():
    with new_session() as session:
        report = finalization.recover_finalizations(session)
    still_missing = [r.envelope_id for r in report.rebuilt if r.failure is not None]
    if still_missing:
        logger.warning("Final documents still missing for envelopes %s", still_missing)
    return {
        "finalized": [r.envelope_id for r in report.finalized if r.claimed],
        "rebuilt": [r.envelope_id for r in report.rebuilt if r.rebuilt],
        "failed": still_missing,
    }
