from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import finalization, workflow
from ..auth import require_cron
from ..db import get_session
from ..reminders import run_reminder_sweep

router = APIRouter(dependencies=[Depends(require_cron)])


@router.post("/reminders")
def reminders(session: Session = Depends(get_session)):
    report = run_reminder_sweep(session)
    return {
        "ok": True,
        "message": f"Sent {report.reminders_sent} reminders",
        "envelopes_reminded": report.envelopes_reminded,
        "details": [
            {"envelope_id": r.envelope_id, "signer_email": r.signer_email, "success": r.success, "error": r.error}
            for r in report.results
        ],
    }


@router.post("/expire")
def expire(session: Session = Depends(get_session)):
    expired = workflow.expire_overdue(session)
    return {"ok": True, "expired": [env.slug for env in expired]}


@router.post("/finalize")
def recover(session: Session = Depends(get_session)):
    report = finalization.recover_finalizations(session)
    return {
        "ok": True,
        "finalized": [r.envelope_id for r in report.finalized if r.claimed],
        "rebuilt": [{"envelope_id": r.envelope_id, "rebuilt": r.rebuilt, "error": str(r.failure) if r.failure else None}
                    for r in report.rebuilt],
    }
