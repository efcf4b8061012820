"""
Request lifecycle helpers shared by the request service and the workflow engine:
status application, SLA bookkeeping and the activity timeline.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from app.portal.models import User
from app.portal.modules.requests.models import Activity, Request

AT_RISK_WINDOW = timedelta(hours=24)


def compute_sla_status(due_date: datetime | None, status: str, now: datetime | None = None) -> str | None:
    """on_track / at_risk (< 24h left) / breached (past due); None when not tracked."""
    if due_date is None or status == "done":
        return None
    now = now or datetime.utcnow()
    if due_date < now:
        return "breached"
    if due_date - now < AT_RISK_WINDOW:
        return "at_risk"
    return "on_track"


def refresh_sla(req: Request, now: datetime | None = None) -> None:
    sla = compute_sla_status(req.due_date, req.status, now)
    req.sla_status = sla if sla is not None else "on_track"


def apply_status(req: Request, new_status: str, now: datetime | None = None) -> str:
    """Set the status with completed_at bookkeeping. Returns the previous status."""
    now = now or datetime.utcnow()
    old_status = req.status
    req.status = new_status
    if new_status == "done" and old_status != "done":
        req.completed_at = now
    if old_status == "done" and new_status != "done":
        req.completed_at = None
    req.updated_at = now
    refresh_sla(req, now)
    return old_status


def log_activity(
    s: Session,
    req: Request,
    user: User | None,
    activity_type: str,
    description: str,
    metadata: dict[str, Any] | None = None,
) -> Activity:
    act = Activity(
        request_id=req.id,
        user_id=user.id if user else None,
        activity_type=activity_type,
        description=description,
        metadata_json=metadata or {},
    )
    s.add(act)
    return act


def request_url(app_url: str, request_id: int) -> str:
    return f"{app_url.rstrip('/')}/dashboard?request={request_id}"
