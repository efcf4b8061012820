from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.portal.constants import PRIORITIES, REQUEST_STATUSES
from app.portal.models import User
from app.portal.modules.companies.models import ClientService, Company
from app.portal.modules.companies.service import company_mrr
from app.portal.modules.requests.models import Request


def build_analytics(s: Session, days: int, now: datetime | None = None) -> dict[str, Any]:
    """
    Dashboard metrics over requests created in the last `days` days, computed in a
    single pass over the rows.
    """
    now = now or datetime.utcnow()
    start = now - timedelta(days=days)
    rows = (
        s.query(
            Request.status,
            Request.priority,
            Request.created_at,
            Request.completed_at,
            Request.sla_status,
            Request.assigned_to,
        )
        .filter(Request.created_at >= start)
        .all()
    )
    team = s.query(User).filter(User.role == "admin").order_by(User.id.asc()).all()

    status_counts = {k: 0 for k in REQUEST_STATUSES}
    priority_counts = {k: 0 for k in PRIORITIES}
    sla = {"on_track": 0, "at_risk": 0, "breached": 0, "total": 0}
    today = now.date()
    volume: dict[date, int] = {today - timedelta(days=i): 0 for i in range(days - 1, -1, -1)}
    workload = {m.id: {"total": 0, "active": 0, "completed": 0} for m in team}
    completed_n = 0
    completion_seconds = 0.0

    for status, priority, created_at, completed_at, sla_status, assigned_to in rows:
        if status in status_counts:
            status_counts[status] += 1
        if priority in priority_counts:
            priority_counts[priority] += 1
        if sla_status:
            sla["total"] += 1
            if sla_status in sla:
                sla[sla_status] += 1
        day = created_at.date()
        if day in volume:
            volume[day] += 1
        if completed_at:
            completed_n += 1
            completion_seconds += (completed_at - created_at).total_seconds()
        if assigned_to in workload:
            w = workload[assigned_to]
            w["total"] += 1
            if status == "active":
                w["active"] += 1
            if status == "done":
                w["completed"] += 1

    avg_hours = round(completion_seconds / completed_n / 3600) if completed_n else 0
    return {
        "overview": {
            "total": len(rows),
            "completed": status_counts["done"],
            "active": status_counts["active"],
            "avgCompletionTime": avg_hours,
        },
        "statusDistribution": [{"name": k, "value": v} for k, v in status_counts.items()],
        "priorityDistribution": [{"name": k, "value": v} for k, v in priority_counts.items()],
        "requestVolume": [{"date": d.isoformat(), "count": n} for d, n in volume.items()],
        "slaCompliance": {
            "onTrack": sla["on_track"],
            "atRisk": sla["at_risk"],
            "breached": sla["breached"],
            "total": sla["total"],
        },
        "teamWorkload": [
            {"id": m.id, "name": m.display_name, **workload[m.id]}
            for m in team
        ],
    }


def subscription_overview(s: Session, company: Company) -> dict[str, Any]:
    counts = dict(
        s.query(Request.status, func.count(Request.id))
        .filter(Request.company_id == company.id)
        .group_by(Request.status)
        .all()
    )
    services = (
        s.query(ClientService)
        .filter(ClientService.company_id == company.id)
        .order_by(ClientService.created_at.desc(), ClientService.id.desc())
        .all()
    )
    return {
        "company": {
            "id": company.id,
            "name": company.name,
            "status": company.status,
            "plan_tier": company.plan_tier,
            "max_active_limit": company.max_active_limit,
            "woo_customer_id": company.woo_customer_id,
            "created_at": company.created_at.isoformat() if company.created_at else None,
        },
        "services": [svc.to_dict() for svc in services],
        "usage": {
            "active_requests": counts.get("active", 0),
            "limit": company.max_active_limit,
            "total_requests": sum(counts.values()),
            "completed_requests": counts.get("done", 0),
            "queued_requests": counts.get("queue", 0),
        },
        "mrr": round(company_mrr(company), 2),
    }
