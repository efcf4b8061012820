from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.portal import errors
from app.portal.db import db_session
from app.portal.models import AuditLog
from app.portal.rbac import require_admin
from app.portal.schemas import AUDIT_LOG_QUERY_DATES
from app.portal.utils import int_arg
from app.portal.validation import validate

bp = Blueprint("audit_logs", __name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def _int_filter(name: str) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    if not raw.isdigit():
        raise errors.invalid_input(f"{name} must be an integer", name)
    return int(raw)


@bp.get("")
@require_admin
def audit_logs_list():
    s = db_session()
    q = s.query(AuditLog)

    for name in ("entity_type", "action"):
        value = (request.args.get(name) or "").strip()
        if value:
            q = q.filter(getattr(AuditLog, name) == value)

    entity_id = (request.args.get("entity_id") or "").strip()
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    company_id = _int_filter("company_id")
    if company_id is not None:
        q = q.filter(AuditLog.company_id == company_id)
    user_id = _int_filter("user_id")
    if user_id is not None:
        q = q.filter(AuditLog.user_id == user_id)

    dates = validate(AUDIT_LOG_QUERY_DATES, {k: request.args.get(k) for k in AUDIT_LOG_QUERY_DATES})
    if not dates.success:
        raise errors.validation("Invalid date filter", [e.to_dict() for e in dates.errors])
    if dates.data.get("date_from"):
        q = q.filter(AuditLog.created_at >= dates.data["date_from"])
    if dates.data.get("date_to"):
        q = q.filter(AuditLog.created_at <= dates.data["date_to"])

    limit = int_arg("limit", DEFAULT_LIMIT, minimum=1, maximum=MAX_LIMIT)
    offset = int_arg("offset", 0, minimum=0)
    total = q.count()
    rows = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(offset).limit(limit).all()
    return jsonify(
        {
            "data": [r.to_dict() for r in rows],
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(rows) < total,
            },
        }
    )
