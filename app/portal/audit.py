from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.portal.models import AuditLog, User

AUDIT_ACTIONS = (
    "create",
    "update",
    "delete",
    "status_change",
    "assign",
    "comment",
    "login",
    "login_failed",
    "logout",
)


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str,
    entity_id: Any = None,
    company_id: int | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    summary: str | None = None,
    actor_email: str | None = None,
    request_id: str | None = None,
) -> AuditLog:
    """
    Append-only audit event helper.
    """
    in_request = has_request_context()
    user_agent = (request.headers.get("User-Agent") or "")[:512] if in_request else ""
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    ev = AuditLog(
        request_id=rid,
        company_id=company_id,
        user_id=actor.id if actor else None,
        user_email=actor.email if actor else actor_email,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        old_values=old_values,
        new_values=new_values,
        change_summary=summary,
        ip_address=request.remote_addr if in_request else None,
        user_agent=user_agent or None,
    )
    s.add(ev)
    return ev


def diff_fields(obj: Any, payload: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return (old_values, new_values) for the payload keys whose value differs from obj."""
    old: dict[str, Any] = {}
    new: dict[str, Any] = {}
    for key, value in payload.items():
        before = getattr(obj, key, None)
        if before != value:
            old[key] = _jsonable(before)
            new[key] = _jsonable(value)
    return old, new


def _jsonable(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if value is not None and not isinstance(value, (str, int, float, bool, dict, list)):
        return str(value)
    return value
