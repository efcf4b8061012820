from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify
from werkzeug.security import generate_password_hash

from app.portal import errors
from app.portal.audit import diff_fields, record_event
from app.portal.cache import cache, cache_keys, cache_ttl, invalidate_cache, with_cache_headers
from app.portal.db import db_session
from app.portal.models import User
from app.portal.rate_limit import rate_limit
from app.portal.rbac import current_user, require_admin, require_login
from app.portal.schemas import CHANGE_PASSWORD, UPDATE_PROFILE, password_problems
from app.portal.utils import json_body
from app.portal.validation import validate

bp = Blueprint("profile", __name__)


def _profile_dict(u: User) -> dict:
    out = u.to_dict()
    c = u.company
    out["company"] = {"id": c.id, "name": c.name, "status": c.status, "plan_tier": c.plan_tier} if c else None
    return out


@bp.get("/profile")
@require_login
@rate_limit("read", per_user=True)
def profile_get():
    return with_cache_headers(jsonify(_profile_dict(current_user())), "user_private")


@bp.patch("/profile")
@require_login
@rate_limit("mutation", per_user=True)
def profile_update():
    s = db_session()
    u = current_user()
    res = validate(UPDATE_PROFILE, json_body())
    if not res.success:
        raise errors.validation(", ".join(f"{e.field}: {e.message}" for e in res.errors))
    payload = res.data
    if not payload:
        raise errors.validation("No fields to update")

    old_values, new_values = diff_fields(u, payload)
    for key, value in payload.items():
        setattr(u, key, value)
    u.updated_at = datetime.utcnow()
    if new_values:
        record_event(
            s,
            actor=u,
            action="update",
            entity_type="user",
            entity_id=u.id,
            company_id=u.company_id,
            old_values=old_values,
            new_values=new_values,
        )
    s.commit()
    if u.is_admin:
        invalidate_cache([cache_keys.team_members()])
    return jsonify(_profile_dict(u))


@bp.post("/profile/password")
@require_login
@rate_limit("strict", per_user=True)
def profile_password():
    s = db_session()
    u = current_user()
    res = validate(CHANGE_PASSWORD, json_body())
    if not res.success:
        raise errors.validation(", ".join(e.message for e in res.errors))
    problems = password_problems(res.data["new_password"])
    if problems:
        raise errors.validation(", ".join(problems))

    u.password_hash = generate_password_hash(res.data["new_password"])
    u.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=u,
        action="update",
        entity_type="user",
        entity_id=u.id,
        company_id=u.company_id,
        summary="Password changed",
    )
    s.commit()
    return jsonify({"success": True})


# ---------- team members ----------

@bp.get("/team-members")
@require_login
def team_members_list():
    s = db_session()

    def load() -> list[dict]:
        rows = s.query(User).filter(User.role == "admin").order_by(User.full_name.asc(), User.email.asc()).all()
        return [u.to_summary() for u in rows]

    return jsonify(cache.get_or_set(cache_keys.team_members(), load, cache_ttl.MEDIUM))


@bp.delete("/team-members/<int:user_id>")
@require_admin
@rate_limit("mutation", per_user=True)
def team_member_remove(user_id: int):
    s = db_session()
    u = current_user()
    if user_id == u.id:
        raise errors.validation("Cannot remove yourself")
    target = s.get(User, user_id)
    if target is None:
        raise errors.not_found("User")
    if not target.is_admin:
        raise errors.validation("User is not an admin")

    target.role = "client"
    target.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=u,
        action="update",
        entity_type="user",
        entity_id=target.id,
        old_values={"role": "admin"},
        new_values={"role": "client"},
        summary="Removed from team",
    )
    s.commit()
    invalidate_cache([cache_keys.team_members()])
    return jsonify({"success": True})
