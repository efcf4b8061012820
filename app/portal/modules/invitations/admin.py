from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.portal import errors
from app.portal.db import db_session
from app.portal.modules.invitations.service import (
    accept_invitation,
    create_invitation,
    delete_invitation,
    describe_invitation,
    list_invitations,
)
from app.portal.rate_limit import rate_limit
from app.portal.rbac import current_user, require_login
from app.portal.schemas import ACCEPT_INVITATION, CREATE_INVITATION
from app.portal.utils import json_body, required_int_arg
from app.portal.validation import validate

bp = Blueprint("invitations", __name__)


def _admin():
    u = current_user()
    if not u.is_admin:
        raise errors.forbidden("Only admins can invite users")
    return u


@bp.get("")
@require_login
def invitations_list():
    _admin()
    status = (request.args.get("status") or "").strip() or None
    rows = list_invitations(db_session(), status=status)
    return jsonify([i.to_dict() for i in rows])


@bp.post("")
@require_login
@rate_limit("write", per_user=True)
def invitations_create():
    u = _admin()
    res = validate(CREATE_INVITATION, json_body())
    if not res.success:
        raise errors.validation("Invalid invitation data", {"errors": [e.to_dict() for e in res.errors]})

    s = db_session()
    inv, url = create_invitation(s, u, res.data, current_app.config)
    s.commit()
    out = inv.to_dict()
    out["invitation_url"] = url
    return jsonify(out), 201


@bp.delete("")
@require_login
@rate_limit("write", per_user=True)
def invitations_delete():
    u = _admin()
    s = db_session()
    delete_invitation(s, u, required_int_arg("id"))
    s.commit()
    return jsonify({"success": True})


@bp.get("/accept")
def invitation_lookup():
    token = (request.args.get("token") or "").strip()
    if not token:
        raise errors.missing_field("token")
    return jsonify(describe_invitation(db_session(), token))


@bp.post("/accept")
@rate_limit("auth")
def invitation_accept():
    res = validate(ACCEPT_INVITATION, json_body())
    if not res.success:
        raise errors.validation("Invalid request", {"errors": [e.to_dict() for e in res.errors]})

    s = db_session()
    accept_invitation(s, res.data["token"], res.data["password"])
    s.commit()
    return jsonify({"success": True, "message": "Account created successfully. You can now log in."})
