from __future__ import annotations

import uuid
from datetime import datetime

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from app.portal import errors
from app.portal.audit import record_event
from app.portal.db import db_session
from app.portal.email import send_password_setup_email
from app.portal.models import User
from app.portal.rate_limit import rate_limit
from app.portal.rbac import current_user, require_login
from app.portal.schemas import LOGIN, PASSWORD_RESET_CONFIRM, PASSWORD_RESET_REQUEST, password_problems
from app.portal.security import (
    ensure_csrf_token,
    make_password_reset_token,
    password_fingerprint_matches,
    password_reset_link,
    read_password_reset_token,
)
from app.portal.utils import json_body
from app.portal.validation import parse, validate

bp = Blueprint("auth", __name__)

RESET_REQUESTED_MESSAGE = "If an account exists for that email, a reset link has been sent."


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    if request.path.startswith(("/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


def _me(user: User) -> dict:
    out = user.to_dict()
    out["company"] = user.company.to_summary() if user.company else None
    return out


@bp.post("/login")
@rate_limit("auth")
def login():
    payload = parse(LOGIN, json_body())
    email = payload["email"].strip().lower()
    password = payload["password"]

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                actor_email=email,
                action="login_failed",
                entity_type="user",
                entity_id=user.id if user else None,
                summary="Invalid credentials",
            )
            s.commit()
            raise errors.unauthorized("Invalid credentials")

        session.clear()
        session["user_id"] = user.id
        session.permanent = True
        record_event(s, actor=user, action="login", entity_type="user", entity_id=user.id, company_id=user.company_id)
        s.commit()
        return jsonify({"user": _me(user), "csrf_token": ensure_csrf_token()})
    except errors.ApiError:
        raise
    except Exception:
        current_app.logger.exception("Login crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="logout", entity_type="user", entity_id=user.id, company_id=user.company_id)
        s.commit()
    session.clear()
    return jsonify({"success": True})


@bp.get("/me")
@require_login
def me():
    return jsonify(_me(current_user()))


@bp.get("/csrf")
def csrf():
    return jsonify({"csrf_token": ensure_csrf_token()})


@bp.post("/password-reset")
@rate_limit("auth")
def password_reset_request():
    payload = parse(PASSWORD_RESET_REQUEST, json_body())
    email = payload["email"].strip().lower()
    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if user and user.is_active:
        token = make_password_reset_token(current_app.config, user.id, user.password_hash)
        result = send_password_setup_email(
            user.email,
            password_reset_link(current_app.config, token),
            user.full_name,
            config=current_app.config,
        )
        if not result.success:
            current_app.logger.warning("password reset email not sent user=%s: %s", user.id, result.error)
    # Same response either way so the endpoint cannot be used to discover accounts.
    return jsonify({"success": True, "message": RESET_REQUESTED_MESSAGE})


@bp.post("/password-reset/confirm")
@rate_limit("auth")
def password_reset_confirm():
    res = validate(PASSWORD_RESET_CONFIRM, json_body())
    if not res.success:
        raise errors.validation(", ".join(e.message for e in res.errors))
    problems = password_problems(res.data["password"])
    if problems:
        raise errors.validation(", ".join(problems))

    decoded = read_password_reset_token(current_app.config, res.data["token"])
    if decoded is None:
        raise errors.invalid_token("Invalid or expired reset link")
    user_id, fingerprint = decoded

    s = db_session()
    user = s.get(User, user_id)
    if user is None or not user.is_active or not password_fingerprint_matches(user.password_hash, fingerprint):
        raise errors.invalid_token("Invalid or expired reset link")

    user.password_hash = generate_password_hash(res.data["password"])
    user.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="update",
        entity_type="user",
        entity_id=user.id,
        company_id=user.company_id,
        summary="Password reset",
    )
    s.commit()
    return jsonify({"success": True})
