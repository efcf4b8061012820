from __future__ import annotations

from flask import Blueprint, jsonify

from app.portal import errors
from app.portal.db import db_session
from app.portal.models import User
from app.portal.modules.notifications.service import (
    create_notification,
    get_preferences,
    list_notifications,
    mark_read,
    update_preferences,
)
from app.portal.rate_limit import rate_limit
from app.portal.rbac import current_user, require_admin, require_login
from app.portal.schemas import CREATE_NOTIFICATION, MARK_NOTIFICATIONS, NOTIFICATION_PREFERENCES
from app.portal.utils import bool_arg, int_arg, json_body
from app.portal.validation import parse

bp = Blueprint("notifications", __name__)


@bp.get("")
@require_login
@rate_limit("read", per_user=True)
def notifications_list():
    s = db_session()
    rows, unread = list_notifications(
        s,
        current_user(),
        unread_only=bool_arg("unread"),
        limit=int_arg("limit", 50, minimum=1, maximum=200),
    )
    return jsonify({"notifications": [n.to_dict() for n in rows], "unread_count": unread})


@bp.post("")
@require_admin
@rate_limit("mutation", per_user=True)
def notifications_create():
    s = db_session()
    payload = parse(CREATE_NOTIFICATION, json_body())
    if s.get(User, payload["user_id"]) is None:
        raise errors.not_found("User")
    n = create_notification(
        s,
        user_id=payload["user_id"],
        type=payload["type"],
        title=payload["title"],
        message=payload.get("message"),
        link=payload.get("link"),
        request_id=payload.get("request_id"),
        company_id=payload.get("company_id"),
    )
    s.commit()
    return jsonify(n.to_dict()), 201


@bp.post("/mark-read")
@require_login
@rate_limit("mutation", per_user=True)
def notifications_mark_read():
    s = db_session()
    payload = parse(MARK_NOTIFICATIONS, json_body())
    ids = payload.get("notification_ids") or []
    mark_all = bool(payload.get("mark_all"))
    if not ids and not mark_all:
        raise errors.validation("Either notification_ids or mark_all is required")
    count = mark_read(s, current_user(), ids=ids, mark_all=mark_all)
    s.commit()
    return jsonify({"success": True, "updated": count})


@bp.get("/preferences")
@require_login
def preferences_get():
    s = db_session()
    prefs = get_preferences(s, current_user().id)
    s.commit()
    return jsonify(prefs.to_dict())


@bp.put("/preferences")
@require_login
@rate_limit("mutation", per_user=True)
def preferences_update():
    s = db_session()
    payload = parse(NOTIFICATION_PREFERENCES, json_body())
    prefs = update_preferences(s, current_user().id, payload)
    s.commit()
    return jsonify(prefs.to_dict())
