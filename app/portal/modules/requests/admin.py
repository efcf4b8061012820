from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, send_file

from app.portal import errors
from app.portal.cache import with_cache_headers
from app.portal.db import db_session
from app.portal.modules.requests.models import Activity, Request, RequestAssignment, RequestFile
from app.portal.modules.requests.service import (
    add_comment,
    assign_request,
    bulk_action,
    create_assignment,
    create_request,
    delete_assignment,
    delete_file,
    delete_request,
    get_request,
    list_assignments,
    list_comments,
    list_requests,
    move_request,
    update_assignment,
    update_request,
    upload_file,
)
from app.portal.rate_limit import rate_limit
from app.portal.rbac import current_user, ensure_active_company, require_admin, require_login
from app.portal.schemas import (
    ASSIGN_REQUEST,
    BULK_REQUEST,
    CREATE_ASSIGNMENT,
    CREATE_COMMENT,
    CREATE_REQUEST,
    CREATE_REQUEST_FROM_TEMPLATE,
    MOVE_REQUEST,
    UPDATE_ASSIGNMENT,
    UPDATE_REQUEST,
)
from app.portal.storage import StorageError, storage_from_config
from app.portal.utils import json_body, required_int_arg
from app.portal.validation import parse, validate

bp = Blueprint("requests", __name__)


# ---------- board ----------
@bp.get("")
@require_login
@rate_limit("read", per_user=True)
def requests_list():
    s = db_session()
    rows = list_requests(s, current_user(), request.args)
    return with_cache_headers(jsonify([r.to_dict() for r in rows]), "user_private")


@bp.post("")
@require_login
@rate_limit("mutation", per_user=True)
def requests_create():
    s = db_session()
    u = current_user()
    ensure_active_company(u)

    body = json_body()
    payload = parse(CREATE_REQUEST_FROM_TEMPLATE if body.get("template_id") else CREATE_REQUEST, body)
    req = create_request(s, u, payload, current_app.config)
    s.commit()
    return jsonify(req.to_dict()), 201


@bp.post("/bulk")
@require_admin
@rate_limit("write", per_user=True)
def requests_bulk():
    s = db_session()
    payload = parse(BULK_REQUEST, json_body())
    result = bulk_action(s, current_user(), payload["request_ids"], payload["action"], payload.get("value"))
    s.commit()
    return jsonify(result)


# ---------- single request ----------
@bp.get("/<int:request_id>")
@require_login
def request_detail(request_id: int):
    s = db_session()
    req = get_request(s, current_user(), request_id)
    return jsonify(req.to_dict())


@bp.route("/<int:request_id>", methods=["PATCH", "PUT"])
@require_login
@rate_limit("mutation", per_user=True)
def request_update(request_id: int):
    s = db_session()
    u = current_user()
    req = get_request(s, u, request_id)
    payload = parse(UPDATE_REQUEST, json_body())
    update_request(s, u, req, payload)
    s.commit()
    return jsonify(req.to_dict())


@bp.delete("/<int:request_id>")
@require_login
@rate_limit("mutation", per_user=True)
def request_delete(request_id: int):
    s = db_session()
    u = current_user()
    req = get_request(s, u, request_id)
    delete_request(s, u, req)
    s.commit()
    return "", 204


@bp.post("/<int:request_id>/move")
@require_login
@rate_limit("write", per_user=True)
def request_move(request_id: int):
    s = db_session()
    u = current_user()
    res = validate(MOVE_REQUEST, json_body())
    if not res.success:
        raise errors.validation("Invalid status", {"errors": [e.to_dict() for e in res.errors]})

    req = s.get(Request, request_id)
    if req is None:
        raise errors.not_found("Request")
    move_request(s, u, req, res.data["status"], current_app.config)
    s.commit()
    return jsonify(req.to_dict())


# ---------- comments ----------
@bp.get("/<int:request_id>/comments")
@require_login
@rate_limit("read", per_user=True)
def comments_list(request_id: int):
    s = db_session()
    u = current_user()
    req = get_request(s, u, request_id)
    return jsonify([c.to_dict() for c in list_comments(s, u, req)])


@bp.post("/<int:request_id>/comments")
@require_login
@rate_limit("mutation", per_user=True)
def comments_create(request_id: int):
    s = db_session()
    u = current_user()
    req = s.get(Request, request_id)
    if req is None:
        raise errors.not_found("Request")

    body = json_body()
    if not isinstance(body.get("content"), str) or not body["content"].strip():
        raise errors.validation("Comment content is required")
    payload = parse(CREATE_COMMENT, body)
    comment = add_comment(
        s,
        u,
        req,
        payload["content"],
        is_internal=bool(payload.get("is_internal")) and u.is_admin,
        mentions=payload.get("mentions") or [],
        config=current_app.config,
    )
    s.commit()
    return jsonify(comment.to_dict()), 201


# ---------- assignment ----------
@bp.post("/<int:request_id>/assign")
@require_admin
@rate_limit("mutation", per_user=True)
def request_assign(request_id: int):
    s = db_session()
    u = current_user()
    req = get_request(s, u, request_id)
    payload = parse(ASSIGN_REQUEST, json_body())
    assign_request(s, u, req, payload.get("user_id"))
    s.commit()
    return jsonify(req.to_dict())


@bp.get("/<int:request_id>/assignments")
@require_login
def assignments_list(request_id: int):
    s = db_session()
    req = get_request(s, current_user(), request_id)
    return jsonify([a.to_dict() for a in list_assignments(s, req)])


@bp.post("/<int:request_id>/assignments")
@require_admin
@rate_limit("mutation", per_user=True)
def assignments_create(request_id: int):
    s = db_session()
    u = current_user()
    req = get_request(s, u, request_id)
    payload = parse(CREATE_ASSIGNMENT, json_body())
    a = create_assignment(s, u, req, payload["assigned_to"], payload.get("notes"))
    s.commit()
    return jsonify(a.to_dict()), 201


@bp.patch("/<int:request_id>/assignments/<int:assignment_id>")
@require_admin
@rate_limit("mutation", per_user=True)
def assignments_update(request_id: int, assignment_id: int):
    s = db_session()
    req = get_request(s, current_user(), request_id)
    a = s.get(RequestAssignment, assignment_id)
    if a is None or a.request_id != req.id:
        raise errors.not_found("Assignment")
    payload = parse(UPDATE_ASSIGNMENT, json_body())
    update_assignment(s, a, payload["status"], payload.get("notes"))
    s.commit()
    return jsonify(a.to_dict())


@bp.delete("/<int:request_id>/assignments")
@require_admin
@rate_limit("mutation", per_user=True)
def assignments_delete(request_id: int):
    s = db_session()
    u = current_user()
    req = get_request(s, u, request_id)
    assignment_id = required_int_arg("assignment_id")
    a = s.get(RequestAssignment, assignment_id)
    if a is None or a.request_id != req.id:
        raise errors.not_found("Assignment")
    delete_assignment(s, u, req, a)
    s.commit()
    return jsonify({"success": True})


# ---------- activities ----------
@bp.get("/<int:request_id>/activities")
@require_login
@rate_limit("read", per_user=True)
def activities_list(request_id: int):
    s = db_session()
    req = get_request(s, current_user(), request_id)
    rows = (
        s.query(Activity)
        .filter(Activity.request_id == req.id)
        .order_by(Activity.created_at.desc(), Activity.id.desc())
        .all()
    )
    return jsonify([a.to_dict() for a in rows])


# ---------- files ----------
@bp.get("/<int:request_id>/files")
@require_login
def files_list(request_id: int):
    s = db_session()
    req = get_request(s, current_user(), request_id)
    rows = (
        s.query(RequestFile)
        .filter(RequestFile.request_id == req.id)
        .order_by(RequestFile.created_at.desc(), RequestFile.id.desc())
        .all()
    )
    return jsonify([f.to_dict() for f in rows])


@bp.post("/<int:request_id>/files")
@require_login
@rate_limit("mutation", per_user=True)
def files_upload(request_id: int):
    s = db_session()
    u = current_user()
    req = get_request(s, u, request_id)
    ensure_active_company(u)

    upload = request.files.get("file")
    if upload is None:
        raise errors.missing_field("file")
    storage = storage_from_config(current_app.config)
    rf = upload_file(s, storage, u, req, upload)
    s.commit()
    return jsonify(rf.to_dict()), 201


@bp.delete("/<int:request_id>/files")
@require_login
@rate_limit("mutation", per_user=True)
def files_delete(request_id: int):
    s = db_session()
    u = current_user()
    req = get_request(s, u, request_id)
    file_id = required_int_arg("file_id")
    rf = s.get(RequestFile, file_id)
    if rf is None or rf.request_id != req.id:
        raise errors.not_found("File")
    delete_file(s, storage_from_config(current_app.config), u, req, rf)
    s.commit()
    return jsonify({"success": True})


@bp.get("/<int:request_id>/files/<int:file_id>/download")
@require_login
def files_download(request_id: int, file_id: int):
    s = db_session()
    req = get_request(s, current_user(), request_id)
    rf = s.get(RequestFile, file_id)
    if rf is None or rf.request_id != req.id:
        raise errors.not_found("File")
    try:
        fobj = storage_from_config(current_app.config).open(rf.storage_key)
    except StorageError:
        raise errors.not_found("File") from None
    return send_file(
        fobj,
        mimetype=rf.mime_type,
        as_attachment=True,
        download_name=rf.file_name,
        max_age=0,
    )
