from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from werkzeug.datastructures import FileStorage

from app.portal import errors
from app.portal.audit import diff_fields, record_event
from app.portal.constants import REQUEST_STATUSES, PRIORITIES, can_activate, is_valid_transition
from app.portal.email import send_comment_notification_email, send_status_change_email
from app.portal.models import User
from app.portal.modules.companies.models import Company
from app.portal.modules.notifications.service import admin_users, company_users, notify_users, wants_email
from app.portal.modules.requests.models import Comment, Request, RequestAssignment, RequestFile
from app.portal.modules.requests.timeline import apply_status, log_activity, refresh_sla, request_url
from app.portal.modules.templates.models import RequestTemplate
from app.portal.modules.workflows.engine import run_comment_added, run_request_created, run_status_change
from app.portal.rbac import can_access_company
from app.portal.sanitize import sanitize_html, sanitize_like_pattern, strip_html
from app.portal.storage import Storage, request_file_key
from app.portal.validation import FieldError, parse_datetime, rules_for_mime, validate_file

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 500

MENTION_ATTR_RE = re.compile(r'data-mention-id="(\d+)"')

# Fields a client may edit on their own request; due_date / sla_hours are admin-only.
CLIENT_EDITABLE_FIELDS = ("title", "description", "priority", "assets_link", "video_brief")
ADMIN_EDITABLE_FIELDS = CLIENT_EDITABLE_FIELDS + ("due_date", "sla_hours")


def _app_url(config: Mapping[str, Any]) -> str:
    return config.get("APP_URL") or "http://localhost:3000"


def _split_csv(raw: str | None) -> list[str]:
    return [p.strip() for p in (raw or "").split(",") if p.strip()]


def _int_arg(raw: str | None, default: int) -> int:
    try:
        return int(raw) if raw not in (None, "") else default
    except ValueError:
        return default


# ---------- queries ----------

def list_requests(s: Session, user: User, args: Mapping[str, str]) -> list[Request]:
    """Board query with filters. Clients only ever see their own company's rows."""
    if not user.is_admin and user.company_id is None:
        return []

    q = s.query(Request)

    search = (args.get("q") or "").strip()
    if search:
        like = f"%{sanitize_like_pattern(search)}%"
        q = q.filter(or_(Request.title.ilike(like, escape="\\"), Request.description.ilike(like, escape="\\")))

    statuses = _split_csv(args.get("status"))
    if statuses:
        q = q.filter(Request.status.in_(statuses))

    priorities = _split_csv(args.get("priority"))
    if priorities:
        q = q.filter(Request.priority.in_(priorities))

    assignee = (args.get("assignee") or "").strip()
    if assignee:
        q = q.filter(Request.assigned_to == _int_arg(assignee, 0))

    date_from = parse_datetime(args.get("date_from") or "") if args.get("date_from") else None
    if date_from is not None:
        q = q.filter(Request.due_date >= date_from)
    date_to = parse_datetime(args.get("date_to") or "") if args.get("date_to") else None
    if date_to is not None:
        q = q.filter(Request.due_date <= date_to)

    if not user.is_admin:
        q = q.filter(Request.company_id == user.company_id)
    elif args.get("company_id"):
        q = q.filter(Request.company_id == _int_arg(args.get("company_id"), 0))

    limit = min(max(_int_arg(args.get("limit"), DEFAULT_LIST_LIMIT), 1), MAX_LIST_LIMIT)
    offset = max(_int_arg(args.get("offset"), 0), 0)
    return q.order_by(Request.created_at.desc(), Request.id.desc()).offset(offset).limit(limit).all()


def get_request(s: Session, user: User, request_id: int) -> Request:
    req = s.get(Request, request_id)
    if req is None:
        raise errors.not_found("Request")
    if not can_access_company(user, req.company_id):
        raise errors.forbidden()
    return req


def active_count(s: Session, company_id: int) -> int:
    return (
        s.query(func.count(Request.id))
        .filter(Request.company_id == company_id, Request.status == "active")
        .scalar()
        or 0
    )


# ---------- create / update / delete ----------

def _template_for(s: Session, user: User, template_id: int, company_id: int) -> RequestTemplate:
    tpl = s.get(RequestTemplate, template_id)
    if tpl is None or not tpl.is_active:
        raise errors.not_found("Template")
    if not (tpl.is_global or tpl.company_id is None or tpl.company_id == company_id):
        raise errors.forbidden("Template not available for this company")
    return tpl


def create_request(s: Session, user: User, payload: dict[str, Any], config: Mapping[str, Any]) -> Request:
    if user.is_admin:
        company_id = payload.get("company_id")
        if not company_id:
            raise errors.missing_field("company_id")
        if s.get(Company, company_id) is None:
            raise errors.not_found("Company")
    else:
        company_id = user.company_id

    title = payload.get("title")
    description = payload.get("description")
    priority = payload.get("priority")
    sla_hours = payload.get("sla_hours")

    # Explicit payload values win over template defaults.
    if payload.get("template_id"):
        tpl = _template_for(s, user, payload["template_id"], company_id)
        title = title or tpl.title_template
        description = description or tpl.description_template
        priority = priority or tpl.default_priority
        sla_hours = sla_hours or tpl.default_sla_hours

    title = strip_html(title or "").strip()
    if not title:
        raise errors.missing_field("title")

    now = datetime.utcnow()
    req = Request(
        company_id=company_id,
        title=title,
        description=sanitize_html(description) if description else None,
        status="queue",
        priority=priority or "normal",
        assets_link=payload.get("assets_link") or None,
        video_brief=payload.get("video_brief") or None,
        due_date=payload.get("due_date") if user.is_admin else None,
        sla_hours=sla_hours if user.is_admin or payload.get("template_id") else None,
        created_by=user.id,
        created_at=now,
        updated_at=now,
    )
    refresh_sla(req, now)
    s.add(req)
    s.flush()

    log_activity(s, req, user, "created", "Request created", {"priority": req.priority})
    record_event(
        s,
        actor=user,
        action="create",
        entity_type="request",
        entity_id=req.id,
        company_id=req.company_id,
        new_values={"title": req.title, "status": req.status, "priority": req.priority},
        summary=f"Created request: {req.title}",
    )
    run_request_created(s, config, req, user)
    return req


def update_request(s: Session, user: User, req: Request, payload: dict[str, Any]) -> Request:
    allowed = ADMIN_EDITABLE_FIELDS if user.is_admin else CLIENT_EDITABLE_FIELDS
    changes = {k: v for k, v in payload.items() if k in allowed}
    if not changes:
        raise errors.validation("No valid fields to update")

    if "description" in changes and changes["description"]:
        changes["description"] = sanitize_html(changes["description"])
    if "title" in changes:
        changes["title"] = strip_html(changes["title"] or "").strip()
        if not changes["title"]:
            raise errors.missing_field("title")

    old_values, new_values = diff_fields(req, changes)
    old_priority, old_due = req.priority, req.due_date
    for key, value in changes.items():
        setattr(req, key, value)
    req.updated_at = datetime.utcnow()
    refresh_sla(req)

    if "priority" in changes and changes["priority"] != old_priority:
        log_activity(
            s,
            req,
            user,
            "priority_change",
            f"Priority changed from {old_priority} to {req.priority}",
            {"from_priority": old_priority, "to_priority": req.priority},
        )
    if "due_date" in changes and changes["due_date"] != old_due:
        if req.due_date is not None:
            desc = f"Due date set to {req.due_date.date().isoformat()}"
        else:
            desc = "Due date removed"
        log_activity(s, req, user, "due_date_change", desc, {"due_date": new_values.get("due_date")})

    if new_values:
        record_event(
            s,
            actor=user,
            action="update",
            entity_type="request",
            entity_id=req.id,
            company_id=req.company_id,
            old_values=old_values,
            new_values=new_values,
        )
    return req


def delete_request(s: Session, user: User, req: Request) -> None:
    if not user.is_admin and req.status != "queue":
        raise errors.forbidden("Can only delete requests in queue status")
    record_event(
        s,
        actor=user,
        action="delete",
        entity_type="request",
        entity_id=req.id,
        company_id=req.company_id,
        old_values={"title": req.title, "status": req.status},
    )
    s.delete(req)


# ---------- move ----------

def move_request(s: Session, user: User, req: Request, new_status: str, config: Mapping[str, Any]) -> Request:
    current = req.status
    if not is_valid_transition(current, new_status):
        raise errors.invalid_status_transition(current, new_status)

    if new_status == "active" and not user.is_admin:
        raise errors.forbidden("Only admins can activate requests")

    if new_status == "active":
        company = req.company
        limit = company.max_active_limit if company else 1
        current_count = active_count(s, req.company_id)
        if not can_activate(current_count, limit):
            raise errors.limit_reached(
                f"Client has reached their active request limit ({limit}). "
                "Complete or archive an active request first.",
                {"limit": limit, "current": current_count},
            )

    if not user.is_admin:
        if req.company_id != user.company_id:
            raise errors.forbidden("Not authorized to move this request")
        if not (current == "review" and new_status == "done"):
            raise errors.forbidden("Clients can only mark reviewed requests as complete")

    apply_status(req, new_status)
    log_activity(
        s,
        req,
        user,
        "status_change",
        f"Status changed from {current} to {new_status}",
        {"from_status": current, "to_status": new_status},
    )
    record_event(
        s,
        actor=user,
        action="status_change",
        entity_type="request",
        entity_id=req.id,
        company_id=req.company_id,
        old_values={"status": current},
        new_values={"status": new_status},
    )
    _notify_status_change(s, user, req, current, new_status, config)
    run_status_change(s, config, req, current, new_status, user)
    logger.info("Request status changed request=%s from=%s to=%s user=%s", req.id, current, new_status, user.id)
    return req


def _notify_status_change(
    s: Session, actor: User, req: Request, old: str, new: str, config: Mapping[str, Any]
) -> None:
    recipients = company_users(s, req.company_id, exclude_user_id=actor.id)
    if req.assignee is not None and req.assignee.id != actor.id:
        recipients.append(req.assignee)

    notify_users(
        s,
        [u.id for u in recipients],
        type="status_change",
        title="Request status updated",
        message=f'"{req.title}" moved from {old} to {new}',
        link=f"/dashboard/requests/{req.id}",
        request_id=req.id,
        company_id=req.company_id,
    )

    url = request_url(_app_url(config), req.id)
    seen: set[int] = set()
    for u in recipients:
        if u.id in seen or not wants_email(s, u.id, "status_change"):
            continue
        seen.add(u.id)
        result = send_status_change_email(u.email, req.title, old, new, url, u.full_name, config=config)
        if not result.success:
            logger.warning("Status email not sent to user=%s: %s", u.id, result.error)


# ---------- bulk ----------

def bulk_action(s: Session, user: User, request_ids: list[int], action: str, value: str | None) -> dict[str, Any]:
    rows = s.query(Request).filter(Request.id.in_(request_ids)).all()

    if action == "update_status":
        if value not in REQUEST_STATUSES:
            raise errors.validation("Valid status value is required")
        for req in rows:
            if req.status != value:
                old = apply_status(req, value)
                log_activity(
                    s,
                    req,
                    user,
                    "status_change",
                    f"Status changed from {old} to {value}",
                    {"from_status": old, "to_status": value, "bulk": True},
                )
        result = {"success": True, "updated": len(rows)}

    elif action == "update_priority":
        if value not in PRIORITIES:
            raise errors.validation("Valid priority value is required")
        now = datetime.utcnow()
        for req in rows:
            req.priority = value
            req.updated_at = now
        result = {"success": True, "updated": len(rows)}

    elif action == "assign":
        if not value:
            raise errors.validation("User ID value is required for assignment")
        try:
            assignee = s.get(User, int(value))
        except ValueError:
            assignee = None
        if assignee is None or not assignee.is_admin:
            raise errors.validation("Invalid assignee")
        existing = {
            rid
            for (rid,) in s.query(RequestAssignment.request_id).filter(
                RequestAssignment.request_id.in_([r.id for r in rows]),
                RequestAssignment.assigned_to == assignee.id,
            )
        }
        for req in rows:
            req.assigned_to = assignee.id
            req.assignee = assignee
            req.updated_at = datetime.utcnow()
            if req.id not in existing:
                s.add(RequestAssignment(request_id=req.id, assigned_to=assignee.id, assigned_by=user.id, status="assigned"))
        result = {"success": True, "updated": len(rows)}

    elif action == "delete":
        for req in rows:
            s.delete(req)
        result = {"success": True, "deleted": len(rows)}

    else:
        raise errors.validation(f"Invalid action: {action}")

    record_event(
        s,
        actor=user,
        action="delete" if action == "delete" else "update",
        entity_type="request",
        summary=f"Bulk {action} on {len(rows)} request(s)",
        new_values={"request_ids": [r.id for r in rows], "action": action, "value": value},
    )
    return result


# ---------- comments ----------

def list_comments(s: Session, user: User, req: Request) -> list[Comment]:
    q = s.query(Comment).filter(Comment.request_id == req.id)
    if not user.is_admin:
        q = q.filter(Comment.is_internal.is_(False))
    return q.order_by(Comment.created_at.asc(), Comment.id.asc()).all()


def extract_mentions(content: str, explicit: list[int] | None = None) -> list[int]:
    """Mentioned user ids from the explicit list plus data-mention-id attributes, in order."""
    ids: list[int] = []
    for uid in list(explicit or []) + [int(m) for m in MENTION_ATTR_RE.findall(content or "")]:
        if uid not in ids:
            ids.append(uid)
    return ids


def add_comment(
    s: Session,
    user: User,
    req: Request,
    content: str,
    *,
    is_internal: bool = False,
    mentions: list[int] | None = None,
    config: Mapping[str, Any],
) -> Comment:
    if not user.is_admin:
        if req.company_id != user.company_id:
            raise errors.forbidden("Not authorized to comment on this request")
        if req.company is None or req.company.status != "active":
            raise errors.forbidden("Cannot comment while subscription is not active")
        is_internal = False

    mentioned = extract_mentions(content, mentions)
    clean = sanitize_html(content.strip())
    if not clean.strip():
        raise errors.validation("Comment content is required")

    comment = Comment(request_id=req.id, user_id=user.id, content=clean, is_internal=bool(is_internal))
    s.add(comment)
    s.flush()

    log_activity(
        s,
        req,
        user,
        "comment",
        "Added internal note" if comment.is_internal else "Added comment",
        {"comment_id": comment.id, "is_internal": comment.is_internal},
    )
    _notify_comment(s, user, req, comment, config)
    _notify_mentions(s, user, req, comment, mentioned)
    run_comment_added(s, config, req, user)
    return comment


def _comment_recipients(s: Session, author: User, req: Request, is_internal: bool) -> list[User]:
    if is_internal:
        recipients = admin_users(s, exclude_user_id=author.id)
    else:
        recipients = company_users(s, req.company_id, exclude_user_id=author.id)
        if req.assignee is not None and req.assignee.id != author.id:
            recipients.append(req.assignee)
    out: list[User] = []
    seen: set[int] = set()
    for u in recipients:
        if u.id not in seen:
            seen.add(u.id)
            out.append(u)
    return out


def _notify_comment(s: Session, author: User, req: Request, comment: Comment, config: Mapping[str, Any]) -> None:
    recipients = _comment_recipients(s, author, req, comment.is_internal)
    notify_users(
        s,
        [u.id for u in recipients],
        type="comment",
        title="New comment",
        message=f'{author.display_name} commented on "{req.title}"',
        link=f"/dashboard/requests/{req.id}",
        request_id=req.id,
        company_id=req.company_id,
    )
    if comment.is_internal:
        return
    url = request_url(_app_url(config), req.id)
    plain = strip_html(comment.content)
    for u in recipients:
        if not wants_email(s, u.id, "comment"):
            continue
        result = send_comment_notification_email(
            u.email, req.title, author.display_name, plain, url, u.full_name, config=config
        )
        if not result.success:
            logger.warning("Comment email not sent to user=%s: %s", u.id, result.error)


def _notify_mentions(s: Session, author: User, req: Request, comment: Comment, user_ids: list[int]) -> None:
    targets: list[int] = []
    for uid in user_ids:
        if uid == author.id:
            continue
        u = s.get(User, uid)
        if u is None or not u.is_active or not can_access_company(u, req.company_id):
            continue
        if comment.is_internal and not u.is_admin:
            continue
        targets.append(u.id)
    notify_users(
        s,
        targets,
        type="mention",
        title="You were mentioned",
        message=f'{author.display_name} mentioned you in "{req.title}"',
        link=f"/dashboard/requests/{req.id}",
        request_id=req.id,
        company_id=req.company_id,
    )


# ---------- assignment ----------

def _admin_assignee(s: Session, user_id: int) -> User:
    assignee = s.get(User, user_id)
    if assignee is None:
        raise errors.not_found("User")
    if not assignee.is_admin or not assignee.is_active:
        raise errors.validation("Can only assign to admin users")
    return assignee


def assign_request(s: Session, user: User, req: Request, user_id: int | None) -> Request:
    old = req.assigned_to
    if user_id is None:
        req.assigned_to = None
        req.assignee = None
        description = "Unassigned request"
    else:
        assignee = _admin_assignee(s, user_id)
        req.assigned_to = assignee.id
        req.assignee = assignee
        description = f"Assigned to {assignee.display_name}"
        if assignee.id != user.id:
            notify_users(
                s,
                [assignee.id],
                type="assignment",
                title="Request assigned to you",
                message=f'You were assigned to "{req.title}"',
                link=f"/dashboard/requests/{req.id}",
                request_id=req.id,
                company_id=req.company_id,
            )
    req.updated_at = datetime.utcnow()
    log_activity(s, req, user, "assignment", description, {"from": old, "to": req.assigned_to})
    record_event(
        s,
        actor=user,
        action="assign",
        entity_type="request",
        entity_id=req.id,
        company_id=req.company_id,
        old_values={"assigned_to": old},
        new_values={"assigned_to": req.assigned_to},
    )
    return req


def list_assignments(s: Session, req: Request) -> list[RequestAssignment]:
    return (
        s.query(RequestAssignment)
        .filter(RequestAssignment.request_id == req.id)
        .order_by(RequestAssignment.assigned_at.asc(), RequestAssignment.id.asc())
        .all()
    )


def create_assignment(s: Session, user: User, req: Request, assigned_to: int, notes: str | None) -> RequestAssignment:
    assignee = _admin_assignee(s, assigned_to)
    exists = (
        s.query(RequestAssignment.id)
        .filter(RequestAssignment.request_id == req.id, RequestAssignment.assigned_to == assignee.id)
        .first()
    )
    if exists is not None:
        raise errors.validation("User is already assigned to this request")

    a = RequestAssignment(
        request_id=req.id, assigned_to=assignee.id, assignee=assignee, assigned_by=user.id, status="assigned", notes=notes
    )
    s.add(a)
    req.assigned_to = assignee.id
    req.assignee = assignee
    req.updated_at = datetime.utcnow()
    s.flush()

    log_activity(s, req, user, "assignment", f"Assigned to {assignee.display_name}", {"assignment_id": a.id})
    if assignee.id != user.id:
        notify_users(
            s,
            [assignee.id],
            type="assignment",
            title="Request assigned to you",
            message=f'You were assigned to "{req.title}"',
            link=f"/dashboard/requests/{req.id}",
            request_id=req.id,
            company_id=req.company_id,
        )
    return a


def update_assignment(s: Session, a: RequestAssignment, status: str, notes: str | None = None) -> RequestAssignment:
    now = datetime.utcnow()
    a.status = status
    if status == "in_progress" and a.started_at is None:
        a.started_at = now
    if status == "completed":
        a.completed_at = now
    if notes is not None:
        a.notes = notes
    return a


def delete_assignment(s: Session, user: User, req: Request, a: RequestAssignment) -> None:
    if req.assigned_to == a.assigned_to:
        remaining = (
            s.query(RequestAssignment)
            .filter(RequestAssignment.request_id == req.id, RequestAssignment.id != a.id)
            .order_by(RequestAssignment.assigned_at.desc(), RequestAssignment.id.desc())
            .first()
        )
        req.assigned_to = remaining.assigned_to if remaining else None
        req.assignee = remaining.assignee if remaining else None
        req.updated_at = datetime.utcnow()
    log_activity(s, req, user, "assignment", "Assignment removed", {"assignment_id": a.id, "user_id": a.assigned_to})
    s.delete(a)


# ---------- files ----------

def file_type_for_mime(mime_type: str) -> str:
    mime = (mime_type or "").lower()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    if any(k in mime for k in ("pdf", "document", "text")):
        return "document"
    if any(k in mime for k in ("zip", "archive", "compressed")):
        return "archive"
    return "other"


def upload_file(s: Session, storage: Storage, user: User, req: Request, upload: FileStorage) -> RequestFile:
    original_name = (upload.filename or "").strip()
    if not original_name:
        raise errors.missing_field("file")
    data = upload.read()
    mime_type = (upload.mimetype or "application/octet-stream").lower()

    problems: list[FieldError] = validate_file(original_name, len(data), mime_type, rules_for_mime(mime_type))
    if problems:
        raise errors.validation(problems[0].message, [p.to_dict() for p in problems])

    storage_key = request_file_key(req.id, original_name)
    storage.put_bytes(storage_key, data, content_type=mime_type)

    rf = RequestFile(
        request_id=req.id,
        uploaded_by=user.id,
        file_name=original_name,
        file_size=len(data),
        file_type=file_type_for_mime(mime_type),
        mime_type=mime_type,
        storage_key=storage_key,
        is_approved=False,
    )
    s.add(rf)
    s.flush()
    log_activity(s, req, user, "file_upload", f"Uploaded {original_name}", {"file_id": rf.id})
    return rf


def delete_file(s: Session, storage: Storage, user: User, req: Request, rf: RequestFile) -> None:
    if not (user.is_admin or rf.uploaded_by == user.id):
        raise errors.forbidden("Not authorized to delete this file")
    try:
        storage.delete(rf.storage_key)
    except Exception:
        # The row is the source of truth; an orphaned object is harmless.
        logger.exception("Failed to delete stored object key=%s", rf.storage_key)
    log_activity(s, req, user, "file_delete", f"Deleted {rf.file_name}", {"file_id": rf.id})
    s.delete(rf)
