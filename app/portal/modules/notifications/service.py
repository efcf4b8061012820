from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.portal.models import User
from app.portal.modules.notifications.models import Notification, NotificationPreferences

# Notification type -> preference switch gating the matching email.
EMAIL_PREFERENCE_FOR_TYPE = {
    "comment": "email_on_comment",
    "status_change": "email_on_status_change",
    "assignment": "email_on_assignment",
    "mention": "email_on_mention",
    "due_date": "email_on_due_date",
}


def create_notification(
    s: Session,
    *,
    user_id: int,
    type: str,
    title: str,
    message: str | None = None,
    link: str | None = None,
    request_id: int | None = None,
    company_id: int | None = None,
) -> Notification:
    n = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        link=link,
        related_request_id=request_id,
        related_company_id=company_id,
        is_read=False,
    )
    s.add(n)
    return n


def notify_users(s: Session, user_ids: Iterable[int | None], **kwargs: Any) -> list[Notification]:
    """Create one notification per distinct user id (None entries are skipped)."""
    seen: set[int] = set()
    out: list[Notification] = []
    for uid in user_ids:
        if uid is None or uid in seen:
            continue
        seen.add(uid)
        out.append(create_notification(s, user_id=uid, **kwargs))
    return out


def list_notifications(s: Session, user: User, *, unread_only: bool = False, limit: int = 50) -> tuple[list[Notification], int]:
    q = s.query(Notification).filter(Notification.user_id == user.id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
    unread = (
        s.query(Notification)
        .filter(Notification.user_id == user.id, Notification.is_read.is_(False))
        .count()
    )
    return rows, unread


def mark_read(s: Session, user: User, *, ids: list[int] | None = None, mark_all: bool = False) -> int:
    q = s.query(Notification).filter(Notification.user_id == user.id, Notification.is_read.is_(False))
    if not mark_all:
        q = q.filter(Notification.id.in_(ids or []))
    now = datetime.utcnow()
    count = 0
    for n in q.all():
        n.is_read = True
        n.read_at = now
        count += 1
    return count


def get_preferences(s: Session, user_id: int) -> NotificationPreferences:
    """Return the user's preferences row, creating it with defaults on first access."""
    prefs = s.query(NotificationPreferences).filter(NotificationPreferences.user_id == user_id).one_or_none()
    if prefs is None:
        prefs = NotificationPreferences(
            user_id=user_id,
            email_on_comment=True,
            email_on_status_change=True,
            email_on_assignment=True,
            email_on_mention=True,
            email_on_due_date=True,
            email_digest_enabled=False,
            email_digest_frequency="daily",
            push_enabled=True,
        )
        s.add(prefs)
        s.flush()
    return prefs


def update_preferences(s: Session, user_id: int, payload: dict[str, Any]) -> NotificationPreferences:
    prefs = get_preferences(s, user_id)
    for key in NotificationPreferences.FIELDS:
        if key in payload and payload[key] is not None:
            setattr(prefs, key, payload[key])
    prefs.updated_at = datetime.utcnow()
    return prefs


def wants_email(s: Session, user_id: int, notification_type: str) -> bool:
    """Missing preferences mean the defaults apply (email on)."""
    key = EMAIL_PREFERENCE_FOR_TYPE.get(notification_type)
    if key is None:
        return False
    prefs = s.query(NotificationPreferences).filter(NotificationPreferences.user_id == user_id).one_or_none()
    if prefs is None:
        return True
    return bool(getattr(prefs, key))


def company_users(s: Session, company_id: int, *, exclude_user_id: int | None = None) -> list[User]:
    q = s.query(User).filter(User.company_id == company_id, User.is_active.is_(True))
    if exclude_user_id is not None:
        q = q.filter(User.id != exclude_user_id)
    return q.order_by(User.id.asc()).all()


def admin_users(s: Session, *, exclude_user_id: int | None = None) -> list[User]:
    q = s.query(User).filter(User.role == "admin", User.is_active.is_(True))
    if exclude_user_id is not None:
        q = q.filter(User.id != exclude_user_id)
    return q.order_by(User.id.asc()).all()
