from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.portal.models import Base


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notifications_user_id", "user_id"),
        Index("idx_notifications_user_unread", "user_id", "is_read"),
        Index("idx_notifications_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    link: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    related_request_id: Mapped[int | None] = mapped_column(ForeignKey("requests.id", ondelete="CASCADE"), nullable=True)
    related_company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "link": self.link,
            "related_request_id": self.related_request_id,
            "related_company_id": self.related_company_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class NotificationPreferences(Base):
    """Per-user email/push switches. One row per user, created lazily with defaults."""

    __tablename__ = "notification_preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    email_on_comment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    email_on_status_change: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    email_on_assignment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    email_on_mention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    email_on_due_date: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    email_digest_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_digest_frequency: Mapped[str] = mapped_column(String(16), nullable=False, default="daily")
    push_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    FIELDS = (
        "email_on_comment",
        "email_on_status_change",
        "email_on_assignment",
        "email_on_mention",
        "email_on_due_date",
        "email_digest_enabled",
        "email_digest_frequency",
        "push_enabled",
    )

    def to_dict(self) -> dict:
        out = {"id": self.id, "user_id": self.user_id}
        for key in self.FIELDS:
            out[key] = getattr(self, key)
        out["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return out
