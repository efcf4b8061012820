from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

if TYPE_CHECKING:
    from app.portal.modules.companies.models import Company


USER_ROLES = ("admin", "client")


class Base(DeclarativeBase):
    pass


class User(Base):
    """A portal login. Admins belong to the agency; clients belong to one company."""

    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_company_id", "company_id"),
        Index("idx_users_role", "role"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="client")
    company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    company: Mapped["Company | None"] = relationship("Company", foreign_keys=[company_id], lazy="joined")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def display_name(self) -> str:
        return self.full_name or self.email

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "company_id": self.company_id,
            "avatar_url": self.avatar_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def to_summary(self) -> dict:
        return {"id": self.id, "email": self.email, "full_name": self.full_name, "avatar_url": self.avatar_url}


class AuditLog(Base):
    """
    Append-only audit trail row.
    old_values/new_values hold the changed columns only.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_company_id", "company_id"),
        Index("idx_audit_logs_user_id", "user_id"),
        Index("idx_audit_logs_entity", "entity_type", "entity_id"),
        Index("idx_audit_logs_created_at", "created_at"),
        Index("idx_audit_logs_action", "action"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    action: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "status_change"
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "request"
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    old_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    change_summary: Mapped[str | None] = mapped_column(String(512), nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "company_id": self.company_id,
            "user_id": self.user_id,
            "user_email": self.user_email,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "change_summary": self.change_summary,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.portal.modules.companies.models import ClientService, Company, Contact  # noqa: E402,F401
from app.portal.modules.requests.models import (  # noqa: E402,F401
    Activity,
    Comment,
    Request,
    RequestAssignment,
    RequestFile,
)
from app.portal.modules.notifications.models import Notification, NotificationPreferences  # noqa: E402,F401
from app.portal.modules.templates.models import RequestTemplate  # noqa: E402,F401
from app.portal.modules.workflows.models import WorkflowExecution, WorkflowRule  # noqa: E402,F401
from app.portal.modules.invitations.models import Invitation  # noqa: E402,F401
