from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portal.models import Base


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Request(Base):
    """A client work item on the kanban board (queue -> active -> review -> done)."""

    __tablename__ = "requests"
    __table_args__ = (
        Index("idx_requests_company_id", "company_id"),
        Index("idx_requests_status", "status"),
        Index("idx_requests_company_status", "company_id", "status"),
        Index("idx_requests_assigned_to", "assigned_to"),
        Index("idx_requests_due_date", "due_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queue")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    assets_link: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    video_brief: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    sla_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sla_status: Mapped[str | None] = mapped_column(String(16), nullable=True, default="on_track")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    assigned_to: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    company = relationship("Company", foreign_keys=[company_id], lazy="joined")
    assignee = relationship("User", foreign_keys=[assigned_to], lazy="joined")

    comments: Mapped[list["Comment"]] = relationship(
        "Comment",
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Comment.created_at",
    )
    activities: Mapped[list["Activity"]] = relationship(
        "Activity",
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    assignments: Mapped[list["RequestAssignment"]] = relationship(
        "RequestAssignment",
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    files: Mapped[list["RequestFile"]] = relationship(
        "RequestFile",
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def to_dict(self, *, include_company: bool = True) -> dict:
        out = {
            "id": self.id,
            "company_id": self.company_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "assets_link": self.assets_link,
            "video_brief": self.video_brief,
            "due_date": _iso(self.due_date),
            "sla_hours": self.sla_hours,
            "sla_status": self.sla_status,
            "completed_at": _iso(self.completed_at),
            "assigned_to": self.assigned_to,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "assignee": self.assignee.to_summary() if self.assignee else None,
        }
        if include_company:
            out["company"] = self.company.to_summary() if self.company else None
        return out


class Comment(Base):
    __tablename__ = "comments"
    __table_args__ = (Index("idx_comments_request_id", "request_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(ForeignKey("requests.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_internal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    request: Mapped["Request"] = relationship("Request", back_populates="comments")
    author = relationship("User", foreign_keys=[user_id], lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "content": self.content,
            "is_internal": self.is_internal,
            "created_at": _iso(self.created_at),
            "author": self.author.to_summary() if self.author else None,
        }


class Activity(Base):
    """Timeline row for a request (created, status change, comment, ...)."""

    __tablename__ = "activities"
    __table_args__ = (
        Index("idx_activities_request_id", "request_id"),
        Index("idx_activities_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(ForeignKey("requests.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    request: Mapped["Request"] = relationship("Request", back_populates="activities")
    user = relationship("User", foreign_keys=[user_id], lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "activity_type": self.activity_type,
            "description": self.description,
            "metadata": self.metadata_json or {},
            "created_at": _iso(self.created_at),
            "user": self.user.to_summary() if self.user else None,
        }


class RequestAssignment(Base):
    __tablename__ = "request_assignments"
    __table_args__ = (
        UniqueConstraint("request_id", "assigned_to", name="uq_request_assignments_request_user"),
        Index("idx_request_assignments_request_id", "request_id"),
        Index("idx_request_assignments_assigned_to", "assigned_to"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(ForeignKey("requests.id", ondelete="CASCADE"), nullable=False)
    assigned_to: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    assigned_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="assigned")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    request: Mapped["Request"] = relationship("Request", back_populates="assignments")
    assignee = relationship("User", foreign_keys=[assigned_to], lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "assigned_to": self.assigned_to,
            "assigned_by": self.assigned_by,
            "status": self.status,
            "notes": self.notes,
            "assigned_at": _iso(self.assigned_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "assignee": self.assignee.to_summary() if self.assignee else None,
        }


class RequestFile(Base):
    __tablename__ = "request_files"
    __table_args__ = (Index("idx_request_files_request_id", "request_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(ForeignKey("requests.id", ondelete="CASCADE"), nullable=False)
    uploaded_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    file_type: Mapped[str] = mapped_column(String(16), nullable=False, default="other")
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(1000), nullable=False)
    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    request: Mapped["Request"] = relationship("Request", back_populates="files")
    uploader = relationship("User", foreign_keys=[uploaded_by], lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "uploaded_by": self.uploaded_by,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "file_type": self.file_type,
            "mime_type": self.mime_type,
            "is_approved": self.is_approved,
            "created_at": _iso(self.created_at),
            "download_url": f"/api/requests/{self.request_id}/files/{self.id}/download",
            "uploader": self.uploader.to_summary() if self.uploader else None,
        }
