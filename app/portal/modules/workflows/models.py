from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portal.models import Base


class WorkflowRule(Base):
    __tablename__ = "workflow_rules"
    __table_args__ = (
        Index("idx_workflow_rules_trigger", "trigger_type", "is_active"),
        Index("idx_workflow_rules_company_id", "company_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # NULL company_id -> rule applies to every company.
    company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_conditions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    action_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    execution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    executions: Mapped[list["WorkflowExecution"]] = relationship(
        "WorkflowExecution",
        back_populates="rule",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "description": self.description,
            "trigger_type": self.trigger_type,
            "trigger_conditions": self.trigger_conditions or {},
            "action_type": self.action_type,
            "action_config": self.action_config or {},
            "is_active": self.is_active,
            "execution_count": self.execution_count,
            "last_executed_at": self.last_executed_at.isoformat() if self.last_executed_at else None,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class WorkflowExecution(Base):
    __tablename__ = "workflow_executions"
    __table_args__ = (
        Index("idx_workflow_executions_rule_id", "workflow_rule_id"),
        Index("idx_workflow_executions_request_id", "request_id"),
        Index("idx_workflow_executions_executed_at", "executed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workflow_rule_id: Mapped[int] = mapped_column(ForeignKey("workflow_rules.id", ondelete="CASCADE"), nullable=False)
    request_id: Mapped[int | None] = mapped_column(ForeignKey("requests.id", ondelete="SET NULL"), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # success | failed | skipped
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    rule: Mapped["WorkflowRule"] = relationship("WorkflowRule", back_populates="executions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_rule_id": self.workflow_rule_id,
            "request_id": self.request_id,
            "status": self.status,
            "error_message": self.error_message,
            "execution_data": self.execution_data,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }
