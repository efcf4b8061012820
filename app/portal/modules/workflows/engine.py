"""
Workflow engine: evaluates active WorkflowRule rows against request events and runs
their canned actions (notify, assign, change_status, change_priority, send_email).

Every rule execution is recorded as a WorkflowExecution row. A failing rule is logged
as `failed` and never propagates to the caller; the triggering request still succeeds.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.portal.constants import PRIORITIES, is_valid_transition
from app.portal.email import send_status_change_email
from app.portal.models import User
from app.portal.modules.notifications.service import company_users, notify_users, wants_email
from app.portal.modules.requests.models import Request
from app.portal.modules.requests.timeline import apply_status, log_activity, request_url
from app.portal.modules.workflows.models import WorkflowExecution, WorkflowRule

logger = logging.getLogger(__name__)

DEFAULT_HOURS_BEFORE = 24
RECENT_EXECUTION_WINDOW = timedelta(hours=24)


class WorkflowActionError(RuntimeError):
    pass


@dataclass
class WorkflowContext:
    request: Request
    previous_status: str | None = None
    new_status: str | None = None
    triggered_by: User | None = None
    trigger: str = ""


class WorkflowEngine:
    def __init__(self, s: Session, config: Mapping[str, Any] | None = None):
        self.s = s
        self.config = config or {}

    # ---------- triggers ----------

    def on_status_change(self, req: Request, previous_status: str, new_status: str, triggered_by: User | None = None) -> int:
        ran = 0
        for rule in self._active_rules("status_change", req.company_id):
            conditions = rule.trigger_conditions or {}
            if conditions.get("from_status") and conditions["from_status"] != previous_status:
                continue
            if conditions.get("to_status") and conditions["to_status"] != new_status:
                continue
            ctx = WorkflowContext(req, previous_status, new_status, triggered_by, "status_change")
            self._execute(rule, ctx)
            ran += 1
        return ran

    def on_comment_added(self, req: Request, triggered_by: User | None = None) -> int:
        ran = 0
        for rule in self._active_rules("comment_added", req.company_id):
            self._execute(rule, WorkflowContext(req, triggered_by=triggered_by, trigger="comment_added"))
            ran += 1
        return ran

    def on_request_created(self, req: Request, triggered_by: User | None = None) -> int:
        ran = 0
        for rule in self._active_rules("request_created", req.company_id):
            conditions = rule.trigger_conditions or {}
            if conditions.get("priority") and conditions["priority"] != req.priority:
                continue
            self._execute(rule, WorkflowContext(req, triggered_by=triggered_by, trigger="request_created"))
            ran += 1
        return ran

    def check_due_date_workflows(self, now: datetime | None = None) -> int:
        """
        Run due_date_approaching rules for open requests due within the rule's window.
        Meant for a scheduled job; a rule runs at most once per request per 24h.
        """
        now = now or datetime.utcnow()
        ran = 0
        for rule in self._active_rules("due_date_approaching", None):
            conditions = rule.trigger_conditions or {}
            hours_before = conditions.get("hours_before") or DEFAULT_HOURS_BEFORE
            q = self.s.query(Request).filter(
                Request.due_date.isnot(None),
                Request.status != "done",
                Request.due_date >= now,
                Request.due_date <= now + timedelta(hours=float(hours_before)),
            )
            if rule.company_id is not None:
                q = q.filter(Request.company_id == rule.company_id)
            for req in q.order_by(Request.due_date.asc()).all():
                if self._has_recent_execution(rule.id, req.id, now):
                    continue
                self._execute(rule, WorkflowContext(req, trigger="due_date_approaching"))
                ran += 1
        return ran

    # ---------- internals ----------

    def _active_rules(self, trigger_type: str, company_id: int | None) -> list[WorkflowRule]:
        q = self.s.query(WorkflowRule).filter(
            WorkflowRule.trigger_type == trigger_type,
            WorkflowRule.is_active.is_(True),
        )
        if company_id is not None:
            q = q.filter(or_(WorkflowRule.company_id.is_(None), WorkflowRule.company_id == company_id))
        return q.order_by(WorkflowRule.id.asc()).all()

    def _has_recent_execution(self, rule_id: int, request_id: int, now: datetime) -> bool:
        return (
            self.s.query(WorkflowExecution.id)
            .filter(
                WorkflowExecution.workflow_rule_id == rule_id,
                WorkflowExecution.request_id == request_id,
                WorkflowExecution.executed_at >= now - RECENT_EXECUTION_WINDOW,
            )
            .first()
            is not None
        )

    @staticmethod
    def _actions(rule: WorkflowRule) -> list[dict[str, Any]]:
        config = rule.action_config or {}
        if isinstance(config.get("actions"), list):
            return [a for a in config["actions"] if isinstance(a, dict)]
        action = dict(config)
        action.setdefault("type", rule.action_type)
        return [action]

    def _execute(self, rule: WorkflowRule, ctx: WorkflowContext) -> WorkflowExecution:
        actions = self._actions(rule)
        data = {"trigger": ctx.trigger, "actions": [a.get("type") for a in actions]}
        try:
            for action in actions:
                self._execute_action(action, ctx)
        except Exception as e:
            logger.exception("Workflow rule %s failed for request %s", rule.id, ctx.request.id)
            ex = WorkflowExecution(
                workflow_rule_id=rule.id,
                request_id=ctx.request.id,
                status="failed",
                error_message=str(e) or e.__class__.__name__,
                execution_data=data,
            )
            self.s.add(ex)
            self.s.flush()
            return ex

        ex = WorkflowExecution(workflow_rule_id=rule.id, request_id=ctx.request.id, status="success", execution_data=data)
        self.s.add(ex)
        self.s.flush()
        rule.execution_count = (rule.execution_count or 0) + 1
        rule.last_executed_at = datetime.utcnow()
        logger.info("Workflow rule %s executed for request %s (%s)", rule.id, ctx.request.id, ctx.trigger)
        return ex

    def _execute_action(self, action: dict[str, Any], ctx: WorkflowContext) -> None:
        message = self.interpolate(action.get("message") or "", ctx)
        kind = action.get("type")
        if kind == "notify":
            self._notify(ctx, message)
        elif kind == "assign":
            if action.get("user_id") is not None:
                self._assign(ctx, action["user_id"])
        elif kind == "change_status":
            if action.get("target_status"):
                self._change_status(ctx, action["target_status"])
        elif kind == "change_priority":
            target = action.get("target_priority") or action.get("priority")
            if target:
                self._change_priority(ctx, target)
        elif kind == "send_email":
            self._send_email(ctx)
        else:
            raise WorkflowActionError(f"Unknown action type: {kind}")

    @staticmethod
    def interpolate(message: str, ctx: WorkflowContext) -> str:
        req = ctx.request
        return (
            message.replace("{request_title}", req.title)
            .replace("{request_id}", str(req.id))
            .replace("{status}", ctx.new_status or req.status)
        )

    def _notify(self, ctx: WorkflowContext, message: str) -> None:
        req = ctx.request
        recipients = [req.assigned_to] + [u.id for u in company_users(self.s, req.company_id)]
        notify_users(
            self.s,
            recipients,
            type="status_change",
            title="Workflow Notification",
            message=message or f"Update on: {req.title}",
            link=f"/dashboard/requests/{req.id}",
            request_id=req.id,
            company_id=req.company_id,
        )

    def _assign(self, ctx: WorkflowContext, user_id: Any) -> None:
        user = self.s.get(User, int(user_id))
        if user is None or not user.is_admin:
            raise WorkflowActionError(f"Assignee {user_id} is not an active admin")
        ctx.request.assigned_to = user.id
        ctx.request.assignee = user
        ctx.request.updated_at = datetime.utcnow()

    def _change_status(self, ctx: WorkflowContext, target: str) -> None:
        req = ctx.request
        if req.status == target:
            return
        if not is_valid_transition(req.status, target):
            raise WorkflowActionError(f"Cannot move from {req.status} to {target}")
        old = apply_status(req, target)
        log_activity(
            self.s,
            req,
            None,
            "status_change",
            f"Status changed from {old} to {target}",
            {"from_status": old, "to_status": target, "source": "workflow"},
        )

    def _change_priority(self, ctx: WorkflowContext, target: str) -> None:
        if target not in PRIORITIES:
            raise WorkflowActionError(f"Invalid priority: {target}")
        req = ctx.request
        if req.priority == target:
            return
        old = req.priority
        req.priority = target
        req.updated_at = datetime.utcnow()
        log_activity(
            self.s,
            req,
            None,
            "priority_change",
            f"Priority changed from {old} to {target}",
            {"from_priority": old, "to_priority": target, "source": "workflow"},
        )

    def _send_email(self, ctx: WorkflowContext) -> None:
        # Only status transitions have an email template.
        if not (ctx.previous_status and ctx.new_status):
            return
        req = ctx.request
        recipients: list[User] = []
        if req.assignee is not None:
            recipients.append(req.assignee)
        recipients.extend(company_users(self.s, req.company_id))

        seen: set[str] = set()
        url = request_url(self.config.get("APP_URL") or "http://localhost:3000", req.id)
        for user in recipients:
            if user.email in seen or not wants_email(self.s, user.id, "status_change"):
                continue
            seen.add(user.email)
            send_status_change_email(
                user.email,
                req.title,
                ctx.previous_status,
                ctx.new_status,
                url,
                user.full_name,
                config=self.config or None,
            )


def run_status_change(s: Session, config: Mapping[str, Any], req: Request, old: str, new: str, actor: User | None) -> None:
    """Fire-and-log wrapper used by request handlers."""
    try:
        WorkflowEngine(s, config).on_status_change(req, old, new, actor)
    except Exception:
        logger.exception("Workflow execution failed (request_id=%s)", req.id)


def run_comment_added(s: Session, config: Mapping[str, Any], req: Request, actor: User | None) -> None:
    try:
        WorkflowEngine(s, config).on_comment_added(req, actor)
    except Exception:
        logger.exception("Workflow execution failed (request_id=%s)", req.id)


def run_request_created(s: Session, config: Mapping[str, Any], req: Request, actor: User | None) -> None:
    try:
        WorkflowEngine(s, config).on_request_created(req, actor)
    except Exception:
        logger.exception("Workflow execution failed (request_id=%s)", req.id)
