from __future__ import annotations

import logging
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from app.portal import errors
from app.portal.audit import diff_fields, record_event
from app.portal.db import db_session
from app.portal.modules.companies.models import Company
from app.portal.modules.workflows.engine import WorkflowEngine
from app.portal.modules.workflows.models import WorkflowExecution, WorkflowRule
from app.portal.rate_limit import rate_limit
from app.portal.rbac import current_user, require_admin
from app.portal.schemas import CREATE_WORKFLOW, UPDATE_WORKFLOW
from app.portal.utils import int_arg, json_body
from app.portal.validation import parse

logger = logging.getLogger(__name__)

bp = Blueprint("workflows", __name__)


def _get_rule(rule_id: int) -> WorkflowRule:
    rule = db_session().get(WorkflowRule, rule_id)
    if rule is None:
        raise errors.not_found("Workflow rule")
    return rule


def _check_company(payload: dict) -> None:
    if payload.get("company_id") and db_session().get(Company, payload["company_id"]) is None:
        raise errors.not_found("Company")


@bp.get("")
@require_admin
def workflows_list():
    s = db_session()
    q = s.query(WorkflowRule)
    trigger = (request.args.get("trigger_type") or "").strip()
    if trigger:
        q = q.filter(WorkflowRule.trigger_type == trigger)
    company_id = (request.args.get("company_id") or "").strip()
    if company_id.isdigit():
        q = q.filter(WorkflowRule.company_id == int(company_id))
    rows = q.order_by(WorkflowRule.created_at.desc(), WorkflowRule.id.desc()).all()
    return jsonify([r.to_dict() for r in rows])


@bp.post("")
@require_admin
@rate_limit("mutation", per_user=True)
def workflows_create():
    s = db_session()
    u = current_user()
    payload = parse(CREATE_WORKFLOW, json_body())
    _check_company(payload)

    now = datetime.utcnow()
    rule = WorkflowRule(created_by=u.id, created_at=now, updated_at=now, execution_count=0, **payload)
    s.add(rule)
    s.flush()
    record_event(
        s,
        actor=u,
        action="create",
        entity_type="workflow_rule",
        entity_id=rule.id,
        company_id=rule.company_id,
        new_values={"name": rule.name, "trigger_type": rule.trigger_type, "action_type": rule.action_type},
    )
    s.commit()
    return jsonify(rule.to_dict()), 201


@bp.get("/<int:rule_id>")
@require_admin
def workflow_detail(rule_id: int):
    return jsonify(_get_rule(rule_id).to_dict())


@bp.put("/<int:rule_id>")
@require_admin
@rate_limit("mutation", per_user=True)
def workflow_update(rule_id: int):
    s = db_session()
    rule = _get_rule(rule_id)
    payload = parse(UPDATE_WORKFLOW, json_body())
    if not payload:
        raise errors.validation("No valid fields to update")
    _check_company(payload)

    old_values, new_values = diff_fields(rule, payload)
    for key, value in payload.items():
        setattr(rule, key, value)
    rule.updated_at = datetime.utcnow()
    if new_values:
        record_event(
            s,
            actor=current_user(),
            action="update",
            entity_type="workflow_rule",
            entity_id=rule.id,
            company_id=rule.company_id,
            old_values=old_values,
            new_values=new_values,
        )
    s.commit()
    return jsonify(rule.to_dict())


@bp.delete("/<int:rule_id>")
@require_admin
@rate_limit("mutation", per_user=True)
def workflow_delete(rule_id: int):
    s = db_session()
    rule = _get_rule(rule_id)
    record_event(
        s,
        actor=current_user(),
        action="delete",
        entity_type="workflow_rule",
        entity_id=rule.id,
        company_id=rule.company_id,
        old_values={"name": rule.name},
    )
    s.delete(rule)
    s.commit()
    return jsonify({"success": True})


@bp.get("/<int:rule_id>/executions")
@require_admin
def workflow_executions(rule_id: int):
    s = db_session()
    _get_rule(rule_id)
    rows = (
        s.query(WorkflowExecution)
        .filter(WorkflowExecution.workflow_rule_id == rule_id)
        .order_by(WorkflowExecution.executed_at.desc(), WorkflowExecution.id.desc())
        .limit(int_arg("limit", 50, minimum=1, maximum=200))
        .all()
    )
    return jsonify([e.to_dict() for e in rows])


@bp.post("/run-due-date-checks")
@require_admin
@rate_limit("strict", per_user=True)
def workflows_run_due_date_checks():
    s = db_session()
    ran = WorkflowEngine(s, current_app.config).check_due_date_workflows()
    s.commit()
    logger.info("due-date workflow check executed=%s", ran)
    return jsonify({"success": True, "executed": ran})
