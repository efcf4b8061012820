from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from sqlalchemy import or_

from app.portal import errors
from app.portal.audit import diff_fields, record_event
from app.portal.db import db_session
from app.portal.models import User
from app.portal.modules.companies.models import Company
from app.portal.modules.templates.models import RequestTemplate
from app.portal.rate_limit import rate_limit
from app.portal.rbac import current_user, require_admin, require_login
from app.portal.schemas import CREATE_TEMPLATE, UPDATE_TEMPLATE
from app.portal.utils import json_body
from app.portal.validation import parse

bp = Blueprint("templates", __name__)


def _visible(u: User, tpl: RequestTemplate) -> bool:
    if u.is_admin:
        return True
    return tpl.is_active and (tpl.is_global or tpl.company_id is None or tpl.company_id == u.company_id)


def _get_template(template_id: int) -> RequestTemplate:
    tpl = db_session().get(RequestTemplate, template_id)
    if tpl is None or not _visible(current_user(), tpl):
        raise errors.not_found("Template")
    return tpl


@bp.get("")
@require_login
def templates_list():
    s = db_session()
    u = current_user()
    q = s.query(RequestTemplate)

    is_active = (request.args.get("is_active") or "").strip().lower()
    if not u.is_admin or is_active == "true":
        q = q.filter(RequestTemplate.is_active.is_(True))
    elif is_active == "false":
        q = q.filter(RequestTemplate.is_active.is_(False))

    category = (request.args.get("category") or "").strip()
    if category:
        q = q.filter(RequestTemplate.category == category)

    if not u.is_admin:
        q = q.filter(
            or_(
                RequestTemplate.is_global.is_(True),
                RequestTemplate.company_id.is_(None),
                RequestTemplate.company_id == u.company_id,
            )
        )
    rows = q.order_by(RequestTemplate.name.asc(), RequestTemplate.id.asc()).all()
    return jsonify([t.to_dict() for t in rows])


@bp.post("")
@require_admin
@rate_limit("mutation", per_user=True)
def templates_create():
    s = db_session()
    u = current_user()
    payload = parse(CREATE_TEMPLATE, json_body())
    if payload.get("company_id") and s.get(Company, payload["company_id"]) is None:
        raise errors.not_found("Company")

    now = datetime.utcnow()
    tpl = RequestTemplate(created_by=u.id, created_at=now, updated_at=now, **payload)
    s.add(tpl)
    s.flush()
    record_event(
        s,
        actor=u,
        action="create",
        entity_type="request_template",
        entity_id=tpl.id,
        company_id=tpl.company_id,
        new_values={"name": tpl.name, "is_global": tpl.is_global},
    )
    s.commit()
    return jsonify(tpl.to_dict()), 201


@bp.get("/<int:template_id>")
@require_login
def template_detail(template_id: int):
    return jsonify(_get_template(template_id).to_dict())


@bp.put("/<int:template_id>")
@require_admin
@rate_limit("mutation", per_user=True)
def template_update(template_id: int):
    s = db_session()
    u = current_user()
    tpl = _get_template(template_id)
    payload = parse(UPDATE_TEMPLATE, json_body())
    if not payload:
        raise errors.validation("No valid fields to update")
    if payload.get("company_id") and s.get(Company, payload["company_id"]) is None:
        raise errors.not_found("Company")

    old_values, new_values = diff_fields(tpl, payload)
    for key, value in payload.items():
        setattr(tpl, key, value)
    tpl.updated_at = datetime.utcnow()
    if new_values:
        record_event(
            s,
            actor=u,
            action="update",
            entity_type="request_template",
            entity_id=tpl.id,
            company_id=tpl.company_id,
            old_values=old_values,
            new_values=new_values,
        )
    s.commit()
    return jsonify(tpl.to_dict())


@bp.delete("/<int:template_id>")
@require_admin
@rate_limit("mutation", per_user=True)
def template_delete(template_id: int):
    s = db_session()
    tpl = _get_template(template_id)
    record_event(
        s,
        actor=current_user(),
        action="delete",
        entity_type="request_template",
        entity_id=tpl.id,
        company_id=tpl.company_id,
        old_values={"name": tpl.name},
    )
    s.delete(tpl)
    s.commit()
    return jsonify({"success": True})
