from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.portal.cache import with_cache_headers
from app.portal.db import db_session
from app.portal.modules.companies.service import (
    company_mrr,
    create_contact,
    create_service,
    delete_contact,
    delete_service,
    get_company,
    get_contact,
    get_service,
    list_companies,
    list_contacts,
    list_services,
    pause_company,
    resume_company,
    update_company,
    update_contact,
    update_service,
)
from app.portal.rate_limit import rate_limit
from app.portal.rbac import current_user, ensure_company_access, require_admin, require_login
from app.portal.schemas import CREATE_CONTACT, CREATE_SERVICE, UPDATE_COMPANY, UPDATE_CONTACT, UPDATE_SERVICE
from app.portal.utils import bool_arg, json_body
from app.portal.validation import parse

bp = Blueprint("companies", __name__)


def _company_for_current_user(company_id: int):
    s = db_session()
    u = current_user()
    ensure_company_access(u, company_id)
    return s, u, get_company(s, company_id)


# ---------- companies ----------
@bp.get("")
@require_admin
def companies_list():
    s = db_session()
    status = (request.args.get("status") or "").strip() or None
    return with_cache_headers(jsonify(list_companies(s, status=status)), "list_data")


@bp.get("/<int:company_id>")
@require_login
def company_detail(company_id: int):
    _, _, company = _company_for_current_user(company_id)
    out = company.to_dict()
    out["mrr"] = round(company_mrr(company), 2)
    return jsonify(out)


@bp.put("/<int:company_id>")
@require_admin
@rate_limit("mutation", per_user=True)
def company_update(company_id: int):
    s = db_session()
    company = get_company(s, company_id)
    payload = parse(UPDATE_COMPANY, json_body())
    update_company(s, current_user(), company, payload)
    s.commit()
    return jsonify(company.to_dict())


@bp.post("/<int:company_id>/pause")
@require_login
@rate_limit("strict", per_user=True)
def company_pause(company_id: int):
    s, u, company = _company_for_current_user(company_id)
    result = pause_company(s, u, company, current_app.config)
    s.commit()
    return jsonify(result)


@bp.post("/<int:company_id>/resume")
@require_admin
@rate_limit("strict", per_user=True)
def company_resume(company_id: int):
    s = db_session()
    company = get_company(s, company_id)
    result = resume_company(s, current_user(), company, current_app.config)
    s.commit()
    return jsonify(result)


# ---------- contacts ----------
@bp.get("/<int:company_id>/contacts")
@require_login
def contacts_list(company_id: int):
    s, _, company = _company_for_current_user(company_id)
    rows = list_contacts(s, company, active_only=bool_arg("active_only"), primary_only=bool_arg("primary_only"))
    return jsonify([c.to_dict() for c in rows])


@bp.post("/<int:company_id>/contacts")
@require_admin
@rate_limit("mutation", per_user=True)
def contacts_create(company_id: int):
    s = db_session()
    company = get_company(s, company_id)
    payload = parse(CREATE_CONTACT, json_body())
    contact = create_contact(s, current_user(), company, payload)
    s.commit()
    return jsonify(contact.to_dict()), 201


@bp.get("/<int:company_id>/contacts/<int:contact_id>")
@require_login
def contact_detail(company_id: int, contact_id: int):
    s, _, company = _company_for_current_user(company_id)
    return jsonify(get_contact(s, company, contact_id).to_dict())


@bp.put("/<int:company_id>/contacts/<int:contact_id>")
@require_admin
@rate_limit("mutation", per_user=True)
def contact_update(company_id: int, contact_id: int):
    s = db_session()
    company = get_company(s, company_id)
    contact = get_contact(s, company, contact_id)
    payload = parse(UPDATE_CONTACT, json_body())
    update_contact(s, current_user(), company, contact, payload)
    s.commit()
    return jsonify(contact.to_dict())


@bp.delete("/<int:company_id>/contacts/<int:contact_id>")
@require_admin
@rate_limit("mutation", per_user=True)
def contact_delete(company_id: int, contact_id: int):
    s = db_session()
    company = get_company(s, company_id)
    delete_contact(s, current_user(), company, get_contact(s, company, contact_id))
    s.commit()
    return jsonify({"success": True})


# ---------- services ----------
@bp.get("/<int:company_id>/services")
@require_login
def services_list(company_id: int):
    s, _, company = _company_for_current_user(company_id)
    rows = list_services(
        s,
        company,
        status=(request.args.get("status") or "").strip() or None,
        service_type=(request.args.get("type") or "").strip() or None,
    )
    return jsonify([svc.to_dict() for svc in rows])


@bp.post("/<int:company_id>/services")
@require_admin
@rate_limit("mutation", per_user=True)
def services_create(company_id: int):
    s = db_session()
    company = get_company(s, company_id)
    payload = parse(CREATE_SERVICE, json_body())
    svc = create_service(s, current_user(), company, payload)
    s.commit()
    return jsonify(svc.to_dict()), 201


@bp.get("/<int:company_id>/services/<int:service_id>")
@require_login
def service_detail(company_id: int, service_id: int):
    s, _, company = _company_for_current_user(company_id)
    return jsonify(get_service(s, company, service_id).to_dict())


@bp.put("/<int:company_id>/services/<int:service_id>")
@require_admin
@rate_limit("mutation", per_user=True)
def service_update(company_id: int, service_id: int):
    s = db_session()
    company = get_company(s, company_id)
    svc = get_service(s, company, service_id)
    payload = parse(UPDATE_SERVICE, json_body())
    update_service(s, current_user(), company, svc, payload)
    s.commit()
    return jsonify(svc.to_dict())


@bp.delete("/<int:company_id>/services/<int:service_id>")
@require_admin
@rate_limit("mutation", per_user=True)
def service_delete(company_id: int, service_id: int):
    s = db_session()
    company = get_company(s, company_id)
    delete_service(s, current_user(), company, get_service(s, company, service_id))
    s.commit()
    return jsonify({"success": True})
