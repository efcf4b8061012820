from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.portal import errors
from app.portal.audit import diff_fields, record_event
from app.portal.cache import cache, cache_keys, cache_ttl, invalidate_cache
from app.portal.models import User
from app.portal.modules.companies.models import ClientService, Company, Contact
from app.portal.modules.requests.models import Request
from app.portal.modules.woocommerce.client import WooCommerceClient, WooCommerceError, WooCommerceNotConfigured
from app.portal.sanitize import sanitize_email

logger = logging.getLogger(__name__)


# ---------- companies ----------

def get_company(s: Session, company_id: int) -> Company:
    company = s.get(Company, company_id)
    if company is None:
        raise errors.not_found("Company")
    return company


def active_request_counts(s: Session) -> dict[int, int]:
    rows = (
        s.query(Request.company_id, func.count(Request.id))
        .filter(Request.status == "active")
        .group_by(Request.company_id)
        .all()
    )
    return {cid: n for cid, n in rows}


def list_companies(s: Session, *, status: str | None = None) -> list[dict[str, Any]]:
    q = s.query(Company)
    if status:
        q = q.filter(Company.status == status)
    companies = q.order_by(Company.created_at.desc(), Company.id.desc()).all()
    counts = active_request_counts(s)
    out = []
    for c in companies:
        d = c.to_dict()
        d["active_request_count"] = counts.get(c.id, 0)
        d["mrr"] = round(company_mrr(c), 2)
        out.append(d)
    return out


def update_company(s: Session, user: User, company: Company, payload: dict[str, Any]) -> Company:
    if not payload:
        raise errors.validation("No valid fields to update")
    old_values, new_values = diff_fields(company, payload)
    for key, value in payload.items():
        setattr(company, key, value)
    company.updated_at = datetime.utcnow()
    if new_values:
        record_event(
            s,
            actor=user,
            action="update",
            entity_type="company",
            entity_id=company.id,
            company_id=company.id,
            old_values=old_values,
            new_values=new_values,
        )
    invalidate_cache([cache_keys.company(company.id), cache_keys.mrr(), "analytics:*"])
    return company


# ---------- contacts ----------

def list_contacts(s: Session, company: Company, *, active_only: bool = False, primary_only: bool = False) -> list[Contact]:
    q = s.query(Contact).filter(Contact.company_id == company.id)
    if active_only:
        q = q.filter(Contact.is_active.is_(True))
    if primary_only:
        q = q.filter(Contact.is_primary.is_(True))
    return q.order_by(Contact.is_primary.desc(), Contact.name.asc(), Contact.id.asc()).all()


def get_contact(s: Session, company: Company, contact_id: int) -> Contact:
    contact = s.get(Contact, contact_id)
    if contact is None or contact.company_id != company.id:
        raise errors.not_found("Contact")
    return contact


def _make_primary(s: Session, company: Company, contact: Contact) -> None:
    """Demote every other primary contact so at most one remains."""
    others = (
        s.query(Contact)
        .filter(Contact.company_id == company.id, Contact.is_primary.is_(True), Contact.id != contact.id)
        .all()
    )
    for other in others:
        other.is_primary = False
        other.updated_at = datetime.utcnow()
    contact.is_primary = True
    company.primary_contact_id = contact.id


def create_contact(s: Session, user: User, company: Company, payload: dict[str, Any]) -> Contact:
    now = datetime.utcnow()
    contact = Contact(
        company_id=company.id,
        name=payload["name"],
        email=sanitize_email(payload.get("email")),
        phone=payload.get("phone") or None,
        role=payload.get("role") or None,
        is_primary=False,
        is_billing_contact=bool(payload.get("is_billing_contact")),
        is_active=True,
        notes=payload.get("notes") or None,
        created_at=now,
        updated_at=now,
    )
    s.add(contact)
    s.flush()
    if payload.get("is_primary"):
        _make_primary(s, company, contact)
    record_event(
        s,
        actor=user,
        action="create",
        entity_type="contact",
        entity_id=contact.id,
        company_id=company.id,
        new_values={"name": contact.name, "email": contact.email, "is_primary": contact.is_primary},
    )
    return contact


def update_contact(s: Session, user: User, company: Company, contact: Contact, payload: dict[str, Any]) -> Contact:
    if not payload:
        raise errors.validation("No valid fields to update")
    if "email" in payload:
        payload["email"] = sanitize_email(payload["email"])
    make_primary = payload.pop("is_primary", None)
    old_values, new_values = diff_fields(contact, payload)
    for key, value in payload.items():
        setattr(contact, key, value)

    if make_primary is True and not contact.is_primary:
        _make_primary(s, company, contact)
        new_values["is_primary"] = True
    elif make_primary is False and contact.is_primary:
        contact.is_primary = False
        if company.primary_contact_id == contact.id:
            company.primary_contact_id = None
        new_values["is_primary"] = False

    contact.updated_at = datetime.utcnow()
    if new_values:
        record_event(
            s,
            actor=user,
            action="update",
            entity_type="contact",
            entity_id=contact.id,
            company_id=company.id,
            old_values=old_values,
            new_values=new_values,
        )
    return contact


def delete_contact(s: Session, user: User, company: Company, contact: Contact) -> None:
    if company.primary_contact_id == contact.id:
        company.primary_contact_id = None
    record_event(
        s,
        actor=user,
        action="delete",
        entity_type="contact",
        entity_id=contact.id,
        company_id=company.id,
        old_values={"name": contact.name, "email": contact.email},
    )
    s.delete(contact)


# ---------- services ----------

def list_services(s: Session, company: Company, *, status: str | None = None, service_type: str | None = None) -> list[ClientService]:
    q = s.query(ClientService).filter(ClientService.company_id == company.id)
    if status:
        q = q.filter(ClientService.status == status)
    if service_type:
        q = q.filter(ClientService.service_type == service_type)
    return q.order_by(ClientService.created_at.desc(), ClientService.id.desc()).all()


def get_service(s: Session, company: Company, service_id: int) -> ClientService:
    svc = s.get(ClientService, service_id)
    if svc is None or svc.company_id != company.id:
        raise errors.not_found("Service")
    return svc


def _service_columns(payload: dict[str, Any]) -> dict[str, Any]:
    out = dict(payload)
    if "metadata" in out:
        out["metadata_json"] = out.pop("metadata") or {}
    return out


def create_service(s: Session, user: User, company: Company, payload: dict[str, Any]) -> ClientService:
    now = datetime.utcnow()
    svc = ClientService(company_id=company.id, created_at=now, updated_at=now, **_service_columns(payload))
    s.add(svc)
    s.flush()
    record_event(
        s,
        actor=user,
        action="create",
        entity_type="client_service",
        entity_id=svc.id,
        company_id=company.id,
        new_values={"service_name": svc.service_name, "price": svc.price, "billing_cycle": svc.billing_cycle},
    )
    invalidate_cache([cache_keys.mrr()])
    return svc


def update_service(s: Session, user: User, company: Company, svc: ClientService, payload: dict[str, Any]) -> ClientService:
    if not payload:
        raise errors.validation("No valid fields to update")
    columns = _service_columns(payload)
    old_values, new_values = diff_fields(svc, columns)
    for key, value in columns.items():
        setattr(svc, key, value)
    svc.updated_at = datetime.utcnow()
    if new_values:
        record_event(
            s,
            actor=user,
            action="update",
            entity_type="client_service",
            entity_id=svc.id,
            company_id=company.id,
            old_values=old_values,
            new_values=new_values,
        )
    invalidate_cache([cache_keys.mrr()])
    return svc


def delete_service(s: Session, user: User, company: Company, svc: ClientService) -> None:
    record_event(
        s,
        actor=user,
        action="delete",
        entity_type="client_service",
        entity_id=svc.id,
        company_id=company.id,
        old_values={"service_name": svc.service_name},
    )
    s.delete(svc)
    invalidate_cache([cache_keys.mrr()])


# ---------- MRR ----------

def _counts_toward_mrr(svc: ClientService) -> bool:
    return svc.status == "active" and svc.service_type == "subscription"


def company_mrr(company: Company) -> float:
    return sum(svc.monthly_value() for svc in company.services if _counts_toward_mrr(svc))


def total_mrr(s: Session) -> float:
    """MRR across active subscription services of active companies (cached)."""

    def compute() -> float:
        services = (
            s.query(ClientService)
            .join(Company, Company.id == ClientService.company_id)
            .filter(
                Company.status == "active",
                ClientService.status == "active",
                ClientService.service_type == "subscription",
            )
            .all()
        )
        return round(sum(svc.monthly_value() for svc in services), 2)

    return cache.get_or_set(cache_keys.mrr(), compute, cache_ttl.MEDIUM)


# ---------- pause / resume (WooCommerce) ----------

def _subscription_id_for(company: Company) -> str:
    """Prefer a linked subscription on the company's services; fall back to the customer id."""
    for svc in company.services:
        if svc.woo_subscription_id and svc.status in ("active", "paused"):
            return svc.woo_subscription_id
    return str(company.woo_customer_id)


def pause_company(s: Session, user: User, company: Company, config: Mapping[str, Any]) -> dict[str, Any]:
    if company.status != "active":
        raise errors.validation("Subscription is not currently active")
    if not company.woo_customer_id:
        raise errors.validation("No WooCommerce subscription linked")

    try:
        woo = WooCommerceClient.from_config(config)
        subscription = woo.suspend_subscription(_subscription_id_for(company))
    except WooCommerceNotConfigured:
        raise errors.service_unavailable("WooCommerce is not configured") from None
    except WooCommerceError as e:
        logger.error("Error pausing subscription company=%s: %s", company.id, e)
        raise errors.external_service("WooCommerce", "Failed to pause subscription") from e

    company.status = "paused"
    company.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="update",
        entity_type="company",
        entity_id=company.id,
        company_id=company.id,
        old_values={"status": "active"},
        new_values={"status": "paused"},
        summary="Subscription paused",
    )
    invalidate_cache([cache_keys.company(company.id), cache_keys.mrr()])
    return {"message": "Subscription paused successfully", "pauseDate": subscription.get("next_payment_date")}


def resume_company(s: Session, user: User, company: Company, config: Mapping[str, Any]) -> dict[str, Any]:
    if company.status != "paused":
        raise errors.validation("Subscription is not currently paused")
    if not company.woo_customer_id:
        raise errors.validation("No WooCommerce subscription linked")

    try:
        woo = WooCommerceClient.from_config(config)
        subscription = woo.reactivate_subscription(_subscription_id_for(company))
    except WooCommerceNotConfigured:
        raise errors.service_unavailable("WooCommerce is not configured") from None
    except WooCommerceError as e:
        logger.error("Error resuming subscription company=%s: %s", company.id, e)
        raise errors.external_service("WooCommerce", "Failed to resume subscription") from e

    company.status = "active"
    company.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="update",
        entity_type="company",
        entity_id=company.id,
        company_id=company.id,
        old_values={"status": "paused"},
        new_values={"status": "active"},
        summary="Subscription resumed",
    )
    invalidate_cache([cache_keys.company(company.id), cache_keys.mrr()])
    return {"message": "Subscription resumed successfully", "nextPaymentDate": subscription.get("next_payment_date")}
