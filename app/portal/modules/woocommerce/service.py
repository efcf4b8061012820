"""
WooCommerce subscription sync and webhook provisioning.

Companies are keyed by woo_customer_id; services by
(company_id, woo_subscription_id, woo_product_id).
"""
from __future__ import annotations

import logging
import secrets
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.portal import errors
from app.portal.audit import record_event
from app.portal.cache import cache_keys, invalidate_cache
from app.portal.email import send_password_setup_email
from app.portal.models import User
from app.portal.modules.companies.models import ClientService, Company
from app.portal.modules.woocommerce.client import (
    WooCommerceClient,
    billing_cycle_for,
    company_status_for,
    get_plan_from_products,
    parse_plan_map,
    service_status_for,
)
from app.portal.security import make_password_reset_token, password_reset_link
from app.portal.validation import parse_datetime

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    success: bool = True
    companies_created: int = 0
    companies_updated: int = 0
    services_created: int = 0
    services_updated: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "companiesCreated": self.companies_created,
            "companiesUpdated": self.companies_updated,
            "servicesCreated": self.services_created,
            "servicesUpdated": self.services_updated,
            "errors": self.errors,
        }


def _billing(payload: Mapping[str, Any]) -> dict[str, Any]:
    billing = payload.get("billing")
    return billing if isinstance(billing, dict) else {}


def billing_full_name(billing: Mapping[str, Any]) -> str:
    return f"{billing.get('first_name') or ''} {billing.get('last_name') or ''}".strip()


def company_name_for(billing: Mapping[str, Any], customer_id: str) -> str:
    return (billing.get("company") or "").strip() or billing_full_name(billing) or f"Customer {customer_id}"


def _to_date(raw: Any) -> date | None:
    if not raw or not isinstance(raw, str):
        return None
    dt = parse_datetime(raw)
    return dt.date() if dt else None


def _to_price(*candidates: Any) -> float | None:
    for raw in candidates:
        try:
            value = float(raw)
        except (TypeError, ValueError):
            continue
        if value:
            return value
    return None


def find_company(s: Session, customer_id: str) -> Company | None:
    return s.query(Company).filter(Company.woo_customer_id == customer_id).one_or_none()


def provision_client_user(
    s: Session, company: Company, email: str, full_name: str | None, config: Mapping[str, Any]
) -> User:
    """
    Create a client login for a newly provisioned company and email a password-setup link.
    Flushes so a duplicate email raises IntegrityError here.
    """
    now = datetime.utcnow()
    user = User(
        email=email.strip().lower(),
        # Unusable until the customer sets a password from the setup link.
        password_hash=generate_password_hash(secrets.token_urlsafe(32)),
        full_name=full_name or None,
        role="client",
        company_id=company.id,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()

    token = make_password_reset_token(config, user.id, user.password_hash)
    result = send_password_setup_email(user.email, password_reset_link(config, token), full_name, config=config)
    if not result.success:
        logger.warning("password setup email not sent user=%s: %s", user.id, result.error)
    return user


# ---------- webhook ----------

def handle_subscription_event(s: Session, payload: Mapping[str, Any], config: Mapping[str, Any]) -> dict[str, Any]:
    """Apply a subscription webhook payload; returns the JSON response body."""
    customer_id = str(payload["customer_id"])
    status = company_status_for(payload.get("status"))
    plan = get_plan_from_products(payload.get("line_items") or [], parse_plan_map(config.get("WOO_PRODUCT_PLAN_MAP")))

    company = find_company(s, customer_id)
    if company is not None:
        old = {"status": company.status, "plan_tier": company.plan_tier}
        company.status = status
        company.plan_tier = plan.tier
        company.max_active_limit = plan.max_active
        company.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=None,
            actor_email="woocommerce",
            action="update",
            entity_type="company",
            entity_id=company.id,
            company_id=company.id,
            old_values=old,
            new_values={"status": status, "plan_tier": plan.tier},
            summary="WooCommerce subscription webhook",
        )
        s.commit()
        invalidate_cache([cache_keys.company(company.id), cache_keys.mrr(), "analytics:*"])
        return {"success": True, "action": "updated", "companyId": company.id}

    billing = _billing(payload)
    address = (billing.get("email") or "").strip()
    if not address:
        raise errors.validation("No email provided in billing info")

    now = datetime.utcnow()
    company = Company(
        name=company_name_for(billing, customer_id),
        status=status,
        plan_tier=plan.tier,
        max_active_limit=plan.max_active,
        woo_customer_id=customer_id,
        created_at=now,
        updated_at=now,
    )
    s.add(company)
    s.flush()

    try:
        provision_client_user(s, company, address, billing_full_name(billing), config)
    except IntegrityError:
        s.rollback()
        logger.error("webhook user creation failed customer=%s email=%s", customer_id, address)
        raise errors.internal("Failed to create user account") from None

    record_event(
        s,
        actor=None,
        actor_email="woocommerce",
        action="create",
        entity_type="company",
        entity_id=company.id,
        company_id=company.id,
        new_values={"name": company.name, "status": status, "plan_tier": plan.tier},
        summary="Provisioned from WooCommerce subscription",
    )
    s.commit()
    invalidate_cache([cache_keys.mrr(), "analytics:*"])
    logger.info("webhook provisioned company=%s customer=%s", company.id, customer_id)
    return {"success": True, "action": "created", "companyId": company.id}


# ---------- full sync ----------

def _sync_company(s: Session, sub: Mapping[str, Any], plan_map, config: Mapping[str, Any], result: SyncResult) -> Company:
    customer_id = str(sub.get("customer_id"))
    status = company_status_for(sub.get("status"))
    plan = get_plan_from_products(sub.get("line_items") or [], plan_map)
    billing = _billing(sub)
    location = {k: billing.get(k) for k in ("city", "state", "country", "phone") if billing.get(k)}

    company = find_company(s, customer_id)
    now = datetime.utcnow()
    if company is not None:
        company.status = status
        company.plan_tier = plan.tier
        company.max_active_limit = plan.max_active
        for key, value in location.items():
            setattr(company, key, value)
        company.updated_at = now
        result.companies_updated += 1
        return company

    company = Company(
        name=company_name_for(billing, customer_id),
        status=status,
        plan_tier=plan.tier,
        max_active_limit=plan.max_active,
        woo_customer_id=customer_id,
        city=billing.get("city") or None,
        state=billing.get("state") or None,
        country=billing.get("country") or None,
        phone=billing.get("phone") or None,
        created_at=now,
        updated_at=now,
    )
    s.add(company)
    s.flush()
    result.companies_created += 1

    address = (billing.get("email") or "").strip()
    if address:
        if s.query(User).filter(User.email == address.lower()).one_or_none() is None:
            provision_client_user(s, company, address, billing_full_name(billing), config)
        else:
            logger.info("sync: user %s already exists; not provisioning", address)
    return company


def _sync_services(s: Session, company: Company, sub: Mapping[str, Any], result: SyncResult) -> None:
    subscription_id = str(sub.get("id"))
    status = service_status_for(sub.get("status"))
    cycle = billing_cycle_for(sub.get("billing_period"), sub.get("billing_interval"))
    start = _to_date(sub.get("start_date"))
    renewal = _to_date(sub.get("next_payment_date"))
    end = _to_date(sub.get("end_date"))
    now = datetime.utcnow()

    for item in sub.get("line_items") or []:
        product_id = str(item.get("product_id"))
        price = _to_price(item.get("total"), sub.get("total"))
        svc = (
            s.query(ClientService)
            .filter(
                ClientService.company_id == company.id,
                ClientService.woo_subscription_id == subscription_id,
                ClientService.woo_product_id == product_id,
            )
            .first()
        )
        if svc is not None:
            svc.status = status
            svc.price = price
            svc.renewal_date = renewal
            svc.end_date = end
            svc.updated_at = now
            result.services_updated += 1
            continue

        s.add(
            ClientService(
                company_id=company.id,
                service_name=item.get("name") or f"Subscription {subscription_id}",
                service_type="subscription",
                status=status,
                price=price,
                billing_cycle=cycle,
                start_date=start,
                renewal_date=renewal,
                end_date=end,
                woo_product_id=product_id,
                woo_subscription_id=subscription_id,
                created_at=now,
                updated_at=now,
            )
        )
        result.services_created += 1


def sync_subscriptions(s: Session, woo: WooCommerceClient, config: Mapping[str, Any], actor: User | None = None) -> SyncResult:
    """
    Pull every subscription and upsert companies and services.
    Each subscription commits on its own; a failing one is rolled back and reported in errors.
    """
    result = SyncResult()
    plan_map = parse_plan_map(config.get("WOO_PRODUCT_PLAN_MAP"))
    for sub in woo.get_all_subscriptions():
        try:
            company = _sync_company(s, sub, plan_map, config, result)
            _sync_services(s, company, sub, result)
            s.commit()
        except Exception as e:
            s.rollback()
            logger.exception("sync: subscription %s failed", sub.get("id"))
            result.errors.append(f"Error processing subscription {sub.get('id')}: {e}")

    record_event(
        s,
        actor=actor,
        action="update",
        entity_type="woocommerce_sync",
        new_values={
            "companiesCreated": result.companies_created,
            "companiesUpdated": result.companies_updated,
            "servicesCreated": result.services_created,
            "servicesUpdated": result.services_updated,
            "errors": len(result.errors),
        },
        summary="WooCommerce full sync",
    )
    s.commit()
    invalidate_cache([cache_keys.mrr(), "analytics:*", "company:*"])
    return result


def sync_status(s: Session, woo: WooCommerceClient) -> dict[str, Any]:
    subs = woo.get_all_subscriptions()
    statuses = [sub.get("status") for sub in subs]
    return {
        "woocommerce": {
            "subscriptions": len(subs),
            "active": sum(1 for st in statuses if st == "active"),
            "paused": sum(1 for st in statuses if st in ("on-hold", "pending")),
            "cancelled": sum(1 for st in statuses if st in ("cancelled", "expired")),
        },
        "database": {
            "companies": s.query(Company).count(),
            "services": s.query(ClientService).count(),
        },
    }
