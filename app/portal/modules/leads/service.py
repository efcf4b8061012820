from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.portal.audit import record_event
from app.portal.cache import invalidate_cache
from app.portal.modules.companies.models import Company, Contact
from app.portal.modules.requests.models import Request
from app.portal.modules.requests.timeline import log_activity, refresh_sla
from app.portal.sanitize import sanitize_text

logger = logging.getLogger(__name__)

SERVICE_TITLES = {
    "seo": "SEO & Local Search",
    "website": "Website Design",
    "ads": "Paid Advertising",
    "content": "Content Marketing",
    "automation": "Marketing Automation",
    "custom": "Custom Project",
}


def service_title(service_type: str) -> str:
    return SERVICE_TITLES.get(service_type, service_type)


def _queue_request(s: Session, company_id: int, title: str, description: str, now: datetime) -> Request:
    req = Request(
        company_id=company_id,
        title=title,
        description=description,
        status="queue",
        priority="normal",
        created_at=now,
        updated_at=now,
    )
    refresh_sla(req, now)
    s.add(req)
    s.flush()
    log_activity(s, req, None, "created", "Request created from lead form")
    return req


def ingest_lead(s: Session, lead: dict[str, Any]) -> dict[str, Any]:
    """
    Turn a website lead into CRM rows.
    A known contact email becomes a follow-up request on that company; anything else
    becomes a paused (prospect) company with a primary contact and a queued request.
    """
    name = sanitize_text(lead["name"], 255)
    address = lead["email"].strip().lower()
    phone = sanitize_text(lead.get("phone"), 50) or None
    company_name = sanitize_text(lead["company"], 255)
    message = sanitize_text(lead["message"], 5000)
    source = sanitize_text(lead.get("source") or "website", 100)
    title = service_title(lead["serviceType"])
    now = datetime.utcnow()

    existing = (
        s.query(Contact)
        .filter(func.lower(Contact.email) == address)
        .order_by(Contact.id.asc())
        .first()
    )
    if existing is not None:
        company = existing.company
        req = _queue_request(
            s,
            company.id,
            f"Follow-up Lead - {title}",
            f"**New inquiry from existing contact**\n\n**Service Interest:** {title}\n"
            f"**Message:**\n{message}\n\n---\n*Source: {source}*",
            now,
        )
        note = f"\n\n---\n[{now.date().isoformat()}] Follow-up inquiry ({title}):\n{message}"
        company.notes = (company.notes or "") + note
        company.updated_at = now
        record_event(
            s,
            actor=None,
            actor_email=address,
            action="create",
            entity_type="request",
            entity_id=req.id,
            company_id=company.id,
            new_values={"title": req.title, "source": source},
            summary="Follow-up lead",
        )
        s.commit()
        logger.info("follow-up lead email=%s company=%s request=%s source=%s", address, company.id, req.id, source)
        return {"success": True, "duplicate": True, "companyId": company.id, "requestId": req.id}

    company = Company(
        name=company_name,
        status="paused",
        plan_tier="standard",
        max_active_limit=1,
        notes=f"**Lead Source:** {source}\n**Service Interest:** {title}\n**Initial Message:**\n{message}",
        created_at=now,
        updated_at=now,
    )
    s.add(company)
    s.flush()

    contact = Contact(
        company_id=company.id,
        name=name,
        email=address,
        phone=phone,
        is_primary=True,
        is_billing_contact=True,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(contact)
    s.flush()
    company.primary_contact_id = contact.id

    req = _queue_request(
        s,
        company.id,
        f"New Lead - {title}",
        f"**Contact:** {name}\n**Email:** {address}\n**Phone:** {phone or 'Not provided'}\n"
        f"**Company:** {company_name}\n\n**Service Interest:** {title}\n**Message:**\n{message}"
        f"\n\n---\n*Source: {source}*",
        now,
    )
    record_event(
        s,
        actor=None,
        actor_email=address,
        action="create",
        entity_type="company",
        entity_id=company.id,
        company_id=company.id,
        new_values={"name": company.name, "status": "paused", "source": source},
        summary="New lead",
    )
    s.commit()
    invalidate_cache(["analytics:*"])
    logger.info("new lead email=%s company=%s contact=%s request=%s source=%s", address, company.id, contact.id, req.id, source)
    return {
        "success": True,
        "duplicate": False,
        "companyId": company.id,
        "contactId": contact.id,
        "requestId": req.id,
    }
