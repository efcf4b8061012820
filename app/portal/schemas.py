"""
Payload schemas for the JSON API, built from the validators in app.portal.validation.

Update schemas use optional() without a default so absent keys are left out of the
parsed dict; handlers then apply only the keys that are present.
"""
from __future__ import annotations

import re

from app.portal.constants import (
    ACTION_TYPES,
    ASSIGNMENT_STATUSES,
    BILLING_CYCLES,
    BUSINESS_TYPES,
    COMPANY_STATUSES,
    INDUSTRIES,
    NOTIFICATION_TYPES,
    PLAN_TIERS,
    PRIORITIES,
    REQUEST_STATUSES,
    REVENUE_RANGES,
    SERVICE_STATUSES,
    SERVICE_TYPES,
    TRIGGER_TYPES,
)
from app.portal.models import USER_ROLES
from app.portal.validation import (
    array,
    boolean,
    date_,
    date_time,
    email,
    mapping,
    number,
    one_of,
    optional,
    string,
    url,
)

MAX_ID = 2**31 - 1  # INTEGER primary keys on Postgres
ID = number(integer=True, min_value=1, max_value=MAX_ID)


def _opt_id():
    return optional(number(integer=True, min_value=1, max_value=MAX_ID))


# ---------- requests ----------

CREATE_REQUEST = {
    "title": string(min_length=1, max_length=500),
    "description": optional(string(max_length=10000)),
    "company_id": _opt_id(),
    "priority": optional(one_of(PRIORITIES)),
    "assets_link": optional(url(max_length=2000)),
    "video_brief": optional(url(max_length=2000)),
    "due_date": optional(date_time()),
    "sla_hours": optional(number(integer=True, min_value=1, max_value=720)),
    "template_id": _opt_id(),
}

# Template-backed creates may omit the title (filled from the template).
CREATE_REQUEST_FROM_TEMPLATE = dict(CREATE_REQUEST, title=optional(string(min_length=1, max_length=500)))

UPDATE_REQUEST = {
    "title": optional(string(min_length=1, max_length=500), nullable=False),
    "description": optional(string(max_length=10000)),
    "priority": optional(one_of(PRIORITIES), nullable=False),
    "assets_link": optional(url(max_length=2000)),
    "video_brief": optional(url(max_length=2000)),
    "due_date": optional(date_time()),
    "sla_hours": optional(number(integer=True, min_value=1, max_value=720)),
}

MOVE_REQUEST = {
    "status": one_of(REQUEST_STATUSES),
}

BULK_ACTIONS = ("update_status", "update_priority", "assign", "delete")

BULK_REQUEST = {
    "request_ids": array(ID, min_items=1, max_items=100),
    "action": one_of(BULK_ACTIONS),
    "value": optional(string(max_length=255)),
}

CREATE_COMMENT = {
    "content": string(min_length=1, max_length=10000),
    "is_internal": optional(boolean(), default=False),
    "mentions": optional(array(ID, required=False, max_items=50), default=[]),
}

ASSIGN_REQUEST = {
    "user_id": _opt_id(),
}

CREATE_ASSIGNMENT = {
    "assigned_to": ID,
    "notes": optional(string(max_length=1000)),
}

UPDATE_ASSIGNMENT = {
    "status": one_of(ASSIGNMENT_STATUSES),
    "notes": optional(string(max_length=1000)),
}

# ---------- companies ----------

UPDATE_COMPANY = {
    "name": optional(string(min_length=1, max_length=255), nullable=False),
    "status": optional(one_of(COMPANY_STATUSES), nullable=False),
    "plan_tier": optional(one_of(PLAN_TIERS), nullable=False),
    "max_active_limit": optional(number(integer=True, min_value=1, max_value=100), nullable=False),
    "industry": optional(one_of(INDUSTRIES)),
    "business_type": optional(one_of(BUSINESS_TYPES)),
    "city": optional(string(max_length=100)),
    "state": optional(string(max_length=100)),
    "country": optional(string(max_length=100)),
    "website_url": optional(url(max_length=500)),
    "google_business_url": optional(url(max_length=500)),
    "facebook_url": optional(url(max_length=500)),
    "instagram_handle": optional(string(max_length=100)),
    "linkedin_url": optional(url(max_length=500)),
    "phone": optional(string(max_length=50)),
    "employee_count": optional(number(integer=True, min_value=0, max_value=1_000_000)),
    "annual_revenue_range": optional(one_of(REVENUE_RANGES)),
    "logo_url": optional(url(max_length=1000)),
    "notes": optional(string(max_length=5000)),
}

CREATE_CONTACT = {
    "name": string(min_length=1, max_length=255),
    "email": optional(email()),
    "phone": optional(string(max_length=50)),
    "role": optional(string(max_length=100)),
    "is_primary": optional(boolean(), default=False),
    "is_billing_contact": optional(boolean(), default=False),
    "notes": optional(string(max_length=2000)),
}

UPDATE_CONTACT = {
    "name": optional(string(min_length=1, max_length=255), nullable=False),
    "email": optional(email()),
    "phone": optional(string(max_length=50)),
    "role": optional(string(max_length=100)),
    "is_primary": optional(boolean(), nullable=False),
    "is_billing_contact": optional(boolean(), nullable=False),
    "is_active": optional(boolean(), nullable=False),
    "notes": optional(string(max_length=2000)),
}

CREATE_SERVICE = {
    "service_name": string(min_length=1, max_length=255),
    "service_type": one_of(SERVICE_TYPES),
    "status": optional(one_of(SERVICE_STATUSES), default="active"),
    "price": optional(number(min_value=0, max_value=1_000_000)),
    "billing_cycle": optional(one_of(BILLING_CYCLES)),
    "start_date": optional(date_()),
    "end_date": optional(date_()),
    "renewal_date": optional(date_()),
    "woo_product_id": optional(string(max_length=100)),
    "woo_subscription_id": optional(string(max_length=100)),
    "woo_order_id": optional(string(max_length=100)),
    "notes": optional(string(max_length=2000)),
    "metadata": optional(mapping(required=False), default={}),
}

UPDATE_SERVICE = {
    "service_name": optional(string(min_length=1, max_length=255), nullable=False),
    "service_type": optional(one_of(SERVICE_TYPES), nullable=False),
    "status": optional(one_of(SERVICE_STATUSES), nullable=False),
    "price": optional(number(min_value=0, max_value=1_000_000)),
    "billing_cycle": optional(one_of(BILLING_CYCLES)),
    "start_date": optional(date_()),
    "end_date": optional(date_()),
    "renewal_date": optional(date_()),
    "woo_product_id": optional(string(max_length=100)),
    "woo_subscription_id": optional(string(max_length=100)),
    "woo_order_id": optional(string(max_length=100)),
    "notes": optional(string(max_length=2000)),
    "metadata": optional(mapping(required=False)),
}

# ---------- notifications ----------

CREATE_NOTIFICATION = {
    "user_id": ID,
    "type": one_of(NOTIFICATION_TYPES),
    "title": string(min_length=1, max_length=255),
    "message": optional(string(max_length=2000)),
    "link": optional(string(max_length=1000)),
    "request_id": _opt_id(),
    "company_id": _opt_id(),
}

MARK_NOTIFICATIONS = {
    "notification_ids": optional(array(ID, required=False)),
    "mark_all": optional(boolean()),
}

NOTIFICATION_PREFERENCES = {
    "email_on_comment": optional(boolean()),
    "email_on_status_change": optional(boolean()),
    "email_on_assignment": optional(boolean()),
    "email_on_mention": optional(boolean()),
    "email_on_due_date": optional(boolean()),
    "email_digest_enabled": optional(boolean()),
    "email_digest_frequency": optional(one_of(("daily", "weekly"))),
    "push_enabled": optional(boolean()),
}

# ---------- templates ----------

CREATE_TEMPLATE = {
    "name": string(min_length=1, max_length=255),
    "description": optional(string(max_length=1000)),
    "title_template": string(min_length=1, max_length=500),
    "description_template": optional(string(max_length=5000)),
    "default_priority": optional(one_of(PRIORITIES), default="normal"),
    "default_sla_hours": optional(number(integer=True, min_value=1, max_value=720)),
    "category": optional(string(max_length=100)),
    "is_active": optional(boolean(), default=True),
    "is_global": optional(boolean(), default=False),
    "company_id": _opt_id(),
}

UPDATE_TEMPLATE = {
    "name": optional(string(min_length=1, max_length=255), nullable=False),
    "description": optional(string(max_length=1000)),
    "title_template": optional(string(min_length=1, max_length=500), nullable=False),
    "description_template": optional(string(max_length=5000)),
    "default_priority": optional(one_of(PRIORITIES), nullable=False),
    "default_sla_hours": optional(number(integer=True, min_value=1, max_value=720)),
    "category": optional(string(max_length=100)),
    "is_active": optional(boolean(), nullable=False),
    "is_global": optional(boolean(), nullable=False),
    "company_id": _opt_id(),
}

# ---------- workflows ----------

CREATE_WORKFLOW = {
    "name": string(min_length=1, max_length=255),
    "description": optional(string(max_length=1000)),
    "company_id": _opt_id(),
    "trigger_type": one_of(TRIGGER_TYPES),
    "trigger_conditions": optional(mapping(required=False), default={}),
    "action_type": one_of(ACTION_TYPES),
    "action_config": optional(mapping(required=False), default={}),
    "is_active": optional(boolean(), default=True),
}

UPDATE_WORKFLOW = {
    "name": optional(string(min_length=1, max_length=255), nullable=False),
    "description": optional(string(max_length=1000)),
    "company_id": _opt_id(),
    "trigger_type": optional(one_of(TRIGGER_TYPES), nullable=False),
    "trigger_conditions": optional(mapping(required=False), nullable=False),
    "action_type": optional(one_of(ACTION_TYPES), nullable=False),
    "action_config": optional(mapping(required=False), nullable=False),
    "is_active": optional(boolean(), nullable=False),
}

# ---------- invitations / auth / profile ----------

CREATE_INVITATION = {
    "email": email(),
    "full_name": string(min_length=1, max_length=255),
    "role": one_of(USER_ROLES),
    "company_id": _opt_id(),
}

ACCEPT_INVITATION = {
    "token": string(min_length=1, max_length=64),
    "password": string(min_length=8, max_length=128, trim=False),
}

LOGIN = {
    "email": email(),
    "password": string(min_length=1, max_length=128, trim=False),
}

PASSWORD_RESET_REQUEST = {
    "email": email(),
}

_PASSWORD_RULES = (
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[0-9]"), "Password must contain at least one number"),
)


def password_problems(password: str) -> list[str]:
    return [msg for rx, msg in _PASSWORD_RULES if not rx.search(password)]


NEW_PASSWORD = string(min_length=8, max_length=72, trim=False)

PASSWORD_RESET_CONFIRM = {
    "token": string(min_length=1, max_length=512),
    "password": NEW_PASSWORD,
}

UPDATE_PROFILE = {
    "full_name": optional(string(min_length=1, max_length=255), nullable=False),
    "avatar_url": optional(url(max_length=1000)),
}

CHANGE_PASSWORD = {
    "new_password": NEW_PASSWORD,
}

# ---------- leads ----------

LEAD_SERVICE_TYPES = ("seo", "website", "ads", "content", "automation", "custom")

LEAD = {
    "name": string(min_length=1, max_length=255),
    "email": email(),
    "phone": optional(string(max_length=50)),
    "company": string(min_length=1, max_length=255),
    "serviceType": one_of(LEAD_SERVICE_TYPES),
    "message": string(min_length=1, max_length=5000),
    "source": optional(string(max_length=100), default="website"),
}

# ---------- query strings ----------

AUDIT_LOG_QUERY_DATES = {
    "date_from": optional(date_time()),
    "date_to": optional(date_time()),
}
