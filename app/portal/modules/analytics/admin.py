from __future__ import annotations

from flask import Blueprint, jsonify

from app.portal import errors
from app.portal.cache import cache, cache_keys, cache_ttl, with_cache_headers
from app.portal.db import db_session
from app.portal.modules.analytics.service import build_analytics, subscription_overview
from app.portal.modules.companies.models import Company
from app.portal.modules.companies.service import total_mrr
from app.portal.rate_limit import rate_limit
from app.portal.rbac import current_user, require_admin, require_login
from app.portal.utils import int_arg

bp = Blueprint("analytics", __name__)

MAX_DAYS = 365


@bp.get("/analytics")
@require_admin
@rate_limit("analytics", per_user=True)
def analytics():
    s = db_session()
    days = int_arg("days", 30, minimum=1, maximum=MAX_DAYS)
    data = cache.get_or_set(cache_keys.analytics(days), lambda: build_analytics(s, days), cache_ttl.MEDIUM)
    return with_cache_headers(jsonify(data), "analytics")


@bp.get("/analytics/mrr")
@require_admin
@rate_limit("analytics", per_user=True)
def analytics_mrr():
    return with_cache_headers(jsonify({"total_mrr": total_mrr(db_session())}), "analytics")


@bp.get("/subscription")
@require_login
@rate_limit("read", per_user=True)
def subscription():
    s = db_session()
    u = current_user()
    if not u.company_id:
        raise errors.not_found("Company")
    company = s.get(Company, u.company_id)
    if company is None:
        raise errors.not_found("Company")
    return with_cache_headers(jsonify(subscription_overview(s, company)), "user_private")
