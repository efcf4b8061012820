from __future__ import annotations

import hmac
import logging

from flask import Blueprint, current_app, jsonify, request

from app.portal import errors
from app.portal.db import db_session
from app.portal.modules.leads.service import ingest_lead
from app.portal.rate_limit import rate_limit
from app.portal.schemas import LEAD
from app.portal.utils import json_body
from app.portal.validation import validate

logger = logging.getLogger(__name__)

bp = Blueprint("leads", __name__)


def _check_api_key() -> None:
    expected = current_app.config.get("LEADS_INGEST_API_KEY") or ""
    if not expected:
        logger.error("LEADS_INGEST_API_KEY not configured")
        raise errors.service_unavailable("Lead ingestion not configured")
    header = request.headers.get("Authorization") or ""
    if not header.startswith("Bearer "):
        raise errors.unauthorized("Missing authorization header")
    if not hmac.compare_digest(header[7:].encode("utf-8"), expected.encode("utf-8")):
        raise errors.unauthorized("Invalid API key")


@bp.get("/ingest")
def leads_health():
    return jsonify({"status": "ok", "endpoint": "leads/ingest"})


@bp.post("/ingest")
@rate_limit("webhook")
def leads_ingest():
    _check_api_key()
    res = validate(LEAD, json_body())
    if not res.success:
        raise errors.validation("Invalid lead data", [e.to_dict() for e in res.errors])
    return jsonify(ingest_lead(db_session(), res.data))
