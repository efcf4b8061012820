from __future__ import annotations

import json
import logging

from flask import Blueprint, current_app, jsonify, request

from app.portal import errors
from app.portal.db import db_session
from app.portal.modules.woocommerce.client import (
    WooCommerceClient,
    WooCommerceError,
    WooCommerceNotConfigured,
    verify_webhook_signature,
)
from app.portal.modules.woocommerce.service import handle_subscription_event, sync_status, sync_subscriptions
from app.portal.rate_limit import rate_limit
from app.portal.rbac import current_user, require_admin

logger = logging.getLogger(__name__)

bp = Blueprint("woocommerce", __name__)

SIGNATURE_HEADER = "X-WC-Webhook-Signature"


def _client() -> WooCommerceClient:
    try:
        return WooCommerceClient.from_config(current_app.config)
    except WooCommerceNotConfigured:
        raise errors.service_unavailable("WooCommerce is not configured") from None


@bp.get("/webhooks/woo")
def woo_webhook_ping():
    return jsonify({"status": "ok"})


@bp.post("/webhooks/woo")
@rate_limit("webhook")
def woo_webhook():
    raw = request.get_data(cache=True)
    if not raw or not raw.strip():
        return jsonify({"status": "ok", "message": "Webhook endpoint active"})
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return jsonify({"status": "ok", "message": "Ping received"})
    if not isinstance(payload, dict) or (not payload.get("customer_id") and not payload.get("status")):
        return jsonify({"status": "ok", "message": "Webhook verified"})

    secret = current_app.config.get("WOO_WEBHOOK_SECRET") or ""
    if secret:
        signature = request.headers.get(SIGNATURE_HEADER) or ""
        if not verify_webhook_signature(raw, signature, secret):
            logger.warning("woo webhook: invalid signature from %s", request.remote_addr)
            raise errors.unauthorized("Invalid webhook signature")

    if not payload.get("customer_id") or not payload.get("status"):
        raise errors.validation("Invalid payload: missing required fields")

    return jsonify(handle_subscription_event(db_session(), payload, current_app.config))


@bp.get("/sync/woocommerce")
@require_admin
@rate_limit("strict", per_user=True)
def woo_sync_status():
    woo = _client()
    try:
        return jsonify(sync_status(db_session(), woo))
    except WooCommerceError as e:
        logger.error("woo sync status failed: %s", e)
        raise errors.external_service("WooCommerce", f"Failed to get sync info: {e}") from e


@bp.post("/sync/woocommerce")
@require_admin
@rate_limit("strict", per_user=True)
def woo_sync():
    woo = _client()
    s = db_session()
    try:
        result = sync_subscriptions(s, woo, current_app.config, actor=current_user())
    except WooCommerceError as e:
        s.rollback()
        logger.error("woo sync failed: %s", e)
        raise errors.external_service("WooCommerce", f"Sync failed: {e}") from e
    logger.info(
        "woo sync done created=%s updated=%s services_created=%s services_updated=%s errors=%s",
        result.companies_created,
        result.companies_updated,
        result.services_created,
        result.services_updated,
        len(result.errors),
    )
    return jsonify(result.to_dict())
