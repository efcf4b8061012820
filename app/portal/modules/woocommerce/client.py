from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


class WooCommerceError(RuntimeError):
    pass


class WooCommerceRateLimited(WooCommerceError):
    pass


class WooCommerceNotConfigured(WooCommerceError):
    pass


@dataclass(frozen=True)
class Plan:
    tier: str
    max_active: int


DEFAULT_PLAN = Plan("standard", 1)
PLAN_MAX_ACTIVE = {"standard": 1, "pro": 2}


@dataclass(frozen=True)
class WooCommerceClient:
    store_url: str
    consumer_key: str
    consumer_secret: str
    timeout_seconds: int = 30

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "WooCommerceClient":
        store_url = (config.get("WOO_STORE_URL") or "").strip().rstrip("/")
        key = (config.get("WOO_CONSUMER_KEY") or "").strip()
        secret = (config.get("WOO_CONSUMER_SECRET") or "").strip()
        if not (store_url and key and secret):
            raise WooCommerceNotConfigured("WooCommerce is not configured")
        return cls(store_url=store_url, consumer_key=key, consumer_secret=secret)

    @property
    def base_url(self) -> str:
        return f"{self.store_url}/wp-json/wc/v3"

    def _auth_header(self) -> str:
        token = f"{self.consumer_key}:{self.consumer_secret}".encode("utf-8")
        return "Basic " + base64.b64encode(token).decode("ascii")

    def request_json(
        self,
        path: str,
        *,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        retries: int = 3,
    ) -> Any:
        url = self.base_url + path
        if params:
            url += "?" + urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
        data = json.dumps(body).encode("utf-8") if body is not None else None

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                req = urllib.request.Request(url, data=data, method=method)
                req.add_header("Authorization", self._auth_header())
                req.add_header("Accept", "application/json")
                req.add_header("Content-Type", "application/json")
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
                    try:
                        return json.loads(raw.decode("utf-8"))
                    except ValueError as e:
                        raise WooCommerceError(f"Invalid JSON from WooCommerce ({path})") from e
            except urllib.error.HTTPError as e:
                if e.code == 429:
                    # rate limit; brief backoff
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = WooCommerceRateLimited("Rate limited (429)")
                    continue
                try:
                    text = e.read().decode("utf-8", errors="ignore")
                except Exception:
                    text = ""
                raise WooCommerceError(f"WooCommerce API error: {e.code} - {text[:300]}") from e
            except WooCommerceError:
                raise
            except Exception as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise WooCommerceError(f"WooCommerce request failed after retries: {last_err}")

    def get_subscription(self, subscription_id: int | str) -> dict[str, Any]:
        j = self.request_json(f"/subscriptions/{urllib.parse.quote(str(subscription_id))}")
        return j if isinstance(j, dict) else {}

    def list_subscriptions(self, *, page: int = 1, per_page: int = 100, status: str | None = None) -> list[dict[str, Any]]:
        j = self.request_json("/subscriptions", params={"page": page, "per_page": per_page, "status": status})
        return j if isinstance(j, list) else []

    def get_all_subscriptions(self, *, per_page: int = 100, max_pages: int = 50) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for page in range(1, max_pages + 1):
            batch = self.list_subscriptions(page=page, per_page=per_page)
            out.extend(batch)
            if len(batch) < per_page:
                break
        return out

    def _set_status(self, subscription_id: int | str, status: str) -> dict[str, Any]:
        j = self.request_json(
            f"/subscriptions/{urllib.parse.quote(str(subscription_id))}",
            method="PUT",
            body={"status": status},
        )
        return j if isinstance(j, dict) else {}

    def suspend_subscription(self, subscription_id: int | str) -> dict[str, Any]:
        return self._set_status(subscription_id, "on-hold")

    def reactivate_subscription(self, subscription_id: int | str) -> dict[str, Any]:
        return self._set_status(subscription_id, "active")

    def cancel_subscription(self, subscription_id: int | str) -> dict[str, Any]:
        return self._set_status(subscription_id, "cancelled")

    def get_customer(self, customer_id: int | str) -> dict[str, Any]:
        j = self.request_json(f"/customers/{urllib.parse.quote(str(customer_id))}")
        return j if isinstance(j, dict) else {}


def verify_webhook_signature(payload: bytes | str, signature: str, secret: str) -> bool:
    """WooCommerce signs the raw body with base64(HMAC-SHA256(secret))."""
    if not signature or not secret:
        return False
    body = payload.encode("utf-8") if isinstance(payload, str) else payload
    expected = base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("ascii")
    return hmac.compare_digest(signature.strip().encode("utf-8"), expected.encode("utf-8"))


def parse_plan_map(raw: str | None) -> dict[str, Plan]:
    """"123:standard,456:pro" -> {"123": Plan("standard", 1), "456": Plan("pro", 2)}; bad entries are skipped."""
    out: dict[str, Plan] = {}
    for part in (raw or "").split(","):
        product_id, _, tier = part.strip().partition(":")
        product_id, tier = product_id.strip(), tier.strip().lower()
        if product_id and tier in PLAN_MAX_ACTIVE:
            out[product_id] = Plan(tier, PLAN_MAX_ACTIVE[tier])
    return out


def get_plan_from_products(line_items: list[dict[str, Any]] | None, plan_map: Mapping[str, Plan]) -> Plan:
    for item in line_items or []:
        plan = plan_map.get(str(item.get("product_id")))
        if plan is not None:
            return plan
    return DEFAULT_PLAN


# ---------- status mapping ----------

def company_status_for(woo_status: str | None) -> str:
    if woo_status == "active":
        return "active"
    if woo_status in ("on-hold", "pending"):
        return "paused"
    if woo_status in ("cancelled", "expired"):
        return "churned"
    return "paused"


def service_status_for(woo_status: str | None) -> str:
    if woo_status == "active":
        return "active"
    if woo_status in ("on-hold", "pending"):
        return "paused"
    if woo_status in ("cancelled", "expired"):
        return "cancelled"
    return "pending"


def billing_cycle_for(billing_period: str | None, interval: Any = None) -> str:
    try:
        n = int(interval) if interval not in (None, "") else 1
    except (TypeError, ValueError):
        n = 1
    if billing_period == "year" or (billing_period == "month" and n == 12):
        return "yearly"
    if billing_period == "month" and n == 3:
        return "quarterly"
    return "monthly"
