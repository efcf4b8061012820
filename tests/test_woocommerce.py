import base64
import hashlib
import hmac
import json
from datetime import date

import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.cache import cache
from app.portal.db import session_scope
from app.portal.email import EmailResult
from app.portal.models import Base, User
from app.portal.modules.companies.models import ClientService, Company
from app.portal.modules.woocommerce.client import (
    DEFAULT_PLAN,
    Plan,
    WooCommerceClient,
    WooCommerceError,
    WooCommerceNotConfigured,
    billing_cycle_for,
    company_status_for,
    get_plan_from_products,
    parse_plan_map,
    service_status_for,
    verify_webhook_signature,
)
from app.portal.rate_limit import reset_rate_limits

PASSWORD = "Passw0rd!"
SECRET = "whsec"


def _sign(raw: bytes, secret: str = SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), raw, hashlib.sha256).digest()).decode()


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    monkeypatch.setenv("WOO_WEBHOOK_SECRET", SECRET)
    monkeypatch.setenv("WOO_PRODUCT_PLAN_MAP", "101:standard,202:pro")
    for name in ("BREVO_API_KEY", "WOO_STORE_URL", "WOO_CONSUMER_KEY", "WOO_CONSUMER_SECRET"):
        monkeypatch.delenv(name, raising=False)
    cache.clear()
    reset_rate_limits()

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add(User(email="admin@example.com", password_hash=generate_password_hash(PASSWORD), role="admin"))

    return app.test_client()


def _login(client, email, password=PASSWORD):
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    return {"X-CSRF-Token": r.json["csrf_token"]}


def _post_event(client, payload, signature=None):
    raw = json.dumps(payload).encode()
    headers = {"Content-Type": "application/json", "X-WC-Webhook-Signature": signature or _sign(raw)}
    return client.post("/api/webhooks/woo", data=raw, headers=headers)


# ---------- pure helpers ----------

def test_signature_verification():
    raw = b'{"id": 1}'
    assert verify_webhook_signature(raw, _sign(raw), SECRET) is True
    assert verify_webhook_signature(raw.decode(), _sign(raw), SECRET) is True
    assert verify_webhook_signature(raw, _sign(raw, "other"), SECRET) is False
    assert verify_webhook_signature(raw, "", SECRET) is False
    assert verify_webhook_signature(raw, _sign(raw), "") is False


def test_plan_map_parsing_and_lookup():
    plans = parse_plan_map(" 123:standard, 456:PRO ,bad,789:enterprise,:pro")
    assert plans == {"123": Plan("standard", 1), "456": Plan("pro", 2)}
    assert parse_plan_map(None) == {}

    assert get_plan_from_products([{"product_id": 9}, {"product_id": 456}], plans) == Plan("pro", 2)
    assert get_plan_from_products([{"product_id": 9}], plans) == DEFAULT_PLAN
    assert get_plan_from_products(None, plans) == DEFAULT_PLAN


@pytest.mark.parametrize(
    "woo_status,company_status,service_status",
    [
        ("active", "active", "active"),
        ("on-hold", "paused", "paused"),
        ("pending", "paused", "paused"),
        ("cancelled", "churned", "cancelled"),
        ("expired", "churned", "cancelled"),
        ("pending-cancel", "paused", "pending"),
        (None, "paused", "pending"),
    ],
)
def test_status_mapping(woo_status, company_status, service_status):
    assert company_status_for(woo_status) == company_status
    assert service_status_for(woo_status) == service_status


def test_billing_cycle_mapping():
    assert billing_cycle_for("month", 1) == "monthly"
    assert billing_cycle_for("month", "3") == "quarterly"
    assert billing_cycle_for("month", 12) == "yearly"
    assert billing_cycle_for("year", 1) == "yearly"
    assert billing_cycle_for("week", 2) == "monthly"
    assert billing_cycle_for(None, "junk") == "monthly"


def test_client_requires_full_configuration():
    with pytest.raises(WooCommerceNotConfigured):
        WooCommerceClient.from_config({"WOO_STORE_URL": "https://shop.example.com", "WOO_CONSUMER_KEY": "ck"})

    woo = WooCommerceClient.from_config(
        {"WOO_STORE_URL": "https://shop.example.com/", "WOO_CONSUMER_KEY": "ck", "WOO_CONSUMER_SECRET": "cs"}
    )
    assert woo.base_url == "https://shop.example.com/wp-json/wc/v3"
    assert woo._auth_header() == "Basic " + base64.b64encode(b"ck:cs").decode()


def test_get_all_subscriptions_pages_until_short_batch(monkeypatch):
    woo = WooCommerceClient("https://shop.example.com", "ck", "cs")
    pages = {1: [{"id": 1}, {"id": 2}], 2: [{"id": 3}]}
    seen = []

    def fake_list(self, *, page=1, per_page=100, status=None):
        seen.append(page)
        return pages.get(page, [])

    monkeypatch.setattr(WooCommerceClient, "list_subscriptions", fake_list)
    assert [s["id"] for s in woo.get_all_subscriptions(per_page=2)] == [1, 2, 3]
    assert seen == [1, 2]


# ---------- webhook ----------

def test_webhook_pings_and_empty_deliveries(client):
    assert client.get("/api/webhooks/woo").json == {"status": "ok"}

    r = client.post("/api/webhooks/woo", data=b"")
    assert r.json["message"] == "Webhook endpoint active"

    r = client.post("/api/webhooks/woo", data=b"webhook_id=12")
    assert r.json["message"] == "Ping received"

    r = client.post("/api/webhooks/woo", data=b'{"webhook_id": 12}')
    assert r.json["message"] == "Webhook verified"


def test_webhook_rejects_bad_signature(client):
    r = _post_event(client, {"customer_id": 5, "status": "active"}, signature="bogus")
    assert r.status_code == 401
    assert r.json["error"] == "Invalid webhook signature"

    r = _post_event(client, {"customer_id": 5})
    assert r.status_code == 400


def test_webhook_provisions_then_updates_company(client, monkeypatch):
    sent = []

    def fake_send(to, link, name=None, config=None):
        sent.append((to, name))
        return EmailResult(success=True)

    monkeypatch.setattr("app.portal.modules.woocommerce.service.send_password_setup_email", fake_send)

    event = {
        "id": 900,
        "customer_id": 42,
        "status": "active",
        "billing": {"first_name": "Pat", "last_name": "Lee", "company": "Lee Dental", "email": "Pat@LeeDental.com"},
        "line_items": [{"product_id": 202, "name": "Pro plan"}],
    }
    r = _post_event(client, event)
    assert r.status_code == 200
    assert r.json["action"] == "created"
    company_id = r.json["companyId"]
    assert sent == [("pat@leedental.com", "Pat Lee")]

    with session_scope(client.application) as s:
        company = s.get(Company, company_id)
        assert (company.name, company.status, company.plan_tier, company.max_active_limit) == ("Lee Dental", "active", "pro", 2)
        assert company.woo_customer_id == "42"
        user = s.query(User).filter(User.email == "pat@leedental.com").one()
        assert (user.role, user.company_id) == ("client", company_id)

    r = _post_event(client, dict(event, status="on-hold", line_items=[{"product_id": 101}]))
    assert r.json == {"success": True, "action": "updated", "companyId": company_id}

    with session_scope(client.application) as s:
        company = s.get(Company, company_id)
        assert (company.status, company.plan_tier, company.max_active_limit) == ("paused", "standard", 1)
        assert s.query(User).filter(User.role == "client").count() == 1

    r = _post_event(client, {"customer_id": 43, "status": "active", "billing": {}})
    assert r.status_code == 400
    assert r.json["error"] == "No email provided in billing info"


# ---------- sync ----------

SUBSCRIPTIONS = [
    {
        "id": 1,
        "customer_id": 10,
        "status": "active",
        "billing_period": "month",
        "billing_interval": "1",
        "start_date": "2026-01-01T00:00:00",
        "next_payment_date": "2026-02-01T00:00:00",
        "total": "99.00",
        "billing": {"company": "Alpha Co", "email": "alpha@example.com", "city": "Austin"},
        "line_items": [{"product_id": 101, "name": "Standard plan", "total": "99.00"}],
    },
    {
        "id": 2,
        "customer_id": 11,
        "status": "cancelled",
        "billing_period": "year",
        "billing_interval": "1",
        "total": "1200.00",
        "billing": {"first_name": "Bo", "last_name": "Beta", "email": "admin@example.com"},
        "line_items": [{"product_id": 202, "name": "Pro plan"}],
    },
]


def test_sync_requires_configuration(client):
    _login(client, "admin@example.com")
    r = client.get("/api/sync/woocommerce")
    assert r.status_code == 503
    assert r.json["error"] == "WooCommerce is not configured"


def test_sync_upserts_companies_and_services(client, monkeypatch):
    client.application.config.update(
        WOO_STORE_URL="https://shop.example.com",
        WOO_CONSUMER_KEY="ck",
        WOO_CONSUMER_SECRET="cs",
    )
    monkeypatch.setattr(WooCommerceClient, "get_all_subscriptions", lambda self, **kw: [dict(s) for s in SUBSCRIPTIONS])
    h = _login(client, "admin@example.com")

    r = client.get("/api/sync/woocommerce")
    assert r.json["woocommerce"] == {"subscriptions": 2, "active": 1, "paused": 0, "cancelled": 1}
    assert r.json["database"] == {"companies": 0, "services": 0}

    r = client.post("/api/sync/woocommerce", headers=h)
    assert r.status_code == 200
    assert r.json == {
        "success": True,
        "companiesCreated": 2,
        "companiesUpdated": 0,
        "servicesCreated": 2,
        "servicesUpdated": 0,
        "errors": [],
    }

    r = client.post("/api/sync/woocommerce", headers=h)
    assert r.json["companiesUpdated"] == 2
    assert r.json["servicesUpdated"] == 2
    assert r.json["servicesCreated"] == 0

    with session_scope(client.application) as s:
        alpha = s.query(Company).filter(Company.woo_customer_id == "10").one()
        assert (alpha.name, alpha.status, alpha.city) == ("Alpha Co", "active", "Austin")
        svc = s.query(ClientService).filter(ClientService.company_id == alpha.id).one()
        assert (svc.billing_cycle, svc.price, svc.renewal_date) == ("monthly", 99.0, date(2026, 2, 1))

        beta = s.query(Company).filter(Company.woo_customer_id == "11").one()
        assert (beta.name, beta.status, beta.plan_tier) == ("Bo Beta", "churned", "pro")
        beta_svc = s.query(ClientService).filter(ClientService.company_id == beta.id).one()
        assert (beta_svc.status, beta_svc.billing_cycle, beta_svc.price) == ("cancelled", "yearly", 1200.0)

        # The existing admin account is never re-provisioned as a client.
        assert s.query(User).filter(User.email == "admin@example.com").one().role == "admin"
        assert s.query(User).filter(User.email == "alpha@example.com").one().company_id == alpha.id


def test_sync_reports_upstream_failure(client, monkeypatch):
    client.application.config.update(
        WOO_STORE_URL="https://shop.example.com",
        WOO_CONSUMER_KEY="ck",
        WOO_CONSUMER_SECRET="cs",
    )

    def boom(self, **kw):
        raise WooCommerceError("WooCommerce API error: 500 - oops")

    monkeypatch.setattr(WooCommerceClient, "get_all_subscriptions", boom)
    h = _login(client, "admin@example.com")
    r = client.post("/api/sync/woocommerce", headers=h)
    assert r.status_code == 500
    assert r.json["code"] == "EXTERNAL_SERVICE_ERROR"
    assert r.json["details"] == {"service": "WooCommerce"}
