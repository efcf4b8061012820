from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.cache import cache
from app.portal.db import session_scope
from app.portal.models import Base, User
from app.portal.modules.analytics.service import build_analytics
from app.portal.modules.companies.models import ClientService, Company
from app.portal.modules.requests.models import Request
from app.portal.rate_limit import reset_rate_limits

PASSWORD = "Passw0rd!"


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    monkeypatch.delenv("BREVO_API_KEY", raising=False)
    cache.clear()
    reset_rate_limits()

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        acme = Company(name="Acme", status="active", plan_tier="pro", max_active_limit=2)
        globex = Company(name="Globex", status="active", plan_tier="standard", max_active_limit=1)
        s.add_all([acme, globex])
        s.flush()
        s.add(
            ClientService(
                company_id=acme.id,
                service_name="SEO",
                service_type="subscription",
                status="active",
                price=250,
                billing_cycle="monthly",
            )
        )
        s.add_all(
            [
                User(email="admin@example.com", password_hash=generate_password_hash(PASSWORD), role="admin", full_name="Ada"),
                User(email="client@acme.com", password_hash=generate_password_hash(PASSWORD), role="client", company_id=acme.id),
            ]
        )

    return app.test_client()


def _login(client, email, password=PASSWORD):
    client.post("/auth/logout")
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    return {"X-CSRF-Token": r.json["csrf_token"]}


def _company_ids(client):
    with session_scope(client.application) as s:
        return {c.name: c.id for c in s.query(Company).all()}


def test_audit_log_filters_and_pagination(client):
    ids = _company_ids(client)
    h = _login(client, "admin@example.com")
    for i in range(3):
        client.post("/api/requests", json={"title": f"Acme {i}", "company_id": ids["Acme"]}, headers=h)
    client.post("/api/requests", json={"title": "Globex", "company_id": ids["Globex"]}, headers=h)

    r = client.get("/api/audit-logs?entity_type=request&action=create")
    assert r.status_code == 200
    assert r.json["pagination"] == {"total": 4, "limit": 50, "offset": 0, "has_more": False}
    assert r.json["data"][0]["new_values"]["title"] == "Globex"
    assert r.json["data"][0]["user_email"] == "admin@example.com"

    r = client.get(f"/api/audit-logs?entity_type=request&company_id={ids['Acme']}&limit=2")
    assert len(r.json["data"]) == 2
    assert r.json["pagination"]["has_more"] is True

    r = client.get(f"/api/audit-logs?entity_type=request&company_id={ids['Acme']}&limit=2&offset=2")
    assert len(r.json["data"]) == 1
    assert r.json["pagination"]["has_more"] is False

    r = client.get("/api/audit-logs?action=login")
    assert r.json["pagination"]["total"] == 1

    r = client.get("/api/audit-logs?company_id=abc")
    assert r.status_code == 400
    assert r.json["code"] == "INVALID_INPUT"

    r = client.get("/api/audit-logs?date_from=yesterday")
    assert r.status_code == 400

    future = (datetime.utcnow() + timedelta(days=1)).isoformat()
    r = client.get(f"/api/audit-logs?date_from={future}")
    assert r.json["data"] == []


def test_analytics_shape_and_counts(client):
    ids = _company_ids(client)
    h = _login(client, "admin@example.com")
    made = []
    for title, priority in (("A", "high"), ("B", "normal"), ("C", "low")):
        r = client.post("/api/requests", json={"title": title, "company_id": ids["Acme"], "priority": priority}, headers=h)
        made.append(r.json["id"])
    client.post(f"/api/requests/{made[0]}/move", json={"status": "active"}, headers=h)
    client.post(f"/api/requests/{made[1]}/move", json={"status": "done"}, headers=h)

    r = client.get("/api/analytics?days=7")
    assert r.status_code == 200
    data = r.json
    assert data["overview"] == {"total": 3, "completed": 1, "active": 1, "avgCompletionTime": 0}
    assert data["statusDistribution"] == [
        {"name": "queue", "value": 1},
        {"name": "active", "value": 1},
        {"name": "review", "value": 0},
        {"name": "done", "value": 1},
    ]
    assert {p["name"]: p["value"] for p in data["priorityDistribution"]} == {"low": 1, "normal": 1, "high": 1}
    assert len(data["requestVolume"]) == 7
    assert data["requestVolume"][-1] == {"date": datetime.utcnow().date().isoformat(), "count": 3}
    assert set(data["slaCompliance"]) == {"onTrack", "atRisk", "breached", "total"}
    assert [m["name"] for m in data["teamWorkload"]] == ["Ada"]

    # Served from cache until invalidated.
    client.post("/api/requests", json={"title": "D", "company_id": ids["Acme"]}, headers=h)
    assert client.get("/api/analytics?days=7").json["overview"]["total"] == 3
    cache.clear()
    assert client.get("/api/analytics?days=7").json["overview"]["total"] == 4

    _login(client, "client@acme.com")
    assert client.get("/api/analytics").status_code == 403


def test_build_analytics_window_and_workload(client):
    ids = _company_ids(client)
    now = datetime(2026, 3, 10, 12, 0, 0)
    with session_scope(client.application) as s:
        admin = s.query(User).filter(User.email == "admin@example.com").one()
        s.add_all(
            [
                Request(
                    company_id=ids["Acme"],
                    title="Old",
                    status="done",
                    priority="normal",
                    created_at=now - timedelta(days=40),
                    completed_at=now - timedelta(days=39),
                ),
                Request(
                    company_id=ids["Acme"],
                    title="Fast",
                    status="done",
                    priority="high",
                    assigned_to=admin.id,
                    created_at=now - timedelta(hours=10),
                    completed_at=now - timedelta(hours=6),
                ),
                Request(
                    company_id=ids["Acme"],
                    title="Busy",
                    status="active",
                    priority="normal",
                    sla_status="breached",
                    assigned_to=admin.id,
                    created_at=now - timedelta(days=2),
                ),
            ]
        )
        s.flush()

        data = build_analytics(s, 30, now=now)
        assert data["overview"] == {"total": 2, "completed": 1, "active": 1, "avgCompletionTime": 4}
        assert data["slaCompliance"]["breached"] == 1
        assert data["teamWorkload"] == [{"id": admin.id, "name": "Ada", "total": 2, "active": 1, "completed": 1}]
        counts = {v["date"]: v["count"] for v in data["requestVolume"]}
        assert counts["2026-03-10"] == 1
        assert counts["2026-03-08"] == 1


def test_subscription_overview(client):
    ids = _company_ids(client)
    h = _login(client, "admin@example.com")
    r = client.post("/api/requests", json={"title": "A", "company_id": ids["Acme"]}, headers=h)
    client.post(f"/api/requests/{r.json['id']}/move", json={"status": "active"}, headers=h)
    client.post("/api/requests", json={"title": "B", "company_id": ids["Acme"]}, headers=h)

    r = client.get("/api/subscription")
    assert r.status_code == 404

    _login(client, "client@acme.com")
    r = client.get("/api/subscription")
    assert r.status_code == 200
    assert r.json["company"]["name"] == "Acme"
    assert r.json["usage"] == {
        "active_requests": 1,
        "limit": 2,
        "total_requests": 2,
        "completed_requests": 0,
        "queued_requests": 1,
    }
    assert [svc["service_name"] for svc in r.json["services"]] == ["SEO"]
    assert r.json["mrr"] == 250
