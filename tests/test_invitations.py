from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.cache import cache
from app.portal.db import session_scope
from app.portal.models import Base, User
from app.portal.modules.companies.models import Company
from app.portal.modules.invitations.models import Invitation
from app.portal.rate_limit import reset_rate_limits

PASSWORD = "Passw0rd!"


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("APP_URL", "https://portal.example.com")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    monkeypatch.delenv("BREVO_API_KEY", raising=False)
    cache.clear()
    reset_rate_limits()

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        c = Company(name="Acme", status="active", plan_tier="standard", max_active_limit=1)
        s.add(c)
        s.flush()
        s.add_all(
            [
                User(email="admin@example.com", password_hash=generate_password_hash(PASSWORD), role="admin", full_name="Ada"),
                User(email="client@acme.com", password_hash=generate_password_hash(PASSWORD), role="client", company_id=c.id),
            ]
        )

    return app.test_client()


def _login(client, email, password=PASSWORD):
    client.post("/auth/logout")
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    return {"X-CSRF-Token": r.json["csrf_token"]}


def _company_id(client):
    with session_scope(client.application) as s:
        return s.query(Company).one().id


def _invite(client, headers, **body):
    r = client.post("/api/invitations", json=body, headers=headers)
    assert r.status_code == 201, r.json
    inv = r.json
    inv["token"] = inv["invitation_url"].split("token=", 1)[1]
    return inv


def test_create_invitation_rules(client):
    h = _login(client, "admin@example.com")
    company_id = _company_id(client)

    r = client.post("/api/invitations", json={"email": "client@acme.com", "full_name": "Dup", "role": "client", "company_id": company_id}, headers=h)
    assert r.status_code == 409
    assert r.json["error"] == "A user with this email already exists"

    r = client.post("/api/invitations", json={"email": "new@acme.com", "full_name": "New", "role": "client"}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "Company is required for client role"

    r = client.post("/api/invitations", json={"email": "bad", "full_name": "New", "role": "client"}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "Invalid invitation data"

    inv = _invite(client, h, email="New@Acme.com", full_name="Nina New", role="client", company_id=company_id)
    assert inv["email"] == "new@acme.com"
    assert inv["status"] == "pending"
    assert inv["invitation_url"].startswith("https://portal.example.com/auth/accept-invitation?token=")
    assert len(inv["token"]) == 36

    r = client.post("/api/invitations", json={"email": "new@acme.com", "full_name": "Again", "role": "client", "company_id": company_id}, headers=h)
    assert r.status_code == 409
    assert r.json["error"] == "An invitation for this email is already pending"

    _invite(client, h, email="staff@agency.com", full_name="Sam Staff", role="admin")

    r = client.get("/api/invitations?status=pending")
    assert {i["email"] for i in r.json} == {"new@acme.com", "staff@agency.com"}

    r = client.delete(f"/api/invitations?id={inv['id']}", headers=h)
    assert r.status_code == 200
    r = client.delete(f"/api/invitations?id={inv['id']}", headers=h)
    assert r.status_code == 404

    h = _login(client, "client@acme.com")
    r = client.post("/api/invitations", json={"email": "x@acme.com", "full_name": "X", "role": "client", "company_id": company_id}, headers=h)
    assert r.status_code == 403
    assert r.json["error"] == "Only admins can invite users"


def test_accept_invitation_creates_user_once(client):
    h = _login(client, "admin@example.com")
    inv = _invite(client, h, email="new@acme.com", full_name="Nina New", role="client", company_id=_company_id(client))
    client.post("/auth/logout")

    r = client.get(f"/api/invitations/accept?token={inv['token']}")
    assert r.status_code == 200
    assert r.json["valid"] is True
    assert r.json["invitation"]["company"]["name"] == "Acme"
    assert r.json["invitation"]["role"] == "client"

    r = client.get("/api/invitations/accept?token=nope")
    assert r.status_code == 404

    r = client.post("/api/invitations/accept", json={"token": inv["token"], "password": "short"})
    assert r.status_code == 400
    assert r.json["error"] == "Invalid request"

    r = client.post("/api/invitations/accept", json={"token": inv["token"], "password": "Welcome123"})
    assert r.status_code == 200
    assert r.json == {"success": True, "message": "Account created successfully. You can now log in."}

    r = client.post("/api/invitations/accept", json={"token": inv["token"], "password": "Welcome123"})
    assert r.status_code == 404
    assert r.json["error"] == "Invitation not found or already used"

    r = client.get(f"/api/invitations/accept?token={inv['token']}")
    assert r.json["valid"] is False
    assert r.json["reason"] == "already_accepted"

    _login(client, "new@acme.com", "Welcome123")
    me = client.get("/auth/me").json
    assert me["role"] == "client"
    assert me["full_name"] == "Nina New"
    assert me["company"]["name"] == "Acme"


def test_expired_invitation_is_marked_expired(client):
    h = _login(client, "admin@example.com")
    inv = _invite(client, h, email="late@agency.com", full_name="Late", role="admin")

    with session_scope(client.application) as s:
        row = s.get(Invitation, inv["id"])
        row.expires_at = datetime.utcnow() - timedelta(minutes=1)

    r = client.get(f"/api/invitations/accept?token={inv['token']}")
    assert r.json == {"valid": False, "reason": "expired", "invitation": {"email": "late@agency.com", "full_name": "Late"}}

    r = client.post("/api/invitations/accept", json={"token": inv["token"], "password": "Welcome123"})
    assert r.status_code == 400
    assert r.json["error"] == "This invitation has expired"

    with session_scope(client.application) as s:
        assert s.get(Invitation, inv["id"]).status == "expired"
        assert s.query(User).filter(User.email == "late@agency.com").count() == 0

    # Once expired, a new invitation for the same address is allowed.
    h = _login(client, "admin@example.com")
    _invite(client, h, email="late@agency.com", full_name="Late", role="admin")
