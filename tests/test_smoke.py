import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.cache import cache
from app.portal.db import session_scope
from app.portal.email import EmailResult
from app.portal.models import AuditLog, Base, User
from app.portal.modules.companies.models import Company
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
        c = Company(name="Acme Dental", status="active", plan_tier="standard", max_active_limit=1)
        s.add(c)
        s.flush()
        s.add_all(
            [
                User(email="admin@example.com", password_hash=generate_password_hash(PASSWORD), role="admin", full_name="Ada Admin"),
                User(email="client@example.com", password_hash=generate_password_hash(PASSWORD), role="client", company_id=c.id),
                User(email="gone@example.com", password_hash=generate_password_hash(PASSWORD), role="client", is_active=False),
            ]
        )

    return app.test_client()


def _login(client, email, password=PASSWORD):
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    return {"X-CSRF-Token": r.json["csrf_token"]}


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_login_me_and_logout(client):
    r = client.get("/auth/me")
    assert r.status_code == 401
    assert r.json["code"] == "UNAUTHORIZED"

    _login(client, "Client@Example.com")

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["email"] == "client@example.com"
    assert r.json["role"] == "client"
    assert r.json["company"]["name"] == "Acme Dental"

    r = client.post("/auth/logout")
    assert r.status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_login_rejects_bad_password_and_inactive_user_and_audits(client):
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "nope"})
    assert r.status_code == 401
    assert r.json["error"] == "Invalid credentials"

    r = client.post("/auth/login", json={"email": "gone@example.com", "password": PASSWORD})
    assert r.status_code == 401

    r = client.post("/auth/login", json={"email": "not-an-email", "password": PASSWORD})
    assert r.status_code == 400
    assert r.json["code"] == "VALIDATION_ERROR"

    with session_scope(client.application) as s:
        failed = s.query(AuditLog).filter(AuditLog.action == "login_failed").all()
        assert len(failed) == 2
        assert {f.user_email for f in failed} == {"admin@example.com", "gone@example.com"}


def test_mutations_require_csrf_token(client):
    headers = _login(client, "admin@example.com")

    r = client.patch("/api/profile", json={"full_name": "New Name"})
    assert r.status_code == 403
    assert r.json["code"] == "CSRF_ERROR"

    r = client.patch("/api/profile", json={"full_name": "New Name"}, headers={"X-CSRF-Token": "wrong"})
    assert r.status_code == 403

    r = client.patch("/api/profile", json={"full_name": "New Name"}, headers=headers)
    assert r.status_code == 200
    assert r.json["full_name"] == "New Name"

    r = client.get("/auth/csrf")
    assert r.json["csrf_token"] == headers["X-CSRF-Token"]


def test_request_id_header_is_echoed_or_generated(client):
    r = client.get("/auth/csrf", headers={"X-Request-ID": "abc123"})
    assert r.headers["X-Request-ID"] == "abc123"

    r = client.get("/auth/csrf")
    assert len(r.headers["X-Request-ID"]) == 32


def test_unknown_route_uses_error_shape(client):
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert r.json["code"] == "NOT_FOUND"
    assert "error" in r.json


def test_password_reset_flow_is_single_use(client, monkeypatch):
    sent = []

    def fake_send(to, link, name=None, config=None):
        sent.append((to, link))
        return EmailResult(success=True, message_id="m-1")

    monkeypatch.setattr("app.portal.auth.send_password_setup_email", fake_send)

    # Unknown email gets the same answer and no mail.
    r = client.post("/auth/password-reset", json={"email": "nobody@example.com"})
    assert r.status_code == 200
    assert r.json["success"] is True
    assert sent == []

    r = client.post("/auth/password-reset", json={"email": "client@example.com"})
    assert r.status_code == 200
    assert len(sent) == 1
    to, link = sent[0]
    assert to == "client@example.com"
    assert "/auth/set-password?token=" in link
    token = link.split("token=", 1)[1]

    r = client.post("/auth/password-reset/confirm", json={"token": token, "password": "weakpassword"})
    assert r.status_code == 400
    assert "uppercase" in r.json["error"]

    r = client.post("/auth/password-reset/confirm", json={"token": token, "password": "NewPassw0rd"})
    assert r.status_code == 200

    # Changing the password invalidates the token.
    r = client.post("/auth/password-reset/confirm", json={"token": token, "password": "OtherPassw0rd"})
    assert r.status_code == 401
    assert r.json["code"] == "INVALID_TOKEN"

    r = client.post("/auth/password-reset/confirm", json={"token": "garbage", "password": "OtherPassw0rd"})
    assert r.status_code == 401

    _login(client, "client@example.com", "NewPassw0rd")


def test_profile_and_team_members(client):
    headers = _login(client, "admin@example.com")

    r = client.get("/api/profile")
    assert r.status_code == 200
    assert r.json["email"] == "admin@example.com"
    assert r.json["company"] is None

    r = client.patch("/api/profile", json={}, headers=headers)
    assert r.status_code == 400
    assert r.json["error"] == "No fields to update"

    r = client.post("/api/profile/password", json={"new_password": "short"}, headers=headers)
    assert r.status_code == 400

    r = client.post("/api/profile/password", json={"new_password": "Better1Password"}, headers=headers)
    assert r.status_code == 200

    r = client.get("/api/team-members")
    assert r.status_code == 200
    assert [m["email"] for m in r.json] == ["admin@example.com"]

    with session_scope(client.application) as s:
        me = s.query(User).filter(User.email == "admin@example.com").one()
        other = s.query(User).filter(User.email == "client@example.com").one()

    r = client.delete(f"/api/team-members/{me.id}", headers=headers)
    assert r.status_code == 400
    assert r.json["error"] == "Cannot remove yourself"

    r = client.delete(f"/api/team-members/{other.id}", headers=headers)
    assert r.status_code == 400
    assert r.json["error"] == "User is not an admin"

    r = client.delete("/api/team-members/999", headers=headers)
    assert r.status_code == 404


def test_client_cannot_use_admin_endpoints(client):
    _login(client, "client@example.com")
    r = client.get("/api/companies")
    assert r.status_code == 403
    assert r.json["error"] == "Admin access required"

    r = client.get("/api/audit-logs")
    assert r.status_code == 403
