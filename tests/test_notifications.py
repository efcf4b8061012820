import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.cache import cache
from app.portal.db import session_scope
from app.portal.email import EmailResult
from app.portal.models import Base, User
from app.portal.modules.companies.models import Company
from app.portal.modules.notifications.models import NotificationPreferences
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
        c = Company(name="Acme", status="active", plan_tier="pro", max_active_limit=2)
        s.add(c)
        s.flush()
        s.add_all(
            [
                User(email="admin@example.com", password_hash=generate_password_hash(PASSWORD), role="admin"),
                User(email="client@acme.com", password_hash=generate_password_hash(PASSWORD), role="client", company_id=c.id, full_name="Carla"),
            ]
        )

    return app.test_client()


def _login(client, email, password=PASSWORD):
    client.post("/auth/logout")
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    return {"X-CSRF-Token": r.json["csrf_token"]}


def _user_id(client, email):
    with session_scope(client.application) as s:
        return s.query(User).filter(User.email == email).one().id


def _company_id(client):
    with session_scope(client.application) as s:
        return s.query(Company).one().id


def test_status_change_notifies_client_and_sends_email(client, monkeypatch):
    sent = []

    def fake_send(to, title, old, new, url, name=None, config=None):
        sent.append((to, old, new, url))
        return EmailResult(success=True, message_id="m-1")

    monkeypatch.setattr("app.portal.modules.requests.service.send_status_change_email", fake_send)

    h = _login(client, "admin@example.com")
    r = client.post("/api/requests", json={"title": "Logo", "company_id": _company_id(client)}, headers=h)
    req_id = r.json["id"]
    client.post(f"/api/requests/{req_id}/move", json={"status": "active"}, headers=h)

    assert sent == [("client@acme.com", "queue", "active", f"http://localhost:3000/dashboard?request={req_id}")]

    _login(client, "client@acme.com")
    r = client.get("/api/notifications")
    assert r.status_code == 200
    assert r.json["unread_count"] == 1
    note = r.json["notifications"][0]
    assert note["type"] == "status_change"
    assert note["message"] == '"Logo" moved from queue to active'
    assert note["link"] == f"/dashboard/requests/{req_id}"


def test_email_preferences_suppress_status_email(client, monkeypatch):
    sent = []
    monkeypatch.setattr(
        "app.portal.modules.requests.service.send_status_change_email",
        lambda *a, **kw: sent.append(a) or EmailResult(success=True),
    )

    h = _login(client, "client@acme.com")
    r = client.get("/api/notifications/preferences")
    assert r.status_code == 200
    assert r.json["email_on_status_change"] is True
    assert r.json["email_digest_frequency"] == "daily"

    r = client.put(
        "/api/notifications/preferences",
        json={"email_on_status_change": False, "email_digest_frequency": "weekly"},
        headers=h,
    )
    assert r.status_code == 200
    assert r.json["email_on_status_change"] is False
    assert r.json["email_digest_frequency"] == "weekly"

    r = client.put("/api/notifications/preferences", json={"email_digest_frequency": "hourly"}, headers=h)
    assert r.status_code == 400

    h = _login(client, "admin@example.com")
    r = client.post("/api/requests", json={"title": "Logo", "company_id": _company_id(client)}, headers=h)
    client.post(f"/api/requests/{r.json['id']}/move", json={"status": "active"}, headers=h)
    assert sent == []

    with session_scope(client.application) as s:
        assert s.query(NotificationPreferences).count() == 1


def test_mark_read_and_unread_filter(client):
    carla = _user_id(client, "client@acme.com")
    h = _login(client, "admin@example.com")
    ids = []
    for title in ("One", "Two", "Three"):
        r = client.post(
            "/api/notifications",
            json={"user_id": carla, "type": "due_date", "title": title},
            headers=h,
        )
        assert r.status_code == 201
        ids.append(r.json["id"])

    r = client.post("/api/notifications", json={"user_id": 999, "type": "due_date", "title": "x"}, headers=h)
    assert r.status_code == 404
    r = client.post("/api/notifications", json={"user_id": carla, "type": "gossip", "title": "x"}, headers=h)
    assert r.status_code == 400

    h = _login(client, "client@acme.com")
    r = client.post("/api/notifications", json={"user_id": carla, "type": "due_date", "title": "x"}, headers=h)
    assert r.status_code == 403

    r = client.post("/api/notifications/mark-read", json={}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "Either notification_ids or mark_all is required"

    r = client.post("/api/notifications/mark-read", json={"notification_ids": [ids[0]]}, headers=h)
    assert r.json == {"success": True, "updated": 1}

    r = client.get("/api/notifications?unread=true")
    assert [n["title"] for n in r.json["notifications"]] == ["Three", "Two"]
    assert r.json["unread_count"] == 2

    r = client.post("/api/notifications/mark-read", json={"mark_all": True}, headers=h)
    assert r.json["updated"] == 2

    r = client.get("/api/notifications")
    assert r.json["unread_count"] == 0
    assert len(r.json["notifications"]) == 3
    assert all(n["read_at"] for n in r.json["notifications"])


def test_notifications_are_private_to_their_owner(client):
    carla = _user_id(client, "client@acme.com")
    h = _login(client, "admin@example.com")
    r = client.post("/api/notifications", json={"user_id": carla, "type": "mention", "title": "Hi"}, headers=h)
    note_id = r.json["id"]

    # Marking someone else's notification is a no-op.
    r = client.post("/api/notifications/mark-read", json={"notification_ids": [note_id]}, headers=h)
    assert r.json["updated"] == 0

    r = client.get("/api/notifications")
    assert r.json == {"notifications": [], "unread_count": 0}
