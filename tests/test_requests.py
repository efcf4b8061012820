import io

import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.cache import cache
from app.portal.db import session_scope
from app.portal.models import AuditLog, Base, User
from app.portal.modules.companies.models import Company
from app.portal.modules.notifications.models import Notification
from app.portal.modules.requests.models import Activity, Request, RequestAssignment, RequestFile
from app.portal.modules.templates.models import RequestTemplate
from app.portal.rate_limit import reset_rate_limits

PASSWORD = "Passw0rd!"


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.delenv("BREVO_API_KEY", raising=False)
    cache.clear()
    reset_rate_limits()

    app = create_app()
    app.config["STORAGE_ROOT"] = str(tmp_path / "storage")

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        acme = Company(name="Acme", status="active", plan_tier="standard", max_active_limit=1)
        other = Company(name="Globex", status="active", plan_tier="pro", max_active_limit=2)
        paused = Company(name="Initech", status="paused", plan_tier="standard", max_active_limit=1)
        s.add_all([acme, other, paused])
        s.flush()
        s.add_all(
            [
                User(email="admin@example.com", password_hash=generate_password_hash(PASSWORD), role="admin", full_name="Ada Admin"),
                User(email="admin2@example.com", password_hash=generate_password_hash(PASSWORD), role="admin", full_name="Bob Admin"),
                User(email="client@acme.com", password_hash=generate_password_hash(PASSWORD), role="client", company_id=acme.id, full_name="Carla Client"),
                User(email="client@globex.com", password_hash=generate_password_hash(PASSWORD), role="client", company_id=other.id),
                User(email="client@initech.com", password_hash=generate_password_hash(PASSWORD), role="client", company_id=paused.id),
            ]
        )

    return app.test_client()


def _login(client, email, password=PASSWORD):
    client.post("/auth/logout")
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    return {"X-CSRF-Token": r.json["csrf_token"]}


def _ids(client):
    with session_scope(client.application) as s:
        companies = {c.name: c.id for c in s.query(Company).all()}
        users = {u.email: u.id for u in s.query(User).all()}
    return companies, users


def _create(client, headers, **body):
    r = client.post("/api/requests", json=body, headers=headers)
    assert r.status_code == 201, r.json
    return r.json


def test_client_creates_request_in_queue_and_sees_only_own_company(client):
    companies, _ = _ids(client)

    h = _login(client, "client@acme.com")
    req = _create(client, h, title="<b>New logo</b>", description="<p>Hi<script>x()</script></p>", priority="high")
    assert req["status"] == "queue"
    assert req["title"] == "New logo"
    assert req["description"] == "<p>Hi</p>"
    assert req["company_id"] == companies["Acme"]
    assert req["company"]["name"] == "Acme"

    h = _login(client, "client@globex.com")
    _create(client, h, title="Landing page")
    r = client.get("/api/requests")
    assert [x["title"] for x in r.json] == ["Landing page"]
    assert r.headers["Cache-Control"].startswith("private")

    r = client.get(f"/api/requests/{req['id']}")
    assert r.status_code == 403

    h = _login(client, "admin@example.com")
    r = client.get("/api/requests")
    assert len(r.json) == 2
    r = client.get(f"/api/requests?company_id={companies['Acme']}&priority=high")
    assert [x["id"] for x in r.json] == [req["id"]]
    r = client.get("/api/requests?q=logo")
    assert [x["id"] for x in r.json] == [req["id"]]

    with session_scope(client.application) as s:
        acts = s.query(Activity).filter(Activity.request_id == req["id"]).all()
        assert [a.activity_type for a in acts] == ["created"]
        assert s.query(AuditLog).filter(AuditLog.entity_type == "request", AuditLog.action == "create").count() == 2


def test_paused_company_cannot_create_and_admin_must_name_company(client):
    h = _login(client, "client@initech.com")
    r = client.post("/api/requests", json={"title": "x"}, headers=h)
    assert r.status_code == 403
    assert r.json["code"] == "COMPANY_INACTIVE"

    h = _login(client, "admin@example.com")
    r = client.post("/api/requests", json={"title": "x"}, headers=h)
    assert r.status_code == 400
    assert r.json["code"] == "MISSING_FIELD"

    r = client.post("/api/requests", json={"title": "x", "company_id": 999}, headers=h)
    assert r.status_code == 404


def test_move_rules_and_active_limit(client):
    companies, _ = _ids(client)
    h = _login(client, "admin@example.com")
    a = _create(client, h, title="First", company_id=companies["Acme"])
    b = _create(client, h, title="Second", company_id=companies["Acme"])

    # invalid transition
    r = client.post(f"/api/requests/{a['id']}/move", json={"status": "review"}, headers=h)
    assert r.status_code == 400
    assert r.json["code"] == "INVALID_STATUS_TRANSITION"

    r = client.post(f"/api/requests/{a['id']}/move", json={"status": "bogus"}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "Invalid status"

    r = client.post(f"/api/requests/{a['id']}/move", json={"status": "active"}, headers=h)
    assert r.status_code == 200
    assert r.json["status"] == "active"

    # Acme's plan allows a single active request.
    r = client.post(f"/api/requests/{b['id']}/move", json={"status": "active"}, headers=h)
    assert r.status_code == 403
    assert r.json["code"] == "LIMIT_REACHED"
    assert r.json["details"] == {"limit": 1, "current": 1}

    r = client.post("/api/requests/999/move", json={"status": "active"}, headers=h)
    assert r.status_code == 404

    r = client.post(f"/api/requests/{a['id']}/move", json={"status": "review"}, headers=h)
    assert r.status_code == 200

    # Clients may only approve reviewed work.
    h = _login(client, "client@acme.com")
    r = client.post(f"/api/requests/{b['id']}/move", json={"status": "active"}, headers=h)
    assert r.status_code == 403
    assert r.json["error"] == "Only admins can activate requests"

    r = client.post(f"/api/requests/{a['id']}/move", json={"status": "done"}, headers=h)
    assert r.status_code == 200
    assert r.json["status"] == "done"
    assert r.json["completed_at"] is not None

    h = _login(client, "client@globex.com")
    r = client.post(f"/api/requests/{a['id']}/move", json={"status": "queue"}, headers=h)
    assert r.status_code == 403

    with session_scope(client.application) as s:
        moves = (
            s.query(Activity)
            .filter(Activity.request_id == a["id"], Activity.activity_type == "status_change")
            .order_by(Activity.id.asc())
            .all()
        )
        assert [m.metadata_json["to_status"] for m in moves] == ["active", "review", "done"]
        # The client user of Acme was told about the admin's moves.
        carla = s.query(User).filter(User.email == "client@acme.com").one()
        notes = s.query(Notification).filter(Notification.user_id == carla.id, Notification.type == "status_change").all()
        assert len(notes) == 2


def test_update_and_delete_permissions(client):
    h = _login(client, "client@acme.com")
    req = _create(client, h, title="Brochure")

    r = client.patch(f"/api/requests/{req['id']}", json={"priority": "high", "sla_hours": 5}, headers=h)
    assert r.status_code == 200
    assert r.json["priority"] == "high"
    assert r.json["sla_hours"] is None

    r = client.patch(f"/api/requests/{req['id']}", json={"sla_hours": 5}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "No valid fields to update"

    h = _login(client, "admin@example.com")
    r = client.patch(f"/api/requests/{req['id']}", json={"due_date": "2030-01-02T10:00:00Z"}, headers=h)
    assert r.status_code == 200
    assert r.json["due_date"] == "2030-01-02T10:00:00"
    assert r.json["sla_status"] == "on_track"

    r = client.post(f"/api/requests/{req['id']}/move", json={"status": "active"}, headers=h)
    assert r.status_code == 200

    h = _login(client, "client@acme.com")
    r = client.delete(f"/api/requests/{req['id']}", headers=h)
    assert r.status_code == 403

    h = _login(client, "admin@example.com")
    r = client.delete(f"/api/requests/{req['id']}", headers=h)
    assert r.status_code == 204

    with session_scope(client.application) as s:
        assert s.get(Request, req["id"]) is None
        assert s.query(Activity).filter(Activity.request_id == req["id"]).count() == 0


def test_comments_internal_notes_and_mentions(client):
    _, users = _ids(client)
    h = _login(client, "client@acme.com")
    req = _create(client, h, title="Menu redesign")

    r = client.post(f"/api/requests/{req['id']}/comments", json={"content": "   "}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "Comment content is required"

    r = client.post(f"/api/requests/{req['id']}/comments", json={"content": "Looks good", "is_internal": True}, headers=h)
    assert r.status_code == 201
    assert r.json["is_internal"] is False

    h = _login(client, "admin@example.com")
    r = client.post(
        f"/api/requests/{req['id']}/comments",
        json={"content": "Team only", "is_internal": True},
        headers=h,
    )
    assert r.status_code == 201
    assert r.json["is_internal"] is True

    mention = f'<p>Hey <span data-mention-id="{users["client@acme.com"]}">@Carla</span></p>'
    r = client.post(f"/api/requests/{req['id']}/comments", json={"content": mention}, headers=h)
    assert r.status_code == 201

    r = client.get(f"/api/requests/{req['id']}/comments")
    assert len(r.json) == 3

    h = _login(client, "client@acme.com")
    r = client.get(f"/api/requests/{req['id']}/comments")
    assert [c["content"] for c in r.json] == ["Looks good", mention]

    h = _login(client, "client@globex.com")
    r = client.post(f"/api/requests/{req['id']}/comments", json={"content": "sneaky"}, headers=h)
    assert r.status_code == 403

    with session_scope(client.application) as s:
        kinds = [
            n.type
            for n in s.query(Notification)
            .filter(Notification.user_id == users["client@acme.com"])
            .order_by(Notification.id.asc())
            .all()
        ]
        assert kinds == ["comment", "mention"]
        # Internal notes only go to the other admins.
        admin2 = s.query(Notification).filter(Notification.user_id == users["admin2@example.com"]).all()
        assert [n.type for n in admin2] == ["comment"]


def test_assignment_flow(client):
    companies, users = _ids(client)
    h = _login(client, "admin@example.com")
    req = _create(client, h, title="Ads", company_id=companies["Acme"])

    r = client.post(f"/api/requests/{req['id']}/assign", json={"user_id": users["client@acme.com"]}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "Can only assign to admin users"

    r = client.post(f"/api/requests/{req['id']}/assign", json={"user_id": users["admin2@example.com"]}, headers=h)
    assert r.status_code == 200
    assert r.json["assignee"]["email"] == "admin2@example.com"

    r = client.post(f"/api/requests/{req['id']}/assignments", json={"assigned_to": users["admin@example.com"]}, headers=h)
    assert r.status_code == 201
    assignment_id = r.json["id"]

    r = client.post(f"/api/requests/{req['id']}/assignments", json={"assigned_to": users["admin@example.com"]}, headers=h)
    assert r.status_code == 400

    r = client.patch(
        f"/api/requests/{req['id']}/assignments/{assignment_id}",
        json={"status": "in_progress"},
        headers=h,
    )
    assert r.status_code == 200
    assert r.json["status"] == "in_progress"
    assert r.json["started_at"] is not None

    r = client.delete(f"/api/requests/{req['id']}/assignments?assignment_id={assignment_id}", headers=h)
    assert r.status_code == 200

    r = client.delete(f"/api/requests/{req['id']}/assignments", headers=h)
    assert r.status_code == 400
    assert r.json["code"] == "MISSING_FIELD"

    with session_scope(client.application) as s:
        assert s.query(RequestAssignment).count() == 0
        assert s.get(Request, req["id"]).assigned_to is None
        n = s.query(Notification).filter(Notification.user_id == users["admin2@example.com"], Notification.type == "assignment").count()
        assert n == 1


def test_bulk_actions(client):
    companies, users = _ids(client)
    h = _login(client, "admin@example.com")
    ids = [_create(client, h, title=f"R{i}", company_id=companies["Globex"])["id"] for i in range(3)]

    r = client.post("/api/requests/bulk", json={"request_ids": ids, "action": "update_priority", "value": "high"}, headers=h)
    assert r.status_code == 200
    assert r.json == {"success": True, "updated": 3}

    r = client.post("/api/requests/bulk", json={"request_ids": ids, "action": "update_priority", "value": "urgent"}, headers=h)
    assert r.status_code == 400

    r = client.post("/api/requests/bulk", json={"request_ids": ids[:2], "action": "update_status", "value": "done"}, headers=h)
    assert r.status_code == 200

    r = client.post(
        "/api/requests/bulk",
        json={"request_ids": ids, "action": "assign", "value": str(users["admin2@example.com"])},
        headers=h,
    )
    assert r.status_code == 200

    r = client.post("/api/requests/bulk", json={"request_ids": [], "action": "delete"}, headers=h)
    assert r.status_code == 400

    r = client.post("/api/requests/bulk", json={"request_ids": ids[2:], "action": "delete"}, headers=h)
    assert r.json == {"success": True, "deleted": 1}

    with session_scope(client.application) as s:
        rows = s.query(Request).order_by(Request.id.asc()).all()
        assert [(r.status, r.priority) for r in rows] == [("done", "high"), ("done", "high")]
        assert all(r.completed_at is not None for r in rows)
        assert all(r.assigned_to == users["admin2@example.com"] for r in rows)
        assert s.query(RequestAssignment).count() == 2

    h = _login(client, "client@globex.com")
    r = client.post("/api/requests/bulk", json={"request_ids": ids, "action": "delete"}, headers=h)
    assert r.status_code == 403


def test_create_from_template_fills_defaults(client):
    companies, _ = _ids(client)
    with session_scope(client.application) as s:
        tpl = RequestTemplate(
            name="Blog post",
            title_template="Monthly blog post",
            description_template="Write 800 words",
            default_priority="high",
            default_sla_hours=48,
            is_active=True,
            is_global=True,
        )
        private = RequestTemplate(
            name="Globex only",
            title_template="Globex thing",
            company_id=companies["Globex"],
            is_active=True,
            is_global=False,
        )
        s.add_all([tpl, private])
        s.flush()
        tpl_id, private_id = tpl.id, private.id

    h = _login(client, "client@acme.com")
    r = client.post("/api/requests", json={"template_id": tpl_id}, headers=h)
    assert r.status_code == 201
    assert r.json["title"] == "Monthly blog post"
    assert r.json["priority"] == "high"
    assert r.json["sla_hours"] == 48

    r = client.post("/api/requests", json={"template_id": tpl_id, "title": "Custom", "priority": "low"}, headers=h)
    assert r.json["title"] == "Custom"
    assert r.json["priority"] == "low"

    r = client.post("/api/requests", json={"template_id": private_id}, headers=h)
    assert r.status_code == 403


def test_file_upload_download_and_delete(client):
    h = _login(client, "client@acme.com")
    req = _create(client, h, title="Photos")

    r = client.post(
        f"/api/requests/{req['id']}/files",
        data={"file": (io.BytesIO(b"\x89PNG fake"), "logo.png", "image/png")},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 201, r.json
    assert r.json["file_type"] == "image"
    file_id = r.json["id"]

    r = client.post(
        f"/api/requests/{req['id']}/files",
        data={"file": (io.BytesIO(b"MZ"), "tool.exe", "application/x-msdownload")},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 400

    r = client.get(f"/api/requests/{req['id']}/files/{file_id}/download")
    assert r.status_code == 200
    assert r.data == b"\x89PNG fake"

    r = client.get(f"/api/requests/{req['id']}/files")
    assert [f["file_name"] for f in r.json] == ["logo.png"]

    r = client.delete(f"/api/requests/{req['id']}/files?file_id={file_id}", headers=h)
    assert r.status_code == 200

    with session_scope(client.application) as s:
        assert s.query(RequestFile).count() == 0
        types = [a.activity_type for a in s.query(Activity).order_by(Activity.id.asc()).all()]
        assert types == ["created", "file_upload", "file_delete"]


def test_assignee_in_responses_follows_assignment_changes(client):
    companies, users = _ids(client)
    h = _login(client, "admin@example.com")
    req = _create(client, h, title="Logo refresh", company_id=companies["Acme"])
    assert req["assignee"] is None

    r = client.post(f"/api/requests/{req['id']}/assign", json={"user_id": users["admin2@example.com"]}, headers=h)
    assert r.status_code == 200
    assert r.json["assigned_to"] == users["admin2@example.com"]
    assert r.json["assignee"]["email"] == "admin2@example.com"

    r = client.post(f"/api/requests/{req['id']}/assign", json={"user_id": None}, headers=h)
    assert r.status_code == 200
    assert r.json["assigned_to"] is None
    assert r.json["assignee"] is None

    r = client.post(f"/api/requests/{req['id']}/assignments", json={"assigned_to": users["admin@example.com"]}, headers=h)
    assert r.status_code == 201
    assert r.json["assignee"]["email"] == "admin@example.com"
    r = client.get(f"/api/requests/{req['id']}")
    assert r.json["assignee"]["email"] == "admin@example.com"

    r = client.post(
        "/api/requests/bulk",
        json={"request_ids": [req["id"]], "action": "assign", "value": str(users["admin2@example.com"])},
        headers=h,
    )
    assert r.status_code == 200
    r = client.get(f"/api/requests/{req['id']}")
    assert r.json["assignee"]["email"] == "admin2@example.com"


def test_tag_only_title_is_rejected_on_update(client):
    h = _login(client, "client@acme.com")
    req = _create(client, h, title="Flyer")

    r = client.patch(f"/api/requests/{req['id']}", json={"title": "<b></b>"}, headers=h)
    assert r.status_code == 400
    assert r.json["code"] == "MISSING_FIELD"

    r = client.patch(f"/api/requests/{req['id']}", json={"title": "<i>Poster</i>"}, headers=h)
    assert r.status_code == 200
    assert r.json["title"] == "Poster"


def test_out_of_range_ids_are_validation_errors(client):
    h = _login(client, "admin@example.com")

    r = client.post("/api/requests/bulk", json={"request_ids": [1e300], "action": "delete"}, headers=h)
    assert r.status_code == 400
    assert r.json["code"] == "VALIDATION_ERROR"

    r = client.post("/api/requests", json={"title": "Huge", "company_id": 2**64}, headers=h)
    assert r.status_code == 400
    assert r.json["code"] == "VALIDATION_ERROR"

    req = _create(client, h, title="Banner", company_id=1)
    r = client.delete(f"/api/requests/{req['id']}/assignments?assignment_id=99999999999", headers=h)
    assert r.status_code == 400
    assert r.json["code"] == "INVALID_INPUT"
