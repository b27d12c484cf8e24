import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from app.core.config import settings as core_settings
from app.database import get_db
from app.main import app
from app.routes.calls import upload_limiter
from app.services.magic_links import issue_magic_token
from app.services.notifications import create_notification
from app.services.usage_guard import acquire_processing_lock


@pytest.fixture(autouse=True)
def override_db(session_factory):
    def _get_db():
        with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    upload_limiter.reset()
    yield
    app.dependency_overrides.clear()
    upload_limiter.reset()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def login(db):
    def _login(test_client: TestClient, email: str) -> dict:
        token = issue_magic_token(db, email=email)
        db.commit()
        response = test_client.get("/auth/magic/verify", params={"token": token})
        assert response.status_code == 200, response.text
        user = response.json()["user"]
        user["organization_id"] = db.execute(
            text("SELECT organization_id FROM user_organizations WHERE user_id = :id"), {"id": user["id"]}
        ).scalar()
        return user

    return _login


def test_protected_route_requires_session(client):
    response = client.get("/api/loads")

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_magic_link_rejects_bad_email(client):
    response = client.post("/auth/magic/send", json={"email": "not-an-email"})

    assert response.status_code == 400
    assert response.json() == {"error": "Enter a valid email."}


def test_magic_link_is_single_use(client, db):
    token = issue_magic_token(db, email="once@acme.test")
    db.commit()

    first = client.get("/auth/magic/verify", params={"token": token})
    second = client.get("/auth/magic/verify", params={"token": token})

    assert first.status_code == 200
    assert first.json()["created"] is True
    assert second.status_code == 400


def test_logout_ends_session(client, login):
    login(client, "dispatch@acme.test")
    assert client.get("/api/loads").status_code == 200

    client.post("/auth/logout")

    assert client.get("/api/loads").status_code == 401


def test_loads_are_isolated_between_organizations(client, login):
    login(client, "dispatch@acme.test")
    created = client.post("/api/loads", json={"shipper_name": "Great Lakes Foods", "origin_city": "Chicago"})
    assert created.status_code == 200
    load_id = created.json()["load"]["id"]
    assert client.get(f"/api/loads/{load_id}").json()["status"] == "quoted"

    with TestClient(app) as rival:
        login(rival, "ops@rival.test")
        response = rival.get(f"/api/loads/{load_id}")
        listing = rival.get("/api/loads")

    assert response.status_code == 404
    assert response.json() == {"error": "Load not found"}
    assert listing.json()["loads"] == []


def test_status_change_reports_missing_fields(client, login):
    login(client, "dispatch@acme.test")
    load_id = client.post("/api/loads", json={"shipper_name": "Great Lakes Foods"}).json()["load"]["id"]

    response = client.post(f"/api/loads/{load_id}/status", json={"status": "needs_carrier"})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Missing required fields for this transition"
    assert "rate_to_shipper" in body["details"]["missing_fields"]


def test_validation_errors_use_error_shape(client, login):
    login(client, "dispatch@acme.test")
    load_id = client.post("/api/loads", json={"shipper_name": "Great Lakes Foods"}).json()["load"]["id"]

    response = client.post(f"/api/loads/{load_id}/status", json={})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Invalid request"
    assert body["details"][0]["field"].endswith("status")


def test_upload_stores_recording(client, login, monkeypatch, tmp_path):
    monkeypatch.setattr(core_settings, "RECORDING_STORAGE_ROOT", str(tmp_path))
    login(client, "dispatch@acme.test")

    response = client.post(
        "/api/calls/upload",
        files={"file": ("broker call.mp3", b"ID3" + b"\x00" * 1024, "audio/mpeg")},
        data={"customer_name": "Great Lakes Foods"},
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["status"] == "uploaded"
    assert body["estimated_minutes"] == 1
    assert list(tmp_path.rglob("broker_call.mp3"))


def test_upload_rejects_unsupported_type(client, login):
    login(client, "dispatch@acme.test")

    response = client.post("/api/calls/upload", files={"file": ("notes.txt", b"hello", "text/plain")})

    assert response.status_code == 400
    assert response.json()["error"] == "Unsupported file type"


def test_upload_blocked_at_overage_cap(client, db, login):
    user = login(client, "dispatch@acme.test")
    db.execute(
        text("UPDATE organizations SET usage_minutes_current = usage_minutes_limit + 100 WHERE id = :id"),
        {"id": user["organization_id"]},
    )
    db.commit()

    response = client.post("/api/calls/upload", files={"file": ("call.mp3", b"ID3", "audio/mpeg")})

    assert response.status_code == 402
    body = response.json()
    assert "$20 overage cap" in body["error"]
    assert body["details"]["allowed"] is False


def test_upload_rate_limited(client, login):
    login(client, "dispatch@acme.test")

    statuses = [
        client.post("/api/calls/upload", files={"file": ("notes.txt", b"x", "text/plain")}).status_code
        for _ in range(core_settings.UPLOAD_RATE_LIMIT + 1)
    ]

    assert statuses[:-1] == [400] * core_settings.UPLOAD_RATE_LIMIT
    assert statuses[-1] == 429


def test_notifications_include_organization_wide(client, db, login):
    user = login(client, "dispatch@acme.test")
    create_notification(
        db,
        notification_type="usage_warning",
        title="90% of minutes used",
        message="You have used 54 of 60 minutes.",
        organization_id=user["organization_id"],
    )
    create_notification(
        db,
        notification_type="call_completed",
        title="Call processed",
        message="Your call is ready.",
        user_id=user["id"],
        organization_id=user["organization_id"],
    )
    create_notification(db, notification_type="other", title="Not yours", message="-", user_id=user["id"] + 100)
    db.commit()

    listing = client.get("/api/notifications").json()
    assert listing["unread_count"] == 2
    assert {item["title"] for item in listing["notifications"]} == {"90% of minutes used", "Call processed"}

    assert client.post("/api/notifications/mark-read").json() == {"updated": 2}
    assert client.get("/api/notifications/unread-count").json() == {"unread_count": 0}


def test_cron_requires_bearer_secret(client, monkeypatch):
    monkeypatch.setattr(core_settings, "CRON_SECRET", "cron-secret")

    denied = client.post("/api/cron/gdpr-deletions")
    wrong = client.post("/api/cron/gdpr-deletions", headers={"Authorization": "Bearer nope"})
    allowed = client.get("/api/cron/gdpr-deletions", headers={"Authorization": "Bearer cron-secret"})

    assert denied.status_code == 401
    assert wrong.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json() == {"success": True, "processed": [], "failed": []}


def test_cron_refuses_when_secret_unset(client, monkeypatch):
    monkeypatch.setattr(core_settings, "CRON_SECRET", "")

    response = client.post("/api/cron/payouts", headers={"Authorization": "Bearer "})

    assert response.status_code == 401


def test_admin_requires_token(client, monkeypatch):
    monkeypatch.setattr(core_settings, "ADMIN_TOKEN", "admin-token")

    denied = client.post("/api/admin/cleanup-stuck-calls")
    allowed = client.post("/api/admin/cleanup-stuck-calls", headers={"X-Admin-Token": "admin-token"})

    assert denied.status_code == 403
    assert denied.json() == {"error": "forbidden"}
    assert allowed.status_code == 200
    assert allowed.json()["cleaned"] == 0


def test_process_blocked_at_overage_cap(client, db, login, make_call):
    user = login(client, "dispatch@acme.test")
    db.execute(
        text("UPDATE organizations SET usage_minutes_current = usage_minutes_limit + 100 WHERE id = :id"),
        {"id": user["organization_id"]},
    )
    db.commit()
    call_id = make_call(user["organization_id"], user_id=user["id"])

    response = client.post(f"/api/calls/{call_id}/process")

    assert response.status_code == 402
    body = response.json()
    assert "$20 overage cap" in body["error"]
    assert body["details"]["allowed"] is False


def test_process_conflicts_with_live_lock(client, db, login, make_call):
    user = login(client, "dispatch@acme.test")
    call_id = make_call(user["organization_id"], user_id=user["id"])
    acquire_processing_lock(db, organization_id=user["organization_id"], call_id=call_id, estimated_minutes=1)
    db.commit()

    response = client.post(f"/api/calls/{call_id}/process")

    assert response.status_code == 409
    assert response.json() == {"error": "Call is already being processed"}


def test_process_unknown_call(client, login):
    login(client, "dispatch@acme.test")

    response = client.post("/api/calls/999999/process")

    assert response.status_code == 404


def test_non_ascii_secrets_are_rejected(client, monkeypatch):
    monkeypatch.setattr(core_settings, "CRON_SECRET", "cron-secret")
    monkeypatch.setattr(core_settings, "ADMIN_TOKEN", "admin-token")

    cron = client.post("/api/cron/payouts", headers={"Authorization": "Bearer crön".encode("latin-1")})
    admin = client.post("/api/admin/cleanup-stuck-calls", headers={"X-Admin-Token": "tökén".encode("latin-1")})

    assert cron.status_code == 401
    assert admin.status_code == 403
