import pytest

from app.desk.db import session_scope
from app.desk.models import AuditEvent, User
from app.desk.storage import StorageError, missing_settings, storage_from_config


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200


def test_login_and_admin_access(client, login):
    # Anonymous is sent to the login page
    r = client.get("/admin/")
    assert r.status_code in (302, 403)

    r = login("admin@example.com")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin/")

    r = client.get("/admin/")
    assert r.status_code == 200


def test_student_lands_on_portal_and_is_kept_out_of_admin(client, login):
    r = login("student@example.com")
    assert r.status_code == 302
    assert "/portal/" in r.headers["Location"]

    assert client.get("/portal/dashboard").status_code == 200
    assert client.get("/admin/").status_code == 403
    assert client.get("/admin/complaints").status_code == 403


def test_bad_password_is_rejected_and_audited(client, login):
    r = login("admin@example.com", "wrong")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]
    assert client.get("/admin/").status_code == 302

    with session_scope(client.application) as s:
        actions = [e.action for e in s.query(AuditEvent).all()]
        assert "auth.login_failed" in actions


def test_register_creates_student_account(client):
    r = client.post(
        "/auth/register",
        data={
            "email": "New.Student@Example.com",
            "full_name": "New Student",
            "department": "Physics",
            "password": "long-enough",
        },
        follow_redirects=False,
    )
    assert r.status_code == 302
    assert "/portal/dashboard" in r.headers["Location"]

    with session_scope(client.application) as s:
        u = s.query(User).filter(User.email == "new.student@example.com").one()
        assert u.role_keys == ["student"]
        assert u.department == "Physics"


def test_register_rejects_short_password_and_duplicate_email(client):
    r = client.post(
        "/auth/register",
        data={"email": "x@example.com", "full_name": "X", "password": "short"},
    )
    assert r.status_code == 400

    r = client.post(
        "/auth/register",
        data={"email": "student@example.com", "full_name": "Dup", "password": "long-enough"},
    )
    assert r.status_code == 400


def test_storage_settings_check():
    assert missing_settings({"STORAGE_BACKEND": "local"}) == []
    assert missing_settings({"STORAGE_BACKEND": "S3", "S3_BUCKET": "b", "S3_ENDPOINT": " "}) == [
        "S3_ENDPOINT",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
    ]


def test_local_storage_rejects_escaping_keys(tmp_path):
    store = storage_from_config({"LOCAL_STORAGE_ROOT": str(tmp_path / "blobs")})
    store.put_bytes("complaints/1/a.txt", b"hello")
    assert store.exists("complaints/1/a.txt")
    with store.open("complaints/1/a.txt") as f:
        assert f.read() == b"hello"
    store.delete("complaints/1/a.txt")
    assert not store.exists("complaints/1/a.txt")
    with pytest.raises(StorageError):
        store.put_bytes("../outside.txt", b"x")
