import pytest
from werkzeug.security import generate_password_hash

from app.desk import create_app
from app.desk.auth import _login_attempts
from app.desk.db import session_scope
from app.desk.models import Base, User
from app.desk.rbac import ensure_roles


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_ROOT", str(tmp_path / "storage"))
    for k in (
        "S3_ENDPOINT",
        "S3_BUCKET",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
        "RESEND_API_KEY",
        "AI_GATEWAY_API_KEY",
        "CSRF_ENABLED",
        "WIDGET_ALLOWED_ORIGINS",
        "SITE_URL",
        "SLA_AT_RISK_FRACTION",
    ):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = ensure_roles(s)
        for email, name, role in (
            ("admin@example.com", "Ada Admin", "admin"),
            ("student@example.com", "Sam Student", "student"),
            ("other@example.com", "Olive Other", "student"),
        ):
            u = User(email=email, password_hash=generate_password_hash("pw"), full_name=name, is_active=True)
            u.roles.append(roles[role])
            s.add(u)

    _login_attempts.clear()
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def login(client):
    def _login(email: str, password: str = "pw"):
        return client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=False)

    return _login


@pytest.fixture()
def users(app):
    """id lookup by email for the seeded accounts."""
    with session_scope(app) as s:
        return {u.email: u.id for u in s.query(User).all()}
