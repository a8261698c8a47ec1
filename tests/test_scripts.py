import pytest
from sqlalchemy import inspect
from werkzeug.security import check_password_hash

from app.desk.db import build_engine
from app.desk.models import Base, User
from app.desk.modules.complaints.models import Category
from app.desk.modules.sla.models import SlaPolicy
from scripts import init_db, release, start
from scripts._db_utils import script_session


def test_seed_is_idempotent(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'seed.db'}"
    engine = build_engine(db_url)
    Base.metadata.create_all(engine)
    engine.dispose()

    monkeypatch.setenv("ADMIN_EMAIL", "Root@Example.edu")
    monkeypatch.setenv("ADMIN_PASSWORD", "first")
    init_db.seed_only(database_url=db_url)
    monkeypatch.setenv("ADMIN_PASSWORD", "second")
    init_db.seed_only(database_url=db_url)

    with script_session(db_url) as s:
        admin = s.query(User).filter(User.email == "root@example.edu").one()
        assert admin.role_keys == ["admin"]
        assert check_password_hash(admin.password_hash, "first")
        assert s.query(Category).count() == len(init_db.DEFAULT_CATEGORIES)
        assert s.query(SlaPolicy).count() == 4


def test_release_migrates_to_head(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'release.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("ENV", "test")
    release.run_release(seed=False)

    engine = build_engine(db_url)
    tables = set(inspect(engine).get_table_names())
    engine.dispose()
    assert set(Base.metadata.tables) <= tables
    assert "alembic_version" in tables


def test_release_refuses_sqlite_in_production(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///prod.db")
    monkeypatch.setenv("ENV", "production")
    with pytest.raises(RuntimeError, match="SQLite"):
        release.run_release()


def test_gunicorn_argv_uses_threaded_workers(monkeypatch):
    monkeypatch.setenv("GUNICORN_THREADS", "8")
    monkeypatch.delenv("GUNICORN_TIMEOUT", raising=False)
    argv = start.gunicorn_argv(9000)
    assert argv[:2] == ["gunicorn", "app.wsgi:app"]
    assert argv[argv.index("--bind") + 1] == "0.0.0.0:9000"
    assert argv[argv.index("--worker-class") + 1] == "gthread"
    assert argv[argv.index("--threads") + 1] == "8"
    assert argv[argv.index("--timeout") + 1] == "120"
