from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.desk.db import build_engine, make_sessionmaker


@contextmanager
def script_session(db_url: str) -> Generator[Session, None, None]:
    """
    Standalone session for release/seed scripts that must not build the Flask
    app. Shares engine setup with the app (sqlite FK pragma, postgres pool).
    """
    engine = build_engine(db_url, pool_tuning=False)
    s: Session = make_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
