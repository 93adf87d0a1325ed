from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.sopdesk.db import make_engine, make_sessionmaker


@contextmanager
def session_scope_for_url(db_url: str) -> Generator[Session, None, None]:
    """Standalone session for scripts that run without the Flask app."""
    engine = make_engine(db_url)
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
