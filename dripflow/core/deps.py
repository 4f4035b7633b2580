from collections.abc import Iterator

from fastapi import Header
from sqlalchemy.orm import Session, sessionmaker

from dripflow.db.session import SessionLocal


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Session factory for work that must open its own sessions (batch recalculation)."""
    return SessionLocal


def get_actor(x_actor: str | None = Header(default=None, max_length=120)) -> str | None:
    # Free-form operator label recorded on audit rows; authentication lives upstream.
    value = (x_actor or "").strip()
    return value or None
