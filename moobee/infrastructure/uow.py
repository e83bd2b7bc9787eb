from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session, sessionmaker


class UnitOfWork:
    """Commit-or-rollback scope over a fresh session."""

    def __init__(self, SessionLocal: sessionmaker[Session]):
        self.SessionLocal = SessionLocal

    @classmethod
    def sharing_bind(cls, session: Session) -> UnitOfWork:
        """Unit of work on the same engine as ``session`` but in its own transaction."""
        return cls(sessionmaker(bind=session.get_bind(), expire_on_commit=False, future=True))

    @contextmanager
    def begin(self) -> Iterator[Session]:
        s = self.SessionLocal()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()
