from __future__ import annotations

import math
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import DATABASE_URL
from .errors import ValidationError


def make_engine(url: str = DATABASE_URL):
    # SQLite est partagé entre les threads de l'API et du scheduler
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(
        url,
        echo=False,              # True pour voir les requêtes
        future=True,
        connect_args=connect_args,
    )


engine = make_engine()

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
    expire_on_commit=False
)


class Base(DeclarativeBase):
    """Base ORM de tous les modèles."""
    pass


@contextmanager
def db_session() -> Iterator[Session]:
    """
    Context manager de session :
    - commit si tout va bien
    - rollback sur exception (aucune écriture partielle)
    - close toujours
    """
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =========================
# Pagination
# =========================
@dataclass
class Page:
    items: list[Any]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def check_paging(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("La page doit être supérieure ou égale à 1")
    if not 1 <= limit <= 100:
        raise ValidationError("La limite doit être comprise entre 1 et 100")
