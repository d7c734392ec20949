# sparetime/storage/db.py
from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from core.settings import DB_PATH

# Ensure SQLModel metadata is populated
import models.task  # noqa: F401
import models.sync_state  # noqa: F401
from storage import migrations


_engine = None


def create_db_engine(path: Optional[Path] = None):
    if path is None:
        # one shared in-memory database for every session
        return create_engine(
            "sqlite://",
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(f"sqlite:///{Path(path).as_posix()}", echo=False)


def get_engine():
    global _engine
    if _engine is None:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_db_engine(DB_PATH)
    return _engine


def init_db(engine=None):
    actual = engine or get_engine()
    SQLModel.metadata.create_all(actual)
    migrations.run_all(actual)
    return actual


def get_session() -> Session:
    return Session(get_engine())


def session_factory_for(engine):
    def factory() -> Session:
        return Session(engine)

    return factory


__all__ = ["create_db_engine", "get_engine", "init_db", "get_session", "session_factory_for"]
