"""Database session and engine setup."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from newsai.core.settings import PATHS

DATABASE_URL = f"sqlite:///{PATHS.db_path}"


def build_engine(database_url: str = DATABASE_URL) -> Engine:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        # Pollers and the request handlers share the engine across threads.
        connect_args["check_same_thread"] = False
    return create_engine(database_url, echo=False, future=True, connect_args=connect_args)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False)


engine = build_engine()
SessionLocal = build_session_factory(engine)
