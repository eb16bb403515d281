from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from geoattend.settings import get_settings

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str, *, timeout_seconds: float) -> Engine:
    connect_args: dict[str, Any] = {}
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    else:
        timeout_ms = max(1, int(timeout_seconds * 1000))
        connect_args["options"] = f"-c statement_timeout={timeout_ms}"
        engine_kwargs["pool_timeout"] = timeout_seconds
    return create_engine(database_url, connect_args=connect_args, **engine_kwargs)


settings = get_settings()
engine = build_engine(settings.database_url, timeout_seconds=settings.storage_timeout_seconds)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
