# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
import os
from typing import Any, Dict, Generator, Tuple

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

DEFAULT_DATABASE_URL = "sqlite:///./catering_payments.db"


def _resolve_database_url(raw_url: str | None) -> Tuple[URL, Dict[str, Any]]:
    """Normalize the DATABASE_URL environment variable for SQLAlchemy.

    Hosted Postgres requires SSL and the psycopg driver. We upgrade plain postgres
    URLs to use the psycopg driver and inject sslmode=require when it is absent.
    """
    if not raw_url:
        return make_url(DEFAULT_DATABASE_URL), {"check_same_thread": False}

    url = make_url(raw_url)

    if url.drivername.startswith("sqlite"):
        return url, {"check_same_thread": False}

    if url.drivername in {"postgres", "postgresql"}:
        url = url.set(drivername="postgresql+psycopg")

    query = dict(url.query)
    if "sslmode" not in query and url.drivername.startswith("postgresql"):
        query["sslmode"] = "require"
        url = url.set(query=query)

    return url, {}


def create_db_engine(raw_url: str | None = None) -> Engine:
    url, connect_args = _resolve_database_url(raw_url if raw_url is not None else os.getenv("DATABASE_URL"))
    return create_engine(url, future=True, pool_pre_ping=True, connect_args=connect_args)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


engine = create_db_engine()
SessionLocal = make_session_factory(engine)
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

