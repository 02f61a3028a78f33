from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

from dependabot_server.config import settings


def make_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # background work hops threads via asyncio.to_thread
        connect_args["check_same_thread"] = False
    return create_engine(url, pool_pre_ping=True, future=True, connect_args=connect_args)


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def db_session(session_factory: Any = None):
    """Session for background code: commit on success, rollback on error, always close."""
    factory = session_factory or SessionLocal
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@asynccontextmanager
async def async_db_session(session_factory: Any = None):
    """db_session for coroutines; every blocking session call goes through asyncio.to_thread."""
    factory = session_factory or SessionLocal
    session = factory()
    try:
        yield session
        await asyncio.to_thread(session.commit)
    except Exception:
        await asyncio.to_thread(session.rollback)
        raise
    finally:
        await asyncio.to_thread(session.close)
