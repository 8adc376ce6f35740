"""Database session helpers for both async (API) and sync (worker) contexts."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings


settings = get_settings()

async_engine = create_async_engine(settings.database_url, echo=False)
AsyncSessionFactory = async_sessionmaker(async_engine, expire_on_commit=False)

sync_engine = create_engine(settings.sync_database_url, pool_pre_ping=True)
SyncSessionFactory = sessionmaker(bind=sync_engine, expire_on_commit=False)


@contextmanager
def get_sync_session() -> Iterator[Session]:
    """Context manager for Celery tasks that drive a render run."""

    with SyncSessionFactory() as session:
        yield session
