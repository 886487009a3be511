"""
Synchronous database engine and session for the billing worker.

Celery tasks and the CLI both run the lifecycle synchronously (psycopg2).
"""
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from billing_engine.core.config import settings

engine_sync = create_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_size=settings.DATABASE_POOL_SIZE + settings.BILLING_MAX_WORKERS,
    max_overflow=settings.DATABASE_MAX_OVERFLOW,
    pool_pre_ping=True,
)

SyncSessionLocal = sessionmaker(
    bind=engine_sync,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


@contextmanager
def get_sync_db() -> Generator[Session, None, None]:
    """
    Context manager para sessao sincrona do banco.

    Uso:
        with get_sync_db() as db:
            db.execute(...)
    """
    session = SyncSessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
