"""Engine and session factory.

Every provider reconciler runs in its own thread with its own Session from
SessionLocal; a Session object is never shared between threads.

    from codsync.database import SessionLocal, get_db
"""

import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


def _get_database_url() -> str:
    """DATABASE_URL from the environment, falling back to backend/.env.

    Raises:
        RuntimeError: DATABASE_URL is set nowhere
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        from codsync.utils.env import load_env_file

        load_env_file()
        url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set (export it or add it to backend/.env)")
    return url


DATABASE_URL = _get_database_url()

if DATABASE_URL.startswith("sqlite"):
    # Tests and local runs. The busy timeout makes concurrent reconciler
    # threads wait on the file lock instead of failing with "database is locked".
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,  # one connection per provider thread on top of API traffic
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one Session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
