from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import QueuePool
from .config import settings
import logging
from typing import Any

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        # Local tooling and unit tests; the scheduler reads from worker threads.
        return {"connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_pre_ping": True,  # Verify connections before using
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,  # Recycle connections every 30 min
        "echo": False,
    }


try:
    engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))
except Exception as e:
    logger.error("Failed to create database engine: %s", e)
    raise
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base: Any = declarative_base()


def get_db():
    """Yield a session and always close it."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
