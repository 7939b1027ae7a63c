"""Application startup logic (logging, DB bootstrap, storage check, scheduled emails)."""

import logging
import os

from .config import settings
from .db import Base, engine
from .logging_utils import install_log_sanitizer
from .scheduled_emails import ScheduledEmailScheduler, build_scheduler

logger = logging.getLogger(__name__)

_scheduler: ScheduledEmailScheduler | None = None


def init_db() -> None:
    # Importing models registers every table on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def check_storage() -> bool:
    from .storage import ObjectStorageClient

    try:
        reachable = ObjectStorageClient().check_connection()
    except Exception as e:
        logger.warning("Storage check skipped (non-fatal): %s", e)
        return False
    if reachable:
        logger.info("Storage bucket %s verified", settings.AWS_S3_BUCKET)
    return reachable


def start_scheduled_jobs() -> ScheduledEmailScheduler | None:
    global _scheduler
    if not settings.ENABLE_SCHEDULED_EMAIL_JOBS:
        logger.info("Scheduled email jobs disabled by configuration")
        return None
    if _scheduler is None:
        _scheduler = build_scheduler()
    _scheduler.start()
    return _scheduler


def stop_scheduled_jobs() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.stop()
        _scheduler = None


def startup() -> None:
    """Process startup hook: logging, schema bootstrap, storage check, email jobs."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    install_log_sanitizer()
    logger.info("Starting Revure post-production services (%s)...", settings.ENV)

    if os.getenv("SKIP_DB_BOOTSTRAP", "").strip().lower() in ("1", "true", "yes"):
        logger.info("SKIP_DB_BOOTSTRAP=true -> skipping create_all")
    else:
        init_db()

    check_storage()
    start_scheduled_jobs()


def shutdown() -> None:
    stop_scheduled_jobs()
    logger.info("Revure post-production services stopped")
