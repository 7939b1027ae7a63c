"""
Background tasks for Revure post-production
Runs the shoot email jobs, large file uploads and notification email delivery.
"""

import logging
from dataclasses import asdict
from functools import lru_cache
from typing import Any

from celery import Celery

from .config import settings
from .scheduled_emails import JOB_NAMES, build_scheduler

logger = logging.getLogger(__name__)

celery_app = Celery(
    "revure-postproduction", broker=settings.REDIS_URL, backend=settings.REDIS_URL
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,  # 1 hour max per task
    task_default_queue=settings.CELERY_QUEUE,
)

_interval_seconds = settings.SHOOT_REMINDER_JOB_INTERVAL_MINUTES * 60

celery_app.conf.beat_schedule = {
    f"{job}-every-interval": {
        "task": "run_scheduled_email_job",
        "schedule": float(_interval_seconds),
        "args": (job,),
    }
    for job in JOB_NAMES
}
celery_app.conf.beat_schedule["send-pending-notification-emails"] = {
    "task": "send_pending_notification_emails",
    "schedule": 300.0,
}
celery_app.conf.beat_schedule["cleanup-old-notifications"] = {
    "task": "cleanup_old_notifications",
    "schedule": 86400.0,
}


@celery_app.task(bind=True, name="run_scheduled_email_job")
def run_scheduled_email_job(self, job: str) -> dict[str, Any]:
    """
    Run one shoot email job.

    Overlap is guarded per worker process; the sentinel ledger keeps sends
    idempotent across processes.
    """
    if not settings.ENABLE_SCHEDULED_EMAIL_JOBS:
        return {"status": "skipped", "reason": "Scheduled email jobs disabled"}

    report = _worker_scheduler().run_job(job)
    if report is None:
        return {"status": "skipped", "job": job}
    return {"status": "completed", **asdict(report)}


@lru_cache(maxsize=1)
def _worker_scheduler():
    return build_scheduler()


@celery_app.task(bind=True, name="upload_project_file")
def upload_project_file(
    self,
    project_id: int,
    category: str,
    local_path: str,
    uploaded_by: int | None = None,
    replaces_file_id: int | None = None,
) -> dict[str, Any]:
    """
    Upload a local file into a project's storage area.

    Args:
        project_id: Project the file belongs to
        category: File category value (RAW_FOOTAGE, EDIT_DRAFT, ...)
        local_path: Path readable by the worker
        uploaded_by: Uploading user id
        replaces_file_id: Previous version when this is a new version

    Returns:
        Dict with the stored file's id, key and validation status
    """
    from .db import SessionLocal
    from .storage import ObjectStorageClient
    from .upload_service import ProjectFileUploader

    logger.info("Starting upload of %s for project %s", local_path, project_id)

    db = SessionLocal()
    try:

        def report_progress(progress) -> None:
            self.update_state(
                state="PROGRESS",
                meta={
                    "percentage": progress.percentage,
                    "loaded": progress.loaded,
                    "total": progress.total,
                },
            )

        uploader = ProjectFileUploader(db, ObjectStorageClient())
        file = uploader.upload(
            project_id,
            category,
            local_path,
            uploaded_by=uploaded_by,
            replaces_file_id=replaces_file_id,
            on_progress=report_progress,
        )
        return {
            "status": "completed",
            "file_id": file.file_id,
            "key": file.file_path,
            "validation_status": file.validation_status.value,
        }
    except Exception as e:
        logger.error("Upload of %s for project %s failed: %s", local_path, project_id, e)
        raise
    finally:
        db.close()


@celery_app.task(bind=True, name="send_pending_notification_emails")
def send_pending_notification_emails(self, limit: int = 100) -> dict[str, int]:
    from .db import SessionLocal
    from .email_service import email_service
    from .notifications import NotificationService

    db = SessionLocal()
    try:
        stats = NotificationService(db).dispatch_pending_emails(email_service, limit=limit)
        db.commit()
        logger.info(
            "Notification emails: %d sent, %d failed, %d skipped",
            stats["sent"],
            stats["failed"],
            stats["skipped"],
        )
        return stats
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@celery_app.task(bind=True, name="cleanup_old_notifications")
def cleanup_old_notifications(self, days_old: int | None = None) -> dict[str, int]:
    from .db import SessionLocal
    from .notifications import NotificationService

    db = SessionLocal()
    try:
        deleted = NotificationService(db).cleanup_old_notifications(days_old)
        db.commit()
        return {"deleted": deleted}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
