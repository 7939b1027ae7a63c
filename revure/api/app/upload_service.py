"""
Project file uploads.

Registers the file, streams it to object storage, records checksums and the
validation result, then tells QC (or the uploader, when validation fails).
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path

from sqlalchemy.orm import Session

from .file_registry import FileRegistry, VersionChainError
from .models import ActorRole, FileCategory, Project, ProjectFile, ValidationStatus
from .notifications import NotificationService
from .schemas import MediaInfo
from .storage import (
    ObjectStorageClient,
    ProgressCallback,
    UploadOptions,
    UploadProgress,
    detect_content_type,
)
from .upload_utils import calculate_checksums

logger = logging.getLogger(__name__)

PROGRESS_STEP = 5


class ProjectFileUploader:
    def __init__(
        self,
        db: Session,
        storage: ObjectStorageClient,
        *,
        registry: FileRegistry | None = None,
        notifications: NotificationService | None = None,
    ):
        self.db = db
        self.storage = storage
        self.registry = registry or FileRegistry(db)
        self.notifications = notifications or NotificationService(db)

    def _progress_recorder(
        self, file_id: int, forward: ProgressCallback | None
    ) -> ProgressCallback:
        last = {"percentage": 0}

        def record(progress: UploadProgress) -> None:
            if progress.percentage >= last["percentage"] + PROGRESS_STEP or (
                progress.percentage == 100 and last["percentage"] < 100
            ):
                last["percentage"] = progress.percentage
                self.registry.record_upload_progress(file_id, progress.percentage)
            if forward is not None:
                forward(progress)

        return record

    def upload(
        self,
        project_id: int,
        category: FileCategory | str,
        local_path: str | Path,
        *,
        uploaded_by: int | None = None,
        replaces_file_id: int | None = None,
        mime_type: str | None = None,
        media: MediaInfo | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ProjectFile:
        path = Path(local_path)
        category = FileCategory(category)
        size = path.stat().st_size if path.is_file() else None
        mime_type = mime_type or detect_content_type(path.name)

        if replaces_file_id is not None:
            previous = self.registry.get(replaces_file_id)
            if previous.project_id != project_id:
                raise VersionChainError(
                    f"File {replaces_file_id} belongs to project {previous.project_id}, not {project_id}"
                )
            if previous.file_category != category:
                raise VersionChainError(
                    f"File {replaces_file_id} is {previous.file_category.value}, not {category.value}"
                )
            file = self.registry.register_new_version(
                replaces_file_id,
                path.name,
                uploaded_by=uploaded_by,
                size_bytes=size,
                mime_type=mime_type,
            )
        else:
            file = self.registry.register_file(
                project_id,
                category,
                path.name,
                uploaded_by=uploaded_by,
                size_bytes=size,
                mime_type=mime_type,
            )
        file_id = file.file_id

        stored_name = path.name
        if file.version_number > 1:
            stored_name = f"{path.stem}_v{file.version_number}{path.suffix}"
        key = self.storage.generate_key(file.file_category, file.project_id, stored_name)
        self.registry.mark_upload_started(file_id, uuid.uuid4().hex, key)

        options = UploadOptions(
            content_type=mime_type,
            metadata={"project-id": str(file.project_id), "file-id": str(file_id)},
            on_progress=self._progress_recorder(file_id, on_progress),
        )
        try:
            result = self.storage.upload_file(path, key, options)
            checksums = calculate_checksums(path)
        except Exception as e:
            self.db.rollback()
            self.registry.mark_upload_failed(file_id, str(e))
            raise

        file = self.registry.mark_upload_completed(
            file_id,
            size_bytes=result.size,
            md5_hash=result.checksum,
            sha256_hash=checksums.sha256,
            s3_bucket=result.bucket,
            s3_region=result.region,
            s3_etag=result.etag,
            file_path=result.key,
        )
        file = self.registry.validate(file_id, media)
        self._notify(file)
        self.db.commit()
        logger.info(
            "Stored %s for project %s at %s (%s)",
            path.name,
            project_id,
            result.location,
            file.validation_status.value,
        )
        return file

    def _notify(self, file: ProjectFile) -> None:
        project = self.db.get(Project, file.project_id)
        if project is None:
            return
        if file.validation_status == ValidationStatus.FAILED:
            if file.uploaded_by_user_id is not None:
                problems = [
                    issue.message
                    for issue in self.registry.validation_issues(file.file_id)
                    if issue.severity == "error"
                ]
                self.notifications.notify_file_validation_failed(
                    file.uploaded_by_user_id, project, file.file_id, file.file_name, problems
                )
            return
        for user_id in self.notifications.resolve_recipients(project, [ActorRole.QC]):
            if user_id != file.uploaded_by_user_id:
                self.notifications.notify_file_uploaded(
                    user_id, project, file.file_id, file.file_name
                )
