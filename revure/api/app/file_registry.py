"""
Project file registry.

Tracks each file from registration through upload and validation, keeps the
version chain (``replaces_file_id`` points at the previous version) and the
project's file counters.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from .file_validation import has_errors, validate_file
from .models import (
    RAW_CATEGORIES,
    FileCategory,
    Project,
    ProjectFile,
    UploadStatus,
    ValidationStatus,
)
from .schemas import MediaInfo, ValidationIssue, issues_from_column, issues_to_column

logger = logging.getLogger(__name__)

MAX_VERSION_CHAIN = 100


class FileRegistryError(Exception):
    pass


class FileNotRegistered(FileRegistryError):
    pass


class UploadStateError(FileRegistryError):
    pass


class VersionChainError(FileRegistryError):
    pass


class FileRegistry:
    def __init__(self, db: Session, *, clock: Callable[[], datetime] | None = None):
        self.db = db
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get(self, file_id: int) -> ProjectFile:
        file = self.db.get(ProjectFile, file_id)
        if file is None:
            raise FileNotRegistered(f"File {file_id} not found")
        return file

    def register_file(
        self,
        project_id: int,
        category: FileCategory | str,
        file_name: str,
        *,
        uploaded_by: int | None = None,
        size_bytes: int | None = None,
        mime_type: str | None = None,
        file_path: str | None = None,
        version_number: int = 1,
        replaces_file_id: int | None = None,
    ) -> ProjectFile:
        if self.db.get(Project, project_id) is None:
            raise FileRegistryError(f"Project {project_id} not found")
        category = FileCategory(category)
        if replaces_file_id is not None:
            previous = self.get(replaces_file_id)
            if previous.project_id != project_id:
                raise VersionChainError(
                    f"File {replaces_file_id} belongs to another project"
                )
            if version_number <= previous.version_number:
                raise VersionChainError(
                    f"Version {version_number} must be greater than {previous.version_number}"
                )

        suffix = PurePosixPath(file_name).suffix.lower()
        file = ProjectFile(
            project_id=project_id,
            file_category=category,
            file_name=file_name,
            file_path=file_path,
            file_size_bytes=size_bytes,
            file_extension=suffix.lstrip(".") or None,
            mime_type=mime_type,
            uploaded_by_user_id=uploaded_by,
            upload_status=UploadStatus.PENDING,
            upload_progress=0,
            validation_status=ValidationStatus.PENDING,
            version_number=version_number,
            replaces_file_id=replaces_file_id,
        )
        self.db.add(file)
        self.db.commit()
        logger.info(
            "Registered %s file %s (v%d) on project %s",
            category.value,
            file_name,
            version_number,
            project_id,
        )
        return file

    def register_new_version(
        self,
        previous_file_id: int,
        file_name: str,
        *,
        uploaded_by: int | None = None,
        size_bytes: int | None = None,
        mime_type: str | None = None,
        version_number: int | None = None,
    ) -> ProjectFile:
        previous = self.get(previous_file_id)
        return self.register_file(
            previous.project_id,
            previous.file_category,
            file_name,
            uploaded_by=uploaded_by,
            size_bytes=size_bytes,
            mime_type=mime_type,
            version_number=version_number or previous.version_number + 1,
            replaces_file_id=previous.file_id,
        )

    def mark_upload_started(
        self, file_id: int, session_id: str, file_path: str | None = None
    ) -> ProjectFile:
        file = self.get(file_id)
        if file.upload_status == UploadStatus.COMPLETED:
            raise UploadStateError(f"File {file_id} is already uploaded")
        file.upload_status = UploadStatus.IN_PROGRESS
        file.upload_session_id = session_id
        file.upload_progress = 0
        file.upload_started_at = self._clock()
        if file_path:
            file.file_path = file_path
        self.db.commit()
        return file

    def record_upload_progress(self, file_id: int, percentage: int) -> ProjectFile:
        file = self.get(file_id)
        if file.upload_status != UploadStatus.IN_PROGRESS:
            raise UploadStateError(f"File {file_id} is not uploading")
        clamped = max(0, min(100, int(percentage)))
        # Parts finish out of order; never move the bar backwards.
        if clamped > file.upload_progress:
            file.upload_progress = clamped
            self.db.commit()
        return file

    def mark_upload_completed(
        self,
        file_id: int,
        *,
        size_bytes: int,
        md5_hash: str,
        sha256_hash: str | None = None,
        s3_bucket: str | None = None,
        s3_region: str | None = None,
        s3_etag: str | None = None,
        file_path: str | None = None,
    ) -> ProjectFile:
        file = self.get(file_id)
        if file.upload_status == UploadStatus.COMPLETED:
            raise UploadStateError(f"File {file_id} is already uploaded")
        file.upload_status = UploadStatus.COMPLETED
        file.upload_progress = 100
        file.upload_completed_at = self._clock()
        file.file_size_bytes = size_bytes
        file.md5_hash = md5_hash
        file.sha256_hash = sha256_hash
        file.s3_bucket = s3_bucket
        file.s3_region = s3_region
        file.s3_etag = s3_etag
        if file_path:
            file.file_path = file_path

        project = self.db.get(Project, file.project_id)
        if project is not None:
            project.total_files_count = (project.total_files_count or 0) + 1
            if file.file_category in RAW_CATEGORIES:
                project.total_raw_size_bytes = (project.total_raw_size_bytes or 0) + size_bytes
        self.db.commit()
        return file

    def mark_upload_failed(self, file_id: int, error: str) -> ProjectFile:
        file = self.get(file_id)
        if file.upload_status == UploadStatus.COMPLETED:
            raise UploadStateError(f"File {file_id} is already uploaded")
        file.upload_status = UploadStatus.FAILED
        file.validation_errors = issues_to_column(
            [ValidationIssue(code="upload_failed", message=error)]
        )
        self.db.commit()
        logger.warning("Upload of file %s failed: %s", file_id, error)
        return file

    def record_validation(
        self,
        file_id: int,
        issues: list[ValidationIssue],
        media: MediaInfo | None = None,
    ) -> ProjectFile:
        file = self.get(file_id)
        file.validation_status = (
            ValidationStatus.FAILED if has_errors(issues) else ValidationStatus.PASSED
        )
        file.validation_errors = issues_to_column(issues) if issues else None
        file.validated_at = self._clock()
        if media is not None:
            file.video_duration_seconds = media.duration_seconds
            file.video_resolution = media.resolution
            file.video_fps = media.fps
            file.video_codec = media.video_codec
            file.video_bitrate_kbps = media.bitrate_kbps
            file.audio_codec = media.audio_codec
            file.audio_sample_rate = media.sample_rate
            file.audio_channels = media.channels
        self.db.commit()
        return file

    def validate(self, file_id: int, media: MediaInfo | None = None) -> ProjectFile:
        """Run the category rules against what the registry knows and store the result."""
        file = self.get(file_id)
        issues = validate_file(
            file.file_category, file.file_name, file.file_size_bytes, file.mime_type, media
        )
        return self.record_validation(file_id, issues, media)

    def validation_issues(self, file_id: int) -> list[ValidationIssue]:
        return issues_from_column(self.get(file_id).validation_errors)

    def version_chain(self, file_id: int) -> list[ProjectFile]:
        """The file followed by every version it replaces, newest first."""
        chain: list[ProjectFile] = []
        visited: set[int] = set()
        current: ProjectFile | None = self.get(file_id)
        while current is not None:
            if current.file_id in visited:
                raise VersionChainError(f"Version chain of file {file_id} loops")
            if len(chain) >= MAX_VERSION_CHAIN:
                raise VersionChainError(f"Version chain of file {file_id} is too long")
            visited.add(current.file_id)
            chain.append(current)
            if current.replaces_file_id is None:
                break
            current = self.db.get(ProjectFile, current.replaces_file_id)
        return chain

    def latest_version(self, file_id: int) -> ProjectFile:
        """Follow newer versions forward until none replaces the current one."""
        current = self.get(file_id)
        visited = {current.file_id}
        while True:
            newer = self.db.scalars(
                select(ProjectFile)
                .where(
                    ProjectFile.replaces_file_id == current.file_id,
                    ProjectFile.is_deleted.is_(False),
                )
                .order_by(ProjectFile.version_number.desc())
            ).first()
            if newer is None:
                return current
            if newer.file_id in visited or len(visited) >= MAX_VERSION_CHAIN:
                raise VersionChainError(f"Version chain of file {file_id} loops")
            visited.add(newer.file_id)
            current = newer

    def soft_delete(self, file_id: int, deleted_by: int | None) -> ProjectFile:
        file = self.get(file_id)
        if not file.is_deleted:
            file.is_deleted = True
            file.deleted_at = self._clock()
            file.deleted_by_user_id = deleted_by
            project = self.db.get(Project, file.project_id)
            if project is not None and file.upload_status == UploadStatus.COMPLETED:
                project.total_files_count = max((project.total_files_count or 0) - 1, 0)
                if file.file_category in RAW_CATEGORIES and file.file_size_bytes:
                    project.total_raw_size_bytes = max(
                        (project.total_raw_size_bytes or 0) - file.file_size_bytes, 0
                    )
            self.db.commit()
        return file

    def list_project_files(
        self,
        project_id: int,
        category: FileCategory | str | None = None,
        *,
        include_deleted: bool = False,
    ) -> list[ProjectFile]:
        stmt = select(ProjectFile).where(ProjectFile.project_id == project_id)
        if category is not None:
            stmt = stmt.where(ProjectFile.file_category == FileCategory(category))
        if not include_deleted:
            stmt = stmt.where(ProjectFile.is_deleted.is_(False))
        stmt = stmt.order_by(ProjectFile.file_id)
        return list(self.db.scalars(stmt))
