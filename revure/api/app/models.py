from __future__ import annotations

from datetime import date, datetime, time
from typing import Any

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Time,
    Text,
    JSON,
    Enum,
    Integer,
    BigInteger,
    Float,
    ForeignKey,
    Boolean,
    Index,
    UniqueConstraint,
    event,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship, Mapped, mapped_column
from enum import Enum as PyEnum
from .db import Base


class ProjectState(str, PyEnum):
    RAW_UPLOADED = "RAW_UPLOADED"
    RAW_TECH_QC_PENDING = "RAW_TECH_QC_PENDING"
    RAW_TECH_QC_REJECTED = "RAW_TECH_QC_REJECTED"
    RAW_TECH_QC_APPROVED = "RAW_TECH_QC_APPROVED"
    COVERAGE_REVIEW_PENDING = "COVERAGE_REVIEW_PENDING"
    COVERAGE_REJECTED = "COVERAGE_REJECTED"
    EDIT_APPROVAL_PENDING = "EDIT_APPROVAL_PENDING"
    EDIT_IN_PROGRESS = "EDIT_IN_PROGRESS"
    INTERNAL_EDIT_REVIEW_PENDING = "INTERNAL_EDIT_REVIEW_PENDING"
    CLIENT_PREVIEW_READY = "CLIENT_PREVIEW_READY"
    CLIENT_FEEDBACK_RECEIVED = "CLIENT_FEEDBACK_RECEIVED"
    FEEDBACK_INTERNAL_REVIEW = "FEEDBACK_INTERNAL_REVIEW"
    REVISION_IN_PROGRESS = "REVISION_IN_PROGRESS"
    REVISION_QC_PENDING = "REVISION_QC_PENDING"
    FINAL_EXPORT_PENDING = "FINAL_EXPORT_PENDING"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    PROJECT_CLOSED = "PROJECT_CLOSED"


class ActorRole(str, PyEnum):
    """Roles that can act on a project. SYSTEM covers jobs and automation."""

    SYSTEM = "SYSTEM"
    CLIENT = "CLIENT"
    CREATOR = "CREATOR"
    EDITOR = "EDITOR"
    QC = "QC"
    ADMIN = "ADMIN"


class TransitionType(str, PyEnum):
    MANUAL = "MANUAL"
    AUTOMATIC = "AUTOMATIC"


class FileCategory(str, PyEnum):
    RAW_FOOTAGE = "RAW_FOOTAGE"
    RAW_AUDIO = "RAW_AUDIO"
    EDIT_DRAFT = "EDIT_DRAFT"
    EDIT_REVISION = "EDIT_REVISION"
    EDIT_FINAL = "EDIT_FINAL"
    CLIENT_DELIVERABLE = "CLIENT_DELIVERABLE"
    THUMBNAIL = "THUMBNAIL"
    REFERENCE_MATERIAL = "REFERENCE_MATERIAL"


RAW_CATEGORIES = frozenset({FileCategory.RAW_FOOTAGE, FileCategory.RAW_AUDIO})


class UploadStatus(str, PyEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ValidationStatus(str, PyEnum):
    PENDING = "PENDING"
    PASSED = "PASSED"
    FAILED = "FAILED"


class FeedbackType(str, PyEnum):
    CLIENT_PREVIEW_FEEDBACK = "CLIENT_PREVIEW_FEEDBACK"
    INTERNAL_QC_REJECTION = "INTERNAL_QC_REJECTION"
    COVERAGE_REVIEW_NOTES = "COVERAGE_REVIEW_NOTES"
    REVISION_REQUEST = "REVISION_REQUEST"
    FINAL_APPROVAL = "FINAL_APPROVAL"


class FeedbackPriority(str, PyEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class FeedbackStatus(str, PyEnum):
    PENDING = "PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


FEEDBACK_CLOSED_STATUSES = frozenset({FeedbackStatus.RESOLVED, FeedbackStatus.DISMISSED})


class NotificationType(str, PyEnum):
    STATE_TRANSITION = "STATE_TRANSITION"
    NEW_ASSIGNMENT = "NEW_ASSIGNMENT"
    FEEDBACK_RECEIVED = "FEEDBACK_RECEIVED"
    DEADLINE_APPROACHING = "DEADLINE_APPROACHING"
    FILE_UPLOADED = "FILE_UPLOADED"
    FILE_VALIDATION_FAILED = "FILE_VALIDATION_FAILED"
    PROJECT_DELIVERED = "PROJECT_DELIVERED"
    ASSIGNMENT_ACCEPTED = "ASSIGNMENT_ACCEPTED"
    ASSIGNMENT_DECLINED = "ASSIGNMENT_DECLINED"
    QC_REJECTION = "QC_REJECTION"
    CLIENT_APPROVAL = "CLIENT_APPROVAL"
    GENERAL_MESSAGE = "GENERAL_MESSAGE"


class NotificationPriority(str, PyEnum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class EmailDeliveryStatus(str, PyEnum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    BOUNCED = "BOUNCED"


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[ActorRole] = mapped_column(
        Enum(ActorRole), nullable=False, default=ActorRole.CLIENT
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class Project(Base):
    __tablename__ = "projects"
    project_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int | None] = mapped_column(
        ForeignKey("stream_project_booking.id"), nullable=True, index=True
    )
    project_code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    project_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    current_state: Mapped[ProjectState] = mapped_column(
        Enum(ProjectState),
        nullable=False,
        default=ProjectState.RAW_UPLOADED,
        index=True,
    )
    state_changed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    client_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    assigned_creator_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    assigned_editor_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    assigned_qc_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )

    raw_upload_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    edit_delivery_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    final_delivery_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    project_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_requirements: Mapped[str | None] = mapped_column(Text, nullable=True)

    total_raw_size_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_files_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    files: Mapped[list["ProjectFile"]] = relationship(
        back_populates="project", order_by="ProjectFile.file_id"
    )
    feedback: Mapped[list["ProjectFeedback"]] = relationship(
        back_populates="project", order_by="ProjectFeedback.feedback_id"
    )


class ProjectFile(Base):
    __tablename__ = "project_files"
    file_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.project_id"), nullable=False, index=True
    )
    file_category: Mapped[FileCategory] = mapped_column(Enum(FileCategory), nullable=False)

    file_name: Mapped[str] = mapped_column(String(512), nullable=False)
    file_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    file_extension: Mapped[str | None] = mapped_column(String(20), nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)

    upload_status: Mapped[UploadStatus] = mapped_column(
        Enum(UploadStatus), nullable=False, default=UploadStatus.PENDING
    )
    upload_progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    upload_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    upload_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    upload_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    validation_status: Mapped[ValidationStatus] = mapped_column(
        Enum(ValidationStatus), nullable=False, default=ValidationStatus.PENDING
    )
    validation_errors: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSON, nullable=True
    )
    validated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Media introspection
    video_duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    video_resolution: Mapped[str | None] = mapped_column(String(20), nullable=True)
    video_fps: Mapped[float | None] = mapped_column(Float, nullable=True)
    video_codec: Mapped[str | None] = mapped_column(String(50), nullable=True)
    video_bitrate_kbps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    audio_codec: Mapped[str | None] = mapped_column(String(50), nullable=True)
    audio_sample_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    audio_channels: Mapped[int | None] = mapped_column(Integer, nullable=True)

    version_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    replaces_file_id: Mapped[int | None] = mapped_column(
        ForeignKey("project_files.file_id"), nullable=True
    )

    md5_hash: Mapped[str | None] = mapped_column(String(32), nullable=True)
    sha256_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    s3_bucket: Mapped[str | None] = mapped_column(String(255), nullable=True)
    s3_region: Mapped[str | None] = mapped_column(String(50), nullable=True)
    s3_etag: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )

    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    project: Mapped[Project] = relationship(back_populates="files")

    __table_args__ = (
        Index("idx_project_files_project_category", "project_id", "file_category"),
    )


class ProjectStateHistory(Base):
    """One row per state change. Rows are never updated or deleted."""

    __tablename__ = "project_state_history"
    history_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.project_id"), nullable=False, index=True
    )
    from_state: Mapped[ProjectState] = mapped_column(Enum(ProjectState), nullable=False)
    to_state: Mapped[ProjectState] = mapped_column(Enum(ProjectState), nullable=False)
    transitioned_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    transitioned_by_role: Mapped[ActorRole] = mapped_column(Enum(ActorRole), nullable=False)
    transition_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    transition_type: Mapped[TransitionType] = mapped_column(
        Enum(TransitionType), nullable=False, default=TransitionType.MANUAL
    )
    related_file_id: Mapped[int | None] = mapped_column(
        ForeignKey("project_files.file_id"), nullable=True
    )
    related_feedback_id: Mapped[int | None] = mapped_column(
        ForeignKey("project_feedback.feedback_id"), nullable=True
    )
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    additional_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("idx_state_history_project_created", "project_id", "created_at"),
    )


class ProjectFeedback(Base):
    __tablename__ = "project_feedback"
    feedback_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.project_id"), nullable=False, index=True
    )
    feedback_type: Mapped[FeedbackType] = mapped_column(Enum(FeedbackType), nullable=False)
    submitted_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    submitted_by_role: Mapped[ActorRole] = mapped_column(Enum(ActorRole), nullable=False)
    related_file_id: Mapped[int | None] = mapped_column(
        ForeignKey("project_files.file_id"), nullable=True
    )

    feedback_text: Mapped[str] = mapped_column(Text, nullable=False)
    video_timestamps: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    priority: Mapped[FeedbackPriority] = mapped_column(
        Enum(FeedbackPriority), nullable=False, default=FeedbackPriority.MEDIUM
    )

    translated_for_creator: Mapped[str | None] = mapped_column(Text, nullable=True)
    translated_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    translated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    status: Mapped[FeedbackStatus] = mapped_column(
        Enum(FeedbackStatus), nullable=False, default=FeedbackStatus.PENDING
    )
    resolved_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    attachments: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    satisfaction_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    project: Mapped[Project] = relationship(back_populates="feedback")


class Notification(Base):
    __tablename__ = "notifications"
    notification_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    notification_type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    action_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    related_project_id: Mapped[int | None] = mapped_column(
        ForeignKey("projects.project_id"), nullable=True
    )
    related_file_id: Mapped[int | None] = mapped_column(
        ForeignKey("project_files.file_id"), nullable=True
    )
    related_feedback_id: Mapped[int | None] = mapped_column(
        ForeignKey("project_feedback.feedback_id"), nullable=True
    )
    related_assignment_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    email_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    email_delivery_status: Mapped[EmailDeliveryStatus] = mapped_column(
        Enum(EmailDeliveryStatus), nullable=False, default=EmailDeliveryStatus.PENDING
    )
    email_delivery_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_opened: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_opened_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    priority: Mapped[NotificationPriority] = mapped_column(
        Enum(NotificationPriority), nullable=False, default=NotificationPriority.NORMAL
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("idx_notifications_user_read", "user_id", "is_read"),)


# ---------------------------------------------------------------------------
# Booking side (read by the scheduled shoot emails)
# ---------------------------------------------------------------------------


class StreamProjectBooking(Base):
    __tablename__ = "stream_project_booking"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    project_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    start_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    # Either a plain address string or a JSON object from the places picker.
    event_location: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    edits_needed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_draft: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped[User | None] = relationship()


class SalesLead(Base):
    __tablename__ = "sales_leads"
    lead_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int | None] = mapped_column(
        ForeignKey("stream_project_booking.id"), nullable=True, index=True
    )
    client_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class CrewMember(Base):
    __tablename__ = "crew_members"
    crew_member_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)


class AssignedCrew(Base):
    __tablename__ = "assigned_crew"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(
        ForeignKey("stream_project_booking.id"), nullable=False, index=True
    )
    crew_member_id: Mapped[int] = mapped_column(
        ForeignKey("crew_members.crew_member_id"), nullable=False
    )
    crew_accept: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    assigned_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    crew_member: Mapped[CrewMember] = relationship()


class SalesLeadActivity(Base):
    """
    Append-only lead activity ledger.

    Scheduled shoot emails write one sentinel row per (booking, event, key);
    email_event and target_key mirror activity_data so the lookup is indexed.
    """

    __tablename__ = "sales_lead_activities"
    activity_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int | None] = mapped_column(
        ForeignKey("sales_leads.lead_id"), nullable=True
    )
    booking_id: Mapped[int | None] = mapped_column(
        ForeignKey("stream_project_booking.id"), nullable=True
    )
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    activity_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    email_event: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    performed_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    performed_by_role: Mapped[ActorRole | None] = mapped_column(
        Enum(ActorRole), nullable=True
    )
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "booking_id", "email_event", "target_key", name="uq_lead_activity_email_sentinel"
        ),
        Index("idx_lead_activity_lead_event", "lead_id", "email_event", "target_key"),
    )


class AppendOnlyViolation(Exception):
    """Raised when an audit row is about to be updated or deleted."""


def _reject_mutation(mapper: Any, connection: Any, target: Any) -> None:
    raise AppendOnlyViolation(f"{type(target).__name__} rows are append-only")


for _append_only in (ProjectStateHistory, SalesLeadActivity):
    event.listen(_append_only, "before_update", _reject_mutation)
    event.listen(_append_only, "before_delete", _reject_mutation)
