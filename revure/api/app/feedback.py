"""
Feedback threads on projects.

Client and internal feedback moves PENDING -> ACKNOWLEDGED -> IN_PROGRESS ->
RESOLVED | DISMISSED on its own, separate from the project state. Admins can
attach a creator-facing rewrite before the creator sees it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .models import (
    FEEDBACK_CLOSED_STATUSES,
    ActorRole,
    FeedbackPriority,
    FeedbackStatus,
    FeedbackType,
    Project,
    ProjectFeedback,
    ProjectFile,
)
from .notifications import NotificationService
from .schemas import VideoTimestamp, timestamps_from_column, timestamps_to_column

logger = logging.getLogger(__name__)

SUBMITTER_ROLES = frozenset({ActorRole.CLIENT, ActorRole.QC, ActorRole.ADMIN, ActorRole.EDITOR})

STATUS_TRANSITIONS: dict[FeedbackStatus, frozenset[FeedbackStatus]] = {
    FeedbackStatus.PENDING: frozenset(
        {
            FeedbackStatus.ACKNOWLEDGED,
            FeedbackStatus.IN_PROGRESS,
            FeedbackStatus.RESOLVED,
            FeedbackStatus.DISMISSED,
        }
    ),
    FeedbackStatus.ACKNOWLEDGED: frozenset(
        {FeedbackStatus.IN_PROGRESS, FeedbackStatus.RESOLVED, FeedbackStatus.DISMISSED}
    ),
    FeedbackStatus.IN_PROGRESS: frozenset(
        {FeedbackStatus.RESOLVED, FeedbackStatus.DISMISSED}
    ),
    FeedbackStatus.RESOLVED: frozenset(),
    FeedbackStatus.DISMISSED: frozenset(),
}


class FeedbackError(Exception):
    pass


class FeedbackNotFound(FeedbackError):
    pass


class FeedbackStateError(FeedbackError):
    pass


class FeedbackService:
    def __init__(
        self,
        db: Session,
        *,
        notifications: NotificationService | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.notifications = notifications or NotificationService(db, clock=self._clock)

    def get(self, feedback_id: int) -> ProjectFeedback:
        item = self.db.get(ProjectFeedback, feedback_id)
        if item is None:
            raise FeedbackNotFound(f"Feedback {feedback_id} not found")
        return item

    def submit_feedback(
        self,
        project_id: int,
        feedback_type: FeedbackType | str,
        *,
        submitted_by: int,
        role: ActorRole | str,
        text: str,
        video_timestamps: list[VideoTimestamp] | None = None,
        priority: FeedbackPriority | str = FeedbackPriority.MEDIUM,
        related_file_id: int | None = None,
        attachments: list[str] | None = None,
        satisfaction_rating: int | None = None,
    ) -> ProjectFeedback:
        project = self.db.get(Project, project_id)
        if project is None:
            raise FeedbackError(f"Project {project_id} not found")
        feedback_type = FeedbackType(feedback_type)
        role = ActorRole(role)
        if role not in SUBMITTER_ROLES:
            raise FeedbackError(f"Role {role.value} cannot submit feedback")
        if not text.strip():
            raise FeedbackError("Feedback text is required")
        if satisfaction_rating is not None:
            if feedback_type != FeedbackType.FINAL_APPROVAL:
                raise FeedbackError("Only final approval feedback carries a rating")
            if not 1 <= satisfaction_rating <= 5:
                raise FeedbackError("Satisfaction rating must be between 1 and 5")
        if related_file_id is not None:
            file = self.db.get(ProjectFile, related_file_id)
            if file is None or file.project_id != project_id:
                raise FeedbackError(f"File {related_file_id} does not belong to this project")

        item = ProjectFeedback(
            project_id=project_id,
            feedback_type=feedback_type,
            submitted_by_user_id=submitted_by,
            submitted_by_role=role,
            related_file_id=related_file_id,
            feedback_text=text,
            video_timestamps=timestamps_to_column(video_timestamps or []) or None,
            priority=FeedbackPriority(priority),
            status=FeedbackStatus.PENDING,
            attachments=list(attachments) if attachments else None,
            satisfaction_rating=satisfaction_rating,
        )
        self.db.add(item)
        self.db.flush()

        recipient = project.assigned_editor_id
        if feedback_type == FeedbackType.INTERNAL_QC_REJECTION and project.assigned_creator_id:
            recipient = project.assigned_creator_id
        if recipient is not None and recipient != submitted_by:
            self.notifications.notify_feedback(
                recipient, project, item.feedback_id, feedback_type.value
            )
        self.db.commit()
        logger.info(
            "Feedback %s (%s) submitted on project %s",
            item.feedback_id,
            feedback_type.value,
            project_id,
        )
        return item

    def timestamps(self, feedback_id: int) -> list[VideoTimestamp]:
        return timestamps_from_column(self.get(feedback_id).video_timestamps)

    def translate_for_creator(
        self, feedback_id: int, translated_text: str, translated_by: int
    ) -> ProjectFeedback:
        if not translated_text.strip():
            raise FeedbackError("Translated text is required")
        item = self.get(feedback_id)
        item.translated_for_creator = translated_text
        item.translated_by_user_id = translated_by
        item.translated_at = self._clock()
        self.db.commit()
        return item

    def update_status(
        self,
        feedback_id: int,
        status: FeedbackStatus | str,
        *,
        user_id: int | None = None,
        notes: str | None = None,
    ) -> ProjectFeedback:
        item = self.get(feedback_id)
        target = FeedbackStatus(status)
        if target == item.status:
            return item
        if target not in STATUS_TRANSITIONS[item.status]:
            raise FeedbackStateError(
                f"Feedback {feedback_id} cannot move from {item.status.value} to {target.value}"
            )
        item.status = target
        if target in FEEDBACK_CLOSED_STATUSES:
            item.resolved_by_user_id = user_id
            item.resolved_at = self._clock()
            item.resolution_notes = notes
        self.db.commit()
        return item

    def acknowledge(self, feedback_id: int, user_id: int) -> ProjectFeedback:
        return self.update_status(feedback_id, FeedbackStatus.ACKNOWLEDGED, user_id=user_id)

    def start(self, feedback_id: int, user_id: int) -> ProjectFeedback:
        return self.update_status(feedback_id, FeedbackStatus.IN_PROGRESS, user_id=user_id)

    def resolve(self, feedback_id: int, user_id: int, notes: str | None = None) -> ProjectFeedback:
        return self.update_status(
            feedback_id, FeedbackStatus.RESOLVED, user_id=user_id, notes=notes
        )

    def dismiss(self, feedback_id: int, user_id: int, notes: str | None = None) -> ProjectFeedback:
        return self.update_status(
            feedback_id, FeedbackStatus.DISMISSED, user_id=user_id, notes=notes
        )

    def project_feedback(self, project_id: int) -> list[ProjectFeedback]:
        stmt = (
            select(ProjectFeedback)
            .where(ProjectFeedback.project_id == project_id)
            .order_by(ProjectFeedback.feedback_id)
        )
        return list(self.db.scalars(stmt))

    def outstanding_feedback(self, project_id: int) -> list[ProjectFeedback]:
        stmt = (
            select(ProjectFeedback)
            .where(
                ProjectFeedback.project_id == project_id,
                ProjectFeedback.status.not_in(list(FEEDBACK_CLOSED_STATUSES)),
            )
            .order_by(ProjectFeedback.feedback_id)
        )
        return list(self.db.scalars(stmt))

    def creator_visible_feedback(self, project_id: int) -> list[ProjectFeedback]:
        """Internal feedback as written, client feedback only once translated."""
        stmt = (
            select(ProjectFeedback)
            .where(
                ProjectFeedback.project_id == project_id,
                or_(
                    ProjectFeedback.submitted_by_role != ActorRole.CLIENT,
                    ProjectFeedback.translated_for_creator.is_not(None),
                ),
            )
            .order_by(ProjectFeedback.feedback_id)
        )
        return list(self.db.scalars(stmt))

    @staticmethod
    def creator_text(item: ProjectFeedback) -> str:
        return item.translated_for_creator or item.feedback_text
