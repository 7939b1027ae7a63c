"""
In-app notifications and their email delivery tracking.

Handles:
- fan-out of project state changes to the people who act next
- assignment, feedback, upload, QC rejection, delivery and deadline notices
- read state per recipient
- the email delivery lifecycle (PENDING -> SENT -> DELIVERED | FAILED | BOUNCED)

Creation methods only flush; the caller commits so notifications land in the
same transaction as the change that caused them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from .config import settings
from .models import (
    ActorRole,
    EmailDeliveryStatus,
    Notification,
    NotificationPriority,
    NotificationType,
    Project,
    ProjectState,
    User,
)
from .state_transitions import action_owners, notification_rule, state_metadata

logger = logging.getLogger(__name__)

EMAIL_DELIVERY_TRANSITIONS: dict[EmailDeliveryStatus, frozenset[EmailDeliveryStatus]] = {
    EmailDeliveryStatus.PENDING: frozenset(
        {EmailDeliveryStatus.SENT, EmailDeliveryStatus.FAILED}
    ),
    EmailDeliveryStatus.SENT: frozenset(
        {
            EmailDeliveryStatus.DELIVERED,
            EmailDeliveryStatus.FAILED,
            EmailDeliveryStatus.BOUNCED,
        }
    ),
    EmailDeliveryStatus.DELIVERED: frozenset(),
    EmailDeliveryStatus.FAILED: frozenset(),
    EmailDeliveryStatus.BOUNCED: frozenset(),
}


class NotificationError(Exception):
    """Base class for notification errors."""


class NotificationNotFound(NotificationError):
    pass


class NotificationStateError(NotificationError):
    """Illegal email delivery status change."""


@dataclass(frozen=True)
class NotificationDraft:
    user_id: int
    notification_type: NotificationType
    title: str
    message: str
    action_url: str | None = None
    related_project_id: int | None = None
    related_file_id: int | None = None
    related_feedback_id: int | None = None
    related_assignment_id: int | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    expires_at: datetime | None = None


class NotificationEmailSender(Protocol):
    def send_notification_email(
        self, to_email: str, title: str, message: str, action_url: str | None = None
    ): ...


class NotificationService:
    def __init__(
        self,
        db: Session,
        *,
        clock: Callable[[], datetime] | None = None,
        frontend_url: str | None = None,
    ):
        self.db = db
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.frontend_url = (frontend_url or settings.FRONTEND_URL).rstrip("/")

    def project_url(self, project_id: int) -> str:
        return f"{self.frontend_url}/cms/projects/{project_id}"

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_notification(self, draft: NotificationDraft) -> Notification:
        notification = Notification(
            user_id=draft.user_id,
            notification_type=draft.notification_type,
            title=draft.title,
            message=draft.message,
            action_url=draft.action_url,
            related_project_id=draft.related_project_id,
            related_file_id=draft.related_file_id,
            related_feedback_id=draft.related_feedback_id,
            related_assignment_id=draft.related_assignment_id,
            priority=draft.priority,
            expires_at=draft.expires_at,
            email_delivery_status=EmailDeliveryStatus.PENDING,
        )
        self.db.add(notification)
        self.db.flush()
        return notification

    def create_bulk_notifications(
        self, drafts: Iterable[NotificationDraft]
    ) -> list[Notification]:
        notifications = [
            Notification(
                user_id=draft.user_id,
                notification_type=draft.notification_type,
                title=draft.title,
                message=draft.message,
                action_url=draft.action_url,
                related_project_id=draft.related_project_id,
                related_file_id=draft.related_file_id,
                related_feedback_id=draft.related_feedback_id,
                related_assignment_id=draft.related_assignment_id,
                priority=draft.priority,
                expires_at=draft.expires_at,
                email_delivery_status=EmailDeliveryStatus.PENDING,
            )
            for draft in drafts
        ]
        if notifications:
            self.db.add_all(notifications)
            self.db.flush()
        return notifications

    def resolve_recipients(
        self, project: Project, roles: Iterable[ActorRole]
    ) -> list[int]:
        """
        Map roles to user ids for one project.

        Assigned people win; QC falls back to every active QC user when the
        project has no reviewer, ADMIN always means every active admin.
        """
        recipients: list[int] = []
        for role in roles:
            if role == ActorRole.CLIENT:
                candidates = [project.client_user_id]
            elif role == ActorRole.CREATOR:
                candidates = [project.assigned_creator_id]
            elif role == ActorRole.EDITOR:
                candidates = [project.assigned_editor_id]
            elif role == ActorRole.QC and project.assigned_qc_id is not None:
                candidates = [project.assigned_qc_id]
            elif role in (ActorRole.QC, ActorRole.ADMIN):
                candidates = list(
                    self.db.scalars(
                        select(User.id)
                        .where(User.role == role, User.is_active.is_(True))
                        .order_by(User.id)
                    )
                )
            else:
                candidates = []
            for user_id in candidates:
                if user_id is not None and user_id not in recipients:
                    recipients.append(user_id)
        return recipients

    def create_state_transition_notifications(
        self,
        project: Project,
        from_state: ProjectState,
        to_state: ProjectState,
        *,
        actor_id: int | None = None,
        reason: str | None = None,
    ) -> list[Notification]:
        rule = notification_rule(to_state)
        roles = list(action_owners(to_state)) + list(rule.extra_recipients)
        recipients = [
            user_id
            for user_id in self.resolve_recipients(project, roles)
            if user_id != actor_id
        ]
        if not recipients:
            return []

        from_name = state_metadata(from_state).display_name
        to_name = state_metadata(to_state).display_name
        message = f"Project {project.project_code} moved from {from_name} to {to_name}."
        if reason:
            message += f" Reason: {reason}"

        drafts = [
            NotificationDraft(
                user_id=user_id,
                notification_type=rule.notification_type,
                title=f"Project Status Updated: {project.project_code}",
                message=message,
                action_url=self.project_url(project.project_id),
                related_project_id=project.project_id,
                priority=rule.priority,
            )
            for user_id in recipients
        ]
        notifications = self.create_bulk_notifications(drafts)
        logger.info(
            "Queued %d notifications for project %s entering %s",
            len(notifications),
            project.project_code,
            to_state.value,
        )
        return notifications

    def notify_assignment(
        self, user_id: int, project: Project, role: ActorRole, assignment_id: int | None = None
    ) -> Notification:
        return self.create_notification(
            NotificationDraft(
                user_id=user_id,
                notification_type=NotificationType.NEW_ASSIGNMENT,
                title=f"New Assignment: {project.project_code}",
                message=(
                    f"You have been assigned to {project.project_name or project.project_code}"
                    f" as {role.value.lower()}."
                ),
                action_url=self.project_url(project.project_id),
                related_project_id=project.project_id,
                related_assignment_id=assignment_id,
                priority=NotificationPriority.HIGH,
            )
        )

    def notify_feedback(
        self, user_id: int, project: Project, feedback_id: int, feedback_type: str
    ) -> Notification:
        label = feedback_type.replace("_", " ").lower()
        return self.create_notification(
            NotificationDraft(
                user_id=user_id,
                notification_type=NotificationType.FEEDBACK_RECEIVED,
                title=f"New Feedback: {project.project_code}",
                message=f"New {label} was submitted on {project.project_code}.",
                action_url=self.project_url(project.project_id),
                related_project_id=project.project_id,
                related_feedback_id=feedback_id,
                priority=NotificationPriority.HIGH,
            )
        )

    def notify_file_uploaded(
        self, user_id: int, project: Project, file_id: int, file_name: str
    ) -> Notification:
        return self.create_notification(
            NotificationDraft(
                user_id=user_id,
                notification_type=NotificationType.FILE_UPLOADED,
                title=f"File Uploaded: {project.project_code}",
                message=f"{file_name} was uploaded to {project.project_code}.",
                action_url=self.project_url(project.project_id),
                related_project_id=project.project_id,
                related_file_id=file_id,
            )
        )

    def notify_file_validation_failed(
        self, user_id: int, project: Project, file_id: int, file_name: str, problems: list[str]
    ) -> Notification:
        return self.create_notification(
            NotificationDraft(
                user_id=user_id,
                notification_type=NotificationType.FILE_VALIDATION_FAILED,
                title=f"File Needs Attention: {file_name}",
                message="; ".join(problems) or f"{file_name} failed validation.",
                action_url=self.project_url(project.project_id),
                related_project_id=project.project_id,
                related_file_id=file_id,
                priority=NotificationPriority.HIGH,
            )
        )

    def notify_qc_rejection(
        self, user_id: int, project: Project, reason: str, feedback_id: int | None = None
    ) -> Notification:
        return self.create_notification(
            NotificationDraft(
                user_id=user_id,
                notification_type=NotificationType.QC_REJECTION,
                title=f"QC Rejected: {project.project_code}",
                message=reason,
                action_url=self.project_url(project.project_id),
                related_project_id=project.project_id,
                related_feedback_id=feedback_id,
                priority=NotificationPriority.HIGH,
            )
        )

    def notify_delivery(self, user_id: int, project: Project) -> Notification:
        return self.create_notification(
            NotificationDraft(
                user_id=user_id,
                notification_type=NotificationType.PROJECT_DELIVERED,
                title=f"Your Project Is Ready: {project.project_code}",
                message=(
                    f"{project.project_name or project.project_code} has been delivered."
                ),
                action_url=self.project_url(project.project_id),
                related_project_id=project.project_id,
                priority=NotificationPriority.HIGH,
            )
        )

    def notify_deadline_approaching(
        self, user_id: int, project: Project, deadline_label: str, deadline: datetime
    ) -> Notification:
        remaining = deadline - self._clock()
        hours = max(int(remaining.total_seconds() // 3600), 0)
        priority = NotificationPriority.URGENT if hours < 24 else NotificationPriority.HIGH
        return self.create_notification(
            NotificationDraft(
                user_id=user_id,
                notification_type=NotificationType.DEADLINE_APPROACHING,
                title=f"Deadline Approaching: {project.project_code}",
                message=f"The {deadline_label} deadline is in {hours} hours.",
                action_url=self.project_url(project.project_id),
                related_project_id=project.project_id,
                priority=priority,
                expires_at=deadline,
            )
        )

    # ------------------------------------------------------------------
    # Recipient side
    # ------------------------------------------------------------------

    def user_notifications(
        self,
        user_id: int,
        *,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Notification]:
        stmt = select(Notification).where(
            Notification.user_id == user_id,
            or_(Notification.expires_at.is_(None), Notification.expires_at > self._clock()),
        )
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = (
            stmt.order_by(Notification.created_at.desc(), Notification.notification_id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.scalars(stmt))

    def unread_count(self, user_id: int) -> int:
        stmt = select(func.count(Notification.notification_id)).where(
            Notification.user_id == user_id, Notification.is_read.is_(False)
        )
        return self.db.scalar(stmt) or 0

    def mark_as_read(self, notification_id: int, user_id: int) -> Notification:
        notification = self.db.get(Notification, notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotificationNotFound(f"Notification {notification_id} not found")
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = self._clock()
            self.db.flush()
        return notification

    def mark_all_as_read(self, user_id: int) -> int:
        result = self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Email delivery
    # ------------------------------------------------------------------

    def _move_delivery(
        self, notification_id: int, target: EmailDeliveryStatus
    ) -> Notification:
        notification = self.db.get(Notification, notification_id)
        if notification is None:
            raise NotificationNotFound(f"Notification {notification_id} not found")
        current = notification.email_delivery_status
        if target not in EMAIL_DELIVERY_TRANSITIONS[current]:
            raise NotificationStateError(
                f"Cannot move email delivery from {current.value} to {target.value}"
            )
        notification.email_delivery_status = target
        return notification

    def mark_email_sent(self, notification_id: int) -> Notification:
        notification = self._move_delivery(notification_id, EmailDeliveryStatus.SENT)
        notification.email_sent = True
        notification.email_sent_at = self._clock()
        self.db.flush()
        return notification

    def mark_email_delivered(self, notification_id: int) -> Notification:
        notification = self._move_delivery(notification_id, EmailDeliveryStatus.DELIVERED)
        self.db.flush()
        return notification

    def mark_email_failed(self, notification_id: int, error: str) -> Notification:
        notification = self._move_delivery(notification_id, EmailDeliveryStatus.FAILED)
        notification.email_delivery_error = error
        self.db.flush()
        return notification

    def mark_email_bounced(self, notification_id: int, error: str | None = None) -> Notification:
        notification = self._move_delivery(notification_id, EmailDeliveryStatus.BOUNCED)
        notification.email_delivery_error = error
        self.db.flush()
        return notification

    def mark_email_opened(self, notification_id: int) -> Notification:
        notification = self.db.get(Notification, notification_id)
        if notification is None:
            raise NotificationNotFound(f"Notification {notification_id} not found")
        if notification.email_delivery_status not in (
            EmailDeliveryStatus.SENT,
            EmailDeliveryStatus.DELIVERED,
        ):
            raise NotificationStateError(
                "Only sent or delivered emails can be marked as opened"
            )
        if not notification.email_opened:
            notification.email_opened = True
            notification.email_opened_at = self._clock()
            self.db.flush()
        return notification

    def pending_email_notifications(self, limit: int = 100) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(
                Notification.email_sent.is_(False),
                Notification.email_delivery_status == EmailDeliveryStatus.PENDING,
                or_(Notification.expires_at.is_(None), Notification.expires_at > self._clock()),
            )
            .order_by(Notification.notification_id)
            .limit(limit)
        )
        return list(self.db.scalars(stmt))

    def dispatch_pending_emails(
        self, sender: NotificationEmailSender, limit: int = 100
    ) -> dict[str, int]:
        """Send queued notification emails and record each outcome."""
        stats = {"sent": 0, "failed": 0, "skipped": 0}
        for notification in self.pending_email_notifications(limit):
            user = self.db.get(User, notification.user_id)
            if user is None or not user.email:
                self.mark_email_failed(notification.notification_id, "Recipient has no email")
                stats["skipped"] += 1
                continue
            result = sender.send_notification_email(
                user.email, notification.title, notification.message, notification.action_url
            )
            if getattr(result, "success", False):
                self.mark_email_sent(notification.notification_id)
                stats["sent"] += 1
            else:
                error = getattr(result, "error", None) or "Unknown email error"
                self.mark_email_failed(notification.notification_id, error)
                stats["failed"] += 1
        return stats

    def cleanup_old_notifications(self, days_old: int | None = None) -> int:
        """Delete read notifications older than ``days_old`` days."""
        days = days_old if days_old is not None else settings.NOTIFICATION_RETENTION_DAYS
        cutoff = self._clock() - timedelta(days=days)
        result = self.db.execute(
            delete(Notification)
            .where(Notification.is_read.is_(True), Notification.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        logger.info("Removed %d read notifications older than %d days", deleted, days)
        return deleted
