"""
Append-only ledgers.

``TransitionAuditLog`` keeps the replayable state history of each project and
writes inside the caller's transaction. ``LeadActivityLedger`` holds the
sentinel rows the scheduled shoot emails use to fire at most once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    ActorRole,
    ProjectState,
    ProjectStateHistory,
    SalesLeadActivity,
    TransitionType,
)

logger = logging.getLogger(__name__)

SENTINEL_ACTIVITY_TYPE = "status_changed"


@dataclass(frozen=True)
class TransitionRecord:
    project_id: int
    from_state: ProjectState
    to_state: ProjectState
    role: ActorRole
    actor_id: int | None = None
    reason: str | None = None
    related_file_id: int | None = None
    related_feedback_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def transition_type(self) -> TransitionType:
        return TransitionType.MANUAL if self.actor_id is not None else TransitionType.AUTOMATIC


class TransitionAuditLog:
    def __init__(self, db: Session):
        self.db = db

    def append(self, record: TransitionRecord) -> ProjectStateHistory:
        """Insert one history row. The caller owns commit/rollback."""
        entry = ProjectStateHistory(
            project_id=record.project_id,
            from_state=record.from_state,
            to_state=record.to_state,
            transitioned_by_user_id=record.actor_id,
            transitioned_by_role=record.role,
            transition_reason=record.reason,
            transition_type=record.transition_type,
            related_file_id=record.related_file_id,
            related_feedback_id=record.related_feedback_id,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            additional_metadata=dict(record.metadata),
            created_at=record.created_at or datetime.now(timezone.utc),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def history(self, project_id: int) -> list[ProjectStateHistory]:
        """Every row for the project, oldest first."""
        stmt = (
            select(ProjectStateHistory)
            .where(ProjectStateHistory.project_id == project_id)
            .order_by(ProjectStateHistory.created_at, ProjectStateHistory.history_id)
        )
        return list(self.db.scalars(stmt))

    def recent(
        self, project_id: int, limit: int = 50, offset: int = 0
    ) -> list[ProjectStateHistory]:
        stmt = (
            select(ProjectStateHistory)
            .where(ProjectStateHistory.project_id == project_id)
            .order_by(
                ProjectStateHistory.created_at.desc(),
                ProjectStateHistory.history_id.desc(),
            )
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.scalars(stmt))

    def count(self, project_id: int) -> int:
        stmt = select(func.count(ProjectStateHistory.history_id)).where(
            ProjectStateHistory.project_id == project_id
        )
        return self.db.scalar(stmt) or 0


class LeadActivityLedger:
    """
    Idempotence ledger for the scheduled shoot emails.

    A sentinel is an activity row written by SYSTEM whose activity_data holds
    the job marker under ``email_event`` and the window key under
    ``target_date`` or ``target_start_at``. Rows are matched on the booking, and
    also on the lead when the booking has one.

    Opens its own short sessions so scheduler worker threads never share one.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @staticmethod
    def _sentinel_filter(
        lead_id: int | None, booking_id: int, marker: str, target_key: str
    ) -> list[Any]:
        clauses = [
            SalesLeadActivity.activity_type == SENTINEL_ACTIVITY_TYPE,
            SalesLeadActivity.email_event == marker,
            SalesLeadActivity.target_key == target_key,
        ]
        if lead_id is not None:
            # A lead linked after the first send must still see the booking row.
            clauses.append(
                or_(
                    SalesLeadActivity.booking_id == booking_id,
                    SalesLeadActivity.lead_id == lead_id,
                )
            )
        else:
            clauses.append(SalesLeadActivity.booking_id == booking_id)
        return clauses

    def has_sentinel(
        self, *, lead_id: int | None, booking_id: int, marker: str, target_key: str
    ) -> bool:
        with self._session_factory() as db:
            stmt = select(SalesLeadActivity.activity_id).where(
                *self._sentinel_filter(lead_id, booking_id, marker, target_key)
            )
            return db.scalars(stmt.limit(1)).first() is not None

    def mark_sentinel(
        self,
        *,
        lead_id: int | None,
        booking_id: int,
        marker: str,
        target_key: str,
        key_field: str = "target_date",
        extra: dict[str, Any] | None = None,
    ) -> bool:
        """
        Record that ``marker`` fired for this booking and key.

        Returns False when another writer already holds the sentinel.
        """
        activity_data: dict[str, Any] = {
            "email_event": marker,
            "booking_id": booking_id,
            key_field: target_key,
        }
        if extra:
            activity_data.update(extra)

        with self._session_factory() as db:
            db.add(
                SalesLeadActivity(
                    lead_id=lead_id,
                    booking_id=booking_id,
                    activity_type=SENTINEL_ACTIVITY_TYPE,
                    activity_data=activity_data,
                    email_event=marker,
                    target_key=target_key,
                    performed_by_user_id=None,
                    performed_by_role=ActorRole.SYSTEM,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(
                    "Sentinel %s for booking %s (%s) already recorded",
                    marker,
                    booking_id,
                    target_key,
                )
                return False
        return True

    def sentinels_for_booking(self, booking_id: int) -> list[SalesLeadActivity]:
        with self._session_factory() as db:
            stmt = (
                select(SalesLeadActivity)
                .where(
                    SalesLeadActivity.booking_id == booking_id,
                    SalesLeadActivity.activity_type == SENTINEL_ACTIVITY_TYPE,
                    SalesLeadActivity.email_event.is_not(None),
                )
                .order_by(SalesLeadActivity.activity_id)
            )
            return list(db.scalars(stmt))
