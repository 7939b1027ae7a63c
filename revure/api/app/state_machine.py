"""
Project state machine.

Every change to ``Project.current_state`` goes through
``ProjectStateMachine.transition``. A transition validates the request,
then writes the new state (compare-and-swap on the state it read), one audit
row and the notifications for the new state in a single transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Callable

from sqlalchemy import exists, or_, select, update
from sqlalchemy.orm import Session

from .audit_log import TransitionAuditLog, TransitionRecord
from .models import (
    FEEDBACK_CLOSED_STATUSES,
    RAW_CATEGORIES,
    ActorRole,
    FeedbackType,
    FileCategory,
    Notification,
    Project,
    ProjectFeedback,
    ProjectFile,
    ProjectState,
    ProjectStateHistory,
    UploadStatus,
    ValidationStatus,
)
from .notifications import NotificationService
from .state_transitions import (
    TERMINAL_STATES,
    TransitionRule,
    all_valid_transitions,
    get_rule,
    states_owned_by,
    valid_transitions,
)

logger = logging.getLogger(__name__)


class StateMachineError(Exception):
    """Base class for transition failures."""


class ProjectNotFound(StateMachineError):
    pass


class InvalidTransition(StateMachineError):
    def __init__(
        self,
        from_state: ProjectState | str,
        to_state: ProjectState | str,
        message: str | None = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            message or f"Invalid transition from {_label(from_state)} to {_label(to_state)}"
        )


class TransitionConflict(InvalidTransition):
    """The project changed state between read and write."""


class GuardFailed(StateMachineError):
    pass


class ReasonRequired(GuardFailed):
    pass


class ProjectClosed(StateMachineError):
    pass


class TransitionNotPermitted(StateMachineError):
    """Role, actor or ownership does not allow this transition."""


def _label(state: ProjectState | str) -> str:
    return state.value if isinstance(state, ProjectState) else str(state)


class TransitionOutcome(str, PyEnum):
    APPLIED = "APPLIED"
    NOOP = "NOOP"


@dataclass(frozen=True)
class RequestContext:
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class TransitionResult:
    project: Project
    outcome: TransitionOutcome
    from_state: ProjectState
    to_state: ProjectState
    history_entry: ProjectStateHistory | None = None
    notifications: list[Notification] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return self.outcome == TransitionOutcome.NOOP


@dataclass
class BulkTransitionReport:
    applied: list[int] = field(default_factory=list)
    noop: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.applied) + len(self.noop)


GuardCheck = Callable[[Session, Project], "str | None"]


def _has_file(
    db: Session,
    project: Project,
    categories: frozenset[FileCategory] | tuple[FileCategory, ...],
    *,
    upload_status: UploadStatus | None = None,
    validation_status: ValidationStatus | None = None,
) -> bool:
    clauses: list[Any] = [
        ProjectFile.project_id == project.project_id,
        ProjectFile.file_category.in_(list(categories)),
        ProjectFile.is_deleted.is_(False),
    ]
    if upload_status is not None:
        clauses.append(ProjectFile.upload_status == upload_status)
    if validation_status is not None:
        clauses.append(ProjectFile.validation_status == validation_status)
    return bool(db.scalar(select(exists().where(*clauses))))


def _raw_upload_completed(db: Session, project: Project) -> str | None:
    if not _has_file(db, project, RAW_CATEGORIES, upload_status=UploadStatus.COMPLETED):
        return "At least one raw footage or raw audio upload must be completed"
    return None


def _raw_validation_passed(db: Session, project: Project) -> str | None:
    if not _has_file(db, project, RAW_CATEGORIES, validation_status=ValidationStatus.PASSED):
        return "At least one raw footage or raw audio file must pass validation"
    return None


def _editor_assigned(db: Session, project: Project) -> str | None:
    if project.assigned_editor_id is None:
        return "An editor must be assigned before editing starts"
    return None


def _edit_draft_uploaded(db: Session, project: Project) -> str | None:
    if not _has_file(
        db, project, (FileCategory.EDIT_DRAFT,), upload_status=UploadStatus.COMPLETED
    ):
        return "An edit draft must be uploaded for internal review"
    return None


def _no_open_qc_rejection(db: Session, project: Project) -> str | None:
    stmt = select(
        exists().where(
            ProjectFeedback.project_id == project.project_id,
            ProjectFeedback.feedback_type == FeedbackType.INTERNAL_QC_REJECTION,
            ProjectFeedback.status.not_in(list(FEEDBACK_CLOSED_STATUSES)),
        )
    )
    if db.scalar(stmt):
        return "An open internal QC rejection must be resolved first"
    return None


def _revision_uploaded(db: Session, project: Project) -> str | None:
    if not _has_file(
        db, project, (FileCategory.EDIT_REVISION,), upload_status=UploadStatus.COMPLETED
    ):
        return "A revised edit must be uploaded for revision QC"
    return None


def _all_feedback_closed(db: Session, project: Project) -> str | None:
    stmt = select(ProjectFeedback.feedback_id).where(
        ProjectFeedback.project_id == project.project_id,
        ProjectFeedback.status.not_in(list(FEEDBACK_CLOSED_STATUSES)),
    )
    open_ids = list(db.scalars(stmt))
    if open_ids:
        return f"{len(open_ids)} feedback item(s) still open: {open_ids}"
    return None


def _final_uploaded(db: Session, project: Project) -> str | None:
    if not _has_file(
        db,
        project,
        (FileCategory.EDIT_FINAL, FileCategory.CLIENT_DELIVERABLE),
        upload_status=UploadStatus.COMPLETED,
    ):
        return "A final edit or client deliverable must be uploaded"
    return None


GUARDS: dict[ProjectState, tuple[GuardCheck, ...]] = {
    ProjectState.RAW_TECH_QC_PENDING: (_raw_upload_completed,),
    ProjectState.RAW_TECH_QC_APPROVED: (_raw_validation_passed,),
    ProjectState.EDIT_IN_PROGRESS: (_editor_assigned,),
    ProjectState.INTERNAL_EDIT_REVIEW_PENDING: (_edit_draft_uploaded,),
    ProjectState.CLIENT_PREVIEW_READY: (_no_open_qc_rejection,),
    ProjectState.REVISION_QC_PENDING: (_revision_uploaded,),
    ProjectState.FINAL_EXPORT_PENDING: (_all_feedback_closed,),
    ProjectState.READY_FOR_DELIVERY: (_final_uploaded,),
}

# Roles that may only move projects they are personally attached to.
OWNERSHIP_FIELDS: dict[ActorRole, str] = {
    ActorRole.CREATOR: "assigned_creator_id",
    ActorRole.CLIENT: "client_user_id",
    ActorRole.EDITOR: "assigned_editor_id",
}


def _coerce_state(value: ProjectState | str, current: ProjectState) -> ProjectState:
    if isinstance(value, ProjectState):
        return value
    try:
        return ProjectState(value)
    except ValueError:
        raise InvalidTransition(current, value, f"Unknown project state: {value}") from None


def _coerce_role(value: ActorRole | str) -> ActorRole:
    if isinstance(value, ActorRole):
        return value
    try:
        return ActorRole(value)
    except ValueError:
        raise TransitionNotPermitted(f"Unknown actor role: {value}") from None


class ProjectStateMachine:
    def __init__(
        self,
        db: Session,
        *,
        audit_log: TransitionAuditLog | None = None,
        notifications: NotificationService | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.audit_log = audit_log or TransitionAuditLog(db)
        self.notifications = notifications or NotificationService(db, clock=self._clock)

    def _load(self, project_id: int) -> Project:
        project = self.db.get(Project, project_id)
        if project is None:
            raise ProjectNotFound(f"Project {project_id} not found")
        return project

    @staticmethod
    def _ensure_open(project: Project) -> None:
        if project.current_state in TERMINAL_STATES:
            raise ProjectClosed(f"Project {project.project_code} is closed")

    def _validate(
        self,
        project: Project,
        to_state: ProjectState,
        actor_id: int | None,
        role: ActorRole,
        reason: str | None,
        related_file_id: int | None,
        related_feedback_id: int | None,
    ) -> TransitionRule | None:
        """Raise on any failure. Returns None for a same-state request."""
        from_state = project.current_state
        self._ensure_open(project)
        if to_state == from_state:
            return None

        rule = get_rule(from_state, to_state)
        if rule is None:
            raise InvalidTransition(from_state, to_state)

        if role not in rule.allowed_roles:
            raise TransitionNotPermitted(
                f"Role {role.value} cannot move a project from {from_state.value} to {to_state.value}"
            )
        if actor_id is None and role != ActorRole.SYSTEM:
            raise TransitionNotPermitted(f"Role {role.value} requires an acting user")
        ownership_field = OWNERSHIP_FIELDS.get(role)
        if ownership_field and getattr(project, ownership_field) != actor_id:
            raise TransitionNotPermitted(
                f"User {actor_id} is not the {role.value.lower()} on project {project.project_code}"
            )

        if rule.requires_reason and not (reason or "").strip():
            raise ReasonRequired(
                f"A reason is required to move from {from_state.value} to {to_state.value}"
            )

        if related_file_id is not None:
            file = self.db.get(ProjectFile, related_file_id)
            if file is None or file.project_id != project.project_id:
                raise GuardFailed(f"File {related_file_id} does not belong to this project")
        if related_feedback_id is not None:
            item = self.db.get(ProjectFeedback, related_feedback_id)
            if item is None or item.project_id != project.project_id:
                raise GuardFailed(
                    f"Feedback {related_feedback_id} does not belong to this project"
                )

        for check in GUARDS.get(to_state, ()):
            problem = check(self.db, project)
            if problem:
                raise GuardFailed(problem)
        return rule

    def can_transition(
        self,
        project_id: int,
        to_state: ProjectState | str,
        *,
        role: ActorRole | str,
        actor_id: int | None = None,
        reason: str | None = None,
    ) -> tuple[bool, StateMachineError | None]:
        """Dry run of ``transition``; nothing is written."""
        try:
            project = self._load(project_id)
            self._ensure_open(project)
            target = _coerce_state(to_state, project.current_state)
            self._validate(project, target, actor_id, _coerce_role(role), reason, None, None)
        except StateMachineError as exc:
            return False, exc
        return True, None

    def transition(
        self,
        project_id: int,
        to_state: ProjectState | str,
        *,
        role: ActorRole | str,
        actor_id: int | None = None,
        reason: str | None = None,
        related_file_id: int | None = None,
        related_feedback_id: int | None = None,
        request_context: RequestContext | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        project = self._load(project_id)
        self._ensure_open(project)
        from_state = project.current_state
        target = _coerce_state(to_state, from_state)
        actor_role = _coerce_role(role)

        rule = self._validate(
            project, target, actor_id, actor_role, reason, related_file_id, related_feedback_id
        )
        if rule is None:
            logger.debug(
                "Project %s already in %s, nothing to do", project.project_code, target.value
            )
            return TransitionResult(
                project=project,
                outcome=TransitionOutcome.NOOP,
                from_state=from_state,
                to_state=target,
            )

        context = request_context or RequestContext()
        now = self._clock()
        try:
            result = self.db.execute(
                update(Project)
                .where(
                    Project.project_id == project.project_id,
                    Project.current_state == from_state,
                )
                .values(current_state=target, state_changed_at=now, updated_at=now)
            )
            if result.rowcount != 1:
                raise TransitionConflict(
                    from_state,
                    target,
                    f"Project {project.project_code} left {from_state.value} before the "
                    f"move to {target.value} could be written",
                )

            entry = self.audit_log.append(
                TransitionRecord(
                    project_id=project.project_id,
                    from_state=from_state,
                    to_state=target,
                    role=actor_role,
                    actor_id=actor_id,
                    reason=reason,
                    related_file_id=related_file_id,
                    related_feedback_id=related_feedback_id,
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    metadata=metadata or {},
                    created_at=now,
                )
            )
            notifications = self.notifications.create_state_transition_notifications(
                project, from_state, target, actor_id=actor_id, reason=reason
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(project)
        logger.info(
            "Project %s: %s -> %s by %s (user %s)",
            project.project_code,
            from_state.value,
            target.value,
            actor_role.value,
            actor_id,
        )
        return TransitionResult(
            project=project,
            outcome=TransitionOutcome.APPLIED,
            from_state=from_state,
            to_state=target,
            history_entry=entry,
            notifications=notifications,
        )

    def bulk_transition(
        self,
        project_ids: list[int],
        to_state: ProjectState | str,
        *,
        role: ActorRole | str,
        actor_id: int | None = None,
        reason: str | None = None,
        request_context: RequestContext | None = None,
    ) -> BulkTransitionReport:
        """Apply one target state to many projects; a failure does not stop the batch."""
        report = BulkTransitionReport()
        for project_id in project_ids:
            try:
                result = self.transition(
                    project_id,
                    to_state,
                    role=role,
                    actor_id=actor_id,
                    reason=reason,
                    request_context=request_context,
                    metadata={"bulk": True},
                )
            except StateMachineError as exc:
                logger.warning("Bulk transition skipped project %s: %s", project_id, exc)
                report.failed[project_id] = str(exc)
                continue
            if result.is_noop:
                report.noop.append(project_id)
            else:
                report.applied.append(project_id)
        return report

    def history(self, project_id: int) -> list[ProjectStateHistory]:
        self._load(project_id)
        return self.audit_log.history(project_id)

    def available_transitions(
        self, project_id: int, role: ActorRole | str | None = None
    ) -> list[ProjectState]:
        project = self._load(project_id)
        if project.current_state in TERMINAL_STATES:
            return []
        return valid_transitions(
            project.current_state, _coerce_role(role) if role is not None else None
        )

    def transition_options(self, project_id: int) -> list[tuple[ProjectState, TransitionRule]]:
        project = self._load(project_id)
        return all_valid_transitions(project.current_state)

    def projects_requiring_action(self, user_id: int, role: ActorRole | str) -> list[Project]:
        """Projects waiting on ``role``, limited to the ones this user is attached to."""
        actor_role = _coerce_role(role)
        states = states_owned_by(actor_role)
        if not states:
            return []
        stmt = select(Project).where(Project.current_state.in_(states))
        ownership_field = OWNERSHIP_FIELDS.get(actor_role)
        if ownership_field:
            stmt = stmt.where(getattr(Project, ownership_field) == user_id)
        elif actor_role == ActorRole.QC:
            stmt = stmt.where(
                or_(Project.assigned_qc_id.is_(None), Project.assigned_qc_id == user_id)
            )
        stmt = stmt.order_by(Project.state_changed_at, Project.project_id)
        return list(self.db.scalars(stmt))