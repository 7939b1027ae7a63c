"""
Project workflow table.

Legal (from, to) pairs with the roles allowed to request them, which of them
need a written reason, per-state display metadata, and who hears about a
project entering each state.
"""

from __future__ import annotations

from dataclasses import dataclass

from .models import ActorRole, NotificationPriority, NotificationType, ProjectState

S = ProjectState
R = ActorRole


@dataclass(frozen=True)
class TransitionRule:
    allowed_roles: frozenset[ActorRole]
    requires_reason: bool = False


@dataclass(frozen=True)
class StateMetadata:
    display_name: str
    category: str
    is_rejection_state: bool = False
    requires_action: bool = False
    action_owners: tuple[ActorRole, ...] = ()


@dataclass(frozen=True)
class NotificationRule:
    notification_type: NotificationType
    priority: NotificationPriority
    # Roles notified in addition to the state's action owners.
    extra_recipients: tuple[ActorRole, ...] = ()


def _rule(*roles: ActorRole, reason: bool = False) -> TransitionRule:
    return TransitionRule(allowed_roles=frozenset(roles), requires_reason=reason)


TRANSITIONS: dict[tuple[ProjectState, ProjectState], TransitionRule] = {
    (S.RAW_UPLOADED, S.RAW_TECH_QC_PENDING): _rule(R.SYSTEM, R.ADMIN),
    (S.RAW_TECH_QC_PENDING, S.RAW_TECH_QC_APPROVED): _rule(R.QC, R.ADMIN),
    (S.RAW_TECH_QC_PENDING, S.RAW_TECH_QC_REJECTED): _rule(R.QC, R.ADMIN, reason=True),
    (S.RAW_TECH_QC_REJECTED, S.RAW_UPLOADED): _rule(R.CREATOR, R.SYSTEM, R.ADMIN),
    (S.RAW_TECH_QC_APPROVED, S.COVERAGE_REVIEW_PENDING): _rule(R.SYSTEM, R.ADMIN),
    (S.COVERAGE_REVIEW_PENDING, S.EDIT_APPROVAL_PENDING): _rule(R.QC, R.ADMIN),
    (S.COVERAGE_REVIEW_PENDING, S.COVERAGE_REJECTED): _rule(R.QC, R.ADMIN, reason=True),
    (S.COVERAGE_REJECTED, S.COVERAGE_REVIEW_PENDING): _rule(R.ADMIN, reason=True),
    (S.EDIT_APPROVAL_PENDING, S.EDIT_IN_PROGRESS): _rule(R.ADMIN, R.EDITOR),
    (S.EDIT_IN_PROGRESS, S.INTERNAL_EDIT_REVIEW_PENDING): _rule(R.EDITOR, R.ADMIN),
    (S.INTERNAL_EDIT_REVIEW_PENDING, S.CLIENT_PREVIEW_READY): _rule(R.QC, R.ADMIN),
    (S.INTERNAL_EDIT_REVIEW_PENDING, S.EDIT_IN_PROGRESS): _rule(R.QC, R.ADMIN, reason=True),
    (S.CLIENT_PREVIEW_READY, S.CLIENT_FEEDBACK_RECEIVED): _rule(R.CLIENT, R.ADMIN, R.SYSTEM),
    (S.CLIENT_FEEDBACK_RECEIVED, S.FEEDBACK_INTERNAL_REVIEW): _rule(R.SYSTEM, R.ADMIN),
    (S.FEEDBACK_INTERNAL_REVIEW, S.REVISION_IN_PROGRESS): _rule(R.ADMIN, R.QC, reason=True),
    (S.FEEDBACK_INTERNAL_REVIEW, S.FINAL_EXPORT_PENDING): _rule(R.ADMIN, R.QC),
    (S.REVISION_IN_PROGRESS, S.REVISION_QC_PENDING): _rule(R.EDITOR, R.ADMIN),
    (S.REVISION_QC_PENDING, S.FINAL_EXPORT_PENDING): _rule(R.QC, R.ADMIN),
    (S.REVISION_QC_PENDING, S.REVISION_IN_PROGRESS): _rule(R.QC, R.ADMIN, reason=True),
    (S.FINAL_EXPORT_PENDING, S.READY_FOR_DELIVERY): _rule(R.EDITOR, R.ADMIN, R.SYSTEM),
    (S.READY_FOR_DELIVERY, S.DELIVERED): _rule(R.ADMIN, R.SYSTEM),
    (S.DELIVERED, S.PROJECT_CLOSED): _rule(R.ADMIN, R.CLIENT),
}

TERMINAL_STATES = frozenset({S.PROJECT_CLOSED})

# Rejection state -> recovery state. Only the coverage loop may be forced by an admin.
REJECTION_LOOPS: dict[ProjectState, tuple[ProjectState, bool]] = {
    S.RAW_TECH_QC_REJECTED: (S.RAW_UPLOADED, False),
    S.COVERAGE_REJECTED: (S.COVERAGE_REVIEW_PENDING, True),
}

STATE_METADATA: dict[ProjectState, StateMetadata] = {
    S.RAW_UPLOADED: StateMetadata("Raw Footage Uploaded", "upload"),
    S.RAW_TECH_QC_PENDING: StateMetadata(
        "Technical QC Pending", "qc", requires_action=True, action_owners=(R.QC, R.ADMIN)
    ),
    S.RAW_TECH_QC_REJECTED: StateMetadata(
        "Technical QC Rejected",
        "qc",
        is_rejection_state=True,
        requires_action=True,
        action_owners=(R.CREATOR,),
    ),
    S.RAW_TECH_QC_APPROVED: StateMetadata("Technical QC Approved", "qc"),
    S.COVERAGE_REVIEW_PENDING: StateMetadata(
        "Coverage Review Pending",
        "review",
        requires_action=True,
        action_owners=(R.QC, R.ADMIN),
    ),
    S.COVERAGE_REJECTED: StateMetadata(
        "Coverage Rejected",
        "review",
        is_rejection_state=True,
        requires_action=True,
        action_owners=(R.ADMIN,),
    ),
    S.EDIT_APPROVAL_PENDING: StateMetadata(
        "Edit Approval Pending", "edit", requires_action=True, action_owners=(R.ADMIN,)
    ),
    S.EDIT_IN_PROGRESS: StateMetadata(
        "Edit In Progress", "edit", requires_action=True, action_owners=(R.EDITOR,)
    ),
    S.INTERNAL_EDIT_REVIEW_PENDING: StateMetadata(
        "Internal Edit Review",
        "edit",
        requires_action=True,
        action_owners=(R.QC, R.ADMIN),
    ),
    S.CLIENT_PREVIEW_READY: StateMetadata(
        "Preview Ready for Client",
        "client",
        requires_action=True,
        action_owners=(R.CLIENT,),
    ),
    S.CLIENT_FEEDBACK_RECEIVED: StateMetadata("Client Feedback Received", "client"),
    S.FEEDBACK_INTERNAL_REVIEW: StateMetadata(
        "Feedback Under Review",
        "client",
        requires_action=True,
        action_owners=(R.ADMIN, R.QC),
    ),
    S.REVISION_IN_PROGRESS: StateMetadata(
        "Revision In Progress", "revision", requires_action=True, action_owners=(R.EDITOR,)
    ),
    S.REVISION_QC_PENDING: StateMetadata(
        "Revision QC Pending",
        "revision",
        requires_action=True,
        action_owners=(R.QC, R.ADMIN),
    ),
    S.FINAL_EXPORT_PENDING: StateMetadata(
        "Final Export Pending",
        "delivery",
        requires_action=True,
        action_owners=(R.EDITOR, R.ADMIN),
    ),
    S.READY_FOR_DELIVERY: StateMetadata(
        "Ready for Delivery", "delivery", requires_action=True, action_owners=(R.ADMIN,)
    ),
    S.DELIVERED: StateMetadata(
        "Delivered",
        "delivery",
        requires_action=True,
        action_owners=(R.CLIENT, R.ADMIN),
    ),
    S.PROJECT_CLOSED: StateMetadata("Project Closed", "closed"),
}

_STANDARD = NotificationRule(NotificationType.STATE_TRANSITION, NotificationPriority.NORMAL)

NOTIFICATION_RULES: dict[ProjectState, NotificationRule] = {
    S.RAW_TECH_QC_REJECTED: NotificationRule(
        NotificationType.QC_REJECTION, NotificationPriority.HIGH, (R.CREATOR,)
    ),
    S.COVERAGE_REJECTED: NotificationRule(
        NotificationType.QC_REJECTION, NotificationPriority.HIGH
    ),
    S.CLIENT_PREVIEW_READY: NotificationRule(
        NotificationType.STATE_TRANSITION, NotificationPriority.HIGH, (R.CLIENT,)
    ),
    S.REVISION_IN_PROGRESS: NotificationRule(
        NotificationType.STATE_TRANSITION, NotificationPriority.NORMAL, (R.EDITOR, R.CREATOR)
    ),
    S.DELIVERED: NotificationRule(
        NotificationType.PROJECT_DELIVERED, NotificationPriority.HIGH, (R.CLIENT,)
    ),
}


def get_rule(from_state: ProjectState, to_state: ProjectState) -> TransitionRule | None:
    return TRANSITIONS.get((from_state, to_state))


def is_valid_transition(from_state: ProjectState, to_state: ProjectState) -> bool:
    return (from_state, to_state) in TRANSITIONS


def is_role_allowed(
    from_state: ProjectState, to_state: ProjectState, role: ActorRole
) -> bool:
    rule = get_rule(from_state, to_state)
    return rule is not None and role in rule.allowed_roles


def requires_reason(from_state: ProjectState, to_state: ProjectState) -> bool:
    rule = get_rule(from_state, to_state)
    return rule is not None and rule.requires_reason


def valid_transitions(state: ProjectState, role: ActorRole | None = None) -> list[ProjectState]:
    """Targets reachable from ``state``, optionally limited to what ``role`` may request."""
    return [
        to_state
        for (from_state, to_state), rule in TRANSITIONS.items()
        if from_state == state and (role is None or role in rule.allowed_roles)
    ]


def all_valid_transitions(state: ProjectState) -> list[tuple[ProjectState, TransitionRule]]:
    return [
        (to_state, rule)
        for (from_state, to_state), rule in TRANSITIONS.items()
        if from_state == state
    ]


def state_metadata(state: ProjectState) -> StateMetadata:
    return STATE_METADATA[state]


def is_rejection_state(state: ProjectState) -> bool:
    return STATE_METADATA[state].is_rejection_state


def requires_action(state: ProjectState) -> bool:
    return STATE_METADATA[state].requires_action


def action_owners(state: ProjectState) -> tuple[ActorRole, ...]:
    return STATE_METADATA[state].action_owners


def notification_rule(state: ProjectState) -> NotificationRule:
    return NOTIFICATION_RULES.get(state, _STANDARD)


def states_owned_by(role: ActorRole) -> list[ProjectState]:
    """States where ``role`` is expected to act next."""
    return [
        state
        for state, meta in STATE_METADATA.items()
        if meta.requires_action and role in meta.action_owners
    ]
