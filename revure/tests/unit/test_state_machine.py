"""Unit tests for the project state machine."""

import itertools
import os
import sys
import unittest


# Provide minimal env for Settings validation during import.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("AWS_S3_BUCKET", "test-bucket")
os.environ.setdefault("ENABLE_SCHEDULED_EMAIL_JOBS", "false")

# Ensure `api` package is importable when running from repo root.
TEST_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if TEST_ROOT not in sys.path:
    sys.path.insert(0, TEST_ROOT)


from sqlalchemy import create_engine, select  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from api.app.db import Base  # noqa: E402
from api.app.models import (  # noqa: E402
    ActorRole,
    AppendOnlyViolation,
    FeedbackStatus,
    FeedbackType,
    FileCategory,
    Notification,
    NotificationPriority,
    NotificationType,
    Project,
    ProjectFeedback,
    ProjectFile,
    ProjectState,
    ProjectStateHistory,
    UploadStatus,
    User,
    ValidationStatus,
)
from api.app.state_machine import (  # noqa: E402
    GuardFailed,
    InvalidTransition,
    ProjectClosed,
    ProjectStateMachine,
    ReasonRequired,
    RequestContext,
    TransitionConflict,
    TransitionNotPermitted,
    TransitionOutcome,
)
from api.app.state_transitions import is_valid_transition  # noqa: E402

CLIENT, CREATOR, EDITOR, QC, ADMIN = 1, 2, 3, 4, 5


def _session_factory():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


class StateMachineTestCase(unittest.TestCase):
    def setUp(self):
        self.db = _session_factory()()
        self.db.add_all(
            [
                User(id=CLIENT, email="client@example.com", name="Cara Client", role=ActorRole.CLIENT),
                User(id=CREATOR, email="creator@example.com", name="Cole Creator", role=ActorRole.CREATOR),
                User(id=EDITOR, email="editor@example.com", name="Eden Editor", role=ActorRole.EDITOR),
                User(id=QC, email="qc@example.com", name="Quinn Reviewer", role=ActorRole.QC),
                User(id=ADMIN, email="admin@example.com", name="Ada Admin", role=ActorRole.ADMIN),
            ]
        )
        self.db.commit()
        self.project = self._project("RV-001")
        self.machine = ProjectStateMachine(self.db)

    def tearDown(self):
        self.db.close()

    def _project(self, code, state=ProjectState.RAW_UPLOADED, **overrides):
        values = dict(
            project_code=code,
            project_name=f"Project {code}",
            current_state=state,
            client_user_id=CLIENT,
            assigned_creator_id=CREATOR,
            assigned_editor_id=EDITOR,
            assigned_qc_id=QC,
        )
        values.update(overrides)
        project = Project(**values)
        self.db.add(project)
        self.db.commit()
        return project

    def _file(self, project, category, *, validation=ValidationStatus.PASSED):
        file = ProjectFile(
            project_id=project.project_id,
            file_category=category,
            file_name=f"{category.value.lower()}.mp4",
            upload_status=UploadStatus.COMPLETED,
            upload_progress=100,
            validation_status=validation,
        )
        self.db.add(file)
        self.db.commit()
        return file

    def _history(self, project):
        return self.machine.history(project.project_id)


class TestTransitions(StateMachineTestCase):
    def test_full_lifecycle_is_replayable_from_history(self):
        pid = self.project.project_id
        self._file(self.project, FileCategory.RAW_FOOTAGE)
        self._file(self.project, FileCategory.EDIT_DRAFT)
        self._file(self.project, FileCategory.EDIT_FINAL)

        steps = [
            (ProjectState.RAW_TECH_QC_PENDING, ActorRole.SYSTEM, None),
            (ProjectState.RAW_TECH_QC_APPROVED, ActorRole.QC, QC),
            (ProjectState.COVERAGE_REVIEW_PENDING, ActorRole.SYSTEM, None),
            (ProjectState.EDIT_APPROVAL_PENDING, ActorRole.QC, QC),
            (ProjectState.EDIT_IN_PROGRESS, ActorRole.ADMIN, ADMIN),
            (ProjectState.INTERNAL_EDIT_REVIEW_PENDING, ActorRole.EDITOR, EDITOR),
            (ProjectState.CLIENT_PREVIEW_READY, ActorRole.QC, QC),
            (ProjectState.CLIENT_FEEDBACK_RECEIVED, ActorRole.CLIENT, CLIENT),
            (ProjectState.FEEDBACK_INTERNAL_REVIEW, ActorRole.SYSTEM, None),
            (ProjectState.FINAL_EXPORT_PENDING, ActorRole.ADMIN, ADMIN),
            (ProjectState.READY_FOR_DELIVERY, ActorRole.EDITOR, EDITOR),
            (ProjectState.DELIVERED, ActorRole.SYSTEM, None),
            (ProjectState.PROJECT_CLOSED, ActorRole.CLIENT, CLIENT),
        ]
        for to_state, role, actor in steps:
            result = self.machine.transition(pid, to_state, role=role, actor_id=actor)
            self.assertEqual(result.outcome, TransitionOutcome.APPLIED)
            self.assertEqual(result.project.current_state, to_state)

        history = self._history(self.project)
        self.assertEqual(len(history), len(steps))
        replayed = ProjectState.RAW_UPLOADED
        for entry in history:
            self.assertEqual(entry.from_state, replayed)
            replayed = entry.to_state
        self.assertEqual(replayed, self.db.get(Project, pid).current_state)

    def test_closed_project_rejects_everything(self):
        project = self._project("RV-CLOSED", ProjectState.PROJECT_CLOSED)
        with self.assertRaises(ProjectClosed):
            self.machine.transition(
                project.project_id, ProjectState.DELIVERED, role=ActorRole.ADMIN, actor_id=ADMIN
            )
        with self.assertRaises(ProjectClosed):
            self.machine.transition(
                project.project_id, ProjectState.PROJECT_CLOSED, role=ActorRole.ADMIN, actor_id=ADMIN
            )

    def test_same_state_is_a_noop_without_history(self):
        result = self.machine.transition(
            self.project.project_id, ProjectState.RAW_UPLOADED, role=ActorRole.ADMIN, actor_id=ADMIN
        )
        self.assertTrue(result.is_noop)
        self.assertEqual(self._history(self.project), [])

    def test_unknown_pair_is_invalid(self):
        with self.assertRaises(InvalidTransition):
            self.machine.transition(
                self.project.project_id, ProjectState.DELIVERED, role=ActorRole.ADMIN, actor_id=ADMIN
            )
        self.assertEqual(self._history(self.project), [])

    def test_every_pair_outside_the_table_is_rejected(self):
        checked = 0
        for index, (from_state, to_state) in enumerate(
            itertools.product(ProjectState, ProjectState)
        ):
            if from_state == to_state or is_valid_transition(from_state, to_state):
                continue
            project = self._project(f"RV-PAIR-{index}", from_state)
            expected = (
                ProjectClosed if from_state == ProjectState.PROJECT_CLOSED else InvalidTransition
            )
            with self.subTest(from_state=from_state.value, to_state=to_state.value):
                with self.assertRaises(expected):
                    self.machine.transition(
                        project.project_id, to_state, role=ActorRole.ADMIN, actor_id=ADMIN
                    )
                self.assertEqual(self._history(project), [])
                self.assertEqual(self.db.get(Project, project.project_id).current_state, from_state)
            checked += 1
        self.assertGreater(checked, 0)

    def test_closed_project_with_unknown_target_is_closed(self):
        project = self._project("RV-CLOSED-2", ProjectState.PROJECT_CLOSED)
        with self.assertRaises(ProjectClosed):
            self.machine.transition(
                project.project_id, "ON_HOLD", role=ActorRole.ADMIN, actor_id=ADMIN
            )
        ok, error = self.machine.can_transition(project.project_id, "ON_HOLD", role=ActorRole.ADMIN)
        self.assertFalse(ok)
        self.assertIsInstance(error, ProjectClosed)

    def test_unknown_state_name_is_invalid(self):
        with self.assertRaises(InvalidTransition):
            self.machine.transition(
                self.project.project_id, "ON_HOLD", role=ActorRole.ADMIN, actor_id=ADMIN
            )

    def test_role_not_in_rule_is_rejected_before_guards(self):
        # No raw file exists, but the role check fails first.
        with self.assertRaises(TransitionNotPermitted):
            self.machine.transition(
                self.project.project_id,
                ProjectState.RAW_TECH_QC_PENDING,
                role=ActorRole.CLIENT,
                actor_id=CLIENT,
            )

    def test_human_role_needs_an_actor(self):
        self._file(self.project, FileCategory.RAW_FOOTAGE)
        with self.assertRaises(TransitionNotPermitted):
            self.machine.transition(
                self.project.project_id, ProjectState.RAW_TECH_QC_PENDING, role=ActorRole.ADMIN
            )

    def test_creator_must_own_the_project(self):
        project = self._project("RV-REJ", ProjectState.RAW_TECH_QC_REJECTED)
        with self.assertRaises(TransitionNotPermitted):
            self.machine.transition(
                project.project_id, ProjectState.RAW_UPLOADED, role=ActorRole.CREATOR, actor_id=99
            )
        result = self.machine.transition(
            project.project_id, ProjectState.RAW_UPLOADED, role=ActorRole.CREATOR, actor_id=CREATOR
        )
        self.assertEqual(result.to_state, ProjectState.RAW_UPLOADED)

    def test_rejection_requires_a_reason(self):
        project = self._project("RV-QC", ProjectState.RAW_TECH_QC_PENDING)
        for reason in (None, "", "   "):
            with self.assertRaises(ReasonRequired):
                self.machine.transition(
                    project.project_id,
                    ProjectState.RAW_TECH_QC_REJECTED,
                    role=ActorRole.QC,
                    actor_id=QC,
                    reason=reason,
                )
        self.assertEqual(self._history(project), [])

        result = self.machine.transition(
            project.project_id,
            ProjectState.RAW_TECH_QC_REJECTED,
            role=ActorRole.QC,
            actor_id=QC,
            reason="Audio clipping on every clip",
            request_context=RequestContext(ip_address="10.0.0.8", user_agent="pytest"),
        )
        entry = result.history_entry
        self.assertEqual(entry.transition_reason, "Audio clipping on every clip")
        self.assertEqual(entry.transitioned_by_role, ActorRole.QC)
        self.assertEqual(entry.ip_address, "10.0.0.8")

        self.assertEqual([n.user_id for n in result.notifications], [CREATOR])
        notification = result.notifications[0]
        self.assertEqual(notification.notification_type, NotificationType.QC_REJECTION)
        self.assertEqual(notification.priority, NotificationPriority.HIGH)
        self.assertIn("Audio clipping", notification.message)

    def test_guard_failure_leaves_state_untouched(self):
        with self.assertRaises(GuardFailed):
            self.machine.transition(
                self.project.project_id, ProjectState.RAW_TECH_QC_PENDING, role=ActorRole.SYSTEM
            )
        self.assertEqual(
            self.db.get(Project, self.project.project_id).current_state,
            ProjectState.RAW_UPLOADED,
        )
        self.assertEqual(self._history(self.project), [])

    def test_failed_raw_validation_blocks_approval(self):
        project = self._project("RV-VAL", ProjectState.RAW_TECH_QC_PENDING)
        self._file(project, FileCategory.RAW_FOOTAGE, validation=ValidationStatus.FAILED)
        with self.assertRaises(GuardFailed):
            self.machine.transition(
                project.project_id, ProjectState.RAW_TECH_QC_APPROVED, role=ActorRole.QC, actor_id=QC
            )

    def test_open_feedback_blocks_final_export(self):
        project = self._project("RV-FB", ProjectState.FEEDBACK_INTERNAL_REVIEW)
        item = ProjectFeedback(
            project_id=project.project_id,
            feedback_type=FeedbackType.CLIENT_PREVIEW_FEEDBACK,
            submitted_by_user_id=CLIENT,
            submitted_by_role=ActorRole.CLIENT,
            feedback_text="Music is too loud",
        )
        self.db.add(item)
        self.db.commit()

        with self.assertRaises(GuardFailed):
            self.machine.transition(
                project.project_id, ProjectState.FINAL_EXPORT_PENDING, role=ActorRole.ADMIN, actor_id=ADMIN
            )

        item.status = FeedbackStatus.RESOLVED
        self.db.commit()
        result = self.machine.transition(
            project.project_id,
            ProjectState.FINAL_EXPORT_PENDING,
            role=ActorRole.ADMIN,
            actor_id=ADMIN,
            related_feedback_id=item.feedback_id,
        )
        self.assertEqual(result.history_entry.related_feedback_id, item.feedback_id)

    def test_related_file_must_belong_to_project(self):
        other = self._project("RV-OTHER")
        foreign = self._file(other, FileCategory.RAW_FOOTAGE)
        self._file(self.project, FileCategory.RAW_FOOTAGE)
        with self.assertRaises(GuardFailed):
            self.machine.transition(
                self.project.project_id,
                ProjectState.RAW_TECH_QC_PENDING,
                role=ActorRole.SYSTEM,
                related_file_id=foreign.file_id,
            )

    def test_stale_read_is_reported_as_conflict(self):
        self._file(self.project, FileCategory.RAW_FOOTAGE)
        pid = self.project.project_id
        self.machine.transition(pid, ProjectState.RAW_TECH_QC_PENDING, role=ActorRole.SYSTEM)

        # Another writer moved the project; this session still holds the old state.
        stale = self.db.get(Project, pid)
        stale.current_state = ProjectState.RAW_UPLOADED

        with self.assertRaises(TransitionConflict):
            self.machine.transition(pid, ProjectState.RAW_TECH_QC_PENDING, role=ActorRole.SYSTEM)

        self.assertEqual(self.db.get(Project, pid).current_state, ProjectState.RAW_TECH_QC_PENDING)
        self.assertEqual(len(self._history(self.project)), 1)

    def test_actor_is_not_notified_of_own_transition(self):
        project = self._project("RV-PREVIEW", ProjectState.INTERNAL_EDIT_REVIEW_PENDING)
        result = self.machine.transition(
            project.project_id, ProjectState.CLIENT_PREVIEW_READY, role=ActorRole.QC, actor_id=QC
        )
        recipients = {n.user_id for n in result.notifications}
        self.assertIn(CLIENT, recipients)
        self.assertNotIn(QC, recipients)
        stored = self.db.scalars(
            select(Notification).where(Notification.related_project_id == project.project_id)
        ).all()
        self.assertEqual(len(stored), len(result.notifications))

    def test_history_rows_cannot_be_edited(self):
        self._file(self.project, FileCategory.RAW_FOOTAGE)
        result = self.machine.transition(
            self.project.project_id, ProjectState.RAW_TECH_QC_PENDING, role=ActorRole.SYSTEM
        )
        entry = self.db.get(ProjectStateHistory, result.history_entry.history_id)
        entry.transition_reason = "rewritten"
        with self.assertRaises(AppendOnlyViolation):
            self.db.flush()
        self.db.rollback()


class TestQueries(StateMachineTestCase):
    def test_can_transition_is_a_dry_run(self):
        ok, error = self.machine.can_transition(
            self.project.project_id, ProjectState.RAW_TECH_QC_PENDING, role=ActorRole.SYSTEM
        )
        self.assertFalse(ok)
        self.assertIsInstance(error, GuardFailed)

        self._file(self.project, FileCategory.RAW_FOOTAGE)
        ok, error = self.machine.can_transition(
            self.project.project_id, ProjectState.RAW_TECH_QC_PENDING, role=ActorRole.SYSTEM
        )
        self.assertTrue(ok)
        self.assertIsNone(error)
        self.assertEqual(self._history(self.project), [])

    def test_available_transitions_filter_by_role(self):
        project = self._project("RV-AVAIL", ProjectState.RAW_TECH_QC_PENDING)
        self.assertEqual(
            set(self.machine.available_transitions(project.project_id, ActorRole.QC)),
            {ProjectState.RAW_TECH_QC_APPROVED, ProjectState.RAW_TECH_QC_REJECTED},
        )
        self.assertEqual(self.machine.available_transitions(project.project_id, ActorRole.CLIENT), [])
        closed = self._project("RV-DONE", ProjectState.PROJECT_CLOSED)
        self.assertEqual(self.machine.available_transitions(closed.project_id), [])

    def test_bulk_transition_reports_each_project(self):
        ready_a = self._project("RV-B1")
        ready_b = self._project("RV-B2")
        missing = self._project("RV-B3")
        self._file(ready_a, FileCategory.RAW_FOOTAGE)
        self._file(ready_b, FileCategory.RAW_AUDIO)

        report = self.machine.bulk_transition(
            [ready_a.project_id, ready_b.project_id, missing.project_id],
            ProjectState.RAW_TECH_QC_PENDING,
            role=ActorRole.SYSTEM,
        )
        self.assertEqual(report.applied, [ready_a.project_id, ready_b.project_id])
        self.assertIn(missing.project_id, report.failed)
        self.assertEqual(report.success_count, 2)
        entry = self._history(ready_a)[0]
        self.assertEqual(entry.additional_metadata, {"bulk": True})

    def test_projects_requiring_action_for_reviewer(self):
        waiting = self._project("RV-WAIT", ProjectState.RAW_TECH_QC_PENDING)
        self._project("RV-ELSE", ProjectState.RAW_TECH_QC_PENDING, assigned_qc_id=ADMIN)
        projects = self.machine.projects_requiring_action(QC, ActorRole.QC)
        self.assertEqual([p.project_id for p in projects], [waiting.project_id])


if __name__ == "__main__":
    unittest.main()
