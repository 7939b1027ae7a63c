"""Unit tests for the transition audit log and the lead activity sentinels."""

import os
import sys
import unittest
from datetime import datetime, timedelta, timezone


os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("AWS_S3_BUCKET", "test-bucket")

TEST_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if TEST_ROOT not in sys.path:
    sys.path.insert(0, TEST_ROOT)


from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from api.app.audit_log import (  # noqa: E402
    SENTINEL_ACTIVITY_TYPE,
    LeadActivityLedger,
    TransitionAuditLog,
    TransitionRecord,
)
from api.app.db import Base  # noqa: E402
from api.app.models import (  # noqa: E402
    ActorRole,
    AppendOnlyViolation,
    Project,
    ProjectState,
    SalesLeadActivity,
    TransitionType,
    User,
)


def _session_factory():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


class TestTransitionAuditLog(unittest.TestCase):
    def setUp(self):
        self.db = _session_factory()()
        self.db.add(User(id=1, email="client@example.com", role=ActorRole.CLIENT))
        self.project = Project(project_code="RV-100", client_user_id=1)
        self.db.add(self.project)
        self.db.commit()
        self.log = TransitionAuditLog(self.db)

    def tearDown(self):
        self.db.close()

    def _append(self, from_state, to_state, created_at, actor_id=None):
        entry = self.log.append(
            TransitionRecord(
                project_id=self.project.project_id,
                from_state=from_state,
                to_state=to_state,
                role=ActorRole.QC if actor_id else ActorRole.SYSTEM,
                actor_id=actor_id,
                created_at=created_at,
            )
        )
        self.db.commit()
        return entry

    def test_history_is_oldest_first_and_recent_newest_first(self):
        base = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        self._append(ProjectState.RAW_UPLOADED, ProjectState.RAW_TECH_QC_PENDING, base)
        self._append(
            ProjectState.RAW_TECH_QC_PENDING,
            ProjectState.RAW_TECH_QC_APPROVED,
            base + timedelta(hours=1),
            actor_id=1,
        )

        history = self.log.history(self.project.project_id)
        self.assertEqual(
            [h.to_state for h in history],
            [ProjectState.RAW_TECH_QC_PENDING, ProjectState.RAW_TECH_QC_APPROVED],
        )
        recent = self.log.recent(self.project.project_id, limit=1)
        self.assertEqual(recent[0].to_state, ProjectState.RAW_TECH_QC_APPROVED)
        self.assertEqual(self.log.count(self.project.project_id), 2)

    def test_transition_type_follows_actor(self):
        base = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        automatic = self._append(ProjectState.RAW_UPLOADED, ProjectState.RAW_TECH_QC_PENDING, base)
        manual = self._append(
            ProjectState.RAW_TECH_QC_PENDING, ProjectState.RAW_TECH_QC_APPROVED, base, actor_id=1
        )
        self.assertEqual(automatic.transition_type, TransitionType.AUTOMATIC)
        self.assertEqual(manual.transition_type, TransitionType.MANUAL)

    def test_rows_cannot_be_deleted(self):
        entry = self._append(
            ProjectState.RAW_UPLOADED,
            ProjectState.RAW_TECH_QC_PENDING,
            datetime(2026, 3, 1, tzinfo=timezone.utc),
        )
        self.db.delete(entry)
        with self.assertRaises(AppendOnlyViolation):
            self.db.flush()
        self.db.rollback()


class TestLeadActivityLedger(unittest.TestCase):
    def setUp(self):
        self.session_factory = _session_factory()
        self.ledger = LeadActivityLedger(self.session_factory)

    def test_mark_then_has(self):
        self.assertFalse(
            self.ledger.has_sentinel(
                lead_id=7, booking_id=70, marker="shoot_reminder_5_days", target_key="2026-11-01"
            )
        )
        self.assertTrue(
            self.ledger.mark_sentinel(
                lead_id=7, booking_id=70, marker="shoot_reminder_5_days", target_key="2026-11-01"
            )
        )
        self.assertTrue(
            self.ledger.has_sentinel(
                lead_id=7, booking_id=70, marker="shoot_reminder_5_days", target_key="2026-11-01"
            )
        )
        # Different window key is a different send.
        self.assertFalse(
            self.ledger.has_sentinel(
                lead_id=7, booking_id=70, marker="shoot_reminder_5_days", target_key="2026-11-02"
            )
        )

    def test_booking_without_lead_is_keyed_by_booking(self):
        self.ledger.mark_sentinel(
            lead_id=None,
            booking_id=71,
            marker="shoot_reminder_2_hours",
            target_key="2026-11-01T14:00:00",
            key_field="target_start_at",
        )
        self.assertTrue(
            self.ledger.has_sentinel(
                lead_id=None,
                booking_id=71,
                marker="shoot_reminder_2_hours",
                target_key="2026-11-01T14:00:00",
            )
        )
        rows = self.ledger.sentinels_for_booking(71)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].activity_type, SENTINEL_ACTIVITY_TYPE)
        self.assertEqual(rows[0].performed_by_role, ActorRole.SYSTEM)
        self.assertEqual(rows[0].activity_data["target_start_at"], "2026-11-01T14:00:00")
        self.assertEqual(rows[0].activity_data["email_event"], "shoot_reminder_2_hours")

    def test_booking_sentinel_found_after_lead_is_linked(self):
        self.ledger.mark_sentinel(
            lead_id=None, booking_id=72, marker="shoot_reminder_5_days", target_key="2026-11-01"
        )
        self.assertTrue(
            self.ledger.has_sentinel(
                lead_id=720, booking_id=72, marker="shoot_reminder_5_days", target_key="2026-11-01"
            )
        )
        self.assertFalse(
            self.ledger.has_sentinel(
                lead_id=720, booking_id=73, marker="shoot_reminder_5_days", target_key="2026-11-01"
            )
        )

    def test_second_writer_loses(self):
        args = dict(lead_id=8, booking_id=80, marker="shoot_completion_next_day", target_key="2026-10-18")
        self.assertTrue(self.ledger.mark_sentinel(**args))
        self.assertFalse(self.ledger.mark_sentinel(**args))
        self.assertEqual(len(self.ledger.sentinels_for_booking(80)), 1)

    def test_sentinel_rows_are_append_only(self):
        self.ledger.mark_sentinel(
            lead_id=9, booking_id=90, marker="shoot_final_nudge_7_days", target_key="2026-10-12"
        )
        with self.session_factory() as db:
            row = db.query(SalesLeadActivity).filter_by(booking_id=90).one()
            row.target_key = "2026-10-13"
            with self.assertRaises(AppendOnlyViolation):
                db.flush()
            db.rollback()


if __name__ == "__main__":
    unittest.main()
