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

from api.app.db import Base  # noqa: E402
from api.app.email_service import EmailResult  # noqa: E402
from api.app.models import (  # noqa: E402
    ActorRole,
    EmailDeliveryStatus,
    Notification,
    NotificationPriority,
    NotificationType,
    Project,
    ProjectState,
    User,
)
from api.app.notifications import (  # noqa: E402
    NotificationDraft,
    NotificationNotFound,
    NotificationService,
    NotificationStateError,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _session_factory():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


class FakeMailer:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    def send_notification_email(self, to_email, title, message, action_url=None):
        self.sent.append((to_email, title, action_url))
        if to_email in self.fail_for:
            return EmailResult(success=False, error="mailbox full")
        return EmailResult(success=True)


class NotificationTestCase(unittest.TestCase):
    def setUp(self):
        self.db = _session_factory()()
        self.db.add_all(
            [
                User(id=1, email="client@example.com", role=ActorRole.CLIENT),
                User(id=2, email="creator@example.com", role=ActorRole.CREATOR),
                User(id=3, email="editor@example.com", role=ActorRole.EDITOR),
                User(id=4, email="qc1@example.com", role=ActorRole.QC),
                User(id=5, email="qc2@example.com", role=ActorRole.QC),
                User(id=6, email="qc-old@example.com", role=ActorRole.QC, is_active=False),
                User(id=7, email="admin@example.com", role=ActorRole.ADMIN),
                User(id=8, email=None, role=ActorRole.EDITOR),
            ]
        )
        self.project = Project(
            project_code="RV-200",
            project_name="Launch Film",
            client_user_id=1,
            assigned_creator_id=2,
            assigned_editor_id=3,
        )
        self.db.add(self.project)
        self.db.commit()
        self.service = NotificationService(
            self.db, clock=lambda: NOW, frontend_url="https://app.example.com/"
        )

    def tearDown(self):
        self.db.close()

    def _draft(self, user_id, **overrides):
        values = dict(
            user_id=user_id,
            notification_type=NotificationType.GENERAL_MESSAGE,
            title="Hello",
            message="Body",
        )
        values.update(overrides)
        return NotificationDraft(**values)


class TestRecipients(NotificationTestCase):
    def test_unassigned_qc_falls_back_to_active_reviewers(self):
        self.assertEqual(self.service.resolve_recipients(self.project, [ActorRole.QC]), [4, 5])
        self.project.assigned_qc_id = 5
        self.assertEqual(self.service.resolve_recipients(self.project, [ActorRole.QC]), [5])

    def test_roles_are_deduplicated_in_order(self):
        recipients = self.service.resolve_recipients(
            self.project,
            [ActorRole.CREATOR, ActorRole.EDITOR, ActorRole.CREATOR, ActorRole.ADMIN, ActorRole.SYSTEM],
        )
        self.assertEqual(recipients, [2, 3, 7])

    def test_transition_fan_out(self):
        created = self.service.create_state_transition_notifications(
            self.project,
            ProjectState.FEEDBACK_INTERNAL_REVIEW,
            ProjectState.REVISION_IN_PROGRESS,
            actor_id=7,
            reason="Client wants a shorter intro",
        )
        self.assertEqual(sorted(n.user_id for n in created), [2, 3])
        for notification in created:
            self.assertEqual(notification.title, "Project Status Updated: RV-200")
            self.assertIn("Client wants a shorter intro", notification.message)
            self.assertEqual(
                notification.action_url,
                f"https://app.example.com/cms/projects/{self.project.project_id}",
            )

    def test_delivered_is_high_priority_for_client(self):
        created = self.service.create_state_transition_notifications(
            self.project, ProjectState.READY_FOR_DELIVERY, ProjectState.DELIVERED
        )
        client = [n for n in created if n.user_id == 1]
        self.assertEqual(len(client), 1)
        self.assertEqual(client[0].notification_type, NotificationType.PROJECT_DELIVERED)
        self.assertEqual(client[0].priority, NotificationPriority.HIGH)


class TestReadState(NotificationTestCase):
    def test_mark_read_and_counts(self):
        first = self.service.create_notification(self._draft(1))
        self.service.create_bulk_notifications([self._draft(1), self._draft(2)])
        self.db.commit()

        self.assertEqual(self.service.unread_count(1), 2)
        self.service.mark_as_read(first.notification_id, 1)
        self.assertEqual(self.service.unread_count(1), 1)
        self.assertEqual(self.service.mark_all_as_read(1), 1)
        self.assertEqual(self.service.unread_count(1), 0)
        self.assertEqual(self.service.unread_count(2), 1)

    def test_cannot_read_someone_elses_notification(self):
        notification = self.service.create_notification(self._draft(2))
        with self.assertRaises(NotificationNotFound):
            self.service.mark_as_read(notification.notification_id, 1)

    def test_expired_notifications_are_hidden(self):
        self.service.create_notification(self._draft(1, expires_at=NOW - timedelta(hours=1)))
        live = self.service.create_notification(self._draft(1, expires_at=NOW + timedelta(hours=1)))
        self.db.commit()
        listed = self.service.user_notifications(1)
        self.assertEqual([n.notification_id for n in listed], [live.notification_id])

    def test_deadline_within_a_day_is_urgent(self):
        notification = self.service.notify_deadline_approaching(
            3, self.project, "edit delivery", NOW + timedelta(hours=5)
        )
        self.assertEqual(notification.priority, NotificationPriority.URGENT)
        self.assertIn("5 hours", notification.message)


class TestEmailDelivery(NotificationTestCase):
    def test_delivery_lifecycle(self):
        notification = self.service.create_notification(self._draft(1))
        nid = notification.notification_id
        self.service.mark_email_sent(nid)
        self.assertTrue(notification.email_sent)
        self.service.mark_email_delivered(nid)
        self.service.mark_email_opened(nid)
        self.assertTrue(notification.email_opened)
        with self.assertRaises(NotificationStateError):
            self.service.mark_email_bounced(nid)

    def test_cannot_open_unsent_email(self):
        notification = self.service.create_notification(self._draft(1))
        with self.assertRaises(NotificationStateError):
            self.service.mark_email_opened(notification.notification_id)

    def test_dispatch_pending_emails(self):
        ok = self.service.create_notification(self._draft(1))
        bounced = self.service.create_notification(self._draft(2))
        no_email = self.service.create_notification(self._draft(8))
        self.db.commit()

        mailer = FakeMailer(fail_for={"creator@example.com"})
        stats = self.service.dispatch_pending_emails(mailer)
        self.db.commit()

        self.assertEqual(stats, {"sent": 1, "failed": 1, "skipped": 1})
        self.assertEqual(self.db.get(Notification, ok.notification_id).email_delivery_status, EmailDeliveryStatus.SENT)
        failed = self.db.get(Notification, bounced.notification_id)
        self.assertEqual(failed.email_delivery_status, EmailDeliveryStatus.FAILED)
        self.assertEqual(failed.email_delivery_error, "mailbox full")
        self.assertEqual(
            self.db.get(Notification, no_email.notification_id).email_delivery_status,
            EmailDeliveryStatus.FAILED,
        )
        # Nothing left to send.
        self.assertEqual(self.service.dispatch_pending_emails(mailer), {"sent": 0, "failed": 0, "skipped": 0})

    def test_cleanup_removes_only_old_read_notifications(self):
        old_read = Notification(
            user_id=1,
            notification_type=NotificationType.GENERAL_MESSAGE,
            title="old",
            message="old",
            is_read=True,
            created_at=NOW - timedelta(days=120),
        )
        old_unread = Notification(
            user_id=1,
            notification_type=NotificationType.GENERAL_MESSAGE,
            title="old unread",
            message="old",
            created_at=NOW - timedelta(days=120),
        )
        recent_read = Notification(
            user_id=1,
            notification_type=NotificationType.GENERAL_MESSAGE,
            title="recent",
            message="recent",
            is_read=True,
            created_at=NOW - timedelta(days=3),
        )
        self.db.add_all([old_read, old_unread, recent_read])
        self.db.commit()

        self.assertEqual(self.service.cleanup_old_notifications(90), 1)
        self.db.commit()
        titles = sorted(n.title for n in self.db.query(Notification).all())
        self.assertEqual(titles, ["old unread", "recent"])


if __name__ == "__main__":
    unittest.main()
