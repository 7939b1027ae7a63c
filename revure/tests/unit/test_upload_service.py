import hashlib
import os
import sys
import tempfile
import unittest


os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("AWS_S3_BUCKET", "test-bucket")

TEST_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if TEST_ROOT not in sys.path:
    sys.path.insert(0, TEST_ROOT)


from botocore.exceptions import ClientError  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from api.app.db import Base  # noqa: E402
from api.app.file_registry import VersionChainError  # noqa: E402
from api.app.models import (  # noqa: E402
    ActorRole,
    FileCategory,
    Notification,
    NotificationType,
    Project,
    ProjectFile,
    UploadStatus,
    User,
    ValidationStatus,
)
from api.app.schemas import MediaInfo  # noqa: E402
from api.app.storage import ObjectStorageClient  # noqa: E402
from api.app.upload_service import ProjectFileUploader  # noqa: E402


def _session_factory():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


class SinglePutS3:
    def __init__(self, error=None):
        self.error = error
        self.objects = {}

    def put_object(self, **kwargs):
        if self.error is not None:
            raise self.error
        etag = '"%s"' % hashlib.md5(kwargs["Body"]).hexdigest()
        self.objects[kwargs["Key"]] = {"Body": kwargs["Body"], "ETag": etag, "Metadata": kwargs["Metadata"]}
        return {"ETag": etag}

    def head_object(self, **kwargs):
        obj = self.objects[kwargs["Key"]]
        return {"ETag": obj["ETag"], "ContentLength": len(obj["Body"])}


class TestProjectFileUploader(unittest.TestCase):
    def setUp(self):
        self.db = _session_factory()()
        self.db.add_all(
            [
                User(id=1, email="client@example.com", role=ActorRole.CLIENT),
                User(id=2, email="creator@example.com", role=ActorRole.CREATOR),
                User(id=4, email="qc1@example.com", role=ActorRole.QC),
                User(id=5, email="qc2@example.com", role=ActorRole.QC),
            ]
        )
        self.project = Project(project_code="RV-500", client_user_id=1, assigned_creator_id=2)
        self.db.add(self.project)
        self.db.commit()
        self.project_id = self.project.project_id

    def tearDown(self):
        self.db.close()

    def _uploader(self, fake):
        storage = ObjectStorageClient(
            fake,
            bucket="test-bucket",
            region="us-east-1",
            multipart_threshold=1024,
            max_retries=1,
            sleep=lambda _: None,
        )
        return ProjectFileUploader(self.db, storage)

    def _file(self, data, suffix=".mp4"):
        fh = tempfile.NamedTemporaryFile(delete=False, suffix=suffix)
        fh.write(data)
        fh.close()
        self.addCleanup(os.remove, fh.name)
        return fh.name

    def _notifications(self, notification_type):
        return (
            self.db.query(Notification)
            .filter(Notification.notification_type == notification_type)
            .order_by(Notification.user_id)
            .all()
        )

    def test_successful_upload_is_recorded_and_sent_to_qc(self):
        fake = SinglePutS3()
        data = b"raw footage bytes"
        path = self._file(data)
        progress = []

        file = self._uploader(fake).upload(
            self.project_id,
            FileCategory.RAW_FOOTAGE,
            path,
            uploaded_by=2,
            on_progress=progress.append,
        )

        self.assertEqual(file.upload_status, UploadStatus.COMPLETED)
        self.assertEqual(file.validation_status, ValidationStatus.PASSED)
        self.assertEqual(file.md5_hash, hashlib.md5(data).hexdigest())
        self.assertEqual(file.sha256_hash, hashlib.sha256(data).hexdigest())
        self.assertEqual(file.s3_bucket, "test-bucket")
        self.assertEqual(file.file_path, f"raw-footage/{self.project_id}/{os.path.basename(path)}")
        self.assertEqual(file.mime_type, "video/mp4")
        self.assertEqual(progress[-1].percentage, 100)

        stored = fake.objects[file.file_path]
        self.assertEqual(stored["Metadata"]["file-id"], str(file.file_id))

        uploaded = self._notifications(NotificationType.FILE_UPLOADED)
        self.assertEqual([n.user_id for n in uploaded], [4, 5])

        project = self.db.get(Project, self.project_id)
        self.assertEqual(project.total_files_count, 1)
        self.assertEqual(project.total_raw_size_bytes, len(data))

    def test_new_version_gets_versioned_key(self):
        fake = SinglePutS3()
        uploader = self._uploader(fake)
        first = uploader.upload(self.project_id, FileCategory.EDIT_DRAFT, self._file(b"cut one"))
        path = self._file(b"cut two")
        second = uploader.upload(
            self.project_id, FileCategory.EDIT_DRAFT, path, replaces_file_id=first.file_id
        )
        stem, suffix = os.path.splitext(os.path.basename(path))
        self.assertEqual(second.version_number, 2)
        self.assertEqual(second.replaces_file_id, first.file_id)
        self.assertEqual(second.file_path, f"edits/{self.project_id}/{stem}_v2{suffix}")

    def test_new_version_must_match_project_and_category(self):
        other = Project(project_code="RV-501", client_user_id=1)
        self.db.add(other)
        self.db.commit()
        fake = SinglePutS3()
        uploader = self._uploader(fake)
        first = uploader.upload(self.project_id, FileCategory.EDIT_DRAFT, self._file(b"cut one"))
        first_id = first.file_id

        with self.assertRaises(VersionChainError):
            uploader.upload(
                other.project_id,
                FileCategory.EDIT_DRAFT,
                self._file(b"cut two"),
                replaces_file_id=first_id,
            )
        with self.assertRaises(VersionChainError):
            uploader.upload(
                self.project_id,
                FileCategory.EDIT_FINAL,
                self._file(b"cut two"),
                replaces_file_id=first_id,
            )
        self.assertEqual(self.db.query(ProjectFile).count(), 1)
        self.assertEqual(list(fake.objects), [first.file_path])

    def test_failed_validation_notifies_uploader(self):
        file = self._uploader(SinglePutS3()).upload(
            self.project_id,
            FileCategory.RAW_FOOTAGE,
            self._file(b"low res"),
            uploaded_by=2,
            media=MediaInfo(width=640, height=480, video_codec="h264"),
        )
        self.assertEqual(file.validation_status, ValidationStatus.FAILED)
        self.assertEqual(self._notifications(NotificationType.FILE_UPLOADED), [])
        failed = self._notifications(NotificationType.FILE_VALIDATION_FAILED)
        self.assertEqual([n.user_id for n in failed], [2])
        self.assertIn("640x480", failed[0].message)

    def test_storage_failure_marks_file_failed(self):
        denied = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        with self.assertRaises(ClientError):
            self._uploader(SinglePutS3(error=denied)).upload(
                self.project_id, FileCategory.RAW_FOOTAGE, self._file(b"bytes"), uploaded_by=2
            )
        file = self.db.query(ProjectFile).one()
        self.assertEqual(file.upload_status, UploadStatus.FAILED)
        self.assertEqual(self._notifications(NotificationType.FILE_UPLOADED), [])


if __name__ == "__main__":
    unittest.main()
