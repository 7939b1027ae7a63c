"""
S3 storage for project media.

Handles single-part and multipart uploads with checksum verification and
retry, presigned URLs, listing, deletion, copy/move and metadata lookups.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Protocol, cast

import boto3
from boto3 import Session
from botocore.client import Config  # type: ignore[reportMissingTypeStubs]
from botocore.exceptions import ClientError  # type: ignore[reportMissingTypeStubs]

from .config import settings
from .models import FileCategory
from .upload_utils import (
    buffer_md5,
    calculate_md5,
    error_code,
    md5_base64,
    with_retry,
)


LOGGER = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 1000
NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})

CONTENT_TYPES: dict[str, str] = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
    ".webm": "video/webm",
    ".m4v": "video/x-m4v",
    ".mxf": "application/mxf",
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".aac": "audio/aac",
    ".flac": "audio/flac",
    ".m4a": "audio/mp4",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".json": "application/json",
    ".txt": "text/plain",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Category -> name of the Settings field holding its top-level prefix.
CATEGORY_FOLDER_SETTINGS: dict[FileCategory, str] = {
    FileCategory.RAW_FOOTAGE: "S3_RAW_FOLDER",
    FileCategory.RAW_AUDIO: "S3_RAW_FOLDER",
    FileCategory.EDIT_DRAFT: "S3_EDITS_FOLDER",
    FileCategory.EDIT_REVISION: "S3_EDITS_FOLDER",
    FileCategory.EDIT_FINAL: "S3_FINALS_FOLDER",
    FileCategory.CLIENT_DELIVERABLE: "S3_FINALS_FOLDER",
    FileCategory.THUMBNAIL: "S3_THUMBNAILS_FOLDER",
    FileCategory.REFERENCE_MATERIAL: "S3_REFERENCE_FOLDER",
}


class StorageError(Exception):
    """Base class for storage failures raised by this module."""


class FileNotFound(StorageError):
    """Local file missing before transfer."""


class InvalidCategory(StorageError):
    pass


class UploadVerificationFailed(StorageError):
    def __init__(self, key: str, expected: str, actual: str | None):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for {key}: expected {expected}, storage reported {actual}"
        )


class UploadCancelled(StorageError):
    pass


class ObjectNotFound(StorageError):
    pass


class S3ClientProtocol(Protocol):
    """Subset of S3 client methods used in this module."""

    def head_bucket(self, *args: Any, **kwargs: Any) -> Any: ...

    def put_object(self, *args: Any, **kwargs: Any) -> dict[str, Any]: ...

    def head_object(self, *args: Any, **kwargs: Any) -> dict[str, Any]: ...

    def generate_presigned_url(self, *args: Any, **kwargs: Any) -> str: ...

    def generate_presigned_post(self, *args: Any, **kwargs: Any) -> dict[str, Any]: ...

    def create_multipart_upload(self, *args: Any, **kwargs: Any) -> dict[str, Any]: ...

    def upload_part(self, *args: Any, **kwargs: Any) -> dict[str, Any]: ...

    def complete_multipart_upload(self, *args: Any, **kwargs: Any) -> dict[str, Any]: ...

    def abort_multipart_upload(self, *args: Any, **kwargs: Any) -> Any: ...

    def delete_object(self, *args: Any, **kwargs: Any) -> Any: ...

    def delete_objects(self, *args: Any, **kwargs: Any) -> dict[str, Any]: ...

    def list_objects_v2(self, *args: Any, **kwargs: Any) -> dict[str, Any]: ...

    def copy_object(self, *args: Any, **kwargs: Any) -> dict[str, Any]: ...


@dataclass(frozen=True)
class UploadProgress:
    percentage: int
    loaded: int
    total: int
    parts_completed: int | None = None
    parts_total: int | None = None


ProgressCallback = Callable[[UploadProgress], None]


@dataclass
class UploadOptions:
    content_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    server_side_encryption: bool = True
    content_disposition: str | None = None
    on_progress: ProgressCallback | None = None
    part_size: int | None = None
    concurrency: int | None = None
    verify_checksum: bool = True
    cancel_event: threading.Event | None = None


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    partial: bool = False
    etag: str | None = None
    expected_checksum: str | None = None
    size: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class UploadResult:
    key: str
    bucket: str
    region: str
    etag: str | None
    checksum: str
    size: int
    multipart: bool
    location: str
    verification: VerificationResult | None = None
    upload_id: str | None = None


@dataclass(frozen=True)
class PresignedUpload:
    url: str
    method: str
    headers: dict[str, str]
    expires_at: datetime


@dataclass(frozen=True)
class PresignedPost:
    url: str
    fields: dict[str, str]
    conditions: list[Any]
    expires_at: datetime


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int
    last_modified: datetime | None
    etag: str | None


@dataclass(frozen=True)
class ObjectListing:
    files: list[StoredObject]
    is_truncated: bool
    next_continuation_token: str | None
    key_count: int


@dataclass(frozen=True)
class ObjectMetadata:
    key: str
    size: int
    content_type: str | None
    etag: str | None
    last_modified: datetime | None
    metadata: dict[str, str]
    server_side_encryption: str | None


@dataclass
class DeleteReport:
    deleted: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)


def _normalize_endpoint(url: str | None) -> str | None:
    """Ensure endpoints include a scheme so boto3 accepts them."""
    if not url:
        return url
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return f"http://{url}"


def s3(public: bool = False) -> S3ClientProtocol:
    """Get an S3 client for AWS or an S3-compatible endpoint."""
    endpoint = settings.S3_PUBLIC_ENDPOINT if public and settings.S3_PUBLIC_ENDPOINT else settings.S3_ENDPOINT
    config = Config(signature_version="s3v4")

    if settings.AWS_ACCESS_KEY_ID:
        session = Session(
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            region_name=settings.AWS_REGION,
        )
        return cast(
            S3ClientProtocol,
            session.client("s3", endpoint_url=_normalize_endpoint(endpoint) or None, config=config),
        )

    # Instance/IRSA credentials
    LOGGER.info("Creating S3 client with ambient credentials, region=%s", settings.AWS_REGION)
    return cast(
        S3ClientProtocol,
        boto3.client(
            "s3",
            endpoint_url=_normalize_endpoint(endpoint) or None,
            config=config,
            region_name=settings.AWS_REGION,
        ),
    )


def detect_content_type(file_name: str) -> str:
    return CONTENT_TYPES.get(PurePosixPath(file_name).suffix.lower(), DEFAULT_CONTENT_TYPE)


def category_folder(category: FileCategory | str) -> str:
    try:
        resolved = category if isinstance(category, FileCategory) else FileCategory(category)
        return str(getattr(settings, CATEGORY_FOLDER_SETTINGS[resolved]))
    except (ValueError, KeyError):
        raise InvalidCategory(f"Unknown file category: {category}") from None


def generate_key(category: FileCategory | str, project_id: int | str, file_name: str) -> str:
    """``{folder}/{project_id}/{file_name}`` for the category's folder."""
    safe_name = PurePosixPath(file_name.replace("\\", "/")).name
    if not safe_name:
        raise ValueError("file_name must not be empty")
    return f"{category_folder(category)}/{project_id}/{safe_name}"


def _strip_etag(etag: str | None) -> str | None:
    return etag.strip('"') if etag else etag


def _client_error_code(exc: ClientError) -> str:
    return error_code(exc) or ""


class ObjectStorageClient:
    def __init__(
        self,
        client: S3ClientProtocol | None = None,
        *,
        bucket: str | None = None,
        region: str | None = None,
        multipart_threshold: int | None = None,
        part_size: int | None = None,
        max_concurrency: int | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        public_client: S3ClientProtocol | None = None,
    ):
        self.client = client or s3()
        self.public_client = public_client or (
            s3(public=True) if client is None and settings.S3_PUBLIC_ENDPOINT else self.client
        )
        self.bucket = bucket or settings.AWS_S3_BUCKET
        self.region = region or settings.AWS_REGION
        self.multipart_threshold = (
            multipart_threshold
            if multipart_threshold is not None
            else settings.S3_MULTIPART_THRESHOLD_BYTES
        )
        self.part_size = part_size or settings.S3_PART_SIZE_BYTES
        self.max_concurrency = max_concurrency or settings.S3_MAX_CONCURRENT_PARTS
        self.max_retries = max_retries or settings.S3_MAX_RETRIES
        self.retry_delay = (
            retry_delay if retry_delay is not None else settings.S3_RETRY_DELAY_SECONDS
        )
        self._sleep = sleep

    def _retry(self, operation: Callable[[], Any], description: str) -> Any:
        return with_retry(
            operation,
            retries=self.max_retries,
            delay=self.retry_delay,
            sleep=self._sleep,
            description=description,
        )

    def _location(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    @staticmethod
    def _check_cancelled(options: UploadOptions, key: str) -> None:
        if options.cancel_event is not None and options.cancel_event.is_set():
            raise UploadCancelled(f"Upload of {key} was cancelled")

    def generate_key(self, category: FileCategory | str, project_id: int | str, file_name: str) -> str:
        return generate_key(category, project_id, file_name)

    def check_connection(self) -> bool:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            LOGGER.error("S3 bucket %s is not reachable: %s", self.bucket, e)
            return False
        return True

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def upload_file(
        self, file_path: str | Path, key: str, options: UploadOptions | None = None
    ) -> UploadResult:
        options = options or UploadOptions()
        path = Path(file_path)
        if not path.is_file():
            raise FileNotFound(f"File not found: {path}")

        size = path.stat().st_size
        if size > self.multipart_threshold:
            LOGGER.info(
                "File %s is %d bytes, above the multipart threshold", path.name, size
            )
            return self.upload_multipart(path, key, options)

        self._check_cancelled(options, key)
        checksum = calculate_md5(path)
        body = path.read_bytes()
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": body,
            "ContentType": options.content_type or detect_content_type(path.name),
            "ContentMD5": md5_base64(checksum),
            "Metadata": {
                **options.metadata,
                "original-checksum": checksum,
                "original-filename": path.name,
            },
        }
        if options.server_side_encryption:
            params["ServerSideEncryption"] = "AES256"
        if options.content_disposition:
            params["ContentDisposition"] = options.content_disposition

        response = self._retry(lambda: self.client.put_object(**params), f"put {key}")
        etag = _strip_etag(response.get("ETag"))
        if options.on_progress:
            options.on_progress(UploadProgress(percentage=100, loaded=size, total=size))

        verification = None
        if options.verify_checksum:
            verification = self.verify_upload(key, checksum)
            if not verification.verified and not verification.partial:
                raise UploadVerificationFailed(key, checksum, verification.etag)

        LOGGER.info("Uploaded %s (%d bytes) to %s", path.name, size, self._location(key))
        return UploadResult(
            key=key,
            bucket=self.bucket,
            region=self.region,
            etag=etag,
            checksum=checksum,
            size=size,
            multipart=False,
            location=self._location(key),
            verification=verification,
        )

    def _upload_part(
        self,
        path: Path,
        key: str,
        upload_id: str,
        part_number: int,
        offset: int,
        length: int,
        stop: threading.Event,
        cancel_event: threading.Event | None,
    ) -> tuple[dict[str, Any], int]:
        if stop.is_set() or (cancel_event is not None and cancel_event.is_set()):
            raise UploadCancelled(f"Part {part_number} of {key} not started")
        with open(path, "rb") as fh:
            fh.seek(offset)
            data = fh.read(length)
        response = self._retry(
            lambda: self.client.upload_part(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
                ContentMD5=md5_base64(buffer_md5(data)),
            ),
            f"upload part {part_number} of {key}",
        )
        return {"PartNumber": part_number, "ETag": response["ETag"]}, len(data)

    def upload_multipart(
        self, file_path: str | Path, key: str, options: UploadOptions | None = None
    ) -> UploadResult:
        options = options or UploadOptions()
        path = Path(file_path)
        if not path.is_file():
            raise FileNotFound(f"File not found: {path}")

        size = path.stat().st_size
        part_size = options.part_size or self.part_size
        concurrency = options.concurrency or self.max_concurrency
        total_parts = max(1, math.ceil(size / part_size))

        self._check_cancelled(options, key)
        # Whole-file hash is kept for the record; S3 reports a composite ETag.
        checksum = calculate_md5(path)

        create_params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "ContentType": options.content_type or detect_content_type(path.name),
            "Metadata": {
                **options.metadata,
                "original-checksum": checksum,
                "original-filename": path.name,
            },
        }
        if options.server_side_encryption:
            create_params["ServerSideEncryption"] = "AES256"
        if options.content_disposition:
            create_params["ContentDisposition"] = options.content_disposition

        created = self._retry(
            lambda: self.client.create_multipart_upload(**create_params),
            f"start multipart {key}",
        )
        upload_id = cast(str, created["UploadId"])
        LOGGER.info(
            "Started multipart upload %s for %s: %d parts of %d bytes",
            upload_id,
            key,
            total_parts,
            part_size,
        )

        stop = threading.Event()
        completed: list[dict[str, Any]] = []
        loaded = 0
        try:
            with ThreadPoolExecutor(
                max_workers=concurrency, thread_name_prefix="s3-part"
            ) as pool:
                futures: list[Future[tuple[dict[str, Any], int]]] = []
                for index in range(total_parts):
                    offset = index * part_size
                    futures.append(
                        pool.submit(
                            self._upload_part,
                            path,
                            key,
                            upload_id,
                            index + 1,
                            offset,
                            min(part_size, size - offset),
                            stop,
                            options.cancel_event,
                        )
                    )
                try:
                    for future in as_completed(futures):
                        part, part_bytes = future.result()
                        completed.append(part)
                        loaded += part_bytes
                        if options.on_progress:
                            options.on_progress(
                                UploadProgress(
                                    percentage=round(loaded / size * 100) if size else 100,
                                    loaded=loaded,
                                    total=size,
                                    parts_completed=len(completed),
                                    parts_total=total_parts,
                                )
                            )
                        self._check_cancelled(options, key)
                except BaseException:
                    stop.set()
                    for future in futures:
                        future.cancel()
                    raise

            parts = sorted(completed, key=lambda p: p["PartNumber"])
            result = self._retry(
                lambda: self.client.complete_multipart_upload(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": parts},
                ),
                f"complete multipart {key}",
            )
        except Exception:
            self.abort_multipart(key, upload_id)
            raise

        verification = None
        if options.verify_checksum:
            verification = self.verify_upload(key, checksum)
            if not verification.verified and not verification.partial:
                raise UploadVerificationFailed(key, checksum, verification.etag)

        LOGGER.info(
            "Completed multipart upload of %s (%d bytes, %d parts)", key, size, total_parts
        )
        return UploadResult(
            key=key,
            bucket=self.bucket,
            region=self.region,
            etag=_strip_etag(result.get("ETag")),
            checksum=checksum,
            size=size,
            multipart=True,
            location=result.get("Location") or self._location(key),
            verification=verification,
            upload_id=upload_id,
        )

    def abort_multipart(self, key: str, upload_id: str) -> None:
        """Best effort; a failed abort is logged, never raised."""
        try:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
            LOGGER.warning("Aborted multipart upload %s for %s", upload_id, key)
        except Exception as abort_error:
            LOGGER.error(
                "Failed to abort multipart upload %s for %s: %s", upload_id, key, abort_error
            )

    def verify_upload(self, key: str, expected_checksum: str) -> VerificationResult:
        try:
            head = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            LOGGER.error("Could not verify %s: %s", key, e)
            return VerificationResult(
                verified=False, expected_checksum=expected_checksum, error=str(e)
            )

        etag = _strip_etag(head.get("ETag")) or ""
        size = head.get("ContentLength")
        if "-" in etag:
            # Composite multipart ETag, not comparable to a plain MD5.
            return VerificationResult(
                verified=True,
                partial=True,
                etag=etag,
                expected_checksum=expected_checksum,
                size=size,
            )
        return VerificationResult(
            verified=etag.lower() == expected_checksum.lower(),
            etag=etag,
            expected_checksum=expected_checksum,
            size=size,
        )

    # ------------------------------------------------------------------
    # Presigned access
    # ------------------------------------------------------------------

    def presign_put(
        self, key: str, content_type: str, expires: int | None = None
    ) -> PresignedUpload:
        expires = expires or settings.S3_PRESIGN_EXPIRES_SECONDS
        url = self.public_client.generate_presigned_url(
            "put_object",
            Params={
                "Bucket": self.bucket,
                "Key": key,
                "ContentType": content_type,
                "ServerSideEncryption": "AES256",
            },
            ExpiresIn=expires,
            HttpMethod="PUT",
        )
        return PresignedUpload(
            url=url,
            method="PUT",
            headers={
                "Content-Type": content_type,
                "x-amz-server-side-encryption": "AES256",
            },
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires),
        )

    def presign_post(
        self,
        key: str,
        content_type: str,
        *,
        max_size: int | None = None,
        expires: int | None = None,
    ) -> PresignedPost:
        """Browser form upload restricted to the key's folder, size and media type."""
        expires = expires or settings.S3_PRESIGN_EXPIRES_SECONDS
        max_size = max_size or settings.S3_UPLOAD_MAX_SIZE_BYTES
        folder = key.rsplit("/", 1)[0] + "/" if "/" in key else ""
        major_type = content_type.split("/", 1)[0]
        fields = {
            "Content-Type": content_type,
            "x-amz-server-side-encryption": "AES256",
        }
        conditions: list[Any] = [
            {"bucket": self.bucket},
            ["starts-with", "$key", folder],
            {"x-amz-server-side-encryption": "AES256"},
            ["content-length-range", 0, max_size],
            ["starts-with", "$Content-Type", f"{major_type}/"],
        ]
        post = self.public_client.generate_presigned_post(
            Bucket=self.bucket,
            Key=key,
            Fields=fields,
            Conditions=conditions,
            ExpiresIn=expires,
        )
        return PresignedPost(
            url=post["url"],
            fields=dict(post["fields"]),
            conditions=conditions,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires),
        )

    def presign_get(
        self,
        key: str,
        expires: int | None = None,
        download_filename: str | None = None,
    ) -> str:
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": key}
        if download_filename:
            safe_name = download_filename.replace('"', "")
            params["ResponseContentDisposition"] = f'attachment; filename="{safe_name}"'
        return self.public_client.generate_presigned_url(
            "get_object",
            Params=params,
            ExpiresIn=expires or settings.S3_PRESIGN_EXPIRES_SECONDS,
            HttpMethod="GET",
        )

    # ------------------------------------------------------------------
    # Object management
    # ------------------------------------------------------------------

    def delete_file(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _client_error_code(e) not in NOT_FOUND_CODES:
                LOGGER.error("Failed to delete S3 object: %s", key)
                raise

    def delete_files(self, keys: list[str]) -> DeleteReport:
        report = DeleteReport()
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start : start + DELETE_BATCH_SIZE]
            response = self.client.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": False},
            )
            report.deleted.extend(d["Key"] for d in response.get("Deleted", []))
            for err in response.get("Errors", []):
                report.errors.append(
                    {
                        "key": err.get("Key", ""),
                        "code": err.get("Code", ""),
                        "message": err.get("Message", ""),
                    }
                )
        if report.errors:
            LOGGER.warning("Batch delete left %d objects behind", len(report.errors))
        return report

    def list_files(
        self,
        prefix: str = "",
        max_keys: int = 1000,
        continuation_token: str | None = None,
    ) -> ObjectListing:
        params: dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": max_keys}
        if continuation_token:
            params["ContinuationToken"] = continuation_token
        response = self.client.list_objects_v2(**params)
        files = [
            StoredObject(
                key=item["Key"],
                size=int(item.get("Size", 0)),
                last_modified=item.get("LastModified"),
                etag=_strip_etag(item.get("ETag")),
            )
            for item in response.get("Contents", [])
        ]
        return ObjectListing(
            files=files,
            is_truncated=bool(response.get("IsTruncated")),
            next_continuation_token=response.get("NextContinuationToken"),
            key_count=int(response.get("KeyCount", len(files))),
        )

    def list_project_files(
        self, project_id: int | str, category: FileCategory | str | None = None
    ) -> list[StoredObject]:
        if category is not None:
            folders = [category_folder(category)]
        else:
            folders = sorted({category_folder(c) for c in FileCategory})
        files: list[StoredObject] = []
        for folder in folders:
            token: str | None = None
            while True:
                listing = self.list_files(f"{folder}/{project_id}/", continuation_token=token)
                files.extend(listing.files)
                if not listing.is_truncated or not listing.next_continuation_token:
                    break
                token = listing.next_continuation_token
        return files

    def get_file_metadata(self, key: str) -> ObjectMetadata:
        try:
            head = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _client_error_code(e) in NOT_FOUND_CODES:
                raise ObjectNotFound(f"Object not found: {key}") from e
            raise
        return ObjectMetadata(
            key=key,
            size=int(head.get("ContentLength", 0)),
            content_type=head.get("ContentType"),
            etag=_strip_etag(head.get("ETag")),
            last_modified=head.get("LastModified"),
            metadata=dict(head.get("Metadata") or {}),
            server_side_encryption=head.get("ServerSideEncryption"),
        )

    def file_exists(self, key: str) -> bool:
        try:
            self.get_file_metadata(key)
        except ObjectNotFound:
            return False
        return True

    def copy_file(
        self, source_key: str, dest_key: str, metadata: dict[str, str] | None = None
    ) -> str | None:
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": dest_key,
            "CopySource": {"Bucket": self.bucket, "Key": source_key},
            "ServerSideEncryption": "AES256",
            "MetadataDirective": "REPLACE" if metadata is not None else "COPY",
        }
        if metadata is not None:
            params["Metadata"] = metadata
        response = self._retry(
            lambda: self.client.copy_object(**params), f"copy {source_key} -> {dest_key}"
        )
        result = response.get("CopyObjectResult", {})
        return _strip_etag(result.get("ETag"))

    def move_file(self, source_key: str, dest_key: str) -> str | None:
        etag = self.copy_file(source_key, dest_key)
        self.delete_file(source_key)
        return etag