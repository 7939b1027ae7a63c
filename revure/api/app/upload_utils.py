"""
Checksums and retry for the upload pipeline.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar, cast

from botocore.exceptions import ClientError  # type: ignore[reportMissingTypeStubs]

logger = logging.getLogger(__name__)

T = TypeVar("T")

HASH_CHUNK_SIZE = 8 * 1024 * 1024

# Provider error codes that will not go away by trying again.
NON_RETRYABLE_ERROR_CODES = frozenset({"AccessDenied", "NoSuchBucket"})


@dataclass(frozen=True)
class FileChecksums:
    md5: str
    sha256: str
    size: int


def calculate_checksums(path: str | Path) -> FileChecksums:
    """MD5 and SHA-256 of a file in one streaming pass."""
    md5 = hashlib.md5()
    sha256 = hashlib.sha256()
    size = 0
    with open(path, "rb") as fh:
        while chunk := fh.read(HASH_CHUNK_SIZE):
            md5.update(chunk)
            sha256.update(chunk)
            size += len(chunk)
    return FileChecksums(md5=md5.hexdigest(), sha256=sha256.hexdigest(), size=size)


def calculate_md5(path: str | Path) -> str:
    md5 = hashlib.md5()
    with open(path, "rb") as fh:
        while chunk := fh.read(HASH_CHUNK_SIZE):
            md5.update(chunk)
    return md5.hexdigest()


def buffer_md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def md5_base64(hex_digest: str) -> str:
    """Hex MD5 to the base64 form S3 expects in Content-MD5."""
    return base64.b64encode(bytes.fromhex(hex_digest)).decode("ascii")


def error_code(exc: BaseException) -> str | None:
    if isinstance(exc, ClientError):
        response = cast(dict[str, Any], exc.response)
        error_dict = cast(dict[str, Any], response.get("Error", {}))
        code = error_dict.get("Code")
        return str(code) if code is not None else None
    code = getattr(exc, "code", None)
    return str(code) if code is not None else None


def is_retryable(exc: BaseException) -> bool:
    return error_code(exc) not in NON_RETRYABLE_ERROR_CODES


def with_retry(
    operation: Callable[[], T],
    *,
    retries: int = 3,
    delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "storage operation",
) -> T:
    """
    Run ``operation`` up to ``retries`` times.

    Waits ``delay * 2 ** (attempt - 1)`` seconds after each failed attempt.
    Errors with a non-retryable provider code are raised straight away.
    """
    attempts = max(retries, 1)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Exception as exc:
            if not is_retryable(exc):
                logger.error("%s failed with non-retryable error: %s", description, exc)
                raise
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", description, attempts, exc)
                raise
            wait = delay * 2 ** (attempt - 1)
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.1fs",
                description,
                attempt,
                attempts,
                exc,
                wait,
            )
            sleep(wait)
    raise AssertionError("unreachable")
