"""
Upload validation rules per file category.

Checks size limits, MIME type allow-lists and, when probe data is available,
minimum resolution and codec support. Returns structured issues; the file
passes when none of them is an error.
"""

from __future__ import annotations

from pathlib import PurePosixPath

from .models import FileCategory
from .schemas import MediaInfo, ValidationIssue

GB = 1024 * 1024 * 1024
MB = 1024 * 1024

FILE_SIZE_LIMITS: dict[FileCategory, int] = {
    FileCategory.RAW_FOOTAGE: 50 * GB,
    FileCategory.RAW_AUDIO: 5 * GB,
    FileCategory.EDIT_DRAFT: 10 * GB,
    FileCategory.EDIT_REVISION: 10 * GB,
    FileCategory.EDIT_FINAL: 10 * GB,
    FileCategory.CLIENT_DELIVERABLE: 5 * GB,
    FileCategory.THUMBNAIL: 10 * MB,
    FileCategory.REFERENCE_MATERIAL: 500 * MB,
}

MIN_VIDEO_RESOLUTION: dict[FileCategory, tuple[int, int]] = {
    FileCategory.RAW_FOOTAGE: (1920, 1080),
    FileCategory.EDIT_DRAFT: (1280, 720),
    FileCategory.EDIT_REVISION: (1280, 720),
    FileCategory.EDIT_FINAL: (1920, 1080),
    FileCategory.CLIENT_DELIVERABLE: (1920, 1080),
}

SUPPORTED_VIDEO_CODECS = frozenset(
    {
        "h264",
        "h265",
        "hevc",
        "prores",
        "prores_ks",
        "prores_aw",
        "vp9",
        "av1",
        "dnxhd",
        "dnxhr",
        "mpeg4",
        "mjpeg",
    }
)

SUPPORTED_AUDIO_CODECS = frozenset(
    {
        "aac",
        "mp3",
        "libmp3lame",
        "flac",
        "alac",
        "vorbis",
        "opus",
    }
)

VIDEO_MIME_TYPES = frozenset(
    {
        "video/mp4",
        "video/quicktime",
        "video/x-msvideo",
        "video/x-matroska",
        "video/webm",
        "video/x-m4v",
        "video/x-ms-wmv",
        "video/x-flv",
        "application/mxf",
    }
)
AUDIO_MIME_TYPES = frozenset(
    {
        "audio/wav",
        "audio/x-wav",
        "audio/mpeg",
        "audio/aac",
        "audio/flac",
        "audio/mp4",
        "audio/ogg",
    }
)
IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})
DOCUMENT_MIME_TYPES = frozenset(
    {"application/pdf", "application/zip", "application/json", "text/plain"}
)

CATEGORY_MIME_TYPES: dict[FileCategory, frozenset[str]] = {
    FileCategory.RAW_FOOTAGE: VIDEO_MIME_TYPES,
    FileCategory.RAW_AUDIO: AUDIO_MIME_TYPES,
    FileCategory.EDIT_DRAFT: VIDEO_MIME_TYPES,
    FileCategory.EDIT_REVISION: VIDEO_MIME_TYPES,
    FileCategory.EDIT_FINAL: VIDEO_MIME_TYPES,
    FileCategory.CLIENT_DELIVERABLE: VIDEO_MIME_TYPES | AUDIO_MIME_TYPES | IMAGE_MIME_TYPES,
    FileCategory.THUMBNAIL: IMAGE_MIME_TYPES,
    FileCategory.REFERENCE_MATERIAL: VIDEO_MIME_TYPES
    | AUDIO_MIME_TYPES
    | IMAGE_MIME_TYPES
    | DOCUMENT_MIME_TYPES,
}


def _format_size(size: int) -> str:
    if size >= GB:
        return f"{size / GB:.1f} GB"
    return f"{size / MB:.1f} MB"


def is_supported_audio_codec(codec: str) -> bool:
    codec = codec.lower()
    return codec in SUPPORTED_AUDIO_CODECS or codec.startswith("pcm_")


def validate_file(
    category: FileCategory,
    file_name: str,
    size_bytes: int | None,
    mime_type: str | None,
    media: MediaInfo | None = None,
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []

    if not PurePosixPath(file_name).suffix:
        issues.append(
            ValidationIssue(
                code="missing_extension",
                message=f"{file_name} has no file extension",
                severity="warning",
                field="file_extension",
            )
        )

    limit = FILE_SIZE_LIMITS[category]
    if size_bytes is None or size_bytes <= 0:
        issues.append(
            ValidationIssue(code="empty_file", message="File is empty", field="file_size_bytes")
        )
    elif size_bytes > limit:
        issues.append(
            ValidationIssue(
                code="file_too_large",
                message=(
                    f"{_format_size(size_bytes)} exceeds the {_format_size(limit)} limit "
                    f"for {category.value}"
                ),
                field="file_size_bytes",
            )
        )

    allowed = CATEGORY_MIME_TYPES[category]
    if not mime_type or mime_type.lower() not in allowed:
        issues.append(
            ValidationIssue(
                code="unsupported_mime_type",
                message=f"{mime_type or 'unknown type'} is not accepted for {category.value}",
                field="mime_type",
            )
        )

    if media is None:
        return issues

    minimum = MIN_VIDEO_RESOLUTION.get(category)
    if minimum and media.width and media.height:
        min_w, min_h = minimum
        if media.width < min_w or media.height < min_h:
            issues.append(
                ValidationIssue(
                    code="resolution_too_low",
                    message=(
                        f"{media.width}x{media.height} is below the {min_w}x{min_h} minimum "
                        f"for {category.value}"
                    ),
                    field="video_resolution",
                )
            )

    if media.video_codec and media.video_codec.lower() not in SUPPORTED_VIDEO_CODECS:
        issues.append(
            ValidationIssue(
                code="unsupported_video_codec",
                message=f"Video codec {media.video_codec} is not supported",
                field="video_codec",
            )
        )
    if media.audio_codec and not is_supported_audio_codec(media.audio_codec):
        issues.append(
            ValidationIssue(
                code="unsupported_audio_codec",
                message=f"Audio codec {media.audio_codec} is not supported",
                severity="warning",
                field="audio_codec",
            )
        )

    return issues


def has_errors(issues: list[ValidationIssue]) -> bool:
    return any(issue.severity == "error" for issue in issues)
