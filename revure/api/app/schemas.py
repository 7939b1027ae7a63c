"""
Pydantic types for the JSON columns.

Rows store plain lists/dicts; these models are what the services hand around
and are only dumped at the column boundary.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class ValidationIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    severity: Literal["error", "warning"] = "error"
    field: str | None = None


class VideoTimestamp(BaseModel):
    """A note pinned to a point in the preview video, in seconds."""

    model_config = ConfigDict(frozen=True)

    time: float = Field(ge=0)
    note: str = Field(min_length=1)


class MediaInfo(BaseModel):
    """Probe results for an uploaded media file. All fields optional."""

    duration_seconds: float | None = None
    width: int | None = None
    height: int | None = None
    fps: float | None = None
    video_codec: str | None = None
    bitrate_kbps: int | None = None
    audio_codec: str | None = None
    sample_rate: int | None = None
    channels: int | None = None

    @property
    def resolution(self) -> str | None:
        if self.width and self.height:
            return f"{self.width}x{self.height}"
        return None


_issue_list = TypeAdapter(list[ValidationIssue])
_timestamp_list = TypeAdapter(list[VideoTimestamp])


def issues_from_column(value: list[dict[str, Any]] | None) -> list[ValidationIssue]:
    return _issue_list.validate_python(value or [])


def issues_to_column(issues: list[ValidationIssue]) -> list[dict[str, Any]]:
    return [issue.model_dump() for issue in issues]


def timestamps_from_column(value: list[dict[str, Any]] | None) -> list[VideoTimestamp]:
    return _timestamp_list.validate_python(value or [])


def timestamps_to_column(stamps: list[VideoTimestamp]) -> list[dict[str, Any]]:
    return [stamp.model_dump() for stamp in stamps]
