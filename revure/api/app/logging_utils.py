import logging
import re
from typing import Any

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
# Presigned URLs carry credentials in their query string.
_SIGNATURE_PATTERN = re.compile(
    r"(X-Amz-(?:Signature|Credential|Security-Token)=)[^&\s]+", re.IGNORECASE
)


def sanitize_log_value(value: Any, max_length: int = 512) -> str:
    """
    Normalize user-controlled values before they reach log sinks.

    Booking guest emails, lead names and file names all come from clients, so
    newlines are escaped, control characters replaced and long values cut
    short. Presigned URL signatures are masked.
    """
    if value is None:
        return "<none>"

    text = str(value)
    text = text.replace("\r", "\\r").replace("\n", "\\n")
    text = _CONTROL_CHAR_PATTERN.sub("?", text)
    text = _SIGNATURE_PATTERN.sub(r"\1***", text)

    if len(text) > max_length:
        text = text[:max_length] + "...[truncated]"

    return text


class LogSanitizerFilter(logging.Filter):
    """Filter that sanitizes log arguments to prevent log injection."""

    def __init__(self, max_length: int = 512):
        super().__init__("revure-log-sanitizer")
        self.max_length = max_length

    def filter(self, record: logging.LogRecord) -> bool:
        if not record.args:
            record.msg = sanitize_log_value(record.msg, self.max_length)
            return True

        if isinstance(record.args, dict):
            record.args = {
                key: self._clean(val) for key, val in record.args.items()
            }
        else:
            record.args = tuple(self._clean(arg) for arg in record.args)

        return True

    def _clean(self, value: Any) -> Any:
        # Numbers keep their type so %d / %.1f placeholders still format.
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        return sanitize_log_value(value, self.max_length)


def install_log_sanitizer(
    target_logger: logging.Logger | None = None, max_length: int = 512
) -> None:
    """
    Attach the sanitizer filter to the provided logger (defaults to root).

    Repeated calls are ignored.
    """
    logger = target_logger or logging.getLogger()
    for existing in logger.filters:
        if isinstance(existing, LogSanitizerFilter):
            return
    logger.addFilter(LogSanitizerFilter(max_length))
