"""
Limits the network enforces on outbound content, checked before we spend a
presence cycle on something that would be refused anyway.

These take measurements (text, seconds, bytes) rather than files; probing is
the runtime's job.
"""
import mimetypes
import os
from typing import Any, Optional

MAX_TEXT_LENGTH = 4096
MAX_AUDIO_SECONDS = 600
MAX_MEDIA_BYTES = 16_000_000
MAX_DOCUMENT_BYTES = 2_000_000_000
DEFAULT_MIMETYPE = "application/octet-stream"


class ValidationError(Exception):
    def __init__(self, kind: str, reason: str) -> None:
        self.kind = kind
        self.reason = reason
        super().__init__(f"{kind}: {reason}")


def text_length(text: str) -> int:
    "length the way the network counts it, in utf-16 code units"
    return len(text.encode("utf-16-le")) // 2


def check_text(text: Any) -> str:
    if not isinstance(text, str):
        raise ValidationError("text", "text must be a string")
    length = text_length(text)
    if length > MAX_TEXT_LENGTH:
        raise ValidationError("text", f"{length} characters is over {MAX_TEXT_LENGTH}")
    return text


def check_duration(kind: str, seconds: Optional[float]) -> float:
    if seconds is None:
        raise ValidationError(kind, "couldn't determine duration")
    if seconds > MAX_AUDIO_SECONDS:
        raise ValidationError(kind, f"{seconds:.1f}s is over {MAX_AUDIO_SECONDS}s")
    return seconds


def check_size(kind: str, size: Optional[int], limit: int) -> int:
    if size is None:
        raise ValidationError(kind, "couldn't determine file size")
    if size > limit:
        raise ValidationError(kind, f"{size} bytes is over {limit}")
    return size


def check_media_size(kind: str, size: Optional[int]) -> int:
    return check_size(kind, size, MAX_MEDIA_BYTES)


def check_document_size(size: Optional[int]) -> int:
    return check_size("document", size, MAX_DOCUMENT_BYTES)


def check_reaction(emoji: Any, key: Any) -> None:
    # an empty emoji removes an existing reaction
    if not isinstance(emoji, str):
        raise ValidationError("react", "emoji is required")
    if not key or not getattr(key, "id", None):
        raise ValidationError("react", "reaction needs the key of the message it reacts to")


def document_metadata(
    path: str, file_name: Optional[str] = None, mimetype: Optional[str] = None
) -> tuple[str, str]:
    "(file name, mimetype) to label a document with, derived from its path unless given"
    guessed, _ = mimetypes.guess_type(path)
    return (
        file_name or os.path.basename(path),
        mimetype or guessed or DEFAULT_MIMETYPE,
    )
