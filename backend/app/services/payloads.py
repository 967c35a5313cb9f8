"""
Helpers for the untyped values that flow between nodes.

An output is plain text, a `data:<mime>;base64,...` URI, or an http(s) URL.
Its kind is inferred from its shape.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Literal
from urllib.parse import urlparse

from app.services.errors import WorkflowValidationError

OutputKind = Literal["text", "image", "video", "url"]

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".bmp", ".ico")
VIDEO_EXTENSIONS = (".mp4", ".mov", ".webm", ".avi", ".mkv", ".m4v")


def is_data_uri(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("data:")


def is_http_url(value: Any) -> bool:
    return isinstance(value, str) and (
        value.startswith("http://") or value.startswith("https://")
    )


def _url_path(url: str) -> str:
    return urlparse(url).path.lower()


def is_image_reference(value: Any) -> bool:
    """True for image data URIs and http(s) URLs whose path looks like an image."""
    if not isinstance(value, str):
        return False
    if value.startswith("data:image/"):
        return True
    if is_http_url(value):
        return _url_path(value).endswith(IMAGE_EXTENSIONS)
    return False


def is_video_reference(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    if value.startswith("data:video/"):
        return True
    if is_http_url(value):
        return _url_path(value).endswith(VIDEO_EXTENSIONS)
    return False


def classify_output(value: Any) -> OutputKind:
    if is_image_reference(value):
        return "image"
    if is_video_reference(value):
        return "video"
    if is_http_url(value):
        return "url"
    return "text"


def to_data_uri(data: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def parse_data_uri(uri: str) -> tuple[str, bytes]:
    """
    Split a base64 data URI into (mime_type, bytes).

    Raises WorkflowValidationError for anything that is not a well-formed
    base64 data URI.
    """
    if not is_data_uri(uri) or "," not in uri:
        raise WorkflowValidationError("Invalid data URI")
    header, encoded = uri.split(",", 1)
    meta = header[len("data:"):]
    if not meta.endswith(";base64"):
        raise WorkflowValidationError("Only base64 data URIs are supported")
    mime_type = meta[: -len(";base64")] or "application/octet-stream"
    if not encoded:
        raise WorkflowValidationError("Invalid base64 data URL")
    try:
        return mime_type, base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise WorkflowValidationError(f"Invalid base64 data URL: {exc}") from exc


def preview(value: Any, limit: int = 50) -> str:
    """Short single-line rendering of an output for log lines."""
    text = value if isinstance(value, str) else repr(value)
    if is_data_uri(text):
        head = text.split(",", 1)[0]
        return f"{head},... ({len(text)} chars)"
    if len(text) > limit:
        return text[:limit] + "..."
    return text
