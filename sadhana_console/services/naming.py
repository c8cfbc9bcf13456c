"""Utility helpers for consistent media naming."""

from __future__ import annotations

import re
import time
from pathlib import PurePosixPath
from typing import Optional

__all__ = [
    "slugify",
    "build_destination_folder",
    "build_media_name",
]


def slugify(value: str) -> str:
    """Return a filesystem-friendly representation of *value*."""

    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or "item"


def build_destination_folder(hint: Optional[str]) -> PurePosixPath:
    """Return a relative folder built from a ``a/b/c`` destination hint."""

    parts = [slugify(part) for part in (hint or "").split("/") if part.strip()]
    return PurePosixPath(*parts) if parts else PurePosixPath("uploads")


def build_media_name(filename: str, *, timestamp_ms: Optional[int] = None) -> str:
    """Return ``<millis>_<stem>.<ext>`` for an uploaded *filename*."""

    stamp = int(time.time() * 1000) if timestamp_ms is None else int(timestamp_ms)
    path = PurePosixPath(filename.replace("\\", "/")).name
    stem, dot, extension = path.rpartition(".")
    if not dot:
        stem, extension = path, ""
    suffix = f".{extension.lower()}" if extension else ""
    return f"{stamp}_{slugify(stem)}{suffix}"
