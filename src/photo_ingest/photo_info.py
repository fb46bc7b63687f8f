"""Photo identity plus title, capture date, and tags derived from keys and EXIF."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any

from photo_ingest.hasher import content_hash

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_FILENAME_DATE = re.compile(r"(\d{4}-\d{2}-\d{2})")
_TITLE_DATE_TOKEN = re.compile(r"\d{4}-\d{2}-\d{2}[_-]?")
_TITLE_VIEWS_TOKEN = re.compile(r"[_-]?\d+views?", re.IGNORECASE)
_TITLE_SEPARATORS = re.compile(r"[_-]+")


@dataclass
class DescriptiveInfo:
    title: str
    date_taken: str
    description: str = ""
    tags: list[str] = field(default_factory=list)


def derive_photo_id(storage_key: str) -> str:
    """Deterministic, filesystem-safe photo id from the key's file stem."""

    stem = PurePosixPath(storage_key.replace("\\", "/")).stem
    candidate = _UNSAFE_ID_CHARS.sub("_", stem.replace(" ", "_")).strip("._")
    if candidate:
        return candidate
    return f"photo_{content_hash(storage_key.encode('utf-8'))}"


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    text = str(value).strip()
    return [part.strip() for part in text.split(",") if part.strip()] if text else []


def derive_tags(storage_key: str, meta: dict[str, Any], library_root: str = "photos") -> list[str]:
    """EXIF ``Subject``/``Keywords`` when present, else the key's directory names."""

    tags: list[str] = []
    for value in _as_list(meta.get("Subject")) + _as_list(meta.get("Keywords")):
        if value not in tags:
            tags.append(value)
    if tags:
        return tags

    parts = list(PurePosixPath(storage_key.replace("\\", "/")).parent.parts)
    if parts and parts[0] == library_root:
        parts = parts[1:]
    for part in parts:
        if part not in {"", ".", "/"} and part not in tags:
            tags.append(part)
    return tags


def derive_title(storage_key: str, meta: dict[str, Any]) -> str:
    title = meta.get("Title")
    if isinstance(title, str) and title.strip():
        return title.strip()

    stem = PurePosixPath(storage_key.replace("\\", "/")).stem
    cleaned = _TITLE_DATE_TOKEN.sub("", stem)
    cleaned = _TITLE_VIEWS_TOKEN.sub("", cleaned)
    cleaned = _TITLE_SEPARATORS.sub(" ", cleaned).strip()
    return cleaned or stem


def derive_date_taken(storage_key: str, meta: dict[str, Any], now: datetime | None = None) -> str:
    """EXIF capture time, else a ``YYYY-MM-DD`` token in the file name, else now (UTC)."""

    original = meta.get("DateTimeOriginal")
    if isinstance(original, str) and original.strip():
        return original.strip()

    match = _FILENAME_DATE.search(PurePosixPath(storage_key).name)
    if match:
        try:
            parsed = datetime.strptime(match.group(1), "%Y-%m-%d").replace(tzinfo=timezone.utc)
            return parsed.isoformat()
        except ValueError:
            pass

    return (now or datetime.now(timezone.utc)).isoformat()


def derive_info(
    storage_key: str,
    meta: dict[str, Any] | None,
    library_root: str = "photos",
    now: datetime | None = None,
) -> DescriptiveInfo:
    meta = meta or {}
    return DescriptiveInfo(
        title=derive_title(storage_key, meta),
        date_taken=derive_date_taken(storage_key, meta, now=now),
        tags=derive_tags(storage_key, meta, library_root),
    )


__all__ = [
    "DescriptiveInfo",
    "derive_photo_id",
    "derive_tags",
    "derive_title",
    "derive_date_taken",
    "derive_info",
]
