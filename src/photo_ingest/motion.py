"""Motion-photo pairing: still images and their companion short videos."""

from __future__ import annotations

from pathlib import PurePosixPath

from photo_ingest.storage import ObjectStore, parent_prefix

VIDEO_EXTENSIONS: tuple[str, ...] = (".mov", ".mp4")
# Preference order when more than one still shares a stem.
IMAGE_EXTENSIONS: tuple[str, ...] = (".heic", ".heif", ".hif", ".jpg", ".jpeg", ".png", ".webp", ".bmp")

_CONTAINER_ATOMS = frozenset({b"ftyp", b"moov", b"wide", b"mdat", b"free", b"skip", b"pnot"})


def _siblings(store: ObjectStore, key: str) -> list[PurePosixPath]:
    prefix = parent_prefix(key)
    parent = PurePosixPath(key).parent
    return [PurePosixPath(item) for item in store.list_keys(prefix) if PurePosixPath(item).parent == parent]


def _find_sibling(store: ObjectStore, key: str, extensions: tuple[str, ...]) -> str | None:
    stem = PurePosixPath(key).stem
    ranked: list[tuple[int, str]] = []
    for sibling in _siblings(store, key):
        if sibling.stem != stem or str(sibling) == key:
            continue
        suffix = sibling.suffix.lower()
        if suffix in extensions:
            ranked.append((extensions.index(suffix), str(sibling)))
    if not ranked:
        return None
    ranked.sort()
    return ranked[0][1]


def find_companion_video(store: ObjectStore, still_key: str) -> str | None:
    return _find_sibling(store, still_key, VIDEO_EXTENSIONS)


def find_companion_still(store: ObjectStore, video_key: str) -> str | None:
    return _find_sibling(store, video_key, IMAGE_EXTENSIONS)


def is_video_container(data: bytes) -> bool:
    """True when ``data`` starts with an ISO base media / QuickTime atom header."""

    return len(data) >= 8 and data[4:8] in _CONTAINER_ATOMS


__all__ = [
    "VIDEO_EXTENSIONS",
    "IMAGE_EXTENSIONS",
    "find_companion_video",
    "find_companion_still",
    "is_video_container",
]
