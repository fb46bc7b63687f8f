"""Object storage contract and a local-filesystem implementation."""

from __future__ import annotations

import hashlib
import hmac
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Protocol, runtime_checkable
from urllib.parse import quote, urlencode

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "storage"})


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int
    last_modified: datetime


@runtime_checkable
class ObjectStore(Protocol):
    """The narrow storage surface the pipeline depends on."""

    def get(self, key: str) -> bytes | None: ...

    def put(self, key: str, data: bytes, content_type: str | None = None) -> StoredObject: ...

    def public_url(self, key: str) -> str: ...

    def list_keys(self, prefix: str = "") -> list[str]: ...


def normalize_key(key: str) -> str:
    """Return a relative POSIX key, rejecting traversal outside the store."""

    raw = key.replace("\\", "/").strip().lstrip("/")
    parts = PurePosixPath(raw).parts
    if not raw or any(part in {"..", "."} for part in parts):
        raise ValueError(f"invalid storage key: {key!r}")
    return "/".join(parts)


def parent_prefix(key: str) -> str:
    """Directory portion of ``key`` with a trailing slash, or ``""`` at the root."""

    parent = PurePosixPath(normalize_key(key)).parent
    return "" if str(parent) == "." else f"{parent}/"


class LocalObjectStore:
    """Stores objects as files below ``root`` and serves them from ``public_base_url``."""

    def __init__(self, root: str | Path, public_base_url: str = "/storage", signing_secret: str | None = None) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._public_base_url = public_base_url.rstrip("/")
        self._signing_secret = signing_secret

    @property
    def root(self) -> Path:
        return self._root

    def _path_for(self, key: str) -> Path:
        return self._root.joinpath(*PurePosixPath(normalize_key(key)).parts)

    def get(self, key: str) -> bytes | None:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, key: str, data: bytes, content_type: str | None = None) -> StoredObject:
        normalized = normalize_key(key)
        path = self._path_for(normalized)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write-then-rename so readers never observe a partial object.
        fd, tmp_name = tempfile.mkstemp(prefix=".upload-", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        stat = path.stat()
        LOGGER.debug(
            "storage_put",
            extra={"key": normalized, "size": stat.st_size, "content_type": content_type},
        )
        return StoredObject(
            key=normalized,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    def public_url(self, key: str) -> str:
        return f"{self._public_base_url}/{quote(normalize_key(key))}"

    def list_keys(self, prefix: str = "") -> list[str]:
        """Every stored key under ``prefix``, sorted; temporary upload files are skipped."""

        base = self._root
        keys: list[str] = []
        for path in base.rglob("*"):
            if not path.is_file() or path.name.startswith(".upload-"):
                continue
            key = path.relative_to(base).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        keys.sort()
        return keys

    def signed_upload_url(self, key: str, ttl: int = 3600, content_type: str | None = None) -> str:
        """Return an upload URL carrying an HMAC over key, expiry and content type."""

        if not self._signing_secret:
            raise RuntimeError("signed uploads require a signing secret")

        normalized = normalize_key(key)
        expires = int(time.time()) + int(ttl)
        message = f"{normalized}\n{expires}\n{content_type or ''}".encode("utf-8")
        signature = hmac.new(self._signing_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
        query = {"expires": expires, "signature": signature}
        if content_type:
            query["contentType"] = content_type
        return f"{self.public_url(normalized)}?{urlencode(query)}"


__all__ = ["StoredObject", "ObjectStore", "LocalObjectStore", "normalize_key", "parent_prefix"]
