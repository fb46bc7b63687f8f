"""Catalog collaborator: where finished pipeline results are recorded."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import select

from utils.logging import get_logger
from photo_ingest.db import Photo, open_session
from photo_ingest.models import PipelineResult

LOGGER = get_logger(__name__, extra={"component": "catalog"})

_LIVE_PHOTO_FIELDS = frozenset({"is_live_photo", "live_photo_video_key", "live_photo_video_url"})


class Catalog(Protocol):
    def insert(self, record: PipelineResult) -> None: ...

    def update_live_photo_fields(self, photo_id: str, fields: dict[str, Any]) -> bool: ...


class SqlCatalog:
    """Writes :class:`PipelineResult` records into the ``photos`` table.

    Inserts are upserts keyed by photo id, so a task that is processed twice
    after a crash leaves a single row behind.
    """

    def __init__(self, database_url: str | Path) -> None:
        self._database_url = database_url

    def insert(self, record: PipelineResult) -> None:
        now = time.time()
        location = record.location
        with open_session(self._database_url) as session:
            existing = session.get(Photo, record.id)
            row = existing or Photo(id=record.id, created_at=now)
            row.storage_key = record.storage_key
            row.title = record.title
            row.description = record.description
            row.tags_json = json.dumps(record.tags, ensure_ascii=False)
            row.date_taken = record.date_taken
            row.width = record.width
            row.height = record.height
            row.aspect_ratio = record.aspect_ratio
            row.file_size = record.file_size
            row.content_hash = record.content_hash
            row.original_url = record.original_url
            row.jpeg_key = record.jpeg_key
            row.thumbnail_key = record.thumbnail_key
            row.thumbnail_url = record.thumbnail_url
            row.thumbnail_hash = record.thumbnail_hash
            row.exif_json = json.dumps(record.exif, ensure_ascii=False, default=str) if record.exif else None
            row.latitude = location.latitude if location else None
            row.longitude = location.longitude if location else None
            row.country = location.country if location else None
            row.city = location.city if location else None
            row.location_name = location.display_name if location else None
            # A companion video may have been paired before this still finished.
            if record.is_live_photo or existing is None:
                row.is_live_photo = record.is_live_photo
                row.live_photo_video_key = record.live_photo_video_key
                row.live_photo_video_url = record.live_photo_video_url
            row.updated_at = now
            session.add(row)
            session.commit()

        LOGGER.info(
            "catalog_photo_upserted",
            extra={"photo_id": record.id, "storage_key": record.storage_key, "replaced": existing is not None},
        )

    def update_live_photo_fields(self, photo_id: str, fields: dict[str, Any]) -> bool:
        unknown = set(fields) - _LIVE_PHOTO_FIELDS
        if unknown:
            raise ValueError(f"unsupported live photo fields: {sorted(unknown)}")

        with open_session(self._database_url) as session:
            row = session.get(Photo, photo_id)
            if row is None:
                return False
            for name, value in fields.items():
                setattr(row, name, value)
            row.updated_at = time.time()
            session.add(row)
            session.commit()

        LOGGER.info("catalog_live_photo_updated", extra={"photo_id": photo_id, **fields})
        return True

    def get(self, photo_id: str) -> Photo | None:
        with open_session(self._database_url) as session:
            return session.get(Photo, photo_id)

    def find_by_storage_key(self, storage_key: str) -> Photo | None:
        with open_session(self._database_url) as session:
            return session.execute(
                select(Photo).where(Photo.storage_key == storage_key).limit(1)
            ).scalar_one_or_none()


__all__ = ["Catalog", "SqlCatalog"]
