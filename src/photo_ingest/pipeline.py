"""Media pipeline: turns one stored upload into a catalog-ready record.

Photo tasks run eight stages in order. Acquire, geometry and thumbnail are
required and raise once their retry budget is spent; metadata, description,
geolocation and motion pairing degrade to empty fields instead. Motion-video
tasks locate the still they belong to and return a :class:`MotionPairing`.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any

from utils.logging import get_logger
from photo_ingest.config import Settings
from photo_ingest.errors import (
    MalformedInputError,
    NotFoundError,
    RetryExhausted,
    TransientResourceError,
)
from photo_ingest.geocoding import GeocodingProvider, NominatimGeocoder, reverse_geocode_gps
from photo_ingest.hasher import content_hash, perceptual_hash
from photo_ingest.imaging import (
    Geometry,
    bitmap_to_jpeg,
    build_preview,
    encode_webp,
    heic_quality,
    is_bitmap,
    is_heif,
    jpeg_sibling_key,
    read_geometry,
    thumbnail_quality,
    transcode_heif_to_jpeg,
)
from photo_ingest.metadata import ExifToolExtractor, MetadataExtractor, extract_curated, parse_gps
from photo_ingest.models import (
    Location,
    MotionPairing,
    PayloadKind,
    PipelineResult,
    Stage,
    TaskPayload,
)
from photo_ingest.motion import find_companion_still, find_companion_video, is_video_container
from photo_ingest.photo_info import derive_info, derive_photo_id
from photo_ingest.retry import RetryExecutor, RetryPolicy, retry_on_resource_errors
from photo_ingest.storage import ObjectStore

LOGGER = get_logger(__name__, extra={"component": "pipeline"})

StageCallback = Callable[[Stage], None]

THUMBNAIL_PREFIX = "thumbnails"


@dataclass
class _Acquired:
    original: bytes
    processed: bytes
    jpeg_key: str | None


@dataclass
class _Preview:
    data: bytes
    phash: str


def thumbnail_key_for(photo_id: str) -> str:
    return f"{THUMBNAIL_PREFIX}/{photo_id}.webp"


class MediaPipeline:
    """Stateless stage runner; one instance is shared by every worker thread."""

    def __init__(
        self,
        store: ObjectStore,
        extractor: MetadataExtractor | None = None,
        geocoder: GeocodingProvider | None = None,
        settings: Settings | None = None,
        retry: RetryExecutor | None = None,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._geocoder = geocoder
        self._settings = settings or Settings()
        self._retry = retry or RetryExecutor.from_config(self._settings.retry)

    @classmethod
    def from_settings(cls, settings: Settings, store: ObjectStore) -> MediaPipeline:
        extractor = ExifToolExtractor(settings.metadata.exiftool_path, timeout=settings.metadata.timeout_seconds)
        geocoder = NominatimGeocoder.from_config(settings.geocoding) if settings.geocoding.enabled else None
        return cls(store, extractor=extractor, geocoder=geocoder, settings=settings)

    def run(self, payload: TaskPayload, on_stage: StageCallback | None = None) -> PipelineResult | MotionPairing:
        """Dispatch ``payload`` to the photo or motion-video variant."""

        if payload.kind is PayloadKind.MOTION_VIDEO:
            return self.process_motion_video(payload.storage_key, on_stage)
        return self.process_photo(payload.storage_key, on_stage)

    # -- photo -------------------------------------------------------------

    def process_photo(self, storage_key: str, on_stage: StageCallback | None = None) -> PipelineResult:
        cfg = self._settings.pipeline
        started = time.monotonic()
        photo_id = derive_photo_id(storage_key)

        self._enter(Stage.ACQUIRE, on_stage, storage_key)
        acquired = self._retry.run(
            lambda: self._acquire(storage_key),
            "slow",
            name="acquire",
            retry_condition=retry_on_resource_errors,
        )

        self._enter(Stage.GEOMETRY, on_stage, storage_key)
        geometry: Geometry = self._retry.run(
            lambda: read_geometry(acquired.processed),
            "fast",
            name="geometry",
            retry_condition=retry_on_resource_errors,
        )

        self._enter(Stage.THUMBNAIL, on_stage, storage_key)
        quality = thumbnail_quality(geometry.width * geometry.height, cfg)
        preview: _Preview = self._retry.run(
            lambda: self._render_preview(acquired.processed, cfg.thumbnail_width, quality),
            "fast",
            name="thumbnail",
        )

        self._enter(Stage.METADATA, on_stage, storage_key)
        meta = self._extract_metadata(storage_key, acquired.original)

        self._enter(Stage.DESCRIBE, on_stage, storage_key)
        info = derive_info(storage_key, meta, library_root=cfg.library_root)

        self._enter(Stage.GEOLOCATE, on_stage, storage_key)
        location = self._geolocate(storage_key, meta)

        self._enter(Stage.MOTION_PAIR, on_stage, storage_key)
        video_key = self._pair_motion_video(storage_key)

        self._enter(Stage.PERSIST, on_stage, storage_key)
        thumb_key = thumbnail_key_for(photo_id)
        self._retry.run(
            lambda: self._store.put(thumb_key, preview.data, "image/webp"),
            "fast",
            name="persist_thumbnail",
        )

        result = PipelineResult(
            id=photo_id,
            storage_key=storage_key,
            title=info.title,
            description=info.description,
            tags=info.tags,
            date_taken=info.date_taken,
            width=geometry.width,
            height=geometry.height,
            aspect_ratio=geometry.aspect_ratio,
            original_url=self._store.public_url(storage_key),
            thumbnail_key=thumb_key,
            thumbnail_url=self._store.public_url(thumb_key),
            thumbnail_hash=preview.phash,
            file_size=len(acquired.original),
            content_hash=content_hash(acquired.original),
            jpeg_key=acquired.jpeg_key,
            exif=meta or None,
            location=location,
            is_live_photo=video_key is not None,
            live_photo_video_key=video_key,
            live_photo_video_url=self._store.public_url(video_key) if video_key else None,
        )

        LOGGER.info(
            "pipeline_photo_processed",
            extra={
                "storage_key": storage_key,
                "photo_id": photo_id,
                "width": result.width,
                "height": result.height,
                "has_exif": bool(meta),
                "has_location": location is not None,
                "is_live_photo": result.is_live_photo,
                "elapsed_seconds": round(time.monotonic() - started, 3),
            },
        )
        return result

    def _acquire(self, storage_key: str) -> _Acquired:
        data = self._store.get(storage_key)
        if data is None:
            raise NotFoundError(f"object not found: {storage_key}")
        if not data:
            raise MalformedInputError(f"object is empty: {storage_key}")

        if is_bitmap(data):
            return _Acquired(original=data, processed=bitmap_to_jpeg(data), jpeg_key=None)

        if is_heif(data, storage_key):
            jpeg = transcode_heif_to_jpeg(data, heic_quality(len(data), self._settings.pipeline))
            jpeg_key = jpeg_sibling_key(storage_key)
            self._store.put(jpeg_key, jpeg, "image/jpeg")
            return _Acquired(original=data, processed=jpeg, jpeg_key=jpeg_key)

        return _Acquired(original=data, processed=data, jpeg_key=None)

    @staticmethod
    def _render_preview(data: bytes, width: int, quality: int) -> _Preview:
        preview = build_preview(data, width)
        return _Preview(data=encode_webp(preview, quality), phash=perceptual_hash(preview))

    def _extract_metadata(self, storage_key: str, data: bytes) -> dict[str, Any]:
        if self._extractor is None:
            return {}

        extractor = self._extractor
        suffix = PurePosixPath(storage_key).suffix or ".jpg"
        try:
            return self._retry.run(
                lambda: extract_curated(data, extractor, suffix=suffix, temp_dir=self._settings.metadata.temp_dir),
                "fast",
                name="metadata",
            )
        except RetryExhausted as exc:
            LOGGER.warning(
                "pipeline_metadata_unavailable",
                extra={"storage_key": storage_key, "error": str(exc.last_error)},
            )
            return {}

    def _geolocate(self, storage_key: str, meta: dict[str, Any]) -> Location | None:
        if self._geocoder is None:
            return None
        coordinates = parse_gps(meta)
        if coordinates is None:
            return None

        geocoder = self._geocoder
        latitude, longitude = coordinates
        try:
            location = self._retry.run(
                lambda: reverse_geocode_gps(geocoder, latitude, longitude),
                "fast",
                name="geolocate",
            )
        except RetryExhausted as exc:
            LOGGER.warning(
                "pipeline_geolocate_failed",
                extra={"storage_key": storage_key, "latitude": latitude, "longitude": longitude, "error": str(exc.last_error)},
            )
            return None
        return location

    def _pair_motion_video(self, storage_key: str) -> str | None:
        try:
            return find_companion_video(self._store, storage_key)
        except Exception as exc:
            LOGGER.warning("pipeline_motion_pair_failed", extra={"storage_key": storage_key, "error": str(exc)})
            return None

    # -- motion video ------------------------------------------------------

    def process_motion_video(self, storage_key: str, on_stage: StageCallback | None = None) -> MotionPairing:
        cfg = self._settings.pipeline

        self._enter(Stage.LOCATE_STILL, on_stage, storage_key)

        def locate() -> str:
            still = find_companion_still(self._store, storage_key)
            if still is None:
                raise TransientResourceError(f"no companion still yet for {storage_key}")
            return still

        search = RetryPolicy(
            max_attempts=max(1, cfg.motion_search_attempts),
            base_delay=cfg.motion_search_interval_seconds,
            backoff="linear",
            timeout=None,
        )
        try:
            still_key = self._retry.run(locate, search, name="locate_still", retry_condition=retry_on_resource_errors)
        except RetryExhausted as exc:
            raise NotFoundError(f"no companion still found for {storage_key}") from exc

        self._enter(Stage.VERIFY_VIDEO, on_stage, storage_key)
        data = self._store.get(storage_key)
        if data is None:
            raise NotFoundError(f"object not found: {storage_key}")
        if not is_video_container(data):
            raise MalformedInputError(f"not a QuickTime/ISO media container: {storage_key}")

        pairing = MotionPairing(
            photo_id=derive_photo_id(still_key),
            still_key=still_key,
            video_key=storage_key,
            video_url=self._store.public_url(storage_key),
        )
        LOGGER.info(
            "pipeline_motion_video_paired",
            extra={"video_key": storage_key, "still_key": still_key, "photo_id": pairing.photo_id},
        )
        return pairing

    @staticmethod
    def _enter(stage: Stage, on_stage: StageCallback | None, storage_key: str) -> None:
        LOGGER.debug("pipeline_stage_started", extra={"stage": stage.value, "storage_key": storage_key})
        if on_stage is not None:
            on_stage(stage)


__all__ = ["MediaPipeline", "StageCallback", "THUMBNAIL_PREFIX", "thumbnail_key_for"]
