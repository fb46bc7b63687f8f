"""Plain data types exchanged between the queue, the pipeline, and the catalog."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from photo_ingest.errors import InvalidPayloadError

MIN_PRIORITY = 0
MAX_PRIORITY = 9
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 5


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PayloadKind(str, Enum):
    PHOTO = "photo"
    MOTION_VIDEO = "motion-video"


# Producers written against the older queue API still send this name.
_KIND_ALIASES = {"live-photo-video": "motion-video"}


class Stage(str, Enum):
    """Pipeline stage labels recorded on the task while it runs."""

    ACQUIRE = "acquire"
    GEOMETRY = "geometry"
    THUMBNAIL = "thumbnail"
    METADATA = "metadata"
    DESCRIBE = "describe"
    GEOLOCATE = "geolocate"
    MOTION_PAIR = "motion-pair"
    PERSIST = "persist"
    LOCATE_STILL = "locate-still"
    VERIFY_VIDEO = "verify-video"


@dataclass(frozen=True)
class TaskPayload:
    """Tagged payload: what to process and which pipeline variant runs it."""

    kind: PayloadKind
    storage_key: str

    @classmethod
    def create(cls, kind: str | PayloadKind, storage_key: str) -> TaskPayload:
        """Validate raw input and build a payload.

        Raises:
            InvalidPayloadError: when ``kind`` is unknown or ``storage_key`` is blank.
        """

        try:
            resolved = PayloadKind(_KIND_ALIASES.get(kind, kind) if isinstance(kind, str) else kind)
        except ValueError as exc:
            raise InvalidPayloadError(f"unknown payload kind: {kind!r}") from exc

        if not isinstance(storage_key, str) or not storage_key.strip():
            raise InvalidPayloadError("storage_key must be a non-empty string")
        return cls(kind=resolved, storage_key=storage_key.strip())

    @classmethod
    def photo(cls, storage_key: str) -> TaskPayload:
        return cls.create(PayloadKind.PHOTO, storage_key)

    @classmethod
    def motion_video(cls, storage_key: str) -> TaskPayload:
        return cls.create(PayloadKind.MOTION_VIDEO, storage_key)

    def to_json(self) -> str:
        return json.dumps({"kind": self.kind.value, "storageKey": self.storage_key}, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> TaskPayload:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidPayloadError(f"payload is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise InvalidPayloadError("payload must be a JSON object")
        return cls.create(data.get("kind", ""), data.get("storageKey", ""))


def validate_priority(priority: int) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise InvalidPayloadError("priority must be an integer")
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise InvalidPayloadError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")
    return priority


def validate_max_attempts(max_attempts: int) -> int:
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
        raise InvalidPayloadError("max_attempts must be an integer")
    if not MIN_MAX_ATTEMPTS <= max_attempts <= MAX_MAX_ATTEMPTS:
        raise InvalidPayloadError(f"max_attempts must be between {MIN_MAX_ATTEMPTS} and {MAX_MAX_ATTEMPTS}")
    return max_attempts


@dataclass(frozen=True)
class QueueTask:
    """Detached snapshot of a queue row."""

    id: int
    payload: TaskPayload
    priority: int
    status: TaskStatus
    stage: str | None
    attempts: int
    max_attempts: int
    error_message: str | None
    created_at: float
    completed_at: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.payload.kind.value,
            "storage_key": self.payload.storage_key,
            "priority": self.priority,
            "status": self.status.value,
            "stage": self.stage,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


@dataclass
class Location:
    latitude: float
    longitude: float
    country: str | None = None
    city: str | None = None
    display_name: str | None = None


@dataclass
class PipelineResult:
    """Catalog-ready record produced by a successful photo pipeline run."""

    id: str
    storage_key: str
    title: str
    description: str
    tags: list[str]
    date_taken: str | None
    width: int
    height: int
    aspect_ratio: float
    original_url: str
    thumbnail_key: str
    thumbnail_url: str
    thumbnail_hash: str | None
    file_size: int
    content_hash: str
    jpeg_key: str | None = None
    exif: dict[str, Any] | None = None
    location: Location | None = None
    is_live_photo: bool = False
    live_photo_video_key: str | None = None
    live_photo_video_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MotionPairing:
    """Result of a motion-video task: which still gets which companion video."""

    photo_id: str
    still_key: str
    video_key: str
    video_url: str

    def catalog_fields(self) -> dict[str, Any]:
        return {
            "is_live_photo": True,
            "live_photo_video_key": self.video_key,
            "live_photo_video_url": self.video_url,
        }


@dataclass
class PoolStats:
    status_counts: dict[str, int]
    average_attempts: float
    workers: list[dict[str, Any]] = field(default_factory=list)
    throughput_per_minute: float = 0.0
    window_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status_counts": dict(self.status_counts),
            "total": sum(self.status_counts.values()),
            "average_attempts": self.average_attempts,
            "workers": list(self.workers),
            "throughput": {
                "per_minute": self.throughput_per_minute,
                "window_seconds": self.window_seconds,
            },
        }


__all__ = [
    "MIN_PRIORITY",
    "MAX_PRIORITY",
    "MIN_MAX_ATTEMPTS",
    "MAX_MAX_ATTEMPTS",
    "TaskStatus",
    "PayloadKind",
    "Stage",
    "TaskPayload",
    "QueueTask",
    "Location",
    "PipelineResult",
    "MotionPairing",
    "PoolStats",
    "validate_priority",
    "validate_max_attempts",
]
