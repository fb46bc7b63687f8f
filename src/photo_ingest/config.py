"""Configuration loader and typed settings for the ingestion service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "config"})


@dataclass
class DatabaseConfig:
    """Connection target shared by the queue table and the photo catalog."""

    url: str = "sqlite:///data/photo_ingest.db"


@dataclass
class StorageConfig:
    """Local object store used by the bundled CLI tools."""

    root: str = "storage"
    public_base_url: str = "/storage"
    signing_secret: str = "change-me"


@dataclass
class QueueConfig:
    """Enqueue defaults and administrative limits."""

    default_priority: int = 0
    default_max_attempts: int = 3
    max_batch_size: int = 1000
    stuck_after_seconds: float = 900.0


@dataclass
class WorkerConfig:
    """Worker pool sizing, polling cadence, and reporting."""

    count: int = 3
    interval_seconds: float = 1.0
    enable_load_balancing: bool = True
    rebalance_interval_seconds: float = 300.0
    stats_report_interval_seconds: float = 600.0
    throughput_window_seconds: float = 600.0
    slow_worker_ratio: float = 2.0
    error_rate_threshold: float = 0.5
    relaxed_priority_band: tuple[int, int] = (3, 9)
    pairing_wait_attempts: int = 3
    pairing_wait_interval_seconds: float = 2.0


@dataclass
class PipelineConfig:
    """Knobs for the media pipeline stages."""

    thumbnail_width: int = 600
    thumbnail_quality: int = 90
    thumbnail_quality_large: int = 80
    thumbnail_large_source_pixels: int = 24_000_000
    heic_quality: int = 95
    heic_quality_large: int = 80
    heic_large_threshold_bytes: int = 10 * 1024 * 1024
    library_root: str = "photos"
    motion_search_attempts: int = 3
    motion_search_interval_seconds: float = 2.0


@dataclass
class RetryPresetConfig:
    """Overrides for one named retry preset."""

    max_attempts: int = 3
    base_delay: float = 0.5
    backoff: str = "linear"
    timeout: float | None = 10.0


@dataclass
class RetryConfig:
    """The ``fast`` and ``slow`` retry presets."""

    fast: RetryPresetConfig = field(default_factory=RetryPresetConfig)
    slow: RetryPresetConfig = field(
        default_factory=lambda: RetryPresetConfig(max_attempts=3, base_delay=1.0, backoff="exponential", timeout=30.0)
    )


@dataclass
class GeocodingConfig:
    """Reverse geocoding against an OpenStreetMap Nominatim endpoint."""

    enabled: bool = True
    base_url: str = "https://nominatim.openstreetmap.org"
    user_agent: str = "photo-ingest/1.0"
    min_interval_seconds: float = 1.0
    timeout_seconds: float = 10.0
    accept_language: str = "en"


@dataclass
class MetadataConfig:
    """External EXIF extraction tool settings."""

    exiftool_path: str = "exiftool"
    temp_dir: str | None = None
    timeout_seconds: float = 30.0


@dataclass
class Settings:
    """Top-level application settings."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    geocoding: GeocodingConfig = field(default_factory=GeocodingConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover - shallow install layouts
        return module_path.parent


def _default_settings_paths() -> list[Path]:
    """Return candidate settings paths ordered by preference."""

    candidates: list[Path] = []
    for candidate in (
        (Path.cwd() / "config" / "settings.yaml").resolve(),
        (_project_root() / "config" / "settings.yaml").resolve(),
    ):
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("PHOTO_INGEST_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    candidates = _default_settings_paths()
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _coerce(current: Any, value: Any) -> Any:
    """Return ``value`` converted to the type of ``current`` or raise ``TypeError``."""

    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        raise TypeError("expected bool")
    if isinstance(current, int):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        raise TypeError("expected int")
    if isinstance(current, float) or current is None:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        if current is None and value is None:
            return None
        if current is None and isinstance(value, str):
            return value
        raise TypeError("expected number")
    if isinstance(current, str):
        if isinstance(value, str):
            return value
        raise TypeError("expected str")
    if isinstance(current, tuple):
        if isinstance(value, (list, tuple)) and len(value) == len(current):
            return tuple(int(item) for item in value)
        raise TypeError(f"expected list of {len(current)} items")
    raise TypeError(f"unsupported setting type {type(current).__name__}")


def _apply_section(target: Any, raw: dict[str, Any], section: str) -> None:
    """Copy validated values from ``raw`` onto the dataclass ``target``."""

    for item in fields(target):
        if item.name not in raw:
            continue
        current = getattr(target, item.name)
        value = raw[item.name]
        if hasattr(current, "__dataclass_fields__"):
            _apply_section(current, _as_dict(value), f"{section}.{item.name}")
            continue
        if value is None and "None" in str(item.type):
            setattr(target, item.name, None)
            continue
        try:
            setattr(target, item.name, _coerce(current, value))
        except (TypeError, ValueError) as exc:
            LOGGER.warning(
                "settings_value_ignored",
                extra={"key": f"{section}.{item.name}", "value": repr(value), "error": str(exc)},
            )


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    Missing files, malformed YAML, and values of the wrong type never abort
    start-up; they are logged and the corresponding defaults are kept.
    """

    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if not path.exists() or not path.is_file():
        return settings

    try:
        with path.open("r", encoding="utf-8") as fp:
            raw = yaml.safe_load(fp) or {}
    except yaml.YAMLError as exc:
        LOGGER.error("settings_parse_error", extra={"path": str(path), "error": str(exc)})
        return settings

    raw = _as_dict(raw)
    for item in fields(settings):
        _apply_section(getattr(settings, item.name), _as_dict(raw.get(item.name)), item.name)

    LOGGER.info("settings_loaded", extra={"path": str(path)})
    return settings


__all__ = [
    "DatabaseConfig",
    "StorageConfig",
    "QueueConfig",
    "WorkerConfig",
    "PipelineConfig",
    "RetryPresetConfig",
    "RetryConfig",
    "GeocodingConfig",
    "MetadataConfig",
    "Settings",
    "load_settings",
]
