from __future__ import annotations

import io
from pathlib import Path
from typing import Any, Callable

import pytest
from PIL import Image

from photo_ingest.config import Settings
from photo_ingest.db import dispose_engines
from photo_ingest.errors import ExternalServiceError
from photo_ingest.models import Location
from photo_ingest.retry import RetryExecutor
from photo_ingest.storage import LocalObjectStore
from photo_ingest.task_queue import QueueStore


def encode_image(
    width: int,
    height: int,
    fmt: str = "JPEG",
    color: tuple[int, ...] | int = (180, 40, 40),
    mode: str = "RGB",
    orientation: int | None = None,
    **save_kwargs: Any,
) -> bytes:
    image = Image.new(mode, (width, height), color)
    if orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = orientation
        save_kwargs["exif"] = exif.tobytes()
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **save_kwargs)
    return buffer.getvalue()


class FakeExtractor:
    """Stands in for exiftool; records the temp paths it was handed."""

    def __init__(self, tags: dict[str, Any] | None = None, error: Exception | None = None) -> None:
        self.tags = tags or {}
        self.error = error
        self.paths: list[Path] = []
        self.existed: list[bool] = []

    def extract(self, path: Path) -> dict[str, Any]:
        self.paths.append(path)
        self.existed.append(path.exists())
        if self.error is not None:
            raise self.error
        return dict(self.tags)


class FakeGeocoder:
    def __init__(self, location: Location | None = None, fail: bool = False) -> None:
        self.location = location
        self.fail = fail
        self.calls: list[tuple[float, float]] = []

    def reverse_geocode(self, latitude: float, longitude: float) -> Location | None:
        self.calls.append((latitude, longitude))
        if self.fail:
            raise ExternalServiceError("geocoder offline")
        if self.location is None:
            return None
        return Location(
            latitude=latitude,
            longitude=longitude,
            country=self.location.country,
            city=self.location.city,
            display_name=self.location.display_name,
        )


@pytest.fixture(autouse=True)
def _dispose_engines():
    yield
    dispose_engines()


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'ingest.db'}"


@pytest.fixture
def queue(db_url: str) -> QueueStore:
    return QueueStore(db_url)


@pytest.fixture
def store(tmp_path: Path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "objects", public_base_url="https://cdn.example.test", signing_secret="s3cret")


@pytest.fixture
def fast_settings() -> Settings:
    settings = Settings()
    settings.pipeline.motion_search_attempts = 1
    settings.pipeline.motion_search_interval_seconds = 0.0
    return settings


@pytest.fixture
def no_sleep_retry() -> RetryExecutor:
    return RetryExecutor(sleep=lambda _seconds: None)


@pytest.fixture
def make_image() -> Callable[..., bytes]:
    return encode_image
