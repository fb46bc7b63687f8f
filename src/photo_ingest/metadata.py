"""Curated EXIF extraction through the external ``exiftool`` binary."""

from __future__ import annotations

import io
import json
import os
import re
import shutil
import subprocess
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from PIL import Image, ImageCms, UnidentifiedImageError

from utils.logging import get_logger
from photo_ingest.errors import ExternalServiceError

LOGGER = get_logger(__name__, extra={"component": "metadata"})

CURATED_KEYS: tuple[str, ...] = (
    "Title",
    "Subject",
    "Keywords",
    "tz",
    "tzSource",
    "Orientation",
    "Make",
    "Model",
    "Software",
    "Artist",
    "Copyright",
    "ExposureTime",
    "FNumber",
    "ExposureProgram",
    "ISO",
    "OffsetTime",
    "OffsetTimeOriginal",
    "OffsetTimeDigitized",
    "ShutterSpeedValue",
    "ApertureValue",
    "BrightnessValue",
    "ExposureCompensationSet",
    "ExposureCompensationMode",
    "ExposureCompensationSetting",
    "ExposureCompensation",
    "MaxApertureValue",
    "LightSource",
    "Flash",
    "FocalLength",
    "ColorSpace",
    "ExposureMode",
    "FocalLengthIn35mmFormat",
    "SceneCaptureType",
    "LensMake",
    "LensModel",
    "MeteringMode",
    "WhiteBalance",
    "WBShiftAB",
    "WBShiftGM",
    "WhiteBalanceBias",
    "WhiteBalanceFineTune",
    "FlashMeteringMode",
    "SensingMethod",
    "FocalPlaneXResolution",
    "FocalPlaneYResolution",
    "Aperture",
    "ScaleFactor35efl",
    "ShutterSpeed",
    "LightValue",
    "Rating",
    "GPSAltitude",
    "GPSCoordinates",
    "GPSAltitudeRef",
    "GPSLatitude",
    "GPSLatitudeRef",
    "GPSLongitude",
    "GPSLongitudeRef",
    "MPImageType",
)

_UNCALIBRATED_COLOR_SPACES = {"uncalibrated", "65535", "0xffff"}
_FORMAT_DEFAULT_COLOR_SPACE = {"JPEG": "sRGB", "PNG": "sRGB", "WEBP": "sRGB", "GIF": "sRGB", "BMP": "sRGB"}
_MODE_COLOR_SPACE = {
    "CMYK": "CMYK",
    "L": "Gray",
    "LA": "Gray",
    "1": "Gray",
    "I;16": "Gray",
    "LAB": "Lab",
    "YCbCr": "YCbCr",
}

_EXIF_DATETIME_RE = re.compile(
    r"^(?P<date>\d{4}[:-]\d{2}[:-]\d{2})[ T](?P<time>\d{2}:\d{2}:\d{2})(?P<frac>\.\d+)?(?P<offset>Z|[+-]\d{2}:?\d{2})?$"
)
_OFFSET_RE = re.compile(r"^(?P<sign>[+-])(?P<hours>\d{2}):?(?P<minutes>\d{2})$")
_DMS_RE = re.compile(
    r"^\s*(?P<deg>-?\d+(?:\.\d+)?)\s*(?:deg|°)?\s*"
    r"(?:(?P<min>\d+(?:\.\d+)?)\s*'\s*)?"
    r"(?:(?P<sec>\d+(?:\.\d+)?)\s*\"\s*)?"
    r"(?P<ref>[NSEW])?\s*$",
    re.IGNORECASE,
)


class MetadataExtractor(Protocol):
    def extract(self, path: Path) -> dict[str, Any]: ...


def _resolve_exiftool(executable: str) -> str | None:
    candidate = Path(executable).expanduser()
    if candidate.is_file():
        return str(candidate)
    return shutil.which(executable)


class ExifToolExtractor:
    """Runs ``exiftool -json`` against a single file and returns its tag map."""

    def __init__(self, executable: str = "exiftool", timeout: float = 30.0) -> None:
        self._executable = executable
        self._timeout = timeout

    def extract(self, path: Path) -> dict[str, Any]:
        resolved = _resolve_exiftool(self._executable)
        if resolved is None:
            raise ExternalServiceError(f"exiftool not found: {self._executable}")

        cmd = [resolved, "-json", "-api", "largefilesupport=1", str(path)]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self._timeout)
        except subprocess.TimeoutExpired as exc:
            raise ExternalServiceError(f"exiftool timed out after {self._timeout:.0f}s") from exc
        except OSError as exc:
            raise ExternalServiceError(f"failed to launch exiftool: {exc}") from exc

        if proc.returncode != 0 and not proc.stdout.strip():
            err = proc.stderr.strip() or proc.stdout.strip()
            raise ExternalServiceError(f"exiftool exited with {proc.returncode}: {err}")

        try:
            parsed = json.loads(proc.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise ExternalServiceError(f"exiftool produced invalid JSON: {exc}") from exc

        if not parsed or not isinstance(parsed[0], dict):
            return {}
        return parsed[0]


def format_exif_datetime(value: Any, offset: Any = None) -> str | None:
    """Render an exiftool timestamp (``YYYY:MM:DD HH:MM:SS``) as ISO 8601.

    The offset embedded in ``value`` wins; otherwise ``offset`` (for example
    ``OffsetTimeOriginal``) is applied. Without either the result is naive.
    """

    if not isinstance(value, str):
        return None
    match = _EXIF_DATETIME_RE.match(value.strip())
    if not match:
        return None

    try:
        parsed = datetime.strptime(f"{match['date'].replace('-', ':')} {match['time']}", "%Y:%m:%d %H:%M:%S")
    except ValueError:
        return None
    if match["frac"]:
        parsed = parsed.replace(microsecond=int(float(match["frac"]) * 1_000_000))

    tz = _parse_offset(match["offset"]) or _parse_offset(offset)
    if tz is not None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.isoformat()


def _parse_offset(raw: Any) -> timezone | None:
    if not isinstance(raw, str):
        return None
    raw = raw.strip()
    if raw == "Z":
        return timezone.utc
    match = _OFFSET_RE.match(raw)
    if not match:
        return None
    delta = timedelta(hours=int(match["hours"]), minutes=int(match["minutes"]))
    return timezone(-delta if match["sign"] == "-" else delta)


def _normalize_profile_name(description: str) -> str:
    lowered = description.lower()
    if "srgb" in lowered:
        return "sRGB"
    if "p3" in lowered:
        return "Display P3"
    if "adobe rgb" in lowered:
        return "Adobe RGB"
    return description.strip()


def _icc_description(icc: bytes) -> str | None:
    try:
        profile = ImageCms.ImageCmsProfile(io.BytesIO(icc))
        description = ImageCms.getProfileDescription(profile)
    except (ImageCms.PyCMSError, OSError, TypeError) as exc:
        LOGGER.debug("icc_profile_unreadable", extra={"error": str(exc)})
        return None
    description = (description or "").strip()
    return description or None


def infer_color_space(exif_value: Any, data: bytes | None) -> str | None:
    """Resolve the colour space for a photo.

    Order: calibrated EXIF value, embedded ICC profile, decoder colour mode,
    format default. Returns ``None`` when nothing applies.
    """

    if exif_value is not None and str(exif_value).strip().lower() not in _UNCALIBRATED_COLOR_SPACES:
        value = str(exif_value).strip()
        return "sRGB" if value in {"1", "srgb"} else value

    if not data:
        return None
    try:
        image = Image.open(io.BytesIO(data))
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
        return None

    icc = image.info.get("icc_profile")
    if isinstance(icc, bytes) and icc:
        description = _icc_description(icc)
        if description:
            return _normalize_profile_name(description)

    from_mode = _MODE_COLOR_SPACE.get(image.mode)
    if from_mode:
        return from_mode

    return _FORMAT_DEFAULT_COLOR_SPACE.get(image.format or "")


def _parse_coordinate(value: Any, ref: Any = None) -> float | None:
    if value is None or isinstance(value, bool):
        return None

    hemisphere = str(ref).strip().upper()[:1] if isinstance(ref, str) and ref.strip() else None

    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, (list, tuple)) and value:
        parts = [float(part) for part in value[:3]]
        while len(parts) < 3:
            parts.append(0.0)
        number = parts[0] + parts[1] / 60.0 + parts[2] / 3600.0
    elif isinstance(value, str):
        match = _DMS_RE.match(value)
        if not match:
            return None
        degrees = float(match["deg"])
        minutes = float(match["min"] or 0)
        seconds = float(match["sec"] or 0)
        number = abs(degrees) + minutes / 60.0 + seconds / 3600.0
        if degrees < 0:
            number = -number
        if match["ref"]:
            hemisphere = match["ref"].upper()
    else:
        return None

    if hemisphere in {"S", "W"}:
        number = -abs(number)
    return number


def parse_gps(meta: dict[str, Any]) -> tuple[float, float] | None:
    """Return signed decimal ``(latitude, longitude)`` or ``None`` when absent.

    ``GPSLatitude``/``GPSLongitude`` with their ``Ref`` tags win; the combined
    ``GPSCoordinates`` string (QuickTime style) is the fallback.
    """

    lat = _parse_coordinate(meta.get("GPSLatitude"), meta.get("GPSLatitudeRef"))
    lon = _parse_coordinate(meta.get("GPSLongitude"), meta.get("GPSLongitudeRef"))

    if (lat is None or lon is None) and isinstance(meta.get("GPSCoordinates"), str):
        pieces = [piece.strip() for piece in meta["GPSCoordinates"].split(",")]
        if len(pieces) >= 2:
            lat = _parse_coordinate(pieces[0])
            lon = _parse_coordinate(pieces[1])

    if lat is None or lon is None:
        return None
    return lat, lon


def curate(raw: dict[str, Any], data: bytes | None = None) -> dict[str, Any]:
    """Reduce a raw exiftool tag map to the curated field set."""

    curated = {key: raw[key] for key in CURATED_KEYS if raw.get(key) not in (None, "")}

    for key, offset_key in (
        ("DateTimeOriginal", "OffsetTimeOriginal"),
        ("DateTimeDigitized", "OffsetTimeDigitized"),
    ):
        source = raw.get(key) or (raw.get("CreateDate") if key == "DateTimeDigitized" else None)
        formatted = format_exif_datetime(source, raw.get(offset_key) or raw.get("OffsetTime"))
        if formatted:
            curated[key] = formatted

    for key in ("ImageWidth", "ImageHeight"):
        if isinstance(raw.get(key), int):
            curated[key] = raw[key]

    color_space = infer_color_space(raw.get("ColorSpace"), data)
    if color_space:
        curated["ColorSpace"] = color_space
    else:
        curated.pop("ColorSpace", None)
    return curated


def extract_curated(
    data: bytes,
    extractor: MetadataExtractor,
    *,
    suffix: str = ".jpg",
    temp_dir: str | Path | None = None,
) -> dict[str, Any]:
    """Write ``data`` to a temporary file, run ``extractor`` on it, and curate.

    The temporary file is removed whether or not extraction succeeds.
    """

    workdir = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir())
    workdir.mkdir(parents=True, exist_ok=True)
    tmp_path = workdir / f"{uuid.uuid4().hex}{suffix}"
    try:
        with open(tmp_path, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        raw = extractor.extract(tmp_path)
    finally:
        tmp_path.unlink(missing_ok=True)

    curated = curate(raw, data)
    LOGGER.debug("metadata_curated", extra={"raw_keys": len(raw), "curated_keys": len(curated)})
    return curated


__all__ = [
    "CURATED_KEYS",
    "MetadataExtractor",
    "ExifToolExtractor",
    "format_exif_datetime",
    "infer_color_space",
    "parse_gps",
    "curate",
    "extract_curated",
]
