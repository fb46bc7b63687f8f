"""Pillow helpers for container normalization, geometry, and previews."""

from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import PurePosixPath

from PIL import Image, ImageOps, UnidentifiedImageError
from PIL.Image import Resampling
from pillow_heif import register_heif_opener

from utils.logging import get_logger
from photo_ingest.config import PipelineConfig
from photo_ingest.errors import MalformedInputError, TransientResourceError

LOGGER = get_logger(__name__, extra={"component": "imaging"})

register_heif_opener()

HEIC_EXTENSIONS: frozenset[str] = frozenset({".heic", ".heif", ".hif"})
_HEIF_BRANDS: frozenset[bytes] = frozenset({b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"mif1", b"msf1"})
_EXIF_ORIENTATION_TAG = 0x0112
_ROTATED_ORIENTATIONS: frozenset[int] = frozenset({5, 6, 7, 8})


@dataclass(frozen=True)
class Geometry:
    """Display-oriented dimensions plus the decoder-reported format."""

    width: int
    height: int
    format: str
    orientation: int | None = None

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height


def is_bitmap(data: bytes) -> bool:
    return data[:2] == b"BM"


def is_heif(data: bytes, key: str | None = None) -> bool:
    """True for HEIF containers, by extension or by the ``ftyp`` major brand."""

    if key is not None and PurePosixPath(key).suffix.lower() in HEIC_EXTENSIONS:
        return True
    return len(data) >= 12 and data[4:8] == b"ftyp" and data[8:12] in _HEIF_BRANDS


def _open(data: bytes) -> Image.Image:
    """Open and fully decode ``data``, translating Pillow errors into the task taxonomy."""

    try:
        image = Image.open(io.BytesIO(data))
        image.load()
        return image
    except MemoryError as exc:
        raise TransientResourceError(f"out of memory while decoding image: {exc}") from exc
    except Image.DecompressionBombError as exc:
        raise MalformedInputError(str(exc)) from exc
    except (UnidentifiedImageError, SyntaxError, ValueError) as exc:
        raise MalformedInputError(f"unreadable image data: {exc}") from exc
    except OSError as exc:
        raise MalformedInputError(f"truncated or corrupt image: {exc}") from exc


def _encode_jpeg(image: Image.Image, quality: int, exif: bytes | None = None) -> bytes:
    if image.mode not in {"RGB", "L"}:
        image = image.convert("RGB")
    buffer = io.BytesIO()
    save_kwargs: dict[str, object] = {"format": "JPEG", "quality": quality}
    if exif:
        save_kwargs["exif"] = exif
    try:
        image.save(buffer, **save_kwargs)
    except MemoryError as exc:
        raise TransientResourceError(f"out of memory while encoding JPEG: {exc}") from exc
    return buffer.getvalue()


def heic_quality(size_bytes: int, cfg: PipelineConfig) -> int:
    """Lower the transcode quality for very large HEIC inputs."""

    if size_bytes > cfg.heic_large_threshold_bytes:
        return cfg.heic_quality_large
    return cfg.heic_quality


def transcode_heif_to_jpeg(data: bytes, quality: int) -> bytes:
    """Decode a HEIF/HEIC container and re-encode it as JPEG, keeping EXIF."""

    image = _open(data)
    exif = image.info.get("exif")
    jpeg = _encode_jpeg(image, quality, exif=exif if isinstance(exif, bytes) else None)
    LOGGER.info("heif_transcoded", extra={"input_bytes": len(data), "output_bytes": len(jpeg), "quality": quality})
    return jpeg


def bitmap_to_jpeg(data: bytes, quality: int = 95) -> bytes:
    """Decode a legacy BMP and re-encode it as JPEG."""

    image = _open(data)
    if image.mode not in {"RGB", "RGBA", "L", "P"}:
        raise MalformedInputError(f"unsupported bitmap mode: {image.mode}")
    return _encode_jpeg(image, quality)


def jpeg_sibling_key(key: str) -> str:
    """Key of the broadly-compatible JPEG copy stored next to a HEIC original."""

    path = PurePosixPath(key)
    return str(path.with_name(f"{path.stem}.jpeg"))


def read_geometry(data: bytes) -> Geometry:
    """Read width, height and format, swapping sides for 90°-rotated captures.

    Raises:
        TransientResourceError: when the decoder returns incomplete metadata.
        MalformedInputError: when the bytes are not a decodable image.
    """

    try:
        image = Image.open(io.BytesIO(data))
    except MemoryError as exc:
        raise TransientResourceError(f"out of memory while reading header: {exc}") from exc
    except Image.DecompressionBombError as exc:
        raise MalformedInputError(str(exc)) from exc
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise MalformedInputError(f"unreadable image header: {exc}") from exc

    width, height = image.size
    fmt = image.format
    if not width or not height or not fmt:
        raise TransientResourceError(
            f"incomplete image metadata (width={width}, height={height}, format={fmt})"
        )

    orientation = image.getexif().get(_EXIF_ORIENTATION_TAG)
    if isinstance(orientation, int) and orientation in _ROTATED_ORIENTATIONS:
        width, height = height, width

    return Geometry(
        width=int(width),
        height=int(height),
        format=fmt.lower(),
        orientation=orientation if isinstance(orientation, int) else None,
    )


def thumbnail_quality(source_pixels: int, cfg: PipelineConfig) -> int:
    if source_pixels > cfg.thumbnail_large_source_pixels:
        return cfg.thumbnail_quality_large
    return cfg.thumbnail_quality


def build_preview(data: bytes, max_width: int) -> Image.Image:
    """Decode, apply EXIF orientation, and shrink to ``max_width`` without upscaling."""

    image = ImageOps.exif_transpose(_open(data))
    if image.mode not in {"RGB", "RGBA"}:
        image = image.convert("RGBA" if "A" in image.getbands() else "RGB")

    safe_width = max(1, int(max_width))
    if image.width > safe_width:
        height = max(1, round(image.height * safe_width / image.width))
        image = image.resize((safe_width, height), resample=Resampling.LANCZOS)
    return image


def encode_webp(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    try:
        image.save(buffer, format="WEBP", quality=quality, method=4)
    except MemoryError as exc:
        raise TransientResourceError(f"out of memory while encoding preview: {exc}") from exc
    return buffer.getvalue()


__all__ = [
    "Geometry",
    "HEIC_EXTENSIONS",
    "is_bitmap",
    "is_heif",
    "heic_quality",
    "transcode_heif_to_jpeg",
    "bitmap_to_jpeg",
    "jpeg_sibling_key",
    "read_geometry",
    "thumbnail_quality",
    "build_preview",
    "encode_webp",
]
