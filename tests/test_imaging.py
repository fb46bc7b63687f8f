from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from photo_ingest.config import PipelineConfig
from photo_ingest.errors import MalformedInputError
from photo_ingest.hasher import content_hash, hamming_distance, perceptual_hash
from photo_ingest.imaging import (
    bitmap_to_jpeg,
    build_preview,
    encode_webp,
    heic_quality,
    is_bitmap,
    is_heif,
    jpeg_sibling_key,
    read_geometry,
    thumbnail_quality,
)


def test_read_geometry_reports_size_and_format(make_image) -> None:
    geometry = read_geometry(make_image(640, 480))

    assert (geometry.width, geometry.height, geometry.format) == (640, 480, "jpeg")
    assert geometry.aspect_ratio == pytest.approx(640 / 480)


@pytest.mark.parametrize("orientation", [5, 6, 7, 8])
def test_rotated_orientations_swap_dimensions(make_image, orientation: int) -> None:
    geometry = read_geometry(make_image(400, 200, orientation=orientation))

    assert (geometry.width, geometry.height) == (200, 400)
    assert geometry.orientation == orientation


@pytest.mark.parametrize("orientation", [1, 2, 3, 4])
def test_upright_orientations_keep_dimensions(make_image, orientation: int) -> None:
    geometry = read_geometry(make_image(400, 200, orientation=orientation))
    assert (geometry.width, geometry.height) == (400, 200)


def test_read_geometry_rejects_garbage() -> None:
    with pytest.raises(MalformedInputError):
        read_geometry(b"definitely not an image")


def test_oversized_image_is_malformed(make_image, monkeypatch) -> None:
    data = make_image(100, 100)
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)

    with pytest.raises(MalformedInputError):
        read_geometry(data)


def test_preview_is_never_upscaled(make_image) -> None:
    preview = build_preview(make_image(300, 200), 600)
    assert preview.size == (300, 200)


def test_preview_shrinks_to_width_and_keeps_aspect(make_image) -> None:
    preview = build_preview(make_image(1800, 1200), 600)
    assert preview.size == (600, 400)


def test_preview_applies_orientation(make_image) -> None:
    preview = build_preview(make_image(2400, 1200, orientation=6), 600)
    assert preview.size == (600, 1200)


def test_webp_encoding_round_trips_size(make_image) -> None:
    data = encode_webp(build_preview(make_image(900, 300), 600), quality=80)

    with Image.open(io.BytesIO(data)) as image:
        assert image.format == "WEBP"
        assert image.size == (600, 200)


def test_bitmap_is_detected_and_converted(make_image) -> None:
    bitmap = make_image(50, 40, fmt="BMP")
    assert is_bitmap(bitmap)
    assert not is_bitmap(make_image(50, 40))

    jpeg = bitmap_to_jpeg(bitmap)

    assert jpeg[:2] == b"\xff\xd8"
    assert read_geometry(jpeg).width == 50


def test_heif_detection_by_extension_and_brand() -> None:
    assert is_heif(b"", "uploads/IMG_0001.HEIC")
    assert is_heif(b"", "uploads/IMG_0001.hif")
    assert is_heif(b"\x00\x00\x00\x18ftypheic\x00\x00\x00\x00")
    assert not is_heif(b"\x00\x00\x00\x18ftypqt  \x00\x00\x00\x00", "clip.mov")


def test_quality_tiers() -> None:
    cfg = PipelineConfig()

    assert heic_quality(1024, cfg) == 95
    assert heic_quality(10 * 1024 * 1024 + 1, cfg) == 80
    assert thumbnail_quality(1000 * 1000, cfg) == cfg.thumbnail_quality
    assert thumbnail_quality(8000 * 6000, cfg) == cfg.thumbnail_quality_large


def test_jpeg_sibling_sits_next_to_original() -> None:
    assert jpeg_sibling_key("photos/trip/IMG_1.HEIC") == "photos/trip/IMG_1.jpeg"
    assert jpeg_sibling_key("IMG_2.heif") == "IMG_2.jpeg"


def _texture(offset: int = 0) -> Image.Image:
    rng = np.random.default_rng(7)
    pixels = rng.integers(20, 230, size=(128, 128)).astype(np.int16) + offset
    return Image.fromarray(pixels.clip(0, 255).astype(np.uint8)).convert("RGB")


def test_perceptual_hash_is_stable_and_compact() -> None:
    first = perceptual_hash(_texture())
    second = perceptual_hash(_texture())

    assert first == second
    assert len(first) == 16
    int(first, 16)


def test_similar_images_have_close_hashes() -> None:
    base = perceptual_hash(_texture())
    brighter = perceptual_hash(_texture(offset=4))
    flipped = perceptual_hash(_texture().transpose(Image.Transpose.ROTATE_90))

    assert hamming_distance(base, brighter) <= 6
    assert hamming_distance(base, flipped) > hamming_distance(base, brighter)


def test_content_hash_is_deterministic() -> None:
    assert content_hash(b"abc") == content_hash(b"abc")
    assert content_hash(b"abc") != content_hash(b"abd")
    assert len(content_hash(b"")) == 16
