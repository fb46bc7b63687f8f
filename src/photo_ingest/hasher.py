"""Content digests for uploaded bytes and perceptual hashes for previews."""

from __future__ import annotations

from typing import Final

import numpy as np
import xxhash
from PIL import Image
from PIL.Image import Resampling

CONTENT_HASH_ALGO: Final[str] = "xxhash64-v1"
PHASH_ALGO: Final[str] = "phash64-v2"

_SAMPLE_SIZE: Final[int] = 32
_LOW_FREQ_SIZE: Final[int] = 8
_DCT_CACHE: dict[int, np.ndarray] = {}


def _dct_matrix(size: int) -> np.ndarray:
    """Orthonormal DCT-II basis, cached per size."""

    cached = _DCT_CACHE.get(size)
    if cached is not None:
        return cached

    n = np.arange(size, dtype=np.float64)
    basis = np.cos((2.0 * n[None, :] + 1.0) * n[:, None] * np.pi / (2.0 * size))
    basis[0, :] *= np.sqrt(1.0 / size)
    basis[1:, :] *= np.sqrt(2.0 / size)
    _DCT_CACHE[size] = basis
    return basis


def content_hash(data: bytes) -> str:
    """64-bit xxhash of raw object bytes as 16 lowercase hex characters."""

    return f"{xxhash.xxh64(data).intdigest():016x}"


def perceptual_hash(image: Image.Image) -> str:
    """Return a 64-bit DCT perceptual hash of ``image`` as 16 hex characters.

    The image is reduced to a 32×32 grayscale sample, transformed with a 2D
    DCT, and the 8×8 low-frequency block is thresholded against its median.
    Equal pixels always give equal hashes; visually similar images differ in
    few bits.
    """

    sample = image.convert("L").resize((_SAMPLE_SIZE, _SAMPLE_SIZE), resample=Resampling.LANCZOS)
    pixels = np.asarray(sample, dtype=np.float64)

    basis = _dct_matrix(_SAMPLE_SIZE)
    coefficients = basis @ pixels @ basis.T
    block = coefficients[:_LOW_FREQ_SIZE, :_LOW_FREQ_SIZE]

    bits = (block > np.median(block)).flatten()
    value = 0
    for bit in bits:
        value = (value << 1) | int(bit)
    return f"{value:016x}"


def hamming_distance(a_hex: str, b_hex: str) -> int:
    """Number of differing bits between two hashes produced by :func:`perceptual_hash`."""

    return (int(a_hex, 16) ^ int(b_hex, 16)).bit_count()


__all__ = ["CONTENT_HASH_ALGO", "PHASH_ALGO", "content_hash", "perceptual_hash", "hamming_distance"]
