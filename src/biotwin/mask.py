"""Mask analysis: statistics, thresholds and normalization.

A mask is a 2D float32 grid (height, width) of confidence values as
returned by the decoder. Values are not guaranteed to lie in [0, 1]
(SAM decoders return logits), so thresholds are derived as a fraction
of the observed range instead of a fixed absolute cut.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

THRESHOLD_FRACTION = 0.3
RANGE_EPSILON = 1e-12


def as_mask(
    data,
    width: Optional[int] = None,
    height: Optional[int] = None,
) -> np.ndarray:
    """Build a (height, width) float32 mask.

    Accepts a 2D array as-is, or a flat row-major buffer together with
    its dimensions.
    """
    arr = np.asarray(data, dtype=np.float32)

    if width is None or height is None:
        if arr.ndim != 2:
            raise ValueError(
                f"Expected a 2D mask or explicit dimensions, got shape {arr.shape}"
            )
        return arr

    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid mask dimensions {width}x{height}")
    if arr.size != width * height:
        raise ValueError(
            f"Mask has {arr.size} values, expected {width}x{height}={width * height}"
        )
    return arr.reshape(height, width)


def mask_from_decoder(masks: np.ndarray) -> np.ndarray:
    """Return the first mask of a decoder output.

    Handles (1, N, H, W), (N, H, W) and (H, W) layouts.
    """
    arr = np.asarray(masks, dtype=np.float32)
    while arr.ndim > 2:
        arr = arr[0]
    if arr.ndim != 2:
        raise ValueError(f"Decoder output has unexpected shape {np.shape(masks)}")
    return arr


@dataclass
class MaskStats:
    min: float
    max: float
    positive_count: int
    total: int

    @property
    def range(self) -> float:
        """max - min, or 1.0 when the mask is (nearly) flat."""
        span = self.max - self.min
        return span if abs(span) > RANGE_EPSILON else 1.0

    def threshold(self, fraction: float = THRESHOLD_FRACTION) -> float:
        return self.min + (self.max - self.min) * fraction

    def to_dict(self) -> dict:
        return {
            "min": self.min,
            "max": self.max,
            "positive_count": self.positive_count,
            "total": self.total,
        }


@dataclass
class MaskBounds:
    """Inclusive pixel bounding box of above-threshold values."""
    min_x: int
    max_x: int
    min_y: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x

    @property
    def height(self) -> int:
        return self.max_y - self.min_y


def analyze_mask(mask: np.ndarray) -> MaskStats:
    """Min, max and count of strictly positive values over the mask."""
    values = np.asarray(mask, dtype=np.float32).ravel()
    if values.size == 0:
        return MaskStats(min=0.0, max=0.0, positive_count=0, total=0)

    return MaskStats(
        min=float(values.min()),
        max=float(values.max()),
        positive_count=int(np.count_nonzero(values > 0)),
        total=int(values.size),
    )


def binarize(mask: np.ndarray, threshold: float) -> np.ndarray:
    return np.asarray(mask) > threshold


def find_mask_bounds(mask: np.ndarray, threshold: float = 0.0) -> Optional[MaskBounds]:
    """Bounding box of cells above threshold, or None if there are none."""
    rows, cols = np.nonzero(binarize(mask, threshold))
    if rows.size == 0:
        return None
    return MaskBounds(
        min_x=int(cols.min()),
        max_x=int(cols.max()),
        min_y=int(rows.min()),
        max_y=int(rows.max()),
    )


def normalize_mask(mask: np.ndarray, stats: Optional[MaskStats] = None) -> np.ndarray:
    """Rescale mask values to [0, 1] using the observed range."""
    stats = stats or analyze_mask(mask)
    normalized = (np.asarray(mask, dtype=np.float32) - stats.min) / stats.range
    return np.clip(normalized, 0.0, 1.0)


def mask_to_rgba(mask: np.ndarray, stats: Optional[MaskStats] = None) -> np.ndarray:
    """White RGBA image whose alpha channel is the normalized mask.

    Used by renderers as an alpha map over the source image.
    """
    alpha = (normalize_mask(mask, stats) * 255).astype(np.uint8)
    rgba = np.full(alpha.shape + (4,), 255, dtype=np.uint8)
    rgba[..., 3] = alpha
    return rgba
