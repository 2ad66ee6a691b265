"""Mask → particle cloud sampling, plus the explode/gather animation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from biotwin.mask import THRESHOLD_FRACTION, MaskStats, analyze_mask

PARTICLE_STRIDE = 8
PARTICLE_EXTENT = 3.0   # points land in [-extent, extent]
PARTICLE_JITTER = 0.25  # z in [-jitter, jitter)

EXPLODE_RATE = 2.0
GATHER_RATE = 3.0
EXPLODE_SPREAD = 3.0


@dataclass
class ParticleCloud:
    """Flat set of 3D particles and the positions they relax back to."""
    positions: np.ndarray
    original_positions: Optional[np.ndarray] = None

    def __post_init__(self):
        self.positions = np.asarray(self.positions, dtype=np.float32).reshape(-1, 3)
        if self.original_positions is None:
            self.original_positions = self.positions.copy()
        else:
            self.original_positions = np.array(
                self.original_positions, dtype=np.float32
            ).reshape(-1, 3)
        self.original_positions.setflags(write=False)

    def __len__(self) -> int:
        return len(self.positions)

    @classmethod
    def empty(cls) -> ParticleCloud:
        return cls(np.zeros((0, 3), dtype=np.float32))

    def flat(self) -> np.ndarray:
        """Positions as a flat float32 array of length n * 3."""
        return self.positions.reshape(-1)

    def to_list(self, digits: int = 4) -> list[float]:
        return [round(float(v), digits) for v in self.flat()]

    def step(
        self,
        delta: float,
        exploded: bool,
        rng: Optional[np.random.Generator] = None,
    ):
        """Advance the explode/gather animation by `delta` seconds.

        While exploded, particles drift towards a scattered target around
        `spread x origin`; otherwise they relax back to their original
        positions.
        """
        if len(self.positions) == 0 or delta <= 0:
            return

        if exploded:
            rng = rng or np.random.default_rng()
            origin = self.original_positions
            noise = rng.random(origin.shape, dtype=np.float32) - 0.5
            target = np.empty_like(origin)
            target[:, :2] = origin[:, :2] * EXPLODE_SPREAD + noise[:, :2] * 2.0
            target[:, 2] = origin[:, 2] + noise[:, 2] * 5.0
            rate = min(1.0, delta * EXPLODE_RATE)
        else:
            target = self.original_positions
            rate = min(1.0, delta * GATHER_RATE)

        self.positions += (target - self.positions) * rate


class ParticleSampler:
    """Regular-grid sampling of a mask into a particle cloud.

    Every `stride`-th row and column whose value exceeds the fractional
    threshold emits one particle; x/y map into [-extent, extent] with the
    vertical axis flipped, z gets cosmetic random jitter. Output follows
    raster (row-major) order.
    """

    def __init__(
        self,
        stride: int = PARTICLE_STRIDE,
        extent: float = PARTICLE_EXTENT,
        jitter: float = PARTICLE_JITTER,
        threshold_fraction: float = THRESHOLD_FRACTION,
    ):
        if stride < 1:
            raise ValueError("stride must be >= 1")
        self.stride = stride
        self.extent = extent
        self.jitter = jitter
        self.threshold_fraction = threshold_fraction

    def sample(
        self,
        mask: np.ndarray,
        stats: Optional[MaskStats] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> ParticleCloud:
        mask = np.asarray(mask, dtype=np.float32)
        if mask.ndim != 2 or mask.size == 0:
            return ParticleCloud.empty()

        stats = stats or analyze_mask(mask)
        threshold = stats.threshold(self.threshold_fraction)
        height, width = mask.shape

        rows, cols = np.nonzero(mask[:: self.stride, :: self.stride] > threshold)
        if rows.size == 0:
            return ParticleCloud.empty()

        ys = rows.astype(np.float32) * self.stride
        xs = cols.astype(np.float32) * self.stride

        rng = rng or np.random.default_rng()
        positions = np.empty((rows.size, 3), dtype=np.float32)
        positions[:, 0] = (xs / width - 0.5) * 2 * self.extent
        positions[:, 1] = (0.5 - ys / height) * 2 * self.extent
        positions[:, 2] = (rng.random(rows.size, dtype=np.float32) - 0.5) * 2 * self.jitter

        return ParticleCloud(positions)
