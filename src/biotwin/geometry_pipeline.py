"""Mask → renderable geometry: simplified contour shapes and a particle cloud."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from biotwin.config import GeometryConfig
from biotwin.contours import ContourSimplifier, ContourTracer
from biotwin.geometry import Contour
from biotwin.mask import MaskStats, analyze_mask, find_mask_bounds
from biotwin.particles import ParticleCloud, ParticleSampler
from biotwin.profiler import PipelineProfiler

logger = logging.getLogger("biotwin.geometry")


@dataclass
class GeometryResult:
    """Shapes and particles for one decoded mask."""
    shapes: list[Contour] = field(default_factory=list)
    particles: ParticleCloud = field(default_factory=ParticleCloud.empty)
    stats: Optional[MaskStats] = None
    version: int = 0

    def to_dict(self) -> dict:
        return {
            "shapes": [c.to_list() for c in self.shapes],
            "particles": self.particles.to_list(),
            "particle_count": len(self.particles),
            "stats": self.stats.to_dict() if self.stats else None,
            "version": self.version,
        }


class GeometryPipeline:
    """Runs MaskAnalyzer, then ContourTracer → ContourSimplifier and
    ParticleSampler over the same statistics.

    Masks with too few positive pixels or a too-small thresholded region
    produce no shapes rather than degenerate polygons.
    """

    def __init__(
        self,
        config: Optional[GeometryConfig] = None,
        profiler: Optional[PipelineProfiler] = None,
    ):
        self.config = config or GeometryConfig()
        self.profiler = profiler or PipelineProfiler(enabled=False)
        self.tracer = ContourTracer(
            stride=self.config.trace_stride,
            max_steps=self.config.max_trace_steps,
            min_closing_points=self.config.min_closing_points,
            min_points=self.config.min_contour_points,
        )
        self.simplifier = ContourSimplifier(self.config.simplify_tolerance)
        self.sampler = ParticleSampler(
            stride=self.config.particle_stride,
            extent=self.config.particle_extent,
            jitter=self.config.particle_jitter,
            threshold_fraction=self.config.threshold_fraction,
        )

    def run(
        self,
        mask: np.ndarray,
        rng: Optional[np.random.Generator] = None,
        version: int = 0,
    ) -> GeometryResult:
        with self.profiler.stage("mask_analysis"):
            stats = analyze_mask(mask)

        shapes = self.mask_to_shapes(mask, stats)
        particles = self.mask_to_particles(mask, stats, rng)

        logger.debug(
            "Geometry v%d: %d shapes, %d particles (%s)",
            version, len(shapes), len(particles), stats,
        )
        return GeometryResult(shapes=shapes, particles=particles, stats=stats, version=version)

    def mask_to_shapes(self, mask: np.ndarray, stats: Optional[MaskStats] = None) -> list[Contour]:
        stats = stats or analyze_mask(mask)

        if stats.positive_count < self.config.min_positive_pixels:
            logger.info(
                "Not enough positive pixels for shapes (%d < %d)",
                stats.positive_count, self.config.min_positive_pixels,
            )
            return []

        threshold = stats.threshold(self.config.threshold_fraction)
        bounds = find_mask_bounds(mask, threshold)
        if (
            bounds is None
            or bounds.width < self.config.min_region_size
            or bounds.height < self.config.min_region_size
        ):
            logger.info("Mask area too small for shapes: %s", bounds)
            return []

        with self.profiler.stage("contour_tracing"):
            contours = self.tracer.trace(mask, threshold)

        with self.profiler.stage("simplification"):
            return self.simplifier.simplify_all(contours)

    def mask_to_particles(
        self,
        mask: np.ndarray,
        stats: Optional[MaskStats] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> ParticleCloud:
        with self.profiler.stage("particle_sampling"):
            return self.sampler.sample(mask, stats, rng)
