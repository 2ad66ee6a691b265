"""Stage timing for the gesture and geometry pipelines.

Both pipelines run once per camera frame, so every stage is
timed with perf_counter and summarized over a rolling window.
"""

from __future__ import annotations

import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator


@dataclass
class StageStats:
    """Timing statistics for one stage over the rolling window."""
    name: str
    avg_ms: float
    min_ms: float
    max_ms: float
    p95_ms: float
    call_count: int

    def to_dict(self) -> dict:
        return {
            "avg_ms": round(self.avg_ms, 3),
            "min_ms": round(self.min_ms, 3),
            "max_ms": round(self.max_ms, 3),
            "p95_ms": round(self.p95_ms, 3),
            "calls": self.call_count,
        }


class PipelineProfiler:
    """Rolling per-stage timings.

    Usage:
        profiler = PipelineProfiler()

        with profiler.stage("classification"):
            snapshot = classifier.classify_hands(hands)

        print(profiler.summary())
    """

    GESTURE_STAGES = ("classification", "event_detection", "dispatch")
    GEOMETRY_STAGES = (
        "mask_analysis",
        "contour_tracing",
        "simplification",
        "particle_sampling",
    )
    INFERENCE_STAGES = ("encode", "decode")

    def __init__(self, window_size: int = 120, enabled: bool = True):
        self._window_size = window_size
        self._timings: dict[str, deque[float]] = {}
        self._counts: dict[str, int] = {}
        for name in self.GESTURE_STAGES + self.GEOMETRY_STAGES + self.INFERENCE_STAGES:
            self._register(name)
        self.enabled = enabled

    def _register(self, name: str):
        self._timings[name] = deque(maxlen=self._window_size)
        self._counts[name] = 0

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Time the enclosed block under `name`."""
        if not self.enabled:
            yield
            return

        if name not in self._timings:
            self._register(name)

        t0 = time.perf_counter()
        try:
            yield
        finally:
            self._timings[name].append((time.perf_counter() - t0) * 1000.0)
            self._counts[name] += 1

    def get_stage_stats(self, name: str) -> StageStats | None:
        timings = self._timings.get(name)
        if not timings:
            return None

        ordered = sorted(timings)
        n = len(ordered)
        return StageStats(
            name=name,
            avg_ms=sum(ordered) / n,
            min_ms=ordered[0],
            max_ms=ordered[-1],
            p95_ms=ordered[int(n * 0.95)] if n >= 2 else ordered[-1],
            call_count=self._counts[name],
        )

    def summary(self) -> dict[str, dict]:
        """Stats for every stage that has been timed at least once."""
        result = {}
        for name in self._timings:
            stats = self.get_stage_stats(name)
            if stats is not None:
                result[name] = stats.to_dict()
        return result

    def reset(self):
        for timings in self._timings.values():
            timings.clear()
        for name in self._counts:
            self._counts[name] = 0
