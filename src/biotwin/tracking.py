"""Per-frame hand tracking loop: landmarks → snapshot → events → callbacks."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import numpy as np

from biotwin.classifier import GestureSnapshot, LandmarkGestureClassifier
from biotwin.events import GestureEvents, SegmentAt, TemporalGestureEventDetector
from biotwin.metrics import MetricsCollector
from biotwin.profiler import PipelineProfiler

logger = logging.getLogger("biotwin.tracking")


class CallbackSlot:
    """Mutable single-slot holder for a callback.

    Long-lived loops call through the slot, so replacing the callback
    takes effect on the next invocation without re-subscribing.
    """

    def __init__(self, callback: Optional[Callable[..., Any]] = None):
        self._callback = callback

    def set(self, callback: Optional[Callable[..., Any]]):
        self._callback = callback

    @property
    def callback(self) -> Optional[Callable[..., Any]]:
        return self._callback

    def __call__(self, *args, **kwargs):
        callback = self._callback
        if callback is None:
            return None
        return callback(*args, **kwargs)


@dataclass
class TrackingStats:
    """Runtime statistics of the tracking loop."""
    fps: float
    avg_latency_ms: float
    total_frames: int
    frames_with_hand: int
    total_actions: int
    profiler_summary: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "fps": round(self.fps, 1),
            "avg_latency_ms": round(self.avg_latency_ms, 3),
            "total_frames": self.total_frames,
            "frames_with_hand": self.frames_with_hand,
            "total_actions": self.total_actions,
            "profiler": self.profiler_summary,
        }


class HandTrackingLoop:
    """Drives classification and event detection once per frame.

    Handlers (all optional, replaceable at any time via set_handlers):
        on_cursor_move(x, y):       every frame with a hand
        on_pinch(active, x, y):     every frame with a hand
        on_grab(active):            every frame with a hand
        on_action(action):          once per fired one-shot action
        on_frame(events):           every frame
    """

    HANDLERS = ("on_cursor_move", "on_pinch", "on_grab", "on_action", "on_frame")

    def __init__(
        self,
        classifier: Optional[LandmarkGestureClassifier] = None,
        detector: Optional[TemporalGestureEventDetector] = None,
        provider: Optional[Any] = None,
        profiler: Optional[PipelineProfiler] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.classifier = classifier or LandmarkGestureClassifier()
        self.detector = detector or TemporalGestureEventDetector()
        self.provider = provider
        self.profiler = profiler or PipelineProfiler()
        self.metrics = metrics

        self._slots = {name: CallbackSlot() for name in self.HANDLERS}
        self._frame_times: deque = deque(maxlen=60)
        self._total_frames = 0
        self._frames_with_hand = 0
        self._total_actions = 0
        self._last_events: Optional[GestureEvents] = None

    def set_handlers(self, **callbacks: Optional[Callable[..., Any]]):
        """Replace one or more handlers; omitted handlers are left untouched."""
        for name, callback in callbacks.items():
            if name not in self._slots:
                raise ValueError(f"Unknown handler: {name}")
            self._slots[name].set(callback)

    def process_hands(
        self,
        hands: Sequence[Any],
        timestamp: Optional[float] = None,
    ) -> GestureEvents:
        """Run one frame of provider output (0, 1 or 2 hands)."""
        t_start = time.perf_counter()
        now = timestamp if timestamp is not None else time.monotonic()
        self._total_frames += 1

        with self.profiler.stage("classification"):
            snapshot: GestureSnapshot = self.classifier.classify_hands(hands)

        with self.profiler.stage("event_detection"):
            events = self.detector.update(snapshot, now)

        with self.profiler.stage("dispatch"):
            self._dispatch(events)

        if events.hand_present:
            self._frames_with_hand += 1
        self._total_actions += len(events.actions)
        self._last_events = events

        latency = time.perf_counter() - t_start
        self._frame_times.append(latency)
        if self.metrics is not None:
            self.metrics.record_frame(latency, self.classifier.count_valid(hands))
            for action in events.actions:
                self.metrics.record_action(action.to_dict()["type"])

        return events

    def process_frame(self, frame_rgb: np.ndarray, timestamp: Optional[float] = None) -> GestureEvents:
        """Pull landmarks for an RGB frame from the provider, then process them."""
        if self.provider is None:
            raise RuntimeError("No landmark provider configured")
        return self.process_hands(self.provider.detect(frame_rgb), timestamp)

    def _dispatch(self, events: GestureEvents):
        slots = self._slots
        if events.hand_present:
            cursor = events.cursor
            slots["on_cursor_move"](cursor.x, cursor.y)
            slots["on_pinch"](events.pinch_active, cursor.x, cursor.y)
            slots["on_grab"](events.grab_active)

        for action in events.actions:
            if isinstance(action, SegmentAt):
                logger.debug("Segment request at (%.3f, %.3f)", action.x, action.y)
            slots["on_action"](action)

        slots["on_frame"](events)

    @property
    def last_events(self) -> Optional[GestureEvents]:
        return self._last_events

    @property
    def stats(self) -> TrackingStats:
        if self._frame_times:
            avg = sum(self._frame_times) / len(self._frame_times)
            fps = 1.0 / avg if avg > 0 else 0.0
        else:
            avg = 0.0
            fps = 0.0

        return TrackingStats(
            fps=fps,
            avg_latency_ms=avg * 1000,
            total_frames=self._total_frames,
            frames_with_hand=self._frames_with_hand,
            total_actions=self._total_actions,
            profiler_summary=self.profiler.summary(),
        )

    def reset(self):
        """Clear detector state and counters."""
        self.detector.reset()
        self._frame_times.clear()
        self._total_frames = 0
        self._frames_with_hand = 0
        self._total_actions = 0
        self._last_events = None
        self.profiler.reset()
