"""Temporal gesture event detection.

Turns the per-frame GestureSnapshot stream into debounced, actionable
events:

- pinch → "segment at cursor", throttled to one trigger per interval
- two pinch onsets in quick succession → explosion toggle
- grab → accumulated rotation (wrist-angle or cursor-delta strategy)

One-shot actions are edge-triggered: each is returned on exactly one
update() call and never re-delivered.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from biotwin.classifier import CursorState, GestureSnapshot

logger = logging.getLogger("biotwin.events")

SEGMENT_INTERVAL = 0.5       # seconds between accepted pinch triggers
DOUBLE_PINCH_WINDOW = 0.3    # max seconds between pinch onsets
ANGLE_GAIN = 2.0
MIN_ANGLE_DELTA = 0.01       # radians; smaller deltas are jitter
MAX_ANGLE_DELTA = 1.0        # radians; larger deltas are wrap-around jumps
CURSOR_DAMPENING = 0.1


class RotationMode(Enum):
    ANGLE_DELTA = "angle_delta"
    CURSOR_DELTA = "cursor_delta"


@dataclass
class SegmentAt:
    """Request a segmentation at a normalized cursor position."""
    x: float
    y: float

    def to_dict(self) -> dict:
        return {"type": "segment_at", "x": round(self.x, 4), "y": round(self.y, 4)}


@dataclass
class ToggleExplosion:
    """Toggle the exploded/gathered particle view."""

    def to_dict(self) -> dict:
        return {"type": "toggle_explosion"}


Action = Union[SegmentAt, ToggleExplosion]


@dataclass
class Rotation:
    x: float = 0.0
    y: float = 0.0

    def to_dict(self) -> dict:
        return {"x": round(self.x, 5), "y": round(self.y, 5)}


@dataclass
class GestureEvents:
    """Detector output for one frame."""
    cursor: CursorState
    pinch_active: bool = False
    grab_active: bool = False
    double_pinch_fired: bool = False
    rotation: Rotation = field(default_factory=Rotation)
    actions: list[Action] = field(default_factory=list)
    transitions: list[str] = field(default_factory=list)
    hand_present: bool = False
    timestamp: float = 0.0

    def to_dict(self) -> dict:
        return {
            "cursor": self.cursor.to_dict(),
            "pinching": self.pinch_active,
            "grabbing": self.grab_active,
            "rotation": self.rotation.to_dict(),
            "oneShotActions": [a.to_dict() for a in self.actions],
            "transitions": list(self.transitions),
            "doublePinch": self.double_pinch_fired,
            "handPresent": self.hand_present,
        }


class TemporalGestureEventDetector:
    """Stateful layer over GestureSnapshots, evaluated once per frame.

    Rules are applied in order: pinch throttle, double-pinch toggle,
    grab rotation, idle handling. Accumulated rotation persists across
    grab releases and missing hands until reset_rotation() is called.
    """

    def __init__(
        self,
        segment_interval: float = SEGMENT_INTERVAL,
        double_pinch_window: float = DOUBLE_PINCH_WINDOW,
        rotation_mode: RotationMode = RotationMode.ANGLE_DELTA,
        angle_gain: float = ANGLE_GAIN,
        min_angle_delta: float = MIN_ANGLE_DELTA,
        max_angle_delta: float = MAX_ANGLE_DELTA,
        cursor_dampening: float = CURSOR_DAMPENING,
    ):
        self.segment_interval = segment_interval
        self.double_pinch_window = double_pinch_window
        self.rotation_mode = RotationMode(rotation_mode)
        self.angle_gain = angle_gain
        self.min_angle_delta = min_angle_delta
        self.max_angle_delta = max_angle_delta
        self.cursor_dampening = cursor_dampening
        self.reset()

    def reset(self):
        """Clear all state, including accumulated rotation."""
        self._last_segment_time: Optional[float] = None
        self._last_pinch_onset: Optional[float] = None
        self._pinch_repeat_count = 0
        self._was_pinching = False
        self._was_grabbing = False
        self._last_wrist_angle: Optional[float] = None
        self._grab_anchor: Optional[CursorState] = None
        self._rotation = Rotation()
        self._cursor = CursorState()

    def reset_rotation(self):
        self._rotation = Rotation()
        logger.debug("Rotation reset")

    @property
    def rotation(self) -> Rotation:
        return Rotation(self._rotation.x, self._rotation.y)

    @property
    def pinch_repeat_count(self) -> int:
        return self._pinch_repeat_count

    def update(
        self,
        snapshot: Optional[GestureSnapshot],
        timestamp: Optional[float] = None,
    ) -> GestureEvents:
        """Consume one frame's snapshot and return this frame's events."""
        now = timestamp if timestamp is not None else time.monotonic()

        if snapshot is None or not snapshot.hand_present:
            return self._idle(now)

        self._cursor = snapshot.cursor
        events = GestureEvents(
            cursor=snapshot.cursor,
            pinch_active=snapshot.pinching,
            grab_active=snapshot.grabbing,
            hand_present=True,
            timestamp=now,
        )

        # 1. Throttled segment trigger
        if snapshot.pinching and (
            self._last_segment_time is None
            or now - self._last_segment_time > self.segment_interval
        ):
            self._last_segment_time = now
            events.actions.append(SegmentAt(snapshot.cursor.x, snapshot.cursor.y))

        # 2. Double pinch on onsets
        if snapshot.pinching and not self._was_pinching:
            events.transitions.append("pinch_start")
            if (
                self._last_pinch_onset is not None
                and now - self._last_pinch_onset < self.double_pinch_window
            ):
                self._pinch_repeat_count += 1
            else:
                self._pinch_repeat_count = 1
            self._last_pinch_onset = now

            if self._pinch_repeat_count >= 2:
                self._pinch_repeat_count = 0
                events.double_pinch_fired = True
                events.actions.append(ToggleExplosion())
                logger.debug("Double pinch at %.3f", now)
        elif not snapshot.pinching and self._was_pinching:
            events.transitions.append("pinch_stop")
        self._was_pinching = snapshot.pinching

        # 3. Grab rotation
        if snapshot.grabbing:
            if not self._was_grabbing:
                events.transitions.append("grab_start")
            self._rotate(snapshot)
        elif self._was_grabbing:
            events.transitions.append("grab_stop")
            self._release_grab()
        self._was_grabbing = snapshot.grabbing

        events.rotation = self.rotation
        return events

    def _rotate(self, snapshot: GestureSnapshot):
        if self.rotation_mode is RotationMode.ANGLE_DELTA:
            if self._last_wrist_angle is not None:
                delta = snapshot.wrist_angle - self._last_wrist_angle
                if self.min_angle_delta < abs(delta) < self.max_angle_delta:
                    self._rotation.y += delta * self.angle_gain
            self._last_wrist_angle = snapshot.wrist_angle
        else:
            if self._grab_anchor is not None:
                scale = 2 * math.pi * self.cursor_dampening
                self._rotation.y += (snapshot.cursor.x - self._grab_anchor.x) * scale
                self._rotation.x += (snapshot.cursor.y - self._grab_anchor.y) * scale
            self._grab_anchor = CursorState(snapshot.cursor.x, snapshot.cursor.y)

    def _release_grab(self):
        self._grab_anchor = None
        self._last_wrist_angle = None

    def _idle(self, now: float) -> GestureEvents:
        events = GestureEvents(cursor=self._cursor, timestamp=now)
        if self._was_pinching:
            events.transitions.append("pinch_stop")
        if self._was_grabbing:
            events.transitions.append("grab_stop")
            self._release_grab()
        self._was_pinching = False
        self._was_grabbing = False
        events.rotation = self.rotation
        return events
