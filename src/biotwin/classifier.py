"""Per-frame gesture classification from hand landmarks.

The classifier is a pure function of one frame: it has no memory, and
maps the first detected hand to a GestureSnapshot (cursor, pinch, grab,
wrist angle). Temporal behaviour lives in biotwin.events.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import numpy as np

from biotwin.geometry import angle_between, distance
from biotwin.provider import HandLandmark

logger = logging.getLogger("biotwin.classifier")

PINCH_THRESHOLD = 0.05
GRAB_THRESHOLD = 0.15


@dataclass
class CursorState:
    """Normalized cursor position in [0, 1] image space."""
    x: float = 0.5
    y: float = 0.5

    def to_dict(self) -> dict:
        return {"x": round(self.x, 4), "y": round(self.y, 4)}


@dataclass
class GestureSnapshot:
    """Gesture state derived from a single frame."""
    cursor: CursorState = field(default_factory=CursorState)
    pinching: bool = False
    grabbing: bool = False
    wrist_angle: float = 0.0
    hand_present: bool = True

    @classmethod
    def idle(cls, cursor: Optional[CursorState] = None) -> GestureSnapshot:
        """Neutral snapshot used when no (valid) hand is in the frame."""
        return cls(cursor=cursor or CursorState(), hand_present=False)


def _as_landmark_array(landmarks: Any) -> Optional[np.ndarray]:
    """Coerce provider output into an (N, 2+) float array, or None."""
    if landmarks is None:
        return None

    try:
        if isinstance(landmarks, np.ndarray):
            arr = landmarks.astype(np.float32, copy=False)
        elif len(landmarks) > 0 and isinstance(landmarks[0], Mapping):
            arr = np.array(
                [[p["x"], p["y"], p.get("z", 0.0)] for p in landmarks],
                dtype=np.float32,
            )
        elif len(landmarks) > 0 and hasattr(landmarks[0], "x"):
            arr = np.array(
                [[lm.x, lm.y, getattr(lm, "z", 0.0)] for lm in landmarks],
                dtype=np.float32,
            )
        else:
            arr = np.asarray(landmarks, dtype=np.float32)
    except (KeyError, TypeError, ValueError):
        return None

    if arr.ndim != 2 or arr.shape[0] < HandLandmark.COUNT or arr.shape[1] < 2:
        return None
    return arr


class LandmarkGestureClassifier:
    """Maps one hand's 21 landmarks to a GestureSnapshot.

    - Cursor: index fingertip; horizontal axis inverted when the camera
      feed is mirrored so motion matches the user's physical direction.
    - Pinch: index tip to thumb tip closer than `pinch_threshold`.
    - Grab: every fingertip closer than `grab_threshold` to the wrist.
    - Wrist angle: atan2 from the index base to the pinky base (hand roll).

    Distances are measured in the image plane, in normalized units.
    """

    def __init__(
        self,
        mirrored: bool = True,
        pinch_threshold: float = PINCH_THRESHOLD,
        grab_threshold: float = GRAB_THRESHOLD,
    ):
        self.mirrored = mirrored
        self.pinch_threshold = pinch_threshold
        self.grab_threshold = grab_threshold

    def classify(self, landmarks: Any) -> GestureSnapshot:
        """Classify one hand. Malformed or short input yields an idle snapshot."""
        lm = _as_landmark_array(landmarks)
        if lm is None:
            logger.debug("Rejected landmark input; treating frame as no-hand")
            return GestureSnapshot.idle()

        index_tip = lm[HandLandmark.INDEX_TIP]
        thumb_tip = lm[HandLandmark.THUMB_TIP]

        cursor_x = float(index_tip[0])
        if self.mirrored:
            cursor_x = 1.0 - cursor_x
        cursor = CursorState(x=cursor_x, y=float(index_tip[1]))

        pinching = distance(index_tip, thumb_tip) < self.pinch_threshold

        return GestureSnapshot(
            cursor=cursor,
            pinching=pinching,
            grabbing=self.is_fist(lm),
            wrist_angle=angle_between(
                lm[HandLandmark.INDEX_MCP], lm[HandLandmark.PINKY_MCP]
            ),
            hand_present=True,
        )

    def classify_hands(self, hands: Sequence[Any]) -> GestureSnapshot:
        """Classify the first hand of a provider frame (0, 1 or 2 hands)."""
        if hands is None or len(hands) == 0:
            return GestureSnapshot.idle()
        return self.classify(hands[0])

    def count_valid(self, hands: Optional[Sequence[Any]]) -> int:
        """Number of hands in a provider frame that parse as landmark sets."""
        if hands is None or len(hands) == 0:
            return 0
        return sum(1 for hand in hands if _as_landmark_array(hand) is not None)

    def is_fist(self, lm: np.ndarray) -> bool:
        wrist = lm[HandLandmark.WRIST]
        return all(
            distance(lm[tip], wrist) < self.grab_threshold
            for tip in HandLandmark.FINGERTIPS
        )
