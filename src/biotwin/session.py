"""Explorer session: wires hand tracking to segmentation for one viewer."""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import numpy as np

from biotwin.events import Action, GestureEvents, SegmentAt, ToggleExplosion
from biotwin.geometry_pipeline import GeometryResult
from biotwin.tracking import CallbackSlot, HandTrackingLoop
from biotwin.worker import SegmentationClient

logger = logging.getLogger("biotwin.session")


class ExplorerSession:
    """Scene state shared by the gesture and segmentation pipelines.

    Throttled pinch triggers become decode requests at the cursor; a
    double pinch toggles the exploded particle view. The session keeps
    its own particle cloud, replaced whenever new geometry arrives, and
    steps it with advance().
    """

    def __init__(
        self,
        tracking: HandTrackingLoop,
        segmentation: Optional[SegmentationClient] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.tracking = tracking
        self.segmentation = segmentation
        self.exploded = False
        self.on_action = CallbackSlot()
        self.on_geometry = CallbackSlot()
        self._rng = rng or np.random.default_rng()
        self._geometry: Optional[GeometryResult] = None

        tracking.set_handlers(on_action=self._handle_action)
        if segmentation is not None:
            segmentation.on_geometry.set(self._on_geometry)

    def process_hands(self, hands: Sequence[Any], timestamp: Optional[float] = None) -> GestureEvents:
        return self.tracking.process_hands(hands, timestamp)

    def _handle_action(self, action: Action):
        if isinstance(action, SegmentAt):
            if self.segmentation is not None:
                self.segmentation.request_decode(action.x, action.y)
        elif isinstance(action, ToggleExplosion):
            self.exploded = not self.exploded
            logger.info("Particles %s", "exploded" if self.exploded else "gathered")
        self.on_action(action)

    def _on_geometry(self, geometry: GeometryResult):
        self._geometry = geometry
        self.on_geometry(geometry)

    @property
    def geometry(self) -> Optional[GeometryResult]:
        return self._geometry

    def reset_rotation(self):
        self.tracking.detector.reset_rotation()

    def advance(self, delta: float):
        """Step the particle animation by `delta` seconds."""
        if self._geometry is not None:
            self._geometry.particles.step(delta, self.exploded, self._rng)

    def scene_state(self) -> dict:
        events = self.tracking.last_events
        detector = self.tracking.detector
        seg = self.segmentation

        return {
            "cursor": events.cursor.to_dict() if events else {"x": 0.5, "y": 0.5},
            "pinching": events.pinch_active if events else False,
            "grabbing": events.grab_active if events else False,
            "rotation": detector.rotation.to_dict(),
            "exploded": self.exploded,
            "status": seg.status if seg else "Idle",
            "error": seg.error if seg else None,
            "version": seg.version if seg else 0,
        }
