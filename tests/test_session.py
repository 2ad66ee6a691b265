"""Tests for the explorer session glue."""

import numpy as np
import pytest

from biotwin.inference import EncodeRequest
from biotwin.session import ExplorerSession
from biotwin.tracking import HandTrackingLoop
from biotwin.worker import SegmentationClient
from conftest import make_hand

PINCH = make_hand(index_tip=(0.4, 0.4), thumb_tip=(0.4, 0.4))
OPEN = make_hand()


@pytest.fixture
def session(fake_backend):
    client = SegmentationClient(fake_backend, threaded=False)
    client.load_models()
    client.set_image(EncodeRequest(pixels=np.zeros((8, 8, 3), dtype=np.float32)))
    s = ExplorerSession(HandTrackingLoop(), client, rng=np.random.default_rng(0))
    yield s
    client.close()


class TestExplorerSession:
    def test_pinch_requests_decode_at_cursor(self, session, session_factory):
        geometries = []
        session.on_geometry.set(geometries.append)
        session.process_hands([PINCH], timestamp=0.0)

        _, feeds = session_factory.decoder.calls[0]
        np.testing.assert_allclose(feeds["point_coords"], [[[0.6 * 1024, 0.4 * 1024]]], rtol=1e-5)
        assert session.geometry is not None
        assert geometries == [session.geometry]

    def test_double_pinch_toggles_explosion(self, session):
        session.process_hands([PINCH], timestamp=0.0)
        session.process_hands([OPEN], timestamp=0.05)
        session.process_hands([PINCH], timestamp=0.1)
        assert session.exploded
        session.process_hands([OPEN], timestamp=1.0)
        session.process_hands([PINCH], timestamp=1.05)
        session.process_hands([OPEN], timestamp=1.1)
        session.process_hands([PINCH], timestamp=1.15)
        assert not session.exploded

    def test_advance_animates_particles(self, session):
        session.process_hands([PINCH], timestamp=0.0)
        particles = session.geometry.particles
        before = particles.positions.copy()

        session.advance(0.0)
        np.testing.assert_array_equal(particles.positions, before)

        session.exploded = True
        session.advance(1 / 60)
        assert not np.allclose(particles.positions, before)

    def test_advance_without_geometry(self, fake_backend):
        s = ExplorerSession(HandTrackingLoop())
        s.advance(0.1)
        assert s.geometry is None

    def test_scene_state(self, session):
        state = session.scene_state()
        assert set(state) == {
            "cursor", "pinching", "grabbing", "rotation", "exploded", "status", "error", "version",
        }
        assert state["version"] == 1
        assert state["error"] is None

        session.process_hands([PINCH], timestamp=0.0)
        state = session.scene_state()
        assert state["pinching"] is True
        assert state["status"] == "Mask Ready"

    def test_reset_rotation(self, session):
        detector = session.tracking.detector
        fist = make_hand(fingertip_offsets=[(0.05, 0.0)] * 5, index_mcp=(0.4, 0.5), pinky_mcp=(0.6, 0.5))
        turned = make_hand(fingertip_offsets=[(0.05, 0.0)] * 5, index_mcp=(0.4, 0.5), pinky_mcp=(0.6, 0.52))
        session.process_hands([fist], timestamp=0.0)
        session.process_hands([turned], timestamp=0.03)
        assert detector.rotation.y != 0.0
        session.reset_rotation()
        assert session.scene_state()["rotation"] == {"x": 0.0, "y": 0.0}
