"""Shared builders: synthetic hands, masks and fake onnx sessions."""

import numpy as np
import pytest

from biotwin.inference import SamBackend, SessionManager
from biotwin.provider import HandLandmark


def make_hand(
    index_tip=(0.5, 0.3),
    thumb_tip=(0.3, 0.5),
    wrist=(0.5, 0.9),
    index_mcp=(0.4, 0.6),
    pinky_mcp=(0.6, 0.6),
    fingertip_offsets=None,
):
    """21 landmarks with a spread-out hand unless fingertips are pinned.

    `fingertip_offsets` places every fingertip (thumb first) at
    wrist + offset, which is how fists are built.
    """
    lm = np.zeros((21, 3), dtype=np.float32)
    for i in range(21):
        lm[i, :2] = (0.1 + 0.04 * i, 0.2)
    lm[HandLandmark.WRIST, :2] = wrist
    lm[HandLandmark.INDEX_MCP, :2] = index_mcp
    lm[HandLandmark.PINKY_MCP, :2] = pinky_mcp
    lm[HandLandmark.INDEX_TIP, :2] = index_tip
    lm[HandLandmark.THUMB_TIP, :2] = thumb_tip

    if fingertip_offsets is not None:
        for tip, (dx, dy) in zip(HandLandmark.FINGERTIPS, fingertip_offsets):
            lm[tip, :2] = (wrist[0] + dx, wrist[1] + dy)
    return lm


def make_square_mask(size=64, start=16, stop=48, value=1.0):
    mask = np.zeros((size, size), dtype=np.float32)
    mask[start:stop, start:stop] = value
    return mask


class FakeSession:
    """Stands in for an onnxruntime.InferenceSession."""

    def __init__(self, output, fail: Exception = None):
        self.output = output
        self.fail = fail
        self.calls = []

    def run(self, output_names, feeds):
        self.calls.append((list(output_names), feeds))
        if self.fail is not None:
            raise self.fail
        return [self.output]


class FakeSessionFactory:
    def __init__(self, mask=None):
        self.encoder = FakeSession(np.zeros((1, 256, 64, 64), dtype=np.float32))
        decoder_mask = make_square_mask() if mask is None else mask
        self.decoder = FakeSession(decoder_mask[np.newaxis, np.newaxis])
        self.created = []

    def __call__(self, path, providers):
        self.created.append(str(path))
        return self.encoder if "encoder" in str(path) else self.decoder


@pytest.fixture
def session_factory():
    return FakeSessionFactory()


@pytest.fixture
def fake_backend(session_factory):
    return SamBackend(SessionManager(
        "models/encoder.onnx", "models/decoder.onnx", session_factory=session_factory,
    ))
