"""Tests for the encoder/decoder adapter, using fake sessions."""

import numpy as np
import pytest

from biotwin.inference import (
    EmbeddingNotReadyError,
    EncodeRequest,
    ModelsNotLoadedError,
    PIXEL_MEAN,
    PIXEL_STD,
    SessionManager,
    preprocess_image,
)


def small_request():
    return EncodeRequest(pixels=np.zeros((8, 8, 3), dtype=np.float32))


class TestEncodeRequest:
    def test_hwc_to_chw(self):
        pixels = np.zeros((4, 6, 3), dtype=np.float32)
        pixels[..., 1] = 1.0
        tensor = EncodeRequest(pixels=pixels).to_model_input()
        assert tensor.shape == (3, 4, 6)
        assert np.all(tensor[1] == 1.0)
        assert tensor.flags["C_CONTIGUOUS"]

    def test_chw_passthrough(self):
        tensor = EncodeRequest(pixels=np.zeros((3, 4, 4)), layout="CHW").to_model_input()
        assert tensor.shape == (3, 4, 4)
        assert tensor.dtype == np.float32

    def test_unknown_layout(self):
        with pytest.raises(ValueError):
            EncodeRequest(pixels=np.zeros((4, 4, 3)), layout="NHWC").to_model_input()


class TestPreprocess:
    def test_resize_and_normalize(self):
        pytest.importorskip("cv2")
        image = np.zeros((120, 80, 3), dtype=np.uint8)
        request = preprocess_image(image)
        assert request.pixels.shape == (1024, 1024, 3)
        expected = [-m / s for m, s in zip(PIXEL_MEAN, PIXEL_STD)]
        np.testing.assert_allclose(request.pixels[0, 0], expected, rtol=1e-5)

    def test_rejects_grayscale(self):
        pytest.importorskip("cv2")
        with pytest.raises(ValueError):
            preprocess_image(np.zeros((16, 16), dtype=np.uint8))


class TestSessionManager:
    def test_lazy_single_load(self, session_factory):
        sessions = SessionManager("encoder.onnx", "decoder.onnx", session_factory=session_factory)
        assert not sessions.loaded
        assert session_factory.created == []

        statuses = []
        sessions.ensure_loaded(statuses.append)
        sessions.ensure_loaded()
        assert sessions.loaded
        assert session_factory.created == ["encoder.onnx", "decoder.onnx"]
        assert statuses == ["Loading Encoder...", "Loading Decoder...", "Models Loaded"]

    def test_factory_failure_is_wrapped(self):
        def broken(path, providers):
            raise RuntimeError("NO_SUCHFILE: model missing")

        sessions = SessionManager("encoder.onnx", "decoder.onnx", session_factory=broken)
        with pytest.raises(ModelsNotLoadedError, match="encoder") as exc_info:
            sessions.ensure_loaded()
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert not sessions.loaded

    def test_access_before_load(self, session_factory):
        sessions = SessionManager("encoder.onnx", "decoder.onnx", session_factory=session_factory)
        with pytest.raises(ModelsNotLoadedError):
            sessions.encoder
        with pytest.raises(ModelsNotLoadedError):
            sessions.decoder


class TestSamBackend:
    def test_encode_before_load(self, fake_backend):
        with pytest.raises(ModelsNotLoadedError):
            fake_backend.encode(small_request(), version=1)

    def test_decode_before_encode(self, fake_backend):
        fake_backend.load()
        with pytest.raises(EmbeddingNotReadyError):
            fake_backend.decode(0.5, 0.5)

    def test_encode_feeds(self, fake_backend, session_factory):
        fake_backend.load()
        embedding = fake_backend.encode(small_request(), version=7)
        assert embedding.version == 7
        assert fake_backend.embedding is embedding

        names, feeds = session_factory.encoder.calls[0]
        assert names == ["image_embeddings"]
        assert feeds["input_image"].shape == (3, 8, 8)

    def test_decode_feeds_and_output(self, fake_backend, session_factory):
        fake_backend.load()
        fake_backend.encode(small_request(), version=2)
        decoded = fake_backend.decode(0.25, 0.75)

        names, feeds = session_factory.decoder.calls[0]
        assert names == ["masks"]
        np.testing.assert_allclose(feeds["point_coords"], [[[256.0, 768.0]]])
        np.testing.assert_array_equal(feeds["point_labels"], [[1]])
        assert feeds["mask_input"].shape == (1, 1, 256, 256)
        assert not feeds["mask_input"].any()
        np.testing.assert_array_equal(feeds["has_mask_input"], [0])
        np.testing.assert_array_equal(feeds["orig_im_size"], [1024, 1024])
        assert feeds["image_embeddings"] is fake_backend.embedding.tensor

        assert decoded.mask.shape == (64, 64)
        assert (decoded.width, decoded.height) == (64, 64)
        assert decoded.version == 2

    def test_clear(self, fake_backend):
        fake_backend.load()
        fake_backend.encode(small_request(), version=1)
        fake_backend.clear()
        assert fake_backend.embedding is None
