"""Tests for the segmentation worker and its client handle."""

import numpy as np
import pytest

from biotwin.inference import EncodeRequest
from biotwin.metrics import MetricsCollector
from biotwin.worker import (
    MessageType,
    RequestType,
    SegmentationClient,
    SegmentationWorker,
    WorkerMessage,
    WorkerRequest,
)
from conftest import make_square_mask


def image():
    return EncodeRequest(pixels=np.zeros((8, 8, 3), dtype=np.float32))


def encode(version):
    return WorkerRequest(RequestType.RUN_ENCODER, version=version, payload={"request": image()})


def decode(version, x=0.5, y=0.5):
    return WorkerRequest(RequestType.RUN_DECODER, version=version, payload={"x": x, "y": y})


@pytest.fixture
def client(fake_backend):
    c = SegmentationClient(fake_backend, metrics=MetricsCollector(), threaded=False)
    yield c
    c.close()


@pytest.fixture
def deferred(client, monkeypatch):
    """Capture submitted requests instead of running them."""
    submitted = []
    monkeypatch.setattr(client.worker, "submit", submitted.append)
    return submitted


class TestSegmentationWorker:
    def test_load_encode_decode_messages(self, fake_backend):
        posted = []
        worker = SegmentationWorker(fake_backend, posted.append)
        worker.submit(WorkerRequest(RequestType.LOAD_MODELS))
        worker.submit(encode(1))
        worker.submit(decode(1, 0.2, 0.3))

        kinds = [m.type for m in posted]
        assert MessageType.MODELS_LOADED in kinds
        assert kinds[-1] is MessageType.DECODER_COMPLETE
        assert [m.payload["status"] for m in posted if m.type is MessageType.STATUS][-2:] == [
            "Encoding Image...", "Embedding Ready",
        ]
        done = posted[-1]
        assert done.version == 1
        assert done.payload["mask"].shape == (64, 64)
        assert done.payload["point"] == (0.2, 0.3)

    def test_decode_for_superseded_image_is_skipped(self, fake_backend):
        posted = []
        worker = SegmentationWorker(fake_backend, posted.append)
        fake_backend.load()
        worker.submit(encode(1))
        worker.submit(encode(2))
        posted.clear()

        worker.process(decode(1))
        assert posted == []

    def test_embedding_version_mismatch_is_an_error(self, fake_backend):
        posted = []
        worker = SegmentationWorker(fake_backend, posted.append)
        fake_backend.load()
        worker.submit(encode(1))
        posted.clear()

        worker.process(decode(2))
        assert [m.type for m in posted] == [MessageType.ERROR]
        assert "not ready" in posted[0].payload["message"]

    def test_exceptions_become_error_messages(self, fake_backend):
        posted = []
        worker = SegmentationWorker(fake_backend, posted.append)
        worker.submit(encode(1))  # models never loaded
        assert posted[-1].type is MessageType.ERROR
        assert posted[-1].version == 1

    def test_threaded_processing(self, fake_backend):
        posted = []
        worker = SegmentationWorker(fake_backend, posted.append)
        worker.start()
        try:
            assert worker.running
            worker.submit(WorkerRequest(RequestType.LOAD_MODELS))
            worker.submit(encode(1))
            worker.submit(decode(1))
            assert worker.wait_idle(timeout=5)
        finally:
            worker.stop()
        assert not worker.running
        assert posted[-1].type is MessageType.DECODER_COMPLETE


class TestSegmentationClient:
    def test_end_to_end(self, client):
        geometries = []
        client.on_geometry.set(geometries.append)
        client.load_models()
        version = client.set_image(image())
        assert client.embedding_ready

        assert client.request_decode(0.5, 0.5)
        assert len(geometries) == 1
        assert geometries[0].version == version
        assert len(geometries[0].shapes) == 1
        assert client.geometry is geometries[0]
        assert client.status == "Mask Ready"
        assert client.error is None

    def test_decode_without_image(self, client):
        assert not client.request_decode(0.5, 0.5)

    def test_versions_are_monotonic(self, client):
        client.load_models()
        assert client.set_image(image()) == 1
        assert client.set_image(image()) == 2
        assert client.version == 2

    def test_stale_result_is_discarded(self, client):
        client.load_models()
        client.set_image(image())
        client.set_image(image())

        client.on_message(WorkerMessage(
            MessageType.DECODER_COMPLETE, version=1, payload={"mask": make_square_mask()},
        ))
        assert client.geometry is None
        assert "biotwin_stale_results_total 1" in client.metrics.render()

    def test_new_image_clears_geometry(self, client):
        client.load_models()
        client.set_image(image())
        client.request_decode(0.5, 0.5)
        assert client.geometry is not None
        client.set_image(image())
        assert client.geometry is None

    def test_error_state_clears_geometry(self, client, session_factory):
        errors = []
        client.on_error.set(errors.append)
        client.load_models()
        client.set_image(image())
        client.request_decode(0.5, 0.5)
        assert client.geometry is not None

        session_factory.decoder.fail = RuntimeError("decoder exploded")
        client.request_decode(0.4, 0.4)
        assert client.geometry is None
        assert client.status == "Error"
        assert client.error == "decoder exploded"
        assert errors == ["decoder exploded"]
        assert not client.decode_in_flight

    def test_missing_models_is_an_error(self, client):
        client.set_image(image())
        assert client.error is not None
        assert client.geometry is None
        assert not client.embedding_ready

    def test_decode_waits_for_embedding(self, client, deferred):
        client.set_image(image())
        client.request_decode(0.1, 0.2)
        client.request_decode(0.3, 0.4)
        assert [r.type for r in deferred] == [RequestType.RUN_ENCODER]

        client.worker.backend.load()
        client.worker.process(deferred.pop(0))
        assert [r.type for r in deferred] == [RequestType.RUN_DECODER]
        assert deferred[0].payload == {"x": 0.3, "y": 0.4}

    def test_requests_coalesce_while_in_flight(self, client, deferred):
        client.worker.backend.load()
        client.set_image(image())
        client.worker.process(deferred.pop(0))

        client.request_decode(0.1, 0.1)
        client.request_decode(0.2, 0.2)
        client.request_decode(0.3, 0.3)
        assert len(deferred) == 1
        assert client.decode_in_flight

        client.worker.process(deferred.pop(0))
        assert client.geometry is not None
        assert len(deferred) == 1
        assert deferred[0].payload == {"x": 0.3, "y": 0.3}

    def test_threaded_client(self, fake_backend):
        client = SegmentationClient(fake_backend, threaded=True)
        try:
            statuses = []
            client.on_status.set(statuses.append)
            client.load_models()
            client.set_image(image())
            client.request_decode(0.5, 0.5)
            assert client.wait_idle(timeout=5)
            assert client.geometry is not None
            assert "Embedding Ready" in statuses
        finally:
            client.close()
