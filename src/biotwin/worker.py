"""Off-thread segmentation: a request/response worker and its client handle.

The worker owns the inference backend and runs one request at a time on
a background thread. Every request and response carries the image
version it belongs to; setting a new image bumps the version, and both
sides drop decode work tagged with an older one:

- the worker skips queued decodes older than the newest submitted encode
- the client discards decoder results whose version is not current
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import numpy as np

from biotwin.geometry_pipeline import GeometryPipeline, GeometryResult
from biotwin.inference import (
    EmbeddingNotReadyError,
    EncodeRequest,
    SamBackend,
    preprocess_image,
)
from biotwin.metrics import MetricsCollector
from biotwin.profiler import PipelineProfiler
from biotwin.tracking import CallbackSlot

logger = logging.getLogger("biotwin.worker")


class RequestType(Enum):
    LOAD_MODELS = "LOAD_MODELS"
    RUN_ENCODER = "RUN_ENCODER"
    RUN_DECODER = "RUN_DECODER"


class MessageType(Enum):
    STATUS = "STATUS"
    MODELS_LOADED = "MODELS_LOADED"
    ENCODER_COMPLETE = "ENCODER_COMPLETE"
    DECODER_COMPLETE = "DECODER_COMPLETE"
    ERROR = "ERROR"


@dataclass
class WorkerRequest:
    type: RequestType
    version: int = 0
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkerMessage:
    type: MessageType
    version: int = 0
    payload: dict[str, Any] = field(default_factory=dict)


class SegmentationWorker:
    """Processes segmentation requests sequentially and posts results back.

    Until start() is called, submitted requests run inline on the
    caller's thread.
    """

    def __init__(
        self,
        backend: SamBackend,
        post: Callable[[WorkerMessage], None],
        profiler: Optional[PipelineProfiler] = None,
    ):
        self.backend = backend
        self._post = post
        self.profiler = profiler or PipelineProfiler(enabled=False)
        self._queue: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._latest_encode = 0
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._thread = threading.Thread(
            target=self._run, name="segmentation-worker", daemon=True
        )
        self._thread.start()
        logger.info("Segmentation worker started")

    def stop(self, timeout: float = 5.0):
        if not self.running:
            return
        self._queue.put(None)
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Segmentation worker stopped")

    def submit(self, request: WorkerRequest):
        if request.type is RequestType.RUN_ENCODER:
            with self._lock:
                self._latest_encode = max(self._latest_encode, request.version)

        if self.running:
            self._queue.put(request)
        else:
            self.process(request)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued request has been processed."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def _run(self):
        while True:
            request = self._queue.get()
            try:
                if request is None:
                    return
                self.process(request)
            finally:
                self._queue.task_done()

    def process(self, request: WorkerRequest):
        """Run one request, converting any failure into an ERROR message."""
        try:
            if request.type is RequestType.LOAD_MODELS:
                self._load(request)
            elif request.type is RequestType.RUN_ENCODER:
                self._encode(request)
            elif request.type is RequestType.RUN_DECODER:
                self._decode(request)
            else:
                raise ValueError(f"Unknown request type: {request.type}")
        except Exception as e:
            logger.error("%s (v%d) failed: %s", request.type.value, request.version, e)
            self._emit(MessageType.ERROR, request.version, message=str(e))

    def _emit(self, kind: MessageType, version: int, **payload):
        self._post(WorkerMessage(type=kind, version=version, payload=payload))

    def _status(self, version: int, status: str):
        self._emit(MessageType.STATUS, version, status=status)

    def _load(self, request: WorkerRequest):
        self.backend.load(lambda status: self._status(request.version, status))
        self._emit(MessageType.MODELS_LOADED, request.version)

    def _encode(self, request: WorkerRequest):
        encode_request: EncodeRequest = request.payload["request"]
        self._status(request.version, "Encoding Image...")
        with self.profiler.stage("encode"):
            self.backend.encode(encode_request, request.version)
        self._status(request.version, "Embedding Ready")
        self._emit(MessageType.ENCODER_COMPLETE, request.version)

    def _decode(self, request: WorkerRequest):
        with self._lock:
            latest = self._latest_encode
        if request.version < latest:
            logger.debug("Skipping stale decode v%d (latest image v%d)", request.version, latest)
            return

        embedding = self.backend.embedding
        if embedding is None or embedding.version != request.version:
            raise EmbeddingNotReadyError("Decoder or embedding not ready")

        with self.profiler.stage("decode"):
            decoded = self.backend.decode(request.payload["x"], request.payload["y"])
        self._emit(
            MessageType.DECODER_COMPLETE,
            request.version,
            mask=decoded.mask,
            width=decoded.width,
            height=decoded.height,
            point=(request.payload["x"], request.payload["y"]),
        )


class SegmentationClient:
    """Caller-side handle for the segmentation worker.

    set_image() starts a new image version; request_decode(x, y) asks for
    a mask at a normalized point. At most one decode is in flight per
    image; further requests coalesce to the most recent point and are
    sent when the current one completes. Completed masks are converted
    with the geometry pipeline and delivered through `on_geometry`.
    """

    def __init__(
        self,
        backend: SamBackend,
        pipeline: Optional[GeometryPipeline] = None,
        metrics: Optional[MetricsCollector] = None,
        profiler: Optional[PipelineProfiler] = None,
        threaded: bool = True,
    ):
        self.pipeline = pipeline or GeometryPipeline(profiler=profiler)
        self.metrics = metrics
        self.worker = SegmentationWorker(backend, self.on_message, profiler)
        self.on_geometry = CallbackSlot()
        self.on_status = CallbackSlot()
        self.on_error = CallbackSlot()

        self._lock = threading.RLock()
        self._version = 0
        self._status = "Idle"
        self._error: Optional[str] = None
        self._models_loaded = False
        self._embedding_version: Optional[int] = None
        self._decode_in_flight = False
        self._pending_point: Optional[tuple[float, float]] = None
        self._geometry: Optional[GeometryResult] = None

        if threaded:
            self.worker.start()

    # --- Commands ---

    def load_models(self):
        self.worker.submit(WorkerRequest(RequestType.LOAD_MODELS, version=self._version))

    def set_image(self, image: np.ndarray | EncodeRequest) -> int:
        """Start encoding a new image; returns its version token."""
        request = image if isinstance(image, EncodeRequest) else preprocess_image(image)
        with self._lock:
            self._version += 1
            version = self._version
            self._embedding_version = None
            self._decode_in_flight = False
            self._pending_point = None
            self._geometry = None
            self._error = None

        logger.info("New image v%d", version)
        self.worker.submit(
            WorkerRequest(RequestType.RUN_ENCODER, version=version, payload={"request": request})
        )
        return version

    def request_decode(self, x: float, y: float) -> bool:
        """Ask for a mask at normalized (x, y). Returns False with no image set."""
        with self._lock:
            if self._version == 0:
                logger.warning("Decode requested before any image was set")
                return False
            if self._embedding_version != self._version or self._decode_in_flight:
                self._pending_point = (x, y)
                return True
            self._decode_in_flight = True
            version = self._version

        self._send_decode(version, x, y)
        return True

    def _send_decode(self, version: int, x: float, y: float):
        self.worker.submit(
            WorkerRequest(RequestType.RUN_DECODER, version=version, payload={"x": x, "y": y})
        )

    def _flush_pending(self):
        with self._lock:
            if self._pending_point is None or self._decode_in_flight:
                return
            if self._embedding_version != self._version:
                return
            x, y = self._pending_point
            self._pending_point = None
            self._decode_in_flight = True
            version = self._version
        self._send_decode(version, x, y)

    # --- Worker responses ---

    def on_message(self, message: WorkerMessage):
        kind = message.type

        if kind is MessageType.STATUS:
            self._status = message.payload["status"]
            self.on_status(self._status)
        elif kind is MessageType.MODELS_LOADED:
            self._models_loaded = True
        elif kind is MessageType.ENCODER_COMPLETE:
            with self._lock:
                if message.version != self._version:
                    return
                self._embedding_version = message.version
            self._flush_pending()
        elif kind is MessageType.DECODER_COMPLETE:
            self._on_decoded(message)
        elif kind is MessageType.ERROR:
            self._on_error(message)

    def _on_decoded(self, message: WorkerMessage):
        with self._lock:
            if message.version != self._version:
                logger.info("Discarding stale mask v%d (current v%d)", message.version, self._version)
                if self.metrics is not None:
                    self.metrics.record_stale()
                return

        t0 = time.perf_counter()
        geometry = self.pipeline.run(message.payload["mask"], version=message.version)
        if self.metrics is not None:
            self.metrics.record_decode(time.perf_counter() - t0)

        with self._lock:
            if message.version != self._version:
                return
            self._geometry = geometry
            self._decode_in_flight = False
            self._status = "Mask Ready"

        self.on_geometry(geometry)
        self._flush_pending()

    def _on_error(self, message: WorkerMessage):
        with self._lock:
            if message.version not in (0, self._version):
                logger.debug("Ignoring error for superseded image v%d", message.version)
                return
            self._error = message.payload.get("message", "Unknown error")
            self._status = "Error"
            self._geometry = None
            self._decode_in_flight = False
            self._pending_point = None

        if self.metrics is not None:
            self.metrics.record_error()
        self.on_error(self._error)

    # --- State ---

    @property
    def version(self) -> int:
        return self._version

    @property
    def status(self) -> str:
        return self._status

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def models_loaded(self) -> bool:
        return self._models_loaded

    @property
    def embedding_ready(self) -> bool:
        return self._version > 0 and self._embedding_version == self._version

    @property
    def decode_in_flight(self) -> bool:
        return self._decode_in_flight

    @property
    def geometry(self) -> Optional[GeometryResult]:
        return self._geometry

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.worker.wait_idle(timeout)

    def close(self):
        self.worker.stop()
