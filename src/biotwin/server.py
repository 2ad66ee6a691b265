"""Renderer-facing server: gesture frames in, scene state and geometry out.

Clients stream hand landmarks over the websocket and receive one `frame`
message per landmark frame. Segmentation results arrive asynchronously
from the worker thread and are pushed to every client as `geometry`,
`status` and `error` messages.

Usage:
    biotwin serve
    # or
    uvicorn biotwin.server:app --host 0.0.0.0 --port 8765
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from typing import Any, Optional

import numpy as np

try:
    from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
    from fastapi.responses import PlainTextResponse
    from pydantic import BaseModel, Field
    _HAS_FASTAPI = True
except ImportError:
    _HAS_FASTAPI = False

if not _HAS_FASTAPI:
    raise ImportError("FastAPI required. Install with: pip install fastapi uvicorn")

from biotwin import __version__
from biotwin.config import BioTwinConfig, load_config
from biotwin.geometry_pipeline import GeometryPipeline, GeometryResult
from biotwin.inference import SamBackend, SessionManager, decode_image_bytes
from biotwin.mask import as_mask
from biotwin.metrics import MetricsCollector
from biotwin.profiler import PipelineProfiler
from biotwin.session import ExplorerSession
from biotwin.tracking import HandTrackingLoop
from biotwin.worker import SegmentationClient

logger = logging.getLogger("biotwin.server")

app = FastAPI(title="BioTwin", version=__version__)


class MaskPayload(BaseModel):
    """Flat row-major mask values with their dimensions."""
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    data: list[float]
    seed: Optional[int] = None


# --- State ---

class ServerState:
    def __init__(self):
        self.config: BioTwinConfig = BioTwinConfig()
        self.metrics = MetricsCollector()
        self.profiler = PipelineProfiler()
        self.clients: set[WebSocket] = set()
        self.pipeline: Optional[GeometryPipeline] = None
        self.tracking: Optional[HandTrackingLoop] = None
        self.segmentation: Optional[SegmentationClient] = None
        self.session: Optional[ExplorerSession] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.started_at = time.time()

    @property
    def configured(self) -> bool:
        return self.session is not None

    def configure(
        self,
        config: Optional[BioTwinConfig] = None,
        backend: Optional[SamBackend] = None,
        threaded: bool = True,
    ):
        """Build the pipelines from `config`. `backend` overrides the onnx one."""
        self.shutdown()
        self.config = config or self.config
        self.metrics = MetricsCollector()
        self.profiler = PipelineProfiler()

        gesture = self.config.gesture
        self.pipeline = GeometryPipeline(self.config.geometry, self.profiler)
        self.tracking = HandTrackingLoop(
            classifier=gesture.build_classifier(),
            detector=gesture.build_detector(),
            profiler=self.profiler,
            metrics=self.metrics,
        )

        if backend is None:
            inference = self.config.inference
            backend = SamBackend(SessionManager(
                inference.encoder_path, inference.decoder_path, inference.providers,
            ))
        self.segmentation = SegmentationClient(
            backend,
            pipeline=self.pipeline,
            metrics=self.metrics,
            profiler=self.profiler,
            threaded=threaded,
        )
        self.session = ExplorerSession(self.tracking, self.segmentation)

        self.session.on_geometry.set(
            lambda geometry: self.push({"type": "geometry", **geometry.to_dict()})
        )
        self.segmentation.on_status.set(
            lambda status: self.push({"type": "status", "status": status})
        )
        self.segmentation.on_error.set(
            lambda message: self.push({"type": "error", "message": message})
        )

    def push(self, message: dict):
        """Broadcast from any thread, including the segmentation worker."""
        loop = self.loop
        if loop is None or loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(broadcast(message), loop)

    def shutdown(self):
        if self.segmentation is not None:
            self.segmentation.close()


state = ServerState()


def _require_session() -> ExplorerSession:
    if not state.configured:
        state.configure(load_config())
    return state.session


# --- API endpoints ---

@app.get("/api/status")
async def api_status():
    session = _require_session()
    seg = state.segmentation
    return {
        "version": __version__,
        "uptime": round(time.time() - state.started_at, 1),
        "clients": len(state.clients),
        "tracking": state.tracking.stats.to_dict(),
        "segmentation": {
            "status": seg.status,
            "error": seg.error,
            "image_version": seg.version,
            "models_loaded": seg.models_loaded,
            "embedding_ready": seg.embedding_ready,
        },
        "scene": session.scene_state(),
    }


@app.get("/api/config")
async def api_config():
    return state.config.to_dict()


@app.post("/api/geometry")
async def api_geometry(payload: MaskPayload):
    """Convert a mask to shapes and particles without touching the session."""
    _require_session()
    try:
        mask = as_mask(payload.data, payload.width, payload.height)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    rng = np.random.default_rng(payload.seed)
    t0 = time.perf_counter()
    result: GeometryResult = await asyncio.to_thread(state.pipeline.run, mask, rng=rng)
    state.metrics.record_conversion(time.perf_counter() - t0)
    return result.to_dict()


@app.post("/api/rotation/reset")
async def api_reset_rotation():
    session = _require_session()
    session.reset_rotation()
    return {"rotation": state.tracking.detector.rotation.to_dict()}


# --- Prometheus metrics ---

@app.get("/metrics")
async def metrics():
    state.metrics.set_connections(len(state.clients))
    return PlainTextResponse(
        state.metrics.render(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


# --- WebSocket ---

async def handle_message(data: dict[str, Any]) -> Optional[dict]:
    """Apply one client message; returns the direct reply, if any."""
    session = _require_session()
    kind = data.get("type")

    if kind == "landmarks":
        timestamp = data.get("timestamp")
        if timestamp is not None:
            try:
                timestamp = float(timestamp)
            except (TypeError, ValueError):
                return {"type": "error", "message": "timestamp must be numeric"}
        events = session.process_hands(data.get("hands") or [], timestamp)
        return {"type": "frame", "events": events.to_dict(), "scene": session.scene_state()}

    if kind == "decode":
        try:
            x, y = float(data["x"]), float(data["y"])
        except (KeyError, TypeError, ValueError):
            return {"type": "error", "message": "decode requires numeric x and y"}
        accepted = state.segmentation.request_decode(x, y)
        return None if accepted else {"type": "error", "message": "No image loaded"}

    if kind == "image":
        try:
            image = decode_image_bytes(base64.b64decode(data.get("data", ""), validate=True))
        except (binascii.Error, ValueError) as e:
            return {"type": "error", "message": f"Invalid image: {e}"}
        if not state.segmentation.models_loaded:
            state.segmentation.load_models()
        version = state.segmentation.set_image(image)
        return {"type": "image_accepted", "version": version}

    if kind == "ping":
        return {"type": "pong", "server_time": time.time()}

    return {"type": "error", "message": f"Unknown message type: {kind}"}


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    state.clients.add(ws)
    logger.info("Client connected (%d total)", len(state.clients))

    try:
        await ws.send_json({"type": "connected", "scene": _require_session().scene_state()})

        while True:
            try:
                msg = await asyncio.wait_for(
                    ws.receive_text(), timeout=state.config.server.ws_timeout
                )
            except asyncio.TimeoutError:
                await ws.send_json({"type": "ping"})
                continue

            try:
                data = json.loads(msg)
            except json.JSONDecodeError:
                await ws.send_json({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(data, dict):
                await ws.send_json({"type": "error", "message": "Expected a JSON object"})
                continue

            reply = await handle_message(data)
            if reply is not None:
                await ws.send_json(reply)
    except WebSocketDisconnect:
        pass
    finally:
        state.clients.discard(ws)
        logger.info("Client disconnected (%d total)", len(state.clients))


async def broadcast(message: dict):
    """Send message to all connected clients."""
    if not state.clients:
        return
    dead = set()
    payload = json.dumps(message)
    for ws in list(state.clients):
        try:
            await ws.send_text(payload)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Dropping client after send failure: %s", e)
            dead.add(ws)
    state.clients -= dead


@app.on_event("startup")
async def startup():
    state.loop = asyncio.get_running_loop()
    if not state.configured:
        state.configure(load_config())
    if state.config.inference.autoload:
        state.segmentation.load_models()
    logger.info("BioTwin server ready")


@app.on_event("shutdown")
async def shutdown():
    state.shutdown()
    state.loop = None
