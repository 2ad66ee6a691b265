"""Encoder/decoder inference over a SAM-style ONNX model pair.

The network itself is an external contract: the encoder takes a
normalized (3, 1024, 1024) image tensor and returns `image_embeddings`;
the decoder takes that embedding plus a point prompt and returns `masks`.
This module only prepares inputs, owns the sessions and keeps the most
recent embedding.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import numpy as np

from biotwin.mask import mask_from_decoder

logger = logging.getLogger("biotwin.inference")

INPUT_SIZE = 1024
MASK_INPUT_SIZE = 256
PIXEL_MEAN = (123.675, 116.28, 103.53)
PIXEL_STD = (58.395, 57.12, 57.375)


class InferenceError(RuntimeError):
    """Base class for inference failures."""


class ModelsNotLoadedError(InferenceError):
    pass


class EmbeddingNotReadyError(InferenceError):
    pass


@dataclass
class EncodeRequest:
    """Normalized pixels as sent to the encoder stage.

    `pixels` is float32 (height, width, 3) in HWC layout.
    """
    pixels: np.ndarray
    layout: str = "HWC"
    mean: tuple[float, float, float] = PIXEL_MEAN
    std: tuple[float, float, float] = PIXEL_STD

    def to_model_input(self) -> np.ndarray:
        """CHW float32 tensor as consumed by the encoder."""
        if self.layout == "CHW":
            return np.ascontiguousarray(self.pixels, dtype=np.float32)
        if self.layout != "HWC":
            raise ValueError(f"Unsupported pixel layout: {self.layout}")
        return np.ascontiguousarray(self.pixels.transpose(2, 0, 1), dtype=np.float32)


@dataclass
class Embedding:
    tensor: np.ndarray
    version: int


@dataclass
class DecodedMask:
    """First decoder mask and its (height, width)."""
    mask: np.ndarray
    width: int
    height: int
    version: int


def preprocess_image(
    image_rgb: np.ndarray,
    size: int = INPUT_SIZE,
    mean: Sequence[float] = PIXEL_MEAN,
    std: Sequence[float] = PIXEL_STD,
) -> EncodeRequest:
    """Resize an RGB uint8 image to size x size and normalize per channel."""
    import cv2

    image = np.asarray(image_rgb)
    if image.ndim != 3 or image.shape[2] < 3:
        raise ValueError(f"Expected an RGB image (H, W, 3), got shape {image.shape}")

    resized = cv2.resize(image[..., :3], (size, size), interpolation=cv2.INTER_LINEAR)
    pixels = (resized.astype(np.float32) - np.asarray(mean, dtype=np.float32)) / np.asarray(
        std, dtype=np.float32
    )
    return EncodeRequest(pixels=pixels, mean=tuple(mean), std=tuple(std))


def load_image(path: str | Path) -> np.ndarray:
    """Read an image file as RGB uint8."""
    import cv2

    image = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if image is None:
        raise FileNotFoundError(f"Could not read image: {path}")
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def decode_image_bytes(data: bytes) -> np.ndarray:
    """Decode an encoded image (PNG, JPEG, ...) to RGB uint8."""
    import cv2

    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise ValueError("Could not decode image data")
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def create_ort_session(path: str | Path, providers: Sequence[str]) -> Any:
    """Default session factory: an onnxruntime session with full graph optimization."""
    import onnxruntime as ort

    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    return ort.InferenceSession(str(path), sess_options=options, providers=list(providers))


class SessionManager:
    """Creates the encoder and decoder sessions once and hands them out.

    Sessions are expensive to build, so they are created lazily on first
    use and reused afterwards. The factory is injectable for tests and
    alternative runtimes.
    """

    def __init__(
        self,
        encoder_path: str | Path,
        decoder_path: str | Path,
        providers: Sequence[str] = ("CPUExecutionProvider",),
        session_factory: Optional[Callable[[str | Path, Sequence[str]], Any]] = None,
    ):
        self.encoder_path = Path(encoder_path)
        self.decoder_path = Path(decoder_path)
        self.providers = tuple(providers)
        self._factory = session_factory or create_ort_session
        self._encoder = None
        self._decoder = None
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._encoder is not None and self._decoder is not None

    def ensure_loaded(self, status: Optional[Callable[[str], None]] = None):
        """Create any missing session. Safe to call repeatedly."""
        report = status or (lambda _msg: None)
        with self._lock:
            if self._encoder is None:
                report("Loading Encoder...")
                logger.info("Loading encoder from %s", self.encoder_path)
                self._encoder = self._create("encoder", self.encoder_path)
            if self._decoder is None:
                report("Loading Decoder...")
                logger.info("Loading decoder from %s", self.decoder_path)
                self._decoder = self._create("decoder", self.decoder_path)
        report("Models Loaded")

    def _create(self, role: str, path: Path) -> Any:
        try:
            return self._factory(path, self.providers)
        except InferenceError:
            raise
        except Exception as e:
            raise ModelsNotLoadedError(f"Failed to load {role} from {path}: {e}") from e

    @property
    def encoder(self):
        if self._encoder is None:
            raise ModelsNotLoadedError("Encoder not loaded")
        return self._encoder

    @property
    def decoder(self):
        if self._decoder is None:
            raise ModelsNotLoadedError("Decoder not loaded")
        return self._decoder


class SamBackend:
    """Runs encode/decode against a SessionManager.

    Holds the most recent image embedding; decode always runs against it.
    Not thread-safe: drive it from a single worker.
    """

    def __init__(self, sessions: SessionManager, input_size: int = INPUT_SIZE):
        self.sessions = sessions
        self.input_size = input_size
        self._embedding: Optional[Embedding] = None

    @property
    def embedding(self) -> Optional[Embedding]:
        return self._embedding

    def load(self, status: Optional[Callable[[str], None]] = None):
        self.sessions.ensure_loaded(status)

    def encode(self, request: EncodeRequest, version: int) -> Embedding:
        tensor = request.to_model_input()
        outputs = self.sessions.encoder.run(["image_embeddings"], {"input_image": tensor})
        self._embedding = Embedding(tensor=outputs[0], version=version)
        return self._embedding

    def decode(self, x: float, y: float) -> DecodedMask:
        """Decode a mask for a foreground point given in normalized [0, 1] coordinates."""
        if self._embedding is None:
            raise EmbeddingNotReadyError("Decoder or embedding not ready")

        size = float(self.input_size)
        feeds = {
            "image_embeddings": self._embedding.tensor,
            "point_coords": np.array([[[x * size, y * size]]], dtype=np.float32),
            "point_labels": np.array([[1]], dtype=np.float32),
            "mask_input": np.zeros(
                (1, 1, MASK_INPUT_SIZE, MASK_INPUT_SIZE), dtype=np.float32
            ),
            "has_mask_input": np.zeros((1,), dtype=np.float32),
            "orig_im_size": np.array([size, size], dtype=np.float32),
        }
        outputs = self.sessions.decoder.run(["masks"], feeds)
        mask = mask_from_decoder(outputs[0])
        height, width = mask.shape
        return DecodedMask(
            mask=mask, width=width, height=height, version=self._embedding.version
        )

    def clear(self):
        self._embedding = None
