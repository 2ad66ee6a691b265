"""BioTwin configuration.

Defaults equal the pipelines' fixed constants; a YAML file only needs to
list the values it overrides:

    gesture:
      mirrored: true
      rotation_mode: cursor_delta
    geometry:
      particle_stride: 6
    inference:
      encoder_path: models/sam_vit_b_01ec64.quant.encoder.onnx
      decoder_path: models/sam_vit_b_01ec64.quant.decoder.onnx
    server:
      port: 8765
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from biotwin import classifier as _classifier
from biotwin import contours as _contours
from biotwin import events as _events
from biotwin import particles as _particles
from biotwin.mask import THRESHOLD_FRACTION

logger = logging.getLogger("biotwin.config")

CONFIG_ENV_VAR = "BIOTWIN_CONFIG"
MODELS_DIR = Path("models")


def _known(cls, data: Optional[dict]) -> dict:
    names = {f.name for f in fields(cls)}
    data = data or {}
    unknown = set(data) - names
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return {k: v for k, v in data.items() if k in names}


@dataclass
class GestureConfig:
    mirrored: bool = True
    pinch_threshold: float = _classifier.PINCH_THRESHOLD
    grab_threshold: float = _classifier.GRAB_THRESHOLD
    segment_interval: float = _events.SEGMENT_INTERVAL
    double_pinch_window: float = _events.DOUBLE_PINCH_WINDOW
    rotation_mode: str = _events.RotationMode.ANGLE_DELTA.value
    angle_gain: float = _events.ANGLE_GAIN
    min_angle_delta: float = _events.MIN_ANGLE_DELTA
    max_angle_delta: float = _events.MAX_ANGLE_DELTA
    cursor_dampening: float = _events.CURSOR_DAMPENING

    def build_classifier(self) -> _classifier.LandmarkGestureClassifier:
        return _classifier.LandmarkGestureClassifier(
            mirrored=self.mirrored,
            pinch_threshold=self.pinch_threshold,
            grab_threshold=self.grab_threshold,
        )

    def build_detector(self) -> _events.TemporalGestureEventDetector:
        return _events.TemporalGestureEventDetector(
            segment_interval=self.segment_interval,
            double_pinch_window=self.double_pinch_window,
            rotation_mode=_events.RotationMode(self.rotation_mode),
            angle_gain=self.angle_gain,
            min_angle_delta=self.min_angle_delta,
            max_angle_delta=self.max_angle_delta,
            cursor_dampening=self.cursor_dampening,
        )


@dataclass
class GeometryConfig:
    threshold_fraction: float = THRESHOLD_FRACTION
    min_positive_pixels: int = 100
    min_region_size: int = 10
    trace_stride: int = _contours.TRACE_STRIDE
    max_trace_steps: int = _contours.MAX_TRACE_STEPS
    min_closing_points: int = _contours.MIN_CLOSING_POINTS
    min_contour_points: int = _contours.MIN_CONTOUR_POINTS
    simplify_tolerance: float = _contours.SIMPLIFY_TOLERANCE
    particle_stride: int = _particles.PARTICLE_STRIDE
    particle_extent: float = _particles.PARTICLE_EXTENT
    particle_jitter: float = _particles.PARTICLE_JITTER


@dataclass
class InferenceConfig:
    encoder_path: str = str(MODELS_DIR / "sam_vit_b_01ec64.quant.encoder.onnx")
    decoder_path: str = str(MODELS_DIR / "sam_vit_b_01ec64.quant.decoder.onnx")
    providers: list[str] = field(default_factory=lambda: ["CPUExecutionProvider"])
    autoload: bool = False


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8765
    log_level: str = "info"
    ws_timeout: float = 30.0


@dataclass
class BioTwinConfig:
    gesture: GestureConfig = field(default_factory=GestureConfig)
    geometry: GeometryConfig = field(default_factory=GeometryConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> BioTwinConfig:
        data = data or {}
        return cls(
            gesture=GestureConfig(**_known(GestureConfig, data.get("gesture"))),
            geometry=GeometryConfig(**_known(GeometryConfig, data.get("geometry"))),
            inference=InferenceConfig(**_known(InferenceConfig, data.get("inference"))),
            server=ServerConfig(**_known(ServerConfig, data.get("server"))),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> BioTwinConfig:
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data)

    def to_yaml(self, path: str | Path):
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)


def load_config(path: Optional[str | Path] = None) -> BioTwinConfig:
    """Load from `path`, else $BIOTWIN_CONFIG, else defaults."""
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return BioTwinConfig()

    logger.info("Loading configuration from %s", path)
    return BioTwinConfig.from_yaml(path)
