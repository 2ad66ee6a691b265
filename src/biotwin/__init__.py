"""BioTwin - gesture-driven segmentation explorer."""

__version__ = "0.1.0"

from biotwin.classifier import CursorState, GestureSnapshot, LandmarkGestureClassifier
from biotwin.events import (
    GestureEvents,
    RotationMode,
    SegmentAt,
    TemporalGestureEventDetector,
    ToggleExplosion,
)
from biotwin.mask import MaskStats, analyze_mask
from biotwin.contours import ContourSimplifier, ContourTracer
from biotwin.particles import ParticleCloud, ParticleSampler
from biotwin.geometry_pipeline import GeometryPipeline, GeometryResult
from biotwin.config import BioTwinConfig, load_config
from biotwin.inference import SamBackend, SessionManager
from biotwin.worker import SegmentationClient, SegmentationWorker
from biotwin.tracking import CallbackSlot, HandTrackingLoop
from biotwin.session import ExplorerSession
from biotwin.recorder import LandmarkPlayer, LandmarkRecorder
from biotwin.profiler import PipelineProfiler
from biotwin.metrics import MetricsCollector
