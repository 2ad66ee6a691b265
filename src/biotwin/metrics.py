"""Prometheus text-format metrics for the BioTwin server.

No client library: the exposition format is rendered directly.

Tracked metrics:
- biotwin_frames_total (counter)
- biotwin_hands_detected_total (counter)
- biotwin_actions_total (counter, by action type)
- biotwin_decodes_total (counter)
- biotwin_conversions_total (counter)
- biotwin_stale_results_total (counter)
- biotwin_inference_errors_total (counter)
- biotwin_frame_latency_seconds (histogram)
- biotwin_geometry_latency_seconds (histogram)
- biotwin_active_connections (gauge)
"""

from __future__ import annotations

import threading
import time
from collections import Counter


class _Histogram:
    """Cumulative-bucket histogram."""

    def __init__(self, buckets: list[float]):
        self.buckets = sorted(buckets)
        self.bucket_counts = [0] * len(self.buckets)
        self.count = 0
        self.sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float):
        with self._lock:
            self.count += 1
            self.sum += value
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    self.bucket_counts[i] += 1
                    break

    def render(self, name: str, help_text: str) -> list[str]:
        lines = [f"# HELP {name} {help_text}", f"# TYPE {name} histogram"]
        with self._lock:
            cumulative = 0
            for bound, count in zip(self.buckets, self.bucket_counts):
                cumulative += count
                lines.append(f'{name}_bucket{{le="{bound}"}} {cumulative}')
            lines.append(f'{name}_bucket{{le="+Inf"}} {self.count}')
            lines.append(f"{name}_sum {self.sum:.6f}")
            lines.append(f"{name}_count {self.count}")
        return lines


def _metric(name: str, kind: str, help_text: str, value) -> list[str]:
    return [f"# HELP {name} {help_text}", f"# TYPE {name} {kind}", f"{name} {value}"]


class MetricsCollector:
    """Thread-safe counters fed by the tracking loop and segmentation client."""

    def __init__(self):
        self._actions: Counter = Counter()
        self._frames_total = 0
        self._hands_total = 0
        self._decodes_total = 0
        self._conversions_total = 0
        self._stale_total = 0
        self._errors_total = 0
        self._active_connections = 0
        self._lock = threading.Lock()

        self._frame_latency = _Histogram(
            [0.001, 0.002, 0.005, 0.010, 0.016, 0.033, 0.050, 0.100]
        )
        self._geometry_latency = _Histogram(
            [0.005, 0.010, 0.025, 0.050, 0.100, 0.250, 0.500, 1.0]
        )
        self._start_time = time.time()

    def record_frame(self, latency_seconds: float, hands_detected: int):
        with self._lock:
            self._frames_total += 1
            self._hands_total += hands_detected
        self._frame_latency.observe(latency_seconds)

    def record_action(self, action_type: str):
        with self._lock:
            self._actions[action_type] += 1

    def record_decode(self, geometry_seconds: float):
        with self._lock:
            self._decodes_total += 1
        self._geometry_latency.observe(geometry_seconds)

    def record_conversion(self, geometry_seconds: float):
        """A mask submitted directly for conversion, with no decoder run."""
        with self._lock:
            self._conversions_total += 1
        self._geometry_latency.observe(geometry_seconds)

    def record_stale(self):
        with self._lock:
            self._stale_total += 1

    def record_error(self):
        with self._lock:
            self._errors_total += 1

    def set_connections(self, count: int):
        self._active_connections = count

    @property
    def action_counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._actions)

    @property
    def frames_total(self) -> int:
        return self._frames_total

    def render(self) -> str:
        lines: list[str] = []
        lines += _metric(
            "biotwin_uptime_seconds", "gauge", "Time since server start",
            f"{time.time() - self._start_time:.1f}",
        )

        with self._lock:
            lines += _metric(
                "biotwin_frames_total", "counter", "Landmark frames processed",
                self._frames_total,
            )
            lines += _metric(
                "biotwin_hands_detected_total", "counter",
                "Hands detected across all frames", self._hands_total,
            )
            lines.append("# HELP biotwin_actions_total One-shot gesture actions fired")
            lines.append("# TYPE biotwin_actions_total counter")
            for name, count in sorted(self._actions.items()):
                lines.append(f'biotwin_actions_total{{action="{name}"}} {count}')
            lines += _metric(
                "biotwin_decodes_total", "counter", "Decoder results converted to geometry",
                self._decodes_total,
            )
            lines += _metric(
                "biotwin_conversions_total", "counter",
                "Submitted masks converted to geometry", self._conversions_total,
            )
            lines += _metric(
                "biotwin_stale_results_total", "counter",
                "Decoder results discarded for a superseded image", self._stale_total,
            )
            lines += _metric(
                "biotwin_inference_errors_total", "counter",
                "Inference requests that failed", self._errors_total,
            )

        lines += self._frame_latency.render(
            "biotwin_frame_latency_seconds", "Gesture frame processing latency"
        )
        lines += self._geometry_latency.render(
            "biotwin_geometry_latency_seconds", "Mask to geometry conversion latency"
        )
        lines += _metric(
            "biotwin_active_connections", "gauge", "Current WebSocket connections",
            self._active_connections,
        )
        return "\n".join(lines) + "\n"
