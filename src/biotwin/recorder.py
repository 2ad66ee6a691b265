"""Landmark recording and replay, so gesture sessions run without a camera."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterator, Optional

import numpy as np

logger = logging.getLogger("biotwin.recorder")

FORMAT_VERSION = 1


@dataclass
class RecordedFrame:
    timestamp: float  # seconds from recording start
    hands: list = field(default_factory=list)  # (21, 3) landmarks per hand
    actions: list[dict] = field(default_factory=list)


class LandmarkRecorder:
    """Captures per-frame landmarks (and any fired actions) to JSON.

    Usage:
        recorder = LandmarkRecorder()
        recorder.start()
        recorder.add_frame(hands, [a.to_dict() for a in events.actions])
        recorder.stop()
        recorder.save("session.json")
    """

    def __init__(self):
        self._frames: list[RecordedFrame] = []
        self._start_time: Optional[float] = None
        self._recording = False

    def start(self):
        self._frames = []
        self._start_time = time.monotonic()
        self._recording = True

    def stop(self) -> int:
        """Stop recording. Returns number of frames captured."""
        self._recording = False
        return len(self._frames)

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    @property
    def duration(self) -> float:
        return self._frames[-1].timestamp if self._frames else 0.0

    def add_frame(
        self,
        hands: list,
        actions: Optional[list[dict]] = None,
        timestamp: Optional[float] = None,
    ):
        """Append one frame; ignored unless recording."""
        if not self._recording:
            return

        if timestamp is None:
            timestamp = time.monotonic() - self._start_time
        self._frames.append(RecordedFrame(
            timestamp=float(timestamp),
            hands=[np.asarray(h, dtype=np.float32).tolist() for h in hands or []],
            actions=list(actions or []),
        ))

    def save(self, path: str | Path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "version": FORMAT_VERSION,
            "frame_count": len(self._frames),
            "duration": self.duration,
            "frames": [asdict(f) for f in self._frames],
        }
        with open(path, "w") as f:
            json.dump(data, f)
        logger.info("Saved %d frames to %s", len(self._frames), path)


class LandmarkPlayer:
    """Replays a recorded session as numpy landmark frames."""

    def __init__(self, frames: list[RecordedFrame]):
        self._frames = frames

    @classmethod
    def load(cls, path: str | Path) -> LandmarkPlayer:
        with open(path) as f:
            data = json.load(f)

        version = data.get("version", FORMAT_VERSION)
        if version != FORMAT_VERSION:
            raise ValueError(f"Unsupported recording version: {version}")

        frames = [
            RecordedFrame(
                timestamp=float(f["timestamp"]),
                hands=f.get("hands", []),
                actions=f.get("actions", []),
            )
            for f in data["frames"]
        ]
        return cls(frames)

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    @property
    def duration(self) -> float:
        return self._frames[-1].timestamp if self._frames else 0.0

    def play(self) -> Iterator[RecordedFrame]:
        """Iterate through all frames without timing."""
        for frame in self._frames:
            yield RecordedFrame(
                timestamp=frame.timestamp,
                hands=[np.array(h, dtype=np.float32) for h in frame.hands],
                actions=frame.actions,
            )

    def play_realtime(self, speed: float = 1.0) -> Iterator[RecordedFrame]:
        """Replay at the recorded timing, scaled by `speed`."""
        if speed <= 0:
            raise ValueError("speed must be positive")

        start = time.monotonic()
        for frame in self.play():
            target = frame.timestamp / speed
            elapsed = time.monotonic() - start
            if target > elapsed:
                time.sleep(target - elapsed)
            yield frame
