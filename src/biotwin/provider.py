"""Landmark provider: 21-point hand landmarks from MediaPipe Hands."""

import numpy as np

try:
    import mediapipe as mp
except ImportError:
    mp = None


class HandLandmark:
    """MediaPipe hand landmark indices."""

    WRIST = 0
    THUMB_CMC, THUMB_MCP, THUMB_IP, THUMB_TIP = 1, 2, 3, 4
    INDEX_MCP, INDEX_PIP, INDEX_DIP, INDEX_TIP = 5, 6, 7, 8
    MIDDLE_MCP, MIDDLE_PIP, MIDDLE_DIP, MIDDLE_TIP = 9, 10, 11, 12
    RING_MCP, RING_PIP, RING_DIP, RING_TIP = 13, 14, 15, 16
    PINKY_MCP, PINKY_PIP, PINKY_DIP, PINKY_TIP = 17, 18, 19, 20

    FINGERTIPS = (THUMB_TIP, INDEX_TIP, MIDDLE_TIP, RING_TIP, PINKY_TIP)

    COUNT = 21


class MediaPipeLandmarkProvider:
    """Yields, per frame, the landmarks of every detected hand.

    Each hand is a (21, 3) float32 array of (x, y, z) normalized to [0, 1]
    in image space. At most `max_hands` hands are returned, in detection
    order; consumers use the first one.
    """

    def __init__(
        self,
        max_hands: int = 2,
        min_detection_confidence: float = 0.7,
        min_tracking_confidence: float = 0.5,
    ):
        if mp is None:
            raise ImportError(
                "mediapipe is required. Install with: pip install mediapipe"
            )

        self.max_hands = max_hands
        self._hands = mp.solutions.hands.Hands(
            static_image_mode=False,
            max_num_hands=max_hands,
            min_detection_confidence=min_detection_confidence,
            min_tracking_confidence=min_tracking_confidence,
        )

    def detect(self, frame_rgb: np.ndarray) -> list[np.ndarray]:
        """Detect hands in an RGB frame (H, W, 3) uint8.

        Returns:
            List of landmark arrays, each shape (21, 3). Empty when no hand.
        """
        results = self._hands.process(frame_rgb)

        if not results.multi_hand_landmarks:
            return []

        return [
            np.array(
                [[lm.x, lm.y, lm.z] for lm in hand.landmark],
                dtype=np.float32,
            )
            for hand in results.multi_hand_landmarks[: self.max_hands]
        ]

    def close(self):
        """Release MediaPipe resources."""
        self._hands.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
