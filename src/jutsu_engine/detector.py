"""Hand landmark tracking using MediaPipe."""

from __future__ import annotations

import numpy as np

try:
    import mediapipe as mp
except ImportError:
    mp = None


class HandDetector:
    """Extracts 21 3D hand landmarks per hand using MediaPipe Hands.

    Landmarks stay in image space: x and y normalized to [0, 1] by image
    width and height, z is depth relative to the wrist. The seal rules rely
    on the distance between the two wrists, so no per-hand normalization is
    applied here.
    """

    NUM_LANDMARKS = 21

    def __init__(
        self,
        max_hands: int = 2,
        min_detection_confidence: float = 0.7,
        min_tracking_confidence: float = 0.5,
        static_image_mode: bool = False,
    ):
        if mp is None:
            raise ImportError(
                "mediapipe is required. Install with: pip install 'jutsu-engine[camera]'"
            )

        self.max_hands = max_hands
        self._hands = mp.solutions.hands.Hands(
            static_image_mode=static_image_mode,
            max_num_hands=max_hands,
            min_detection_confidence=min_detection_confidence,
            min_tracking_confidence=min_tracking_confidence,
        )

    def detect(self, frame_rgb: np.ndarray) -> list[np.ndarray]:
        """Detect hands in an RGB frame.

        Returns:
            List of landmark arrays, each shape (21, 3). Empty if no hands.
        """
        results = self._hands.process(frame_rgb)

        if not results.multi_hand_landmarks:
            return []

        return [
            np.array(
                [[lm.x, lm.y, lm.z] for lm in hand_landmarks.landmark],
                dtype=np.float32,
            )
            for hand_landmarks in results.multi_hand_landmarks
        ]

    def __call__(self, frame_rgb: np.ndarray) -> list[np.ndarray]:
        return self.detect(frame_rgb)

    def close(self):
        """Release MediaPipe resources."""
        self._hands.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
