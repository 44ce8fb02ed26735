"""Interchangeable seal classifier backends.

Every backend turns an Observation into a ClassificationResult. The
progression session only ever sees those results, never a concrete backend
or an exception.

    GeometryBackend  landmarks  -> rule-based label (hold 0.8s)
    NeuralBackend    raw frame  -> ONNX detector label (hold 0.4s)
    RemoteBackend    JPEG frame -> remote verifier verdict (one-shot, polled)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

import cv2
import numpy as np

from jutsu_engine.geometry import classify_hands
from jutsu_engine.neural import NeuralFrameClassifier
from jutsu_engine.remote import RemoteVerifier
from jutsu_engine.seals import NO_DETECTION, Catalog, ClassificationResult, SealLabel

logger = logging.getLogger("jutsu_engine.classifier")

LandmarkProvider = Callable[[np.ndarray], Sequence[np.ndarray]]


class BackendKind(Enum):
    GEOMETRY = "geometry"
    NEURAL = "neural"
    REMOTE = "remote"


@dataclass
class Observation:
    """Input for one classification call.

    Attributes:
        frame: BGR image (H, W, 3), uint8, as delivered by OpenCV.
        hands: Landmark arrays already extracted for this frame.
        target: Seal the user is expected to be forming (remote backend).
    """
    frame: Optional[np.ndarray] = None
    hands: Optional[Sequence[np.ndarray]] = None
    target: Optional[SealLabel] = None


class ClassifierBackend(ABC):
    """Common contract for all classifier backends."""

    kind: BackendKind
    # Seconds a seal must be held; None = a single positive result advances.
    hold_duration: Optional[float] = None
    # Seconds between polls; None = classify every delivered frame.
    poll_interval: Optional[float] = None

    @abstractmethod
    async def classify(self, observation: Observation) -> ClassificationResult:
        """Classify one observation. Must not raise."""

    async def start(self):
        """Prepare resources (load models, open clients)."""

    async def close(self):
        """Release resources."""

    @property
    def one_shot(self) -> bool:
        return self.hold_duration is None

    @property
    def status(self) -> str:
        return "ready"


class GeometryBackend(ClassifierBackend):
    """Rule-based classification over hand landmarks."""

    kind = BackendKind.GEOMETRY

    def __init__(
        self,
        landmark_provider: Optional[LandmarkProvider] = None,
        hold_duration: float = 0.8,
    ):
        self.landmark_provider = landmark_provider
        self.hold_duration = hold_duration

    async def classify(self, observation: Observation) -> ClassificationResult:
        hands = observation.hands
        if hands is None and observation.frame is not None and self.landmark_provider is not None:
            try:
                frame_rgb = cv2.cvtColor(observation.frame, cv2.COLOR_BGR2RGB)
                hands = self.landmark_provider(frame_rgb)
            except Exception as e:
                logger.debug("Landmark tracking failed for this frame: %s", e)
                return NO_DETECTION

        label = classify_hands(hands)
        if label is None:
            return NO_DETECTION
        return ClassificationResult(label=label, confidence=1.0)

    async def close(self):
        close = getattr(self.landmark_provider, "close", None)
        if close is not None:
            close()


class NeuralBackend(ClassifierBackend):
    """Whole-frame classification with the ONNX seal detector."""

    kind = BackendKind.NEURAL

    def __init__(self, classifier: NeuralFrameClassifier, hold_duration: float = 0.4):
        self.classifier = classifier
        self.hold_duration = hold_duration

    async def start(self):
        # ModelUnavailable propagates: the caller must tell the user and offer a retry.
        await self.classifier.load_model()

    async def classify(self, observation: Observation) -> ClassificationResult:
        return await self.classifier.classify(observation.frame)

    @property
    def status(self) -> str:
        return self.classifier.status


class RemoteBackend(ClassifierBackend):
    """Asks a remote vision model whether the frame shows the target seal."""

    kind = BackendKind.REMOTE

    def __init__(
        self,
        verifier: RemoteVerifier,
        catalog: Optional[Catalog] = None,
        language: str = "en",
        poll_interval: float = 6.0,
        jpeg_quality: int = 80,
    ):
        self.verifier = verifier
        self.catalog = catalog or Catalog.with_defaults()
        self.language = language
        self.poll_interval = poll_interval
        self.jpeg_quality = jpeg_quality

    def encode(self, frame: np.ndarray) -> bytes:
        ok, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not ok:
            raise ValueError("JPEG encoding failed")
        return buffer.tobytes()

    async def classify(self, observation: Observation) -> ClassificationResult:
        if observation.target is None or observation.frame is None:
            return NO_DETECTION

        try:
            jpeg = self.encode(observation.frame)
        except (cv2.error, ValueError) as e:
            logger.debug("Could not encode frame for verification: %s", e)
            return NO_DETECTION

        seal_name = self.catalog.sign_name(observation.target, self.language)
        result = await self.verifier.verify(jpeg, seal_name, self.language)
        return ClassificationResult(
            label=observation.target if result.match else None,
            confidence=result.confidence,
            tip=result.tip,
        )

    async def close(self):
        await self.verifier.close()
