"""Whole-frame seal classification with a YOLOX-style ONNX detector.

The detector is only used as a classifier: boxes are ignored and the single
best ``objectness * class_prob`` over every prediction decides the label.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional, Sequence
from urllib.parse import quote

import cv2
import httpx
import numpy as np
import onnxruntime as ort

from jutsu_engine.errors import ModelUnavailable, TransientBackendFault
from jutsu_engine.seals import NO_DETECTION, ClassificationResult, SealLabel

logger = logging.getLogger("jutsu_engine.neural")

NEURAL_LABELS: tuple[SealLabel, ...] = tuple(SealLabel)

INPUT_SIZE = 416
OBJECTNESS_THRESHOLD = 0.4
SCORE_THRESHOLD = 0.6

# Anything smaller is an HTML interstitial, not an ONNX graph
MIN_MODEL_BYTES = 200_000

MODEL_FILE_ID = "18HvHluoCAkzRqNwTDkOh3JgP0jBlaT8x"


def default_mirrors(file_id: str = MODEL_FILE_ID) -> list[str]:
    """Download URL for the published model followed by proxy fallbacks."""
    direct = f"https://docs.google.com/uc?export=download&id={file_id}"
    encoded = quote(direct, safe="")
    return [
        direct,
        f"https://api.allorigins.win/raw?url={encoded}",
        f"https://api.codetabs.com/v1/proxy?quest={encoded}",
        f"https://corsproxy.io/?{encoded}",
    ]


class ModelFetcher:
    """Fetches model bytes from an ordered list of mirrors.

    A mirror is skipped when it errors, returns a non-200 status, or serves a
    payload below ``min_bytes``. Raises ModelUnavailable once all are spent.
    """

    def __init__(
        self,
        mirrors: Optional[Sequence[str]] = None,
        min_bytes: int = MIN_MODEL_BYTES,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.mirrors = list(mirrors) if mirrors is not None else default_mirrors()
        self.min_bytes = min_bytes
        self.timeout = timeout
        self._client = client

    async def fetch(self) -> bytes:
        if self._client is not None:
            return await self._fetch_with(self._client)
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            return await self._fetch_with(client)

    async def _fetch_with(self, client: httpx.AsyncClient) -> bytes:
        last_error = ""

        for url in self.mirrors:
            source = url.split("?")[0]
            logger.info("Fetching model via %s", source)
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.warning("Mirror %s failed: %s", source, last_error)
                continue

            if response.status_code != 200:
                last_error = f"HTTP {response.status_code}"
                logger.warning("Mirror %s returned status %d", source, response.status_code)
                continue

            payload = response.content
            if len(payload) < self.min_bytes:
                last_error = f"payload too small ({len(payload)} bytes)"
                logger.warning(
                    "Mirror %s served %d bytes, likely a placeholder page; trying next",
                    source, len(payload),
                )
                continue

            logger.info("Model acquired from %s (%.1f KB)", source, len(payload) / 1024)
            return payload

        raise ModelUnavailable(
            f"All model mirrors failed. Last error: {last_error or 'access denied'}"
        )

    async def download(self, path: str | Path) -> Path:
        """Fetch the model and write it to ``path``."""
        path = Path(path)
        payload = await self.fetch()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)
        return path


def _default_session(payload: bytes):
    return ort.InferenceSession(payload, providers=["CPUExecutionProvider"])


class NeuralFrameClassifier:
    """Classifies raw camera frames with an ONNX detection model.

    ``load_model()`` must succeed before ``classify()`` returns anything but
    NO_DETECTION. Inference calls are serialized because a single
    InferenceSession handle is shared.
    """

    def __init__(
        self,
        labels: Sequence[SealLabel] = NEURAL_LABELS,
        model_path: Optional[str | Path] = None,
        fetcher: Optional[ModelFetcher] = None,
        session_factory: Callable[[bytes], object] = _default_session,
        input_size: int = INPUT_SIZE,
        objectness_threshold: float = OBJECTNESS_THRESHOLD,
        score_threshold: float = SCORE_THRESHOLD,
        input_channel_order: str = "bgr",
    ):
        if input_channel_order not in ("bgr", "rgb"):
            raise ValueError(f"input_channel_order must be 'bgr' or 'rgb', got {input_channel_order!r}")

        self.labels = tuple(labels)
        self.model_path = Path(model_path) if model_path else None
        self.fetcher = fetcher or ModelFetcher()
        self.input_size = input_size
        self.objectness_threshold = objectness_threshold
        self.score_threshold = score_threshold
        self.input_channel_order = input_channel_order

        self._session_factory = session_factory
        self._session = None
        self._input_name: Optional[str] = None
        self._last_error: Optional[str] = None
        self._load_lock = asyncio.Lock()
        self._run_lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._session is not None

    @property
    def status(self) -> str:
        """``ready``, ``failed`` (last load raised) or ``offline``."""
        if self._session is not None:
            return "ready"
        if self._last_error is not None:
            return "failed"
        return "offline"

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    async def load_model(self):
        """Obtain the model payload and create the inference session.

        Safe to call again after a failure to retry.

        Raises:
            ModelUnavailable: no mirror or local file produced a usable model.
        """
        async with self._load_lock:
            if self._session is not None:
                return

            try:
                payload = await self._read_payload()
                session = await asyncio.to_thread(self._session_factory, payload)
            except ModelUnavailable as e:
                self._last_error = str(e)
                logger.error("Neural backend unavailable: %s", e)
                raise
            except Exception as e:
                self._last_error = str(e)
                logger.error("Inference backend rejected model payload: %s", e)
                raise ModelUnavailable(f"Model payload could not be loaded: {e}") from e

            self._session = session
            self._input_name = session.get_inputs()[0].name
            self._last_error = None
            logger.info("Neural seal classifier ready (%d classes)", len(self.labels))

    async def _read_payload(self) -> bytes:
        if self.model_path is not None:
            if self.model_path.is_file():
                logger.info("Loading model from %s", self.model_path)
                return await asyncio.to_thread(self.model_path.read_bytes)
            logger.warning("Model file %s not found, falling back to mirrors", self.model_path)
        return await self.fetcher.fetch()

    def preprocess(self, frame: np.ndarray) -> np.ndarray:
        """Turn an (H, W, 3|4) uint8 frame into a (1, 3, S, S) float32 tensor.

        The frame is stretched to the square input size, mirrored to match
        the selfie-camera view, put in BGR order and scaled to [0, 1].
        """
        frame = np.asarray(frame)
        if frame.ndim != 3 or frame.shape[2] < 3:
            raise ValueError(f"Expected an (H, W, 3) image, got shape {frame.shape}")

        image = np.ascontiguousarray(frame[..., :3])
        image = cv2.resize(image, (self.input_size, self.input_size), interpolation=cv2.INTER_LINEAR)
        image = cv2.flip(image, 1)
        if self.input_channel_order == "rgb":
            image = image[..., ::-1]

        tensor = image.astype(np.float32) / 255.0
        return np.ascontiguousarray(tensor.transpose(2, 0, 1))[np.newaxis]

    def decode(self, output: np.ndarray, num_classes: Optional[int] = None) -> tuple[int, float]:
        """Best (class_id, score) across all predictions, or (-1, -1.0).

        Each prediction row is ``[cx, cy, w, h, objectness, p_0 .. p_C-1]``.
        Rows at or below the objectness threshold are skipped.
        """
        num_classes = num_classes or len(self.labels)
        stride = 5 + num_classes

        data = np.asarray(output, dtype=np.float32).reshape(-1)
        num_predictions = data.size // stride
        if num_predictions == 0:
            return -1, -1.0

        rows = data[: num_predictions * stride].reshape(num_predictions, stride)
        rows = rows[rows[:, 4] > self.objectness_threshold]
        if rows.shape[0] == 0:
            return -1, -1.0

        scores = rows[:, 4:5] * rows[:, 5:]
        best = int(np.argmax(scores))
        return best % num_classes, float(scores.flat[best])

    def _run(self, tensor: np.ndarray) -> np.ndarray:
        return self._session.run(None, {self._input_name: tensor})[0]

    async def _infer(self, frame: np.ndarray) -> tuple[int, float]:
        try:
            tensor = self.preprocess(frame)
            output = await asyncio.to_thread(self._run, tensor)
            return self.decode(output)
        except Exception as e:
            raise TransientBackendFault(f"Inference failed: {e}") from e

    async def classify(self, frame: Optional[np.ndarray]) -> ClassificationResult:
        """Classify one frame. Never raises; faults count as no detection."""
        if self._session is None or frame is None:
            return NO_DETECTION

        async with self._run_lock:
            try:
                class_id, score = await self._infer(frame)
            except TransientBackendFault as e:
                logger.debug("Inference skipped for this frame: %s", e)
                return NO_DETECTION

        if class_id < 0 or score <= self.score_threshold:
            return NO_DETECTION
        return ClassificationResult(label=self.labels[class_id], confidence=min(score, 1.0))
