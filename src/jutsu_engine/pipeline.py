"""Frame loop tying one classifier backend to one jutsu session."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, Protocol, Sequence

import numpy as np

from jutsu_engine.classifier import (
    ClassifierBackend,
    GeometryBackend,
    LandmarkProvider,
    NeuralBackend,
    Observation,
    RemoteBackend,
)
from jutsu_engine.errors import RemoteRateLimited, RemoteVerificationError
from jutsu_engine.config import EngineConfig
from jutsu_engine.metrics import MetricsCollector
from jutsu_engine.neural import ModelFetcher, NeuralFrameClassifier
from jutsu_engine.progression import EventKind, JutsuSession, ProgressEvent
from jutsu_engine.remote import RemoteVerifier
from jutsu_engine.seals import NO_DETECTION, Catalog, ClassificationResult

logger = logging.getLogger("jutsu_engine.pipeline")


class FrameSource(Protocol):
    """Anything with OpenCV's ``VideoCapture.read()`` contract."""

    def read(self) -> tuple[bool, Optional[np.ndarray]]: ...


class SealPipeline:
    """Routes frames to a backend and backend results to the session.

    Per-frame backends (geometry, neural) classify every frame handed to
    ``process_frame()`` and report the label to the session's hold ticker.
    Polling backends (remote) are asked at most once per ``poll_interval``
    through ``verify_frame()``, with one request in flight at a time.
    """

    def __init__(
        self,
        session: JutsuSession,
        backend: ClassifierBackend,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.session = session
        self.backend = backend
        self.metrics = metrics or MetricsCollector()

        self._in_flight = False
        self._last_poll = float("-inf")
        self._poll_tasks: set[asyncio.Task] = set()
        self._total_frames = 0
        self._chained_retry: Optional[Callable[[RemoteVerificationError], None]] = None

        self.session.on_event(self._record_event)
        self.metrics.set_chakra(self.session.chakra)
        verifier = getattr(backend, "verifier", None)
        if isinstance(verifier, RemoteVerifier):
            self._chained_retry = verifier.on_retry
            verifier.on_retry = self._record_retry

    @property
    def polling(self) -> bool:
        return self.backend.poll_interval is not None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def total_frames(self) -> int:
        return self._total_frames

    def on_event(self, callback: Callable[[ProgressEvent], None]):
        """Register a callback for progression events."""
        self.session.on_event(callback)

    async def start(self):
        """Prepare the backend, then start the session timers.

        Raises:
            ModelUnavailable: the neural backend could not load its model.
        """
        await self.backend.start()
        await self.session.start()

    async def close(self):
        for task in list(self._poll_tasks):
            task.cancel()
        if self._poll_tasks:
            await asyncio.gather(*self._poll_tasks, return_exceptions=True)
        self._poll_tasks.clear()
        await self.session.close()
        await self.backend.close()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def process_frame(
        self,
        frame: Optional[np.ndarray] = None,
        hands: Optional[Sequence[np.ndarray]] = None,
    ) -> ClassificationResult:
        """Classify one frame for a per-frame backend and report the label."""
        self._total_frames += 1
        target = self.session.target
        if target is None or not self.session.capturing:
            return NO_DETECTION

        t0 = time.perf_counter()
        result = await self.backend.classify(Observation(frame=frame, hands=hands, target=target))
        self.metrics.record_classification(
            result.label.value if result.label else None, time.perf_counter() - t0
        )
        self.session.report(result.label)
        return result

    async def verify_frame(self, frame: np.ndarray) -> list[ProgressEvent]:
        """Run one polling verification and apply it if still relevant."""
        if self._in_flight:
            return []
        ticket = self.session.ticket()
        if ticket is None:
            return []

        self._in_flight = True
        self._last_poll = time.monotonic()
        t0 = time.perf_counter()
        try:
            result = await self.backend.classify(Observation(frame=frame, target=ticket.target))
        finally:
            self._in_flight = False
        self.metrics.record_classification(
            result.label.value if result.label else None, time.perf_counter() - t0
        )

        if not self.session.is_current(ticket):
            logger.info("Session moved on during verification, dropping result")
            self.metrics.record_verification("stale")
            return []

        self.metrics.record_verification("match" if result.detected else "no_match")
        return self.session.confirm(result.detected, ticket, result.tip)

    def poll_due(self, now: Optional[float] = None) -> bool:
        if self._in_flight or self.session.ticket() is None:
            return False
        now = time.monotonic() if now is None else now
        return now - self._last_poll >= self.backend.poll_interval

    async def feed(self, frame: np.ndarray):
        """Hand one captured frame to whichever mode the backend uses."""
        if not self.polling:
            await self.process_frame(frame)
            return

        self._total_frames += 1
        if self.poll_due():
            task = asyncio.create_task(self.verify_frame(frame.copy()))
            self._poll_tasks.add(task)
            task.add_done_callback(self._poll_tasks.discard)

    async def run(self, source: FrameSource, stop: Optional[asyncio.Event] = None):
        """Read frames until the source is exhausted or ``stop`` is set."""
        while stop is None or not stop.is_set():
            ok, frame = await asyncio.to_thread(source.read)
            if not ok or frame is None:
                logger.info("Frame source exhausted after %d frames", self._total_frames)
                break
            await self.feed(frame)
            await asyncio.sleep(0)

    def _record_event(self, event: ProgressEvent):
        if event.kind == EventKind.STEP_ADVANCED:
            self.metrics.record_step(event.jutsu_id)
        elif event.kind == EventKind.ACTIVATED:
            self.metrics.record_step(event.jutsu_id)
            self.metrics.record_activation(event.jutsu_id)
        self.metrics.set_chakra(event.chakra)

    def _record_retry(self, error: RemoteVerificationError):
        self.metrics.record_retry("rate_limited" if isinstance(error, RemoteRateLimited) else "server_error")
        if self._chained_retry is not None:
            self._chained_retry(error)


def load_catalog(config: EngineConfig) -> Catalog:
    if config.catalog_path:
        return Catalog.from_yaml(config.catalog_path)
    return Catalog.with_defaults()


def build_backend(
    config: EngineConfig,
    catalog: Optional[Catalog] = None,
    landmark_provider: Optional[LandmarkProvider] = None,
    http_client=None,
) -> ClassifierBackend:
    """Create the backend named by ``config.backend``."""
    if config.backend == "geometry":
        return GeometryBackend(landmark_provider, hold_duration=config.geometry_hold)

    if config.backend == "neural":
        fetcher = ModelFetcher(
            mirrors=config.model_mirrors,
            min_bytes=config.model_min_bytes,
            timeout=config.model_timeout,
            client=http_client,
        )
        classifier = NeuralFrameClassifier(model_path=config.model_path, fetcher=fetcher)
        return NeuralBackend(classifier, hold_duration=config.neural_hold)

    if config.backend == "remote":
        if not config.remote_api_key:
            logger.warning("No GEMINI_API_KEY configured; remote verification will be rejected")
        verifier = RemoteVerifier(
            api_key=config.remote_api_key,
            model=config.remote_model,
            api_base=config.remote_api_base,
            max_retries=config.remote_max_retries,
            backoff_seconds=config.remote_backoff,
            timeout=config.remote_timeout,
            client=http_client,
        )
        return RemoteBackend(
            verifier,
            catalog=catalog,
            language=config.language,
            poll_interval=config.remote_poll_interval,
        )

    raise ValueError(f"Unknown backend {config.backend!r}")


def build_session(config: EngineConfig, catalog: Optional[Catalog] = None) -> JutsuSession:
    return JutsuSession(
        catalog,
        hold_duration=config.hold_duration,
        tick_interval=config.tick_interval,
        chakra=config.starting_chakra,
        max_chakra=config.max_chakra,
        jutsu_cost=config.jutsu_cost,
        regen_amount=config.regen_amount,
        regen_interval=config.regen_interval,
        activation_display=config.activation_display,
        language=config.language,
    )


def build_pipeline(
    config: EngineConfig,
    catalog: Optional[Catalog] = None,
    metrics: Optional[MetricsCollector] = None,
    landmark_provider: Optional[LandmarkProvider] = None,
    http_client=None,
) -> SealPipeline:
    catalog = catalog or load_catalog(config)
    backend = build_backend(config, catalog, landmark_provider, http_client)
    session = build_session(config, catalog)
    return SealPipeline(session, backend, metrics)
