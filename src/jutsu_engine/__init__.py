"""JutsuEngine - hand-seal recognition and jutsu progression."""

__version__ = "0.1.0"

from jutsu_engine.seals import (
    Catalog,
    ClassificationResult,
    HandSign,
    Jutsu,
    SealLabel,
    NO_DETECTION,
)
from jutsu_engine.errors import (
    JutsuEngineError,
    ModelUnavailable,
    RemoteVerificationError,
    TransientBackendFault,
    UnknownJutsu,
)
from jutsu_engine.geometry import classify_hands
from jutsu_engine.detector import HandDetector
from jutsu_engine.neural import ModelFetcher, NeuralFrameClassifier
from jutsu_engine.remote import RecognitionResult, RemoteVerifier
from jutsu_engine.classifier import (
    ClassifierBackend,
    GeometryBackend,
    NeuralBackend,
    Observation,
    RemoteBackend,
)
from jutsu_engine.progression import EventKind, JutsuSession, Phase, ProgressEvent
from jutsu_engine.config import EngineConfig, load_config, save_config
from jutsu_engine.metrics import MetricsCollector
from jutsu_engine.pipeline import SealPipeline, build_pipeline
