"""Engine configuration: dataclass defaults, YAML file, environment overrides."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from jutsu_engine.neural import MIN_MODEL_BYTES, default_mirrors
from jutsu_engine.remote import DEFAULT_API_BASE, DEFAULT_MODEL

logger = logging.getLogger("jutsu_engine.config")

BACKENDS = ("geometry", "neural", "remote")
LANGUAGES = ("en", "zh")

ENV_OVERRIDES = {
    "GEMINI_API_KEY": "remote_api_key",
    "JUTSU_ENGINE_BACKEND": "backend",
    "JUTSU_ENGINE_LANGUAGE": "language",
    "JUTSU_ENGINE_MODEL_PATH": "model_path",
}


@dataclass
class EngineConfig:
    backend: str = "geometry"
    language: str = "en"

    # Camera
    camera_index: int = 0
    camera_width: int = 640
    camera_height: int = 480
    capture_enabled: bool = False

    # Progression
    tick_interval: float = 0.1
    geometry_hold: float = 0.8
    neural_hold: float = 0.4
    remote_poll_interval: float = 6.0
    starting_chakra: float = 100.0
    max_chakra: float = 100.0
    jutsu_cost: float = 30.0
    regen_amount: float = 5.0
    regen_interval: float = 1.0
    activation_display: float = 5.0

    # Neural model
    model_path: Optional[str] = None
    model_mirrors: list[str] = field(default_factory=default_mirrors)
    model_min_bytes: int = MIN_MODEL_BYTES
    model_timeout: float = 60.0

    # Remote verification
    remote_api_base: str = DEFAULT_API_BASE
    remote_model: str = DEFAULT_MODEL
    remote_api_key: str = ""
    remote_max_retries: int = 2
    remote_backoff: float = 2.0
    remote_timeout: float = 30.0

    # Catalog override (YAML)
    catalog_path: Optional[str] = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8765
    log_level: str = "info"

    def validate(self) -> EngineConfig:
        """Raise ValueError on settings the engine cannot run with."""
        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown backend {self.backend!r}; expected one of {BACKENDS}")
        if self.language not in LANGUAGES:
            raise ValueError(f"Unknown language {self.language!r}; expected one of {LANGUAGES}")
        for name in (
            "tick_interval", "geometry_hold", "neural_hold", "remote_poll_interval",
            "regen_interval", "max_chakra",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.remote_max_retries < 0:
            raise ValueError("remote_max_retries must be >= 0")
        return self

    @property
    def hold_duration(self) -> Optional[float]:
        """Hold time for the configured backend (None = one-shot)."""
        if self.backend == "geometry":
            return self.geometry_hold
        if self.backend == "neural":
            return self.neural_hold
        return None

    def to_dict(self) -> dict:
        return asdict(self)


def load_config(path: Optional[str | Path] = None, env: Optional[dict] = None) -> EngineConfig:
    """Build a config from defaults, an optional YAML file, then env vars.

    Unknown keys in the file are ignored with a warning.
    """
    data: dict = {}
    if path is not None:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(EngineConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))

    config = EngineConfig(**{k: v for k, v in data.items() if k in known})

    env = os.environ if env is None else env
    for var, attr in ENV_OVERRIDES.items():
        if env.get(var):
            setattr(config, attr, env[var])

    return config.validate()


def save_config(config: EngineConfig, path: str | Path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
