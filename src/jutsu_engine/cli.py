"""JutsuEngine CLI.

Usage:
    jutsu-engine serve         — Start the HTTP/WebSocket server
    jutsu-engine practice      — Train a jutsu in front of the local camera
    jutsu-engine catalog       — List jutsu and hand signs
    jutsu-engine fetch-model   — Download and validate the neural model
    jutsu-engine verify        — Ask the remote verifier about one image
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from jutsu_engine.config import EngineConfig, load_config

app = typer.Typer(
    name="jutsu-engine",
    help="🥷 Hand-seal recognition and jutsu training.",
    add_completion=False,
)

ConfigOption = typer.Option(None, "--config", "-c", help="Path to a YAML config file")


def _setup(config_path: Optional[str], log_level: Optional[str] = None, **overrides) -> EngineConfig:
    try:
        config = load_config(config_path)
    except (OSError, ValueError) as e:
        typer.echo(f"❌ Invalid configuration: {e}", err=True)
        raise typer.Exit(1)

    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)
    try:
        config.validate()
    except ValueError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    logging.basicConfig(
        level=getattr(logging, (log_level or config.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return config


@app.command()
def serve(
    config_path: Optional[str] = ConfigOption,
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Port"),
    backend: Optional[str] = typer.Option(None, help="geometry, neural or remote"),
    capture: bool = typer.Option(False, "--capture", help="Read frames from the server's camera"),
    log_level: Optional[str] = typer.Option(None, help="Log level"),
):
    """Start the HTTP/WebSocket server."""
    import uvicorn
    from jutsu_engine.server import create_app

    config = _setup(config_path, log_level, host=host, port=port, backend=backend)
    if capture:
        config.capture_enabled = True

    typer.echo(f"🚀 Starting JutsuEngine on {config.host}:{config.port} (backend: {config.backend})")
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_level=config.log_level)


@app.command()
def practice(
    jutsu: str = typer.Argument(..., help="Jutsu id, e.g. chidori"),
    config_path: Optional[str] = ConfigOption,
    backend: Optional[str] = typer.Option(None, help="geometry, neural or remote"),
    camera: Optional[int] = typer.Option(None, help="Camera device index"),
    language: Optional[str] = typer.Option(None, help="en or zh"),
):
    """Form a jutsu's seals in front of the camera until it activates."""
    import cv2
    from jutsu_engine.detector import HandDetector
    from jutsu_engine.errors import ModelUnavailable, UnknownJutsu
    from jutsu_engine.pipeline import build_pipeline
    from jutsu_engine.progression import EventKind

    config = _setup(config_path, backend=backend, camera_index=camera, language=language)

    provider = None
    if config.backend == "geometry":
        try:
            provider = HandDetector(max_hands=2)
        except ImportError as e:
            typer.echo(f"❌ {e}", err=True)
            raise typer.Exit(1)

    pipeline = build_pipeline(config, landmark_provider=provider)
    try:
        target = pipeline.session.catalog.jutsu(jutsu)
    except UnknownJutsu as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    cap = cv2.VideoCapture(config.camera_index)
    if not cap.isOpened():
        typer.echo(f"❌ Could not open camera {config.camera_index}", err=True)
        raise typer.Exit(1)

    stop = asyncio.Event()

    def show(event):
        if event.kind == EventKind.PROGRESS:
            return
        typer.echo(f"[{event.kind.value}] {event.message}  (chakra {event.chakra:.0f})")
        if event.kind == EventKind.ACTIVATED:
            stop.set()

    pipeline.on_event(show)

    async def run():
        try:
            await pipeline.start()
        except ModelUnavailable as e:
            typer.echo(f"❌ {e}", err=True)
            await pipeline.close()
            return False
        try:
            pipeline.session.select(target)
            await pipeline.run(cap, stop)
        finally:
            await pipeline.close()
        return stop.is_set()

    typer.echo(f"🎥 Practising {target.name.get(config.language)} — press Ctrl+C to stop")
    try:
        activated = asyncio.run(run())
    except KeyboardInterrupt:
        activated = False
    finally:
        cap.release()

    if not activated:
        raise typer.Exit(1)


@app.command()
def catalog(
    config_path: Optional[str] = ConfigOption,
    language: Optional[str] = typer.Option(None, help="en or zh"),
):
    """List the available jutsu and hand signs."""
    from jutsu_engine.pipeline import load_catalog

    config = _setup(config_path, "warning", language=language)
    cat = load_catalog(config)
    lang = config.language

    typer.echo("📜 Jutsu:")
    for j in cat:
        seals = " → ".join(cat.sign_name(s, lang) for s in j.sequence)
        typer.echo(f"  {j.id:<12} {j.name.get(lang):<28} {j.difficulty.value:<7} {seals}")

    typer.echo("\n🤞 Hand signs:")
    for s in cat.signs:
        typer.echo(f"  {s.id.value:<8} {s.name.get(lang):<10} {s.description.get(lang)}")


@app.command("fetch-model")
def fetch_model(
    output: str = typer.Option("models/seals.onnx", "-o", help="Where to write the model"),
    config_path: Optional[str] = ConfigOption,
):
    """Download the neural seal model through the mirror list."""
    from jutsu_engine.errors import ModelUnavailable
    from jutsu_engine.neural import ModelFetcher

    config = _setup(config_path)
    fetcher = ModelFetcher(
        mirrors=config.model_mirrors,
        min_bytes=config.model_min_bytes,
        timeout=config.model_timeout,
    )
    try:
        path = asyncio.run(fetcher.download(output))
    except ModelUnavailable as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"✅ Model saved to {path} ({path.stat().st_size / 1024:.0f} KB)")


@app.command()
def verify(
    image: str = typer.Argument(..., help="JPEG/PNG image of the hands"),
    seal: str = typer.Argument(..., help="Seal to check for, e.g. tiger"),
    config_path: Optional[str] = ConfigOption,
    language: Optional[str] = typer.Option(None, help="en or zh"),
):
    """Send one image to the remote verifier and print its verdict."""
    import cv2
    from jutsu_engine.remote import RemoteVerifier
    from jutsu_engine.seals import Catalog, SealLabel

    config = _setup(config_path, language=language)
    if not config.remote_api_key:
        typer.echo("❌ Set GEMINI_API_KEY or remote_api_key in the config", err=True)
        raise typer.Exit(1)

    try:
        label = SealLabel.parse(seal)
    except ValueError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    path = Path(image)
    frame = cv2.imread(str(path))
    if frame is None:
        typer.echo(f"❌ Could not read image: {image}", err=True)
        raise typer.Exit(1)
    ok, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, 80])
    if not ok:
        typer.echo("❌ JPEG encoding failed", err=True)
        raise typer.Exit(1)

    verifier = RemoteVerifier(
        api_key=config.remote_api_key,
        model=config.remote_model,
        api_base=config.remote_api_base,
        max_retries=config.remote_max_retries,
        backoff_seconds=config.remote_backoff,
        timeout=config.remote_timeout,
    )
    seal_name = Catalog.with_defaults().sign_name(label, config.language)

    async def run():
        try:
            return await verifier.verify(buffer.tobytes(), seal_name, config.language)
        finally:
            await verifier.close()

    result = asyncio.run(run())
    mark = "✅" if result.match else "❌"
    typer.echo(f"{mark} {seal_name}: match={result.match} confidence={result.confidence:.2f}")
    if result.tip:
        typer.echo(f"   {result.tip}")
    if not result.match:
        raise typer.Exit(1)


def main():
    app()


if __name__ == "__main__":
    main()
