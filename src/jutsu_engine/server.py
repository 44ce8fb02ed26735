"""HTTP and WebSocket front end for a jutsu training session.

Every progression event is pushed to connected WebSocket clients as JSON.
When ``capture_enabled`` is set, the server also reads its own webcam and
feeds frames to the configured backend.

Usage:
    jutsu-engine serve
    # or
    uvicorn jutsu_engine.server:app --host 0.0.0.0 --port 8765
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import cv2
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from jutsu_engine import __version__
from jutsu_engine.classifier import BackendKind
from jutsu_engine.config import EngineConfig, load_config
from jutsu_engine.detector import HandDetector
from jutsu_engine.errors import ModelUnavailable, UnknownJutsu
from jutsu_engine.pipeline import SealPipeline, build_pipeline
from jutsu_engine.progression import ProgressEvent

logger = logging.getLogger("jutsu_engine.server")


class SelectRequest(BaseModel):
    jutsu: str


class ServerState:
    def __init__(self, config: Optional[EngineConfig] = None, pipeline: Optional[SealPipeline] = None):
        self.config = config
        self.pipeline = pipeline
        self.clients: set[WebSocket] = set()
        self.events: Optional[asyncio.Queue] = None
        self.stop = asyncio.Event()
        self.tasks: list[asyncio.Task] = []
        self.capturing = False
        self.started_at = time.time()

    def enqueue(self, event: ProgressEvent):
        if self.events is not None:
            self.events.put_nowait(event.to_dict())

    async def broadcast(self, message: dict):
        """Send to every client, dropping the ones that went away."""
        if not self.clients:
            return
        dead = set()
        payload = json.dumps(message, ensure_ascii=False)
        for ws in self.clients:
            try:
                await ws.send_text(payload)
            except Exception:
                dead.add(ws)
        self.clients -= dead

    async def broadcast_loop(self):
        while True:
            message = await self.events.get()
            await self.broadcast(message)

    async def capture_loop(self):
        config = self.config
        pipeline = self.pipeline

        detector = None
        if pipeline.backend.kind == BackendKind.GEOMETRY and pipeline.backend.landmark_provider is None:
            try:
                detector = HandDetector(max_hands=2)
            except ImportError as e:
                logger.error("Camera capture disabled: %s", e)
                return
            pipeline.backend.landmark_provider = detector

        capture = cv2.VideoCapture(config.camera_index)
        if not capture.isOpened():
            logger.error("Could not open camera %d", config.camera_index)
            return
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, config.camera_width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, config.camera_height)

        logger.info("Camera capture started (camera %d)", config.camera_index)
        self.capturing = True
        try:
            await pipeline.run(capture, self.stop)
        finally:
            self.capturing = False
            capture.release()
            logger.info("Camera capture stopped")


def create_app(config: Optional[EngineConfig] = None, pipeline: Optional[SealPipeline] = None) -> FastAPI:
    """Build the FastAPI app. Missing parts are created from config at startup."""
    state = ServerState(config, pipeline)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if state.config is None:
            state.config = load_config()
        if state.pipeline is None:
            state.pipeline = build_pipeline(state.config)

        state.events = asyncio.Queue()
        state.stop.clear()
        state.pipeline.on_event(state.enqueue)

        try:
            await state.pipeline.backend.start()
        except ModelUnavailable as e:
            logger.error("Backend not ready, retry via /api/model/reload: %s", e)
        await state.pipeline.session.start()

        state.tasks.append(asyncio.create_task(state.broadcast_loop()))
        if state.config.capture_enabled:
            state.tasks.append(asyncio.create_task(state.capture_loop()))

        logger.info("Jutsu engine ready (backend=%s)", state.config.backend)
        try:
            yield
        finally:
            state.stop.set()
            for task in state.tasks:
                task.cancel()
            await asyncio.gather(*state.tasks, return_exceptions=True)
            state.tasks.clear()
            await state.pipeline.close()

    app = FastAPI(title="JutsuEngine", version=__version__, lifespan=lifespan)
    app.state.engine = state

    @app.get("/api/status")
    async def api_status():
        pipeline = state.pipeline
        return {
            "backend": pipeline.backend.kind.value,
            "model_status": pipeline.backend.status,
            "session": pipeline.session.snapshot().to_dict(),
            "clients": len(state.clients),
            "capturing": state.capturing,
            "frames": pipeline.total_frames,
            "uptime_seconds": round(time.time() - state.started_at, 1),
        }

    @app.get("/api/jutsu")
    async def list_jutsu():
        catalog = state.pipeline.session.catalog
        return {"jutsu": [j.to_dict() for j in catalog]}

    @app.get("/api/signs")
    async def list_signs():
        catalog = state.pipeline.session.catalog
        return {"signs": [s.to_dict() for s in catalog.signs]}

    @app.post("/api/session/select")
    async def select_jutsu(req: SelectRequest):
        session = state.pipeline.session
        try:
            session.select(req.jutsu)
        except UnknownJutsu:
            raise HTTPException(status_code=404, detail=f"Unknown jutsu: {req.jutsu}")
        return session.snapshot().to_dict()

    @app.post("/api/session/abandon")
    async def abandon_jutsu():
        session = state.pipeline.session
        session.abandon()
        return session.snapshot().to_dict()

    @app.post("/api/model/reload")
    async def reload_model():
        backend = state.pipeline.backend
        if backend.kind != BackendKind.NEURAL:
            raise HTTPException(status_code=400, detail="Active backend has no model to load")
        try:
            await backend.start()
        except ModelUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"status": backend.status}

    @app.get("/metrics")
    async def metrics():
        return PlainTextResponse(
            state.pipeline.metrics.render(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        await ws.accept()
        state.clients.add(ws)
        logger.info("Client connected (%d total)", len(state.clients))

        try:
            await ws.send_json({
                "type": "connected",
                "session": state.pipeline.session.snapshot().to_dict(),
            })

            while True:
                try:
                    msg = await asyncio.wait_for(ws.receive_text(), timeout=30)
                except asyncio.TimeoutError:
                    await ws.send_json({"type": "ping"})
                    continue

                data = json.loads(msg)
                kind = data.get("type")
                if kind == "ping":
                    await ws.send_json({"type": "pong", "server_time": time.time()})
                elif kind == "select":
                    try:
                        state.pipeline.session.select(str(data.get("jutsu", "")))
                    except UnknownJutsu as e:
                        await ws.send_json({"type": "error", "message": str(e)})
                elif kind == "abandon":
                    state.pipeline.session.abandon()
                elif kind == "status":
                    await ws.send_json({
                        "type": "status",
                        "session": state.pipeline.session.snapshot().to_dict(),
                    })
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.debug("WebSocket error: %s", e)
        finally:
            state.clients.discard(ws)
            logger.info("Client disconnected (%d total)", len(state.clients))

    return app


app = create_app()
