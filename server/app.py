"""FastAPI application -- run control, live progress and analysis routes."""

import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

import asyncio
from typing import List

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from fastapi.middleware.cors import CORSMiddleware

from server.config import Settings
from server.dependencies import (
    current_runtime,
    get_controller,
    get_publisher,
    get_settings,
    get_store,
)
from server.schemas import ControlResponse, DomainAnalysis, RunStatusResponse
from server.services import analysis_service
from server.services.event_publisher import EventPublisher, format_sse
from server.services.question_store import QuestionStore
from server.services.run_controller import RunController
from server.__version__ import __version__

logger = logging.getLogger("quizbench")

SSE_KEEPALIVE_S = 15.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan: configure logging and create tables. Controller is built lazily."""
    from server.db.session import init_db
    settings: Settings = app.dependency_overrides.get(get_settings, get_settings)()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db(settings)
    ts = datetime.utcnow().isoformat() + "Z"
    logger.info("[%s] Startup: domains=%s", ts, ", ".join(settings.domains))
    yield
    runtime = current_runtime()
    if runtime is not None:
        await runtime.shutdown()
    logger.info("[%s] Shutdown: complete", datetime.utcnow().isoformat() + "Z")


app = FastAPI(title="Quizbench", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_settings().cors_origins),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---- Health (no dependencies, always fast) ----

@app.get("/health")
def health():
    """Minimal health check. No deps. Always returns immediately."""
    return {"ok": True}


# ---- Run control ----
# Async routes: control calls must run on the event loop that owns the run.

@app.post("/evaluations/start", response_model=ControlResponse)
async def evaluations_start(controller: RunController = Depends(get_controller)):
    """Start a full sweep. Rejected (not queued) while a run is active."""
    return controller.start()


@app.post("/evaluations/quick-start", response_model=ControlResponse)
async def evaluations_quick_start(controller: RunController = Depends(get_controller)):
    """Start a bounded random-sample sweep."""
    return controller.quick_start()


@app.post("/evaluations/pause", response_model=ControlResponse)
async def evaluations_pause(controller: RunController = Depends(get_controller)):
    return controller.pause()


@app.post("/evaluations/resume", response_model=ControlResponse)
async def evaluations_resume(controller: RunController = Depends(get_controller)):
    return controller.resume()


@app.post("/evaluations/stop", response_model=ControlResponse)
async def evaluations_stop(controller: RunController = Depends(get_controller)):
    return controller.stop()


@app.post("/evaluations/reset", response_model=ControlResponse)
async def evaluations_reset(controller: RunController = Depends(get_controller)):
    """Stop and return to idle; observers should clear their logs."""
    return controller.reset()


@app.get("/evaluations/status", response_model=RunStatusResponse)
async def evaluations_status(
    controller: RunController = Depends(get_controller),
    publisher: EventPublisher = Depends(get_publisher),
):
    return {**controller.status(), "observers": publisher.observer_count}


# ---- Live progress (SSE + WebSocket) ----

@app.get("/evaluations/stream")
async def evaluations_stream(request: Request, publisher: EventPublisher = Depends(get_publisher)):
    """SSE stream of progress events. No replay for late joiners."""
    sub = publisher.register()

    async def event_generator():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(sub.get(), timeout=SSE_KEEPALIVE_S)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield format_sse(event)
        finally:
            publisher.unregister(sub)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def _until_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass


@app.websocket("/ws")
async def events_socket(websocket: WebSocket, publisher: EventPublisher = Depends(get_publisher)):
    """Progress events as JSON text frames, one per event."""
    sub = publisher.register()
    await websocket.accept()
    closed = asyncio.create_task(_until_disconnect(websocket))
    try:
        while not closed.done():
            getter = asyncio.ensure_future(sub.get())
            done, _ = await asyncio.wait({getter, closed}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                break
            await websocket.send_json(getter.result())
    except WebSocketDisconnect:
        pass
    finally:
        publisher.unregister(sub)
        closed.cancel()


# ---- Analysis ----

@app.get("/analysis", response_model=List[DomainAnalysis])
def analysis(store: QuestionStore = Depends(get_store)):
    """Accuracy and mean response time per domain, from stored results."""
    return analysis_service.run_analysis(store)


@app.get("/analysis/{domain}", response_model=DomainAnalysis)
def analysis_domain(domain: str, store: QuestionStore = Depends(get_store)):
    if domain not in store.domains:
        raise HTTPException(status_code=404, detail=f"Unknown domain: {domain}")
    summary = analysis_service.summarize_domain(domain, store.list_all(domain))
    if summary is None:
        raise HTTPException(status_code=404, detail=f"No questions in domain: {domain}")
    return summary
