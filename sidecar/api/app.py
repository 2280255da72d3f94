"""FastAPI surface: HTTP and WebSocket entrypoints into the dispatcher."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Set

from fastapi import APIRouter, Body, FastAPI, Request, WebSocket, WebSocketDisconnect

from sidecar.bootstrap import SidecarEngine, build_engine
from sidecar.hosts.bridge import BridgeHost

LOGGER = logging.getLogger(__name__)

router = APIRouter()


def _engine(container: Any) -> SidecarEngine:
    return container.app.state.engine


@router.get("/healthz")
async def healthz(request: Request) -> Dict[str, Any]:
    engine = _engine(request)
    host = engine.host
    return {
        "status": "ok",
        "host": type(host).__name__,
        "bridgeConnected": host.connected if isinstance(host, BridgeHost) else None,
        "providers": engine.providers.keys(),
    }


@router.post("/api/v1/messages")
async def post_message(request: Request, message: Any = Body(...)) -> Dict[str, Any]:
    engine = _engine(request)
    sender = {"transport": "http", "client": request.client.host if request.client else None}
    response = await engine.dispatcher.dispatch(message, sender)
    return response.to_wire()


@router.websocket("/ws/client")
async def client_endpoint(websocket: WebSocket) -> None:
    engine = _engine(websocket)
    await websocket.accept()
    send_lock = asyncio.Lock()
    tasks: Set[asyncio.Task] = set()
    sender = {"transport": "websocket", "client": websocket.client.host if websocket.client else None}
    LOGGER.info("Client connection opened from %s", sender["client"])

    async def _serve(frame: Any) -> None:
        correlation = frame.get("id") if isinstance(frame, dict) else None
        response = await engine.dispatcher.dispatch(frame, sender)
        reply = response.to_wire()
        if correlation is not None:
            reply["id"] = correlation
        async with send_lock:
            await websocket.send_json(reply)

    def _finalise(completed: asyncio.Task) -> None:
        tasks.discard(completed)
        if completed.cancelled():
            return
        error = completed.exception()
        if error is not None and not isinstance(error, (WebSocketDisconnect, RuntimeError)):
            LOGGER.error("Client request failed", exc_info=error)

    try:
        while True:
            frame = await websocket.receive_json()
            task = asyncio.create_task(_serve(frame))
            tasks.add(task)
            task.add_done_callback(_finalise)
    except WebSocketDisconnect:
        LOGGER.info("Client connection closed")
    finally:
        for task in list(tasks):
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


@router.websocket("/ws/bridge")
async def bridge_endpoint(websocket: WebSocket) -> None:
    engine = _engine(websocket)
    if not isinstance(engine.host, BridgeHost):
        await websocket.close(code=1008)
        return
    await engine.host.attach(websocket)


def create_app(engine: Optional[SidecarEngine] = None) -> FastAPI:
    """Build the ASGI app; the engine is started and stopped with it."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "engine", None) is None:
            app.state.engine = build_engine()
        await app.state.engine.start()
        try:
            yield
        finally:
            await app.state.engine.stop()

    app = FastAPI(title="Sidecar orchestration engine", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine
    app.include_router(router)
    return app
