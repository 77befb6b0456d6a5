import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable

import anyio
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from matlab_bridge.session import BridgeSession
from matlab_bridge.settings import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(levelname)s:%(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

router = APIRouter()


def get_session(request: Request) -> BridgeSession:
    return request.app.state.session


def sse_event(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def event_stream(
    is_disconnected: Callable[[], Awaitable[bool]],
    interval: float,
) -> AsyncIterator[str]:
    """``connected`` once, then a ``ping`` every ``interval`` seconds."""
    yield sse_event("connected", {"status": "ready"})
    while True:
        await anyio.sleep(interval)
        if await is_disconnected():
            break
        yield sse_event("ping", {"timestamp": int(time.time() * 1000)})
    logger.info("SSE client disconnected")


@router.get("/health")
async def health(session: BridgeSession = Depends(get_session)):
    return {
        "status": "ok",
        "connected": session.connected,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/sse")
async def sse(request: Request, session: BridgeSession = Depends(get_session)):
    logger.info("SSE connection established")
    return StreamingResponse(
        event_stream(request.is_disconnected, session.settings.sse_ping_interval),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/mcp")
async def relay(request: Request, session: BridgeSession = Depends(get_session)):
    try:
        body = await request.json()
        if not isinstance(body, dict):
            raise ValueError("JSON-RPC request body must be an object")
        logger.info("Received MCP request  method=%s  id=%r", body.get("method"), body.get("id"))
        return await session.dispatch(body)
    except Exception as e:
        logger.error("Error processing MCP request: %s", e)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "message": str(e)},
        )


@router.get("/ws")
async def websocket_stub():
    return JSONResponse(
        status_code=400,
        content={
            "error": "WebSocket upgrade required",
            "message": "WebSocket transport is not supported here; POST JSON-RPC requests to /mcp",
        },
    )


def create_app(session: BridgeSession | None = None) -> FastAPI:
    session = session or BridgeSession(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await session.start()
        logger.info("MATLAB MCP Bridge ready  connected=%s", session.connected)
        yield
        await session.shutdown()

    app = FastAPI(title="MATLAB MCP Bridge", lifespan=lifespan)
    app.state.session = session
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        return await call_next(request)

    app.include_router(router)
    return app


app = create_app()
