"""HTTP/WebSocket gateway over one ScopedPubSub. HTTP: health, channels, stats, publish. WebSocket: ping, subscribe, unsubscribe, publish."""

from dotenv import load_dotenv
load_dotenv()

import asyncio
import json
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from scoped_pubsub import PubSubOptions, ScopedPubSub
from scoped_pubsub.observability import get_logger
from scoped_pubsub.protocol import (
    HealthResponse,
    PublishResponse,
    channels_list_response,
    stats_response,
    ws_ack,
    ws_error,
    ws_event,
    ws_info,
    ws_pong,
    ws_ts,
    ERROR_BAD_REQUEST,
    ERROR_NOT_SUBSCRIBED,
    ERROR_SLOW_CONSUMER,
    ERROR_UNAUTHORIZED,
    ERROR_INTERNAL,
)

logger = get_logger("scoped_pubsub.server")

_start_time: float = 0.0

# Active WebSocket connections for server-initiated heartbeat
_ws_connections: set = set()
_heartbeat_task: asyncio.Task | None = None


def create_bus() -> ScopedPubSub:
    """Build the gateway's client from REDIS_* / PUBSUB_SCOPE environment variables."""
    return ScopedPubSub(PubSubOptions.from_env())


# X-API-Key is compulsory: API_KEY must be set in env (or .env)
def _get_expected_api_key() -> str | None:
    return (os.environ.get("API_KEY") or "").strip() or None


class XAPIKeyMiddleware(BaseHTTPMiddleware):
    """Require X-API-Key header; API_KEY env must be set."""
    async def dispatch(self, request: Request, call_next):
        expected = _get_expected_api_key()
        if not expected:
            return JSONResponse(
                status_code=503,
                content={"error": ERROR_UNAUTHORIZED, "message": "X-API-Key required (API_KEY env not set)"},
            )
        key = (request.headers.get("X-API-Key") or "").strip()
        if key != expected:
            return JSONResponse(
                status_code=401,
                content={"error": ERROR_UNAUTHORIZED, "message": "invalid or missing X-API-Key"},
            )
        return await call_next(request)


async def _heartbeat_loop() -> None:
    """Periodically send info heartbeat (msg: ping) to all connected WebSocket clients."""
    interval = float(os.environ.get("HEARTBEAT_INTERVAL_SEC", "30"))
    if interval <= 0:
        return
    while True:
        await asyncio.sleep(interval)
        payload = ws_info("ping", ws_ts())
        dead = []
        for ws in _ws_connections:
            try:
                await ws.send_json(payload)
            except Exception:
                dead.append(ws)
        for ws in dead:
            _ws_connections.discard(ws)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _start_time, _heartbeat_task
    _start_time = time.time()
    app.state.bus = create_bus()
    _heartbeat_task = asyncio.create_task(_heartbeat_loop())
    yield
    if _heartbeat_task is not None:
        _heartbeat_task.cancel()
        try:
            await _heartbeat_task
        except asyncio.CancelledError:
            pass
    await app.state.bus.quit()


def _bus(request: Request) -> ScopedPubSub:
    return request.app.state.bus


router = APIRouter(prefix="/api/v1")


# ---- Health ----

@router.get("/health")
def health(request: Request) -> JSONResponse:
    """GET /health → { uptime_sec, scope, channels, handlers }."""
    bus = _bus(request)
    channels = bus.channels()
    body = HealthResponse(
        uptime_sec=time.time() - _start_time,
        scope=bus.scope,
        channels=len(channels),
        handlers=sum(bus.registry.handler_count(c) for c in channels),
    ).to_dict()
    return JSONResponse(content=body, status_code=200)


# ---- Channels / stats ----

@router.get("/channels")
def list_channels(request: Request) -> JSONResponse:
    """GET /channels → { channels: [ logical names ] }."""
    return JSONResponse(content=channels_list_response(_bus(request).channels()), status_code=200)


@router.get("/stats")
def stats(request: Request) -> JSONResponse:
    """GET /stats → { channels: { name: handlers }, metrics: { counters, gauges } }."""
    bus = _bus(request)
    channels = {c: bus.registry.handler_count(c) for c in bus.channels()}
    return JSONResponse(content=stats_response(channels, bus.metrics.snapshot()), status_code=200)


# ---- Publish ----

class PublishBody(BaseModel):
    channel: str
    message: Any = None


@router.post("/publish")
async def publish(body: PublishBody, request: Request) -> JSONResponse:
    """POST /publish { channel, message } → { ok, channel, receivers }."""
    channel = (body.channel or "").strip()
    if not channel:
        return JSONResponse(
            content=PublishResponse(ok=False, channel=body.channel, error="channel is required").to_dict(),
            status_code=400,
        )
    receivers = await _bus(request).publish(channel, body.message)
    return JSONResponse(
        content=PublishResponse(ok=True, channel=channel, receivers=receivers).to_dict(),
        status_code=200,
    )


# ---- WebSocket (ping, subscribe, unsubscribe, publish) ----

async def _ws_send(websocket: WebSocket, payload: dict) -> None:
    """Send JSON to client; on failure sends SLOW_CONSUMER error if possible."""
    try:
        await websocket.send_json(payload)
    except Exception:
        try:
            await websocket.send_json(ws_error(
                None, ERROR_SLOW_CONSUMER,
                "delivery failed",
                ws_ts(),
            ))
        except Exception:
            logger.warning("ws_send_failed", extra={"payload_type": payload.get("type")})


def _make_event_handler(websocket: WebSocket, channel: str, sends: set):
    """Handler that schedules sending each event over the websocket, so a slow socket never blocks dispatch.
    Scheduled sends are kept in sends until they finish."""
    def handler(value: Any, physical_channel: str) -> None:
        task = asyncio.get_running_loop().create_task(
            _ws_send(websocket, ws_event(channel, value, physical_channel, ws_ts()))
        )
        sends.add(task)
        task.add_done_callback(sends.discard)
    return handler


def _ws_api_key_ok(websocket: WebSocket) -> bool:
    """Return True if X-API-Key matches API_KEY env. API_KEY must be set."""
    expected = _get_expected_api_key()
    if not expected:
        return False
    return (websocket.headers.get("x-api-key") or "").strip() == expected


@router.websocket("/ws")
async def websocket_handler(websocket: WebSocket) -> None:
    """
    WebSocket endpoint. Messages: ping, subscribe, unsubscribe, publish.
    Server replies: pong, ack, event, error, info.
    """
    await websocket.accept()
    if not _ws_api_key_ok(websocket):
        await websocket.send_json(ws_error(
            None, ERROR_UNAUTHORIZED,
            "invalid or missing X-API-Key",
            ws_ts(),
        ))
        await websocket.close()
        return
    bus: ScopedPubSub = websocket.app.state.bus
    _ws_connections.add(websocket)
    handlers: Dict[str, Any] = {}
    sends: set = set()
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json(ws_error(None, ERROR_BAD_REQUEST, "Invalid JSON", ws_ts()))
                continue
            if not isinstance(msg, dict):
                await websocket.send_json(ws_error(None, ERROR_BAD_REQUEST, "Expected a JSON object", ws_ts()))
                continue
            msg_type = msg.get("type")
            request_id = msg.get("request_id")
            channel = msg.get("channel")

            if msg_type == "ping":
                await websocket.send_json(ws_pong(msg.get("request_id", ""), ws_ts()))
                continue

            if msg_type in ("subscribe", "unsubscribe", "publish") and not (isinstance(channel, str) and channel):
                await websocket.send_json(ws_error(
                    request_id, ERROR_BAD_REQUEST,
                    f"{msg_type} requires channel",
                    ws_ts(),
                ))
                continue

            if msg_type == "subscribe":
                if channel not in handlers:
                    handler = _make_event_handler(websocket, channel, sends)
                    await bus.subscribe(channel, handler)
                    handlers[channel] = handler
                await websocket.send_json(ws_ack(request_id, channel, ws_ts()))
                continue

            if msg_type == "unsubscribe":
                handler = handlers.pop(channel, None)
                if handler is None:
                    await websocket.send_json(ws_error(
                        request_id, ERROR_NOT_SUBSCRIBED,
                        f"Not subscribed to {channel!r}",
                        ws_ts(),
                    ))
                    continue
                await bus.unsubscribe(channel, handler)
                await websocket.send_json(ws_ack(request_id, channel, ws_ts()))
                continue

            if msg_type == "publish":
                receivers = await bus.publish(channel, msg.get("message"))
                await websocket.send_json(ws_ack(request_id, channel, ws_ts(), receivers=receivers))
                continue

            await websocket.send_json(ws_error(
                request_id, ERROR_BAD_REQUEST,
                f"Unknown type: {msg_type!r}",
                ws_ts(),
            ))
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.exception("ws_failed", extra={"error": str(e)})
        try:
            await websocket.send_json(ws_error(
                None, ERROR_INTERNAL,
                f"Unexpected server error: {e!s}",
                ws_ts(),
            ))
        except Exception:
            pass
    finally:
        _ws_connections.discard(websocket)
        if not bus.closed:
            for channel, handler in handlers.items():
                await bus.unsubscribe(channel, handler)
        for task in list(sends):
            task.cancel()


app = FastAPI(title="Scoped Pub-Sub Gateway", lifespan=lifespan)
app.add_middleware(XAPIKeyMiddleware)
app.include_router(router)
