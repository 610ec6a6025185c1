"""Message shapes for the HTTP and WebSocket gateway (health, publish, events)."""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# ---- Health ----

@dataclass
class HealthResponse:
    """Response for GET /health."""
    uptime_sec: float
    scope: Optional[str]
    channels: int
    handlers: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_sec": int(self.uptime_sec),
            "scope": self.scope,
            "channels": self.channels,
            "handlers": self.handlers,
        }


# ---- Publish ----

@dataclass
class PublishResponse:
    """Response for POST /publish. receivers is what Redis reported for PUBLISH."""
    ok: bool
    channel: str
    receivers: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        if d.get("error") is None:
            d.pop("error", None)
        return d


def stats_response(channels: Dict[str, int], metrics: Dict[str, Dict[str, int]]) -> Dict[str, Any]:
    """Response for GET /stats."""
    return {"channels": channels, "metrics": metrics}


def channels_list_response(channels: List[str]) -> Dict[str, Any]:
    """Response for GET /channels."""
    return {"channels": channels}


# ---- WebSocket: Server → Client ----

# Error codes (use with ws_error)
ERROR_BAD_REQUEST = "BAD_REQUEST"
ERROR_NOT_SUBSCRIBED = "NOT_SUBSCRIBED"
ERROR_SLOW_CONSUMER = "SLOW_CONSUMER"
ERROR_UNAUTHORIZED = "UNAUTHORIZED"
ERROR_INTERNAL = "INTERNAL"


def ws_ts() -> str:
    """Current UTC timestamp in ISO 8601 (e.g. 2025-08-25T10:00:00Z)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def ws_ack(
    request_id: Optional[str],
    channel: Optional[str],
    ts: str,
    receivers: Optional[int] = None,
) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": "ack", "status": "ok", "ts": ts}
    if request_id is not None:
        out["request_id"] = request_id
    if channel is not None:
        out["channel"] = channel
    if receivers is not None:
        out["receivers"] = receivers
    return out


def ws_event(channel: str, message: Any, physical_channel: str, ts: str) -> Dict[str, Any]:
    return {
        "type": "event",
        "channel": channel,
        "physical_channel": physical_channel,
        "message": message,
        "ts": ts,
    }


def ws_error(request_id: Optional[str], code: str, message: str, ts: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "type": "error",
        "error": {"code": code, "message": message},
        "ts": ts,
    }
    if request_id is not None:
        out["request_id"] = request_id
    return out


def ws_pong(request_id: str, ts: str) -> Dict[str, Any]:
    return {"type": "pong", "request_id": request_id, "ts": ts}


def ws_info(msg: str, ts: str, channel: Optional[str] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": "info", "msg": msg, "ts": ts}
    if channel is not None:
        out["channel"] = channel
    return out
