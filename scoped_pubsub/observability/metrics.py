"""Counters and gauges for one pub-sub client (publishes, deliveries, failures)."""

import threading
from typing import Dict

# Counter names
PUBLISHED = "published"
RECEIVED = "received"
DELIVERED = "delivered"
HANDLER_ERRORS = "handler_errors"
MALFORMED_PAYLOADS = "malformed_payloads"
REMOTE_SUBSCRIBES = "remote_subscribes"
REMOTE_UNSUBSCRIBES = "remote_unsubscribes"

# Gauge names
CHANNELS = "channels"


class Metrics:
    """In-memory metrics collector; safe to read from another thread (e.g. a stats endpoint)."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = {}
        self._gauges: Dict[str, int] = {}
        self._lock = threading.Lock()

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def set_gauge(self, name: str, value: int) -> None:
        with self._lock:
            self._gauges[name] = value

    def get_counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def get_gauge(self, name: str) -> int:
        with self._lock:
            return self._gauges.get(name, 0)

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        """Return a copy of all counters and gauges."""
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
            }
