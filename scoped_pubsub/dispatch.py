"""Inbound side: one listener task on the receiver connection, routing messages to registered handlers.

Redis confirms every SUBSCRIBE/UNSUBSCRIBE with a confirmation event on the same
stream that carries messages, so the listener also resolves the futures callers
wait on for those acknowledgements.
"""

import asyncio
import enum
import inspect
import json
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from redis.asyncio.client import PubSub
from redis import exceptions

from scoped_pubsub.observability import Metrics, get_logger
from scoped_pubsub.observability import metrics as m
from scoped_pubsub.registry import ChannelRegistry
from scoped_pubsub.scope import Scoper

SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"

# Seconds the listener blocks on the socket before looping again.
DEFAULT_POLL_TIMEOUT = 1.0

# Backoff between reads after the receiver connection drops.
DEFAULT_RETRY_DELAY = 0.1
MAX_RETRY_DELAY = 5.0


class ChannelState(enum.Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBING = "unsubscribing"


def _consume_result(future: asyncio.Future) -> None:
    # Keeps asyncio from reporting failures nobody is waiting on anymore.
    if not future.cancelled():
        future.exception()


class Dispatcher:
    """Owns the receiver PubSub object, its listener task and the remote subscription state per physical channel."""

    def __init__(
        self,
        pubsub: PubSub,
        registry: ChannelRegistry,
        scoper: Scoper,
        metrics: Optional[Metrics] = None,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        self._pubsub = pubsub
        self._registry = registry
        self._scoper = scoper
        self._metrics = metrics or Metrics()
        self._poll_timeout = poll_timeout
        self._retry_delay = retry_delay
        self._task: Optional[asyncio.Task] = None
        self._pending: Dict[Tuple[str, str], Deque[asyncio.Future]] = {}
        self._states: Dict[str, ChannelState] = {}
        self._logger = get_logger("scoped_pubsub.dispatch")

    @property
    def pubsub(self) -> PubSub:
        return self._pubsub

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def in_listener(self) -> bool:
        """True when called from the listener task itself (i.e. from inside a handler)."""
        return self._task is not None and asyncio.current_task() is self._task

    def state(self, physical: str) -> ChannelState:
        return self._states.get(physical, ChannelState.UNSUBSCRIBED)

    # ---- Remote subscription lifecycle ----

    async def subscribe(self, physical: str) -> asyncio.Future:
        """Send SUBSCRIBE and return a future resolved by Redis' confirmation."""
        future = self._expect(SUBSCRIBE, physical)
        self._states[physical] = ChannelState.SUBSCRIBING
        try:
            await self._pubsub.subscribe(physical)
        except BaseException as exc:
            self._abandon(SUBSCRIBE, physical, future, exc)
            raise
        self._metrics.increment(m.REMOTE_SUBSCRIBES)
        self.start()
        return future

    async def unsubscribe(self, physical: str) -> asyncio.Future:
        """Send UNSUBSCRIBE and return a future resolved by Redis' confirmation."""
        future = self._expect(UNSUBSCRIBE, physical)
        self._states[physical] = ChannelState.UNSUBSCRIBING
        try:
            await self._pubsub.unsubscribe(physical)
        except BaseException as exc:
            self._abandon(UNSUBSCRIBE, physical, future, exc)
            raise
        self._metrics.increment(m.REMOTE_UNSUBSCRIBES)
        self.start()
        return future

    def in_flight(self, physical: str, kind: str = SUBSCRIBE) -> Optional[asyncio.Future]:
        """Most recent unacknowledged future of this kind for the channel, if any."""
        queue = self._pending.get((kind, physical))
        return queue[-1] if queue else None

    def pending_futures(self) -> List[asyncio.Future]:
        return [future for queue in self._pending.values() for future in queue]

    async def drain(self) -> None:
        """Wait until every outstanding SUBSCRIBE/UNSUBSCRIBE has been acknowledged (or failed)."""
        if self.in_listener():
            return
        futures = self.pending_futures()
        if futures:
            await asyncio.gather(*futures, return_exceptions=True)

    def fail_pending(self, exc: BaseException) -> None:
        """Fail every outstanding acknowledgement with exc."""
        for queue in self._pending.values():
            for future in queue:
                if not future.done():
                    future.set_exception(exc)
        self._pending.clear()
        self._states.clear()

    def _expect(self, kind: str, physical: str) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_result)
        self._pending.setdefault((kind, physical), deque()).append(future)
        return future

    def _abandon(self, kind: str, physical: str, future: asyncio.Future, exc: BaseException) -> None:
        queue = self._pending.get((kind, physical))
        if queue is not None and future in queue:
            queue.remove(future)
            if not queue:
                del self._pending[(kind, physical)]
        if not future.done():
            if isinstance(exc, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(exc)
        if (SUBSCRIBE, physical) not in self._pending and (UNSUBSCRIBE, physical) not in self._pending:
            self._states.pop(physical, None)

    def _acknowledge(self, kind: str, physical: str) -> None:
        queue = self._pending.get((kind, physical))
        if queue:
            future = queue.popleft()
            if not queue:
                del self._pending[(kind, physical)]
            if not future.done():
                future.set_result(None)
        self._settle(physical, kind)

    def _settle(self, physical: str, kind: str) -> None:
        # The channel's state follows the last command sent; it only becomes
        # final once no command for it is waiting on Redis.
        if (SUBSCRIBE, physical) in self._pending or (UNSUBSCRIBE, physical) in self._pending:
            return
        current = self._states.get(physical)
        if current is ChannelState.SUBSCRIBING or (current is None and kind == SUBSCRIBE):
            self._states[physical] = ChannelState.SUBSCRIBED
        elif current is ChannelState.UNSUBSCRIBING:
            del self._states[physical]

    # ---- Listener task ----

    def start(self) -> None:
        """Start the listener task (idempotent). Needs a connection, so call after the first SUBSCRIBE."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._listen())

    async def stop(self) -> None:
        """Cancel the listener task and wait for it to finish."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _listen(self) -> None:
        delay = self._retry_delay
        while True:
            try:
                message = await self._pubsub.get_message(timeout=self._poll_timeout)
            except (exceptions.ConnectionError, exceptions.TimeoutError) as exc:
                # redis-py reconnects and resubscribes on the next read; keep reading.
                self._logger.warning("listener_disconnected", extra={"error": str(exc), "retry_in": delay})
                self.fail_pending(exc)
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_RETRY_DELAY)
                continue
            except Exception as exc:
                self._logger.exception("listener_failed", extra={"error": str(exc)})
                self.fail_pending(exc)
                return
            delay = self._retry_delay
            if message is not None:
                await self.handle(message)

    async def handle(self, message: Dict[str, Any]) -> None:
        """Process one event read from the receiver connection."""
        kind = message.get("type")
        channel = message.get("channel")
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")
        if kind in (SUBSCRIBE, UNSUBSCRIBE):
            self._acknowledge(kind, channel)
        elif kind == "message":
            await self.dispatch(channel, message.get("data"))

    async def dispatch(self, physical: str, data: Any) -> int:
        """
        Invoke every handler registered for the message's logical channel, in
        registration order, with (decoded value, physical channel).
        Returns the number of handlers that completed without raising.
        """
        logical = self._scoper.to_logical(physical)
        if logical is None:
            return 0
        handlers = self._registry.lookup(logical)
        if not handlers:
            return 0
        self._metrics.increment(m.RECEIVED)
        self._logger.debug(
            "delivering",
            extra={"channel": physical, "handler_count": len(handlers)},
        )
        delivered = 0
        for handler in handlers:
            # Each handler gets its own decoded copy of the payload.
            try:
                value = json.loads(data)
            except (TypeError, ValueError) as exc:
                self._metrics.increment(m.MALFORMED_PAYLOADS)
                self._logger.warning(
                    "malformed_payload",
                    extra={"channel": physical, "error": str(exc)},
                )
                return delivered
            try:
                result = handler(value, physical)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self._metrics.increment(m.HANDLER_ERRORS)
                self._logger.exception(
                    "handler_failed",
                    extra={"channel": physical, "handler": repr(handler), "error": str(exc)},
                )
                continue
            delivered += 1
            self._metrics.increment(m.DELIVERED)
        return delivered
