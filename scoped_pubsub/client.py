"""ScopedPubSub: publish JSON events and subscribe handlers to scoped Redis channels."""

import asyncio
import json
from typing import Any, Callable, List, Optional

import redis.asyncio as redis

from scoped_pubsub.config import PubSubOptions
from scoped_pubsub.dispatch import ChannelState, Dispatcher
from scoped_pubsub.observability import Metrics, get_logger
from scoped_pubsub.observability import metrics as m
from scoped_pubsub.registry import ChannelRegistry, Handler
from scoped_pubsub.scope import Scoper

ClientFactory = Callable[[PubSubOptions], redis.Redis]
Callback = Callable[[], Any]


class PubSubClosedError(RuntimeError):
    """Raised when a ScopedPubSub is used after quit() or close()."""


def default_client_factory(options: PubSubOptions) -> redis.Redis:
    """One Redis connection pool per call; AUTH is sent on connect when a password is set."""
    return redis.Redis(
        host=options.host,
        port=options.port,
        password=options.auth,
        decode_responses=True,
    )


def _run_callback_when_done(future: asyncio.Future, callback: Callback) -> None:
    def done(f: asyncio.Future) -> None:
        if not f.cancelled() and f.exception() is None:
            callback()

    future.add_done_callback(done)


class ScopedPubSub:
    """
    Publish/subscribe over Redis with optional namespace isolation.

    Two connections are opened: Redis forbids regular commands on a connection
    in subscribe mode, so publishes go out on one and messages arrive on the
    other. Every handler subscribed to a logical channel is called with
    ``(value, physical_channel)`` for each message published on it within the
    same scope.

    Usage::

        bus = ScopedPubSub(scope="app1")
        await bus.subscribe("events.created", on_created)
        await bus.publish("events.created", {"id": 42})
        await bus.quit()
    """

    def __init__(
        self,
        options: Optional[PubSubOptions] = None,
        *,
        client_factory: Optional[ClientFactory] = None,
        metrics: Optional[Metrics] = None,
        **overrides: Any,
    ) -> None:
        self._options = (options or PubSubOptions()).with_overrides(**overrides)
        factory = client_factory or default_client_factory
        self._emitter = factory(self._options)
        self._receiver = factory(self._options)
        self._scoper = Scoper(self._options.scope)
        self._registry = ChannelRegistry()
        self._metrics = metrics or Metrics()
        self._dispatcher = Dispatcher(
            self._receiver.pubsub(),
            self._registry,
            self._scoper,
            metrics=self._metrics,
        )
        self._closed = False
        self._logger = get_logger("scoped_pubsub.client")

    @property
    def options(self) -> PubSubOptions:
        return self._options

    @property
    def scope(self) -> Optional[str]:
        return self._options.scope

    @property
    def scoper(self) -> Scoper:
        return self._scoper

    @property
    def registry(self) -> ChannelRegistry:
        return self._registry

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def closed(self) -> bool:
        return self._closed

    def get_client(self) -> redis.Redis:
        """Return the publishing connection, usable as a regular Redis client to save a connection."""
        return self._emitter

    get_redis_client = get_client

    def channels(self) -> List[str]:
        """Logical channels with at least one local handler."""
        return self._registry.channels()

    def channel_state(self, channel: str) -> ChannelState:
        """Remote subscription state of a logical channel."""
        return self._dispatcher.state(self._scoper.to_physical(channel))

    async def subscribe(self, channel: str, handler: Handler, callback: Optional[Callback] = None) -> None:
        """
        Register handler for a logical channel.

        Redis is only asked to SUBSCRIBE for the channel's first handler; later
        calls wait for that subscription to be acknowledged if it still is in
        flight. callback, if given, runs once the subscription is active.
        The same handler may be registered several times and is then called
        once per registration. If the subscription fails, the handler is not kept.
        """
        self._check_open()
        physical = self._scoper.to_physical(channel)
        first = self._registry.register(channel, handler)
        self._metrics.set_gauge(m.CHANNELS, len(self._registry))
        if first:
            try:
                ack = await self._dispatcher.subscribe(physical)
            except BaseException:
                self._registry.unregister(channel, handler)
                self._metrics.set_gauge(m.CHANNELS, len(self._registry))
                raise
            self._logger.info("subscribed", extra={"channel": physical})
        else:
            ack = self._dispatcher.in_flight(physical)
            if ack is None:
                # Already subscribed on Redis; make sure something still reads the connection.
                self._dispatcher.start()
        try:
            await self._settle(ack, callback)
        except Exception:
            # Redis never confirmed; forget the handler so a later subscribe sends SUBSCRIBE again.
            self._registry.unregister(channel, handler)
            self._metrics.set_gauge(m.CHANNELS, len(self._registry))
            raise

    on = subscribe

    async def unsubscribe(self, channel: str, handler: Handler, callback: Optional[Callback] = None) -> None:
        """
        Remove one registration of handler from a logical channel.

        When the channel has no handlers left Redis is asked to UNSUBSCRIBE and
        callback runs after the acknowledgement; otherwise callback runs right
        away. Unknown channels or handlers are ignored.
        """
        self._check_open()
        emptied = self._registry.unregister(channel, handler)
        self._metrics.set_gauge(m.CHANNELS, len(self._registry))
        ack = None
        if emptied:
            physical = self._scoper.to_physical(channel)
            ack = await self._dispatcher.unsubscribe(physical)
            self._logger.info("unsubscribed", extra={"channel": physical})
        await self._settle(ack, callback)

    off = unsubscribe

    async def publish(self, channel: str, message: Any) -> int:
        """JSON-encode message and publish it on the scoped channel. Returns Redis' receiver count."""
        self._check_open()
        physical = self._scoper.to_physical(channel)
        receivers = await self._emitter.publish(physical, json.dumps(message))
        self._metrics.increment(m.PUBLISHED)
        self._logger.debug("published", extra={"channel": physical, "receivers": receivers})
        return receivers

    emit = publish

    async def quit(self) -> None:
        """Close both connections once pending subscribe/unsubscribe acknowledgements have arrived."""
        if self._closed:
            return
        self._closed = True
        await self._dispatcher.drain()
        await self._dispatcher.stop()
        await self._dispatcher.pubsub.aclose()
        await self._emitter.aclose()
        await self._receiver.aclose()
        self._logger.info("closed", extra={"graceful": True, "scope": self.scope})

    async def close(self) -> None:
        """Drop both connections immediately; pending acknowledgements fail with PubSubClosedError."""
        if self._closed:
            return
        self._closed = True
        self._dispatcher.fail_pending(PubSubClosedError("connection closed"))
        await self._dispatcher.stop()
        await self._dispatcher.pubsub.aclose()
        await self._emitter.connection_pool.disconnect(inuse_connections=True)
        await self._receiver.connection_pool.disconnect(inuse_connections=True)
        self._logger.info("closed", extra={"graceful": False, "scope": self.scope})

    end = close

    async def __aenter__(self) -> "ScopedPubSub":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.quit()

    async def _settle(self, ack: Optional[asyncio.Future], callback: Optional[Callback]) -> None:
        if ack is None:
            if callback is not None:
                callback()
            return
        if self._dispatcher.in_listener():
            # Called from a handler: the acknowledgement is read by this very task.
            if callback is not None:
                _run_callback_when_done(ack, callback)
            return
        await asyncio.shield(ack)
        if callback is not None:
            callback()

    def _check_open(self) -> None:
        if self._closed:
            raise PubSubClosedError("ScopedPubSub is closed")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(scope={self.scope!r}, channels={len(self._registry)})"
