"""In-memory registry of handlers per logical channel."""

import threading
from typing import Any, Callable, Dict, List

Handler = Callable[[Any, str], Any]


class ChannelRegistry:
    """Maps logical channel names to handlers, in registration order.

    A channel has an entry only while at least one handler is registered.
    ``register`` and ``unregister`` report the zero/non-zero transitions so the
    caller knows when Redis has to be told to subscribe or unsubscribe.
    """

    def __init__(self) -> None:
        self._channels: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def register(self, channel: str, handler: Handler) -> bool:
        """Append handler to the channel. Returns True if it is the channel's first handler."""
        with self._lock:
            handlers = self._channels.get(channel)
            if handlers is None:
                self._channels[channel] = [handler]
                return True
            handlers.append(handler)
            return False

    def unregister(self, channel: str, handler: Handler) -> bool:
        """
        Remove the first registration of handler (by identity) from the channel.
        Returns True if the channel is now empty and its entry was removed.
        Unknown channels and handlers are ignored.
        """
        with self._lock:
            handlers = self._channels.get(channel)
            if handlers is None:
                return False
            for index, registered in enumerate(handlers):
                if registered is handler:
                    del handlers[index]
                    break
            else:
                return False
            if handlers:
                return False
            del self._channels[channel]
            return True

    def lookup(self, channel: str) -> List[Handler]:
        """Return a copy of the channel's handlers (empty list if none)."""
        with self._lock:
            return list(self._channels.get(channel, ()))

    def handler_count(self, channel: str) -> int:
        with self._lock:
            return len(self._channels.get(channel, ()))

    def channels(self) -> List[str]:
        """Logical channels with at least one handler, sorted by name."""
        with self._lock:
            return sorted(self._channels)

    def __contains__(self, channel: object) -> bool:
        with self._lock:
            return channel in self._channels

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)

    def __repr__(self) -> str:
        return f"ChannelRegistry(channels={len(self)})"
