"""Scoped publish/subscribe over Redis: JSON events on namespaced channels, many handlers per channel."""

from scoped_pubsub.client import PubSubClosedError, ScopedPubSub, default_client_factory
from scoped_pubsub.config import PubSubOptions
from scoped_pubsub.dispatch import ChannelState, Dispatcher
from scoped_pubsub.registry import ChannelRegistry, Handler
from scoped_pubsub.scope import Scoper

__all__ = [
    "ScopedPubSub",
    "PubSubOptions",
    "PubSubClosedError",
    "ChannelRegistry",
    "ChannelState",
    "Dispatcher",
    "Handler",
    "Scoper",
    "default_client_factory",
]
