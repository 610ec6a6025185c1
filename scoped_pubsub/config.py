"""Connection and scope options for ScopedPubSub."""

import os
from dataclasses import dataclass, replace
from typing import Any, Optional

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6379  # Redis' default


@dataclass(frozen=True)
class PubSubOptions:
    """Where the Redis server is, how to authenticate, and which scope to publish/subscribe in."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    auth: Optional[str] = None
    scope: Optional[str] = None

    @classmethod
    def from_env(cls) -> "PubSubOptions":
        """Build options from REDIS_HOST, REDIS_PORT, REDIS_AUTH and PUBSUB_SCOPE (unset or empty means default)."""
        try:
            port = int(os.environ.get("REDIS_PORT", DEFAULT_PORT))
        except (ValueError, TypeError):
            port = DEFAULT_PORT
        return cls(
            host=(os.environ.get("REDIS_HOST") or "").strip() or DEFAULT_HOST,
            port=port,
            auth=os.environ.get("REDIS_AUTH") or None,
            scope=(os.environ.get("PUBSUB_SCOPE") or "").strip() or None,
        )

    def with_overrides(self, **overrides: Any) -> "PubSubOptions":
        """Return a copy with the given non-None fields replaced."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
