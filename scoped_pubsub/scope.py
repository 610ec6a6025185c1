"""Namespace scoping: maps logical channel names to the physical names sent to Redis."""

from typing import Optional

SCOPE_SEPARATOR = ":"


class Scoper:
    """Prefixes channel names with ``"<scope>:"`` (or nothing when no scope is set).

    Every physical channel name used by the client comes from here, on publish,
    on subscribe and when matching inbound messages.
    """

    def __init__(self, scope: Optional[str] = None) -> None:
        self._prefix = f"{scope}{SCOPE_SEPARATOR}" if scope else ""

    @property
    def prefix(self) -> str:
        return self._prefix

    def to_physical(self, logical: str) -> str:
        return self._prefix + logical

    def matches(self, physical: str, logical: str) -> bool:
        """Exact string equality; no pattern semantics are added here."""
        return self.to_physical(logical) == physical

    def to_logical(self, physical: str) -> Optional[str]:
        """Strip the prefix. Returns None when the physical name is outside this scope."""
        if not physical.startswith(self._prefix):
            return None
        return physical[len(self._prefix):]

    def __repr__(self) -> str:
        return f"Scoper(prefix={self._prefix!r})"
