"""Observability: logging and metrics for the scoped pub-sub client."""

from scoped_pubsub.observability.logger import get_logger
from scoped_pubsub.observability.metrics import Metrics

__all__ = ["get_logger", "Metrics"]
