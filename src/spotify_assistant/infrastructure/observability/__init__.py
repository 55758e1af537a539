"""Observability: structured logging and health checks."""

from .health import HealthCheck, HealthStatus, check_storage_health
from .logging import configure_logging, get_correlation_id, set_correlation_id

__all__ = [
    "HealthCheck",
    "HealthStatus",
    "check_storage_health",
    "configure_logging",
    "get_correlation_id",
    "set_correlation_id",
]
