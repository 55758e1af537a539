"""Health check for the active storage backend."""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from spotify_assistant.domain.exceptions import BackendUnavailableError
from spotify_assistant.domain.ports.storage import IStorageBackend, StorageCapability

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health check status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheck:
    """Result of a health check."""

    name: str
    status: HealthStatus
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


# Hey future me - a cache backend that answers ping is HEALTHY but we report it as DEGRADED
# when it's the only store: data can expire under you, so callers should know.
# Never raises; a health check that throws is worse than one that says UNHEALTHY.
async def check_storage_health(backend: IStorageBackend) -> HealthCheck:
    """Ping the backend and describe what it can do.

    Args:
        backend: Connected storage backend

    Returns:
        Health check result with kind, capabilities and round-trip latency
    """
    name = f"storage:{backend.kind.value}"
    details: dict[str, Any] = {
        "backend": backend.kind.value,
        "capabilities": sorted(cap.value for cap in backend.capabilities),
    }

    start = time.monotonic()
    try:
        reachable = await backend.ping()
    except BackendUnavailableError as e:
        logger.warning("Storage health check failed", extra={"error": e.message})
        return HealthCheck(
            name=name,
            status=HealthStatus.UNHEALTHY,
            message=e.message,
            details=details,
        )
    details["latency_ms"] = round((time.monotonic() - start) * 1000, 2)
    details.update(backend.stats())

    if not reachable:
        return HealthCheck(
            name=name,
            status=HealthStatus.UNHEALTHY,
            message="Storage backend did not answer ping",
            details=details,
        )

    if not backend.supports(StorageCapability.DURABLE):
        return HealthCheck(
            name=name,
            status=HealthStatus.DEGRADED,
            message="Storage backend is reachable but not durable",
            details=details,
        )

    return HealthCheck(
        name=name,
        status=HealthStatus.HEALTHY,
        message="Storage backend reachable",
        details=details,
    )
