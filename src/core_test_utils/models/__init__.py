"""Option and configuration records for cores and workers."""

from .options import (
    DEFAULT_TRACING_FILTER,
    NAMESPACE,
    CoreInitOptions,
    ServerGatewayOptions,
    TelemetryOptions,
    WorkerConfig,
)

__all__ = [
    "NAMESPACE",
    "DEFAULT_TRACING_FILTER",
    "CoreInitOptions",
    "ServerGatewayOptions",
    "TelemetryOptions",
    "WorkerConfig",
]
