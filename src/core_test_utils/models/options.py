"""Option records used to create cores and register workers."""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

NAMESPACE = "default"
DEFAULT_TRACING_FILTER = "core_test_utils=INFO"


@dataclass(frozen=True)
class ServerGatewayOptions:
    """Connection options for the server a core talks to."""

    target_url: str
    namespace: str = NAMESPACE
    identity: str = "integ_tester"
    worker_binary_id: str = "fakebinaryid"
    client_name: str = "temporal-core"
    client_version: str = "0.1.0"


@dataclass(frozen=True)
class TelemetryOptions:
    """Telemetry options shared by live and replay cores."""

    otel_collector_url: str | None = None
    prometheus_export_bind_address: str | None = None  # host:port
    tracing_filter: str = DEFAULT_TRACING_FILTER
    log_forwarding_level: str = "OFF"


@dataclass(frozen=True)
class CoreInitOptions:
    """Everything needed to create a core."""

    gateway_opts: ServerGatewayOptions
    telemetry_opts: TelemetryOptions = field(default_factory=TelemetryOptions)


@dataclass
class WorkerConfig:
    """Worker settings captured when a worker is registered with a core."""

    task_queue: str
    max_cached_workflows: int = 0
    max_outstanding_workflow_tasks: int = 100
    max_outstanding_activities: int = 100
    max_outstanding_local_activities: int = 100
    max_concurrent_at_polls: int = 5

    # Activity implementations, run by a temporalio worker on the same queue.
    # Only used by the server backed core; the in-process core resolves
    # activities itself.
    activities: list[Callable[..., Any]] = field(default_factory=list)

    def validate(self) -> tuple[bool, list[str]]:
        """Validate worker settings."""
        errors = []

        if not self.task_queue:
            errors.append("task_queue cannot be empty")

        if self.max_cached_workflows < 0:
            errors.append("max_cached_workflows cannot be negative")

        for name in (
            "max_outstanding_workflow_tasks",
            "max_outstanding_activities",
            "max_outstanding_local_activities",
            "max_concurrent_at_polls",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        return len(errors) == 0, errors
