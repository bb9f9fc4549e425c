"""Error types for the core test harness."""

from .models import (
    CompletionError,
    CoreInitError,
    HarnessError,
    HistoryFetchError,
    NondeterminismError,
    ReplayError,
    ShutdownError,
    UnknownWorkflowTypeError,
    UsageOrderError,
    WorkflowAlreadyStartedError,
)

__all__ = [
    "HarnessError",
    "CoreInitError",
    "UsageOrderError",
    "HistoryFetchError",
    "ReplayError",
    "NondeterminismError",
    "CompletionError",
    "WorkflowAlreadyStartedError",
    "ShutdownError",
    "UnknownWorkflowTypeError",
]
