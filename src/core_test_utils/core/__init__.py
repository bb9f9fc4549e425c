"""Cores the harness can drive, and the factories that create them."""

import logging

from ..config import get_config
from ..errors import CoreInitError
from ..logging_config import apply_tracing_filter
from ..models.options import CoreInitOptions, TelemetryOptions
from .activations import Activation, ActivationJob, FireTimer, ResolveActivity, StartWorkflow
from .base import Core, ServerGateway
from .history import (
    TestHistoryBuilder,
    history_from_json,
    history_from_proto_binary,
    single_activity,
    single_timer,
    workflow_fails_after_timer,
)
from .local import LocalCore, LocalServerGateway
from .replay import ReplayCore
from .temporal_client import TemporalCore, TemporalServerGateway

logger = logging.getLogger(__name__)


def _apply_telemetry(telemetry_opts: TelemetryOptions) -> None:
    try:
        apply_tracing_filter(telemetry_opts.tracing_filter)
    except ValueError as e:
        raise CoreInitError(f"Invalid tracing filter: {e}") from e


async def init_core(options: CoreInitOptions, mock_mode: bool | None = None) -> Core:
    """Create a live core.

    Runs in-process when ``mock_mode`` is set (defaults to the global config),
    otherwise connects to the configured Temporal server.
    """
    _apply_telemetry(options.telemetry_opts)
    if mock_mode is None:
        mock_mode = get_config().mock_mode

    if mock_mode:
        logger.info("Initializing in-process core (mock mode)")
        return LocalCore(options)
    return await TemporalCore.connect(options)


def init_core_replay(telemetry_opts: TelemetryOptions) -> ReplayCore:
    """Create a core for replaying preloaded histories."""
    _apply_telemetry(telemetry_opts)
    return ReplayCore(telemetry_opts)


__all__ = [
    "Activation",
    "ActivationJob",
    "StartWorkflow",
    "FireTimer",
    "ResolveActivity",
    "Core",
    "ServerGateway",
    "LocalCore",
    "LocalServerGateway",
    "ReplayCore",
    "TemporalCore",
    "TemporalServerGateway",
    "TestHistoryBuilder",
    "single_timer",
    "single_activity",
    "workflow_fails_after_timer",
    "history_from_proto_binary",
    "history_from_json",
    "init_core",
    "init_core_replay",
]
