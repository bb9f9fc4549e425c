"""Testing utilities for building SDKs against core, or testing workflows run by core."""

from temporalio.bridge.proto.workflow_commands import ActivityCancellationType

from .commands import (
    TEST_ACTIVITY_TYPE,
    complete_workflow_cmd,
    completion_from_cmds,
    fail_workflow_cmd,
    schedule_activity_cmd,
    start_timer_cmd,
)
from .config import (
    TEST_Q,
    HarnessConfig,
    get_config,
    get_integ_server_options,
    get_integ_telem_options,
    reset_config,
    set_config,
)
from .core import (
    Core,
    LocalCore,
    ReplayCore,
    TemporalCore,
    TestHistoryBuilder,
    history_from_json,
    history_from_proto_binary,
    init_core,
    init_core_replay,
)
from .fanout import fanout_tasks
from .helpers import CoreTestHelpers
from .models import NAMESPACE, CoreInitOptions, ServerGatewayOptions, TelemetryOptions, WorkerConfig
from .starter import CoreWfStarter, init_core_and_create_wf, init_core_replay_preloaded
from .worker import TestWorker, WorkflowContext

__version__ = "0.1.0"

__all__ = [
    "NAMESPACE",
    "TEST_Q",
    "TEST_ACTIVITY_TYPE",
    "ActivityCancellationType",
    "HarnessConfig",
    "get_config",
    "set_config",
    "reset_config",
    "get_integ_server_options",
    "get_integ_telem_options",
    "CoreInitOptions",
    "ServerGatewayOptions",
    "TelemetryOptions",
    "WorkerConfig",
    "Core",
    "LocalCore",
    "ReplayCore",
    "TemporalCore",
    "CoreTestHelpers",
    "init_core",
    "init_core_replay",
    "TestHistoryBuilder",
    "history_from_proto_binary",
    "history_from_json",
    "schedule_activity_cmd",
    "start_timer_cmd",
    "complete_workflow_cmd",
    "fail_workflow_cmd",
    "completion_from_cmds",
    "fanout_tasks",
    "CoreWfStarter",
    "init_core_and_create_wf",
    "init_core_replay_preloaded",
    "TestWorker",
    "WorkflowContext",
]
