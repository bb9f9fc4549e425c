"""Builders for the workflow commands used throughout the tests."""

from collections.abc import Sequence
from datetime import timedelta
from typing import Any

from google.protobuf.duration_pb2 import Duration
from temporalio.api.common.v1 import Payload
from temporalio.api.failure.v1 import Failure
from temporalio.bridge.proto.workflow_commands import (
    CompleteWorkflowExecution,
    FailWorkflowExecution,
    ScheduleActivity,
    StartTimer,
    WorkflowCommand,
)
from temporalio.bridge.proto.workflow_completion import (
    Success,
    WorkflowActivationCompletion,
)
from temporalio.converter import DataConverter

TEST_ACTIVITY_TYPE = "test_activity"

TERMINAL_COMMANDS = frozenset({"complete_workflow_execution", "fail_workflow_execution"})


def duration(value: timedelta) -> Duration:
    """Convert a timedelta to a protobuf Duration."""
    proto = Duration()
    proto.FromTimedelta(value)
    return proto


def encode_payloads(values: Sequence[Any]) -> list[Payload]:
    """Encode values with the default payload converter."""
    return DataConverter.default.payload_converter.to_payloads(list(values))


def decode_payloads(payloads: Sequence[Payload]) -> list[Any]:
    """Decode payloads with the default payload converter."""
    if not payloads:
        return []
    return DataConverter.default.payload_converter.from_payloads(list(payloads))


def schedule_activity_cmd(
    seq: int,
    task_q: str,
    activity_id: str,
    cancellation_type: int,
    activity_timeout: timedelta,
    heartbeat_timeout: timedelta,
) -> WorkflowCommand:
    """Schedule the test activity with every timeout set to ``activity_timeout``."""
    return WorkflowCommand(
        schedule_activity=ScheduleActivity(
            seq=seq,
            activity_id=activity_id,
            activity_type=TEST_ACTIVITY_TYPE,
            task_queue=task_q,
            schedule_to_start_timeout=duration(activity_timeout),
            start_to_close_timeout=duration(activity_timeout),
            schedule_to_close_timeout=duration(activity_timeout),
            heartbeat_timeout=duration(heartbeat_timeout),
            cancellation_type=cancellation_type,
        )
    )


def start_timer_cmd(seq: int, fire_after: timedelta) -> WorkflowCommand:
    """Start a timer that fires after ``fire_after``."""
    return WorkflowCommand(
        start_timer=StartTimer(seq=seq, start_to_fire_timeout=duration(fire_after))
    )


def complete_workflow_cmd(result: Any = None) -> WorkflowCommand:
    """Complete the workflow, optionally with a result value."""
    complete = CompleteWorkflowExecution()
    if result is not None:
        complete.result.CopyFrom(encode_payloads([result])[0])
    return WorkflowCommand(complete_workflow_execution=complete)


def fail_workflow_cmd(message: str) -> WorkflowCommand:
    """Fail the workflow with the given message."""
    return WorkflowCommand(
        fail_workflow_execution=FailWorkflowExecution(failure=Failure(message=message))
    )


def completion_from_cmds(run_id: str, commands: Sequence[WorkflowCommand]) -> WorkflowActivationCompletion:
    """Package commands into a successful activation completion."""
    return WorkflowActivationCompletion(
        run_id=run_id,
        successful=Success(commands=list(commands)),
    )


def command_kind(command: WorkflowCommand) -> str | None:
    """Name of the variant set on a command."""
    return command.WhichOneof("variant")


def is_terminal(command: WorkflowCommand) -> bool:
    """Whether a command closes the workflow run."""
    return command_kind(command) in TERMINAL_COMMANDS
