"""Replay-mode core that re-drives a worker from a recorded history.

Each command a worker submits is checked against the next command event in
the history. Any divergence raises ``NondeterminismError``, and running out of
history before the workflow closes raises ``ReplayError``.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import NoReturn

from temporalio.api.enums.v1 import EventType
from temporalio.api.history.v1 import History, HistoryEvent
from temporalio.bridge.proto.workflow_commands import WorkflowCommand
from temporalio.bridge.proto.workflow_completion import WorkflowActivationCompletion

from ..commands import command_kind
from ..errors import (
    CompletionError,
    CoreInitError,
    NondeterminismError,
    ReplayError,
    ShutdownError,
    UsageOrderError,
)
from ..models.options import TelemetryOptions, WorkerConfig
from .activations import Activation, ActivationJob, FireTimer, ResolveActivity, StartWorkflow
from .base import Core, ServerGateway
from .history import COMMAND_EVENT_TYPES, TERMINAL_EVENT_TYPES, event_type_name

logger = logging.getLogger(__name__)

REPLAY_WORKFLOW_ID = "fake_wf_id"

_EXPECTED_EVENT = {
    "start_timer": EventType.EVENT_TYPE_TIMER_STARTED,
    "schedule_activity": EventType.EVENT_TYPE_ACTIVITY_TASK_SCHEDULED,
    "complete_workflow_execution": EventType.EVENT_TYPE_WORKFLOW_EXECUTION_COMPLETED,
    "fail_workflow_execution": EventType.EVENT_TYPE_WORKFLOW_EXECUTION_FAILED,
}


@dataclass
class _ReplayRun:
    """Cursor over one preloaded history."""

    run_id: str
    workflow_id: str
    task_queue: str
    events: list[HistoryEvent]
    cursor: int = 0
    closed: bool = False
    awaiting_completion: bool = False
    pending_jobs: list[ActivationJob] = field(default_factory=list)
    activity_seqs: dict[int, int] = field(default_factory=dict)

    def _job_for(self, event: HistoryEvent) -> ActivationJob | None:
        if event.event_type == EventType.EVENT_TYPE_WORKFLOW_EXECUTION_STARTED:
            attributes = event.workflow_execution_started_event_attributes
            return StartWorkflow(
                workflow_type=attributes.workflow_type.name,
                workflow_id=self.workflow_id,
                arguments=list(attributes.input.payloads),
            )
        if event.event_type == EventType.EVENT_TYPE_TIMER_FIRED:
            return FireTimer(seq=int(event.timer_fired_event_attributes.timer_id))
        if event.event_type == EventType.EVENT_TYPE_ACTIVITY_TASK_COMPLETED:
            attributes = event.activity_task_completed_event_attributes
            seq = self.activity_seqs.get(attributes.scheduled_event_id)
            if seq is None:
                raise NondeterminismError(
                    f"Activity completed for event {attributes.scheduled_event_id} "
                    "which the workflow never scheduled",
                    event.event_id,
                )
            payloads = attributes.result.payloads
            return ResolveActivity(seq=seq, result=payloads[0] if payloads else None)
        return None

    def next_activation(self) -> Activation:
        """Collect jobs up to the next started workflow task."""
        jobs, self.pending_jobs = self.pending_jobs, []
        while self.cursor < len(self.events):
            event = self.events[self.cursor]
            self.cursor += 1
            if event.event_type == EventType.EVENT_TYPE_WORKFLOW_TASK_STARTED:
                return Activation(self.run_id, self.workflow_id, self.task_queue, jobs)
            job = self._job_for(event)
            if job is not None:
                jobs.append(job)

        raise ReplayError(f"History for run {self.run_id} ended before the workflow completed")

    def apply_commands(self, commands: list[WorkflowCommand]) -> None:
        """Match commands against the events recorded for the current task."""
        while True:
            if self.cursor >= len(self.events):
                if commands:
                    self._diverged(
                        f"Workflow issued {command_kind(commands[0])} but the history has no further "
                        "completed workflow task"
                    )
                raise ReplayError(f"History for run {self.run_id} ended before the workflow completed")

            event = self.events[self.cursor]
            self.cursor += 1
            if event.event_type == EventType.EVENT_TYPE_WORKFLOW_TASK_COMPLETED:
                break
            # Resolutions recorded while the task was outstanding belong to the next activation
            job = self._job_for(event)
            if job is not None:
                self.pending_jobs.append(job)

        for command in commands:
            kind = command_kind(command)
            expected_type = _EXPECTED_EVENT.get(kind)
            if expected_type is None:
                raise CompletionError(f"Unsupported workflow command '{kind}'")

            if self.cursor >= len(self.events):
                self._diverged(f"Workflow issued {kind} which is not in the history")
            event = self.events[self.cursor]
            if event.event_type != expected_type:
                self._diverged(
                    f"Workflow issued {kind} but history has {event_type_name(event)}", event.event_id
                )
            self._check_attributes(command, event)
            self.cursor += 1

            if kind == "schedule_activity":
                self.activity_seqs[event.event_id] = command.schedule_activity.seq
            if event.event_type in TERMINAL_EVENT_TYPES:
                self.closed = True

        if self.cursor < len(self.events) and self.events[self.cursor].event_type in COMMAND_EVENT_TYPES:
            event = self.events[self.cursor]
            self._diverged(
                f"History has {event_type_name(event)} which the workflow did not issue", event.event_id
            )

    def _check_attributes(self, command: WorkflowCommand, event: HistoryEvent) -> None:
        kind = command_kind(command)
        if kind == "start_timer":
            recorded = event.timer_started_event_attributes.timer_id
            if recorded != str(command.start_timer.seq):
                self._diverged(
                    f"Timer {command.start_timer.seq} does not match recorded timer {recorded}", event.event_id
                )
        elif kind == "schedule_activity":
            attributes = event.activity_task_scheduled_event_attributes
            activity = command.schedule_activity
            if (attributes.activity_id, attributes.activity_type.name) != (
                activity.activity_id,
                activity.activity_type,
            ):
                self._diverged(
                    f"Activity {activity.activity_id} ({activity.activity_type}) does not match recorded "
                    f"activity {attributes.activity_id} ({attributes.activity_type.name})",
                    event.event_id,
                )

    def _diverged(self, message: str, event_id: int | None = None) -> NoReturn:
        raise NondeterminismError(f"Nondeterminism in run {self.run_id}: {message}", event_id)


class ReplayCore(Core):
    """Core whose workers run against preloaded histories instead of a server."""

    def __init__(self, telemetry_opts: TelemetryOptions):
        self.telemetry_opts = telemetry_opts
        self._workers: dict[str, WorkerConfig] = {}
        self._runs: dict[str, _ReplayRun] = {}
        self._shut_down = False

    @property
    def server_gateway(self) -> ServerGateway:
        raise UsageOrderError("Replay cores are not connected to a server")

    def register_worker(self, config: WorkerConfig) -> None:
        raise UsageOrderError("Replay cores only accept workers created with make_replay_worker")

    def make_replay_worker(
        self, config: WorkerConfig, history: History, workflow_id: str = REPLAY_WORKFLOW_ID
    ) -> None:
        """Register a worker whose only work is replaying ``history``."""
        if self._shut_down:
            raise ShutdownError("Core has been shut down")
        if config.task_queue in self._workers:
            raise CoreInitError(f"A replay worker is already registered for task queue '{config.task_queue}'")

        events = list(history.events)
        if not events or events[0].event_type != EventType.EVENT_TYPE_WORKFLOW_EXECUTION_STARTED:
            raise CoreInitError("History must begin with a WorkflowExecutionStarted event")

        started = events[0].workflow_execution_started_event_attributes
        run_id = started.original_execution_run_id or f"replay-{config.task_queue}"
        self._workers[config.task_queue] = copy.deepcopy(config)
        self._runs[config.task_queue] = _ReplayRun(
            run_id=run_id,
            workflow_id=workflow_id,
            task_queue=config.task_queue,
            events=events,
        )
        logger.info(f"Registered replay worker for '{config.task_queue}' with {len(events)} history events")

    async def poll_workflow_activation(self, task_queue: str) -> Activation:
        run = self._run_for_queue(task_queue)
        if run.closed:
            raise ShutdownError(f"Replay of run {run.run_id} is complete")
        if run.awaiting_completion:
            raise UsageOrderError(f"Previous activation for run {run.run_id} has not been completed")

        activation = run.next_activation()
        run.awaiting_completion = True
        return activation

    async def complete_workflow_activation(self, completion: WorkflowActivationCompletion) -> None:
        if self._shut_down:
            raise ShutdownError("Core has been shut down")

        run = next((r for r in self._runs.values() if r.run_id == completion.run_id), None)
        if run is None:
            raise CompletionError(f"Completion for unknown run '{completion.run_id}'")
        if not run.awaiting_completion:
            raise CompletionError(f"Run '{run.run_id}' has no outstanding activation")
        run.awaiting_completion = False

        if completion.HasField("failed"):
            raise ReplayError(
                f"Workflow task failed during replay of run {run.run_id}: {completion.failed.failure.message}"
            )

        run.apply_commands(list(completion.successful.commands))
        if run.closed:
            logger.info(f"Replay of run {run.run_id} reached the recorded terminal event")

    async def shutdown(self) -> None:
        self._shut_down = True
        logger.info("Replay core shut down")

    def _run_for_queue(self, task_queue: str) -> _ReplayRun:
        if self._shut_down:
            raise ShutdownError("Core has been shut down")
        run = self._runs.get(task_queue)
        if run is None:
            raise UsageOrderError(f"No replay worker registered for task queue '{task_queue}'")
        return run
