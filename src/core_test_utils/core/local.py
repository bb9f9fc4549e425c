"""In-process core used when running in mock mode.

Workflow runs live in memory. Every start, completion, timer and activity is
recorded as a Temporal API history event so runs can be fetched and replayed
exactly like histories from a real server. Timers fire on the event loop and
activities resolve as soon as they are scheduled.
"""

import asyncio
import copy
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from temporalio.api.history.v1 import History
from temporalio.bridge.proto.workflow_completion import WorkflowActivationCompletion

from ..commands import command_kind, encode_payloads
from ..errors import (
    CompletionError,
    CoreInitError,
    HistoryFetchError,
    ShutdownError,
    UsageOrderError,
    WorkflowAlreadyStartedError,
)
from ..models.options import CoreInitOptions, WorkerConfig
from .activations import Activation, ActivationJob, FireTimer, ResolveActivity, StartWorkflow
from .base import Core, ServerGateway
from .history import TestHistoryBuilder

logger = logging.getLogger(__name__)


@dataclass
class _RunRecord:
    """Server side state of one workflow run."""

    run_id: str
    workflow_id: str
    workflow_type: str
    task_queue: str
    builder: TestHistoryBuilder
    closed: bool = False
    wft_outstanding: bool = False
    wft_scheduled_id: int = 0
    wft_started_id: int = 0
    buffered_jobs: list[ActivationJob] = field(default_factory=list)
    timers: dict[int, asyncio.TimerHandle] = field(default_factory=dict)


class LocalServerGateway(ServerGateway):
    """Gateway onto the runs owned by a ``LocalCore``."""

    def __init__(self, core: "LocalCore"):
        self._core = core

    async def start_workflow(
        self,
        input: Sequence[Any],
        task_queue: str,
        workflow_id: str,
        workflow_type: str,
        task_timeout: timedelta | None = None,
    ) -> str:
        return self._core.start_run(list(input), task_queue, workflow_id, workflow_type, task_timeout)

    async def get_workflow_execution_history(self, workflow_id: str, run_id: str | None = None) -> History:
        run = self._core.find_run(workflow_id, run_id)
        if run is None:
            raise HistoryFetchError(f"No history for workflow '{workflow_id}' run '{run_id}'")

        logger.info(f"Fetched {run.builder.last_event_id} history events for {workflow_id}/{run.run_id}")
        return run.builder.as_history()


class LocalCore(Core):
    """Core that executes workflow tasks in memory."""

    def __init__(self, options: CoreInitOptions):
        self.options = options
        self._gateway = LocalServerGateway(self)
        self._workers: dict[str, WorkerConfig] = {}
        self._queues: dict[str, asyncio.Queue] = {}
        self._runs: dict[str, _RunRecord] = {}
        self._shut_down = False

    @property
    def server_gateway(self) -> LocalServerGateway:
        return self._gateway

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    def registered_worker(self, task_queue: str) -> WorkerConfig | None:
        """Snapshot of the config a worker was registered with."""
        return self._workers.get(task_queue)

    def register_worker(self, config: WorkerConfig) -> None:
        self._check_running()

        is_valid, errors = config.validate()
        if not is_valid:
            raise CoreInitError(f"Invalid worker config: {', '.join(errors)}")

        if config.task_queue in self._workers:
            raise CoreInitError(f"A worker is already registered for task queue '{config.task_queue}'")

        self._workers[config.task_queue] = copy.deepcopy(config)
        self._queue(config.task_queue)
        logger.info(f"Registered worker for task queue '{config.task_queue}'")

    async def poll_workflow_activation(self, task_queue: str) -> Activation:
        self._check_running()
        if task_queue not in self._workers:
            raise UsageOrderError(f"No worker registered for task queue '{task_queue}'")

        queue = self._queue(task_queue)
        activation = await queue.get()
        if activation is None:
            # Leave the wake-up marker for any other poller
            queue.put_nowait(None)
            raise ShutdownError("Core has been shut down")
        return activation

    async def complete_workflow_activation(self, completion: WorkflowActivationCompletion) -> None:
        self._check_running()

        run = self._runs.get(completion.run_id)
        if run is None:
            raise CompletionError(f"Completion for unknown run '{completion.run_id}'")
        if run.closed:
            raise CompletionError(f"Run '{run.run_id}' is already closed")
        if not run.wft_outstanding:
            raise CompletionError(f"Run '{run.run_id}' has no outstanding workflow task")

        if completion.HasField("failed"):
            # The task stays outstanding, nothing new is delivered for it
            logger.warning(f"Workflow task failed for run {run.run_id}: {completion.failed.failure.message}")
            return

        builder = run.builder
        run.wft_outstanding = False
        wft_completed = builder.add_workflow_task_completed(run.wft_scheduled_id, run.wft_started_id)
        resolved_activities: list[tuple[int, int]] = []

        for command in completion.successful.commands:
            kind = command_kind(command)
            if run.closed:
                raise CompletionError(f"Command '{kind}' issued after run '{run.run_id}' closed")

            if kind == "start_timer":
                timer = command.start_timer
                fire_after = timer.start_to_fire_timeout.ToTimedelta()
                started_id = builder.add_timer_started(str(timer.seq), fire_after, wft_completed)
                run.timers[timer.seq] = asyncio.get_running_loop().call_later(
                    fire_after.total_seconds(), self._fire_timer, run, timer.seq, started_id
                )
            elif kind == "schedule_activity":
                activity = command.schedule_activity
                scheduled_id = builder.add_activity_task_scheduled(
                    activity.activity_id,
                    wft_completed,
                    activity_type=activity.activity_type,
                    task_queue=activity.task_queue,
                    activity_timeout=activity.schedule_to_close_timeout.ToTimedelta(),
                    heartbeat_timeout=activity.heartbeat_timeout.ToTimedelta(),
                )
                resolved_activities.append((activity.seq, scheduled_id))
            elif kind == "complete_workflow_execution":
                complete = command.complete_workflow_execution
                result = complete.result if complete.HasField("result") else None
                builder.add_workflow_execution_completed(wft_completed, result)
                self._close(run)
            elif kind == "fail_workflow_execution":
                builder.add_workflow_execution_failed(wft_completed, command.fail_workflow_execution.failure)
                self._close(run)
            else:
                raise CompletionError(f"Unsupported workflow command '{kind}'")

        if run.closed:
            logger.info(f"Workflow run {run.workflow_id}/{run.run_id} closed")
            return

        for seq, scheduled_id in resolved_activities:
            builder.add_activity_task_completed(scheduled_id)
            run.buffered_jobs.append(ResolveActivity(seq=seq))

        if run.buffered_jobs:
            self._schedule_workflow_task(run)

    async def shutdown(self) -> None:
        if self._shut_down:
            return

        self._shut_down = True
        for run in self._runs.values():
            for handle in run.timers.values():
                handle.cancel()
            run.timers.clear()
        for queue in self._queues.values():
            queue.put_nowait(None)
        logger.info("Local core shut down")

    # Server side

    def start_run(
        self,
        input: list[Any],
        task_queue: str,
        workflow_id: str,
        workflow_type: str,
        task_timeout: timedelta | None,
    ) -> str:
        """Record a new run and schedule its first workflow task."""
        self._check_running()
        for existing in self._runs.values():
            if existing.workflow_id == workflow_id and not existing.closed:
                raise WorkflowAlreadyStartedError(f"Workflow '{workflow_id}' is already running")

        run_id = str(uuid.uuid4())
        arguments = encode_payloads(input)
        builder = TestHistoryBuilder(task_queue)
        builder.add_workflow_execution_started(workflow_type, run_id, arguments, task_timeout)

        run = _RunRecord(
            run_id=run_id,
            workflow_id=workflow_id,
            workflow_type=workflow_type,
            task_queue=task_queue,
            builder=builder,
        )
        self._runs[run_id] = run
        run.buffered_jobs.append(StartWorkflow(workflow_type, workflow_id, arguments))
        self._schedule_workflow_task(run)

        logger.info(f"Started workflow {workflow_id} ({workflow_type}) on '{task_queue}' as run {run_id}")
        return run_id

    def find_run(self, workflow_id: str, run_id: str | None = None) -> _RunRecord | None:
        """Find a run by id, or the most recent run of a workflow."""
        if run_id:
            run = self._runs.get(run_id)
            return run if run is not None and run.workflow_id == workflow_id else None

        matches = [run for run in self._runs.values() if run.workflow_id == workflow_id]
        return matches[-1] if matches else None

    def _schedule_workflow_task(self, run: _RunRecord) -> None:
        run.wft_scheduled_id, run.wft_started_id = run.builder.add_workflow_task_scheduled_and_started()
        run.wft_outstanding = True
        jobs, run.buffered_jobs = run.buffered_jobs, []
        self._queue(run.task_queue).put_nowait(
            Activation(run_id=run.run_id, workflow_id=run.workflow_id, task_queue=run.task_queue, jobs=jobs)
        )

    def _fire_timer(self, run: _RunRecord, seq: int, started_id: int) -> None:
        run.timers.pop(seq, None)
        if run.closed or self._shut_down:
            return

        run.builder.add_timer_fired(started_id, str(seq))
        run.buffered_jobs.append(FireTimer(seq=seq))
        # A fire during an outstanding task is delivered once that task completes
        if not run.wft_outstanding:
            self._schedule_workflow_task(run)

    def _close(self, run: _RunRecord) -> None:
        run.closed = True
        run.buffered_jobs.clear()
        for handle in run.timers.values():
            handle.cancel()
        run.timers.clear()

    def _queue(self, task_queue: str) -> asyncio.Queue:
        if task_queue not in self._queues:
            self._queues[task_queue] = asyncio.Queue()
        return self._queues[task_queue]

    def _check_running(self) -> None:
        if self._shut_down:
            raise ShutdownError("Core has been shut down")
