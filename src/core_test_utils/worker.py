"""Test worker that runs workflow functions against a core."""

import inspect
import logging
from collections.abc import Callable, Generator, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Union

from temporalio.api.common.v1 import Payload
from temporalio.bridge.proto.workflow_commands import WorkflowCommand
from temporalio.exceptions import ApplicationError

from .commands import (
    complete_workflow_cmd,
    completion_from_cmds,
    decode_payloads,
    fail_workflow_cmd,
    is_terminal,
)
from .core.activations import Activation, ActivationJob, StartWorkflow
from .core.base import Core
from .errors import HarnessError, UnknownWorkflowTypeError

logger = logging.getLogger(__name__)

WorkflowGenerator = Generator[WorkflowCommand, ActivationJob, Any]
WorkflowFunction = Callable[["WorkflowContext"], Union[WorkflowGenerator, Any]]


@dataclass
class WorkflowContext:
    """What a workflow function knows about the run it is executing."""

    workflow_id: str
    run_id: str
    workflow_type: str
    task_queue: str
    arguments: list[Payload] = field(default_factory=list)

    @property
    def args(self) -> list[Any]:
        """Workflow arguments decoded with the default converter."""
        return decode_payloads(self.arguments)


class _WorkflowRun:
    """Drives one workflow function, one command at a time."""

    def __init__(self, ctx: WorkflowContext, fn: WorkflowFunction):
        self.ctx = ctx
        self._fn = fn
        self._gen: WorkflowGenerator | None = None

    def start(self) -> list[WorkflowCommand]:
        try:
            result = self._fn(self.ctx)
        except ApplicationError as e:
            return self._fail(e)

        if not inspect.isgenerator(result):
            return [complete_workflow_cmd(result)]
        self._gen = result
        return self._advance(None)

    def resume(self, job: ActivationJob) -> list[WorkflowCommand]:
        if self._gen is None:
            raise HarnessError(f"Run {self.ctx.run_id} is not waiting on a command")
        return self._advance(job)

    def _advance(self, value: ActivationJob | None) -> list[WorkflowCommand]:
        try:
            command = self._gen.send(value)
        except StopIteration as stop:
            return [complete_workflow_cmd(stop.value)]
        except ApplicationError as e:
            return self._fail(e)

        if not isinstance(command, WorkflowCommand):
            raise TypeError(f"Workflow {self.ctx.workflow_type} yielded {type(command).__name__}, not a command")
        return [command]

    def _fail(self, error: ApplicationError) -> list[WorkflowCommand]:
        logger.info(f"Workflow {self.ctx.workflow_id}/{self.ctx.run_id} failed: {error}")
        return [fail_workflow_cmd(str(error))]


class TestWorker:
    """A worker bound to one task queue, driving whichever core is installed.

    Workflow functions take a ``WorkflowContext`` and either return a value,
    completing at once, or are generators that yield one command at a time and
    are resumed with the job that resolved it. Raising ``ApplicationError``
    fails the workflow; any other exception propagates out of
    ``run_until_done``.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, core: Core, task_queue: str, workflow_task_timeout: timedelta | None = None):
        self._core = core
        self._task_queue = task_queue
        self.workflow_task_timeout = workflow_task_timeout
        self._workflow_fns: dict[str, WorkflowFunction] = {}
        self._runs: dict[str, _WorkflowRun] = {}
        self._expected_runs = 0
        self._completed_runs = 0

    @property
    def core(self) -> Core:
        return self._core

    @property
    def task_queue(self) -> str:
        return self._task_queue

    @property
    def expected_run_count(self) -> int:
        return self._expected_runs

    @property
    def completed_run_count(self) -> int:
        return self._completed_runs

    def register_wf(self, workflow_type: str, fn: WorkflowFunction) -> None:
        """Run ``fn`` for workflows of ``workflow_type``."""
        self._workflow_fns[workflow_type] = fn

    async def submit_wf(self, workflow_id: str, workflow_type: str, input: Sequence[Any] = ()) -> str:
        """Start a workflow on this worker's queue and expect it to complete."""
        run_id = await self._core.server_gateway.start_workflow(
            input, self._task_queue, workflow_id, workflow_type, self.workflow_task_timeout
        )
        self._expected_runs += 1
        return run_id

    def incr_expected_run_count(self, count: int) -> None:
        """Expect ``count`` more runs to complete, e.g. runs started elsewhere."""
        self._expected_runs += count

    def swap_core(self, core: Core) -> "TestWorker":
        """Install a different core, keeping task queue, functions and counters."""
        logger.debug(f"Swapping core for worker on '{self._task_queue}' to {type(core).__name__}")
        self._core = core
        return self

    async def run_until_done(self) -> None:
        """Process activations until every expected run has completed."""
        while self._completed_runs < self._expected_runs:
            activation = await self._core.poll_workflow_activation(self._task_queue)
            await self._handle_activation(activation)

        logger.info(f"Worker on '{self._task_queue}' completed {self._completed_runs} runs")

    async def _handle_activation(self, activation: Activation) -> None:
        commands: list[WorkflowCommand] = []
        for job in activation.jobs:
            if isinstance(job, StartWorkflow):
                commands.extend(self._start_run(activation, job))
            else:
                run = self._runs.get(activation.run_id)
                if run is None:
                    raise HarnessError(f"Activation for unknown run {activation.run_id}")
                commands.extend(run.resume(job))
            if commands and is_terminal(commands[-1]):
                break

        await self._core.complete_workflow_activation(completion_from_cmds(activation.run_id, commands))

        if any(is_terminal(command) for command in commands):
            self._runs.pop(activation.run_id, None)
            self._completed_runs += 1

    def _start_run(self, activation: Activation, job: StartWorkflow) -> list[WorkflowCommand]:
        fn = self._workflow_fns.get(job.workflow_type)
        if fn is None:
            raise UnknownWorkflowTypeError(job.workflow_type)

        ctx = WorkflowContext(
            workflow_id=activation.workflow_id,
            run_id=activation.run_id,
            workflow_type=job.workflow_type,
            task_queue=activation.task_queue,
            arguments=list(job.arguments),
        )
        run = _WorkflowRun(ctx, fn)
        self._runs[activation.run_id] = run
        return run.start()
