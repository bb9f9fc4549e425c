"""Tests for the generator driven test worker."""

import asyncio
from datetime import timedelta

import pytest
from temporalio.api.enums.v1 import EventType
from temporalio.exceptions import ApplicationError

from core_test_utils.commands import decode_payloads, schedule_activity_cmd, start_timer_cmd
from core_test_utils.config import HarnessConfig, get_integ_core_options
from core_test_utils.core import FireTimer, LocalCore, ResolveActivity, single_timer
from core_test_utils.errors import UnknownWorkflowTypeError
from core_test_utils.models.options import WorkerConfig
from core_test_utils.starter import init_core_replay_preloaded
from core_test_utils.worker import TestWorker

TQ = "worker_q"


def timer_workflow(ctx):
    fired = yield start_timer_cmd(1, timedelta(milliseconds=5))
    assert fired == FireTimer(seq=1)
    return "done"


def activity_workflow(ctx):
    resolved = yield schedule_activity_cmd(1, ctx.task_queue, "act-1", 0, timedelta(seconds=5), timedelta(seconds=1))
    assert isinstance(resolved, ResolveActivity)


def failing_workflow(ctx):
    yield start_timer_cmd(1, timedelta(milliseconds=5))
    raise ApplicationError("nope")


class TestTestWorker:
    """Test running workflows with TestWorker."""

    def setup_method(self):
        """Create an in-process core and a worker on it."""
        self.core = LocalCore(get_integ_core_options(HarnessConfig()))
        self.core.register_worker(WorkerConfig(task_queue=TQ))
        self.worker = TestWorker(self.core, TQ)

    async def run(self):
        await asyncio.wait_for(self.worker.run_until_done(), timeout=5)

    async def last_event_type(self, workflow_id, run_id):
        history = await self.core.server_gateway.get_workflow_execution_history(workflow_id, run_id)
        return history.events[-1].event_type

    @pytest.mark.asyncio
    async def test_plain_function_completes_immediately(self):
        """Test a non-generator workflow completes with its return value."""
        self.worker.register_wf("echo", lambda ctx: ctx.args[0])
        run_id = await self.worker.submit_wf("wf-echo", "echo", ["hi"])

        await self.run()

        history = await self.core.server_gateway.get_workflow_execution_history("wf-echo", run_id)
        completed = history.events[-1].workflow_execution_completed_event_attributes
        assert decode_payloads(completed.result.payloads) == ["hi"]
        assert self.worker.completed_run_count == 1

    @pytest.mark.asyncio
    async def test_timer_workflow(self):
        """Test a generator workflow is resumed when its timer fires."""
        self.worker.register_wf("timer", timer_workflow)
        run_id = await self.worker.submit_wf("wf-timer", "timer")

        await self.run()

        assert await self.last_event_type("wf-timer", run_id) == EventType.EVENT_TYPE_WORKFLOW_EXECUTION_COMPLETED

    @pytest.mark.asyncio
    async def test_activity_workflow(self):
        """Test a generator workflow is resumed when its activity resolves."""
        self.worker.register_wf("activity", activity_workflow)
        run_id = await self.worker.submit_wf("wf-act", "activity")

        await self.run()

        assert await self.last_event_type("wf-act", run_id) == EventType.EVENT_TYPE_WORKFLOW_EXECUTION_COMPLETED

    @pytest.mark.asyncio
    async def test_application_error_fails_workflow(self):
        """Test raising ApplicationError fails the run and counts it as done."""
        self.worker.register_wf("failing", failing_workflow)
        run_id = await self.worker.submit_wf("wf-fail", "failing")

        await self.run()

        assert await self.last_event_type("wf-fail", run_id) == EventType.EVENT_TYPE_WORKFLOW_EXECUTION_FAILED
        assert self.worker.completed_run_count == 1

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate(self):
        """Test bugs in workflow code surface from run_until_done."""

        def broken(ctx):
            raise KeyError("bug")

        self.worker.register_wf("broken", broken)
        await self.worker.submit_wf("wf-broken", "broken")

        with pytest.raises(KeyError):
            await self.run()

    @pytest.mark.asyncio
    async def test_unknown_workflow_type(self):
        """Test an activation for an unregistered type is an error."""
        await self.worker.submit_wf("wf-unknown", "unregistered")

        with pytest.raises(UnknownWorkflowTypeError):
            await self.run()

    @pytest.mark.asyncio
    async def test_many_runs(self):
        """Test several runs on the same worker all complete."""
        self.worker.register_wf("timer", timer_workflow)
        for i in range(5):
            await self.worker.submit_wf(f"wf-{i}", "timer")

        await self.run()

        assert self.worker.expected_run_count == 5
        assert self.worker.completed_run_count == 5

    @pytest.mark.asyncio
    async def test_nothing_expected_returns_immediately(self):
        """Test run_until_done with no expected runs does not poll."""
        await self.run()

        assert self.worker.completed_run_count == 0

    @pytest.mark.asyncio
    async def test_swap_core_keeps_counters(self):
        """Test swapping the core keeps counters, task queue and functions."""
        self.worker.register_wf("DEFAULT_WORKFLOW_TYPE", timer_workflow)
        self.worker.incr_expected_run_count(1)
        replay_core, _ = init_core_replay_preloaded(TQ, single_timer("1", task_queue=TQ))

        swapped = self.worker.swap_core(replay_core)

        assert swapped is self.worker
        assert self.worker.core is replay_core
        assert self.worker.task_queue == TQ
        assert self.worker.expected_run_count == 1

        await self.run()
        assert self.worker.completed_run_count == 1
