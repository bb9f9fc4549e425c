"""Tests for CoreWfStarter lifecycle and replay verification."""

import asyncio
from datetime import timedelta

import pytest

from core_test_utils.commands import schedule_activity_cmd, start_timer_cmd
from core_test_utils.config import HarnessConfig
from core_test_utils.core import LocalCore, ReplayCore, StartWorkflow
from core_test_utils.errors import (
    CoreInitError,
    HistoryFetchError,
    NondeterminismError,
    UsageOrderError,
)
from core_test_utils.fanout import fanout_tasks
from core_test_utils.starter import CoreWfStarter, init_core_and_create_wf


class CountingFactory:
    """Core factory that counts how often it is called."""

    def __init__(self):
        self.calls = 0
        self.cores = []

    async def __call__(self, options):
        self.calls += 1
        await asyncio.sleep(0)
        core = LocalCore(options)
        self.cores.append(core)
        return core


def timer_workflow(ctx):
    yield start_timer_cmd(1, timedelta(milliseconds=5))


def workflow_id_activity(ctx):
    yield schedule_activity_cmd(
        1, ctx.task_queue, f"{ctx.workflow_id}-act", 0, timedelta(seconds=5), timedelta(seconds=1)
    )


class TestCoreWfStarterLifecycle:
    """Test lazy core creation and lifecycle rules."""

    def setup_method(self):
        """Create a starter with a counting core factory."""
        self.factory = CountingFactory()
        self.starter = CoreWfStarter("lifecycle", config=HarnessConfig(), core_factory=self.factory)

    def test_task_queue_is_salted(self):
        """Test the task queue is the test name plus a random salt."""
        other = CoreWfStarter("lifecycle", config=HarnessConfig())

        assert self.starter.get_task_queue().startswith("lifecycle_")
        assert self.starter.get_task_queue() != other.get_task_queue()
        assert self.starter.get_wf_id() == self.starter.get_task_queue()

    def test_new_tq_name_uses_name_verbatim(self):
        """Test new_tq_name does not salt the task queue."""
        starter = CoreWfStarter.new_tq_name("exact_q", config=HarnessConfig())

        assert starter.get_task_queue() == "exact_q"

    def test_default_cache_size(self):
        """Test the worker caches up to the configured number of workflows."""
        assert self.starter.worker_config.max_cached_workflows == 1000

    @pytest.mark.asyncio
    async def test_get_core_is_cached(self):
        """Test repeated get_core calls return the same core created once."""
        cores = [await self.starter.get_core() for _ in range(5)]

        assert all(core is cores[0] for core in cores)
        assert self.factory.calls == 1
        assert self.starter.is_initialized

    @pytest.mark.asyncio
    async def test_concurrent_get_core_creates_once(self):
        """Test concurrent first calls still create a single core."""
        cores = await fanout_tasks(10, lambda _: self.starter.get_core())

        assert all(core is cores[0] for core in cores)
        assert self.factory.calls == 1

    @pytest.mark.asyncio
    async def test_get_core_registers_worker(self):
        """Test the worker is registered for the starter's queue."""
        core = await self.starter.get_core()

        registered = core.registered_worker(self.starter.get_task_queue())
        assert registered is not None
        assert registered.max_cached_workflows == 1000

    @pytest.mark.asyncio
    async def test_setters_before_init_apply(self):
        """Test setters called before get_core reach the registered worker."""
        self.starter.max_cached_workflows(5).max_wft(2).max_at(3).max_local_at(4).max_at_polls(1)

        core = await self.starter.get_core()

        registered = core.registered_worker(self.starter.get_task_queue())
        assert registered.max_cached_workflows == 5
        assert registered.max_outstanding_workflow_tasks == 2
        assert registered.max_outstanding_activities == 3
        assert registered.max_outstanding_local_activities == 4
        assert registered.max_concurrent_at_polls == 1

    @pytest.mark.asyncio
    async def test_activities_setter(self):
        """Test activity implementations reach the registered worker config."""

        async def my_activity():
            return None

        core = await self.starter.activities(my_activity).get_core()

        assert core.registered_worker(self.starter.get_task_queue()).activities == [my_activity]

    @pytest.mark.asyncio
    async def test_setters_after_init_have_no_effect(self):
        """Test changing limits after registration does not alter the worker."""
        core = await self.starter.get_core()

        self.starter.max_at(1)

        registered = core.registered_worker(self.starter.get_task_queue())
        assert registered.max_outstanding_activities == 100

    @pytest.mark.asyncio
    async def test_registration_failure_is_fatal(self):
        """Test an invalid worker config fails setup and caches nothing."""
        self.starter.max_at_polls(0)

        with pytest.raises(CoreInitError):
            await self.starter.get_core()

        assert not self.starter.is_initialized
        assert self.factory.cores[0].is_shut_down

    @pytest.mark.asyncio
    async def test_start_before_get_core(self):
        """Test starting a workflow before get_core is a usage error."""
        with pytest.raises(UsageOrderError, match="get_core"):
            await self.starter.start_wf()

        assert self.factory.calls == 0

    @pytest.mark.asyncio
    async def test_start_wf_uses_task_queue_as_id_and_type(self):
        """Test the default workflow id and type are the task queue name."""
        core = await self.starter.get_core()
        self.starter.wft_timeout(timedelta(seconds=3))

        run_id = await self.starter.start_wf()

        activation = await asyncio.wait_for(core.poll_workflow_activation(self.starter.get_task_queue()), 1)
        assert activation.run_id == run_id
        assert activation.workflow_id == self.starter.get_task_queue()
        assert activation.jobs == [
            StartWorkflow(workflow_type=self.starter.get_task_queue(), workflow_id=self.starter.get_task_queue())
        ]
        history = await core.server_gateway.get_workflow_execution_history(self.starter.get_wf_id(), run_id)
        started = history.events[0].workflow_execution_started_event_attributes
        assert started.workflow_task_timeout.ToTimedelta() == timedelta(seconds=3)

    @pytest.mark.asyncio
    async def test_shutdown_before_init(self):
        """Test shutting down an uninitialized starter does not create a core."""
        with pytest.raises(UsageOrderError):
            await self.starter.shutdown()

        assert self.factory.calls == 0

    @pytest.mark.asyncio
    async def test_shutdown_twice(self):
        """Test a second shutdown is a no-op."""
        core = await self.starter.get_core()

        await self.starter.shutdown()
        await self.starter.shutdown()

        assert core.is_shut_down
        assert self.factory.calls == 1


class TestReplayVerification:
    """Test fetching histories and replaying them on a worker."""

    def setup_method(self):
        """Create a starter on the in-process core."""
        self.starter = CoreWfStarter("replay", config=HarnessConfig())

    @pytest.mark.asyncio
    async def test_round_trip(self):
        """Test a workflow completed through core replays without error."""
        core = await self.starter.get_core()
        task_queue = self.starter.get_task_queue()
        run_id = await self.starter.start_wf()
        await asyncio.wait_for(core.poll_workflow_activation(task_queue), 1)
        await core.complete_execution(task_queue, run_id)

        worker = await self.starter.worker()
        worker.register_wf(task_queue, lambda ctx: None)
        await asyncio.wait_for(self.starter.fetch_history_and_replay(self.starter.get_wf_id(), run_id, worker), 5)

        assert isinstance(worker.core, ReplayCore)
        assert worker.expected_run_count == 1
        assert worker.completed_run_count == 1

    @pytest.mark.asyncio
    async def test_replay_after_worker_run(self):
        """Test a worker's live run replays and its counters converge."""
        task_queue = self.starter.get_task_queue()
        worker = await self.starter.worker()
        worker.register_wf(task_queue, timer_workflow)
        run_id = await worker.submit_wf(task_queue, task_queue)
        await asyncio.wait_for(worker.run_until_done(), 5)
        assert worker.completed_run_count == 1

        await asyncio.wait_for(self.starter.fetch_history_and_replay(task_queue, run_id, worker), 5)

        assert worker.expected_run_count == 2
        assert worker.completed_run_count == 2

    @pytest.mark.asyncio
    async def test_replay_sees_recorded_workflow_id(self):
        """Test a workflow that uses its own id in a command replays cleanly."""
        task_queue = self.starter.get_task_queue()
        worker = await self.starter.worker()
        worker.register_wf(task_queue, workflow_id_activity)
        run_id = await worker.submit_wf("my-wf", task_queue)
        await asyncio.wait_for(worker.run_until_done(), 5)

        await asyncio.wait_for(self.starter.fetch_history_and_replay("my-wf", run_id, worker), 5)

        assert worker.completed_run_count == 2

    @pytest.mark.asyncio
    async def test_changed_workflow_fails_replay(self):
        """Test replaying with different workflow code raises a nondeterminism error."""
        task_queue = self.starter.get_task_queue()
        worker = await self.starter.worker()
        worker.register_wf(task_queue, timer_workflow)
        run_id = await worker.submit_wf(task_queue, task_queue)
        await asyncio.wait_for(worker.run_until_done(), 5)

        worker.register_wf(task_queue, lambda ctx: None)

        with pytest.raises(NondeterminismError):
            await self.starter.fetch_history_and_replay(task_queue, run_id, worker)

    @pytest.mark.asyncio
    async def test_missing_history(self):
        """Test replaying an unknown run fails to fetch history."""
        worker = await self.starter.worker()

        with pytest.raises(HistoryFetchError):
            await self.starter.fetch_history_and_replay("missing", "missing", worker)

        assert worker.expected_run_count == 0

    @pytest.mark.asyncio
    async def test_many_workflows_fanned_out(self):
        """Test many starters can run and replay workflows concurrently."""

        async def run_one(i):
            starter = CoreWfStarter(f"fanout_{i}", config=HarnessConfig())
            task_queue = starter.get_task_queue()
            worker = await starter.worker()
            worker.register_wf(task_queue, timer_workflow)
            run_id = await worker.submit_wf(task_queue, task_queue)
            await worker.run_until_done()
            await starter.fetch_history_and_replay(task_queue, run_id, worker)
            await starter.shutdown()
            return worker.completed_run_count

        results = await asyncio.wait_for(fanout_tasks(5, run_one), 10)

        assert results == [2] * 5


class TestInitCoreAndCreateWf:
    """Test the one-call setup helper."""

    @pytest.mark.asyncio
    async def test_returns_core_and_task_queue(self):
        """Test a workflow is started on the returned core."""
        core, task_queue = await init_core_and_create_wf("one_call", config=HarnessConfig())

        activation = await asyncio.wait_for(core.poll_workflow_activation(task_queue), 1)
        assert activation.workflow_id == task_queue
        assert task_queue.startswith("one_call_")
