"""Per-test lifecycle of a core, its worker and the workflows it runs."""

import asyncio
import base64
import logging
import os
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from temporalio.api.history.v1 import History

from .config import HarnessConfig, get_config, get_integ_core_options, get_integ_telem_options
from .core import Core, ReplayCore, init_core, init_core_replay
from .core.replay import REPLAY_WORKFLOW_ID
from .errors import CoreInitError, HistoryFetchError, UsageOrderError
from .models.options import CoreInitOptions, WorkerConfig
from .worker import TestWorker

logger = logging.getLogger(__name__)

CoreFactory = Callable[[CoreInitOptions], Awaitable[Core]]


class CoreWfStarter:
    """Builder that helps integration tests initialize a core and create workflows.

    The core is created on the first ``get_core`` call, together with a worker
    registered for this starter's task queue. Worker settings must be changed
    before that point; registration works on a copy.
    """

    def __init__(
        self,
        test_name: str,
        *,
        salt: bool = True,
        config: HarnessConfig | None = None,
        core_factory: CoreFactory | None = None,
    ):
        self.config = config or get_config()
        if salt:
            task_q_salt = base64.b64encode(os.urandom(6)).decode()
            task_queue = f"{test_name}_{task_q_salt}"
        else:
            task_queue = test_name

        # Used for both the task queue and the workflow id
        self._task_queue_name = task_queue
        self.core_options = get_integ_core_options(self.config)
        self.worker_config = WorkerConfig(
            task_queue=task_queue,
            max_cached_workflows=self.config.default_max_cached_workflows,
        )
        self._wft_timeout: timedelta | None = None
        self._core_factory = core_factory or self._default_core_factory
        self._initted_core: Core | None = None
        self._init_lock = asyncio.Lock()
        self._shut_down = False

    @classmethod
    def new_tq_name(
        cls,
        task_queue: str,
        *,
        config: HarnessConfig | None = None,
        core_factory: CoreFactory | None = None,
    ) -> "CoreWfStarter":
        """Starter using ``task_queue`` exactly as given."""
        return cls(task_queue, salt=False, config=config, core_factory=core_factory)

    async def _default_core_factory(self, options: CoreInitOptions) -> Core:
        return await init_core(options, mock_mode=self.config.mock_mode)

    @property
    def is_initialized(self) -> bool:
        return self._initted_core is not None

    async def get_core(self) -> Core:
        """Return the core, creating it and registering the worker on first use."""
        if self._initted_core is None:
            async with self._init_lock:
                if self._initted_core is None:
                    self._initted_core = await self._create_core()
        return self._initted_core

    async def _create_core(self) -> Core:
        logger.info(f"Initializing core for task queue '{self._task_queue_name}'")
        core = await self._core_factory(self.core_options)
        try:
            core.register_worker(self.worker_config)
        except CoreInitError:
            await core.shutdown()
            raise
        return core

    async def worker(self) -> TestWorker:
        """A test worker driving this starter's core and task queue."""
        return TestWorker(await self.get_core(), self.worker_config.task_queue, self._wft_timeout)

    async def shutdown(self) -> None:
        """Shut down the core. A second call does nothing."""
        if self._initted_core is None:
            raise UsageOrderError("Cannot shut down a starter whose core was never initialized")
        if self._shut_down:
            logger.warning(f"Core for task queue '{self._task_queue_name}' is already shut down")
            return

        self._shut_down = True
        await self._initted_core.shutdown()
        logger.info(f"Shut down core for task queue '{self._task_queue_name}'")

    async def start_wf(self) -> str:
        """Start the workflow defined by the builder and return its run id."""
        return await self.start_wf_with_id(self._task_queue_name)

    async def start_wf_with_id(self, workflow_id: str) -> str:
        """Start a workflow with the given id and return its run id."""
        if self._initted_core is None:
            raise UsageOrderError(
                "Core must be initted before starting a workflow. Tests must call `get_core` first."
            )

        return await self._initted_core.server_gateway.start_workflow(
            [],
            self.worker_config.task_queue,
            workflow_id,
            self._task_queue_name,
            self._wft_timeout,
        )

    async def fetch_history_and_replay(self, workflow_id: str, run_id: str, worker: TestWorker) -> None:
        """Fetch the history of a run and replay it on ``worker``.

        Used after completing workflows normally to check that replay works as
        well. The worker keeps its replay core afterwards.
        """
        core = await self.get_core()
        history = await core.server_gateway.get_workflow_execution_history(workflow_id, run_id)
        if history is None or not history.events:
            raise HistoryFetchError(f"History for {workflow_id}/{run_id} must be populated")

        logger.info(f"Replaying {len(history.events)} events of {workflow_id}/{run_id} on '{worker.task_queue}'")
        replay_core, _ = init_core_replay_preloaded(worker.task_queue, history, workflow_id=workflow_id)
        replay_worker = worker.swap_core(replay_core)
        replay_worker.incr_expected_run_count(1)
        await replay_worker.run_until_done()
        logger.info(f"Replay of {workflow_id}/{run_id} finished")

    def get_task_queue(self) -> str:
        return self.worker_config.task_queue

    def get_wf_id(self) -> str:
        return self._task_queue_name

    def max_cached_workflows(self, num: int) -> "CoreWfStarter":
        self.worker_config.max_cached_workflows = num
        return self

    def max_wft(self, max: int) -> "CoreWfStarter":
        self.worker_config.max_outstanding_workflow_tasks = max
        return self

    def max_at(self, max: int) -> "CoreWfStarter":
        self.worker_config.max_outstanding_activities = max
        return self

    def max_local_at(self, max: int) -> "CoreWfStarter":
        self.worker_config.max_outstanding_local_activities = max
        return self

    def max_at_polls(self, max: int) -> "CoreWfStarter":
        self.worker_config.max_concurrent_at_polls = max
        return self

    def wft_timeout(self, timeout: timedelta) -> "CoreWfStarter":
        self._wft_timeout = timeout
        return self

    def activities(self, *activities: Callable[..., Any]) -> "CoreWfStarter":
        """Activity implementations to run when the core talks to a server."""
        self.worker_config.activities = list(activities)
        return self


async def init_core_and_create_wf(test_name: str, config: HarnessConfig | None = None) -> tuple[Core, str]:
    """Create a core and start a workflow named after the test.

    Returns the core and the task queue name, which is also the workflow id.
    """
    starter = CoreWfStarter(test_name, config=config)
    core = await starter.get_core()
    await starter.start_wf()
    return core, starter.get_task_queue()


def init_core_replay_preloaded(
    task_queue: str,
    history: History,
    config: HarnessConfig | None = None,
    workflow_id: str = REPLAY_WORKFLOW_ID,
) -> tuple[ReplayCore, str]:
    """Create a replay core preloaded with one history.

    Workflow functions see ``workflow_id`` as their id, so pass the recorded
    id when the workflow depends on it.

    Returns the core and the task queue name, as ``init_core_and_create_wf`` does.
    """
    replay_core = init_core_replay(get_integ_telem_options(config))
    replay_core.make_replay_worker(WorkerConfig(task_queue=task_queue), history, workflow_id)
    return replay_core, task_queue
