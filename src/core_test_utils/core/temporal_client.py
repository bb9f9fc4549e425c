"""Core backed by a real Temporal server through the temporalio SDK.

Workflow activations are polled and completed on a temporalio bridge worker,
so workflow functions run by the harness are driven exactly as they are on the
in-process core. Activity implementations, when a worker config lists any,
run on a regular temporalio worker polling the same task queue.
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import timedelta
from typing import Any
from urllib.parse import urlparse

import temporalio.bridge.client
from temporalio.api.history.v1 import History
from temporalio.bridge import worker as bridge_worker
from temporalio.bridge.proto.workflow_activation import WorkflowActivation
from temporalio.bridge.proto.workflow_completion import WorkflowActivationCompletion
from temporalio.bridge.worker import PollShutdownError
from temporalio.client import Client
from temporalio.runtime import OpenTelemetryConfig, PrometheusConfig, Runtime, TelemetryConfig
from temporalio.service import RPCError
from temporalio.worker import Worker

from ..errors import (
    CompletionError,
    CoreInitError,
    HarnessError,
    HistoryFetchError,
    ShutdownError,
    UsageOrderError,
)
from ..models.options import CoreInitOptions, ServerGatewayOptions, TelemetryOptions, WorkerConfig
from .activations import Activation, ActivationJob, FireTimer, ResolveActivity, StartWorkflow
from .base import Core, ServerGateway

logger = logging.getLogger(__name__)

# Jobs that carry nothing a workflow function reacts to
_IGNORED_JOBS = frozenset({"update_random_seed", "notify_has_patch"})

MAX_CONCURRENT_WFT_POLLS = 5
NONSTICKY_TO_STICKY_POLL_RATIO = 0.2
STICKY_QUEUE_SCHEDULE_TO_START_TIMEOUT = timedelta(seconds=10)


def target_host(target_url: str) -> str:
    """``host:port`` for a server URL such as ``http://localhost:7233``."""
    parsed = urlparse(target_url)
    return parsed.netloc or target_url


def runtime_for(telemetry: TelemetryOptions) -> Runtime | None:
    """Runtime exporting metrics as configured, or None for the default runtime."""
    if telemetry.prometheus_export_bind_address:
        metrics = PrometheusConfig(bind_address=telemetry.prometheus_export_bind_address)
    elif telemetry.otel_collector_url:
        metrics = OpenTelemetryConfig(url=telemetry.otel_collector_url)
    else:
        return None
    return Runtime(telemetry=TelemetryConfig(metrics=metrics))


def bridge_client_for(client: Client) -> temporalio.bridge.client.Client:
    """The connected bridge client underneath a temporalio client."""
    bridge_client = getattr(client.service_client, "_bridge_client", None)
    if bridge_client is None:
        raise CoreInitError("Workers need a client that is already connected to the server")
    return bridge_client


def bridge_worker_config(
    gateway_opts: ServerGatewayOptions, config: WorkerConfig
) -> bridge_worker.WorkerConfig:
    """Bridge worker settings for a workflow-only worker driven by the harness."""

    def slots(num: int) -> bridge_worker.FixedSizeSlotSupplier:
        return bridge_worker.FixedSizeSlotSupplier(num_slots=num)

    return bridge_worker.WorkerConfig(
        namespace=gateway_opts.namespace,
        task_queue=config.task_queue,
        versioning_strategy=bridge_worker.WorkerVersioningStrategyNone(
            build_id_no_versioning=gateway_opts.worker_binary_id
        ),
        identity_override=gateway_opts.identity,
        max_cached_workflows=config.max_cached_workflows,
        tuner=bridge_worker.TunerHolder(
            workflow_slot_supplier=slots(config.max_outstanding_workflow_tasks),
            activity_slot_supplier=slots(config.max_outstanding_activities),
            local_activity_slot_supplier=slots(config.max_outstanding_local_activities),
            nexus_slot_supplier=slots(1),
        ),
        workflow_task_poller_behavior=bridge_worker.PollerBehaviorSimpleMaximum(
            simple_maximum=MAX_CONCURRENT_WFT_POLLS
        ),
        nonsticky_to_sticky_poll_ratio=NONSTICKY_TO_STICKY_POLL_RATIO,
        activity_task_poller_behavior=bridge_worker.PollerBehaviorSimpleMaximum(
            simple_maximum=config.max_concurrent_at_polls
        ),
        # Activities are polled by the temporalio worker, never by this one
        no_remote_activities=True,
        task_types=bridge_worker.WorkerTaskTypes(
            enable_workflows=True,
            enable_local_activities=False,
            enable_remote_activities=False,
            enable_nexus=False,
        ),
        sticky_queue_schedule_to_start_timeout_millis=int(
            STICKY_QUEUE_SCHEDULE_TO_START_TIMEOUT.total_seconds() * 1000
        ),
        max_heartbeat_throttle_interval_millis=60_000,
        default_heartbeat_throttle_interval_millis=30_000,
        max_activities_per_second=None,
        max_task_queue_activities_per_second=None,
        max_eager_activity_reservations_per_workflow_task=0,
        graceful_shutdown_period_millis=0,
        nondeterminism_as_workflow_fail=False,
        nondeterminism_as_workflow_fail_for_types=set(),
        nexus_task_poller_behavior=bridge_worker.PollerBehaviorSimpleMaximum(simple_maximum=1),
        plugins=[],
        storage_drivers=set(),
        disable_payload_error_limit=False,
    )


class TemporalServerGateway(ServerGateway):
    """Gateway that forwards to a connected temporalio client."""

    def __init__(self, client: Client):
        self._client = client

    async def start_workflow(
        self,
        input: Sequence[Any],
        task_queue: str,
        workflow_id: str,
        workflow_type: str,
        task_timeout: timedelta | None = None,
    ) -> str:
        handle = await self._client.start_workflow(
            workflow_type,
            args=list(input),
            id=workflow_id,
            task_queue=task_queue,
            task_timeout=task_timeout,
        )
        logger.info(f"Started workflow {workflow_id} ({workflow_type}) on '{task_queue}'")
        return handle.first_execution_run_id or handle.result_run_id or ""

    async def get_workflow_execution_history(self, workflow_id: str, run_id: str | None = None) -> History:
        try:
            workflow_history = await self._client.get_workflow_handle(workflow_id, run_id=run_id).fetch_history()
        except RPCError as e:
            raise HistoryFetchError(f"Failed to fetch history for {workflow_id}/{run_id}: {e}") from e

        logger.info(f"Fetched {len(workflow_history.events)} history events for {workflow_id}/{run_id}")
        return History(events=workflow_history.events)


class TemporalCore(Core):
    """Core whose workers poll a Temporal server."""

    def __init__(self, client: Client, options: CoreInitOptions):
        self.options = options
        self._client = client
        self._gateway = TemporalServerGateway(client)
        self._bridge_workers: dict[str, bridge_worker.Worker] = {}
        self._activity_workers: dict[str, Worker] = {}
        self._activity_tasks: dict[str, asyncio.Task] = {}
        # run id -> (task queue, workflow id)
        self._runs: dict[str, tuple[str, str]] = {}
        self._shut_down = False

    @classmethod
    async def connect(cls, options: CoreInitOptions) -> "TemporalCore":
        """Connect to the server named in ``options``."""
        gateway_opts = options.gateway_opts
        target = target_host(gateway_opts.target_url)
        logger.info(f"Connecting to Temporal server at {target}")
        try:
            client = await Client.connect(
                target,
                namespace=gateway_opts.namespace,
                identity=gateway_opts.identity,
                runtime=runtime_for(options.telemetry_opts),
            )
        except Exception as e:
            raise CoreInitError(f"Failed to connect to Temporal server at {target}: {e}") from e

        logger.info(f"Successfully connected to Temporal server at {target}")
        return cls(client, options)

    @property
    def server_gateway(self) -> TemporalServerGateway:
        return self._gateway

    @property
    def client(self) -> Client:
        return self._client

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    def register_worker(self, config: WorkerConfig) -> None:
        if self._shut_down:
            raise ShutdownError("Core has been shut down")
        if config.task_queue in self._bridge_workers:
            raise CoreInitError(f"A worker is already registered for task queue '{config.task_queue}'")

        is_valid, errors = config.validate()
        if not is_valid:
            raise CoreInitError(f"Invalid worker config: {', '.join(errors)}")

        activity_worker = None
        if config.activities:
            try:
                activity_worker = Worker(
                    self._client,
                    task_queue=config.task_queue,
                    activities=list(config.activities),
                    identity=self.options.gateway_opts.identity,
                    max_concurrent_activities=config.max_outstanding_activities,
                    max_concurrent_activity_task_polls=config.max_concurrent_at_polls,
                )
            except (TypeError, ValueError) as e:
                raise CoreInitError(f"Activity worker registration failed for '{config.task_queue}': {e}") from e

        try:
            worker = bridge_worker.Worker.create(
                bridge_client_for(self._client),
                bridge_worker_config(self.options.gateway_opts, config),
            )
        except CoreInitError:
            raise
        except Exception as e:
            raise CoreInitError(f"Worker registration failed for '{config.task_queue}': {e}") from e

        self._bridge_workers[config.task_queue] = worker
        if activity_worker is not None:
            self._activity_workers[config.task_queue] = activity_worker
            self._activity_tasks[config.task_queue] = asyncio.create_task(activity_worker.run())
        logger.info(f"Registered worker for task queue '{config.task_queue}'")

    async def poll_workflow_activation(self, task_queue: str) -> Activation:
        worker = self._bridge_worker(task_queue)
        while True:
            try:
                act = await worker.poll_workflow_activation()
            except PollShutdownError as e:
                raise ShutdownError(f"Worker for task queue '{task_queue}' has shut down") from e

            activation = await self._to_activation(task_queue, worker, act)
            if activation is not None:
                return activation

    async def complete_workflow_activation(self, completion: WorkflowActivationCompletion) -> None:
        if self._shut_down:
            raise ShutdownError("Core has been shut down")

        run = self._runs.get(completion.run_id)
        if run is None:
            raise CompletionError(f"Completion for unknown run '{completion.run_id}'")

        task_queue, _ = run
        try:
            await self._bridge_worker(task_queue).complete_workflow_activation(completion)
        except HarnessError:
            raise
        except Exception as e:
            raise CompletionError(f"Server rejected completion for run '{completion.run_id}': {e}") from e

    async def shutdown(self) -> None:
        if self._shut_down:
            return

        self._shut_down = True
        for worker in self._bridge_workers.values():
            worker.initiate_shutdown()

        for task_queue, activity_worker in self._activity_workers.items():
            await activity_worker.shutdown()
            await self._activity_tasks[task_queue]

        for task_queue, worker in self._bridge_workers.items():
            await self._drain(worker)
            try:
                await worker.finalize_shutdown()
            except Exception as e:
                logger.warning(f"Worker for task queue '{task_queue}' did not finalize cleanly: {e}")
            logger.info(f"Worker for task queue '{task_queue}' shut down")

    async def _to_activation(
        self, task_queue: str, worker: bridge_worker.Worker, act: WorkflowActivation
    ) -> Activation | None:
        """Translate a bridge activation, or answer it directly and return None."""
        jobs: list[ActivationJob] = []
        evicted = False
        for job in act.jobs:
            kind = job.WhichOneof("variant")
            if kind == "initialize_workflow":
                init = job.initialize_workflow
                self._runs[act.run_id] = (task_queue, init.workflow_id)
                jobs.append(StartWorkflow(init.workflow_type, init.workflow_id, list(init.arguments)))
            elif kind == "fire_timer":
                jobs.append(FireTimer(seq=job.fire_timer.seq))
            elif kind == "resolve_activity":
                jobs.append(self._resolve_activity(act.run_id, job.resolve_activity))
            elif kind == "remove_from_cache":
                logger.debug(f"Run {act.run_id} evicted: {job.remove_from_cache.message}")
                self._runs.pop(act.run_id, None)
                evicted = True
            elif kind not in _IGNORED_JOBS:
                raise HarnessError(f"Unsupported activation job '{kind}' for run {act.run_id}")

        if evicted:
            # Evictions are always answered with an empty successful completion
            completion = WorkflowActivationCompletion(run_id=act.run_id)
            completion.successful.SetInParent()
            await worker.complete_workflow_activation(completion)
            return None

        _, workflow_id = self._runs.setdefault(act.run_id, (task_queue, ""))
        return Activation(run_id=act.run_id, workflow_id=workflow_id, task_queue=task_queue, jobs=jobs)

    def _resolve_activity(self, run_id: str, resolve) -> ResolveActivity:
        resolution = resolve.result
        status = resolution.WhichOneof("status")
        if status != "completed":
            raise HarnessError(f"Activity {resolve.seq} of run {run_id} resolved as '{status}'")

        completed = resolution.completed
        return ResolveActivity(seq=resolve.seq, result=completed.result if completed.HasField("result") else None)

    async def _drain(self, worker: bridge_worker.Worker) -> None:
        """Answer whatever is still delivered until the worker stops polling."""
        while True:
            try:
                act = await worker.poll_workflow_activation()
            except PollShutdownError:
                return

            completion = WorkflowActivationCompletion(run_id=act.run_id)
            completion.successful.SetInParent()
            await worker.complete_workflow_activation(completion)

    def _bridge_worker(self, task_queue: str) -> bridge_worker.Worker:
        if self._shut_down:
            raise ShutdownError("Core has been shut down")
        worker = self._bridge_workers.get(task_queue)
        if worker is None:
            raise UsageOrderError(f"No worker registered for task queue '{task_queue}'")
        return worker
