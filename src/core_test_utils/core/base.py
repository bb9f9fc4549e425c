"""Interfaces a core must provide to be driven by the harness."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import timedelta
from typing import Any

from temporalio.api.history.v1 import History
from temporalio.bridge.proto.workflow_completion import WorkflowActivationCompletion

from ..helpers import CoreTestHelpers
from ..models.options import WorkerConfig
from .activations import Activation


class ServerGateway(ABC):
    """Client side operations a core exposes for the server it talks to."""

    @abstractmethod
    async def start_workflow(
        self,
        input: Sequence[Any],
        task_queue: str,
        workflow_id: str,
        workflow_type: str,
        task_timeout: timedelta | None = None,
    ) -> str:
        """Start a workflow execution and return its run id."""

    @abstractmethod
    async def get_workflow_execution_history(self, workflow_id: str, run_id: str | None = None) -> History:
        """Fetch the full history of a workflow run."""


class Core(CoreTestHelpers, ABC):
    """One running engine instance."""

    @property
    @abstractmethod
    def server_gateway(self) -> ServerGateway:
        """Gateway to the server backing this core."""

    @abstractmethod
    def register_worker(self, config: WorkerConfig) -> None:
        """Register a worker for ``config.task_queue``.

        The config is copied; later changes to the caller's object are ignored.
        """

    @abstractmethod
    async def poll_workflow_activation(self, task_queue: str) -> Activation:
        """Wait for the next activation on a task queue."""

    @abstractmethod
    async def complete_workflow_activation(self, completion: WorkflowActivationCompletion) -> None:
        """Submit the commands produced for an activation."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Shut the core down. Pending polls fail with ``ShutdownError``."""
