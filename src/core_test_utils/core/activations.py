"""Activations handed from a core to a worker."""

from dataclasses import dataclass, field
from typing import Union

from temporalio.api.common.v1 import Payload


@dataclass
class StartWorkflow:
    """Begin executing a new workflow run."""

    workflow_type: str
    workflow_id: str
    arguments: list[Payload] = field(default_factory=list)


@dataclass
class FireTimer:
    """A timer started by the workflow has fired."""

    seq: int


@dataclass
class ResolveActivity:
    """An activity scheduled by the workflow has completed."""

    seq: int
    result: Payload | None = None


ActivationJob = Union[StartWorkflow, FireTimer, ResolveActivity]


@dataclass
class Activation:
    """A batch of jobs for one workflow run."""

    run_id: str
    workflow_id: str
    task_queue: str
    jobs: list[ActivationJob] = field(default_factory=list)

    @property
    def start_job(self) -> StartWorkflow | None:
        for job in self.jobs:
            if isinstance(job, StartWorkflow):
                return job
        return None
