"""Exception types raised by the test harness."""


class HarnessError(Exception):
    """Base class for every error raised by core_test_utils."""

    pass


class CoreInitError(HarnessError):
    """Raised when a core cannot be created or a worker cannot be registered."""

    pass


class UsageOrderError(HarnessError):
    """Raised when an operation is invoked before the state it depends on exists."""

    pass


class HistoryFetchError(HarnessError):
    """Raised when a workflow history is missing or cannot be fetched."""

    pass


class ReplayError(HarnessError):
    """Raised when replaying a history fails to converge."""

    pass


class NondeterminismError(ReplayError):
    """Raised when replayed commands differ from the recorded history."""

    def __init__(self, message: str, event_id: int | None = None):
        super().__init__(message)
        self.event_id = event_id


class CompletionError(HarnessError):
    """Raised when a core rejects a workflow activation completion."""

    pass


class WorkflowAlreadyStartedError(HarnessError):
    """Raised when starting a workflow id that already has an open run."""

    pass


class ShutdownError(HarnessError):
    """Raised when a core is used after it has been shut down."""

    pass


class UnknownWorkflowTypeError(HarnessError):
    """Raised when a worker receives a workflow type it has no function for."""

    def __init__(self, workflow_type: str):
        super().__init__(f"No workflow function registered for type '{workflow_type}'")
        self.workflow_type = workflow_type
