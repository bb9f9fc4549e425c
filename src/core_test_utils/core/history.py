"""Building, loading and inspecting workflow histories."""

import asyncio
import logging
from collections.abc import Sequence
from datetime import timedelta
from pathlib import Path

from google.protobuf.json_format import ParseError
from google.protobuf.message import DecodeError
from temporalio.api.common.v1 import ActivityType, Payload, Payloads, WorkflowType
from temporalio.api.enums.v1 import EventType
from temporalio.api.failure.v1 import Failure
from temporalio.api.history.v1 import (
    ActivityTaskCompletedEventAttributes,
    ActivityTaskScheduledEventAttributes,
    ActivityTaskStartedEventAttributes,
    History,
    HistoryEvent,
    TimerFiredEventAttributes,
    TimerStartedEventAttributes,
    WorkflowExecutionCompletedEventAttributes,
    WorkflowExecutionFailedEventAttributes,
    WorkflowExecutionStartedEventAttributes,
    WorkflowTaskCompletedEventAttributes,
    WorkflowTaskScheduledEventAttributes,
    WorkflowTaskStartedEventAttributes,
)
from temporalio.api.taskqueue.v1 import TaskQueue
from temporalio.client import WorkflowHistory

from ..commands import TEST_ACTIVITY_TYPE, duration
from ..errors import HistoryFetchError

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_TYPE = "DEFAULT_WORKFLOW_TYPE"

# Events recorded as a direct result of a workflow command
COMMAND_EVENT_TYPES = frozenset({
    EventType.EVENT_TYPE_TIMER_STARTED,
    EventType.EVENT_TYPE_ACTIVITY_TASK_SCHEDULED,
    EventType.EVENT_TYPE_WORKFLOW_EXECUTION_COMPLETED,
    EventType.EVENT_TYPE_WORKFLOW_EXECUTION_FAILED,
})

TERMINAL_EVENT_TYPES = frozenset({
    EventType.EVENT_TYPE_WORKFLOW_EXECUTION_COMPLETED,
    EventType.EVENT_TYPE_WORKFLOW_EXECUTION_FAILED,
})


def event_type_name(event: HistoryEvent) -> str:
    """Readable name of an event's type."""
    return EventType.Name(event.event_type)


class TestHistoryBuilder:
    """Appends well-formed events to a history, assigning event ids in order.

    Each ``add_*`` method returns the id of the last event it appended.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, task_queue: str = "q"):
        self.task_queue = task_queue
        self._events: list[HistoryEvent] = []

    @property
    def events(self) -> list[HistoryEvent]:
        return self._events

    @property
    def last_event_id(self) -> int:
        return len(self._events)

    def _add(self, event_type: int, **attributes) -> int:
        event = HistoryEvent(event_id=self.last_event_id + 1, event_type=event_type, **attributes)
        event.event_time.GetCurrentTime()
        self._events.append(event)
        return event.event_id

    def add_workflow_execution_started(
        self,
        workflow_type: str = DEFAULT_WORKFLOW_TYPE,
        run_id: str = "",
        input: Sequence[Payload] = (),
        task_timeout: timedelta | None = None,
    ) -> int:
        attributes = WorkflowExecutionStartedEventAttributes(
            workflow_type=WorkflowType(name=workflow_type),
            task_queue=TaskQueue(name=self.task_queue),
            original_execution_run_id=run_id,
            first_execution_run_id=run_id,
        )
        if input:
            attributes.input.CopyFrom(Payloads(payloads=list(input)))
        if task_timeout is not None:
            attributes.workflow_task_timeout.CopyFrom(duration(task_timeout))
        return self._add(
            EventType.EVENT_TYPE_WORKFLOW_EXECUTION_STARTED,
            workflow_execution_started_event_attributes=attributes,
        )

    def add_workflow_task_scheduled_and_started(self) -> tuple[int, int]:
        scheduled_id = self._add(
            EventType.EVENT_TYPE_WORKFLOW_TASK_SCHEDULED,
            workflow_task_scheduled_event_attributes=WorkflowTaskScheduledEventAttributes(
                task_queue=TaskQueue(name=self.task_queue),
                attempt=1,
            ),
        )
        started_id = self._add(
            EventType.EVENT_TYPE_WORKFLOW_TASK_STARTED,
            workflow_task_started_event_attributes=WorkflowTaskStartedEventAttributes(
                scheduled_event_id=scheduled_id,
            ),
        )
        return scheduled_id, started_id

    def add_workflow_task_completed(self, scheduled_id: int, started_id: int) -> int:
        return self._add(
            EventType.EVENT_TYPE_WORKFLOW_TASK_COMPLETED,
            workflow_task_completed_event_attributes=WorkflowTaskCompletedEventAttributes(
                scheduled_event_id=scheduled_id,
                started_event_id=started_id,
            ),
        )

    def add_full_wf_task(self) -> int:
        """Scheduled, started and completed workflow task."""
        scheduled_id, started_id = self.add_workflow_task_scheduled_and_started()
        return self.add_workflow_task_completed(scheduled_id, started_id)

    def add_timer_started(self, timer_id: str, fire_after: timedelta, wft_completed_id: int) -> int:
        return self._add(
            EventType.EVENT_TYPE_TIMER_STARTED,
            timer_started_event_attributes=TimerStartedEventAttributes(
                timer_id=timer_id,
                start_to_fire_timeout=duration(fire_after),
                workflow_task_completed_event_id=wft_completed_id,
            ),
        )

    def add_timer_fired(self, timer_started_id: int, timer_id: str) -> int:
        return self._add(
            EventType.EVENT_TYPE_TIMER_FIRED,
            timer_fired_event_attributes=TimerFiredEventAttributes(
                timer_id=timer_id,
                started_event_id=timer_started_id,
            ),
        )

    def add_activity_task_scheduled(
        self,
        activity_id: str,
        wft_completed_id: int,
        activity_type: str = TEST_ACTIVITY_TYPE,
        task_queue: str | None = None,
        activity_timeout: timedelta = timedelta(seconds=5),
        heartbeat_timeout: timedelta = timedelta(seconds=1),
    ) -> int:
        return self._add(
            EventType.EVENT_TYPE_ACTIVITY_TASK_SCHEDULED,
            activity_task_scheduled_event_attributes=ActivityTaskScheduledEventAttributes(
                activity_id=activity_id,
                activity_type=ActivityType(name=activity_type),
                task_queue=TaskQueue(name=task_queue or self.task_queue),
                schedule_to_close_timeout=duration(activity_timeout),
                schedule_to_start_timeout=duration(activity_timeout),
                start_to_close_timeout=duration(activity_timeout),
                heartbeat_timeout=duration(heartbeat_timeout),
                workflow_task_completed_event_id=wft_completed_id,
            ),
        )

    def add_activity_task_completed(self, scheduled_id: int, result: Payload | None = None) -> int:
        """Started and completed events for a scheduled activity."""
        started_id = self._add(
            EventType.EVENT_TYPE_ACTIVITY_TASK_STARTED,
            activity_task_started_event_attributes=ActivityTaskStartedEventAttributes(
                scheduled_event_id=scheduled_id,
                attempt=1,
            ),
        )
        attributes = ActivityTaskCompletedEventAttributes(
            scheduled_event_id=scheduled_id,
            started_event_id=started_id,
        )
        if result is not None:
            attributes.result.CopyFrom(Payloads(payloads=[result]))
        return self._add(
            EventType.EVENT_TYPE_ACTIVITY_TASK_COMPLETED,
            activity_task_completed_event_attributes=attributes,
        )

    def add_workflow_execution_completed(self, wft_completed_id: int, result: Payload | None = None) -> int:
        attributes = WorkflowExecutionCompletedEventAttributes(
            workflow_task_completed_event_id=wft_completed_id,
        )
        if result is not None:
            attributes.result.CopyFrom(Payloads(payloads=[result]))
        return self._add(
            EventType.EVENT_TYPE_WORKFLOW_EXECUTION_COMPLETED,
            workflow_execution_completed_event_attributes=attributes,
        )

    def add_workflow_execution_failed(self, wft_completed_id: int, failure: Failure) -> int:
        return self._add(
            EventType.EVENT_TYPE_WORKFLOW_EXECUTION_FAILED,
            workflow_execution_failed_event_attributes=WorkflowExecutionFailedEventAttributes(
                failure=failure,
                workflow_task_completed_event_id=wft_completed_id,
            ),
        )

    def as_history(self) -> History:
        """Copy of the events built so far."""
        return History(events=self._events)


# Canned histories


def single_timer(timer_id: str, task_queue: str = "q", workflow_type: str = DEFAULT_WORKFLOW_TYPE) -> History:
    """A workflow that starts one timer and completes once it fires."""
    builder = TestHistoryBuilder(task_queue)
    builder.add_workflow_execution_started(workflow_type)
    wft_completed = builder.add_full_wf_task()
    timer_started = builder.add_timer_started(timer_id, timedelta(seconds=1), wft_completed)
    builder.add_timer_fired(timer_started, timer_id)
    wft_completed = builder.add_full_wf_task()
    builder.add_workflow_execution_completed(wft_completed)
    return builder.as_history()


def single_activity(activity_id: str, task_queue: str = "q", workflow_type: str = DEFAULT_WORKFLOW_TYPE) -> History:
    """A workflow that runs one activity and completes with its result."""
    builder = TestHistoryBuilder(task_queue)
    builder.add_workflow_execution_started(workflow_type)
    wft_completed = builder.add_full_wf_task()
    scheduled = builder.add_activity_task_scheduled(activity_id, wft_completed)
    builder.add_activity_task_completed(scheduled)
    wft_completed = builder.add_full_wf_task()
    builder.add_workflow_execution_completed(wft_completed)
    return builder.as_history()


def workflow_fails_after_timer(
    timer_id: str, task_queue: str = "q", workflow_type: str = DEFAULT_WORKFLOW_TYPE
) -> History:
    """A workflow that starts one timer and fails once it fires."""
    builder = TestHistoryBuilder(task_queue)
    builder.add_workflow_execution_started(workflow_type)
    wft_completed = builder.add_full_wf_task()
    timer_started = builder.add_timer_started(timer_id, timedelta(seconds=1), wft_completed)
    builder.add_timer_fired(timer_started, timer_id)
    wft_completed = builder.add_full_wf_task()
    builder.add_workflow_execution_failed(wft_completed, Failure(message="Boom"))
    return builder.as_history()


# Loading


async def history_from_proto_binary(path: str | Path) -> History:
    """Load history from a file containing its protobuf serialization."""
    try:
        data = await asyncio.to_thread(Path(path).read_bytes)
        history = History.FromString(data)
    except (OSError, DecodeError) as e:
        raise HistoryFetchError(f"Could not load history from {path}: {e}") from e

    logger.debug(f"Loaded {len(history.events)} history events from {path}")
    return history


def history_from_json(path: str | Path, workflow_id: str = "replay") -> History:
    """Load history from a JSON export such as the one the Temporal CLI writes."""
    try:
        text = Path(path).read_text()
        workflow_history = WorkflowHistory.from_json(workflow_id, text)
    except (OSError, ValueError, ParseError) as e:
        raise HistoryFetchError(f"Could not load history from {path}: {e}") from e

    return History(events=workflow_history.events)
