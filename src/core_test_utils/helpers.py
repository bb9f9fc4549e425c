"""Convenience completions available on every core."""

from datetime import timedelta

from .commands import complete_workflow_cmd, completion_from_cmds, start_timer_cmd


class CoreTestHelpers:
    """Submit canned completions without building the payload by hand.

    Mixed into every core and relies on its ``complete_workflow_activation``.
    Errors from the core propagate unchanged. The ``task_q`` argument is not
    used: completions are routed by ``run_id`` alone.
    """

    async def complete_execution(self, task_q: str, run_id: str) -> None:
        """Complete the workflow run with no result."""
        await self.complete_workflow_activation(
            completion_from_cmds(run_id, [complete_workflow_cmd()])
        )

    async def complete_timer(self, task_q: str, run_id: str, seq: int, fire_after: timedelta) -> None:
        """Respond to an activation by starting a single timer."""
        await self.complete_workflow_activation(
            completion_from_cmds(run_id, [start_timer_cmd(seq, fire_after)])
        )
