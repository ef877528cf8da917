"""Task completion tracking."""

from __future__ import annotations

from typing import Any, Iterable, Sequence

from tower.base.api import ControlPlaneBlueprint
from tower.base.async_support import AsyncMixin
from tower.base.context import OperationContext
from tower.base.exceptions import TaskFailedError
from tower.base.logger import tw_logger
from tower.base.models import Task, TaskStatus
from tower.base.retry import DEFAULT_POLICY, RetryPolicy, call_with_retry

DEFAULT_POLL_INTERVAL = 5.0


def task_ids_of(records: Iterable[dict[str, Any]]) -> list[str]:
    """Collect the task ids of bulk-mutation records, skipping records without one."""
    return [r["task_id"] for r in records if r.get("task_id")]


class TaskTracker(AsyncMixin):
    """Poll the control plane until submitted tasks are terminal.

    The tracker never submits work itself. A failed query is retried with
    the retry policy; a task that reports ``FAILED`` ends the wait at once
    and is never retried.

    Attributes:
        api: Control-plane client.
        poll_interval: Seconds between two polls.
        retry_policy: Backoff used for each poll query.
    """

    def __init__(
        self,
        api: ControlPlaneBlueprint,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ) -> None:
        self.api = api
        self.poll_interval = poll_interval
        self.retry_policy = retry_policy

    def wait_for_tasks(self, ctx: OperationContext, task_ids: Sequence[str]) -> list[Task]:
        """Wait until every task in *task_ids* succeeded.

        Args:
            ctx: Context checked at every poll interval and backoff sleep.
            task_ids: Ids returned by mutating calls. Empty means nothing
                to wait for.

        Returns:
            The terminal tasks from the last poll.

        Raises:
            TaskFailedError: As soon as one task is ``FAILED``.
            RetriesExhaustedError: If a poll query keeps failing.
            OperationCancelledError, DeadlineExceededError: If *ctx* stops.
        """
        if not task_ids:
            return []
        return self._poll(ctx, {"where": {"id_in": list(task_ids)}})

    def wait_for_resource_task(
        self,
        ctx: OperationContext,
        resource_id: str,
        mutation: str,
    ) -> list[Task]:
        """Wait for the most recent *mutation* task of *resource_id*.

        Used for mutations whose response carries no task id.
        """
        query = {
            "where": {"resource_id": resource_id, "resource_mutation": mutation},
            "order_by": "local_created_at_DESC",
            "first": 1,
        }
        return self._poll(ctx, query, resource_id=resource_id)

    def wait_for_records(
        self,
        ctx: OperationContext,
        records: Iterable[dict[str, Any]],
    ) -> list[Task]:
        """Wait on the union of the task ids carried by mutation records."""
        return self.wait_for_tasks(ctx, task_ids_of(records))

    def _poll(
        self,
        ctx: OperationContext,
        query: dict[str, Any],
        resource_id: str | None = None,
    ) -> list[Task]:
        polls = 0
        while True:
            ctx.sleep(self.poll_interval)
            polls += 1
            records = call_with_retry(
                lambda: self.api.get_tasks(**query), ctx=ctx, policy=self.retry_policy
            )
            tasks = [Task.model_validate(r) for r in records]
            finished = True
            for task in tasks:
                if task.status == TaskStatus.FAILED:
                    tw_logger.error(
                        f"task failed: {task.error_message}",
                        vm_id=resource_id or task.resource_id,
                        task_id=task.id,
                        phase="poll",
                    )
                    raise TaskFailedError(task.id, task.error_message)
                if not task.status.terminal:
                    finished = False
            if finished:
                tw_logger.debug(
                    f"{len(tasks)} task(s) finished after {polls} poll(s)",
                    vm_id=resource_id,
                    phase="poll",
                )
                return tasks
