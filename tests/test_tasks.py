"""Tests for task tracking."""

import asyncio
import threading
import pytest

from tower.base.context import OperationContext
from tower.base.exceptions import (
    DeadlineExceededError,
    OperationCancelledError,
    RetriesExhaustedError,
    TaskFailedError,
    TransientApiError,
)
from tower.engine.tasks import TaskTracker, task_ids_of


def task(task_id, status, error_message=None):
    return {"id": task_id, "status": status, "error_message": error_message}


@pytest.fixture
def tracker(api, fast_policy):
    return TaskTracker(api, poll_interval=0, retry_policy=fast_policy)


class TestWaitForTasks:
    def test_empty_is_immediate(self, tracker, api, ctx):
        assert tracker.wait_for_tasks(ctx, []) == []
        api.get_tasks.assert_not_called()

    def test_success_on_third_poll(self, tracker, api, ctx):
        api.get_tasks.side_effect = [
            [task("t1", "PENDING")],
            [task("t1", "EXECUTING")],
            [task("t1", "SUCCESSED")],
            [task("t1", "SUCCESSED")],
        ]
        tasks = tracker.wait_for_tasks(ctx, ["t1"])
        assert api.get_tasks.call_count == 3
        assert tasks[0].status.terminal
        api.get_tasks.assert_called_with(where={"id_in": ["t1"]})

    def test_failure_message_verbatim(self, tracker, api, ctx):
        api.get_tasks.return_value = [task("t1", "FAILED", "disk attach conflict")]
        with pytest.raises(TaskFailedError) as exc_info:
            tracker.wait_for_tasks(ctx, ["t1"])
        assert str(exc_info.value) == "disk attach conflict"
        assert exc_info.value.task_id == "t1"

    def test_failure_does_not_wait_for_siblings(self, tracker, api, ctx):
        api.get_tasks.return_value = [
            task("t1", "EXECUTING"),
            task("t2", "FAILED", "boom"),
        ]
        with pytest.raises(TaskFailedError, match="boom"):
            tracker.wait_for_tasks(ctx, ["t1", "t2"])
        assert api.get_tasks.call_count == 1

    def test_waits_for_all_tasks(self, tracker, api, ctx):
        api.get_tasks.side_effect = [
            [task("t1", "SUCCESSED"), task("t2", "EXECUTING")],
            [task("t1", "SUCCESSED"), task("t2", "SUCCESSED")],
        ]
        assert len(tracker.wait_for_tasks(ctx, ["t1", "t2"])) == 2
        assert api.get_tasks.call_count == 2

    def test_transient_query_error_retried(self, tracker, api, ctx):
        api.get_tasks.side_effect = [
            TransientApiError("502"),
            [task("t1", "SUCCESSED")],
        ]
        tracker.wait_for_tasks(ctx, ["t1"])
        assert api.get_tasks.call_count == 2

    def test_query_retries_exhausted(self, tracker, api, ctx):
        api.get_tasks.side_effect = TransientApiError("502")
        with pytest.raises(RetriesExhaustedError):
            tracker.wait_for_tasks(ctx, ["t1"])
        assert api.get_tasks.call_count == 3

    def test_cancel_unwinds_wait(self, api, fast_policy):
        tracker = TaskTracker(api, poll_interval=0.01, retry_policy=fast_policy)
        api.get_tasks.return_value = [task("t1", "EXECUTING")]
        ctx = OperationContext()
        threading.Timer(0.05, ctx.cancel).start()
        with pytest.raises(OperationCancelledError):
            tracker.wait_for_tasks(ctx, ["t1"])

    def test_deadline(self, api, fast_policy):
        tracker = TaskTracker(api, poll_interval=0.01, retry_policy=fast_policy)
        api.get_tasks.return_value = [task("t1", "PENDING")]
        with pytest.raises(DeadlineExceededError):
            tracker.wait_for_tasks(OperationContext(timeout=0.05), ["t1"])


class TestWaitForResourceTask:
    def test_latest_task_query(self, tracker, api, ctx):
        api.get_tasks.return_value = [task("t9", "SUCCESSED")]
        tracker.wait_for_resource_task(ctx, "vm-1", "updateVm")
        api.get_tasks.assert_called_once_with(
            where={"resource_id": "vm-1", "resource_mutation": "updateVm"},
            order_by="local_created_at_DESC",
            first=1,
        )

    def test_failure(self, tracker, api, ctx):
        api.get_tasks.return_value = [task("t9", "FAILED", "vm is locked")]
        with pytest.raises(TaskFailedError, match="vm is locked"):
            tracker.wait_for_resource_task(ctx, "vm-1", "updateVm")


class TestWaitForRecords:
    def test_union_of_task_ids(self, tracker, api, ctx):
        api.get_tasks.return_value = [task("t1", "SUCCESSED"), task("t2", "SUCCESSED")]
        records = [
            {"data": {"id": "vm-1"}, "task_id": "t1"},
            {"data": {"id": "vm-2"}, "task_id": "t2"},
            {"data": {"id": "vm-3"}},
        ]
        tracker.wait_for_records(ctx, records)
        api.get_tasks.assert_called_once_with(where={"id_in": ["t1", "t2"]})

    def test_task_ids_of(self):
        assert task_ids_of([{"task_id": "a"}, {"task_id": None}, {}]) == ["a"]


class TestAsyncTracker:
    def test_await_for_tasks(self, tracker, api, ctx):
        api.get_tasks.return_value = [task("t1", "SUCCESSED")]
        tasks = asyncio.run(tracker.await_for_tasks(ctx, ["t1"]))
        assert tasks[0].id == "t1"
