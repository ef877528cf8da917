"""
VM power-state transitions.

Each legal ``(current, desired)`` pair maps to exactly one remote
operation:

==========  =========  ===================================
current     desired    operation
==========  =========  ===================================
STOPPED     RUNNING    start (optionally pinned to a host)
SUSPENDED   RUNNING    resume
RUNNING     STOPPED    poweroff if forced, else shutdown
RUNNING     SUSPENDED  suspend
==========  =========  ===================================

Every other pair, including staying in the same state, raises
:class:`~tower.base.exceptions.InvalidTransitionError` before any remote
call is made.
"""

from __future__ import annotations

from enum import Enum

from tower.base.api import ControlPlaneBlueprint
from tower.base.async_support import AsyncMixin
from tower.base.context import OperationContext
from tower.base.exceptions import InvalidTransitionError, VmNotFoundError
from tower.base.logger import tw_logger
from tower.base.models import ObservedVm, PowerState, Task
from tower.base.retry import DEFAULT_POLICY, RetryPolicy, call_with_retry
from tower.engine.tasks import TaskTracker


class PowerOperation(str, Enum):
    START = "start"
    RESUME = "resume"
    SHUTDOWN = "shutdown"
    POWEROFF = "poweroff"
    SUSPEND = "suspend"


_TRANSITIONS: dict[tuple[PowerState, PowerState], PowerOperation] = {
    (PowerState.STOPPED, PowerState.RUNNING): PowerOperation.START,
    (PowerState.SUSPENDED, PowerState.RUNNING): PowerOperation.RESUME,
    (PowerState.RUNNING, PowerState.STOPPED): PowerOperation.SHUTDOWN,
    (PowerState.RUNNING, PowerState.SUSPENDED): PowerOperation.SUSPEND,
}


def select_operation(
    current: PowerState | str,
    desired: PowerState | str,
    force: bool = False,
) -> PowerOperation:
    """Return the single operation moving a VM from *current* to *desired*.

    Args:
        current: Observed status. Values outside :class:`PowerState`
            (e.g. ``UNKNOWN``) never allow a transition.
        desired: Requested status.
        force: Power off instead of shutting down when stopping.

    Raises:
        InvalidTransitionError: If the pair has no legal operation.
    """
    try:
        key = (PowerState(current), PowerState(desired))
    except ValueError:
        raise InvalidTransitionError(str(current), str(desired)) from None
    operation = _TRANSITIONS.get(key)
    if operation is None:
        raise InvalidTransitionError(key[0].value, key[1].value)
    if operation is PowerOperation.SHUTDOWN and force:
        return PowerOperation.POWEROFF
    return operation


class PowerStateMachine(AsyncMixin):
    """Submit power operations and wait for their tasks.

    Attributes:
        api: Control-plane client.
        tracker: Used to wait on the tasks each operation returns.
        retry_policy: Backoff for submitting the operation.
    """

    def __init__(
        self,
        api: ControlPlaneBlueprint,
        tracker: TaskTracker,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ) -> None:
        self.api = api
        self.tracker = tracker
        self.retry_policy = retry_policy

    def transition(
        self,
        ctx: OperationContext,
        vm_id: str,
        current: PowerState | str,
        desired: PowerState | str,
        force: bool = False,
        host_id: str | None = None,
    ) -> list[Task]:
        """Move *vm_id* from *current* to *desired* and wait until it got there.

        Args:
            ctx: Context for the submission and the wait.
            vm_id: VM to operate on.
            current: Status the VM is in now.
            desired: Status to reach.
            force: Power off instead of a graceful shutdown.
            host_id: Host to start the VM on; ignored by other operations.

        Returns:
            The finished tasks.

        Raises:
            InvalidTransitionError: Before any remote call, for illegal pairs.
            TaskFailedError: If the operation's task fails.
        """
        operation = select_operation(current, desired, force)
        tw_logger.info(
            f"{operation.value} vm ({PowerState(current).value} -> {PowerState(desired).value})",
            vm_id=vm_id,
            phase="submit",
            operation=f"{operation.value}_vm",
        )
        records = call_with_retry(
            lambda: self._submit(operation, vm_id, host_id),
            ctx=ctx,
            policy=self.retry_policy,
        )
        return self.tracker.wait_for_records(ctx, records)

    def change_state(
        self,
        ctx: OperationContext,
        vm_id: str,
        desired: PowerState | str,
        force: bool = False,
        host_id: str | None = None,
    ) -> list[Task]:
        """Read the VM's status, then :meth:`transition` to *desired*."""
        record = call_with_retry(lambda: self.api.get_vm(vm_id), ctx=ctx, policy=self.retry_policy)
        if record is None:
            raise VmNotFoundError(vm_id)
        vm = ObservedVm.model_validate(record)
        return self.transition(ctx, vm_id, vm.status, desired, force=force, host_id=host_id)

    def _submit(self, operation: PowerOperation, vm_id: str, host_id: str | None) -> list:
        if operation is PowerOperation.START:
            return self.api.start_vm(vm_id, host_id=host_id)
        if operation is PowerOperation.RESUME:
            return self.api.resume_vm(vm_id)
        if operation is PowerOperation.SHUTDOWN:
            return self.api.shutdown_vm(vm_id)
        if operation is PowerOperation.POWEROFF:
            return self.api.poweroff_vm(vm_id)
        return self.api.suspend_vm(vm_id)
