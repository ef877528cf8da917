"""
Guest-agent dependent changes.

Static NIC addressing, hostname, DNS servers and guest OS credentials are
applied by the guest agent, which only runs while the VM is powered on. A
stopped VM is started for the duration of the change and powered off
again afterwards, whatever happened in between.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from tower.base.api import ControlPlaneBlueprint
from tower.base.context import OperationContext
from tower.base.exceptions import (
    CombinedError,
    DeadlineExceededError,
    InvalidStateError,
    TowerError,
    VmNotFoundError,
    VmToolsTimeoutError,
)
from tower.base.logger import tw_logger
from tower.base.models import ObservedVm, PowerState
from tower.base.retry import DEFAULT_POLICY, RetryPolicy, call_with_retry
from tower.engine.power import PowerStateMachine
from tower.engine.tasks import DEFAULT_POLL_INTERVAL

T = TypeVar("T")

VM_TOOLS_TIMEOUT = 600.0
VM_TOOLS_RUNNING = "RUNNING"


def _noop() -> None:
    return None


class VmToolsConfigurer:
    """Run changes that need the guest agent, powering the VM on if needed.

    Attributes:
        api: Control-plane client.
        power: Used for the temporary start and the restoring power off.
        tools_timeout: Hard deadline (seconds) for the guest agent to come up;
            also bounds the restore when the caller's context is gone.
        poll_interval: Seconds between two guest-agent status reads.
    """

    def __init__(
        self,
        api: ControlPlaneBlueprint,
        power: PowerStateMachine,
        tools_timeout: float = VM_TOOLS_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ) -> None:
        self.api = api
        self.power = power
        self.tools_timeout = tools_timeout
        self.poll_interval = poll_interval
        self.retry_policy = retry_policy

    def _read_vm(self, ctx: OperationContext, vm_id: str) -> ObservedVm:
        record = call_with_retry(lambda: self.api.get_vm(vm_id), ctx=ctx, policy=self.retry_policy)
        if record is None:
            raise VmNotFoundError(vm_id)
        return ObservedVm.model_validate(record)

    def start_temporarily(self, ctx: OperationContext, vm_id: str) -> Callable[[], None]:
        """Make sure *vm_id* runs and return the function restoring its state.

        A running VM gets a no-op restore. A stopped VM is started on its
        current host; its restore powers it off and waits for that.

        Raises:
            InvalidStateError: If the VM is neither running nor stopped. No
                power operation is attempted.
        """
        vm = self._read_vm(ctx, vm_id)
        if vm.status == PowerState.RUNNING.value:
            return _noop
        if vm.status != PowerState.STOPPED.value:
            raise InvalidStateError(vm_id, vm.status, "start it temporarily")

        self.power.transition(
            ctx, vm_id, PowerState.STOPPED, PowerState.RUNNING, host_id=vm.host_id
        )
        tw_logger.info("vm started temporarily", vm_id=vm_id, operation="start_vm")

        def restore() -> None:
            # a cancelled caller must still get its VM powered off again
            restore_ctx = ctx if not ctx.done else ctx.detached(timeout=self.tools_timeout)
            self.power.transition(
                restore_ctx, vm_id, PowerState.RUNNING, PowerState.STOPPED, force=True
            )
            tw_logger.info("vm powered off after temporary start", vm_id=vm_id)

        return restore

    @contextmanager
    def powered_on(self, ctx: OperationContext, vm_id: str) -> Iterator[None]:
        """Keep *vm_id* running for the body of the ``with`` block.

        The restore runs exactly once on every exit path. When both the
        body and the restore fail, a :class:`CombinedError` carries both.
        """
        restore = self.start_temporarily(ctx, vm_id)
        try:
            yield
        except Exception as exc:
            try:
                restore()
            except TowerError as restore_exc:
                tw_logger.error(
                    f"restoring power state failed: {restore_exc}", vm_id=vm_id
                )
                raise CombinedError([exc, restore_exc]) from exc
            raise
        restore()

    def apply_with_temporary_power_on(
        self,
        ctx: OperationContext,
        vm_id: str,
        change_fn: Callable[[], T],
    ) -> T:
        """Run *change_fn* while the VM is powered on; see :meth:`powered_on`."""
        with self.powered_on(ctx, vm_id):
            return change_fn()

    def wait_tools_running(self, ctx: OperationContext, vm_id: str) -> ObservedVm:
        """Poll until the guest agent of *vm_id* reports running.

        Raises:
            VmToolsTimeoutError: If it does not within ``tools_timeout``.
            VmNotFoundError: If the VM disappears.
        """
        tools_ctx = ctx.with_timeout(self.tools_timeout)
        try:
            while True:
                vm = self._read_vm(tools_ctx, vm_id)
                if vm.vm_tools_status == VM_TOOLS_RUNNING:
                    return vm
                tools_ctx.sleep(self.poll_interval)
        except DeadlineExceededError:
            # the caller's own deadline is reported as such
            if ctx.done or (ctx.deadline is not None and ctx.deadline <= tools_ctx.deadline):
                raise
            raise VmToolsTimeoutError(
                f"vm {vm_id} tools status is not running after {self.tools_timeout:.0f} seconds"
            ) from None
