"""
Tower exception hierarchy.

Every failure raised by the package inherits from :class:`TowerError`.
Families group the failure modes by phase: talking to the control plane
(submit), waiting on tasks (poll) and checking the declared configuration
(validate).
"""

from __future__ import annotations

from typing import Sequence


# ── Base ──────────────────────────────────────────────────────────────
class TowerError(Exception):
    """Root exception for all Tower errors."""


# ── Control-plane API ────────────────────────────────────────────────
class ApiError(TowerError):
    """A control-plane request was rejected."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientApiError(ApiError):
    """Network failure, throttling or server-side error; safe to retry."""


class AuthenticationError(ApiError):
    """The bearer token was refused."""


class ResourceNotFoundError(ApiError):
    """The addressed entity does not exist."""


class VmNotFoundError(ResourceNotFoundError):
    """No VM with the given id."""

    def __init__(self, vm_id: str) -> None:
        super().__init__(f"no VM found with id: {vm_id}", status_code=404)
        self.vm_id = vm_id


# ── Cancellation ─────────────────────────────────────────────────────
class ContextError(TowerError):
    """The operation context stopped the work."""


class OperationCancelledError(ContextError):
    """The caller cancelled the operation."""


class DeadlineExceededError(ContextError):
    """The operation ran past its deadline."""


# ── Retry ────────────────────────────────────────────────────────────
class RetriesExhaustedError(TowerError):
    """Every attempt failed; ``__cause__`` holds the last failure."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"failed after {attempts} retries")
        self.attempts = attempts


# ── Tasks ────────────────────────────────────────────────────────────
class TaskError(TowerError):
    """Base exception for asynchronous task tracking."""


class TaskFailedError(TaskError):
    """A task reached ``FAILED``; the message is the task's own error message."""

    def __init__(self, task_id: str, error_message: str | None) -> None:
        super().__init__(error_message or f"task {task_id} failed")
        self.task_id = task_id
        self.error_message = error_message


class VmToolsTimeoutError(TaskError):
    """The guest agent did not report running before the deadline."""


# ── Power state ──────────────────────────────────────────────────────
class StateError(TowerError):
    """Base exception for power-state handling."""


class InvalidTransitionError(StateError):
    """No remote operation moves the VM from ``current`` to ``desired``."""

    def __init__(self, current: str, desired: str) -> None:
        super().__init__(f"vm status is {current}, cannot change it to {desired}")
        self.current = current
        self.desired = desired


class InvalidStateError(StateError):
    """The VM is in a state that forbids the requested operation."""

    def __init__(self, vm_id: str, state: str, action: str) -> None:
        super().__init__(f"VM {vm_id} status is {state}, cannot {action}")
        self.vm_id = vm_id
        self.state = state


# ── Validation ───────────────────────────────────────────────────────
class ConfigValidationError(TowerError):
    """The declared configuration cannot be applied."""


class ImmutableFieldError(ConfigValidationError):
    """An update would change a field that is fixed after creation."""

    def __init__(self, entity: str, field: str) -> None:
        super().__init__(f"mounted disk {entity}'s {field} can not be changed")
        self.entity = entity
        self.field = field


class VolumeShrinkError(ConfigValidationError):
    """An update would make a volume smaller."""

    def __init__(self, entity: str, current: int, requested: int) -> None:
        super().__init__(
            f"disk {entity}'s size can not shrink ({requested} < {current})"
        )
        self.entity = entity
        self.current = current
        self.requested = requested


class CpuTopologyError(ConfigValidationError):
    """vcpu / cores / sockets do not describe a valid topology."""


class MissingFieldsError(ConfigValidationError):
    """Required attributes were not declared."""

    def __init__(self, message: str, fields: Sequence[str]) -> None:
        super().__init__(f"{message}: {list(fields)}")
        self.fields = list(fields)


class StoragePolicyNotFoundError(ConfigValidationError):
    """No storage policy with the given id."""

    def __init__(self, policy_id: str) -> None:
        super().__init__(f"no storage policy found for id: {policy_id}")
        self.policy_id = policy_id


# ── Aggregates ───────────────────────────────────────────────────────
class AggregateError(TowerError):
    """Several independent failures reported together."""

    def __init__(self, errors: Sequence[BaseException], header: str | None = None) -> None:
        self.errors = list(errors)
        lines = [str(e) for e in self.errors]
        if header:
            lines.insert(0, header)
        super().__init__("\n".join(lines))


class ReferenceResolutionError(AggregateError):
    """One or more image / vlan references could not be resolved."""


class CombinedError(AggregateError):
    """A guarded change failed and so did the cleanup that followed it."""
