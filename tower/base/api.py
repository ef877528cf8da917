"""Control-plane API blueprint."""

from abc import ABC, abstractmethod
from typing import Any


class ControlPlaneBlueprint(ABC):
    """Abstract interface to the virtualization control plane.

    Query methods return the control plane's JSON records unchanged (lists
    of dicts). Mutating VM operations return one ``{"data": ..., "task_id": ...}``
    record per affected VM; the caller waits on the union of their task ids.
    """

    # ── tasks ──────────────────────────────────────────────────────────
    @abstractmethod
    def get_tasks(
        self,
        where: dict[str, Any],
        order_by: str | None = None,
        first: int | None = None,
    ) -> list[dict[str, Any]]:
        """Query tasks.

        Args:
            where: Either ``{"id_in": [...]}`` or
                ``{"resource_id": ..., "resource_mutation": ...}``.
            order_by: e.g. ``local_created_at_DESC``.
            first: Limit on the number of returned tasks.

        Returns:
            Task records with at least ``id``, ``status`` and
            ``error_message``.
        """

    # ── reads ──────────────────────────────────────────────────────────
    @abstractmethod
    def get_vm(self, vm_id: str) -> dict[str, Any] | None:
        """Return the VM record, or ``None`` if it does not exist."""

    @abstractmethod
    def get_vm_disks(self, vm_id: str, disk_type: str) -> list[dict[str, Any]]:
        """Return the VM's disks of *disk_type* (``DISK`` or ``CD_ROM``)."""

    @abstractmethod
    def get_vm_volumes(self, vm_id: str) -> list[dict[str, Any]]:
        """Return the volumes mounted as ``DISK`` on the VM."""

    @abstractmethod
    def get_vm_nics(self, vm_id: str) -> list[dict[str, Any]]:
        """Return the VM's NICs in ascending order."""

    @abstractmethod
    def get_storage_policies(self) -> list[dict[str, Any]]:
        """Return every storage policy (``id``, ``replica_num``, ``thin_provision``)."""

    @abstractmethod
    def get_image(self, image_id: str) -> dict[str, Any] | None:
        """Return the ISO image record, or ``None``."""

    @abstractmethod
    def get_vlan(self, vlan_id: str) -> dict[str, Any] | None:
        """Return the VLAN record, or ``None``."""

    @abstractmethod
    def get_vm_template(self, template_id: str) -> dict[str, Any] | None:
        """Return the VM template record (with its frozen ``vm_disks``), or ``None``."""

    @abstractmethod
    def get_content_library_vm_template(self, template_id: str) -> dict[str, Any] | None:
        """Return the content-library template record (with ``vm_templates``), or ``None``."""

    @abstractmethod
    def get_vm_snapshot(self, snapshot_id: str) -> dict[str, Any] | None:
        """Return the snapshot record (with its frozen ``vm_disks``), or ``None``."""

    # ── power ──────────────────────────────────────────────────────────
    @abstractmethod
    def start_vm(self, vm_id: str, host_id: str | None = None) -> list[dict[str, Any]]:
        """Start a stopped VM, optionally pinned to *host_id*."""

    @abstractmethod
    def resume_vm(self, vm_id: str) -> list[dict[str, Any]]:
        """Resume a suspended VM."""

    @abstractmethod
    def shutdown_vm(self, vm_id: str) -> list[dict[str, Any]]:
        """Gracefully shut a running VM down."""

    @abstractmethod
    def poweroff_vm(self, vm_id: str) -> list[dict[str, Any]]:
        """Force a running VM off."""

    @abstractmethod
    def suspend_vm(self, vm_id: str) -> list[dict[str, Any]]:
        """Suspend a running VM."""

    @abstractmethod
    def restart_vm(self, vm_id: str) -> list[dict[str, Any]]:
        """Reboot a running VM."""

    # ── lifecycle ──────────────────────────────────────────────────────
    @abstractmethod
    def create_vm(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Create a blank VM from creation params."""

    @abstractmethod
    def clone_vm(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Clone an existing VM (``src_vm_id``)."""

    @abstractmethod
    def create_vm_from_template(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Create a VM from a VM template (``template_id``)."""

    @abstractmethod
    def create_vm_from_content_library_template(
        self, params: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Create a VM from a content-library VM template (``template_id``)."""

    @abstractmethod
    def rebuild_vm(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Create a VM from a snapshot (``rebuild_from_snapshot_id``)."""

    @abstractmethod
    def delete_vm(self, vm_id: str) -> list[dict[str, Any]]:
        """Delete a VM."""

    @abstractmethod
    def migrate_vm(self, vm_id: str, host_id: str | None = None) -> list[dict[str, Any]]:
        """Migrate a VM to *host_id*, or let the scheduler pick when ``None``."""

    @abstractmethod
    def rollback_vm(self, vm_id: str, snapshot_id: str) -> list[dict[str, Any]]:
        """Roll a VM back to a snapshot."""

    @abstractmethod
    def update_vm(
        self,
        vm_id: str,
        data: dict[str, Any],
        effect: dict[str, Any] | None = None,
    ) -> None:
        """Apply the ``updateVm`` mutation.

        The mutation returns no task id; its task is found afterwards by
        ``(vm_id, "updateVm")``.
        """
