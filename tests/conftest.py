"""Shared fixtures: an in-memory control plane and fast retry settings."""

from __future__ import annotations

import copy
import itertools
from typing import Any
from unittest.mock import MagicMock

import pytest

from tower.base.api import ControlPlaneBlueprint
from tower.base.context import OperationContext
from tower.base.retry import RetryPolicy


@pytest.fixture
def ctx():
    return OperationContext()


@pytest.fixture
def fast_policy():
    return RetryPolicy(max_retries=3, initial_backoff=0.001, ratio=2, max_delay=0.002)


@pytest.fixture
def api():
    return MagicMock(spec=ControlPlaneBlueprint)


class FakeTower(ControlPlaneBlueprint):
    """In-memory control plane; every mutation yields one task that succeeds.

    ``calls`` records ``(method, args)`` for each mutation so tests can
    assert on what was submitted and in which order.
    """

    def __init__(self) -> None:
        self.vms: dict[str, dict[str, Any]] = {}
        self.disks: dict[str, list[dict[str, Any]]] = {}
        self.volumes: dict[str, list[dict[str, Any]]] = {}
        self.nics: dict[str, list[dict[str, Any]]] = {}
        self.images = {"iso-1", "iso-2"}
        self.vlans = {"vlan-1", "vlan-2"}
        self.templates: dict[str, dict[str, Any]] = {}
        self.library_templates: dict[str, dict[str, Any]] = {}
        self.snapshots: dict[str, dict[str, Any]] = {}
        self.policies = [
            {"id": "sp-1", "replica_num": 2, "thin_provision": True},
            {"id": "sp-2", "replica_num": 3, "thin_provision": False},
        ]
        self.calls: list[tuple[str, tuple]] = []
        self.failing: dict[str, str] = {}
        self._ids = itertools.count(1)

    def add_vm(self, vm_id: str = "vm-1", **fields: Any) -> dict[str, Any]:
        record = {
            "id": vm_id,
            "name": "web",
            "status": "STOPPED",
            "vcpu": 2,
            "memory": 4096,
            "ha": True,
            "cpu": {"cores": 2, "sockets": 1},
            "host": {"id": "host-1"},
            "cluster": {"id": "cluster-1"},
            "vm_tools_status": "RUNNING",
            "dns_servers": "",
        }
        record.update(fields)
        self.vms[vm_id] = record
        self.disks.setdefault(vm_id, [])
        self.volumes.setdefault(vm_id, [])
        self.nics.setdefault(vm_id, [])
        return record

    def _task(self, name: str, vm_id: str, **extra: Any) -> list[dict[str, Any]]:
        self.calls.append((name, (vm_id, *extra.values())))
        return [{"data": {"id": vm_id}, "task_id": f"task-{next(self._ids)}"}]

    def mutations(self) -> list[str]:
        return [name for name, _ in self.calls]

    # ── tasks ──
    def get_tasks(self, where, order_by=None, first=None):
        if "id_in" in where:
            ids = where["id_in"]
        else:
            ids = [f"{where['resource_id']}:{where['resource_mutation']}"]
        return [
            {
                "id": task_id,
                "status": "FAILED" if task_id in self.failing else "SUCCESSED",
                "error_message": self.failing.get(task_id),
            }
            for task_id in ids
        ]

    # ── reads ──
    def get_vm(self, vm_id):
        record = self.vms.get(vm_id)
        return copy.deepcopy(record) if record else None

    def get_vm_disks(self, vm_id, disk_type):
        return [d for d in self.disks.get(vm_id, []) if d.get("type", "DISK") == disk_type]

    def get_vm_volumes(self, vm_id):
        return list(self.volumes.get(vm_id, []))

    def get_vm_nics(self, vm_id):
        return list(self.nics.get(vm_id, []))

    def get_storage_policies(self):
        return self.policies

    def get_image(self, image_id):
        return {"id": image_id} if image_id in self.images else None

    def get_vlan(self, vlan_id):
        return {"id": vlan_id} if vlan_id in self.vlans else None

    def get_vm_template(self, template_id):
        return self.templates.get(template_id)

    def get_content_library_vm_template(self, template_id):
        return self.library_templates.get(template_id)

    def get_vm_snapshot(self, snapshot_id):
        return self.snapshots.get(snapshot_id)

    # ── power ──
    def start_vm(self, vm_id, host_id=None):
        self.vms[vm_id]["status"] = "RUNNING"
        return self._task("start_vm", vm_id, host_id=host_id)

    def resume_vm(self, vm_id):
        self.vms[vm_id]["status"] = "RUNNING"
        return self._task("resume_vm", vm_id)

    def shutdown_vm(self, vm_id):
        self.vms[vm_id]["status"] = "STOPPED"
        return self._task("shutdown_vm", vm_id)

    def poweroff_vm(self, vm_id):
        self.vms[vm_id]["status"] = "STOPPED"
        return self._task("poweroff_vm", vm_id)

    def suspend_vm(self, vm_id):
        self.vms[vm_id]["status"] = "SUSPENDED"
        return self._task("suspend_vm", vm_id)

    def restart_vm(self, vm_id):
        return self._task("restart_vm", vm_id)

    # ── lifecycle ──
    def _provision(self, name, params):
        vm_id = f"vm-new-{next(self._ids)}"
        fields = {
            key: params[key] for key in ("name", "status", "vcpu", "memory", "ha") if key in params
        }
        if "cpu_cores" in params:
            fields["cpu"] = {"cores": params["cpu_cores"], "sockets": params.get("cpu_sockets", 1)}
        self.add_vm(vm_id, **fields)
        self.calls.append((name, (params,)))
        return [{"data": {"id": vm_id}, "task_id": f"task-{next(self._ids)}"}]

    def create_vm(self, params):
        return self._provision("create_vm", params)

    def clone_vm(self, params):
        return self._provision("clone_vm", params)

    def create_vm_from_template(self, params):
        return self._provision("create_vm_from_template", params)

    def create_vm_from_content_library_template(self, params):
        return self._provision("create_vm_from_content_library_template", params)

    def rebuild_vm(self, params):
        return self._provision("rebuild_vm", params)

    def delete_vm(self, vm_id):
        self.vms.pop(vm_id, None)
        return self._task("delete_vm", vm_id)

    def migrate_vm(self, vm_id, host_id=None):
        if host_id:
            self.vms[vm_id]["host"] = {"id": host_id}
        return self._task("migrate_vm", vm_id, host_id=host_id)

    def rollback_vm(self, vm_id, snapshot_id):
        return self._task("rollback_vm", vm_id, snapshot_id=snapshot_id)

    def update_vm(self, vm_id, data, effect=None):
        self.calls.append(("update_vm", (vm_id, copy.deepcopy(data), effect)))
        record = self.vms[vm_id]
        for field in ("name", "memory", "ha", "description", "vcpu", "hostname", "dns_servers"):
            if field in data:
                record[field] = data[field]
        if "cpu" in data:
            record["cpu"] = dict(data["cpu"])


@pytest.fixture
def tower():
    return FakeTower()
