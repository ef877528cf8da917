"""Tests for the declarative VM resource."""

import asyncio
import pytest

from tower.base.exceptions import (
    ConfigValidationError,
    CpuTopologyError,
    InvalidStateError,
    InvalidTransitionError,
    MissingFieldsError,
    ReferenceResolutionError,
    ResourceNotFoundError,
    TaskFailedError,
    VmNotFoundError,
)
from tower.engine.vm import resolve_cpu_topology
from tower.factory import tower_factory

CONFIG = {"server": "tower.local", "token": "t", "poll_interval": 0, "vm_tools_timeout": 1}


@pytest.fixture
def vms(tower, fast_policy):
    return tower_factory("vm", CONFIG, api=tower, retry_policy=fast_policy)


@pytest.fixture
def vm_with_devices(tower):
    tower.add_vm()
    tower.disks["vm-1"] = [
        {"id": "d1", "boot": 0, "bus": "VIRTIO", "type": "DISK", "vm_volume": {"id": "v1"}},
        {"id": "cd1", "boot": 1, "bus": "IDE", "type": "CD_ROM", "elf_image": {"id": "iso-1"}},
    ]
    tower.volumes["vm-1"] = [
        {"id": "v1", "name": "root", "size": 10, "elf_storage_policy": "REPLICA_2_THIN_PROVISION"},
    ]
    tower.nics["vm-1"] = [{"id": "n1", "vlan": {"id": "vlan-1"}, "order": 0}]
    return tower


def update_payloads(tower):
    return [args[1] for name, args in tower.calls if name == "update_vm"]


KEEP_D1 = {
    "where": {"id": "d1"},
    "data": {
        "boot": 0,
        "bus": "VIRTIO",
        "type": "DISK",
        "vm_volume": {"create": {
            "name": "root",
            "size": 10,
            "elf_storage_policy": "REPLICA_2_THIN_PROVISION",
            "mounting": True,
            "sharing": False,
        }},
    },
}


# ══════════════════════════════════════════════════════════════════════
# CPU topology
# ══════════════════════════════════════════════════════════════════════

class TestResolveCpuTopology:
    def test_nothing_declared(self):
        assert resolve_cpu_topology(None, None, None, 2, 1) is None

    def test_vcpu_keeps_sockets_when_divisible(self):
        assert resolve_cpu_topology(8, None, None, 2, 2) == (8, 4, 2)

    def test_vcpu_keeps_cores_when_divisible(self):
        assert resolve_cpu_topology(6, None, None, 2, 4) == (6, 2, 3)

    def test_vcpu_falls_back_to_one_socket(self):
        assert resolve_cpu_topology(5, None, None, 2, 2) == (5, 5, 1)

    def test_sockets_only(self):
        assert resolve_cpu_topology(None, None, 4, 2, 1) == (8, 2, 4)

    def test_cores_only(self):
        assert resolve_cpu_topology(None, 4, None, 1, 2) == (8, 4, 2)

    def test_cores_and_sockets(self):
        assert resolve_cpu_topology(None, 2, 3) == (6, 2, 3)

    def test_vcpu_not_divisible_by_sockets(self):
        with pytest.raises(CpuTopologyError, match="sockets"):
            resolve_cpu_topology(5, None, 2)

    def test_vcpu_not_divisible_by_cores(self):
        with pytest.raises(CpuTopologyError, match="cores"):
            resolve_cpu_topology(5, 2, None)

    def test_inconsistent_triple(self):
        with pytest.raises(CpuTopologyError):
            resolve_cpu_topology(8, 2, 3)


# ══════════════════════════════════════════════════════════════════════
# Read
# ══════════════════════════════════════════════════════════════════════

class TestRead:
    def test_merges_volumes_into_disks(self, vms, vm_with_devices, ctx):
        state = vms.read(ctx, "vm-1")
        assert state.vm.cpu_cores == 2
        assert state.disks[0].volume.name == "root"
        assert state.cd_roms[0].iso_id == "iso-1"
        assert state.nics[0].vlan_id == "vlan-1"

    def test_attributes_layout(self, vms, vm_with_devices, ctx):
        attributes = vms.read(ctx, "vm-1").to_attributes()
        assert attributes["host_id"] == "host-1"
        assert attributes["dns_servers"] == []
        assert attributes["disk"][0]["vm_volume"][0]["size"] == 10
        assert attributes["cd_rom"] == [{"id": "cd1", "boot": 1, "iso_id": "iso-1"}]
        assert attributes["nic"][0]["idx"] == 0

    def test_missing_vm(self, vms, tower, ctx):
        assert vms.read(ctx, "vm-404") is None

    def test_async_read(self, vms, vm_with_devices, ctx):
        state = asyncio.run(vms.aread(ctx, "vm-1"))
        assert state.vm.id == "vm-1"


# ══════════════════════════════════════════════════════════════════════
# Update
# ══════════════════════════════════════════════════════════════════════

class TestUpdate:
    def test_matching_declaration_is_noop(self, vms, vm_with_devices, ctx):
        vms.update(ctx, "vm-1", {
            "name": "web",
            "vcpu": 2,
            "memory": 4096,
            "disks": [{"boot": 0, "vm_volume_id": "v1"}],
            "cd_roms": [{"id": "cd1", "boot": 1}],
            "nics": [{"id": "n1", "vlan_id": "vlan-1"}],
        })
        assert vm_with_devices.mutations() == []

    def test_missing_vm(self, vms, tower, ctx):
        with pytest.raises(VmNotFoundError):
            vms.update(ctx, "vm-404", {"memory": 1024})

    def test_basic_fields_and_topology(self, vms, tower, ctx):
        tower.add_vm()
        state = vms.update(ctx, "vm-1", {"memory": 8192, "vcpu": 4})
        assert update_payloads(tower) == [
            {"memory": 8192, "vcpu": 4, "cpu": {"cores": 4, "sockets": 1}},
        ]
        assert state.vm.memory == 8192

    def test_topology_error_before_any_call(self, vms, tower, ctx):
        tower.add_vm()
        with pytest.raises(CpuTopologyError):
            vms.update(ctx, "vm-1", {"vcpu": 5, "cpu_sockets": 2})
        assert tower.mutations() == []

    def test_disks_and_cd_roms_in_one_mutation(self, vms, vm_with_devices, ctx):
        vms.update(ctx, "vm-1", {
            "disks": [
                {"boot": 0, "vm_volume_id": "v1"},
                {"boot": 2, "vm_volume": [{"name": "data", "size": 20, "storage_policy": "sp-1"}]},
            ],
            "cd_roms": [{"boot": 1, "iso_id": "iso-2"}],
        })
        (payload,) = update_payloads(vm_with_devices)
        vm_disks = payload["vm_disks"]
        assert [op["boot"] for op in vm_disks["create"]] == [1, 2]
        assert vm_disks["create"][0]["elf_image"] == {"connect": {"id": "iso-2"}}
        assert vm_disks["create"][1]["vm_volume"]["create"]["elf_storage_policy"] == (
            "REPLICA_2_THIN_PROVISION"
        )
        assert vm_disks["delete"] == [{"id": "cd1"}]
        assert vm_disks["update"] == [KEEP_D1]

    def test_cd_rom_change_keeps_disks(self, vms, vm_with_devices, ctx):
        vms.update(ctx, "vm-1", {"cd_roms": [{"id": "cd1", "boot": 1, "iso_id": "iso-2"}]})
        (payload,) = update_payloads(vm_with_devices)
        vm_disks = payload["vm_disks"]
        assert [op["where"]["id"] for op in vm_disks["update"]] == ["d1", "cd1"]
        assert vm_disks["update"][0] == KEEP_D1
        assert vm_disks["update"][1]["data"]["elf_image"] == {"connect": {"id": "iso-2"}}
        assert vm_disks["create"] == []
        assert vm_disks["delete"] == []

    def test_disk_change_keeps_cd_roms(self, vms, vm_with_devices, ctx):
        vms.update(ctx, "vm-1", {"disks": [
            {"boot": 0, "vm_volume_id": "v1"},
            {"boot": 2, "vm_volume_id": "v2"},
        ]})
        (payload,) = update_payloads(vm_with_devices)
        vm_disks = payload["vm_disks"]
        assert vm_disks["create"] == [
            {"boot": 2, "bus": "VIRTIO", "type": "DISK", "vm_volume": {"connect": {"id": "v2"}}},
        ]
        assert vm_disks["update"] == [
            KEEP_D1,
            {
                "where": {"id": "cd1"},
                "data": {"boot": 1, "bus": "IDE", "type": "CD_ROM", "disabled": False},
            },
        ]

    def test_repeated_credentials_not_resubmitted(self, vms, tower, ctx):
        tower.add_vm(status="STOPPED")
        desired = {
            "memory": 4096,
            "guest_os_account": [{"username": "root", "password": "secret"}],
        }
        vms.update(ctx, "vm-1", desired)
        assert tower.mutations() == ["start_vm", "update_vm", "poweroff_vm"]
        tower.calls.clear()
        state = vms.update(ctx, "vm-1", desired)
        assert tower.mutations() == []
        assert state.to_attributes()["guest_os_account_digest"]

    def test_changed_credentials_resubmitted(self, vms, tower, ctx):
        tower.add_vm(status="RUNNING")
        vms.update(ctx, "vm-1", {"guest_os_account": [{"username": "root", "password": "a"}]})
        tower.calls.clear()
        vms.update(ctx, "vm-1", {"guest_os_account": [{"username": "root", "password": "b"}]})
        (call,) = tower.calls
        assert call[1][2] == {"guest_os_username": "root", "guest_os_password": "b"}

    def test_stored_credentials_digest(self, vms, tower, fast_policy, ctx):
        tower.add_vm(status="RUNNING")
        desired = {"guest_os_account": [{"username": "root", "password": "secret"}]}
        attributes = vms.update(ctx, "vm-1", desired).to_attributes()
        tower.calls.clear()
        fresh = tower_factory("vm", CONFIG, api=tower, retry_policy=fast_policy)
        fresh.update(
            ctx, "vm-1", desired, applied_credentials=attributes["guest_os_account_digest"]
        )
        assert tower.mutations() == []

    def test_unresolved_references_reported_together(self, vms, vm_with_devices, ctx):
        with pytest.raises(ReferenceResolutionError) as exc_info:
            vms.update(ctx, "vm-1", {
                "cd_roms": [{"boot": 1, "iso_id": "iso-x"}],
                "nics": [{"vlan_id": "vlan-x"}],
            })
        assert len(exc_info.value.errors) == 2
        assert "iso-x" in str(exc_info.value)
        assert "vlan-x" in str(exc_info.value)
        assert vm_with_devices.mutations() == []

    def test_status_change(self, vms, tower, ctx):
        tower.add_vm(status="STOPPED")
        state = vms.update(ctx, "vm-1", {"status": "RUNNING", "host_id": "host-2"})
        assert tower.mutations() == ["start_vm"]
        assert tower.calls[0][1] == ("vm-1", "host-2")
        assert state.vm.status == "RUNNING"

    def test_forced_stop(self, vms, tower, ctx):
        tower.add_vm(status="RUNNING")
        vms.update(ctx, "vm-1", {"status": "STOPPED", "force_status_change": True})
        assert tower.mutations() == ["poweroff_vm"]

    def test_invalid_transition_fails_fast(self, vms, tower, ctx):
        tower.add_vm(status="STOPPED")
        with pytest.raises(InvalidTransitionError):
            vms.update(ctx, "vm-1", {"memory": 8192, "status": "SUSPENDED"})
        assert tower.mutations() == []

    def test_status_applied_last(self, vms, tower, ctx):
        tower.add_vm(status="RUNNING")
        vms.update(ctx, "vm-1", {"memory": 8192, "status": "SUSPENDED"})
        assert tower.mutations() == ["update_vm", "suspend_vm"]

    def test_tools_changes_on_stopped_vm(self, vms, tower, ctx):
        tower.add_vm(status="STOPPED")
        state = vms.update(ctx, "vm-1", {
            "hostname": "web-01",
            "dns_servers": ["8.8.8.8", "1.1.1.1"],
            "guest_os_account": [{"username": "root", "password": "secret"}],
        })
        assert tower.mutations() == ["start_vm", "update_vm", "update_vm", "poweroff_vm"]
        first, second = [args for name, args in tower.calls if name == "update_vm"]
        assert first[1] == {"hostname": "web-01"}
        assert first[2] == {"guest_os_username": "root", "guest_os_password": "secret"}
        assert second[1] == {"dns_servers": "8.8.8.8,1.1.1.1"}
        assert state.vm.status == "STOPPED"

    def test_tools_changes_on_suspended_vm(self, vms, tower, ctx):
        tower.add_vm(status="SUSPENDED")
        with pytest.raises(InvalidStateError, match="SUSPENDED"):
            vms.update(ctx, "vm-1", {"hostname": "web-01"})
        assert tower.mutations() == []

    def test_static_ip_goes_through_guest_agent(self, vms, vm_with_devices, ctx):
        vm_with_devices.vms["vm-1"]["status"] = "RUNNING"
        vms.update(ctx, "vm-1", {
            "memory": 8192,
            "nics": [{
                "id": "n1",
                "vlan_id": "vlan-1",
                "ip_address": "10.0.0.9",
                "subnet_mask": "255.255.255.0",
                "gateway": "10.0.0.1",
            }],
        })
        basic, tools = update_payloads(vm_with_devices)
        assert "vm_nics" not in basic
        assert tools["vm_nics"]["update"][0]["data"]["ip_type"] == "STATIC"
        assert vm_with_devices.mutations() == ["update_vm", "update_vm"]

    def test_plain_nic_change_in_basic_mutation(self, vms, vm_with_devices, ctx):
        vms.update(ctx, "vm-1", {"nics": [{"id": "n1", "vlan_id": "vlan-2"}]})
        (payload,) = update_payloads(vm_with_devices)
        assert payload["vm_nics"]["update"][0]["where"] == {"id": "n1"}
        assert vm_with_devices.mutations() == ["update_vm"]

    def test_rollback_and_migrate_before_update(self, vms, tower, ctx):
        tower.add_vm()
        vms.update(ctx, "vm-1", {"rollback_to": "snap-1", "host_id": "host-2", "memory": 8192})
        assert tower.mutations() == ["rollback_vm", "migrate_vm", "update_vm"]
        assert ("migrate_vm", ("vm-1", "host-2")) in tower.calls

    def test_auto_schedule_migration(self, vms, tower, ctx):
        tower.add_vm()
        vms.update(ctx, "vm-1", {"host_id": "AUTO_SCHEDULE"})
        assert tower.calls == [("migrate_vm", ("vm-1", None))]

    def test_failed_update_task(self, vms, tower, ctx):
        tower.add_vm()
        tower.failing["vm-1:updateVm"] = "memory exceeds host capacity"
        with pytest.raises(TaskFailedError) as exc_info:
            vms.update(ctx, "vm-1", {"memory": 1 << 20})
        assert str(exc_info.value) == "memory exceeds host capacity"

    def test_plan_submits_nothing(self, vms, tower, ctx):
        tower.add_vm()
        plan = vms.plan(ctx, "vm-1", {"memory": 8192, "hostname": "db"})
        assert tower.mutations() == []
        assert plan.update_data() == {"memory": 8192}
        assert plan.needs_vm_tools


# ══════════════════════════════════════════════════════════════════════
# Create / delete
# ══════════════════════════════════════════════════════════════════════

BLANK = {
    "name": "db",
    "vcpu": 4,
    "memory": 2048,
    "ha": False,
    "cluster_id": "cluster-1",
    "status": "STOPPED",
    "firmware": "BIOS",
}


class TestCreateBlank:
    def test_creates_and_reads_back(self, vms, tower, ctx):
        state = vms.create_blank(ctx, {
            **BLANK,
            "disks": [{"boot": 0, "vm_volume": {
                "name": "root", "size": 40, "storage_policy": "REPLICA_2_THIN_PROVISION",
            }}],
            "cd_roms": [{"boot": 1, "iso_id": "iso-1"}],
            "nics": [{"vlan_id": "vlan-1"}],
        })
        assert state.vm.id.startswith("vm-new-")
        assert state.vm.name == "db"
        (params,) = [args[0] for name, args in tower.calls if name == "create_vm"]
        assert params["cpu_cores"] == 1
        assert params["cpu_sockets"] == 4
        assert params["vm_disks"]["mount_cd_roms"] == [{"boot": 1, "elf_image_id": "iso-1"}]
        assert params["vm_disks"]["mount_new_create_disks"][0]["vm_volume"]["size"] == 40
        assert params["vm_nics"][0]["connect_vlan_id"] == "vlan-1"

    def test_missing_fields(self, vms, tower, ctx):
        with pytest.raises(MissingFieldsError) as exc_info:
            vms.create_blank(ctx, {"name": "db", "vcpu": 2})
        assert exc_info.value.fields == ["ha", "memory", "cluster_id", "status", "firmware"]
        assert tower.mutations() == []

    def test_guest_agent_fields_rejected(self, vms, tower, ctx):
        with pytest.raises(ConfigValidationError, match=r"nic\.\[0\]\.ip_address") as exc_info:
            vms.create_blank(ctx, {
                **BLANK,
                "hostname": "db-01",
                "nics": [{"vlan_id": "vlan-1", "ip_address": "10.0.0.2"}],
            })
        assert "hostname" in str(exc_info.value)
        assert tower.mutations() == []


def submitted(tower, mutation):
    (params,) = [args[0] for name, args in tower.calls if name == mutation]
    return params


DATA_DISK = {"boot": 1, "vm_volume": [{
    "name": "data", "size": 80, "storage_policy": "sp-1", "origin_path": "/zbs/data",
}]}


class TestCreateFromSource:
    def test_template_disks_matched_by_path(self, vms, tower, ctx):
        tower.templates["tpl-1"] = {"id": "tpl-1", "vm_disks": [
            {"type": "DISK", "path": "/zbs/root", "boot": 0},
            {"type": "DISK", "path": "/zbs/data", "boot": 1},
        ]}
        state = vms.create(ctx, {
            "name": "web",
            "status": "STOPPED",
            "disks": [DATA_DISK],
            "nics": [{"vlan_id": "vlan-1"}],
            "create_effect": [{
                "clone_from_template": "tpl-1",
                "is_full_copy": True,
                "cloud_init": [{
                    "hostname": "web-01",
                    "nameservers": ["8.8.8.8"],
                    "networks": [{"nic_index": 0, "type": "ipv4_dhcp"}],
                }],
            }],
        }, settle_delay=0)
        params = submitted(tower, "create_vm_from_template")
        assert params["template_id"] == "tpl-1"
        assert params["is_full_copy"] is True
        assert params["disk_operate"]["remove_disks"] == {"disk_index": [0, 1]}
        (new_disk,) = params["disk_operate"]["new_disks"]["mount_new_create_disks"]
        assert new_disk["index"] == 1
        assert new_disk["vm_volume"] == {
            "elf_storage_policy": "REPLICA_2_THIN_PROVISION",
            "name": "data",
            "size": 80,
            "path": "/zbs/data",
        }
        assert params["vm_nics"][0]["connect_vlan_id"] == "vlan-1"
        assert params["cloud_init"] == {
            "hostname": "web-01",
            "nameservers": ["8.8.8.8"],
            "networks": [{"nic_index": 0, "type": "IPV4_DHCP"}],
        }
        assert state.vm.name == "web"

    def test_template_without_devices_keeps_template_disks(self, vms, tower, ctx):
        vms.create(ctx, {
            "name": "web",
            "create_effect": {"clone_from_template": "tpl-1", "is_full_copy": False},
        }, settle_delay=0)
        params = submitted(tower, "create_vm_from_template")
        assert params["disk_operate"] == {"remove_disks": {"disk_index": []}}
        assert "cloud_init" not in params

    def test_template_requires_full_copy_flag(self, vms, tower, ctx):
        with pytest.raises(MissingFieldsError) as exc_info:
            vms.create(ctx, {"name": "web", "create_effect": {"clone_from_template": "tpl-1"}})
        assert exc_info.value.fields == ["create_effect.is_full_copy"]
        assert tower.mutations() == []

    def test_content_library_template(self, vms, tower, ctx):
        tower.library_templates["clt-1"] = {"id": "clt-1", "vm_templates": [{"id": "tpl-9"}]}
        tower.templates["tpl-9"] = {"id": "tpl-9", "vm_disks": [{"path": "/zbs/data"}]}
        vms.create(ctx, {
            "name": "web",
            "disks": [DATA_DISK],
            "create_effect": {
                "clone_from_content_library_template": "clt-1",
                "is_full_copy": True,
            },
        }, settle_delay=0)
        params = submitted(tower, "create_vm_from_content_library_template")
        assert params["template_id"] == "clt-1"
        new_disks = params["disk_operate"]["new_disks"]["mount_new_create_disks"]
        assert new_disks[0]["index"] == 0

    def test_missing_content_library_template(self, vms, tower, ctx):
        with pytest.raises(ResourceNotFoundError):
            vms.create(ctx, {
                "name": "web",
                "disks": [DATA_DISK],
                "create_effect": {
                    "clone_from_content_library_template": "clt-x",
                    "is_full_copy": True,
                },
            }, settle_delay=0)
        assert tower.mutations() == []

    def test_clone_from_vm(self, vms, tower, ctx):
        tower.add_vm("vm-src")
        tower.disks["vm-src"] = [
            {"id": "d1", "boot": 0, "bus": "VIRTIO", "type": "DISK", "vm_volume": {"id": "v1"}},
            {"id": "d2", "boot": 1, "bus": "VIRTIO", "type": "DISK", "vm_volume": {"id": "v2"}},
        ]
        tower.volumes["vm-src"] = [
            {"id": "v1", "name": "root", "size": 10, "elf_storage_policy": "REPLICA_2_THIN_PROVISION",
             "path": "/zbs/root"},
            {"id": "v2", "name": "data", "size": 40, "elf_storage_policy": "REPLICA_2_THIN_PROVISION",
             "path": "/zbs/data"},
        ]
        vms.create(ctx, {
            "name": "web-clone",
            "memory": 8192,
            "disks": [DATA_DISK],
            "create_effect": {"clone_from_vm": "vm-src"},
        }, settle_delay=0)
        params = submitted(tower, "clone_vm")
        assert params["src_vm_id"] == "vm-src"
        assert params["memory"] == 8192
        assert params["vm_disks"]["mount_new_create_disks"][0]["index"] == 1
        assert "vm_nics" not in params

    def test_clone_applies_guest_agent_attributes(self, vms, tower, ctx):
        tower.add_vm("vm-src")
        vms.create(ctx, {
            "name": "web-clone",
            "status": "STOPPED",
            "hostname": "web-02",
            "create_effect": {"clone_from_vm": "vm-src"},
        }, settle_delay=0)
        assert tower.mutations() == [
            "clone_vm", "start_vm", "update_vm", "restart_vm", "poweroff_vm",
        ]
        (payload,) = update_payloads(tower)
        assert payload == {"hostname": "web-02"}

    def test_rebuild_from_snapshot(self, vms, tower, ctx):
        tower.snapshots["snap-1"] = {"id": "snap-1", "vm_disks": [
            {"type": "CD_ROM", "boot": 0},
            {"type": "DISK", "path": "/zbs/data", "boot": 1},
        ]}
        vms.create(ctx, {
            "name": "restored",
            "disks": [DATA_DISK],
            "create_effect": {"rebuild_from_snapshot": "snap-1"},
        }, settle_delay=0)
        params = submitted(tower, "rebuild_vm")
        assert params["rebuild_from_snapshot_id"] == "snap-1"
        assert params["vm_disks"]["mount_new_create_disks"][0]["index"] == 1

    def test_missing_snapshot(self, vms, tower, ctx):
        with pytest.raises(ResourceNotFoundError):
            vms.create(ctx, {"name": "restored", "create_effect": {"rebuild_from_snapshot": "s-x"}})
        assert tower.mutations() == []

    def test_one_source_only(self, vms, tower, ctx):
        with pytest.raises(ConfigValidationError, match="one create effect"):
            vms.create(ctx, {
                "name": "web",
                "create_effect": {"clone_from_vm": "vm-src", "clone_from_template": "tpl-1"},
            })
        assert tower.mutations() == []

    def test_no_source_creates_blank(self, vms, tower, ctx):
        state = vms.create(ctx, BLANK)
        assert tower.mutations() == ["create_vm"]
        assert state.vm.name == "db"


class TestDelete:
    def test_delete_waits_for_tasks(self, vms, tower, ctx):
        tower.add_vm()
        tasks = vms.delete(ctx, "vm-1")
        assert tower.mutations() == ["delete_vm"]
        assert len(tasks) == 1
        assert vms.read(ctx, "vm-1") is None


# ══════════════════════════════════════════════════════════════════════
# Guest agent after create
# ══════════════════════════════════════════════════════════════════════

class TestConfigureVmTools:
    def test_full_sequence(self, vms, tower, ctx):
        tower.add_vm(status="STOPPED")
        tower.nics["vm-1"] = [
            {"id": "n1", "vlan": {"id": "vlan-1"}, "order": 0, "mac_address": "52:54:00:aa:bb:cc"},
        ]
        vms.configure_vm_tools(ctx, "vm-1", {
            "hostname": "db-01",
            "dns_servers": ["8.8.8.8"],
            "nics": [{
                "vlan_id": "vlan-1",
                "ip_address": "10.0.0.5",
                "subnet_mask": "255.255.255.0",
                "gateway": "10.0.0.1",
            }],
        }, settle_delay=0)
        assert tower.mutations() == [
            "start_vm", "update_vm", "update_vm", "restart_vm", "poweroff_vm",
        ]
        first, second = update_payloads(tower)
        assert first["hostname"] == "db-01"
        assert first["vm_nics"]["delete"] == [{"id": "n1"}]
        created = first["vm_nics"]["create"][0]
        assert created["mac_address"] == "52:54:00:aa:bb:cc"
        assert created["ip_address"] == "10.0.0.5"
        assert second == {"dns_servers": "8.8.8.8"}

    def test_nothing_to_configure(self, vms, tower, ctx):
        tower.add_vm(status="STOPPED")
        vms.configure_vm_tools(ctx, "vm-1", {"memory": 1024}, settle_delay=0)
        assert tower.mutations() == []
