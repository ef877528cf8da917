"""
Pydantic models for control-plane records and declared configuration.

Observed models parse the control plane's snake_case JSON records directly;
nested references such as ``{"vlan": {"id": ...}}`` are flattened with
``AliasPath``. Desired models keep track of which fields were declared
(``model_fields_set``) so an omitted field and an explicitly cleared field
stay distinguishable.
"""

from __future__ import annotations

import hashlib
from enum import Enum
from typing import Any

from pydantic import (
    AliasChoices,
    AliasPath,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


# ── Enums ─────────────────────────────────────────────────────────────
class PowerState(str, Enum):
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    SUSPENDED = "SUSPENDED"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    # the control plane's own spelling
    SUCCEEDED = "SUCCESSED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)


class Bus(str, Enum):
    IDE = "IDE"
    SCSI = "SCSI"
    VIRTIO = "VIRTIO"


class DiskType(str, Enum):
    DISK = "DISK"
    CD_ROM = "CD_ROM"


class NicModel(str, Enum):
    E1000 = "E1000"
    VIRTIO = "VIRTIO"
    SRIOV = "SRIOV"


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ── Tasks ─────────────────────────────────────────────────────────────
class Task(_Record):
    id: str
    status: TaskStatus
    resource_id: str | None = None
    resource_mutation: str | None = None
    error_message: str | None = None


# ── Observed state ────────────────────────────────────────────────────
class ObservedVolume(_Record):
    id: str
    name: str
    size: int
    path: str | None = None
    storage_policy: str = Field(
        validation_alias=AliasChoices("elf_storage_policy", "storage_policy")
    )
    mounting: bool = True
    sharing: bool = False


class ObservedDisk(_Record):
    id: str
    boot: int
    bus: Bus
    key: int | None = None
    disabled: bool = False
    vm_volume_id: str = Field(
        validation_alias=AliasChoices(AliasPath("vm_volume", "id"), "vm_volume_id")
    )
    volume: ObservedVolume | None = None


class ObservedCdRom(_Record):
    id: str
    boot: int
    bus: Bus = Bus.IDE
    key: int | None = None
    disabled: bool = False
    iso_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices(AliasPath("elf_image", "id"), "iso_id"),
    )


class ObservedNic(_Record):
    id: str
    vlan_id: str = Field(validation_alias=AliasChoices(AliasPath("vlan", "id"), "vlan_id"))
    enabled: bool = True
    mirror: bool = False
    model: NicModel = NicModel.VIRTIO
    mac_address: str | None = None
    ip_address: str | None = None
    subnet_mask: str | None = None
    gateway: str | None = None
    order: int | None = None


class ObservedVm(_Record):
    id: str
    name: str
    status: str
    vcpu: int | None = None
    memory: int | None = None
    ha: bool | None = None
    description: str | None = None
    firmware: str | None = None
    guest_os_type: str | None = None
    hostname: str | None = None
    dns_servers: str | None = None
    vm_tools_status: str | None = None
    cpu_cores: int | None = Field(
        default=None, validation_alias=AliasChoices(AliasPath("cpu", "cores"), "cpu_cores")
    )
    cpu_sockets: int | None = Field(
        default=None,
        validation_alias=AliasChoices(AliasPath("cpu", "sockets"), "cpu_sockets"),
    )
    host_id: str | None = Field(
        default=None, validation_alias=AliasChoices(AliasPath("host", "id"), "host_id")
    )
    cluster_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices(AliasPath("cluster", "id"), "cluster_id"),
    )
    folder_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices(AliasPath("folder", "id"), "folder_id"),
    )



class FrozenDisk(_Record):
    """A disk frozen into a template or snapshot, in device order."""

    type: DiskType = DiskType.DISK
    path: str | None = None
    boot: int | None = None


# ── Desired state ─────────────────────────────────────────────────────
class VolumeSpec(BaseModel):
    name: str
    size: int = Field(gt=0)
    storage_policy: str
    origin_path: str | None = None


class DiskSpec(BaseModel):
    """A disk either mounts ``vm_volume_id`` or creates ``vm_volume``."""

    id: str | None = None
    boot: int
    bus: Bus = Bus.VIRTIO
    vm_volume_id: str | None = None
    vm_volume: VolumeSpec | None = None

    @field_validator("vm_volume", mode="before")
    @classmethod
    def unwrap_single_block(cls, value: Any) -> Any:
        # the configuration store nests single blocks in one-element lists
        if isinstance(value, list):
            return value[0] if value else None
        return value


class CdRomSpec(BaseModel):
    id: str | None = None
    boot: int
    iso_id: str | None = None

    @property
    def iso_declared(self) -> bool:
        """True when ``iso_id`` was given, even as ``None`` or ``""``."""
        return "iso_id" in self.model_fields_set


class NicSpec(BaseModel):
    id: str | None = None
    vlan_id: str
    enabled: bool = True
    mirror: bool = False
    model: NicModel = NicModel.VIRTIO
    mac_address: str | None = None
    ip_address: str | None = None
    subnet_mask: str | None = None
    gateway: str | None = None

    @property
    def has_static_ip(self) -> bool:
        return bool(self.ip_address or self.subnet_mask or self.gateway)


class GuestOsAccount(BaseModel):
    username: str
    password: str

    def digest(self) -> str:
        """Fingerprint of the credentials, safe to keep in stored attributes."""
        raw = f"{self.username}\0{self.password}".encode()
        return hashlib.sha256(raw).hexdigest()


class CloudInitRoute(BaseModel):
    gateway: str | None = None
    netmask: str | None = None
    network: str | None = None


class CloudInitNetwork(BaseModel):
    nic_index: int = Field(ge=0, le=15)
    type: str
    ip_address: str | None = None
    netmask: str | None = None
    routes: list[CloudInitRoute] | None = None

    @field_validator("type")
    @classmethod
    def known_type(cls, value: str) -> str:
        value = value.upper()
        if value not in ("IPV4", "IPV4_DHCP"):
            raise ValueError(f"type should be one of ['IPV4', 'IPV4_DHCP'], but get {value}")
        return value


class CloudInitSpec(BaseModel):
    """First-boot configuration handed to cloud-init of a template clone."""

    default_user_password: str | None = None
    nameservers: list[str] | None = Field(default=None, max_length=3)
    public_keys: list[str] | None = Field(default=None, max_length=10)
    hostname: str | None = None
    user_data: str | None = None
    networks: list[CloudInitNetwork] | None = None

    def to_wire(self) -> dict[str, Any] | None:
        """Return the ``cloud_init`` payload, or ``None`` when nothing is set."""
        wire = self.model_dump(mode="json", exclude_none=True)
        return wire or None


class CreateEffect(BaseModel):
    """Where a new VM comes from; at most one source may be set."""

    clone_from_vm: str | None = None
    clone_from_template: str | None = None
    clone_from_content_library_template: str | None = None
    rebuild_from_snapshot: str | None = None
    is_full_copy: bool | None = None
    cloud_init: CloudInitSpec | None = None

    @field_validator("cloud_init", mode="before")
    @classmethod
    def unwrap_single_block(cls, value: Any) -> Any:
        if isinstance(value, list):
            return value[0] if value else None
        return value

    @property
    def sources(self) -> list[str]:
        return [
            name
            for name in (
                "rebuild_from_snapshot",
                "clone_from_vm",
                "clone_from_template",
                "clone_from_content_library_template",
            )
            if getattr(self, name)
        ]


class VmDesiredConfig(BaseModel):
    """Declared VM configuration; only declared fields are reconciled."""

    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    vcpu: int | None = Field(default=None, gt=0)
    memory: int | None = Field(default=None, gt=0)
    ha: bool | None = None
    description: str | None = None
    cpu_cores: int | None = Field(default=None, gt=0)
    cpu_sockets: int | None = Field(default=None, gt=0)
    cluster_id: str | None = None
    host_id: str | None = None
    folder_id: str | None = None
    firmware: str | None = None
    guest_os_type: str | None = None
    status: PowerState | None = None
    force_status_change: bool = False
    hostname: str | None = None
    dns_servers: list[str] | None = None
    guest_os_account: GuestOsAccount | None = None
    rollback_to: str | None = None
    create_effect: CreateEffect | None = None
    disks: list[DiskSpec] | None = Field(
        default=None, validation_alias=AliasChoices("disks", "disk")
    )
    cd_roms: list[CdRomSpec] | None = Field(
        default=None, validation_alias=AliasChoices("cd_roms", "cd_rom")
    )
    nics: list[NicSpec] | None = Field(
        default=None, validation_alias=AliasChoices("nics", "nic")
    )

    @field_validator("guest_os_account", "create_effect", mode="before")
    @classmethod
    def unwrap_single_block(cls, value: Any) -> Any:
        if isinstance(value, list):
            return value[0] if value else None
        return value

    def declared(self, *names: str) -> bool:
        """True when any of *names* was declared."""
        return any(name in self.model_fields_set for name in names)


# ── Read-back ─────────────────────────────────────────────────────────
class VmState(BaseModel):
    """Everything observed about one VM after a reconciliation."""

    vm: ObservedVm
    nics: list[ObservedNic] = Field(default_factory=list)
    disks: list[ObservedDisk] = Field(default_factory=list)
    cd_roms: list[ObservedCdRom] = Field(default_factory=list)
    guest_os_account_digest: str | None = None

    def to_attributes(self) -> dict[str, Any]:
        """Flatten into the attribute layout the configuration store expects."""
        vm = self.vm
        attributes: dict[str, Any] = {
            "id": vm.id,
            "name": vm.name,
            "cluster_id": vm.cluster_id,
            "vcpu": vm.vcpu,
            "memory": vm.memory,
            "ha": vm.ha,
            "firmware": vm.firmware,
            "status": vm.status,
            "host_id": vm.host_id,
            "description": vm.description,
            "guest_os_type": vm.guest_os_type,
            "cpu_cores": vm.cpu_cores,
            "cpu_sockets": vm.cpu_sockets,
            "hostname": vm.hostname,
        }
        if vm.folder_id is not None:
            attributes["folder_id"] = vm.folder_id
        if vm.dns_servers is not None:
            attributes["dns_servers"] = vm.dns_servers.split(",") if vm.dns_servers else []
        attributes["nic"] = [
            {
                "id": n.id,
                "idx": idx,
                "vlan_id": n.vlan_id,
                "enabled": n.enabled,
                "mirror": n.mirror,
                "model": n.model.value,
                "mac_address": n.mac_address,
                "ip_address": n.ip_address,
                "subnet_mask": n.subnet_mask,
                "gateway": n.gateway,
            }
            for idx, n in enumerate(self.nics)
        ]
        disks = []
        for disk in self.disks:
            volume: dict[str, Any] = {"id": disk.vm_volume_id}
            if disk.volume is not None:
                volume.update(
                    name=disk.volume.name,
                    size=disk.volume.size,
                    path=disk.volume.path,
                    storage_policy=disk.volume.storage_policy,
                )
            disks.append(
                {
                    "id": disk.id,
                    "boot": disk.boot,
                    "bus": disk.bus.value,
                    "vm_volume_id": disk.vm_volume_id,
                    "vm_volume": [volume],
                }
            )
        attributes["disk"] = disks
        cd_roms = []
        for cd_rom in self.cd_roms:
            entry: dict[str, Any] = {"id": cd_rom.id, "boot": cd_rom.boot}
            if cd_rom.iso_id is not None:
                entry["iso_id"] = cd_rom.iso_id
            cd_roms.append(entry)
        attributes["cd_rom"] = cd_roms
        if self.guest_os_account_digest is not None:
            attributes["guest_os_account_digest"] = self.guest_os_account_digest
        return attributes
