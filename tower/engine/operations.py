"""
Create / update / delete operations emitted by the reconciler.

Each operation knows how to render itself into the ``updateVm`` mutation
payload (``to_wire``). An :class:`OperationBatch` groups the operations of
one sub-resource kind.
"""

from __future__ import annotations

from operator import attrgetter
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from tower.base.models import Bus, DiskType, NicModel, ObservedCdRom, ObservedDisk


def _connect(entity_id: str) -> dict[str, Any]:
    return {"connect": {"id": entity_id}}


class VolumeInput(BaseModel):
    name: str
    size: int
    storage_policy: str
    path: str | None = None
    mounting: bool = True
    sharing: bool = False

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "name": self.name,
            "size": self.size,
            "elf_storage_policy": self.storage_policy,
            "mounting": self.mounting,
            "sharing": self.sharing,
        }
        if self.path:
            wire["path"] = self.path
        return wire


class ImageChange(BaseModel):
    """Connect a new ISO image, or disconnect the mounted one."""

    connect: str | None = None
    disconnect: bool = False

    def to_wire(self) -> dict[str, Any]:
        if self.disconnect:
            return {"disconnect": True}
        return _connect(self.connect or "")


# ── disks and CD-ROMs ─────────────────────────────────────────────────
class DiskCreate(BaseModel):
    boot: int
    bus: Bus
    type: DiskType = DiskType.DISK
    vm_volume_id: str | None = None
    vm_volume: VolumeInput | None = None
    elf_image_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "boot": self.boot,
            "bus": self.bus.value,
            "type": self.type.value,
        }
        if self.vm_volume_id:
            wire["vm_volume"] = _connect(self.vm_volume_id)
        elif self.vm_volume is not None:
            wire["vm_volume"] = {"create": self.vm_volume.to_wire()}
        if self.elf_image_id:
            wire["elf_image"] = _connect(self.elf_image_id)
        return wire


class DiskUpdate(BaseModel):
    disk_id: str
    boot: int
    bus: Bus
    type: DiskType = DiskType.DISK
    key: int | None = None
    disabled: bool | None = None
    vm_volume: VolumeInput | None = None
    elf_image: ImageChange | None = None

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "boot": self.boot,
            "bus": self.bus.value,
            "type": self.type.value,
        }
        if self.key is not None:
            data["key"] = self.key
        if self.disabled is not None:
            data["disabled"] = self.disabled
        if self.vm_volume is not None:
            data["vm_volume"] = {"create": self.vm_volume.to_wire()}
        if self.elf_image is not None:
            data["elf_image"] = self.elf_image.to_wire()
        return {"where": {"id": self.disk_id}, "data": data}

    @classmethod
    def keep_disk(cls, disk: ObservedDisk) -> DiskUpdate:
        """Re-submit a mounted disk as it is, volume included."""
        volume = None
        if disk.volume is not None:
            volume = VolumeInput(
                name=disk.volume.name,
                size=disk.volume.size,
                storage_policy=disk.volume.storage_policy,
                path=disk.volume.path,
                mounting=disk.volume.mounting,
                sharing=disk.volume.sharing,
            )
        return cls(disk_id=disk.id, boot=disk.boot, bus=disk.bus, vm_volume=volume)

    @classmethod
    def keep_cd_rom(cls, cd_rom: ObservedCdRom) -> DiskUpdate:
        """Re-submit a CD-ROM as it is; its image stays connected."""
        return cls(
            disk_id=cd_rom.id,
            boot=cd_rom.boot,
            bus=cd_rom.bus,
            type=DiskType.CD_ROM,
            key=cd_rom.key,
            disabled=cd_rom.disabled,
        )


class DiskDelete(BaseModel):
    disk_id: str

    def to_wire(self) -> dict[str, Any]:
        return {"id": self.disk_id}


# ── NICs ──────────────────────────────────────────────────────────────
class _NicFields(BaseModel):
    vlan_id: str
    enabled: bool = True
    mirror: bool = False
    model: NicModel = NicModel.VIRTIO
    mac_address: str | None = None
    ip_address: str | None = None
    subnet_mask: str | None = None
    gateway: str | None = None

    @property
    def requires_vm_tools(self) -> bool:
        """Static addressing is applied by the guest agent."""
        return bool(self.ip_address or self.subnet_mask or self.gateway)

    def _fields_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "vlan": _connect(self.vlan_id),
            "enabled": self.enabled,
            "mirror": self.mirror,
            "model": self.model.value,
        }
        for name in ("mac_address", "ip_address", "subnet_mask", "gateway"):
            value = getattr(self, name)
            if value:
                wire[name] = value
        if self.ip_address:
            wire["ip_type"] = "STATIC"
        return wire


class NicCreate(_NicFields):
    def to_wire(self) -> dict[str, Any]:
        return self._fields_wire()


class NicUpdate(_NicFields):
    nic_id: str

    def to_wire(self) -> dict[str, Any]:
        return {"where": {"id": self.nic_id}, "data": self._fields_wire()}


class NicDelete(BaseModel):
    nic_id: str

    def to_wire(self) -> dict[str, Any]:
        return {"id": self.nic_id}


# ── batches ───────────────────────────────────────────────────────────
C = TypeVar("C", bound=BaseModel)
U = TypeVar("U", bound=BaseModel)
D = TypeVar("D", bound=BaseModel)


class OperationBatch(BaseModel, Generic[C, U, D]):
    """The reconciler's output for one sub-resource kind."""

    create: list[C] = Field(default_factory=list)
    update: list[U] = Field(default_factory=list)
    delete: list[D] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.create or self.update or self.delete)

    def sorted_by_boot(self) -> OperationBatch[C, U, D]:
        """Stable ascending sort of creates and updates by ``boot``."""
        by_boot = attrgetter("boot")
        return self.model_copy(
            update={
                "create": sorted(self.create, key=by_boot),
                "update": sorted(self.update, key=by_boot),
            }
        )

    def merge(self, other: OperationBatch[C, U, D]) -> OperationBatch[C, U, D]:
        """Concatenate two batches of the same remote collection."""
        return type(self)(
            create=[*self.create, *other.create],
            update=[*self.update, *other.update],
            delete=[*self.delete, *other.delete],
        )

    def to_wire(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "create": [op.to_wire() for op in self.create],
            "update": [op.to_wire() for op in self.update],
            "delete": [op.to_wire() for op in self.delete],
        }


DiskBatch = OperationBatch[DiskCreate, DiskUpdate, DiskDelete]
NicBatch = OperationBatch[NicCreate, NicUpdate, NicDelete]
