"""
Desired vs. observed diff for VM sub-resources.

Every kind follows the same shape: index the observed entities by match
key, walk the desired list creating on a miss and comparing on a hit, and
turn whatever is left in the index into deletes. Creates and updates of
disks and CD-ROMs are stably sorted by boot order because the control
plane enumerates devices in submission order.

Match keys:

- disks match by the volume they mount, since a volume can be re-attached
  under a new disk id;
- CD-ROMs match by their own disk id;
- NICs match by their own nic id.
"""

from __future__ import annotations

import re
from typing import Sequence

from tower.base.exceptions import (
    ImmutableFieldError,
    StoragePolicyNotFoundError,
    VolumeShrinkError,
)
from tower.base.logger import tw_logger
from tower.base.models import (
    Bus,
    CdRomSpec,
    DiskSpec,
    DiskType,
    NicSpec,
    ObservedCdRom,
    ObservedDisk,
    ObservedNic,
)
from tower.base.policy_cache import StoragePolicyCache
from tower.engine.operations import (
    DiskBatch,
    DiskCreate,
    DiskDelete,
    DiskUpdate,
    ImageChange,
    NicBatch,
    NicCreate,
    NicDelete,
    NicUpdate,
    VolumeInput,
)

_POLICY_NAME = re.compile(r"^REPLICA_\d+_(THIN|THICK)_PROVISION$")

_NIC_FIELDS = ("vlan_id", "enabled", "mirror", "model")
_NIC_OPTIONAL_FIELDS = ("mac_address", "ip_address", "subnet_mask", "gateway")


class Reconciler:
    """Compute per-kind operation batches.

    Args:
        policies: Lookup used when a declared volume names its storage
            policy by id instead of by policy name.
    """

    def __init__(self, policies: StoragePolicyCache | None = None) -> None:
        self.policies = policies

    def resolve_storage_policy(self, policy: str) -> str:
        """Return the policy name for a policy name or policy id."""
        if _POLICY_NAME.match(policy):
            return policy
        if self.policies is None:
            raise StoragePolicyNotFoundError(policy)
        return self.policies.get(policy)

    # ── disks ──────────────────────────────────────────────────────────
    def diff_disks(
        self,
        desired: Sequence[DiskSpec],
        observed: Sequence[ObservedDisk],
    ) -> DiskBatch:
        remaining = {disk.vm_volume_id: disk for disk in observed}
        batch = DiskBatch()
        for spec in desired:
            if spec.vm_volume_id:
                origin = remaining.pop(spec.vm_volume_id, None)
                if origin is None:
                    # volume exists but is not mounted here yet
                    batch.create.append(
                        DiskCreate(boot=spec.boot, bus=spec.bus, vm_volume_id=spec.vm_volume_id)
                    )
                    continue
                update = self._disk_update(spec, origin)
                if update is not None:
                    batch.update.append(update)
            elif spec.vm_volume is not None:
                volume = spec.vm_volume
                batch.create.append(
                    DiskCreate(
                        boot=spec.boot,
                        bus=spec.bus,
                        vm_volume=VolumeInput(
                            name=volume.name,
                            size=volume.size,
                            storage_policy=self.resolve_storage_policy(volume.storage_policy),
                            path=volume.origin_path,
                        ),
                    )
                )
            else:
                tw_logger.debug(
                    f"disk at boot {spec.boot} declares no volume, skipping",
                    phase="validate",
                )
        batch.delete.extend(DiskDelete(disk_id=disk.id) for disk in remaining.values())
        return batch.sorted_by_boot()

    def _disk_update(self, spec: DiskSpec, origin: ObservedDisk) -> DiskUpdate | None:
        changed = spec.boot != origin.boot or spec.bus != origin.bus
        volume_input = None
        if spec.vm_volume is not None and origin.volume is not None:
            wanted, current = spec.vm_volume, origin.volume
            if wanted.name != current.name:
                raise ImmutableFieldError(current.name, "name")
            if wanted.size < current.size:
                raise VolumeShrinkError(current.name, current.size, wanted.size)
            if self.resolve_storage_policy(wanted.storage_policy) != current.storage_policy:
                raise ImmutableFieldError(current.name, "storage policy")
            if wanted.size != current.size:
                changed = True
                volume_input = VolumeInput(
                    name=current.name,
                    size=wanted.size,
                    storage_policy=current.storage_policy,
                    path=current.path,
                    mounting=current.mounting,
                    sharing=current.sharing,
                )
        if not changed:
            return None
        return DiskUpdate(
            disk_id=origin.id,
            boot=spec.boot,
            bus=spec.bus,
            key=origin.key,
            vm_volume=volume_input,
        )

    # ── CD-ROMs ────────────────────────────────────────────────────────
    def diff_cd_roms(
        self,
        desired: Sequence[CdRomSpec],
        observed: Sequence[ObservedCdRom],
    ) -> DiskBatch:
        remaining = {cd_rom.id: cd_rom for cd_rom in observed}
        batch = DiskBatch()
        for spec in desired:
            origin = remaining.pop(spec.id, None) if spec.id else None
            if origin is None:
                batch.create.append(
                    DiskCreate(
                        boot=spec.boot,
                        bus=Bus.IDE,
                        type=DiskType.CD_ROM,
                        elf_image_id=spec.iso_id or None,
                    )
                )
                continue
            image = _image_change(spec, origin)
            if image is None and spec.boot == origin.boot:
                continue
            batch.update.append(
                DiskUpdate(
                    disk_id=origin.id,
                    boot=spec.boot,
                    bus=origin.bus,
                    type=DiskType.CD_ROM,
                    key=origin.key,
                    disabled=origin.disabled,
                    elf_image=image,
                )
            )
        batch.delete.extend(DiskDelete(disk_id=c.id) for c in remaining.values())
        return batch.sorted_by_boot()

    # ── NICs ───────────────────────────────────────────────────────────
    def diff_nics(
        self,
        desired: Sequence[NicSpec],
        observed: Sequence[ObservedNic],
    ) -> NicBatch:
        remaining = {nic.id: nic for nic in observed}
        batch = NicBatch()
        for spec in desired:
            fields = spec.model_dump(exclude={"id"})
            origin = remaining.pop(spec.id, None) if spec.id else None
            if origin is None:
                batch.create.append(NicCreate(**fields))
            elif _nic_differs(spec, origin):
                batch.update.append(NicUpdate(nic_id=origin.id, **fields))
        batch.delete.extend(NicDelete(nic_id=nic.id) for nic in remaining.values())
        return batch


def _image_change(spec: CdRomSpec, origin: ObservedCdRom) -> ImageChange | None:
    if not spec.iso_declared:
        return None
    if not spec.iso_id:
        return ImageChange(disconnect=True) if origin.iso_id else None
    if spec.iso_id != origin.iso_id:
        return ImageChange(connect=spec.iso_id)
    return None


def _nic_differs(spec: NicSpec, origin: ObservedNic) -> bool:
    if any(getattr(spec, f) != getattr(origin, f) for f in _NIC_FIELDS):
        return True
    # undeclared addressing keeps whatever the NIC reports
    return any(
        getattr(spec, f) is not None and getattr(spec, f) != getattr(origin, f)
        for f in _NIC_OPTIONAL_FIELDS
    )


_default = Reconciler()


def diff_disks(desired: Sequence[DiskSpec], observed: Sequence[ObservedDisk]) -> DiskBatch:
    """Diff disks with a reconciler that only accepts policy names."""
    return _default.diff_disks(desired, observed)


def diff_cd_roms(desired: Sequence[CdRomSpec], observed: Sequence[ObservedCdRom]) -> DiskBatch:
    return _default.diff_cd_roms(desired, observed)


def diff_nics(desired: Sequence[NicSpec], observed: Sequence[ObservedNic]) -> NicBatch:
    return _default.diff_nics(desired, observed)
