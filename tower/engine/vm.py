"""
Declarative VM resource.

:class:`VmResource` reads, creates, updates and deletes a VM. An update is
planned first (every validation, reference lookup and diff happens before
the first mutation) and then executed in a fixed order: rollback,
migration, the ``updateVm`` mutation, guest-agent changes under a
temporary power-on, and finally the power-state change.

Only the fields declared in :class:`~tower.base.models.VmDesiredConfig` are
reconciled; undeclared fields keep whatever the control plane reports.
"""

from __future__ import annotations

from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from tower.base.api import ControlPlaneBlueprint
from tower.base.async_support import AsyncMixin
from tower.base.context import OperationContext
from tower.base.exceptions import (
    ConfigValidationError,
    ContextError,
    CpuTopologyError,
    InvalidStateError,
    MissingFieldsError,
    ReferenceResolutionError,
    ResourceNotFoundError,
    TowerError,
    VmNotFoundError,
)
from tower.base.logger import tw_logger
from tower.base.models import (
    CreateEffect,
    FrozenDisk,
    GuestOsAccount,
    NicSpec,
    ObservedCdRom,
    ObservedDisk,
    ObservedNic,
    ObservedVm,
    ObservedVolume,
    PowerState,
    Task,
    VmDesiredConfig,
    VmState,
)
from tower.base.retry import DEFAULT_POLICY, RetryPolicy, call_with_retry
from tower.engine.operations import DiskBatch, DiskUpdate, NicBatch, NicCreate, NicDelete
from tower.engine.power import PowerOperation, PowerStateMachine, select_operation
from tower.engine.reconcile import Reconciler
from tower.engine.tasks import TaskTracker
from tower.engine.vm_tools import VmToolsConfigurer

AUTO_SCHEDULE = "AUTO_SCHEDULE"
UPDATE_VM = "updateVm"

_BASIC_FIELDS = ("name", "memory", "ha", "description")
_CREATE_REQUIRED = ("vcpu", "ha", "memory", "cluster_id", "status", "firmware")
_CREATE_FIELDS = (
    "cluster_id", "vcpu", "memory", "ha", "firmware", "description", "host_id", "folder_id",
    "cpu_cores", "cpu_sockets",
)


def resolve_cpu_topology(
    vcpu: int | None,
    cores: int | None,
    sockets: int | None,
    current_cores: int | None = None,
    current_sockets: int | None = None,
) -> tuple[int, int, int] | None:
    """Derive ``(vcpu, cores, sockets)`` from the declared subset.

    Missing values are completed from the current topology. Returns
    ``None`` when nothing CPU related is declared.

    Raises:
        CpuTopologyError: If the declared values cannot describe one topology.
    """
    current_cores = current_cores or 1
    current_sockets = current_sockets or 1
    if cores is None and sockets is None:
        if vcpu is None:
            return None
        if vcpu % current_sockets == 0:
            return vcpu, vcpu // current_sockets, current_sockets
        if vcpu % current_cores == 0:
            return vcpu, current_cores, vcpu // current_cores
        return vcpu, vcpu, 1
    if cores is None:
        if vcpu is None:
            return sockets * current_cores, current_cores, sockets
        if vcpu % sockets:
            raise CpuTopologyError("vcpu must be divisible by number of cpu sockets")
        return vcpu, vcpu // sockets, sockets
    if sockets is None:
        if vcpu is None:
            return current_sockets * cores, cores, current_sockets
        if vcpu % cores:
            raise CpuTopologyError("vcpu must be divisible by number of cpu cores")
        return vcpu, cores, vcpu // cores
    if vcpu is not None and vcpu != cores * sockets:
        raise CpuTopologyError(
            f"vcpu {vcpu} does not match {cores} cores x {sockets} sockets"
        )
    return cores * sockets, cores, sockets


class VmUpdatePlan(BaseModel):
    """Everything an update will submit, computed without mutating anything."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    vm_id: str
    current_status: str
    basic: dict[str, Any] = Field(default_factory=dict)
    tools: dict[str, Any] = Field(default_factory=dict)
    effect: dict[str, Any] = Field(default_factory=dict)
    dns_servers: str | None = None
    disks: DiskBatch | None = None
    nics: NicBatch | None = None
    nics_need_tools: bool = False
    status: PowerState | None = None
    force: bool = False
    start_host_id: str | None = None
    credentials_digest: str | None = None
    rollback_to: str | None = None
    migrate: bool = False
    migrate_host_id: str | None = None

    @property
    def needs_vm_tools(self) -> bool:
        return bool(self.tools or self.effect or self.dns_servers or self.nics_need_tools)

    def update_data(self) -> dict[str, Any]:
        """Payload of the ``updateVm`` mutation that needs no guest agent."""
        data = dict(self.basic)
        if self.disks is not None:
            data["vm_disks"] = self.disks.to_wire()
        if self.nics is not None and not self.nics_need_tools:
            data["vm_nics"] = self.nics.to_wire()
        return data

    def tools_data(self) -> dict[str, Any]:
        """Payload of the ``updateVm`` mutation applied by the guest agent."""
        data = dict(self.tools)
        if self.nics is not None and self.nics_need_tools:
            data["vm_nics"] = self.nics.to_wire()
        return data


class VmResource(AsyncMixin):
    """Read / create / update / delete one VM against the control plane.

    Attributes:
        api: Control-plane client.
        tracker: Waits on the tasks of every mutation.
        power: Performs power-state transitions.
        vm_tools: Runs guest-agent changes under a temporary power-on.
        reconciler: Diffs disks, CD-ROMs and NICs.
    """

    def __init__(
        self,
        api: ControlPlaneBlueprint,
        tracker: TaskTracker,
        power: PowerStateMachine,
        vm_tools: VmToolsConfigurer,
        reconciler: Reconciler,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ) -> None:
        self.api = api
        self.tracker = tracker
        self.power = power
        self.vm_tools = vm_tools
        self.reconciler = reconciler
        self.retry_policy = retry_policy
        # vm id -> fingerprint of the guest credentials last applied
        self._applied_credentials: dict[str, str] = {}

    def _call(self, ctx: OperationContext, fn: Callable[[], Any]) -> Any:
        return call_with_retry(fn, ctx=ctx, policy=self.retry_policy)

    # ── read ───────────────────────────────────────────────────────────
    def read(self, ctx: OperationContext, vm_id: str) -> VmState | None:
        """Return everything observed about *vm_id*, or ``None`` if it is gone."""
        record = self._call(ctx, lambda: self.api.get_vm(vm_id))
        if record is None:
            return None
        vm = ObservedVm.model_validate(record)
        nics = [
            ObservedNic.model_validate(r)
            for r in self._call(ctx, lambda: self.api.get_vm_nics(vm_id))
        ]
        volumes = {
            v["id"]: ObservedVolume.model_validate(v)
            for v in self._call(ctx, lambda: self.api.get_vm_volumes(vm_id))
        }
        disks = []
        for r in self._call(ctx, lambda: self.api.get_vm_disks(vm_id, "DISK")):
            disk = ObservedDisk.model_validate(r)
            disks.append(disk.model_copy(update={"volume": volumes.get(disk.vm_volume_id)}))
        cd_roms = [
            ObservedCdRom.model_validate(r)
            for r in self._call(ctx, lambda: self.api.get_vm_disks(vm_id, "CD_ROM"))
        ]
        return VmState(
            vm=vm,
            nics=nics,
            disks=disks,
            cd_roms=cd_roms,
            guest_os_account_digest=self._applied_credentials.get(vm_id),
        )

    def _observe(self, ctx: OperationContext, vm_id: str) -> VmState:
        state = self.read(ctx, vm_id)
        if state is None:
            raise VmNotFoundError(vm_id)
        return state

    # ── references ─────────────────────────────────────────────────────
    def resolve_references(
        self,
        ctx: OperationContext,
        desired: VmDesiredConfig,
        vm_id: str | None = None,
    ) -> None:
        """Check every declared ISO image and VLAN exists.

        All lookups run even after a failure; the failures are raised
        together.

        Raises:
            ReferenceResolutionError: Listing every unresolved reference.
        """
        lookups: list[tuple[str, str, Callable[[str], Any]]] = []
        for idx, cd_rom in enumerate(desired.cd_roms or []):
            if cd_rom.iso_id:
                lookups.append((f"cd_rom.[{idx}] elf image", cd_rom.iso_id, self.api.get_image))
        for idx, nic in enumerate(desired.nics or []):
            lookups.append((f"nic.[{idx}] vlan", nic.vlan_id, self.api.get_vlan))

        errors: list[TowerError] = []
        for label, ref, lookup in lookups:
            try:
                found = self._call(ctx, lambda: lookup(ref))
            except ResourceNotFoundError:
                found = None
            except ContextError:
                raise
            except TowerError as exc:
                errors.append(TowerError(f"{label} {ref}: {exc}"))
                continue
            if found is None:
                errors.append(ResourceNotFoundError(f"{label} {ref} not found", status_code=404))
        if errors:
            tw_logger.error(
                f"{len(errors)} reference(s) could not be resolved",
                vm_id=vm_id,
                phase="validate",
            )
            raise ReferenceResolutionError(
                errors, header=f"failed to resolve references of vm {vm_id or desired.name}"
            )

    # ── update ─────────────────────────────────────────────────────────
    def plan(
        self,
        ctx: OperationContext,
        vm_id: str,
        desired: VmDesiredConfig | dict[str, Any],
        applied_credentials: str | None = None,
    ) -> VmUpdatePlan:
        """Compute an update without submitting anything.

        Guest credentials are only resubmitted when their fingerprint
        differs from *applied_credentials* (the ``guest_os_account_digest``
        of the stored attributes) or, when that is not given, from the
        fingerprint this resource last applied to *vm_id*.

        Raises:
            VmNotFoundError: If the VM does not exist.
            CpuTopologyError, ImmutableFieldError, VolumeShrinkError:
                For declared values that cannot be applied.
            InvalidTransitionError: For an illegal status change.
            InvalidStateError: If guest-agent changes are declared while the
                VM is neither running nor stopped.
            ReferenceResolutionError: For unknown images or VLANs.
        """
        desired = _as_desired(desired)
        current = self._observe(ctx, vm_id)
        vm = current.vm
        plan = VmUpdatePlan(vm_id=vm_id, current_status=vm.status)

        for field in _BASIC_FIELDS:
            value = getattr(desired, field)
            if desired.declared(field) and value is not None and value != getattr(vm, field):
                plan.basic[field] = value
        if desired.declared("vcpu", "cpu_cores", "cpu_sockets"):
            topology = resolve_cpu_topology(
                desired.vcpu, desired.cpu_cores, desired.cpu_sockets, vm.cpu_cores, vm.cpu_sockets
            )
            if topology is not None and topology != (vm.vcpu, vm.cpu_cores, vm.cpu_sockets):
                vcpu, cores, sockets = topology
                plan.basic["vcpu"] = vcpu
                plan.basic["cpu"] = {"cores": cores, "sockets": sockets}

        if desired.hostname and desired.hostname != vm.hostname:
            plan.tools["hostname"] = desired.hostname
        if desired.dns_servers:
            dns_servers = ",".join(desired.dns_servers)
            if dns_servers != vm.dns_servers:
                plan.dns_servers = dns_servers
        if desired.guest_os_account is not None:
            # credentials cannot be read back; compare fingerprints instead
            plan.credentials_digest = desired.guest_os_account.digest()
            applied = applied_credentials or self._applied_credentials.get(vm_id)
            if plan.credentials_digest != applied:
                plan.effect = _credentials_effect(desired.guest_os_account)

        starting = False
        if desired.status is not None and desired.status.value != vm.status:
            operation = select_operation(vm.status, desired.status, desired.force_status_change)
            plan.status = desired.status
            plan.force = desired.force_status_change
            starting = operation is PowerOperation.START
            if starting and desired.host_id != AUTO_SCHEDULE:
                plan.start_host_id = desired.host_id

        if desired.declared("nics"):
            nics = self.reconciler.diff_nics(desired.nics or [], current.nics)
            if not nics.is_empty:
                plan.nics = nics
                plan.nics_need_tools = any(
                    op.requires_vm_tools for op in [*nics.create, *nics.update]
                )

        if plan.needs_vm_tools and vm.status not in (
            PowerState.RUNNING.value,
            PowerState.STOPPED.value,
        ):
            raise InvalidStateError(
                vm_id, vm.status, "update vm tools related attributes, please start vm first"
            )

        disks = DiskBatch()
        if desired.declared("disks"):
            disks = disks.merge(self.reconciler.diff_disks(desired.disks or [], current.disks))
        if desired.declared("cd_roms"):
            disks = disks.merge(self.reconciler.diff_cd_roms(desired.cd_roms or [], current.cd_roms))
        if not disks.is_empty:
            plan.disks = _keep_untouched(disks, current)

        self.resolve_references(ctx, desired, vm_id=vm_id)

        if desired.rollback_to:
            plan.rollback_to = desired.rollback_to
        # a start places the VM itself
        if desired.host_id and desired.host_id != vm.host_id and not starting:
            plan.migrate = True
            plan.migrate_host_id = None if desired.host_id == AUTO_SCHEDULE else desired.host_id
        return plan

    def update(
        self,
        ctx: OperationContext,
        vm_id: str,
        desired: VmDesiredConfig | dict[str, Any],
        applied_credentials: str | None = None,
    ) -> VmState:
        """Reconcile *vm_id* towards *desired* and return the observed result."""
        plan = self.plan(ctx, vm_id, desired, applied_credentials)
        log = tw_logger.bind(vm_id=vm_id, operation="update", phase="submit")

        if plan.rollback_to:
            log.info(f"rolling back to {plan.rollback_to}")
            records = self._call(ctx, lambda: self.api.rollback_vm(vm_id, plan.rollback_to))
            self.tracker.wait_for_records(ctx, records)

        if plan.migrate:
            log.info(f"migrating to {plan.migrate_host_id or AUTO_SCHEDULE}")
            records = self._call(ctx, lambda: self.api.migrate_vm(vm_id, plan.migrate_host_id))
            self.tracker.wait_for_records(ctx, records)

        data = plan.update_data()
        if data:
            self._update_vm(ctx, vm_id, data)

        if plan.needs_vm_tools:
            log.info("applying guest agent changes")
            self.vm_tools.apply_with_temporary_power_on(
                ctx, vm_id, lambda: self._apply_tools_changes(ctx, plan)
            )
        if plan.credentials_digest is not None:
            self._applied_credentials[vm_id] = plan.credentials_digest

        if plan.status is not None:
            log.info(f"changing status {plan.current_status} -> {plan.status.value}")
            self.power.transition(
                ctx,
                vm_id,
                plan.current_status,
                plan.status,
                force=plan.force,
                host_id=plan.start_host_id,
            )
        return self._observe(ctx, vm_id)

    def _apply_tools_changes(self, ctx: OperationContext, plan: VmUpdatePlan) -> None:
        data = plan.tools_data()
        if data or plan.effect:
            self._update_vm(ctx, plan.vm_id, data, plan.effect)
        # DNS servers only stick when sent on their own
        if plan.dns_servers:
            self._update_vm(ctx, plan.vm_id, {"dns_servers": plan.dns_servers})

    def _update_vm(
        self,
        ctx: OperationContext,
        vm_id: str,
        data: dict[str, Any],
        effect: dict[str, Any] | None = None,
    ) -> list[Task]:
        tw_logger.info(
            f"updateVm with {sorted(data)}", vm_id=vm_id, phase="submit", operation=UPDATE_VM
        )
        self._call(ctx, lambda: self.api.update_vm(vm_id, data, effect or None))
        return self.tracker.wait_for_resource_task(ctx, vm_id, UPDATE_VM)

    # ── delete ─────────────────────────────────────────────────────────
    def delete(self, ctx: OperationContext, vm_id: str) -> list[Task]:
        """Delete *vm_id* and wait on every task the deletion spawned."""
        records = self._call(ctx, lambda: self.api.delete_vm(vm_id))
        tasks = self.tracker.wait_for_records(ctx, records)
        self._applied_credentials.pop(vm_id, None)
        return tasks

    # ── create ─────────────────────────────────────────────────────────
    def create(
        self,
        ctx: OperationContext,
        desired: VmDesiredConfig | dict[str, Any],
        settle_delay: float = 60.0,
    ) -> VmState:
        """Create a VM from the source named in ``create_effect``.

        Without a source the VM is created blank. A VM rebuilt from a
        snapshot or cloned from a VM or template already has a guest agent,
        so the declared guest-agent attributes are applied right after it
        is provisioned (see :meth:`configure_vm_tools`).

        Raises:
            ConfigValidationError: If more than one source is declared.
            MissingFieldsError: If a required attribute is not declared.
            ResourceNotFoundError: If the source template or snapshot is gone.
        """
        desired = _as_desired(desired)
        effect = desired.create_effect or CreateEffect()
        sources = effect.sources
        if len(sources) > 1:
            raise ConfigValidationError(f"can only set one create effect, got {sources}")
        if not sources:
            return self.create_blank(ctx, desired)
        if desired.name is None:
            raise MissingFieldsError("create vm need a name", ["name"])

        source = sources[0]
        source_id = getattr(effect, source)
        self.resolve_references(ctx, desired)
        submit: Callable[[dict[str, Any]], list[dict[str, Any]]]
        if source == "rebuild_from_snapshot":
            params = self.rebuild_params(ctx, source_id, desired)
            submit = self.api.rebuild_vm
        elif source == "clone_from_vm":
            params = self.clone_params(ctx, source_id, desired)
            submit = self.api.clone_vm
        elif source == "clone_from_template":
            params = self.template_params(ctx, source_id, desired)
            submit = self.api.create_vm_from_template
        else:
            params = self.template_params(ctx, source_id, desired, content_library=True)
            submit = self.api.create_vm_from_content_library_template

        records = self._call(ctx, lambda: submit(params))
        self.tracker.wait_for_records(ctx, records)
        vm_id = records[0]["data"]["id"]
        tw_logger.info(f"vm created from {source} {source_id}", vm_id=vm_id, operation="create_vm")
        self.configure_vm_tools(ctx, vm_id, desired, settle_delay=settle_delay)
        return self._observe(ctx, vm_id)

    def create_blank(
        self,
        ctx: OperationContext,
        desired: VmDesiredConfig | dict[str, Any],
    ) -> VmState:
        """Create an empty VM (no template) and return its observed state.

        Raises:
            MissingFieldsError: If a required attribute is not declared.
            ConfigValidationError: If guest-agent attributes are declared;
                a blank VM has no guest agent yet.
        """
        desired = _as_desired(desired)
        if desired.name is None:
            raise MissingFieldsError("create vm need a name", ["name"])
        missing = [f for f in _CREATE_REQUIRED if getattr(desired, f) is None]
        if missing:
            raise MissingFieldsError("simple create vm need more config, missing fields", missing)
        forbidden = []
        for idx, nic in enumerate(desired.nics or []):
            if nic.ip_address:
                forbidden.append(f"nic.[{idx}].ip_address")
            if nic.gateway:
                forbidden.append(f"nic.[{idx}].gateway")
            if nic.subnet_mask:
                forbidden.append(f"nic.[{idx}].netmask")
        for field in ("hostname", "dns_servers", "guest_os_account"):
            if getattr(desired, field):
                forbidden.append(field)
        if forbidden:
            raise ConfigValidationError(
                "create blank VM with vm tools specific config is not supported, "
                f"need vm tools to be installed, forbidden fields: {forbidden}"
            )
        self.resolve_references(ctx, desired)

        params = self.creation_params(desired)
        records = self._call(ctx, lambda: self.api.create_vm(params))
        self.tracker.wait_for_records(ctx, records)
        vm_id = records[0]["data"]["id"]
        tw_logger.info("vm created", vm_id=vm_id, operation="create_vm")
        return self._observe(ctx, vm_id)

    def creation_params(self, desired: VmDesiredConfig) -> dict[str, Any]:
        """Build ``create-vm`` params from a validated declaration."""
        params = self._basic_params(desired)
        cores = desired.cpu_cores or 1
        params["cpu_cores"] = cores
        params["cpu_sockets"] = desired.cpu_sockets or max(1, desired.vcpu // cores)
        params["vm_disks"] = self._disk_params(desired)
        params["vm_nics"] = _nic_params(desired.nics or [])
        return params

    def clone_params(
        self, ctx: OperationContext, source_vm_id: str, desired: VmDesiredConfig
    ) -> dict[str, Any]:
        """Build ``clone-vm`` params.

        A declared new disk whose ``origin_path`` is the path of one of the
        source VM's volumes replaces that disk (its device index is set).
        """
        source_disks = [
            ObservedDisk.model_validate(r)
            for r in self._call(ctx, lambda: self.api.get_vm_disks(source_vm_id, "DISK"))
        ]
        volumes = self._call(ctx, lambda: self.api.get_vm_volumes(source_vm_id))
        disk_index = {disk.vm_volume_id: idx for idx, disk in enumerate(source_disks)}
        index_of = {
            v["path"]: disk_index[v["id"]]
            for v in volumes
            if v.get("path") and v["id"] in disk_index
        }
        params = self._basic_params(desired)
        params["src_vm_id"] = source_vm_id
        disks = self._disk_params(desired, index_of)
        if any(disks.values()):
            params["vm_disks"] = disks
        if desired.nics:
            params["vm_nics"] = _nic_params(desired.nics)
        return params

    def rebuild_params(
        self, ctx: OperationContext, snapshot_id: str, desired: VmDesiredConfig
    ) -> dict[str, Any]:
        """Build ``rebuild-vm`` params; new disks match snapshot disks by path."""
        snapshot = self._call(ctx, lambda: self.api.get_vm_snapshot(snapshot_id))
        if snapshot is None:
            raise ResourceNotFoundError(f"snapshot {snapshot_id} not found", status_code=404)
        frozen = [FrozenDisk.model_validate(d) for d in snapshot.get("vm_disks") or []]
        params = self._basic_params(desired)
        params["rebuild_from_snapshot_id"] = snapshot_id
        disks = self._disk_params(desired, _path_index(frozen))
        if any(disks.values()):
            params["vm_disks"] = disks
        if desired.nics:
            params["vm_nics"] = _nic_params(desired.nics)
        return params

    def template_params(
        self,
        ctx: OperationContext,
        template_id: str,
        desired: VmDesiredConfig,
        content_library: bool = False,
    ) -> dict[str, Any]:
        """Build params for creating a VM from a (content-library) template.

        When any disk or CD-ROM is declared, the declaration replaces the
        template's devices: every template disk is removed, and a declared
        new disk whose ``origin_path`` matches a template disk keeps that
        disk's index.

        Raises:
            MissingFieldsError: If ``create_effect.is_full_copy`` is not set.
        """
        effect = desired.create_effect or CreateEffect()
        if effect.is_full_copy is None:
            raise MissingFieldsError(
                "when create from template, please set is_full_copy",
                ["create_effect.is_full_copy"],
            )
        params = self._basic_params(desired)
        params["template_id"] = template_id
        params["is_full_copy"] = effect.is_full_copy
        disk_operate: dict[str, Any] = {"remove_disks": {"disk_index": []}}
        if desired.disks or desired.cd_roms:
            frozen = self._template_disks(ctx, template_id, content_library)
            disk_operate["new_disks"] = self._disk_params(desired, _path_index(frozen))
            disk_operate["remove_disks"]["disk_index"] = list(range(len(frozen)))
        params["disk_operate"] = disk_operate
        if desired.nics:
            params["vm_nics"] = _nic_params(desired.nics)
        if effect.cloud_init is not None:
            cloud_init = effect.cloud_init.to_wire()
            if cloud_init:
                params["cloud_init"] = cloud_init
        return params

    def _template_disks(
        self, ctx: OperationContext, template_id: str, content_library: bool
    ) -> list[FrozenDisk]:
        vm_template_id = template_id
        if content_library:
            record = self._call(
                ctx, lambda: self.api.get_content_library_vm_template(template_id)
            )
            if record is None or not record.get("vm_templates"):
                raise ResourceNotFoundError(
                    f"content library template {template_id} not found", status_code=404
                )
            vm_template_id = record["vm_templates"][0]["id"]
        template = self._call(ctx, lambda: self.api.get_vm_template(vm_template_id))
        if template is None:
            raise ResourceNotFoundError(f"template {template_id} not found", status_code=404)
        return [FrozenDisk.model_validate(d) for d in template.get("vm_disks") or []]

    def _basic_params(self, desired: VmDesiredConfig) -> dict[str, Any]:
        if None not in (desired.vcpu, desired.cpu_cores, desired.cpu_sockets):
            resolve_cpu_topology(desired.vcpu, desired.cpu_cores, desired.cpu_sockets)
        params: dict[str, Any] = {"name": desired.name}
        for field in _CREATE_FIELDS:
            value = getattr(desired, field)
            if value is not None and value != AUTO_SCHEDULE:
                params[field] = value
        if desired.status is not None:
            params["status"] = desired.status.value
        params["guest_os_type"] = desired.guest_os_type or "UNKNOWN"
        return params

    def _disk_params(
        self,
        desired: VmDesiredConfig,
        index_of: dict[str, int] | None = None,
    ) -> dict[str, list[dict[str, Any]]]:
        index_of = index_of or {}
        mount_disks = []
        mount_new_disks = []
        for disk in desired.disks or []:
            if disk.vm_volume_id:
                mount_disks.append(
                    {"boot": disk.boot, "bus": disk.bus.value, "vm_volume_id": disk.vm_volume_id}
                )
            elif disk.vm_volume is not None:
                volume: dict[str, Any] = {
                    "elf_storage_policy": self.reconciler.resolve_storage_policy(
                        disk.vm_volume.storage_policy
                    ),
                    "name": disk.vm_volume.name,
                    "size": disk.vm_volume.size,
                }
                entry: dict[str, Any] = {"boot": disk.boot, "bus": disk.bus.value}
                if disk.vm_volume.origin_path:
                    volume["path"] = disk.vm_volume.origin_path
                    # replaces the source disk at the same path
                    if disk.vm_volume.origin_path in index_of:
                        entry["index"] = index_of[disk.vm_volume.origin_path]
                entry["vm_volume"] = volume
                mount_new_disks.append(entry)
        cd_roms = []
        for cd_rom in desired.cd_roms or []:
            entry = {"boot": cd_rom.boot}
            if cd_rom.iso_id:
                entry["elf_image_id"] = cd_rom.iso_id
            cd_roms.append(entry)
        return {
            "mount_cd_roms": cd_roms,
            "mount_disks": mount_disks,
            "mount_new_create_disks": mount_new_disks,
        }

    # ── guest agent after create ───────────────────────────────────────
    def configure_vm_tools(
        self,
        ctx: OperationContext,
        vm_id: str,
        desired: VmDesiredConfig | dict[str, Any],
        settle_delay: float = 60.0,
    ) -> None:
        """Apply guest-agent attributes to a freshly provisioned VM.

        The VM is powered on for the duration, the guest agent is awaited,
        and after *settle_delay* seconds (time for first-boot configuration)
        hostname, static NIC addressing, guest credentials and DNS servers
        are applied. A changed hostname is followed by a restart.
        """
        desired = _as_desired(desired)
        static_nics = any(nic.has_static_ip for nic in desired.nics or [])
        if not (desired.hostname or desired.dns_servers or desired.guest_os_account or static_nics):
            return

        with self.vm_tools.powered_on(ctx, vm_id):
            self.vm_tools.wait_tools_running(ctx, vm_id)
            ctx.sleep(settle_delay)

            data: dict[str, Any] = {}
            if desired.hostname:
                data["hostname"] = desired.hostname
            if static_nics:
                observed = [
                    ObservedNic.model_validate(r)
                    for r in self._call(ctx, lambda: self.api.get_vm_nics(vm_id))
                ]
                data["vm_nics"] = _readdress_nics(observed, desired.nics or []).to_wire()
            effect = None
            if desired.guest_os_account is not None:
                effect = _credentials_effect(desired.guest_os_account)
            if data or effect:
                self._update_vm(ctx, vm_id, data, effect)
            if desired.guest_os_account is not None:
                self._applied_credentials[vm_id] = desired.guest_os_account.digest()
            if desired.dns_servers:
                self._update_vm(ctx, vm_id, {"dns_servers": ",".join(desired.dns_servers)})
            if desired.hostname:
                # the new hostname is only picked up after a reboot
                records = self._call(ctx, lambda: self.api.restart_vm(vm_id))
                self.tracker.wait_for_records(ctx, records)


def _as_desired(desired: VmDesiredConfig | dict[str, Any]) -> VmDesiredConfig:
    if isinstance(desired, VmDesiredConfig):
        return desired
    return VmDesiredConfig.model_validate(desired)


def _credentials_effect(account: GuestOsAccount) -> dict[str, str]:
    return {"guest_os_username": account.username, "guest_os_password": account.password}


def _keep_untouched(batch: DiskBatch, current: VmState) -> DiskBatch:
    """Add a keep-as-is update for every device *batch* leaves alone.

    ``vm_disks`` replaces the VM's whole device list: a mounted disk or
    CD-ROM missing from it is detached.
    """
    touched = {op.disk_id for op in [*batch.update, *batch.delete]}
    kept = [DiskUpdate.keep_disk(d) for d in current.disks if d.id not in touched]
    kept += [DiskUpdate.keep_cd_rom(c) for c in current.cd_roms if c.id not in touched]
    return batch.model_copy(update={"update": [*batch.update, *kept]}).sorted_by_boot()


def _path_index(frozen: list[FrozenDisk]) -> dict[str, int]:
    return {disk.path: idx for idx, disk in enumerate(frozen) if disk.path}


def _nic_params(nics: list[NicSpec]) -> list[dict[str, Any]]:
    params = []
    for nic in nics:
        entry: dict[str, Any] = {
            "connect_vlan_id": nic.vlan_id,
            "mirror": nic.mirror,
            "enabled": nic.enabled,
            "model": nic.model.value,
        }
        for field in ("mac_address", "ip_address", "subnet_mask", "gateway"):
            value = getattr(nic, field)
            if value:
                entry[field] = value
        params.append(entry)
    return params


def _readdress_nics(observed: list[ObservedNic], declared: list[NicSpec]) -> NicBatch:
    """Recreate every NIC with the declared static addressing of the same order."""
    batch = NicBatch()
    for nic in observed:
        batch.delete.append(NicDelete(nic_id=nic.id))
        if nic.order is None or nic.order >= len(declared):
            continue
        spec = declared[nic.order]
        batch.create.append(
            NicCreate(
                vlan_id=nic.vlan_id,
                enabled=nic.enabled,
                mirror=nic.mirror,
                model=nic.model,
                mac_address=nic.mac_address,
                ip_address=spec.ip_address,
                subnet_mask=spec.subnet_mask,
                gateway=spec.gateway,
            )
        )
    return batch
