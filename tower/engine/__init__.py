"""Reconciliation engine: task tracking, diffing, power and guest-agent handling."""

from .power import PowerStateMachine, select_operation
from .reconcile import Reconciler, diff_cd_roms, diff_disks, diff_nics
from .tasks import TaskTracker
from .vm import VmResource, resolve_cpu_topology
from .vm_tools import VmToolsConfigurer

__all__ = [
    "PowerStateMachine",
    "select_operation",
    "Reconciler",
    "diff_cd_roms",
    "diff_disks",
    "diff_nics",
    "TaskTracker",
    "VmResource",
    "resolve_cpu_topology",
    "VmToolsConfigurer",
]
