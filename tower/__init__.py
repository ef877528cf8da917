"""Tower: declarative VM reconciliation against CloudTower.

Entry point for the library. Import :func:`tower_factory` to build any
engine component with a single call::

    from tower import OperationContext, tower_factory

    vms = tower_factory("vm", {"server": "tower.example.com", "token": "..."})
    vms.update(OperationContext(timeout=1800), "vm-1", {"vcpu": 4, "status": "RUNNING"})
"""

from .base import ControlPlaneBlueprint, OperationContext, TowerConfig
from .base.models import VmDesiredConfig, VmState
from .factory import tower_factory

__all__ = [
    "ControlPlaneBlueprint",
    "OperationContext",
    "TowerConfig",
    "VmDesiredConfig",
    "VmState",
    "tower_factory",
]
