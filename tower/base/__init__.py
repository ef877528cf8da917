"""Control-plane blueprint and core utilities.

The engine only talks to the control plane through
:class:`ControlPlaneBlueprint`; implement it to drive the engine against
something other than CloudTower.
"""

from .api import ControlPlaneBlueprint
from .context import OperationContext, background
from .config import TowerConfig, validate_config
from .retry import RetryPolicy, call_with_retry
from .supported_components import existing_components


__all__ = [
    "ControlPlaneBlueprint",
    "OperationContext",
    "background",
    "TowerConfig",
    "validate_config",
    "RetryPolicy",
    "call_with_retry",
    "existing_components",
]
