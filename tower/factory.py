"""Component factory.

Provides :func:`tower_factory`, the single entry-point for building the
engine's components. Every component is wired from one validated
:class:`~tower.base.config.TowerConfig` and shares one control-plane client;
``@overload`` signatures give each component name its concrete return type.
"""

from typing import overload, Literal, Any

from tower.base import ControlPlaneBlueprint, RetryPolicy, existing_components
from tower.base.config import TowerConfig, validate_config
from tower.base.policy_cache import StoragePolicyCache, policy_names_from_records
from tower.base.retry import DEFAULT_POLICY, retry
from tower.cloudtower import CloudTowerClient
from tower.engine import (
    PowerStateMachine,
    Reconciler,
    TaskTracker,
    VmResource,
    VmToolsConfigurer,
)

_COMPONENTS = ("client", "tasks", "power", "vm_tools", "reconciler", "vm")


@overload
def tower_factory(
    component: Literal["client"], config: dict | TowerConfig, **kwargs: Any
) -> ControlPlaneBlueprint: ...


@overload
def tower_factory(
    component: Literal["tasks"], config: dict | TowerConfig, **kwargs: Any
) -> TaskTracker: ...


@overload
def tower_factory(
    component: Literal["power"], config: dict | TowerConfig, **kwargs: Any
) -> PowerStateMachine: ...


@overload
def tower_factory(
    component: Literal["vm_tools"], config: dict | TowerConfig, **kwargs: Any
) -> VmToolsConfigurer: ...


@overload
def tower_factory(
    component: Literal["reconciler"], config: dict | TowerConfig, **kwargs: Any
) -> Reconciler: ...


@overload
def tower_factory(
    component: Literal["vm"], config: dict | TowerConfig, **kwargs: Any
) -> VmResource: ...


def tower_factory(
    component: existing_components,
    config: dict | TowerConfig,
    api: ControlPlaneBlueprint | None = None,
    retry_policy: RetryPolicy = DEFAULT_POLICY,
) -> Any:
    """
    Build an engine component wired to a control-plane client.
    Args:
        component: The component name (e.g. 'vm', 'tasks').
        config: Connection settings; see :class:`TowerConfig`.
        api: Client to use instead of a new :class:`CloudTowerClient`.
        retry_policy: Backoff used by every component for remote calls.
    Returns:
        An instance of the requested component.
    Raises:
        ValueError: If the component is not supported.
        pydantic.ValidationError: If the config is invalid.
    """
    if component not in _COMPONENTS:
        raise ValueError(f"Unsupported component: {component}")

    settings = validate_config(config)
    api = api or CloudTowerClient(settings)
    if component == "client":
        return api

    @retry(policy=retry_policy)
    def load_policies() -> dict[str, str]:
        return policy_names_from_records(api.get_storage_policies())

    policies = StoragePolicyCache(load_policies)
    reconciler = Reconciler(policies)
    if component == "reconciler":
        return reconciler

    tracker = TaskTracker(api, poll_interval=settings.poll_interval, retry_policy=retry_policy)
    if component == "tasks":
        return tracker

    power = PowerStateMachine(api, tracker, retry_policy=retry_policy)
    if component == "power":
        return power

    vm_tools = VmToolsConfigurer(
        api,
        power,
        tools_timeout=settings.vm_tools_timeout,
        poll_interval=settings.poll_interval,
        retry_policy=retry_policy,
    )
    if component == "vm_tools":
        return vm_tools

    return VmResource(api, tracker, power, vm_tools, reconciler, retry_policy=retry_policy)
