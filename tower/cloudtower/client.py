"""CloudTower implementation of the control-plane blueprint."""

from __future__ import annotations

from typing import Any, NoReturn

import httpx

from tower.base.api import ControlPlaneBlueprint
from tower.base.config import TowerConfig, validate_config
from tower.base.exceptions import (
    ApiError,
    AuthenticationError,
    ResourceNotFoundError,
    TransientApiError,
)
from tower.base.logger import tw_logger

_ERROR_MAP: dict[int, type[ApiError]] = {
    401: AuthenticationError,
    403: AuthenticationError,
    404: ResourceNotFoundError,
    408: TransientApiError,
    429: TransientApiError,
}

_UPDATE_VM_MUTATION = """
mutation updateVm($where: VmWhereUniqueInput!, $data: VmUpdateInput!, $effect: UpdateVmEffect) {
  updateVm(where: $where, data: $data, effect: $effect) {
    id
  }
}
"""


def _handle(e: httpx.HTTPStatusError, msg: str) -> NoReturn:
    status = e.response.status_code
    exc = _ERROR_MAP.get(status)
    if exc is None:
        exc = TransientApiError if status >= 500 else ApiError
    raise exc(f"{msg}: {status} {e.response.text}", status_code=status) from e


class CloudTowerClient(ControlPlaneBlueprint):
    """CloudTower REST / GraphQL client.

    Attributes:
        config: Validated connection settings.
        http: ``httpx.Client`` bound to the REST base URL.
    """

    def __init__(
        self,
        config: dict[str, Any] | TowerConfig,
        http: httpx.Client | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Connection settings (``server``, ``token``, ...).
            http: Preconfigured client, e.g. one over ``httpx.MockTransport``.
        """
        self.config = validate_config(config)
        self.http = http or httpx.Client(
            base_url=self.config.rest_base_url,
            headers={
                "Authorization": self.config.token,
                "Content-Type": "application/json",
            },
            timeout=self.config.timeout_s,
            verify=self.config.verify_tls,
        )

    def close(self) -> None:
        self.http.close()

    def __enter__(self) -> CloudTowerClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _post(self, path: str, payload: Any) -> Any:
        try:
            response = self.http.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            tw_logger.warning(
                f"POST {path} -> {e.response.status_code}", phase="submit", operation=path
            )
            _handle(e, f"POST {path} failed")
        except httpx.RequestError as e:
            tw_logger.error(f"POST {path} failed: {e}", phase="submit", operation=path)
            raise TransientApiError(f"POST {path} failed: {e}") from e
        return response.json()

    def _first(self, path: str, where: dict[str, Any]) -> dict[str, Any] | None:
        records = self._post(path, {"where": where, "first": 1})
        return records[0] if records else None

    # ── tasks ──────────────────────────────────────────────────────────
    def get_tasks(
        self,
        where: dict[str, Any],
        order_by: str | None = None,
        first: int | None = None,
    ) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"where": where}
        if order_by:
            payload["orderBy"] = order_by
        if first is not None:
            payload["first"] = first
        return self._post("/get-tasks", payload)

    # ── reads ──────────────────────────────────────────────────────────
    def get_vm(self, vm_id: str) -> dict[str, Any] | None:
        return self._first("/get-vms", {"id": vm_id})

    def get_vm_disks(self, vm_id: str, disk_type: str) -> list[dict[str, Any]]:
        return self._post(
            "/get-vm-disks",
            {"where": {"vm": {"id": vm_id}, "type": disk_type}, "orderBy": "boot_ASC"},
        )

    def get_vm_volumes(self, vm_id: str) -> list[dict[str, Any]]:
        return self._post(
            "/get-vm-volumes",
            {"where": {"vm_disks_some": {"vm": {"id": vm_id}, "type": "DISK"}}},
        )

    def get_vm_nics(self, vm_id: str) -> list[dict[str, Any]]:
        return self._post(
            "/get-vm-nics", {"where": {"vm": {"id": vm_id}}, "orderBy": "order_ASC"}
        )

    def get_storage_policies(self) -> list[dict[str, Any]]:
        return self._post("/get-elf-storage-policies", {})

    def get_image(self, image_id: str) -> dict[str, Any] | None:
        return self._first("/get-elf-images", {"id": image_id})

    def get_vlan(self, vlan_id: str) -> dict[str, Any] | None:
        return self._first("/get-vlans", {"id": vlan_id})

    def get_vm_template(self, template_id: str) -> dict[str, Any] | None:
        return self._first("/get-vm-templates", {"id": template_id})

    def get_content_library_vm_template(self, template_id: str) -> dict[str, Any] | None:
        return self._first("/get-content-library-vm-templates", {"id": template_id})

    def get_vm_snapshot(self, snapshot_id: str) -> dict[str, Any] | None:
        return self._first("/get-vm-snapshots", {"id": snapshot_id})

    # ── power ──────────────────────────────────────────────────────────
    def start_vm(self, vm_id: str, host_id: str | None = None) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"where": {"id": vm_id}}
        if host_id:
            payload["data"] = {"host_id": host_id}
        return self._post("/start-vm", payload)

    def resume_vm(self, vm_id: str) -> list[dict[str, Any]]:
        return self._post("/resume-vm", {"where": {"id": vm_id}})

    def shutdown_vm(self, vm_id: str) -> list[dict[str, Any]]:
        return self._post("/shut-down-vm", {"where": {"id": vm_id}})

    def poweroff_vm(self, vm_id: str) -> list[dict[str, Any]]:
        return self._post("/poweroff-vm", {"where": {"id": vm_id}})

    def suspend_vm(self, vm_id: str) -> list[dict[str, Any]]:
        return self._post("/suspend-vm", {"where": {"id": vm_id}})

    def restart_vm(self, vm_id: str) -> list[dict[str, Any]]:
        return self._post("/restart-vm", {"where": {"id": vm_id}})

    # ── lifecycle ──────────────────────────────────────────────────────
    def create_vm(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return self._post("/create-vm", [params])

    def clone_vm(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return self._post("/clone-vm", [params])

    def create_vm_from_template(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return self._post("/create-vm-from-template", [params])

    def create_vm_from_content_library_template(
        self, params: dict[str, Any]
    ) -> list[dict[str, Any]]:
        return self._post("/create-vm-from-content-library-template", [params])

    def rebuild_vm(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return self._post("/rebuild-vm", [params])

    def delete_vm(self, vm_id: str) -> list[dict[str, Any]]:
        return self._post("/delete-vm", {"where": {"id": vm_id}})

    def migrate_vm(self, vm_id: str, host_id: str | None = None) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"where": {"id": vm_id}}
        if host_id:
            payload["data"] = {"host_id": host_id}
        return self._post("/migrate-vm", payload)

    def rollback_vm(self, vm_id: str, snapshot_id: str) -> list[dict[str, Any]]:
        return self._post(
            "/rollback-vm", {"where": {"id": vm_id}, "data": {"snapshot_id": snapshot_id}}
        )

    def update_vm(
        self,
        vm_id: str,
        data: dict[str, Any],
        effect: dict[str, Any] | None = None,
    ) -> None:
        variables: dict[str, Any] = {"where": {"id": vm_id}, "data": data}
        if effect:
            variables["effect"] = effect
        try:
            response = self.http.post(
                self.config.graphql_url,
                json={"query": _UPDATE_VM_MUTATION, "variables": variables},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            _handle(e, f"updateVm of {vm_id} failed")
        except httpx.RequestError as e:
            raise TransientApiError(f"updateVm of {vm_id} failed: {e}") from e
        errors = response.json().get("errors")
        if errors:
            messages = "; ".join(err.get("message", str(err)) for err in errors)
            raise ApiError(f"updateVm of {vm_id} failed: {messages}")
