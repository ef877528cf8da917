"""
Storage-policy name cache.

Storage policies are effectively immutable once created, so their id → name
table is fetched once per cache instance and never re-validated. The cache
is injected into the :class:`~tower.engine.reconcile.Reconciler` rather
than living at module level.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Iterable, Mapping

from tower.base.exceptions import StoragePolicyNotFoundError


def storage_policy_name(replica_num: int, thin_provision: bool) -> str:
    """Build the policy name the control plane uses for volumes."""
    provision = "THIN" if thin_provision else "THICK"
    return f"REPLICA_{replica_num}_{provision}_PROVISION"


def policy_names_from_records(records: Iterable[Mapping[str, Any]]) -> dict[str, str]:
    """Map ``get-elf-storage-policies`` records to ``{id: name}``."""
    names: dict[str, str] = {}
    for record in records:
        name = storage_policy_name(record["replica_num"], record["thin_provision"])
        names[record["id"]] = name
        # volumes sometimes reference the policy by its local id
        if record.get("local_id"):
            names[record["local_id"]] = name
    return names


class StoragePolicyCache:
    """Thread-safe, lazily populated ``policy id -> policy name`` table.

    Args:
        loader: Zero-argument callable returning the full ``{id: name}`` map.
            It is called at most once, even under concurrent first access.
    """

    def __init__(self, loader: Callable[[], Mapping[str, str]]) -> None:
        self._loader = loader
        self._names: dict[str, str] | None = None
        self._lock = threading.Lock()

    def _table(self) -> dict[str, str]:
        names = self._names
        if names is not None:
            return names
        with self._lock:
            if self._names is None:
                self._names = dict(self._loader())
            return self._names

    def get(self, policy_id: str) -> str:
        """Return the policy name for *policy_id*.

        Raises:
            StoragePolicyNotFoundError: If no policy has that id.
        """
        try:
            return self._table()[policy_id]
        except KeyError:
            raise StoragePolicyNotFoundError(policy_id) from None

    @property
    def loaded(self) -> bool:
        return self._names is not None
