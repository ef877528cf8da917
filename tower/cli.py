"""Tower CLI: run one engine operation from the command line.

Usage examples::

    tower --config '{"server": "tower.local", "token": "t"}' vm read vm-1
    tower vm update vm-1 --kwargs '{"desired": {"vcpu": 4, "status": "RUNNING"}}'
    tower --timeout 600 power change-state vm-1 STOPPED --kwargs '{"force": true}'

Connection settings missing from ``--config`` are taken from the
``CLOUDTOWER_*`` environment variables.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from pydantic import BaseModel, ValidationError

from tower.base.exceptions import TowerError


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the ``tower`` CLI.

    Returns:
        Configured :class:`~argparse.ArgumentParser`.
    """
    parser = argparse.ArgumentParser(
        prog="tower",
        description="Declarative CloudTower VM reconciliation",
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default="{}",
        help='JSON config string (e.g. \'{"server":"tower.local","token":"..."}\')',
    )
    parser.add_argument(
        "--timeout", "-t",
        type=float,
        default=None,
        help="Deadline in seconds for the whole operation",
    )
    parser.add_argument(
        "component",
        choices=["client", "tasks", "power", "vm_tools", "reconciler", "vm"],
        help="Engine component",
    )
    parser.add_argument(
        "operation",
        help="Operation to perform (method name, e.g. wait-for-tasks)",
    )
    parser.add_argument(
        "args",
        nargs="*",
        help="Positional arguments for the operation",
    )
    parser.add_argument(
        "--kwargs", "-k",
        type=str,
        default="{}",
        help="JSON keyword arguments for the operation",
    )
    return parser


# components whose operations take an OperationContext first
_CONTEXT_COMPONENTS = {"tasks", "power", "vm_tools", "vm"}


def _to_jsonable(result: Any) -> Any:
    if hasattr(result, "to_attributes"):
        return result.to_attributes()
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if isinstance(result, list):
        return [_to_jsonable(item) for item in result]
    return result


def main(argv: list[str] | None = None) -> None:
    """CLI entry point.

    Parses arguments, builds the component via the factory, and invokes
    the requested operation. Results are printed as JSON (dicts/lists) or
    plain text.

    Args:
        argv: Optional argument list (defaults to ``sys.argv``).
    """
    parser = _build_parser()
    ns = parser.parse_args(argv)

    try:
        config: dict[str, Any] = json.loads(ns.config)
    except json.JSONDecodeError as e:
        print(f"Invalid --config JSON: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        kwargs: dict[str, Any] = json.loads(ns.kwargs)
    except json.JSONDecodeError as e:
        print(f"Invalid --kwargs JSON: {e}", file=sys.stderr)
        sys.exit(1)

    # Lazy-import to keep --help fast
    from tower.base.context import OperationContext
    from tower.factory import tower_factory

    try:
        component = tower_factory(ns.component, config)
    except (ValueError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    method_name = ns.operation.replace("-", "_")
    method = getattr(component, method_name, None)
    if method_name.startswith("_") or method is None or not callable(method):
        print(
            f"Unknown operation '{ns.operation}' for {ns.component}",
            file=sys.stderr,
        )
        sys.exit(1)

    args: list[Any] = list(ns.args)
    if ns.component in _CONTEXT_COMPONENTS:
        args.insert(0, OperationContext(timeout=ns.timeout))

    try:
        result = method(*args, **kwargs)
    except (TowerError, ValidationError) as e:
        print(f"Operation failed: {e}", file=sys.stderr)
        sys.exit(1)

    if result is None:
        print("OK")
        return
    result = _to_jsonable(result)
    if isinstance(result, (dict, list)):
        print(json.dumps(result, indent=2, default=str))
    else:
        print(result)


if __name__ == "__main__":
    main()
