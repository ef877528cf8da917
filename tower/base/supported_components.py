from typing import Literal


existing_components = Literal[
    "client",
    "tasks",
    "power",
    "vm_tools",
    "reconciler",
    "vm",
]
