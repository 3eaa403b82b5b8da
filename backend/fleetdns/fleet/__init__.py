"""
Fleet collaborator interfaces.

Machines and groups are owned by the fleet agent subsystem; the control plane
only resolves ids to addresses, heartbeats and group membership.
"""

from .registry import (
    GroupRegistry,
    MachineInfo,
    MachineRegistry,
    SQLFleetRegistry,
    machine_address,
)

__all__ = [
    "GroupRegistry",
    "MachineInfo",
    "MachineRegistry",
    "SQLFleetRegistry",
    "machine_address",
]
