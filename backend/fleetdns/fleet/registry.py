"""Read-only views of the machine and group registries."""

from datetime import datetime
from typing import NamedTuple, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Machine, MachineGroupMember


class MachineInfo(NamedTuple):
    id: int
    name: str
    address: Optional[str]
    last_seen: Optional[datetime]


class MachineRegistry(Protocol):
    async def get_machines(self, machine_ids: list[int]) -> dict[int, MachineInfo]: ...


class GroupRegistry(Protocol):
    async def get_group_machine_ids(self, group_ids: list[int]) -> list[int]: ...


def machine_address(machine: Machine) -> Optional[str]:
    """Public address of a machine, preferring the operator-set primary IP."""
    return machine.primary_ip or machine.ip_address


class SQLFleetRegistry:
    """Machine and group lookups over the fleet tables."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_machines(self, machine_ids: list[int]) -> dict[int, MachineInfo]:
        """Look up machines by id. Unknown ids are absent from the result.

        Args:
            machine_ids: Machine database ids

        Returns:
            Dictionary mapping machine id to MachineInfo
        """
        if not machine_ids:
            return {}
        result = await self.session.execute(
            select(Machine).where(Machine.id.in_(set(machine_ids)))
        )
        return {
            machine.id: MachineInfo(
                id=machine.id,
                name=machine.name,
                address=machine_address(machine),
                last_seen=machine.last_seen,
            )
            for machine in result.scalars().all()
        }

    async def get_group_machine_ids(self, group_ids: list[int]) -> list[int]:
        """Expand groups to their machine ids, in group order then position.

        Args:
            group_ids: Group database ids

        Returns:
            Machine ids without duplicates
        """
        if not group_ids:
            return []
        result = await self.session.execute(
            select(MachineGroupMember.group_id, MachineGroupMember.machine_id)
            .where(MachineGroupMember.group_id.in_(set(group_ids)))
            .order_by(MachineGroupMember.position, MachineGroupMember.id)
        )
        by_group: dict[int, list[int]] = {}
        for group_id, machine_id in result.all():
            by_group.setdefault(group_id, []).append(machine_id)

        machine_ids: list[int] = []
        for group_id in group_ids:
            for machine_id in by_group.get(group_id, []):
                if machine_id not in machine_ids:
                    machine_ids.append(machine_id)
        return machine_ids
