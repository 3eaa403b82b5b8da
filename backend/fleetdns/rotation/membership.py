"""
Fleet membership resolution for rotation pools
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import NamedTuple, Optional, Protocol, Sequence

from ..dns.types import address_family
from ..fleet.registry import GroupRegistry, MachineInfo, MachineRegistry


class PoolMemberLike(Protocol):
    machine_id: int
    priority: int
    is_enabled: bool


class CandidateSource(str, Enum):
    MEMBER = "member"
    GROUP = "group"


class Candidate(NamedTuple):
    machine_id: int
    name: str
    address: str
    last_seen: Optional[datetime]
    is_online: bool
    source: CandidateSource
    priority: Optional[int] = None


class Resolution(NamedTuple):
    """
    candidates: eligible targets in rotation order
    all_candidates: every resolvable machine before health filtering
    health_filtered: the health filter narrowed the list
    fell_back: the health filter removed everything and was ignored
    """

    candidates: list[Candidate]
    all_candidates: list[Candidate]
    health_filtered: bool = False
    fell_back: bool = False


def is_fresh(last_seen: Optional[datetime], now: datetime, window: timedelta) -> bool:
    return last_seen is not None and now - last_seen <= window


class MembershipResolver:
    """Turns a pool's members and group references into rotation candidates.

    Nothing is cached, every call reads the registries again so group changes
    apply on the next decision.
    """

    def __init__(
        self,
        machines: MachineRegistry,
        groups: GroupRegistry,
        freshness: timedelta = timedelta(minutes=5),
    ):
        self.machines = machines
        self.groups = groups
        self.freshness = freshness

    async def resolve(
        self,
        members: Sequence[PoolMemberLike],
        group_ids: Sequence[int],
        health_check: bool = False,
        now: Optional[datetime] = None,
        record_type: Optional[str] = None,
    ) -> Resolution:
        """
        Resolve the ordered candidate list of a pool.

        Explicit enabled members come first, ordered by priority, machine name
        and id. Machines from referenced groups follow in group order, skipping
        any machine that is already an explicit member (enabled or not).
        Machines without an address are left out, and so are machines whose
        address cannot go into a ``record_type`` record when one is given. With ``health_check`` only
        machines whose heartbeat is within the freshness window are kept,
        unless that would leave nothing.

        Args:
            members: Explicit pool members
            group_ids: Referenced machine groups
            health_check: Filter on heartbeat freshness
            now: Reference time for freshness, defaults to the current time
            record_type: Keep only addresses fitting this record type (A or AAAA)

        Returns:
            Resolution with the filtered and unfiltered candidate lists
        """
        now = now or datetime.now(timezone.utc)

        explicit_ids = {member.machine_id for member in members}
        group_machine_ids = [
            machine_id
            for machine_id in await self.groups.get_group_machine_ids(list(group_ids))
            if machine_id not in explicit_ids
        ]
        enabled = [member for member in members if member.is_enabled]
        machines = await self.machines.get_machines(
            [member.machine_id for member in enabled] + group_machine_ids
        )

        explicit: list[Candidate] = []
        for member in enabled:
            machine = machines.get(member.machine_id)
            if not self._usable(machine, record_type):
                continue
            explicit.append(
                self._candidate(machine, now, CandidateSource.MEMBER, member.priority)
            )
        explicit.sort(key=lambda c: (c.priority, c.name, c.machine_id))

        from_groups: list[Candidate] = []
        for machine_id in group_machine_ids:
            machine = machines.get(machine_id)
            if not self._usable(machine, record_type):
                continue
            from_groups.append(self._candidate(machine, now, CandidateSource.GROUP))

        all_candidates = explicit + from_groups
        if not health_check:
            return Resolution(candidates=all_candidates, all_candidates=all_candidates)

        healthy = [candidate for candidate in all_candidates if candidate.is_online]
        if healthy:
            return Resolution(
                candidates=healthy,
                all_candidates=all_candidates,
                health_filtered=len(healthy) < len(all_candidates),
            )
        return Resolution(
            candidates=all_candidates,
            all_candidates=all_candidates,
            fell_back=bool(all_candidates),
        )

    def _usable(self, machine: Optional[MachineInfo], record_type: Optional[str]) -> bool:
        if machine is None or not machine.address:
            return False
        return record_type is None or address_family(machine.address) == record_type

    def _candidate(
        self,
        machine: MachineInfo,
        now: datetime,
        source: CandidateSource,
        priority: Optional[int] = None,
    ) -> Candidate:
        return Candidate(
            machine_id=machine.id,
            name=machine.name,
            address=machine.address or "",
            last_seen=machine.last_seen,
            is_online=is_fresh(machine.last_seen, now, self.freshness),
            source=source,
            priority=priority,
        )
