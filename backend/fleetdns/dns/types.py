"""
DNS type definitions shared by providers, the reconciliation engine and the API
"""

import ipaddress
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import NamedTuple, Optional

RecordIdT = str

SUPPORTED_RECORD_TYPES = ("A", "AAAA", "CNAME", "TXT", "MX", "NS")
ADDRESS_RECORD_TYPES = ("A", "AAAA")


def address_family(address: str) -> Optional[str]:
    """Record type able to hold ``address``: ``A``, ``AAAA``, or None for a non-IP."""
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError:
        return None
    return "A" if parsed.version == 4 else "AAAA"


class Record(NamedTuple):
    """A DNS record, either desired locally or returned by a provider.

    ``name`` is relative to the zone: ``@`` is the apex, ``*`` the wildcard.
    """

    name: str
    record_type: str
    value: str
    ttl: int = 600
    priority: int = 0
    proxied: bool = False
    record_id: Optional[RecordIdT] = None
    updated_at: Optional[datetime] = None


class RecordKey(NamedTuple):
    """Reconciliation join key"""

    name: str
    record_type: str


def record_key(record: Record) -> RecordKey:
    return RecordKey(record.name, record.record_type)


class Conflict(NamedTuple):
    """A key present on both sides with differing values"""

    name: str
    record_type: str
    local_value: str
    remote_value: str
    local_id: Optional[RecordIdT]
    remote_id: Optional[RecordIdT]
    desired: Record


class RecordError(NamedTuple):
    """Failure while pushing a single record"""

    name: str
    record_type: str
    message: str

    def __str__(self) -> str:
        return f"{self.name} {self.record_type}: {self.message}"


class NSCheckStatus(str, Enum):
    VALID = "valid"
    PENDING = "pending"
    INVALID = "invalid"


class NSCheckResult(NamedTuple):
    domain: str
    status: NSCheckStatus
    expected: list[str]
    actual: list[str]
    message: str = ""


@dataclass
class SyncResult:
    """Outcome of a compare or an apply.

    For a compare, ``created`` holds desired-only records, ``conflicts`` the
    differing keys and ``deleted`` remote-only records. For an apply the same
    lists hold what was actually written to the provider.
    """

    in_sync: bool = True
    created: list[Record] = field(default_factory=list)
    updated: list[Record] = field(default_factory=list)
    deleted: list[Record] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.created or self.updated or self.deleted or self.conflicts)
