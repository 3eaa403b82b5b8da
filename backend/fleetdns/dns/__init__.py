"""
DNS reconciliation

Provider contract and backends, nameserver checks, the reconciliation engine
and the domain sync service built on top of it.
"""

from .cloudflare import CloudflareProvider
from .nameservers import check_nameservers, classify_nameservers
from .provider import DNSProvider, available_providers, create_provider, register_provider
from .reconcile import apply_to_remote, compare, import_from_remote
from .sync import DomainSyncService, ImportResult, PushResult
from .types import (
    Conflict,
    NSCheckResult,
    NSCheckStatus,
    Record,
    RecordError,
    RecordKey,
    SyncResult,
)

__all__ = [
    "CloudflareProvider",
    "Conflict",
    "DNSProvider",
    "DomainSyncService",
    "ImportResult",
    "NSCheckResult",
    "NSCheckStatus",
    "PushResult",
    "Record",
    "RecordError",
    "RecordKey",
    "SyncResult",
    "apply_to_remote",
    "available_providers",
    "check_nameservers",
    "classify_nameservers",
    "compare",
    "create_provider",
    "import_from_remote",
    "register_provider",
]
