"""
Reconciliation of desired records against a provider's records
"""

from ..errors import FleetDNSError
from ..logger import logger
from .provider import DNSProvider
from .types import Conflict, Record, RecordError, RecordKey, SyncResult, record_key


def _index_records(
    records: list[Record], side: str, errors: list[RecordError]
) -> dict[RecordKey, Record]:
    """Key records by (name, type), reporting every duplicate after the first."""
    indexed: dict[RecordKey, Record] = {}
    for record in records:
        key = record_key(record)
        if key in indexed:
            errors.append(
                RecordError(
                    record.name,
                    record.record_type,
                    f"multiple {side} records share this name and type, "
                    f"only value {indexed[key].value!r} is reconciled",
                )
            )
            continue
        indexed[key] = record
    return indexed


def compare(desired: list[Record], remote: list[Record]) -> SyncResult:
    """
    Compare desired records against remote records.

    Records are joined on (name, type) and compared on value only.

    Args:
        desired: Locally declared records
        remote: Records currently at the provider

    Returns:
        SyncResult where ``created`` holds desired-only records, ``conflicts``
        keys whose values differ and ``deleted`` remote-only records
    """
    result = SyncResult()
    desired_by_key = _index_records(desired, "desired", result.errors)
    remote_by_key = _index_records(remote, "remote", result.errors)

    for key, local in desired_by_key.items():
        current = remote_by_key.get(key)
        if current is None:
            result.created.append(local)
        elif current.value != local.value:
            result.conflicts.append(
                Conflict(
                    name=key.name,
                    record_type=key.record_type,
                    local_value=local.value,
                    remote_value=current.value,
                    local_id=local.record_id,
                    remote_id=current.record_id,
                    desired=local,
                )
            )

    for key, current in remote_by_key.items():
        if key not in desired_by_key:
            result.deleted.append(current)

    result.in_sync = not (result.has_changes or result.errors)
    return result


async def apply_to_remote(
    provider: DNSProvider,
    domain: str,
    desired: list[Record],
    remote: list[Record],
) -> SyncResult:
    """
    Push the difference between desired and remote records to the provider.

    Desired-only records are created, conflicts are overwritten with the
    desired record and remote-only records are deleted. A failure on one
    record is collected and the remaining records are still processed.

    Returns:
        SyncResult with the records actually written and the collected
        errors. ``in_sync`` is true only when there were no errors.
    """
    diff = compare(desired, remote)
    result = SyncResult(errors=list(diff.errors))

    for record in diff.created:
        try:
            result.created.append(await provider.create_record(domain, record))
        except FleetDNSError as e:
            logger.warning(f"Create {record.name} {record.record_type} on {domain} failed: {e}")
            result.errors.append(RecordError(record.name, record.record_type, str(e)))

    for conflict in diff.conflicts:
        try:
            updated = await provider.update_record(
                domain, conflict.remote_id, conflict.desired
            )
            result.updated.append(updated)
        except FleetDNSError as e:
            logger.warning(
                f"Update {conflict.name} {conflict.record_type} on {domain} failed: {e}"
            )
            result.errors.append(
                RecordError(conflict.name, conflict.record_type, str(e))
            )

    for record in diff.deleted:
        try:
            await provider.delete_record(domain, record.record_id)
            result.deleted.append(record)
        except FleetDNSError as e:
            logger.warning(f"Delete {record.name} {record.record_type} on {domain} failed: {e}")
            result.errors.append(RecordError(record.name, record.record_type, str(e)))

    result.in_sync = not result.errors
    logger.info(
        f"Applied {domain}: {len(result.created)} created, {len(result.updated)} updated, "
        f"{len(result.deleted)} deleted, {len(result.errors)} errors"
    )
    return result


async def import_from_remote(provider: DNSProvider, domain: str) -> list[Record]:
    """Read the provider's current records for ``domain``."""
    return await provider.list_records(domain)
