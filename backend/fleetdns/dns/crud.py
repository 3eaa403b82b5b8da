"""CRUD operations for DNS accounts, managed domains and desired records."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFoundError, ValidationError
from ..models import DNSAccount, DNSRecord, ManagedDomain, RecordPool, SyncStatus
from .types import SUPPORTED_RECORD_TYPES, Record


def to_record(db_record: DNSRecord) -> Record:
    """Desired record as seen by the reconciliation engine."""
    return Record(
        name=db_record.name,
        record_type=db_record.record_type,
        value=db_record.value,
        ttl=db_record.ttl,
        priority=db_record.priority,
        proxied=db_record.proxied,
        record_id=db_record.remote_record_id,
    )


def mark_pending(db_record: DNSRecord) -> None:
    db_record.sync_status = SyncStatus.PENDING
    db_record.sync_error = None


def mark_synced(
    db_record: DNSRecord, synced_at: datetime, remote_id: Optional[str] = None
) -> None:
    db_record.sync_status = SyncStatus.SYNCED
    db_record.sync_error = None
    db_record.last_synced_at = synced_at
    if remote_id:
        db_record.remote_record_id = remote_id


async def store_sync_outcome(
    session: AsyncSession,
    db_record: DNSRecord,
    status: SyncStatus,
    synced_at: Optional[datetime] = None,
    remote_id: Optional[str] = None,
    error: Optional[str] = None,
) -> bool:
    """Store the sync outcome of a record as it was read.

    The row is only updated while its content still matches ``db_record``.
    A concurrent write in between (a rotation, an edit) left it pending with
    new content, and it stays that way for the next push.

    Returns:
        Whether the outcome was stored
    """
    values: dict = {"sync_status": status, "sync_error": error}
    if synced_at is not None:
        values["last_synced_at"] = synced_at
    if remote_id:
        values["remote_record_id"] = remote_id

    result = await session.execute(
        update(DNSRecord)
        .where(
            DNSRecord.id == db_record.id,
            DNSRecord.value == db_record.value,
            DNSRecord.ttl == db_record.ttl,
            DNSRecord.priority == db_record.priority,
            DNSRecord.proxied == db_record.proxied,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _normalize_name(name: str) -> str:
    name = name.strip().rstrip(".").lower()
    return name or "@"


def _normalize_type(record_type: str) -> str:
    record_type = record_type.strip().upper()
    if record_type not in SUPPORTED_RECORD_TYPES:
        raise ValidationError(
            f"Unsupported record type '{record_type}', "
            f"expected one of: {', '.join(SUPPORTED_RECORD_TYPES)}"
        )
    return record_type


# Accounts


async def create_account(
    session: AsyncSession,
    provider: str,
    name: str,
    api_token: str,
    api_id: Optional[str] = None,
) -> DNSAccount:
    account = DNSAccount(provider=provider, name=name, api_token=api_token, api_id=api_id)
    session.add(account)
    await session.commit()
    await session.refresh(account)
    return account


async def get_account(session: AsyncSession, account_id: int) -> DNSAccount:
    account = await session.get(DNSAccount, account_id)
    if account is None:
        raise NotFoundError(f"DNS account {account_id} not found")
    return account


async def list_accounts(session: AsyncSession) -> List[DNSAccount]:
    result = await session.execute(select(DNSAccount).order_by(DNSAccount.id))
    return list(result.scalars().all())


# Domains


async def create_domain(
    session: AsyncSession, fqdn: str, dns_account_id: Optional[int] = None
) -> ManagedDomain:
    """Register a managed domain.

    Args:
        session: Database session
        fqdn: Zone apex, e.g. ``example.com``
        dns_account_id: Provider account the zone lives in, if any

    Returns:
        Created domain

    Raises:
        ValidationError: If the domain already exists
        NotFoundError: If the account does not exist
    """
    fqdn = fqdn.strip().rstrip(".").lower()
    if dns_account_id is not None:
        await get_account(session, dns_account_id)

    existing = await session.execute(
        select(ManagedDomain).where(ManagedDomain.fqdn == fqdn)
    )
    if existing.scalar_one_or_none() is not None:
        raise ValidationError(f"Domain {fqdn} already exists")

    domain = ManagedDomain(fqdn=fqdn, dns_account_id=dns_account_id)
    session.add(domain)
    await session.commit()
    await session.refresh(domain)
    return domain


async def get_domain(session: AsyncSession, domain_id: int) -> ManagedDomain:
    domain = await session.get(ManagedDomain, domain_id)
    if domain is None:
        raise NotFoundError(f"Domain {domain_id} not found")
    return domain


async def list_domains(session: AsyncSession) -> List[ManagedDomain]:
    result = await session.execute(select(ManagedDomain).order_by(ManagedDomain.fqdn))
    return list(result.scalars().all())


# Records


async def list_domain_records(session: AsyncSession, domain_id: int) -> List[DNSRecord]:
    result = await session.execute(
        select(DNSRecord)
        .where(DNSRecord.domain_id == domain_id)
        .order_by(DNSRecord.name, DNSRecord.record_type)
    )
    return list(result.scalars().all())


async def list_pending_records(
    session: AsyncSession, domain_id: Optional[int] = None
) -> List[DNSRecord]:
    query = select(DNSRecord).where(DNSRecord.sync_status == SyncStatus.PENDING)
    if domain_id is not None:
        query = query.where(DNSRecord.domain_id == domain_id)
    result = await session.execute(query.order_by(DNSRecord.domain_id, DNSRecord.id))
    return list(result.scalars().all())


async def get_record(session: AsyncSession, record_id: int) -> DNSRecord:
    record = await session.get(DNSRecord, record_id)
    if record is None:
        raise NotFoundError(f"DNS record {record_id} not found")
    return record


async def get_record_by_key(
    session: AsyncSession, domain_id: int, name: str, record_type: str
) -> Optional[DNSRecord]:
    result = await session.execute(
        select(DNSRecord).where(
            DNSRecord.domain_id == domain_id,
            DNSRecord.name == name,
            DNSRecord.record_type == record_type,
        )
    )
    return result.scalar_one_or_none()


async def create_record(
    session: AsyncSession,
    domain_id: int,
    name: str,
    record_type: str,
    value: str,
    ttl: int = 600,
    priority: int = 0,
    proxied: bool = False,
) -> DNSRecord:
    """Create a desired record in ``pending`` state.

    Raises:
        NotFoundError: If the domain does not exist
        ValidationError: If the type is unsupported or the key already exists
    """
    await get_domain(session, domain_id)
    name = _normalize_name(name)
    record_type = _normalize_type(record_type)
    if await get_record_by_key(session, domain_id, name, record_type) is not None:
        raise ValidationError(f"Record {name} {record_type} already exists")

    record = DNSRecord(
        domain_id=domain_id,
        name=name,
        record_type=record_type,
        value=value,
        ttl=ttl,
        priority=priority,
        proxied=proxied,
        sync_status=SyncStatus.PENDING,
    )
    session.add(record)
    await session.commit()
    await session.refresh(record)
    return record


async def update_record(
    session: AsyncSession,
    record_id: int,
    value: Optional[str] = None,
    ttl: Optional[int] = None,
    priority: Optional[int] = None,
    proxied: Optional[bool] = None,
) -> DNSRecord:
    """Update a desired record and mark it ``pending``.

    The key (name, type) is immutable; delete and recreate to change it.
    """
    record = await get_record(session, record_id)
    if value is not None:
        record.value = value
    if ttl is not None:
        record.ttl = ttl
    if priority is not None:
        record.priority = priority
    if proxied is not None:
        record.proxied = proxied
    mark_pending(record)
    await session.commit()
    await session.refresh(record)
    return record


async def delete_record(session: AsyncSession, record_id: int) -> None:
    """Delete a desired record. The remote copy goes away on the next apply.

    Raises:
        ValidationError: If a rotation pool is bound to the record
    """
    await get_record(session, record_id)
    pool = await session.execute(
        select(RecordPool.id).where(RecordPool.dns_record_id == record_id)
    )
    if pool.scalar_one_or_none() is not None:
        raise ValidationError(
            f"DNS record {record_id} is driven by a rotation pool, delete the pool first"
        )
    await session.execute(delete(DNSRecord).where(DNSRecord.id == record_id))
    await session.commit()
