"""
Domain sync service

Database-aware layer around the reconciliation engine: loads desired records
and the domain's provider account, runs compare/apply/import, persists each
record's sync status, and pushes pending records in the background.
"""

import asyncio
from datetime import datetime, timezone
from typing import AsyncContextManager, Callable, NamedTuple, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import DNSSettings, RotationSettings
from ..errors import FleetDNSError, ValidationError
from ..logger import log_exception, logger
from ..models import (
    DNSAccount,
    DNSRecord,
    ManagedDomain,
    NSStatus,
    RecordMode,
    SyncStatus,
)
from .crud import (
    get_account,
    get_domain,
    list_domain_records,
    list_pending_records,
    mark_synced,
    store_sync_outcome,
    to_record,
)
from .nameservers import build_resolver, check_nameservers
from .provider import DNSProvider, create_provider
from .reconcile import apply_to_remote, compare, import_from_remote
from .types import NSCheckResult, Record, RecordKey, SyncResult, record_key

SessionFactoryT = Callable[[], AsyncContextManager[AsyncSession]]
ProviderFactoryT = Callable[..., DNSProvider]


class ImportResult(NamedTuple):
    imported: int
    deleted: int
    skipped_duplicates: int
    kept_dynamic: int


class PushResult(NamedTuple):
    pushed: int
    failed: int


class DomainSyncService:
    """Reconciles managed domains with their DNS provider accounts."""

    def __init__(
        self,
        session_factory: SessionFactoryT,
        provider_factory: ProviderFactoryT = create_provider,
        dns_settings: Optional[DNSSettings] = None,
        rotation_settings: Optional[RotationSettings] = None,
    ):
        self.session_factory = session_factory
        self.provider_factory = provider_factory
        self.dns_settings = dns_settings or DNSSettings()
        self.rotation_settings = rotation_settings or RotationSettings()
        self._push_tasks: set[asyncio.Task] = set()

    def _provider(self, account: DNSAccount) -> DNSProvider:
        return self.provider_factory(
            account.provider,
            api_token=account.api_token,
            api_id=account.api_id,
            timeout=self.dns_settings.provider_timeout_seconds,
        )

    async def _load(
        self, session: AsyncSession, domain_id: int
    ) -> tuple[ManagedDomain, DNSAccount]:
        domain = await get_domain(session, domain_id)
        if domain.dns_account_id is None:
            raise ValidationError(f"Domain {domain.fqdn} has no DNS account")
        account = await get_account(session, domain.dns_account_id)
        return domain, account

    async def compare_domain(self, domain_id: int) -> SyncResult:
        """Diff a domain against its provider and label each desired record.

        Desired-only records become ``local_only``, differing ones
        ``conflict`` and matching ones ``synced``.
        """
        async with self.session_factory() as session:
            domain, account = await self._load(session, domain_id)
            db_records = await list_domain_records(session, domain_id)
            async with self._provider(account) as provider:
                remote = await provider.list_records(domain.fqdn)

            result = compare([to_record(r) for r in db_records], remote)

            created = {record_key(r) for r in result.created}
            conflicts = {RecordKey(c.name, c.record_type) for c in result.conflicts}
            remote_by_key = {record_key(r): r for r in reversed(remote)}
            now = datetime.now(timezone.utc)
            for db_record in db_records:
                key = RecordKey(db_record.name, db_record.record_type)
                if key in created:
                    await store_sync_outcome(session, db_record, SyncStatus.LOCAL_ONLY)
                elif key in conflicts:
                    await store_sync_outcome(
                        session,
                        db_record,
                        SyncStatus.CONFLICT,
                        remote_id=remote_by_key[key].record_id,
                    )
                else:
                    await store_sync_outcome(
                        session,
                        db_record,
                        SyncStatus.SYNCED,
                        synced_at=now,
                        remote_id=remote_by_key[key].record_id,
                    )
            await session.commit()

        return result

    async def apply_domain(self, domain_id: int) -> SyncResult:
        """Push a domain's desired records to its provider.

        Records written or already matching become ``synced``; records whose
        push failed become ``error`` with the provider's message.
        """
        async with self.session_factory() as session:
            domain, account = await self._load(session, domain_id)
            db_records = await list_domain_records(session, domain_id)
            async with self._provider(account) as provider:
                remote = await provider.list_records(domain.fqdn)
                result = await apply_to_remote(
                    provider, domain.fqdn, [to_record(r) for r in db_records], remote
                )

            remote_ids = {record_key(r): r.record_id for r in reversed(remote)}
            for record in result.created + result.updated:
                remote_ids[record_key(record)] = record.record_id
            failed = {RecordKey(e.name, e.record_type): e.message for e in result.errors}

            now = datetime.now(timezone.utc)
            for db_record in db_records:
                key = RecordKey(db_record.name, db_record.record_type)
                if key in failed:
                    await store_sync_outcome(
                        session, db_record, SyncStatus.ERROR, error=failed[key]
                    )
                else:
                    await store_sync_outcome(
                        session,
                        db_record,
                        SyncStatus.SYNCED,
                        synced_at=now,
                        remote_id=remote_ids.get(key),
                    )
            await session.commit()

        return result

    async def import_domain(self, domain_id: int) -> ImportResult:
        """Replace a domain's desired records with the provider's records.

        Records driven by a rotation pool (dynamic mode) are left untouched.
        Only the first remote record per (name, type) is imported.
        """
        async with self.session_factory() as session:
            domain, account = await self._load(session, domain_id)
            async with self._provider(account) as provider:
                remote = await import_from_remote(provider, domain.fqdn)

            by_key: dict[RecordKey, Record] = {}
            for record in remote:
                by_key.setdefault(record_key(record), record)
            skipped = len(remote) - len(by_key)

            existing = {
                RecordKey(r.name, r.record_type): r
                for r in await list_domain_records(session, domain_id)
            }
            now = datetime.now(timezone.utc)
            imported = deleted = kept_dynamic = 0

            for key, db_record in existing.items():
                if db_record.mode == RecordMode.DYNAMIC:
                    kept_dynamic += 1
                elif key not in by_key:
                    await session.delete(db_record)
                    deleted += 1

            for key, record in by_key.items():
                db_record = existing.get(key)
                if db_record is not None and db_record.mode == RecordMode.DYNAMIC:
                    continue
                if db_record is None:
                    db_record = DNSRecord(
                        domain_id=domain_id, name=record.name, record_type=record.record_type
                    )
                    session.add(db_record)
                db_record.value = record.value
                db_record.ttl = record.ttl
                db_record.priority = record.priority
                db_record.proxied = record.proxied
                mark_synced(db_record, now, record.record_id)
                imported += 1

            await session.commit()

        logger.info(
            f"Imported {imported} records for {domain.fqdn} "
            f"({deleted} deleted, {skipped} duplicates skipped, {kept_dynamic} pool records kept)"
        )
        return ImportResult(imported, deleted, skipped, kept_dynamic)

    async def check_domain_nameservers(self, domain_id: int) -> NSCheckResult:
        """Compare live NS records with the provider's and store the outcome."""
        async with self.session_factory() as session:
            domain, account = await self._load(session, domain_id)
            async with self._provider(account) as provider:
                expected = await provider.get_expected_nameservers(domain.fqdn)

            resolver = build_resolver(
                self.dns_settings.resolver_nameservers or None,
                self.dns_settings.nameserver_lookup_timeout_seconds,
            )
            result = await check_nameservers(domain.fqdn, expected, resolver)

            domain.ns_status = NSStatus(result.status.value)
            domain.ns_expected = result.expected
            domain.ns_actual = result.actual
            domain.ns_last_check = datetime.now(timezone.utc)
            await session.commit()

        return result

    async def push_pending(self, domain_id: Optional[int] = None) -> PushResult:
        """Create or update every pending record, optionally for one domain.

        Deletions are left to a full apply.
        """
        async with self.session_factory() as session:
            pending = await list_pending_records(session, domain_id)
        domain_ids = sorted({record.domain_id for record in pending})

        pushed = failed = 0
        for pending_domain_id in domain_ids:
            result = await self._push_domain(pending_domain_id)
            if result is None:
                failed += 1
                continue
            pushed += result.pushed
            failed += result.failed
        return PushResult(pushed, failed)

    @log_exception("Pushing pending records of domain {domain_id} failed")
    async def _push_domain(self, domain_id: int) -> PushResult:
        async with self.session_factory() as session:
            domain = await get_domain(session, domain_id)
            records = await list_pending_records(session, domain_id)
            now = datetime.now(timezone.utc)

            if domain.dns_account_id is None:
                # Nothing to push to, the desired state is all there is
                for db_record in records:
                    await store_sync_outcome(
                        session, db_record, SyncStatus.SYNCED, synced_at=now
                    )
                await session.commit()
                return PushResult(len(records), 0)

            account = await get_account(session, domain.dns_account_id)
            # Outcomes are stored after the provider calls so no write lock is
            # held while waiting on the network
            outcomes: list[tuple[DNSRecord, Optional[Record], Optional[str]]] = []
            async with self._provider(account) as provider:
                for db_record in records:
                    try:
                        remote = await self._push_record(provider, domain.fqdn, db_record)
                    except FleetDNSError as e:
                        logger.warning(
                            f"Push of {db_record.name} {db_record.record_type} "
                            f"on {domain.fqdn} failed: {e}"
                        )
                        outcomes.append((db_record, None, e.message))
                        continue
                    outcomes.append((db_record, remote, None))

            pushed = failed = 0
            for db_record, remote, error in outcomes:
                if remote is None:
                    stored = await store_sync_outcome(
                        session, db_record, SyncStatus.ERROR, error=error
                    )
                    failed += 1
                else:
                    stored = await store_sync_outcome(
                        session,
                        db_record,
                        SyncStatus.SYNCED,
                        synced_at=now,
                        remote_id=remote.record_id,
                    )
                    pushed += 1
                if not stored:
                    logger.info(
                        f"{db_record.name} {db_record.record_type} on {domain.fqdn} "
                        "changed during the push, left pending"
                    )
            await session.commit()

        return PushResult(pushed, failed)

    async def _push_record(
        self, provider: DNSProvider, fqdn: str, db_record: DNSRecord
    ) -> Record:
        record = to_record(db_record)
        if db_record.remote_record_id:
            try:
                return await provider.update_record(fqdn, db_record.remote_record_id, record)
            except FleetDNSError as e:
                # Remote record may have been removed out of band
                logger.info(f"Update by id failed for {record.name} on {fqdn}, recreating: {e}")

        try:
            return await provider.create_record(fqdn, record._replace(record_id=None))
        except FleetDNSError:
            existing = [
                r
                for r in await provider.list_records(fqdn)
                if record_key(r) == record_key(record)
            ]
            if not existing:
                raise
            return await provider.update_record(fqdn, existing[0].record_id, record)

    def request_push(self, domain_id: int) -> None:
        """Push a domain's pending records in the background.

        The push has its own timeout; records left pending are picked up by the
        periodic sweep.
        """
        if not self.rotation_settings.push_immediately:
            return
        task = asyncio.create_task(self._bounded_push(domain_id))
        self._push_tasks.add(task)
        task.add_done_callback(self._push_tasks.discard)

    @log_exception("Background push for domain {domain_id} failed")
    async def _bounded_push(self, domain_id: int) -> None:
        await asyncio.wait_for(
            self.push_pending(domain_id),
            timeout=self.rotation_settings.push_timeout_seconds,
        )

    async def close(self, timeout: Optional[float] = None) -> None:
        """Let background pushes finish, cancelling those still running after ``timeout``.

        Records of a cancelled push stay pending for the next sweep.
        """
        tasks = list(self._push_tasks)
        if not tasks:
            return
        _, unfinished = await asyncio.wait(tasks, timeout=timeout)
        for task in unfinished:
            task.cancel()
        if unfinished:
            logger.info(f"Cancelled {len(unfinished)} background pushes on shutdown")
            await asyncio.gather(*unfinished, return_exceptions=True)

