"""
Shared fixtures: isolated databases, an in-memory DNS provider and helpers to
seed fleet and DNS rows.
"""

import os
import tempfile
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

# Settings are read at import time, so they must exist before fleetdns loads
_TEST_DIR = Path(tempfile.mkdtemp(prefix="fleetdns-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DIR / 'app.db'}")
os.environ.setdefault("MASTER_TOKEN", "test-master-token")
os.environ.setdefault("LOGS_DIR", str(_TEST_DIR / "logs"))

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fleetdns.dns.provider import DNSProvider  # noqa: E402
from fleetdns.dns.types import Record, RecordIdT  # noqa: E402
from fleetdns.errors import ProviderAPIError  # noqa: E402
from fleetdns.models import (  # noqa: E402
    Base,
    DNSAccount,
    DNSRecord,
    Machine,
    MachineGroup,
    MachineGroupMember,
    ManagedDomain,
    SyncStatus,
)
from fleetdns.rotation.crud import upsert_record_pool, upsert_wildcard_pool  # noqa: E402
from fleetdns.rotation.types import PoolConfig, WildcardPoolConfig  # noqa: E402


class FakeProvider(DNSProvider):
    """In-memory provider. Operations listed in ``fail_on`` raise."""

    name = "fake"

    def __init__(self, nameservers: Optional[list[str]] = None):
        self.records: dict[str, Record] = {}
        self.nameservers = nameservers or ["ns1.fake.net", "ns2.fake.net"]
        # (operation, record name) pairs that must fail
        self.fail_on: set[tuple[str, str]] = set()
        self.calls: list[tuple[str, str]] = []
        self._next_id = 1

    def seed(self, *records: Record) -> list[Record]:
        seeded = []
        for record in records:
            record_id = f"r{self._next_id}"
            self._next_id += 1
            self.records[record_id] = record._replace(record_id=record_id)
            seeded.append(self.records[record_id])
        return seeded

    def _maybe_fail(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        if (operation, name) in self.fail_on:
            raise ProviderAPIError(f"{operation} {name} rejected")

    async def validate_credentials(self) -> None:
        self._maybe_fail("validate", "")

    async def get_expected_nameservers(self, domain: str) -> list[str]:
        return list(self.nameservers)

    async def list_records(self, domain: str) -> list[Record]:
        self._maybe_fail("list", "")
        return list(self.records.values())

    async def create_record(self, domain: str, record: Record) -> Record:
        self._maybe_fail("create", record.name)
        return self.seed(record)[0]

    async def update_record(
        self, domain: str, record_id: RecordIdT, record: Record
    ) -> Record:
        self._maybe_fail("update", record.name)
        if record_id not in self.records:
            raise ProviderAPIError(f"record {record_id} not found")
        self.records[record_id] = record._replace(record_id=record_id)
        return self.records[record_id]

    async def delete_record(self, domain: str, record_id: RecordIdT) -> None:
        name = self.records[record_id].name if record_id in self.records else ""
        self._maybe_fail("delete", name)
        self.records.pop(record_id, None)

    def by_key(self, name: str, record_type: str) -> Optional[Record]:
        for record in self.records.values():
            if record.name == name and record.record_type == record_type:
                return record
        return None


class Seeder:
    """Inserts fleet and DNS rows for tests."""

    def __init__(self, get_session):
        self.get_session = get_session

    async def _add(self, obj):
        async with self.get_session() as session:
            session.add(obj)
            await session.commit()
            await session.refresh(obj)
        return obj

    async def machine(
        self,
        name: str,
        ip: str,
        stale_minutes: Optional[float] = 0,
        now: Optional[datetime] = None,
    ) -> Machine:
        now = now or datetime.now(timezone.utc)
        last_seen = None if stale_minutes is None else now - timedelta(minutes=stale_minutes)
        return await self._add(Machine(name=name, ip_address=ip, last_seen=last_seen))

    async def group(self, name: str, machine_ids: list[int]) -> MachineGroup:
        group = await self._add(MachineGroup(name=name))
        async with self.get_session() as session:
            for position, machine_id in enumerate(machine_ids):
                session.add(
                    MachineGroupMember(
                        group_id=group.id, machine_id=machine_id, position=position
                    )
                )
            await session.commit()
        return group

    async def account(self, provider: str = "fake") -> DNSAccount:
        return await self._add(
            DNSAccount(provider=provider, name="test account", api_token="secret")
        )

    async def domain(
        self, fqdn: str = "example.com", with_account: bool = True
    ) -> ManagedDomain:
        account_id = (await self.account()).id if with_account else None
        return await self._add(ManagedDomain(fqdn=fqdn, dns_account_id=account_id))

    async def record(
        self,
        domain_id: int,
        name: str,
        value: str,
        record_type: str = "A",
        sync_status: SyncStatus = SyncStatus.PENDING,
        remote_record_id: Optional[str] = None,
    ) -> DNSRecord:
        return await self._add(
            DNSRecord(
                domain_id=domain_id,
                name=name,
                record_type=record_type,
                value=value,
                ttl=300,
                sync_status=sync_status,
                remote_record_id=remote_record_id,
            )
        )

    async def record_pool(self, record_id: int, members: list, **config):
        config.setdefault("target_ip", "203.0.113.10")
        async with self.get_session() as session:
            return await upsert_record_pool(
                session, record_id, PoolConfig(members=members, **config)
            )

    async def wildcard_pool(self, domain_id: int, members: list, **config):
        config.setdefault("target_ip", "203.0.113.10")
        async with self.get_session() as session:
            return await upsert_wildcard_pool(
                session, domain_id, WildcardPoolConfig(members=members, **config)
            )


@pytest.fixture
async def test_database():
    """Create isolated test database."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    db_url = f"sqlite+aiosqlite:///{db_path}"
    engine = create_async_engine(db_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    @asynccontextmanager
    async def get_session():
        async with async_session_maker() as session:
            yield session

    yield get_session

    await engine.dispose()
    Path(db_path).unlink(missing_ok=True)


@pytest.fixture
def seed(test_database):
    return Seeder(test_database)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def provider_factory(fake_provider):
    """Provider factory handing out the shared fake provider."""

    def factory(provider: str, **kwargs) -> DNSProvider:
        return fake_provider

    return factory
