from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, TEXT, Boolean, DateTime, Index, Integer, String
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy import UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TZDatetime(TypeDecorator):
    """Custom DateTime type that ensures timezone-aware datetimes."""

    impl = DateTime(timezone=True)

    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            raise ValueError(
                "Naive datetime is not allowed. Please provide a timezone-aware datetime."
            )
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            # SQLite drops the offset; everything is stored in UTC
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(AsyncAttrs, DeclarativeBase):
    """SQLAlchemy declarative base for all ORM models with async support."""

    pass


# Fleet collaborator models
#
# Machines and groups are enrolled and kept alive by the fleet agent
# subsystem. The control plane only reads them.


class Machine(Base):
    """A managed fleet machine and its last heartbeat."""

    __tablename__ = "machine"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    primary_ip: Mapped[Optional[str]] = mapped_column(String(64))
    last_seen: Mapped[Optional[datetime]] = mapped_column(TZDatetime())
    created_at: Mapped[datetime] = mapped_column(TZDatetime(), default=utcnow)


class MachineGroup(Base):
    __tablename__ = "machine_group"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    created_at: Mapped[datetime] = mapped_column(TZDatetime(), default=utcnow)


class MachineGroupMember(Base):
    __tablename__ = "machine_group_member"
    __table_args__ = (
        UniqueConstraint("group_id", "machine_id", name="uq_group_machine"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(Integer, index=True)
    machine_id: Mapped[int] = mapped_column(Integer, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)


# DNS models


class NSStatus(str, Enum):
    """Nameserver delegation status of a managed domain."""

    UNKNOWN = "unknown"
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"


class SyncStatus(str, Enum):
    """Reconciliation status of a desired record."""

    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"
    LOCAL_ONLY = "local_only"
    REMOTE_ONLY = "remote_only"
    ERROR = "error"


class RecordMode(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


class DNSAccount(Base):
    """Credentials for one account at a DNS provider."""

    __tablename__ = "dns_account"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(50), index=True)
    name: Mapped[str] = mapped_column(String(255))
    api_id: Mapped[Optional[str]] = mapped_column(String(255))
    api_token: Mapped[str] = mapped_column(TEXT)
    created_at: Mapped[datetime] = mapped_column(TZDatetime(), default=utcnow)


class ManagedDomain(Base):
    """A zone whose records are reconciled against its provider account."""

    __tablename__ = "managed_domain"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    fqdn: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    dns_account_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    ns_status: Mapped[NSStatus] = mapped_column(
        SQLAlchemyEnum(NSStatus), default=NSStatus.UNKNOWN
    )
    ns_last_check: Mapped[Optional[datetime]] = mapped_column(TZDatetime())
    ns_expected: Mapped[list[str]] = mapped_column(JSON, default=list)
    ns_actual: Mapped[list[str]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(TZDatetime(), default=utcnow)


class DNSRecord(Base):
    """Desired state of one DNS record, unique per (domain, name, type)."""

    __tablename__ = "dns_record"
    __table_args__ = (
        UniqueConstraint(
            "domain_id", "name", "record_type", name="uq_dns_record_domain_key"
        ),
        Index("idx_dns_record_sync_status", "sync_status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    domain_id: Mapped[int] = mapped_column(Integer, index=True)
    name: Mapped[str] = mapped_column(String(255))
    record_type: Mapped[str] = mapped_column(String(10))
    value: Mapped[str] = mapped_column(TEXT)
    ttl: Mapped[int] = mapped_column(Integer, default=600)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    proxied: Mapped[bool] = mapped_column(Boolean, default=False)
    mode: Mapped[RecordMode] = mapped_column(
        SQLAlchemyEnum(RecordMode), default=RecordMode.STATIC
    )
    remote_record_id: Mapped[Optional[str]] = mapped_column(String(255))
    sync_status: Mapped[SyncStatus] = mapped_column(
        SQLAlchemyEnum(SyncStatus), default=SyncStatus.PENDING
    )
    sync_error: Mapped[Optional[str]] = mapped_column(TEXT)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(TZDatetime())
    created_at: Mapped[datetime] = mapped_column(TZDatetime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        TZDatetime(), default=utcnow, onupdate=utcnow
    )


# Rotation models


class RotationStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    RANDOM = "random"


class RotationMode(str, Enum):
    INTERVAL = "interval"
    SCHEDULED = "scheduled"


class PoolType(str, Enum):
    RECORD = "record"
    WILDCARD = "wildcard"


class RotationTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    HEALTH = "health"


class PoolSettingsMixin:
    """Columns shared by record pools and wildcard pools."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    target_ip: Mapped[str] = mapped_column(String(64))
    target_port: Mapped[int] = mapped_column(Integer, default=443)
    target_port_http: Mapped[int] = mapped_column(Integer, default=80)
    rotation_strategy: Mapped[RotationStrategy] = mapped_column(
        SQLAlchemyEnum(RotationStrategy), default=RotationStrategy.ROUND_ROBIN
    )
    rotation_mode: Mapped[RotationMode] = mapped_column(
        SQLAlchemyEnum(RotationMode), default=RotationMode.INTERVAL
    )
    interval_minutes: Mapped[int] = mapped_column(Integer, default=60)
    scheduled_times: Mapped[list[str]] = mapped_column(JSON, default=list)
    health_check_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    group_ids: Mapped[list[int]] = mapped_column(JSON, default=list)

    current_machine_id: Mapped[Optional[int]] = mapped_column(Integer)
    current_index: Mapped[int] = mapped_column(Integer, default=0)
    is_paused: Mapped[bool] = mapped_column(Boolean, default=False)
    last_rotated_at: Mapped[Optional[datetime]] = mapped_column(TZDatetime())
    last_error: Mapped[Optional[str]] = mapped_column(TEXT)

    created_at: Mapped[datetime] = mapped_column(TZDatetime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        TZDatetime(), default=utcnow, onupdate=utcnow
    )


class RecordPool(PoolSettingsMixin, Base):
    """Rotation pool bound to a single desired record."""

    __tablename__ = "record_pool"

    dns_record_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class WildcardPool(PoolSettingsMixin, Base):
    """Rotation pool driving a domain's '*' record and optionally its apex."""

    __tablename__ = "wildcard_pool"

    dns_domain_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    include_root: Mapped[bool] = mapped_column(Boolean, default=True)
    # Address family the pool writes, A or AAAA
    record_type: Mapped[str] = mapped_column(String(10), default="A")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class RecordPoolMember(Base):
    __tablename__ = "record_pool_member"
    __table_args__ = (
        UniqueConstraint("pool_id", "machine_id", name="uq_record_pool_machine"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    pool_id: Mapped[int] = mapped_column(Integer, index=True)
    machine_id: Mapped[int] = mapped_column(Integer, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)


class WildcardPoolMember(Base):
    __tablename__ = "wildcard_pool_member"
    __table_args__ = (
        UniqueConstraint("pool_id", "machine_id", name="uq_wildcard_pool_machine"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    pool_id: Mapped[int] = mapped_column(Integer, index=True)
    machine_id: Mapped[int] = mapped_column(Integer, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)


class RotationHistory(Base):
    """Append-only log of rotation events."""

    __tablename__ = "rotation_history"
    __table_args__ = (
        Index("idx_rotation_history_pool_time", "pool_type", "pool_id", "rotated_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    pool_type: Mapped[PoolType] = mapped_column(SQLAlchemyEnum(PoolType))
    pool_id: Mapped[int] = mapped_column(Integer)
    dns_domain_id: Mapped[Optional[int]] = mapped_column(Integer)
    record_name: Mapped[Optional[str]] = mapped_column(String(255))
    from_machine_id: Mapped[Optional[int]] = mapped_column(Integer)
    from_ip: Mapped[Optional[str]] = mapped_column(String(64))
    to_machine_id: Mapped[int] = mapped_column(Integer)
    to_ip: Mapped[str] = mapped_column(String(64))
    trigger: Mapped[RotationTrigger] = mapped_column(SQLAlchemyEnum(RotationTrigger))
    rotated_at: Mapped[datetime] = mapped_column(TZDatetime(), default=utcnow)
