"""
DNS management API endpoints

Accounts, managed domains, desired records, and reconciliation of a domain
against its provider.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.database import get_db
from ..dependencies import SyncServiceDep, verify_master_token
from ..dns import crud
from ..dns.provider import create_provider
from ..dns.types import Conflict, Record, RecordError, SyncResult
from ..logger import logger
from ..models import DNSAccount, DNSRecord, ManagedDomain

router = APIRouter(
    prefix="/dns", tags=["dns"], dependencies=[Depends(verify_master_token)]
)


class AccountCreate(BaseModel):
    provider: str
    name: str
    api_token: str = Field(min_length=1)
    api_id: Optional[str] = None


class AccountResponse(BaseModel):
    """Account without its credentials."""

    id: int
    provider: str
    name: str
    created_at: datetime


class DomainCreate(BaseModel):
    fqdn: str = Field(min_length=1)
    dns_account_id: Optional[int] = None


class DomainResponse(BaseModel):
    id: int
    fqdn: str
    dns_account_id: Optional[int]
    ns_status: str
    ns_last_check: Optional[datetime]
    ns_expected: List[str]
    ns_actual: List[str]


class RecordCreate(BaseModel):
    name: str
    record_type: str
    value: str = Field(min_length=1)
    ttl: int = Field(default=600, ge=0)
    priority: int = 0
    proxied: bool = False


class RecordUpdate(BaseModel):
    value: Optional[str] = Field(default=None, min_length=1)
    ttl: Optional[int] = Field(default=None, ge=0)
    priority: Optional[int] = None
    proxied: Optional[bool] = None


class RecordResponse(BaseModel):
    id: int
    domain_id: int
    name: str
    record_type: str
    value: str
    ttl: int
    priority: int
    proxied: bool
    mode: str
    remote_record_id: Optional[str]
    sync_status: str
    sync_error: Optional[str]
    last_synced_at: Optional[datetime]


class RecordData(BaseModel):
    """A record as seen by the reconciliation engine"""

    name: str
    record_type: str
    value: str
    ttl: int
    priority: int
    proxied: bool
    record_id: Optional[str]


class ConflictData(BaseModel):
    name: str
    record_type: str
    local_value: str
    remote_value: str
    local_id: Optional[str]
    remote_id: Optional[str]


class RecordErrorData(BaseModel):
    name: str
    record_type: str
    message: str


class SyncResultResponse(BaseModel):
    in_sync: bool
    created: List[RecordData]
    updated: List[RecordData]
    deleted: List[RecordData]
    conflicts: List[ConflictData]
    errors: List[RecordErrorData]


class ImportResponse(BaseModel):
    imported: int
    deleted: int
    skipped_duplicates: int
    kept_dynamic: int


class NameserverCheckResponse(BaseModel):
    domain: str
    status: str
    expected: List[str]
    actual: List[str]
    message: str


def _account_response(account: DNSAccount) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        provider=account.provider,
        name=account.name,
        created_at=account.created_at,
    )


def _domain_response(domain: ManagedDomain) -> DomainResponse:
    return DomainResponse(
        id=domain.id,
        fqdn=domain.fqdn,
        dns_account_id=domain.dns_account_id,
        ns_status=domain.ns_status.value,
        ns_last_check=domain.ns_last_check,
        ns_expected=list(domain.ns_expected or []),
        ns_actual=list(domain.ns_actual or []),
    )


def _record_response(record: DNSRecord) -> RecordResponse:
    return RecordResponse(
        id=record.id,
        domain_id=record.domain_id,
        name=record.name,
        record_type=record.record_type,
        value=record.value,
        ttl=record.ttl,
        priority=record.priority,
        proxied=record.proxied,
        mode=record.mode.value,
        remote_record_id=record.remote_record_id,
        sync_status=record.sync_status.value,
        sync_error=record.sync_error,
        last_synced_at=record.last_synced_at,
    )


def _record_data(record: Record) -> RecordData:
    return RecordData(
        name=record.name,
        record_type=record.record_type,
        value=record.value,
        ttl=record.ttl,
        priority=record.priority,
        proxied=record.proxied,
        record_id=record.record_id,
    )


def _conflict_data(conflict: Conflict) -> ConflictData:
    return ConflictData(
        name=conflict.name,
        record_type=conflict.record_type,
        local_value=conflict.local_value,
        remote_value=conflict.remote_value,
        local_id=conflict.local_id,
        remote_id=conflict.remote_id,
    )


def _error_data(error: RecordError) -> RecordErrorData:
    return RecordErrorData(
        name=error.name, record_type=error.record_type, message=error.message
    )


def _sync_response(result: SyncResult) -> SyncResultResponse:
    return SyncResultResponse(
        in_sync=result.in_sync,
        created=[_record_data(r) for r in result.created],
        updated=[_record_data(r) for r in result.updated],
        deleted=[_record_data(r) for r in result.deleted],
        conflicts=[_conflict_data(c) for c in result.conflicts],
        errors=[_error_data(e) for e in result.errors],
    )


# Accounts


@router.post(
    "/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED
)
async def create_account(body: AccountCreate, session: AsyncSession = Depends(get_db)):
    """Store a provider account after checking its credentials with the provider."""
    async with create_provider(
        body.provider,
        api_token=body.api_token,
        api_id=body.api_id,
        timeout=settings.dns.provider_timeout_seconds,
    ) as provider:
        await provider.validate_credentials()

    account = await crud.create_account(
        session, body.provider, body.name, body.api_token, body.api_id
    )
    logger.info(f"Added {account.provider} DNS account {account.name} (id={account.id})")
    return _account_response(account)


@router.get("/accounts", response_model=List[AccountResponse])
async def list_accounts(session: AsyncSession = Depends(get_db)):
    return [_account_response(a) for a in await crud.list_accounts(session)]


# Domains


@router.post(
    "/domains", response_model=DomainResponse, status_code=status.HTTP_201_CREATED
)
async def create_domain(body: DomainCreate, session: AsyncSession = Depends(get_db)):
    domain = await crud.create_domain(session, body.fqdn, body.dns_account_id)
    return _domain_response(domain)


@router.get("/domains", response_model=List[DomainResponse])
async def list_domains(session: AsyncSession = Depends(get_db)):
    return [_domain_response(d) for d in await crud.list_domains(session)]


@router.get("/domains/{domain_id}", response_model=DomainResponse)
async def get_domain(domain_id: int, session: AsyncSession = Depends(get_db)):
    return _domain_response(await crud.get_domain(session, domain_id))


# Records


@router.get("/domains/{domain_id}/records", response_model=List[RecordResponse])
async def list_records(domain_id: int, session: AsyncSession = Depends(get_db)):
    await crud.get_domain(session, domain_id)
    return [
        _record_response(r) for r in await crud.list_domain_records(session, domain_id)
    ]


@router.post(
    "/domains/{domain_id}/records",
    response_model=RecordResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_record(
    domain_id: int, body: RecordCreate, session: AsyncSession = Depends(get_db)
):
    record = await crud.create_record(
        session,
        domain_id,
        body.name,
        body.record_type,
        body.value,
        body.ttl,
        body.priority,
        body.proxied,
    )
    return _record_response(record)


@router.patch("/records/{record_id}", response_model=RecordResponse)
async def update_record(
    record_id: int, body: RecordUpdate, session: AsyncSession = Depends(get_db)
):
    record = await crud.update_record(
        session, record_id, body.value, body.ttl, body.priority, body.proxied
    )
    return _record_response(record)


@router.delete("/records/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_record(record_id: int, session: AsyncSession = Depends(get_db)):
    await crud.delete_record(session, record_id)


# Reconciliation


@router.get("/domains/{domain_id}/compare", response_model=SyncResultResponse)
async def compare_domain(domain_id: int, sync_service: SyncServiceDep):
    """Diff desired records against the provider without changing the provider."""
    return _sync_response(await sync_service.compare_domain(domain_id))


@router.post("/domains/{domain_id}/apply", response_model=SyncResultResponse)
async def apply_domain(domain_id: int, sync_service: SyncServiceDep):
    """Make the provider match the desired records, best effort per record."""
    return _sync_response(await sync_service.apply_domain(domain_id))


@router.post("/domains/{domain_id}/import", response_model=ImportResponse)
async def import_domain(domain_id: int, sync_service: SyncServiceDep):
    """Replace desired records with what the provider currently serves."""
    result = await sync_service.import_domain(domain_id)
    return ImportResponse(**result._asdict())


@router.post("/domains/{domain_id}/nameservers", response_model=NameserverCheckResponse)
async def check_nameservers(domain_id: int, sync_service: SyncServiceDep):
    result = await sync_service.check_domain_nameservers(domain_id)
    return NameserverCheckResponse(
        domain=result.domain,
        status=result.status.value,
        expected=result.expected,
        actual=result.actual,
        message=result.message,
    )
