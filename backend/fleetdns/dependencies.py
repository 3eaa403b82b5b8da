from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from .config import settings
from .dns.sync import DomainSyncService
from .logger import logger
from .rotation.rotator import PoolRotator


def verify_master_token(
    authorization: Annotated[Optional[str], Header()] = None,
) -> None:
    """Require ``Authorization: Bearer <master token>``."""
    if authorization is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    scheme, _, given_token = authorization.partition(" ")
    if scheme.lower() != "bearer" or given_token != settings.master_token:
        logger.warning("Rejected request with an invalid master token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This endpoint requires the master token",
        )


def get_rotator(request: Request) -> PoolRotator:
    return request.app.state.rotator


def get_sync_service(request: Request) -> DomainSyncService:
    return request.app.state.sync_service


RotatorDep = Annotated[PoolRotator, Depends(get_rotator)]
SyncServiceDep = Annotated[DomainSyncService, Depends(get_sync_service)]
