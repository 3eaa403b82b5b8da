from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from .config import settings
from .db.database import get_async_session, init_db
from .dns.sync import DomainSyncService
from .errors import FleetDNSError
from .logger import logger
from .rotation.rotator import PoolRotator
from .rotation.scheduler import RotationScheduler
from .routers import dns, pools


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up and initializing the database...")
    await init_db()

    sync_service = DomainSyncService(
        get_async_session,
        dns_settings=settings.dns,
        rotation_settings=settings.rotation,
    )
    rotator = PoolRotator(
        get_async_session,
        settings.rotation,
        on_records_pending=sync_service.request_push,
    )
    scheduler = RotationScheduler(
        get_async_session, rotator, sync_service, settings.rotation
    )
    api_app.state.sync_service = sync_service
    api_app.state.rotator = rotator
    api_app.state.scheduler = scheduler

    scheduler.start()
    logger.info("Startup complete.")
    yield

    logger.info("Shutting down...")
    scheduler.shutdown()
    await sync_service.close(settings.rotation.shutdown_grace_seconds)


async def fleetdns_error_handler(request: Request, exc: FleetDNSError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


api_app = FastAPI(root_path="/api")
api_app.add_exception_handler(FleetDNSError, fleetdns_error_handler)  # type: ignore[arg-type]

api_app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api_app.include_router(dns.router)
api_app.include_router(pools.router)

app = FastAPI(lifespan=lifespan, title="Fleet DNS")
app.mount("/api", api_app)


@app.get("/health")
async def health():
    return {"status": "ok"}
