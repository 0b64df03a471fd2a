"""
Evidence Custody Ledger

Main application entry point.

Every evidence record and every movement is hash-chained and signed.
A Merkle root commits to the whole evidence set.

Run with: uvicorn custody.main:app
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.routes import router
from .config import CustodyConfig
from .core.keystore import InMemoryKeyCustody
from .core.ledger import (
    ChainError,
    CorruptionError,
    DuplicateError,
    LedgerError,
    NotFoundError,
    PreconditionError,
)
from .core.service import CustodyService
from .db.store import InMemoryCustodyStore
from .demo import seed_demo
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)


logger = get_logger(__name__)

API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    config: CustodyConfig = app.state.config

    keys = InMemoryKeyCustody()
    system = keys.load_system_principal(config)

    service = CustodyService(store=InMemoryCustodyStore(), keys=keys)
    app.state.service = service
    app.state.system_principal_id = system.principal_id

    if config.seed_demo:
        seed_demo(service, system.principal_id)

    # Verify chain integrity on startup
    if config.audit_on_startup:
        for stream, audit in service.audit_all().items():
            if audit.valid:
                logger.info("Stream integrity verified OK", stream=stream, entry_count=audit.entry_count)
            else:
                logger.error("Stream integrity check FAILED!", stream=stream, breaks=len(audit.breaks))

    logger.info(
        "Application startup complete",
        store_type=type(service.store).__name__,
        system_key_ephemeral=keys.is_ephemeral,
        evidence_count=len(service.store.list_evidence()),
    )

    yield

    logger.info("Application shutdown complete")


# Domain error -> HTTP status. Checked in order, most specific first.
_ERROR_STATUS = (
    (NotFoundError, 404),
    (DuplicateError, 409),
    (PreconditionError, 400),
    (ChainError, 409),
    (CorruptionError, 500),
)


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = 500
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(
            "Ledger invariant violated",
            error_type=type(exc).__name__,
            error=str(exc),
            path=request.url.path,
        )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app(config: Optional[CustodyConfig] = None) -> FastAPI:
    """Build the FastAPI application. Tests pass their own config."""
    config = config or CustodyConfig.from_env()

    app = FastAPI(
        title="Evidence Custody Ledger",
        description="""
## Evidence Custody Ledger

Provenance integrity for evidence records and their chain of custody.

### Guarantees

- **Chained**: every evidence revision and movement links to its predecessor
- **Signed**: every entry is signed by the principal that wrote it
- **Attested**: a Merkle root commits to the latest state of every item
- **Traceable**: a merged, ordered chain-of-custody timeline per item

### Verification

`GET /api/evidence/{id}/verify` checks signature, Merkle inclusion and
hash-chain continuity. `GET /api/evidence/{id}/bundle` exports
everything needed to check an item offline with `tools/verify.py`.
        """,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.config = config

    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.include_router(router, prefix="/api")

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "custody"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health check with a full ledger audit.

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(request.app.state.service)

        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    return app


# Setup logging at import time
setup_logging()
app = create_app()
