"""
EvidenceChain - Signed Evidence on an Append-Only Ledger

Main application entry point.

A submission is stored only after its signer has been verified and the
ledger has accepted it.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes import router
from .observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)
from .runtime import Runtime

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: one Runtime per process."""
    runtime = Runtime.from_env()
    app.state.runtime = runtime

    if runtime.orphan_log.path is not None:
        pending = len(runtime.orphan_log)
        if pending:
            logger.warning("Orphaned receipts awaiting reconciliation", count=pending)

    logger.info(
        "Application startup complete",
        evidence_count=runtime.store.count_evidence(),
        store_type=type(runtime.store).__name__,
        ledger_type=type(runtime.ledger).__name__,
    )

    yield

    runtime.close()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="EvidenceChain",
    description="""
## Signed Evidence Ledger

Submit content-addressed evidence (e.g. IPFS CIDs) with a signature
proving who authorized it.

### Pipeline

```
Verify signature → Ledger accepts → Record stored → Feed notified
```

- **Verified**: the signer is recovered from a `personal_sign` signature
- **Ledger first**: no record exists without a ledger receipt
- **Append-only**: no PATCH, no PUT, no DELETE
- **Live**: `/feed/{record_type}` streams inserts in commit order

### Storage Backends

- **InMemoryRecordStore**: Development/testing (default)
- **PostgresRecordStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` to use PostgreSQL, and
`EVIDENCECHAIN_LEDGER_DRIVER=jsonrpc` to use an Ethereum node.
    """,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add request context middleware for logging
app.add_middleware(RequestContextMiddleware)

# In production, restrict to your actual domain
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/health", tags=["System"])
def health(request: Request):
    """
    Health check with store and ledger connectivity.

    Returns 200 if healthy, 503 if unhealthy.
    """
    runtime: Runtime = request.app.state.runtime
    health_status = check_health(record_store=runtime.store, ledger=runtime.ledger)

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
    """
    Get application metrics.

    Returns counters and latency percentiles.
    """
    return get_metrics().get_summary()
