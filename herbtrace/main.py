"""
HerbTrace - Supply-Chain Provenance Ledger

Main application entry point.

Every harvest, weighing, processing step, lab test and product is an
attested event on its batch's hash chain. Consumers scan a product
code and see the whole journey, with its quality gates.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes import router
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)
from . import shared_ledger

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    app.state.store = shared_ledger.get_store()
    app.state.ledger = shared_ledger.get_ledger()
    app.state.provenance = shared_ledger.get_provenance_service()

    shared_ledger.seed_demo_data()

    logger.info(
        "Application startup complete",
        event_count=app.state.store.count_events(),
        store_type=type(app.state.store).__name__,
    )

    yield

    logger.info("Application shutdown complete")


app = FastAPI(
    title="HerbTrace",
    description="""
## Supply-Chain Provenance Ledger

Traces herbal goods from harvest to finished product.

### Core Principles

- **Append-only**: events are never edited or deleted
- **Tamper-evident**: each batch is a SHA-256 hash chain
- **Recorded, not rejected**: rule failures are stored on the event
- **Gated**: a product needs an intact chain and a passing quality test

### Batch Lifecycle

```
Harvest -> Collection -> Processing -> Quality Test -> Product
```

### Storage Backends

- **InMemoryLedgerStore**: Development/testing (default)
- **PostgresLedgerStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` environment variables to use PostgreSQL.
    """,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

# In production, restrict to the portal domains
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")


@app.get("/health", tags=["System"])
def health():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    For detailed health, use /health/detailed
    """
    return {"status": "healthy", "service": "herbtrace"}


@app.get("/health/detailed", tags=["System"])
def health_detailed(request: Request, verify_chains: bool = False):
    """
    Detailed health check.

    Checks:
    - Service liveness
    - Ledger store connectivity
    - Chain integrity of every batch (when verify_chains=true)

    Returns 200 if healthy, 503 if unhealthy.
    """
    health_status = check_health(request.app.state.store, verify_chains=verify_chains)

    return JSONResponse(
        status_code=200 if health_status.healthy else 503,
        content={
            "status": "healthy" if health_status.healthy else "unhealthy",
            "checks": health_status.checks,
            "duration_ms": health_status.duration_ms,
        },
    )


@app.get("/metrics", tags=["System"])
def metrics():
    """Counters and latency percentiles."""
    return get_metrics().get_summary()
