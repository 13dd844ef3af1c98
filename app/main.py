import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from app.config import settings, validate_reconciliation_settings
from app.core.logging import setup_logging
from app.core.exceptions import api_exception_handler, general_exception_handler, APIError
from app.database import DatabasePool
from app.models.monitoring import HealthStatus
from app.services import monitoring_service
from app.services.seat_allocator import ensure_seat_pool

# Initialize logging
setup_logging()
validate_reconciliation_settings(settings)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown"""
    await ensure_seat_pool()

    reconciliation_task = None
    if settings.reconciliation_enabled:
        from app.tasks.reconciliation import run_reconciliation_loop
        reconciliation_task = asyncio.create_task(run_reconciliation_loop())
    else:
        logger.info("Reconciliation loop disabled (RECONCILIATION_ENABLED=false)")

    yield

    if reconciliation_task:
        reconciliation_task.cancel()
        try:
            await reconciliation_task
        except asyncio.CancelledError:
            pass

    await DatabasePool.close_pool()


app = FastAPI(
    title="Conference Tickets Reconciliation API",
    description="Ticket issuance for paid orders and periodic reconciliation of orders, tickets and prices",
    version="1.0.0",
    debug=settings.debug,
    docs_url="/docs",
    lifespan=lifespan
)

# Exception handlers
app.add_exception_handler(APIError, api_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

# Import and include routers
from app.routers import tickets, reconciliation

# Ticket issuance (internal, called by the payment webhook handler)
app.include_router(tickets.router, prefix="/tickets", tags=["tickets"])

# Reconciliation operations and monitoring (internal)
app.include_router(reconciliation.router, prefix="/reconciliation", tags=["reconciliation"])


@app.get("/")
async def root():
    return {
        "service": "Conference Tickets Reconciliation API",
        "version": "1.0.0",
        "database": settings.db_name,
        "environment": settings.app_env,
        "reconciliation_enabled": settings.reconciliation_enabled
    }


@app.get("/health")
async def health():
    report = await monitoring_service.health_check()
    status_code = 503 if report.status == HealthStatus.CRITICAL else 200
    return JSONResponse(status_code=status_code, content=report.model_dump(mode="json"))


# Auto-start server if run directly
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
