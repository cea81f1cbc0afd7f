from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from app.api import health, discovery, pulsemcp, catalog, monitoring, advisor
from app.core.config import settings
from app.db.session import init_db
from app.services.github_service import get_github_service
from app.services.pulsemcp_client import get_pulsemcp_client
from app.services.pulsemcp_sync import start_auto_sync, stop_auto_sync
from app.services.health_monitor import start_monitoring, stop_monitoring
import logging

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    logger.info("MCP-7 Discovery starting up...")
    if settings.AUTO_CREATE_TABLES:
        await init_db()
    if settings.AUTO_SYNC_ENABLED:
        start_auto_sync()
    if settings.HEALTH_MONITORING_ENABLED:
        start_monitoring()
    yield
    # Shutdown
    logger.info("MCP-7 Discovery shutting down, stopping background tasks...")
    stop_auto_sync()
    stop_monitoring()
    await get_github_service().close()
    await get_pulsemcp_client().close()
    logger.info("Background tasks stopped")

app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Discovery, cataloguing and health tracking of MCP servers",
    version="3.0.0",
    lifespan=lifespan
)

# Add validation error handler to log 422 errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"[VALIDATION ERROR] on {request.url}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors()},
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix=f"{settings.API_V1_STR}/health", tags=["health"])
app.include_router(discovery.router, prefix=f"{settings.API_V1_STR}/discovery", tags=["discovery"])
app.include_router(pulsemcp.router, prefix=f"{settings.API_V1_STR}/pulsemcp", tags=["pulsemcp"])
app.include_router(catalog.router, prefix=f"{settings.API_V1_STR}/catalog", tags=["catalog"])
app.include_router(monitoring.router, prefix=f"{settings.API_V1_STR}/monitoring", tags=["monitoring"])
app.include_router(advisor.router, prefix=f"{settings.API_V1_STR}/advisor", tags=["advisor"])
