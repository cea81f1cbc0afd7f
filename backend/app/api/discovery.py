import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import AsyncSessionLocal, get_db
from app.schemas.discovery import DiscoveryOptions
from app.services.discovery_orchestrator import DiscoveryOrchestrator
from app.services.storage import MCP_CONFIDENCE_THRESHOLD, StorageService
from app.utils.run_helpers import generate_run_id

router = APIRouter()
logger = logging.getLogger(__name__)


def get_storage_service(db: AsyncSession = Depends(get_db)):
    return StorageService(db)


class DiscoveryRunResponse(BaseModel):
    run_id: str
    status: str


async def execute_discovery_run(run_id: str, options: DiscoveryOptions) -> None:
    """Run discovery on its own session; the request session is gone by now."""
    async with AsyncSessionLocal() as session:
        try:
            await DiscoveryOrchestrator(session, options).run_discovery(run_id=run_id)
        except Exception as e:
            logger.error(f"Background discovery run {run_id} failed: {e}")


@router.post("/runs", response_model=DiscoveryRunResponse, status_code=202)
async def start_discovery_run(
    background_tasks: BackgroundTasks,
    options: Optional[DiscoveryOptions] = None,
):
    """Start a GitHub discovery run in the background."""
    options = options or DiscoveryOptions()
    run_id = generate_run_id("discovery")
    background_tasks.add_task(execute_discovery_run, run_id, options)
    logger.info(f"Queued discovery run {run_id}")
    return DiscoveryRunResponse(run_id=run_id, status="queued")


@router.get("/runs/{run_id}")
async def get_discovery_run(run_id: str, storage: StorageService = Depends(get_storage_service)):
    run = await storage.get_discovery_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail=f"Discovery run '{run_id}' not found")
    return run


@router.get("/stats")
async def get_discovery_stats(storage: StorageService = Depends(get_storage_service)):
    return await storage.get_discovery_stats()


@router.get("/repositories")
async def list_mcp_repositories(
    min_confidence: float = Query(MCP_CONFIDENCE_THRESHOLD, ge=0, le=100),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    order_by: str = "confidence",
    server_type: Optional[str] = None,
    storage: StorageService = Depends(get_storage_service),
):
    """Repositories detected as MCP servers, best first."""
    try:
        return await storage.get_mcp_repositories(
            min_confidence=min_confidence,
            limit=limit,
            offset=offset,
            order_by=order_by,
            server_type=server_type,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/repositories/{owner}/{repo}")
async def get_repository(owner: str, repo: str, storage: StorageService = Depends(get_storage_service)):
    full_name = f"{owner}/{repo}"
    repository = await storage.get_repository(full_name)
    if not repository:
        raise HTTPException(status_code=404, detail=f"Repository '{full_name}' not found")
    return repository


@router.get("/export")
async def export_discovery_data(
    include_analysis: bool = True,
    include_detection: bool = True,
    storage: StorageService = Depends(get_storage_service),
):
    return await storage.export_data(include_analysis=include_analysis, include_detection=include_detection)


@router.post("/cache/clear")
async def clear_cache(
    ttl_hours: Optional[int] = Query(None, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Delete analysis and detection rows older than the cache TTL."""
    cleared = await StorageService(db).clear_old_cache(ttl_hours=ttl_hours)
    await db.commit()
    return {"cleared": cleared}
