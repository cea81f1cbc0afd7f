from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.services.data_merger import DataMerger
from app.services.super_orchestrator import get_top_mcp_servers

router = APIRouter()


@router.post("/merge")
async def merge_catalog(db: AsyncSession = Depends(get_db)):
    """Rebuild the merged catalog from GitHub discoveries and the PulseMCP mirror."""
    return await DataMerger(db).run_merge()


@router.get("/stats")
async def get_catalog_stats(db: AsyncSession = Depends(get_db)):
    return await DataMerger(db).get_merged_stats()


@router.get("/top")
async def get_top_servers(
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    return await get_top_mcp_servers(db, limit=limit)
