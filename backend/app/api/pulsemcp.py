import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.services.pulsemcp_client import PulseMCPClient, get_pulsemcp_client
from app.services.pulsemcp_sync import PulseMCPSync

router = APIRouter()
logger = logging.getLogger(__name__)


def get_pulsemcp_sync(
    db: AsyncSession = Depends(get_db),
    client: PulseMCPClient = Depends(get_pulsemcp_client),
):
    return PulseMCPSync(db, client=client)


class SyncRequest(BaseModel):
    force: bool = False


@router.post("/sync")
async def sync_directory(request: Optional[SyncRequest] = None, sync: PulseMCPSync = Depends(get_pulsemcp_sync)):
    """
    Mirror the PulseMCP directory into the local database.

    Returns {"skipped": true, ...} when the last sync is recent and force is not set.
    """
    force = request.force if request else False
    return await sync.run_sync(force=force)


@router.get("/stats")
async def get_sync_stats(sync: PulseMCPSync = Depends(get_pulsemcp_sync)):
    return await sync.get_sync_stats()


@router.get("/servers/search")
async def search_servers(
    q: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    sync: PulseMCPSync = Depends(get_pulsemcp_sync),
):
    return await sync.search_servers(q, limit=limit, offset=offset)


@router.get("/servers/category/{category}")
async def get_servers_by_category(
    category: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    verified: Optional[bool] = None,
    sync: PulseMCPSync = Depends(get_pulsemcp_sync),
):
    return await sync.get_servers_by_category(category, limit=limit, offset=offset, verified=verified)


@router.get("/status")
async def get_client_status(client: PulseMCPClient = Depends(get_pulsemcp_client)):
    """Connection mode and rate limiter state of the PulseMCP client."""
    return client.get_status()
