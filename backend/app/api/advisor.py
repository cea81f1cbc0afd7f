import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.services.advisor import AdvisorService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_advisor_service(db: AsyncSession = Depends(get_db)):
    return AdvisorService(session=db)


class RecommendRequest(BaseModel):
    project_description: str = Field(..., min_length=1)
    limit: int = Field(10, ge=1, le=50)


@router.post("/recommend")
async def recommend_servers(
    request: RecommendRequest,
    advisor: AdvisorService = Depends(get_advisor_service),
):
    """Ask MCP-7 which MCP servers suit a project."""
    try:
        return await advisor.recommend(request.project_description, limit=request.limit)
    except ValueError as e:
        logger.warning(f"Advisor unavailable: {e}")
        raise HTTPException(status_code=400, detail=str(e))
