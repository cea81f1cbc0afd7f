from fastapi import APIRouter

from app.core.config import settings
from app.services.health_monitor import is_monitoring
from app.utils.time_helpers import to_iso, utc_now

router = APIRouter()


@router.get("")
async def health_check():
    """Liveness probe."""
    return {
        "status": "healthy",
        "service": settings.PROJECT_NAME,
        "monitoring": is_monitoring(),
        "timestamp": to_iso(utc_now()),
    }
