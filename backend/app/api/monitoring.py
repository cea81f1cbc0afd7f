import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.services.health_monitor import HealthMonitor
from app.services.pulsemcp_client import PulseMCPClient, get_pulsemcp_client

router = APIRouter()
logger = logging.getLogger(__name__)


def get_health_monitor(
    db: AsyncSession = Depends(get_db),
    client: PulseMCPClient = Depends(get_pulsemcp_client),
):
    return HealthMonitor(db, client=client)


@router.post("/check")
async def run_health_check(monitor: HealthMonitor = Depends(get_health_monitor)):
    return await monitor.run_health_check()


@router.get("/report")
async def get_health_report(
    period: int = Query(7, ge=1, le=365),
    include_alerts: bool = True,
    monitor: HealthMonitor = Depends(get_health_monitor),
):
    return await monitor.generate_health_report(period_days=period, include_alerts=include_alerts)


@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: int,
    db: AsyncSession = Depends(get_db),
    monitor: HealthMonitor = Depends(get_health_monitor),
):
    alert = await monitor.acknowledge_alert(alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
    await db.commit()
    logger.info(f"Acknowledged health alert {alert_id}")
    return alert
