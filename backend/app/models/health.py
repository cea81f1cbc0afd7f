from datetime import datetime
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.utils.time_helpers import utc_now


# server_key refers to merged_servers.server_key. No foreign key: the merged table is
# rebuilt on every merge while the measurement history is kept.

class HealthMeasurement(Base):
    __tablename__ = "health_measurements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_key: Mapped[str] = mapped_column(String(300), index=True)
    health_score: Mapped[int] = mapped_column(Integer)
    # 'healthy', 'warning', 'critical' or 'unavailable'
    status: Mapped[str] = mapped_column(String(20))
    response_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # 'pulsemcp', 'estimated' or 'direct'
    source: Mapped[str] = mapped_column(String(20))
    factors: Mapped[List[str]] = mapped_column(JSON, default=list)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    measured_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)


class HealthAlert(Base):
    __tablename__ = "health_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_key: Mapped[str] = mapped_column(String(300), index=True)
    server_name: Mapped[str] = mapped_column(String(255))
    severity: Mapped[str] = mapped_column(String(20))
    message: Mapped[str] = mapped_column(Text)
    health_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reliability_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
