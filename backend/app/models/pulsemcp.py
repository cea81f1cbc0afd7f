from datetime import datetime
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.utils.time_helpers import utc_now


class PulseMcpServer(Base):
    """A server listed in the PulseMCP directory, as of the last sync."""
    __tablename__ = "pulsemcp_servers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Upstream identifier, e.g. "pulsemcp-42"
    server_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    language: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    capabilities: Mapped[List[str]] = mapped_column(JSON, default=list)
    version: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    author: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    repository: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    health_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # 'improving', 'stable' or 'declining'
    health_trend: Mapped[str] = mapped_column(String(20), default="stable")
    downloads: Mapped[int] = mapped_column(Integer, default=0)
    stars: Mapped[int] = mapped_column(Integer, default=0)
    installation_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    installation_command: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    last_updated_upstream: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class PulseMcpCategory(Base):
    __tablename__ = "pulsemcp_categories"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    server_count: Mapped[int] = mapped_column(Integer, default=0)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class PulseMcpHealthHistory(Base):
    """One health score observation per server per sync."""
    __tablename__ = "pulsemcp_health_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[str] = mapped_column(
        ForeignKey("pulsemcp_servers.server_id", ondelete="CASCADE"), index=True
    )
    health_score: Mapped[int] = mapped_column(Integer)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class PulseMcpSyncHistory(Base):
    __tablename__ = "pulsemcp_sync_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime)
    completed_at: Mapped[datetime] = mapped_column(DateTime)
    servers_total: Mapped[int] = mapped_column(Integer, default=0)
    servers_new: Mapped[int] = mapped_column(Integer, default=0)
    servers_updated: Mapped[int] = mapped_column(Integer, default=0)
    servers_skipped: Mapped[int] = mapped_column(Integer, default=0)
    categories_processed: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list] = mapped_column(JSON, default=list)
    warnings: Mapped[list] = mapped_column(JSON, default=list)
