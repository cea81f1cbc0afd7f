from datetime import datetime
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, Float, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.utils.time_helpers import utc_now


class MergedServer(Base):
    """
    Unified catalog entry built from a GitHub discovery, a PulseMCP listing, or both.

    The table is rebuilt on every merge. The health columns are written
    afterwards by the health monitor.
    """
    __tablename__ = "merged_servers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    github_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    pulsemcp_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pulsemcp_server_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    # Stable across merges: "github:<full_name>" or "pulsemcp:<server_id>"
    server_key: Mapped[str] = mapped_column(String(300), unique=True, index=True)

    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    repository_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    clone_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    owner: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    language: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    version: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    capabilities: Mapped[List[str]] = mapped_column(JSON, default=list)
    server_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    confidence: Mapped[int] = mapped_column(Integer, default=0, index=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    health_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    health_trend: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    # 'healthy', 'warning', 'critical', 'unavailable' or 'unknown'
    health_status: Mapped[str] = mapped_column(String(20), default="unknown")
    reliability_score: Mapped[int] = mapped_column(Integer, default=0)
    health_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    github_stars: Mapped[int] = mapped_column(Integer, default=0)
    pulsemcp_stars: Mapped[int] = mapped_column(Integer, default=0)
    combined_stars: Mapped[int] = mapped_column(Integer, default=0)
    downloads: Mapped[int] = mapped_column(Integer, default=0)
    forks: Mapped[int] = mapped_column(Integer, default=0)

    installation_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    installation_command: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    package_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    topics: Mapped[List[str]] = mapped_column(JSON, default=list)
    match_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    match_reasons: Mapped[List[str]] = mapped_column(JSON, default=list)
    # 'github', 'pulsemcp' or 'github,pulsemcp'
    data_sources: Mapped[str] = mapped_column(String(50))

    github_discovered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    github_analyzed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    pulsemcp_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Most recent upstream activity, used by the health estimate
    last_updated: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    merged_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
