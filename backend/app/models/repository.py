from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.utils.time_helpers import utc_now


class Repository(Base):
    """
    A GitHub repository found by the discovery scanner.

    One row per ``full_name``; re-discovering a repository refreshes the row
    in place. Analysis, detection, package and file rows hang off it and are
    removed with it.
    """
    __tablename__ = "repositories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    owner: Mapped[str] = mapped_column(String(255), index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(String(512))
    clone_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    ssh_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    language: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    stars: Mapped[int] = mapped_column(Integer, default=0)
    forks: Mapped[int] = mapped_column(Integer, default=0)
    watchers: Mapped[int] = mapped_column(Integer, default=0)
    size: Mapped[int] = mapped_column(Integer, default=0)
    topics: Mapped[List[str]] = mapped_column(JSON, default=list)
    license: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Upstream timestamps, as reported by GitHub
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    pushed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    fork: Mapped[bool] = mapped_column(Boolean, default=False)

    discovered_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    last_analyzed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    search_pattern: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    analysis = relationship(
        "McpAnalysis", back_populates="repository", uselist=False, cascade="all, delete-orphan"
    )
    detection = relationship(
        "McpDetection", back_populates="repository", uselist=False, cascade="all, delete-orphan"
    )
    package_info = relationship(
        "PackageInfo", back_populates="repository", uselist=False, cascade="all, delete-orphan"
    )
    files = relationship("RepositoryFile", back_populates="repository", cascade="all, delete-orphan")


class McpAnalysis(Base):
    """Result of the repository analyzer (content-based MCP confidence)."""
    __tablename__ = "mcp_analysis"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repository_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"), unique=True, index=True
    )
    confidence: Mapped[float] = mapped_column(Float, default=0)
    confidence_level: Mapped[str] = mapped_column(String(20))
    is_mcp: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    server_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    capabilities: Mapped[List[str]] = mapped_column(JSON, default=list)
    indicators: Mapped[List[str]] = mapped_column(JSON, default=list)
    analysis_version: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    analyzed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    repository = relationship("Repository", back_populates="analysis")


class McpDetection(Base):
    """Result of the MCP detector (heuristic classification)."""
    __tablename__ = "mcp_detection"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repository_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"), unique=True, index=True
    )
    detection_confidence: Mapped[float] = mapped_column(Float, default=0)
    detection_level: Mapped[str] = mapped_column(String(20))
    classification: Mapped[str] = mapped_column(String(50))
    positive_indicators: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    negative_indicators: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    edge_cases: Mapped[List[str]] = mapped_column(JSON, default=list)
    reasons: Mapped[List[str]] = mapped_column(JSON, default=list)
    detection_version: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    repository = relationship("Repository", back_populates="detection")


class PackageInfo(Base):
    """Package manifest facts extracted during analysis."""
    __tablename__ = "package_info"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repository_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"), unique=True, index=True
    )
    package_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    version: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    main_file: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    installation_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    dependencies: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    dev_dependencies: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    scripts: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    # package.json "bin" may be a string or a mapping
    bin: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    extracted_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    repository = relationship("Repository", back_populates="package_info")


class RepositoryFile(Base):
    """A file that the analyzer looked at."""
    __tablename__ = "repository_files"
    __table_args__ = (UniqueConstraint("repository_id", "filename", name="uq_repository_files_repo_filename"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repository_id: Mapped[int] = mapped_column(ForeignKey("repositories.id", ondelete="CASCADE"), index=True)
    filename: Mapped[str] = mapped_column(String(255))
    file_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    analyzed: Mapped[bool] = mapped_column(Boolean, default=False)
    mcp_relevant: Mapped[bool] = mapped_column(Boolean, default=False)
    extracted_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    repository = relationship("Repository", back_populates="files")
