from app.db.base import Base
from app.models.repository import Repository, McpAnalysis, McpDetection, PackageInfo, RepositoryFile
from app.models.discovery_run import DiscoveryRun, MetadataEntry
from app.models.pulsemcp import PulseMcpServer, PulseMcpCategory, PulseMcpHealthHistory, PulseMcpSyncHistory
from app.models.merged_server import MergedServer
from app.models.health import HealthMeasurement, HealthAlert

__all__ = [
    "Base",
    "Repository",
    "McpAnalysis",
    "McpDetection",
    "PackageInfo",
    "RepositoryFile",
    "DiscoveryRun",
    "MetadataEntry",
    "PulseMcpServer",
    "PulseMcpCategory",
    "PulseMcpHealthHistory",
    "PulseMcpSyncHistory",
    "MergedServer",
    "HealthMeasurement",
    "HealthAlert",
]
