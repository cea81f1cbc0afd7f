from pydantic import BaseModel, Field

from app.core.config import settings


class DiscoveryOptions(BaseModel):
    """Knobs for a GitHub discovery run. Defaults come from settings."""
    max_repositories: int = Field(default_factory=lambda: settings.DISCOVERY_MAX_REPOSITORIES, ge=1)
    min_stars: int = Field(default_factory=lambda: settings.DISCOVERY_MIN_STARS, ge=0)
    concurrency: int = Field(default_factory=lambda: settings.DISCOVERY_CONCURRENCY, ge=1)
    batch_size: int = Field(default_factory=lambda: settings.DISCOVERY_BATCH_SIZE, ge=1)
    delay_between_requests: float = Field(
        default_factory=lambda: settings.DISCOVERY_REQUEST_DELAY_SECONDS, ge=0
    )
    strict_mode: bool = Field(default_factory=lambda: settings.DISCOVERY_STRICT_MODE)
    min_confidence: int = Field(default_factory=lambda: settings.DISCOVERY_MIN_CONFIDENCE, ge=0, le=100)
    dry_run: bool = False


class SuperDiscoveryOptions(DiscoveryOptions):
    include_pulsemcp: bool = True
    enable_health_monitoring: bool = True
    force: bool = False
    # Use generated PulseMCP data instead of the live API
    mock_pulsemcp: bool = Field(default_factory=lambda: settings.PULSEMCP_MOCK_MODE)
