from pydantic import BaseModel, Field
from typing import List, Literal, Optional

from app.schemas.analysis import RepositoryAnalysis

ConfidenceLevel = Literal["high", "medium", "low", "minimal", "none", "error"]


class Indicator(BaseModel):
    # strong_positive, positive, weak_positive, negative, file_positive,
    # file_negative, positive_characteristic, negative_characteristic
    type: str
    description: str
    weight: int


class DetectionIndicators(BaseModel):
    positive: List[Indicator] = Field(default_factory=list)
    negative: List[Indicator] = Field(default_factory=list)
    characteristics: List[Indicator] = Field(default_factory=list)


class MCPDetection(BaseModel):
    is_mcp: bool = False
    confidence: float = 0
    confidence_level: ConfidenceLevel = "none"
    indicators: DetectionIndicators = Field(default_factory=DetectionIndicators)
    classification: str = "unknown"
    reasons: List[str] = Field(default_factory=list)
    edge_cases: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class DetectedRepository(BaseModel):
    """An analysis paired with the detector's verdict on it."""
    analysis: RepositoryAnalysis
    mcp_detection: MCPDetection
