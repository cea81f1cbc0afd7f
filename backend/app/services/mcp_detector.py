import json
import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Pattern

from app.schemas.analysis import RepositoryAnalysis
from app.schemas.detection import DetectedRepository, Indicator, MCPDetection
from app.utils.time_helpers import age_in_days

logger = logging.getLogger(__name__)

DETECTION_VERSION = "3.0"


@dataclass(frozen=True)
class WeightedPattern:
    pattern: Pattern[str]
    weight: int
    description: str


def _wp(pattern: str, weight: int, description: str) -> WeightedPattern:
    return WeightedPattern(re.compile(pattern, re.IGNORECASE), weight, description)


STRONG_POSITIVE = [
    _wp(r"mcp-server", 40, 'Contains "mcp-server"'),
    _wp(r"model.context.protocol", 35, "References Model Context Protocol"),
    _wp(r'"@modelcontextprotocol/', 45, "Official MCP package dependency"),
    _wp(r"claude_desktop_config", 30, "Claude Desktop configuration"),
    _wp(r"anthropic.*mcp", 25, "Anthropic MCP reference"),
]

POSITIVE = [
    _wp(r"claude.*mcp", 20, "Claude MCP reference"),
    _wp(r"mcp.*tool", 18, "MCP tool reference"),
    _wp(r"context.*protocol.*server", 15, "Context protocol server"),
    _wp(r"mcp.*client", 12, "MCP client reference"),
    _wp(r"server.*mcp", 15, "Server MCP reference"),
]

WEAK_POSITIVE = [
    _wp(r"mcp", 5, 'Contains "mcp"'),
    _wp(r"claude", 3, "References Claude"),
    _wp(r"anthropic", 4, "References Anthropic"),
    _wp(r"context.*protocol", 8, "Context protocol mention"),
]
# Weak matches only count, each worth this much up to the cap
WEAK_POSITIVE_STEP = 3
WEAK_POSITIVE_CAP = 15

NEGATIVE = [
    _wp(r"bitcoin", -10, "Cryptocurrency project"),
    _wp(r"mining", -8, "Mining related"),
    _wp(r"game", -5, "Game project"),
    _wp(r"website", -3, "Website project"),
    _wp(r"blog", -5, "Blog project"),
    _wp(r"tutorial", -8, "Tutorial project"),
    _wp(r"exercise", -10, "Exercise/learning project"),
    _wp(r"homework", -15, "Homework project"),
    _wp(r"test.*repo", -20, "Test repository"),
    _wp(r"^hello.world", -15, "Hello world project"),
    _wp(r"portfolio", -8, "Portfolio project"),
]

# (file, patterns, weight)
FILE_POSITIVE = [
    ("package.json", [r"@modelcontextprotocol", r"mcp.*server"], 25),
    ("pyproject.toml", [r"mcp", r"claude"], 20),
    ("Cargo.toml", [r"mcp", r"claude"], 20),
    ("server.js", [r"mcp", r"context.*protocol"], 15),
    ("main.py", [r"mcp", r"server"], 12),
]

FILE_NEGATIVE = [
    ("package.json", [r"react.*app", r"vue.*app", r"next.*app"], -10),
    ("index.html", [r".*"], -15),
    ("requirements.txt", [r"django", r"flask"], -5),
]

POSITIVE_CHARACTERISTICS = [
    ("has_server_executable", 20, "Has server executable"),
    ("has_config_example", 15, "Has config examples"),
    ("has_install_instructions", 10, "Has install instructions"),
    ("recent_activity", 5, "Recently active"),
    ("has_tests", 8, "Has test suite"),
]

NEGATIVE_CHARACTERISTICS = [
    ("is_archived", -25, "Repository is archived"),
    ("no_activity", -15, "No recent activity (>2 years)"),
    ("is_fork", -5, "Is a fork"),
    ("very_small", -10, "Very small repository (<1KB)"),
    ("no_description", -5, "No description"),
]

MONOREPO_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (r"packages.*mcp", r"services.*mcp", r"apps.*mcp", r"tools.*mcp")]
EXAMPLE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (r"example.*mcp", r"mcp.*example", r"sample.*mcp", r"demo.*mcp")]
DOCUMENTATION_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (r"docs.*mcp", r"mcp.*docs", r"documentation")]

EXAMPLE_PENALTY = 20
EXAMPLE_PENALTY_BELOW = 50
DOCUMENTATION_PENALTY = 30


def _months_since(timestamp: Optional[str]) -> float:
    # Months approximated as 30 days
    return age_in_days(timestamp) / 30


class MCPDetector:
    """
    Heuristic classifier that decides whether an analyzed repository is an MCP server.

    Layers text patterns, file indicators, repository characteristics and
    edge-case handling on top of the analyzer's base confidence.
    """

    def __init__(self, strict_mode: bool = False):
        self.strict_mode = strict_mode
        self.thresholds = {
            "high": 80 if strict_mode else 70,
            "medium": 60 if strict_mode else 50,
            "low": 40 if strict_mode else 30,
            "minimum": 20 if strict_mode else 10,
        }

    def detect_mcp(self, analysis: RepositoryAnalysis) -> MCPDetection:
        detection = MCPDetection()

        try:
            confidence = analysis.mcp.confidence or 0
            confidence += self._analyze_patterns(analysis, detection)
            confidence += self._analyze_files(analysis, detection)
            confidence += self._analyze_characteristics(analysis, detection)
            confidence = self._handle_edge_cases(analysis, confidence, detection)
            confidence = self._apply_final_adjustments(analysis, confidence, detection)

            detection.confidence = max(0, min(100, confidence))
            detection.confidence_level = self.get_confidence_level(detection.confidence)
            detection.is_mcp = detection.confidence >= self.thresholds["minimum"]
            detection.classification = self.classify(detection.confidence)

            logger.debug(
                f"Detection for {analysis.repository.full_name}: confidence={detection.confidence} "
                f"level={detection.confidence_level} classification={detection.classification}"
            )
        except Exception as e:
            logger.warning(f"Detection failed for {analysis.repository.full_name}: {e}")
            detection.error = str(e)

        return detection

    def _analyze_patterns(self, analysis: RepositoryAnalysis, detection: MCPDetection) -> int:
        package_description = analysis.mcp.package_info.description if analysis.mcp.package_info else None
        text = " ".join(
            part for part in [
                analysis.repository.description,
                analysis.repository.name,
                package_description,
                *analysis.mcp.indicators,
            ] if part
        ).lower()

        boost = 0
        for indicator_type, indicators in (("strong_positive", STRONG_POSITIVE), ("positive", POSITIVE)):
            for indicator in indicators:
                if indicator.pattern.search(text):
                    boost += indicator.weight
                    detection.indicators.positive.append(
                        Indicator(type=indicator_type, description=indicator.description, weight=indicator.weight)
                    )

        weak_count = 0
        for indicator in WEAK_POSITIVE:
            if indicator.pattern.search(text):
                weak_count += 1
                detection.indicators.positive.append(
                    Indicator(type="weak_positive", description=indicator.description, weight=indicator.weight)
                )
        boost += min(weak_count * WEAK_POSITIVE_STEP, WEAK_POSITIVE_CAP)

        for indicator in NEGATIVE:
            if indicator.pattern.search(text):
                boost += indicator.weight
                detection.indicators.negative.append(
                    Indicator(type="negative", description=indicator.description, weight=indicator.weight)
                )

        return boost

    def _analyze_files(self, analysis: RepositoryAnalysis, detection: MCPDetection) -> int:
        analyzed = analysis.files.analyzed
        package_info = analysis.mcp.package_info
        serialized = json.dumps(package_info.model_dump(exclude_none=True) if package_info else {}).lower()

        boost = 0
        if package_info is not None:
            for filename, patterns, weight in FILE_POSITIVE:
                if filename not in analyzed:
                    continue
                for pattern in patterns:
                    if re.search(pattern, serialized, re.IGNORECASE):
                        boost += weight
                        detection.indicators.positive.append(Indicator(
                            type="file_positive",
                            description=f"{filename} contains MCP patterns",
                            weight=weight,
                        ))

        for filename, patterns, weight in FILE_NEGATIVE:
            if filename not in analyzed:
                continue
            for pattern in patterns:
                if re.search(pattern, serialized, re.IGNORECASE):
                    boost += weight
                    detection.indicators.negative.append(Indicator(
                        type="file_negative",
                        description=f"{filename} suggests non-MCP project",
                        weight=weight,
                    ))

        return boost

    def _analyze_characteristics(self, analysis: RepositoryAnalysis, detection: MCPDetection) -> int:
        boost = 0
        for indicator_type, characteristics in (
            ("positive_characteristic", POSITIVE_CHARACTERISTICS),
            ("negative_characteristic", NEGATIVE_CHARACTERISTICS),
        ):
            for check, weight, description in characteristics:
                if self.check_characteristic(analysis, check):
                    boost += weight
                    detection.indicators.characteristics.append(
                        Indicator(type=indicator_type, description=description, weight=weight)
                    )
        return boost

    def check_characteristic(self, analysis: RepositoryAnalysis, check: str) -> bool:
        metadata = analysis.metadata
        mcp_relevant = analysis.files.mcp_relevant
        documentation = analysis.analysis.documentation

        if check == "has_server_executable":
            has_bin = bool(analysis.mcp.package_info and analysis.mcp.package_info.bin)
            return has_bin or any("server" in name for name in mcp_relevant)
        if check == "has_config_example":
            return any("config" in name or "claude" in name for name in mcp_relevant)
        if check == "has_install_instructions":
            return documentation.installation
        if check == "recent_activity":
            return _months_since(metadata.updated_at) < 6
        if check == "has_tests":
            return any("test" in name for name in analysis.files.analyzed) or documentation.examples
        if check == "is_archived":
            return metadata.archived
        if check == "no_activity":
            return age_in_days(metadata.updated_at) / 365 > 2
        if check == "is_fork":
            return metadata.fork
        if check == "very_small":
            return (metadata.size or 0) < 1
        if check == "no_description":
            return not analysis.repository.description
        return False

    def _handle_edge_cases(self, analysis: RepositoryAnalysis, confidence: float, detection: MCPDetection) -> float:
        combined = f"{analysis.repository.full_name or ''} {analysis.repository.description or ''}".lower()

        if any(pattern.search(combined) for pattern in MONOREPO_PATTERNS):
            detection.edge_cases.append("monorepo")
            detection.reasons.append("Potential MCP server within monorepo")

        if any(pattern.search(combined) for pattern in EXAMPLE_PATTERNS):
            detection.edge_cases.append("example")
            detection.reasons.append("Appears to be an example/demo project")
            if confidence < EXAMPLE_PENALTY_BELOW:
                confidence = max(0, confidence - EXAMPLE_PENALTY)

        if any(pattern.search(combined) for pattern in DOCUMENTATION_PATTERNS):
            detection.edge_cases.append("documentation")
            detection.reasons.append("Appears to be documentation repository")
            confidence = max(0, confidence - DOCUMENTATION_PENALTY)

        return confidence

    def _apply_final_adjustments(self, analysis: RepositoryAnalysis, confidence: float, detection: MCPDetection) -> float:
        positive = detection.indicators.positive
        documentation = analysis.analysis.documentation

        strong = [indicator for indicator in positive if indicator.type == "strong_positive"]
        if len(strong) >= 2:
            confidence += 15
            detection.reasons.append("Multiple strong MCP indicators present")

        if documentation.has_readme and documentation.installation and positive:
            confidence += 10
            detection.reasons.append("Well-documented with MCP indicators")

        if not positive and confidence > 0:
            confidence = max(0, confidence - 20)
            detection.reasons.append("No clear MCP indicators found")

        package_name = analysis.mcp.package_info.name if analysis.mcp.package_info else None
        if package_name and "@modelcontextprotocol/" in package_name:
            confidence += 25
            detection.reasons.append("Official MCP package")

        return confidence

    def get_confidence_level(self, confidence: float) -> str:
        if confidence >= self.thresholds["high"]:
            return "high"
        if confidence >= self.thresholds["medium"]:
            return "medium"
        if confidence >= self.thresholds["low"]:
            return "low"
        if confidence >= self.thresholds["minimum"]:
            return "minimal"
        return "none"

    def classify(self, confidence: float) -> str:
        if confidence >= self.thresholds["high"]:
            return "definite_mcp_server"
        if confidence >= self.thresholds["medium"]:
            return "likely_mcp_server"
        if confidence >= self.thresholds["low"]:
            return "possible_mcp_server"
        if confidence >= self.thresholds["minimum"]:
            return "weak_mcp_candidate"
        return "not_mcp_server"

    def detect_mcp_repositories(self, analyses: List[RepositoryAnalysis]) -> List[DetectedRepository]:
        logger.info(f"Running MCP detection on {len(analyses)} repositories")
        results: List[DetectedRepository] = []
        for index, analysis in enumerate(analyses):
            try:
                detection = self.detect_mcp(analysis)
            except Exception as e:
                logger.warning(f"Detection failed for repository {index + 1}: {e}")
                detection = MCPDetection(confidence_level="error", error=str(e))
            results.append(DetectedRepository(analysis=analysis, mcp_detection=detection))
            if (index + 1) % 100 == 0:
                logger.info(f"Processed {index + 1}/{len(analyses)} detections")

        logger.info(f"MCP detection complete: processed {len(results)} repositories")
        return results

    def generate_detection_summary(self, results: List[DetectedRepository]) -> Dict[str, Any]:
        levels = {"high": 0, "medium": 0, "low": 0, "minimal": 0, "none": 0}
        classifications: Counter = Counter()
        edge_cases: Counter = Counter()
        mcp_count = 0
        total_confidence = 0.0

        for result in results:
            detection = result.mcp_detection
            if detection.is_mcp:
                mcp_count += 1
            levels[detection.confidence_level] = levels.get(detection.confidence_level, 0) + 1
            if detection.classification:
                classifications[detection.classification] += 1
            edge_cases.update(detection.edge_cases)
            total_confidence += detection.confidence

        total = len(results)
        return {
            "total": total,
            "mcp_repositories": mcp_count,
            "confidence_levels": levels,
            "classifications": dict(classifications),
            "edge_cases": dict(edge_cases),
            "average_confidence": round(total_confidence / total) if total else 0,
            "detection_rate": round(mcp_count / total * 100) if total else 0,
        }

    def filter_by_confidence(
        self, results: List[DetectedRepository], min_confidence: Optional[float] = None
    ) -> List[DetectedRepository]:
        if min_confidence is None:
            min_confidence = self.thresholds["minimum"]
        return [result for result in results if result.mcp_detection.confidence >= min_confidence]

    def get_high_confidence_mcps(self, results: List[DetectedRepository]) -> List[DetectedRepository]:
        return sorted(
            self.filter_by_confidence(results, self.thresholds["high"]),
            key=lambda result: result.mcp_detection.confidence,
            reverse=True,
        )
