from app.schemas.analysis import (
    DocumentationFindings,
    FileFindings,
    McpFindings,
    PackageDetails,
    ProjectFindings,
    RepositoryAnalysis,
    RepositoryMetadata,
    RepositoryRef,
)
from app.schemas.detection import MCPDetection
from app.services.mcp_detector import MCPDetector
from app.utils.time_helpers import to_iso, utc_now


def make_analysis(full_name="acme/project", description=None, name=None, confidence=0, updated_at=None,
                  size=100, package_info=None, analyzed=None, mcp_relevant=None, documentation=None,
                  archived=False, fork=False):
    return RepositoryAnalysis(
        repository=RepositoryRef(full_name=full_name, name=name or full_name.split("/")[-1], description=description),
        metadata=RepositoryMetadata(
            size=size,
            updated_at=updated_at or to_iso(utc_now()),
            archived=archived,
            fork=fork,
        ),
        mcp=McpFindings(confidence=confidence, package_info=package_info),
        files=FileFindings(analyzed=analyzed or [], mcp_relevant=mcp_relevant or []),
        analysis=ProjectFindings(documentation=documentation or DocumentationFindings()),
    )


class TestMCPDetector:

    def setup_method(self):
        self.detector = MCPDetector()

    def test_official_server_is_definite(self):
        analysis = make_analysis(
            full_name="modelcontextprotocol/mcp-server-github",
            description="Model Context Protocol server for GitHub",
            confidence=50,
            package_info=PackageDetails(name="@modelcontextprotocol/server-github", bin="dist/index.js"),
            analyzed=["package.json"],
            documentation=DocumentationFindings(has_readme=True, installation=True),
        )
        detection = self.detector.detect_mcp(analysis)

        assert detection.is_mcp is True
        assert detection.confidence == 100
        assert detection.confidence_level == "high"
        assert detection.classification == "definite_mcp_server"
        assert "Official MCP package" in detection.reasons
        assert "Multiple strong MCP indicators present" in detection.reasons
        assert "Well-documented with MCP indicators" in detection.reasons

    def test_unrelated_project_is_rejected(self):
        analysis = make_analysis(
            full_name="someone/my-blog",
            description="My personal blog website",
            updated_at="2019-01-01T00:00:00Z",
            size=0,
        )
        detection = self.detector.detect_mcp(analysis)

        assert detection.is_mcp is False
        assert detection.confidence == 0
        assert detection.confidence_level == "none"
        assert detection.classification == "not_mcp_server"
        negative = {i.description for i in detection.indicators.negative}
        assert {"Blog project", "Website project"} <= negative
        characteristics = {i.description for i in detection.indicators.characteristics}
        assert "No recent activity (>2 years)" in characteristics
        assert "Very small repository (<1KB)" in characteristics

    def test_weak_positive_matches_are_capped(self):
        analysis = make_analysis(description="mcp claude anthropic context protocol")
        detection = MCPDetection()

        boost = self.detector._analyze_patterns(analysis, detection)

        # four weak matches at 3 each
        assert boost == 12
        assert len([i for i in detection.indicators.positive if i.type == "weak_positive"]) == 4

    def test_file_negative_indicator(self):
        analysis = make_analysis(analyzed=["index.html"])
        detection = MCPDetection()

        assert self.detector._analyze_files(analysis, detection) == -15
        assert detection.indicators.negative[0].type == "file_negative"

    def test_file_positive_requires_package_info(self):
        with_package = make_analysis(
            analyzed=["package.json"],
            package_info=PackageDetails(dependencies={"@modelcontextprotocol/sdk": "1.0"}),
        )
        detection = MCPDetection()
        assert self.detector._analyze_files(with_package, detection) == 25

        without_package = make_analysis(analyzed=["package.json"])
        assert self.detector._analyze_files(without_package, MCPDetection()) == 0

    def test_characteristics(self):
        analysis = make_analysis(
            package_info=PackageDetails(bin={"srv": "index.js"}),
            mcp_relevant=["claude_desktop_config.json"],
            documentation=DocumentationFindings(installation=True),
            archived=True,
            fork=True,
        )
        checks = {
            "has_server_executable": True,
            "has_config_example": True,
            "has_install_instructions": True,
            "recent_activity": True,
            "has_tests": False,
            "is_archived": True,
            "no_activity": False,
            "is_fork": True,
            "very_small": False,
            "no_description": True,
            "unknown_check": False,
        }
        for check, expected in checks.items():
            assert self.detector.check_characteristic(analysis, check) is expected, check

    def test_example_edge_case_penalty(self):
        analysis = make_analysis(full_name="acme/mcp-example", description="Sample code")
        detection = MCPDetection()

        assert self.detector._handle_edge_cases(analysis, 45, detection) == 25
        assert detection.edge_cases == ["example"]
        assert "Appears to be an example/demo project" in detection.reasons

        # no penalty once confidence reaches 50
        assert self.detector._handle_edge_cases(analysis, 60, MCPDetection()) == 60

    def test_documentation_and_monorepo_edge_cases(self):
        docs = make_analysis(full_name="acme/mcp-docs", description="documentation site")
        detection = MCPDetection()
        assert self.detector._handle_edge_cases(docs, 20, detection) == 0
        assert "documentation" in detection.edge_cases

        monorepo = make_analysis(full_name="acme/tools", description="packages for mcp")
        detection = MCPDetection()
        assert self.detector._handle_edge_cases(monorepo, 40, detection) == 40
        assert detection.edge_cases == ["monorepo"]

    def test_no_indicator_penalty(self):
        analysis = make_analysis()
        detection = MCPDetection()
        assert self.detector._apply_final_adjustments(analysis, 35, detection) == 15
        assert detection.reasons == ["No clear MCP indicators found"]

    def test_thresholds_and_levels(self):
        levels = [(85, "high"), (70, "high"), (55, "medium"), (35, "low"), (12, "minimal"), (5, "none")]
        for confidence, expected in levels:
            assert self.detector.get_confidence_level(confidence) == expected, confidence

        strict = MCPDetector(strict_mode=True)
        assert strict.get_confidence_level(75) == "medium"
        assert strict.classify(15) == "not_mcp_server"
        assert self.detector.classify(15) == "weak_mcp_candidate"
        assert self.detector.classify(55) == "likely_mcp_server"

    def test_batch_detection_summary_and_filters(self):
        strong = make_analysis(
            full_name="acme/mcp-server-files",
            description="Model Context Protocol server",
            confidence=60,
        )
        weak = make_analysis(full_name="acme/blog", description="blog", updated_at="2019-01-01T00:00:00Z")
        results = self.detector.detect_mcp_repositories([weak, strong])
        summary = self.detector.generate_detection_summary(results)

        assert len(results) == 2
        assert summary["total"] == 2
        assert summary["mcp_repositories"] == 1
        assert summary["detection_rate"] == 50

        high = self.detector.get_high_confidence_mcps(results)
        assert [r.analysis.repository.full_name for r in high] == ["acme/mcp-server-files"]
        assert len(self.detector.filter_by_confidence(results, 0)) == 2
