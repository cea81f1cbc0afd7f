import json
import logging
import re
import tomllib
from collections import Counter
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup
from markdown_it import MarkdownIt

from app.schemas.analysis import (
    PackageDetails,
    RepositoryAnalysis,
    RepositoryMetadata,
    RepositoryRef,
)
from app.utils.time_helpers import age_in_days, to_iso, utc_now

logger = logging.getLogger(__name__)

MCP_KEYWORDS = [
    "mcp-server",
    "model-context-protocol",
    "claude-mcp",
    "anthropic-mcp",
    "claude-desktop",
    "claude_desktop_config",
    "context-protocol",
    "mcp server",
    "model context protocol",
    "anthropic claude",
]

CAPABILITY_PATTERNS = {
    "filesystem": re.compile(r"file|directory|path|read|write|list|delete|create", re.IGNORECASE),
    "database": re.compile(r"sql|database|db|query|table|insert|select|update", re.IGNORECASE),
    "api": re.compile(r"api|http|request|endpoint|rest|graphql|webhook", re.IGNORECASE),
    "ai": re.compile(r"ai|ml|model|openai|anthropic|llm|gpt|claude", re.IGNORECASE),
    "tools": re.compile(r"tool|function|command|execute|run|script", re.IGNORECASE),
    "data": re.compile(r"json|csv|xml|yaml|parse|transform|convert", re.IGNORECASE),
    "web": re.compile(r"web|browser|scrape|html|dom|selenium|playwright", re.IGNORECASE),
    "git": re.compile(r"git|github|repository|commit|branch|pull|push", re.IGNORECASE),
    "time": re.compile(r"time|date|calendar|schedule|cron|timer", re.IGNORECASE),
    "math": re.compile(r"math|calculate|compute|formula|statistics", re.IGNORECASE),
    "search": re.compile(r"search|index|elasticsearch|solr|lucene", re.IGNORECASE),
    "monitoring": re.compile(r"monitor|log|metric|alert|dashboard|observability", re.IGNORECASE),
}

SERVER_PATTERNS = [
    re.compile(r"mcp.*server"),
    re.compile(r"server.*mcp"),
    re.compile(r"context.*protocol"),
    re.compile(r"claude.*server"),
    re.compile(r"anthropic.*mcp"),
]

ENTRY_FILES = ["server.js", "main.js", "index.js", "main.py", "__main__.py"]
MCP_STRUCTURE_FILES = {"server.js", "server.py", "claude_desktop_config.json"}

INSTALLATION_METHODS = {
    "javascript": "npm",
    "typescript": "npm",
    "python": "pip",
    "rust": "cargo",
    "go": "go install",
}

# Checked in order; the first capability present decides the server type
SERVER_TYPE_PRIORITY = ["filesystem", "database", "api", "ai", "web", "tools"]

_markdown = MarkdownIt("commonmark")
HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]


def extract_headings(markdown: str) -> List[str]:
    """
    Return the text of every heading in a README.

    The markdown is rendered first, so headings written as raw HTML
    (`<h1 align="center">`) count and lines inside code blocks do not.
    """
    soup = BeautifulSoup(_markdown.render(markdown), "html.parser")
    return [tag.get_text(" ", strip=True) for tag in soup.find_all(HEADING_TAGS)]


def _is_mcp_dependency(name: str, include_context_protocol: bool = False) -> bool:
    name = name.lower()
    if "mcp" in name or "claude" in name or "anthropic" in name:
        return True
    return include_context_protocol and "context-protocol" in name


class RepositoryAnalyzer:
    """
    Scores how likely a repository is to be an MCP server from its metadata
    and the key files fetched by the GitHub scanner.
    """

    def analyze_repository(self, repository: Dict[str, Any], contents: Optional[Dict[str, Any]] = None) -> RepositoryAnalysis:
        """
        Analyze one repository.

        Args:
            repository: GitHub repository payload
            contents: {filename: {name, size, content, sha}} plus optional "_structure"

        Never raises for bad content: unparseable files are logged and skipped,
        and an unexpected failure is recorded in ``error``.
        """
        contents = contents or {}
        analysis = self._new_analysis(repository)

        try:
            if contents.get("package.json"):
                self._analyze_package_json(contents["package.json"], analysis)
            if contents.get("pyproject.toml"):
                self._analyze_pyproject(contents["pyproject.toml"], analysis)
            if contents.get("setup.py"):
                self._analyze_setup_py(contents["setup.py"], analysis)
            if contents.get("Cargo.toml"):
                self._analyze_cargo_toml(contents["Cargo.toml"], analysis)
            if contents.get("go.mod"):
                self._analyze_go_mod(contents["go.mod"], analysis)
            if contents.get("README.md"):
                self._analyze_readme(contents["README.md"], analysis)
            if contents.get("_structure"):
                self._analyze_structure(contents["_structure"], analysis)
            for filename in ENTRY_FILES:
                if contents.get(filename):
                    self._analyze_entry_file(contents[filename], analysis)

            self.calculate_mcp_confidence(analysis)
            self._determine_language(analysis)
            self._classify_server_type(analysis)

        except Exception as e:
            logger.warning(f"Analysis failed for {analysis.repository.full_name}: {e}")
            analysis.error = str(e)

        return analysis

    def _new_analysis(self, repository: Dict[str, Any]) -> RepositoryAnalysis:
        owner = repository.get("owner") or {}
        license_info = repository.get("license") or {}
        return RepositoryAnalysis(
            repository=RepositoryRef(
                full_name=repository.get("full_name", ""),
                name=repository.get("name"),
                owner=owner.get("login") if isinstance(owner, dict) else owner,
                description=repository.get("description"),
                url=repository.get("html_url"),
                clone_url=repository.get("clone_url"),
                ssh_url=repository.get("ssh_url"),
            ),
            metadata=RepositoryMetadata(
                stars=repository.get("stargazers_count") or 0,
                forks=repository.get("forks_count") or 0,
                watchers=repository.get("watchers_count") or 0,
                size=repository.get("size") or 0,
                language=repository.get("language"),
                topics=repository.get("topics") or [],
                license=license_info.get("name") if isinstance(license_info, dict) else None,
                archived=bool(repository.get("archived")),
                fork=bool(repository.get("fork")),
                created_at=repository.get("created_at"),
                updated_at=repository.get("updated_at"),
                pushed_at=repository.get("pushed_at"),
            ),
            analyzed_at=to_iso(utc_now()),
        )

    def _count_keywords(self, text: str) -> List[str]:
        text = text.lower()
        return [keyword for keyword in MCP_KEYWORDS if keyword in text]

    def _analyze_package_json(self, file: Dict[str, Any], analysis: RepositoryAnalysis) -> None:
        try:
            pkg = json.loads(file.get("content") or "")
        except ValueError as e:
            logger.warning(f"Failed to parse package.json: {e}")
            return
        if not isinstance(pkg, dict):
            logger.warning("Failed to parse package.json: not an object")
            return

        analysis.files.analyzed.append("package.json")
        dependencies = pkg.get("dependencies") or {}
        dev_dependencies = pkg.get("devDependencies") or {}

        analysis.mcp.package_info = PackageDetails(
            name=pkg.get("name"),
            version=pkg.get("version"),
            description=pkg.get("description"),
            main=pkg.get("main"),
            bin=pkg.get("bin"),
            scripts=pkg.get("scripts"),
            dependencies=dependencies,
            dev_dependencies=dev_dependencies,
        )
        analysis.analysis.language = "javascript"
        analysis.analysis.dependencies = dependencies

        all_deps = {**dependencies, **dev_dependencies}
        mcp_deps = [dep for dep in all_deps if _is_mcp_dependency(dep, include_context_protocol=True)]
        if mcp_deps:
            analysis.mcp.indicators.append(f"MCP dependencies: {', '.join(mcp_deps)}")
            analysis.mcp.confidence += 30

        for keyword in self._count_keywords(f"{pkg.get('name') or ''} {pkg.get('description') or ''}"):
            analysis.mcp.indicators.append(f"Package references: {keyword}")
            analysis.mcp.confidence += 15

        scripts = pkg.get("scripts") or {}
        if pkg.get("bin") or (isinstance(scripts, dict) and scripts.get("start")):
            analysis.mcp.indicators.append("Executable/server characteristics")
            analysis.mcp.confidence += 10

        for framework in ("express", "fastify", "koa"):
            if framework in all_deps:
                analysis.analysis.framework = framework
                break

        if "typescript" in all_deps or "@types/node" in all_deps:
            analysis.analysis.language = "typescript"

    def _analyze_pyproject(self, file: Dict[str, Any], analysis: RepositoryAnalysis) -> None:
        try:
            config = tomllib.loads(file.get("content") or "")
        except tomllib.TOMLDecodeError as e:
            logger.warning(f"Failed to parse pyproject.toml: {e}")
            return

        analysis.files.analyzed.append("pyproject.toml")
        analysis.analysis.language = "python"

        project = config.get("project") or {}
        dependencies = [str(dep) for dep in project.get("dependencies") or []]
        analysis.mcp.package_info = PackageDetails(
            name=project.get("name"),
            version=project.get("version"),
            description=project.get("description"),
            dependencies=dependencies,
        )

        mcp_deps = [dep for dep in dependencies if _is_mcp_dependency(dep)]
        if mcp_deps:
            analysis.mcp.indicators.append(f"MCP dependencies: {', '.join(mcp_deps)}")
            analysis.mcp.confidence += 30

        for keyword in self._count_keywords(f"{project.get('name') or ''} {project.get('description') or ''}"):
            analysis.mcp.indicators.append(f"Project references: {keyword}")
            analysis.mcp.confidence += 15

    def _analyze_setup_py(self, file: Dict[str, Any], analysis: RepositoryAnalysis) -> None:
        analysis.files.analyzed.append("setup.py")
        analysis.analysis.language = "python"
        content = (file.get("content") or "").lower()

        for keyword in self._count_keywords(content):
            analysis.mcp.indicators.append(f"Setup.py references: {keyword}")
            analysis.mcp.confidence += 10

        if "entry_points" in content or "console_scripts" in content:
            analysis.mcp.indicators.append("Console script entry points")
            analysis.mcp.confidence += 10

    def _analyze_cargo_toml(self, file: Dict[str, Any], analysis: RepositoryAnalysis) -> None:
        try:
            config = tomllib.loads(file.get("content") or "")
        except tomllib.TOMLDecodeError as e:
            logger.warning(f"Failed to parse Cargo.toml: {e}")
            return

        analysis.files.analyzed.append("Cargo.toml")
        analysis.analysis.language = "rust"

        package = config.get("package") or {}
        analysis.mcp.package_info = PackageDetails(
            name=package.get("name"),
            version=str(package["version"]) if "version" in package else None,
            description=package.get("description"),
        )

        mcp_deps = [dep for dep in (config.get("dependencies") or {}) if _is_mcp_dependency(dep)]
        if mcp_deps:
            analysis.mcp.indicators.append(f"Rust MCP dependencies: {', '.join(mcp_deps)}")
            analysis.mcp.confidence += 30

    def _analyze_go_mod(self, file: Dict[str, Any], analysis: RepositoryAnalysis) -> None:
        analysis.files.analyzed.append("go.mod")
        analysis.analysis.language = "go"

        for keyword in self._count_keywords(file.get("content") or ""):
            analysis.mcp.indicators.append(f"Go module references: {keyword}")
            analysis.mcp.confidence += 15

    def _analyze_readme(self, file: Dict[str, Any], analysis: RepositoryAnalysis) -> None:
        raw = file.get("content") or ""
        content = raw.lower()
        documentation = analysis.analysis.documentation

        analysis.files.analyzed.append("README.md")
        documentation.has_readme = True

        for keyword in self._count_keywords(content):
            analysis.mcp.indicators.append(f"README mentions: {keyword}")
            analysis.mcp.confidence += 10

        for capability, pattern in CAPABILITY_PATTERNS.items():
            if pattern.search(content) and capability not in analysis.mcp.capabilities:
                analysis.mcp.capabilities.append(capability)

        if "install" in content or "setup" in content:
            documentation.installation = True
        if "example" in content or "usage" in content:
            documentation.examples = True

        mcp_sections = [
            heading for heading in extract_headings(raw)
            if any(keyword in heading.lower() for keyword in MCP_KEYWORDS)
        ]
        if mcp_sections:
            analysis.mcp.indicators.append(f"MCP-related sections: {len(mcp_sections)}")
            analysis.mcp.confidence += len(mcp_sections) * 5

    def _analyze_structure(self, structure: List[Dict[str, Any]], analysis: RepositoryAnalysis) -> None:
        analysis.files.analyzed.append("_structure")
        names = [str(item.get("name") or "").lower() for item in structure]

        mcp_files = [
            name for name in names
            if "mcp" in name or "claude" in name or name in MCP_STRUCTURE_FILES
        ]
        if mcp_files:
            analysis.mcp.indicators.append(f"MCP-related files: {', '.join(mcp_files)}")
            analysis.mcp.confidence += len(mcp_files) * 10
            analysis.files.mcp_relevant = mcp_files

        if "docs" in names or "documentation" in names:
            analysis.analysis.documentation.has_docs = True
        if "examples" in names or "example" in names:
            analysis.analysis.documentation.examples = True

    def _analyze_entry_file(self, file: Dict[str, Any], analysis: RepositoryAnalysis) -> None:
        name = file.get("name", "")
        content = (file.get("content") or "").lower()
        analysis.files.analyzed.append(name)

        for index, pattern in enumerate(SERVER_PATTERNS, start=1):
            if pattern.search(content):
                analysis.mcp.indicators.append(f"Server pattern {index} in {name}")
                analysis.mcp.confidence += 20

        for capability, pattern in CAPABILITY_PATTERNS.items():
            if pattern.search(content) and capability not in analysis.mcp.capabilities:
                analysis.mcp.capabilities.append(capability)

    def calculate_mcp_confidence(self, analysis: RepositoryAnalysis) -> float:
        """Apply the whole-repository adjustments on top of the per-file score (capped at 100)."""
        confidence = analysis.mcp.confidence

        if len(analysis.mcp.indicators) >= 3:
            confidence += 15

        confidence += len(analysis.mcp.capabilities) * 5

        documentation = analysis.analysis.documentation
        if documentation.has_readme and documentation.installation:
            confidence += 10

        # Months approximated as 30 days
        months_old = age_in_days(analysis.metadata.updated_at) / 30
        if months_old < 6:
            confidence += 10
        elif months_old > 24:
            confidence -= 10

        if analysis.metadata.stars > 50:
            confidence += 10
        if analysis.metadata.stars > 100:
            confidence += 5
        if analysis.metadata.forks > 10:
            confidence += 5

        analysis.mcp.confidence = min(confidence, 100)
        return analysis.mcp.confidence

    def _determine_language(self, analysis: RepositoryAnalysis) -> None:
        if not analysis.analysis.language and analysis.metadata.language:
            analysis.analysis.language = analysis.metadata.language.lower()
        analysis.analysis.installation_method = INSTALLATION_METHODS.get(analysis.analysis.language, "unknown")

    def _classify_server_type(self, analysis: RepositoryAnalysis) -> None:
        capabilities = analysis.mcp.capabilities
        analysis.mcp.server_type = next(
            (capability for capability in SERVER_TYPE_PRIORITY if capability in capabilities),
            "general",
        )

    def analyze_repositories(self, items: List[Dict[str, Any]]) -> List[RepositoryAnalysis]:
        """
        Analyze a batch of {"repository": ..., "contents": ...} items.

        Items that fail outright are kept in the output with ``error`` set.
        """
        logger.info(f"Analyzing {len(items)} repositories")
        results: List[RepositoryAnalysis] = []
        for index, item in enumerate(items):
            repository = item.get("repository") or {}
            try:
                results.append(self.analyze_repository(repository, item.get("contents")))
            except Exception as e:
                logger.warning(f"Failed to analyze {repository.get('full_name')}: {e}")
                results.append(RepositoryAnalysis(
                    repository=RepositoryRef(full_name=repository.get("full_name", "")),
                    error=str(e),
                ))
            if (index + 1) % 50 == 0:
                logger.info(f"Analyzed {index + 1}/{len(items)} repositories")
        return results

    def generate_summary(self, analyses: List[RepositoryAnalysis]) -> Dict[str, Any]:
        """Aggregate counts and distributions over a batch of analyses."""
        successful = [a for a in analyses if not a.error]
        languages: Counter = Counter()
        capabilities: Counter = Counter()
        server_types: Counter = Counter()
        bands = {"high": 0, "medium": 0, "low": 0, "none": 0}
        total_confidence = 0.0

        for analysis in successful:
            confidence = analysis.mcp.confidence
            total_confidence += confidence
            if analysis.analysis.language:
                languages[analysis.analysis.language] += 1
            capabilities.update(analysis.mcp.capabilities)
            if analysis.mcp.server_type:
                server_types[analysis.mcp.server_type] += 1

            if confidence >= 70:
                bands["high"] += 1
            elif confidence >= 40:
                bands["medium"] += 1
            elif confidence > 0:
                bands["low"] += 1
            else:
                bands["none"] += 1

        return {
            "total": len(analyses),
            "successful": len(successful),
            "failed": len(analyses) - len(successful),
            "languages": dict(languages),
            "confidence_distribution": bands,
            "capabilities": dict(capabilities),
            "server_types": dict(server_types),
            "average_confidence": round(total_confidence / len(successful)) if successful else 0,
        }
