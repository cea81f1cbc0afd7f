import json
from datetime import timedelta

from app.services.repo_analyzer import RepositoryAnalyzer, extract_headings
from app.utils.time_helpers import to_iso, utc_now


def make_repo(**overrides):
    repo = {
        "full_name": "acme/mcp-server-files",
        "name": "mcp-server-files",
        "owner": {"login": "acme"},
        "description": "Filesystem MCP server",
        "html_url": "https://github.com/acme/mcp-server-files",
        "stargazers_count": 0,
        "forks_count": 0,
        "size": 120,
        "language": "TypeScript",
        "topics": ["mcp"],
        "license": {"name": "MIT License"},
        "updated_at": to_iso(utc_now() - timedelta(days=400)),
    }
    repo.update(overrides)
    return repo


def file(name, content):
    return {"name": name, "size": len(content), "content": content, "sha": "sha"}


class TestExtractHeadings:

    def test_atx_and_setext_headings(self):
        markdown = "# Title\n\nText\n\nUsage\n-----\n\n## MCP Server Setup ##\n"
        assert extract_headings(markdown) == ["Title", "Usage", "MCP Server Setup"]

    def test_ignores_fenced_code(self):
        markdown = "```bash\n# not a heading\n```\n# Real"
        assert extract_headings(markdown) == ["Real"]

    def test_ignores_tilde_fences_and_indented_code(self):
        markdown = "~~~\n# mcp server\n~~~\n\n    # also code\n\n## Usage\n"
        assert extract_headings(markdown) == ["Usage"]

    def test_html_headings(self):
        markdown = '<h1 align="center">MCP Server</h1>\n\ntext\n\n## Install\n'
        assert extract_headings(markdown) == ["MCP Server", "Install"]

    def test_inline_markup_is_flattened(self):
        assert extract_headings("# The **MCP** server\n") == ["The MCP server"]


class TestRepositoryAnalyzer:

    def setup_method(self):
        self.analyzer = RepositoryAnalyzer()

    def test_metadata_is_copied_from_payload(self):
        analysis = self.analyzer.analyze_repository(make_repo(stargazers_count=7, archived=True))

        assert analysis.repository.owner == "acme"
        assert analysis.repository.url == "https://github.com/acme/mcp-server-files"
        assert analysis.metadata.stars == 7
        assert analysis.metadata.archived is True
        assert analysis.metadata.license == "MIT License"
        assert analysis.analyzed_at.endswith("Z")

    def test_package_json_with_mcp_dependency(self):
        pkg = {
            "name": "@acme/files",
            "description": "An mcp server for files",
            "bin": {"acme-files": "dist/index.js"},
            "dependencies": {"@anthropic-ai/sdk": "^0.30.0"},
            "devDependencies": {"typescript": "^5.0.0"},
        }
        analysis = self.analyzer.analyze_repository(make_repo(), {"package.json": file("package.json", json.dumps(pkg))})

        # 30 dependency + 15 keyword + 10 executable, then +15 for three indicators
        assert analysis.mcp.confidence == 70
        assert analysis.analysis.language == "typescript"
        assert analysis.analysis.installation_method == "npm"
        assert analysis.mcp.package_info.name == "@acme/files"
        assert "package.json" in analysis.files.analyzed
        assert any(i.startswith("MCP dependencies") for i in analysis.mcp.indicators)

    def test_invalid_package_json_is_skipped(self):
        analysis = self.analyzer.analyze_repository(make_repo(), {"package.json": file("package.json", "{not json")})

        assert analysis.error is None
        assert "package.json" not in analysis.files.analyzed
        assert analysis.mcp.package_info is None

    def test_pyproject_dependencies(self):
        content = '[project]\nname = "weather-mcp"\ndescription = "demo"\ndependencies = ["mcp>=1.0", "httpx"]\n'
        analysis = self.analyzer.analyze_repository(
            make_repo(language="Python"), {"pyproject.toml": file("pyproject.toml", content)}
        )

        assert analysis.analysis.language == "python"
        assert analysis.analysis.installation_method == "pip"
        assert analysis.mcp.package_info.dependencies == ["mcp>=1.0", "httpx"]
        assert analysis.mcp.confidence == 30

    def test_cargo_and_go_mod(self):
        cargo = '[package]\nname = "mcp-rs"\nversion = "0.1.0"\n\n[dependencies]\nmcp-sdk = "0.2"\n'
        analysis = self.analyzer.analyze_repository(make_repo(language=None), {"Cargo.toml": file("Cargo.toml", cargo)})
        assert analysis.analysis.language == "rust"
        assert analysis.analysis.installation_method == "cargo"
        assert analysis.mcp.package_info.version == "0.1.0"
        assert analysis.mcp.confidence == 30

        go_mod = "module github.com/acme/mcp-server\n"
        analysis = self.analyzer.analyze_repository(make_repo(language=None), {"go.mod": file("go.mod", go_mod)})
        assert analysis.analysis.language == "go"
        assert analysis.mcp.confidence == 15

    def test_readme_capabilities_and_documentation(self):
        readme = (
            "# Acme MCP Server\n\nA model context protocol server.\n\n"
            "## Install\n\nnpm install\n\n## Example usage\n\nQuery the SQL database.\n"
        )
        analysis = self.analyzer.analyze_repository(make_repo(), {"README.md": file("README.md", readme)})

        documentation = analysis.analysis.documentation
        assert documentation.has_readme is True
        assert documentation.installation is True
        assert documentation.examples is True
        assert "database" in analysis.mcp.capabilities
        assert any(i.startswith("MCP-related sections") for i in analysis.mcp.indicators)

    def test_readme_sections_come_from_rendered_headings(self):
        readme = '<h1 align="center">Weather MCP Server</h1>\n\n~~~\n# mcp server config\n~~~\n'
        analysis = self.analyzer.analyze_repository(make_repo(), {"README.md": file("README.md", readme)})

        assert "MCP-related sections: 1" in analysis.mcp.indicators

    def test_structure_marks_mcp_files(self):
        structure = [{"name": "server.py"}, {"name": "docs"}, {"name": "claude_desktop_config.json"}, {"name": "src"}]
        analysis = self.analyzer.analyze_repository(make_repo(), {"_structure": structure})

        assert analysis.files.mcp_relevant == ["server.py", "claude_desktop_config.json"]
        assert analysis.analysis.documentation.has_docs is True
        assert analysis.mcp.confidence == 20

    def test_entry_file_server_patterns(self):
        code = "const server = new McpServer(); // model context protocol server"
        analysis = self.analyzer.analyze_repository(make_repo(), {"index.js": file("index.js", code)})

        assert "index.js" in analysis.files.analyzed
        assert any("Server pattern" in i for i in analysis.mcp.indicators)

    def test_confidence_adjustments_and_cap(self):
        analysis = self.analyzer.analyze_repository(make_repo(
            stargazers_count=150,
            forks_count=20,
            updated_at=to_iso(utc_now() - timedelta(days=10)),
        ))
        # recent +10, >50 stars +10, >100 stars +5, >10 forks +5
        assert analysis.mcp.confidence == 30

        old = self.analyzer.analyze_repository(make_repo(updated_at="2019-01-01T00:00:00Z"))
        assert old.mcp.confidence == -10

        analysis.mcp.confidence = 95
        analysis.mcp.indicators = ["a", "b", "c"]
        assert self.analyzer.calculate_mcp_confidence(analysis) == 100

    def test_server_type_priority(self):
        readme = "Reads files from a directory and calls a REST api"
        analysis = self.analyzer.analyze_repository(make_repo(), {"README.md": file("README.md", readme)})
        assert analysis.mcp.server_type == "filesystem"

        empty = self.analyzer.analyze_repository(make_repo())
        assert empty.mcp.server_type == "general"

    def test_language_falls_back_to_metadata(self):
        analysis = self.analyzer.analyze_repository(make_repo(language="Ruby"))
        assert analysis.analysis.language == "ruby"
        assert analysis.analysis.installation_method == "unknown"

    def test_analyze_repositories_and_summary(self):
        items = [
            {"repository": make_repo(full_name="a/one")},
            {"repository": make_repo(full_name="b/two", stargazers_count=200, forks_count=50,
                                     updated_at=to_iso(utc_now()))},
        ]
        analyses = self.analyzer.analyze_repositories(items)
        summary = self.analyzer.generate_summary(analyses)

        assert [a.repository.full_name for a in analyses] == ["a/one", "b/two"]
        assert summary["total"] == 2
        assert summary["successful"] == 2
        assert summary["confidence_distribution"]["none"] == 1
        assert summary["confidence_distribution"]["low"] == 1
        assert summary["languages"] == {"typescript": 2}
