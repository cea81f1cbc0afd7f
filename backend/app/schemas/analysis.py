from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class RepositoryRef(BaseModel):
    full_name: str
    name: Optional[str] = None
    owner: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    clone_url: Optional[str] = None
    ssh_url: Optional[str] = None


class RepositoryMetadata(BaseModel):
    stars: int = 0
    forks: int = 0
    watchers: int = 0
    size: int = 0
    language: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    license: Optional[str] = None
    archived: bool = False
    fork: bool = False
    # ISO-8601 strings exactly as GitHub returns them
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    pushed_at: Optional[str] = None


class PackageDetails(BaseModel):
    """Manifest facts from package.json, pyproject.toml or Cargo.toml."""
    name: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    main: Optional[str] = None
    bin: Optional[Any] = None  # str or {command: path}
    scripts: Optional[Dict[str, Any]] = None
    # dict for npm/cargo, list of requirement strings for pyproject
    dependencies: Optional[Any] = None
    dev_dependencies: Optional[Dict[str, Any]] = None


class McpFindings(BaseModel):
    confidence: float = 0
    indicators: List[str] = Field(default_factory=list)
    capabilities: List[str] = Field(default_factory=list)
    server_type: Optional[str] = None
    config_files: List[str] = Field(default_factory=list)
    package_info: Optional[PackageDetails] = None


class FileFindings(BaseModel):
    analyzed: List[str] = Field(default_factory=list)
    mcp_relevant: List[str] = Field(default_factory=list)


class DocumentationFindings(BaseModel):
    has_readme: bool = False
    has_docs: bool = False
    examples: bool = False
    installation: bool = False


class ProjectFindings(BaseModel):
    language: Optional[str] = None
    framework: Optional[str] = None
    mcp_implementation: Optional[str] = None
    installation_method: Optional[str] = None
    dependencies: Dict[str, Any] = Field(default_factory=dict)
    documentation: DocumentationFindings = Field(default_factory=DocumentationFindings)


class RepositoryAnalysis(BaseModel):
    """Everything the analyzer learned about one repository."""
    repository: RepositoryRef
    metadata: RepositoryMetadata = Field(default_factory=RepositoryMetadata)
    mcp: McpFindings = Field(default_factory=McpFindings)
    files: FileFindings = Field(default_factory=FileFindings)
    analysis: ProjectFindings = Field(default_factory=ProjectFindings)
    analyzed_at: Optional[str] = None
    error: Optional[str] = None
