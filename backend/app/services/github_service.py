import asyncio
import base64
import json
import logging
import random
import re
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
import redis.asyncio as redis
from redis.exceptions import RedisError

from app.core.config import settings
from app.utils.time_helpers import to_iso, utc_now

logger = logging.getLogger(__name__)

# GitHub API constants
GITHUB_API_BASE = "https://api.github.com"
USER_AGENT = "MCP-7-Discovery/3.0"
DEFAULT_TIMEOUT_SECONDS = 10.0
CACHE_TTL_SECONDS = 3600  # 1 hour
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
PER_PAGE = 100  # GitHub max
SEARCH_RESULT_CAP = 1000  # GitHub never returns more than this per query
PATTERN_PAUSE_SECONDS = 0.5

# Queries used to find MCP repositories
SEARCH_PATTERNS = [
    "mcp-server",
    "model-context-protocol",
    "claude-mcp",
    "anthropic-mcp",
    "mcp-",
    '"mcp server"',
    "context-protocol",
    "claude-desktop",
    "claude_desktop_config",
]

# Files fetched from each repository for analysis
KEY_FILES = [
    "package.json",
    "README.md",
    "pyproject.toml",
    "setup.py",
    "Cargo.toml",
    "go.mod",
    "server.js",
    "main.js",
    "index.js",
    "__main__.py",
    "main.py",
]

# GitHub URL patterns
GITHUB_URL_PATTERNS = [
    re.compile(r"^https?://github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$"),
    re.compile(r"^git@github\.com:([^/]+)/([^/]+?)(?:\.git)?$"),
    re.compile(r"^https?://www\.github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$"),
]


class GitHubRateLimitError(Exception):
    """Raised when the GitHub API refuses a request because the quota is spent."""


class GitHubService:
    """
    Service for scanning GitHub for MCP server repositories.

    Features:
    - Multi-pattern repository search with de-duplication
    - Key file and root listing retrieval for analysis
    - Repository details cached in Redis when available
    - Exponential backoff for transient failures
    - Bounded-concurrency batch processing
    """

    def __init__(self, token: Optional[str] = None):
        self.token = token if token is not None else settings.GITHUB_TOKEN
        self._client: Optional[httpx.AsyncClient] = None
        self._redis_client: Optional[redis.Redis] = None
        self._redis_checked = False
        self._redis_lock = asyncio.Lock()

        if not self.token:
            logger.warning("No GitHub token configured. Rate limits will be severe (60 requests/hour)")

    async def _get_redis_client(self) -> Optional[redis.Redis]:
        """
        Return the shared Redis client, connecting on first use.

        A failed ping is remembered: the cache stays off until close() is
        called rather than reconnecting for every repository.
        """
        async with self._redis_lock:
            if not self._redis_checked:
                self._redis_checked = True
                client = redis.from_url(
                    settings.REDIS_URL,
                    decode_responses=True,
                    socket_timeout=5.0,
                    socket_connect_timeout=5.0,
                )
                try:
                    await client.ping()
                except (RedisError, OSError) as e:
                    logger.warning(f"Redis connection failed: {e}. Proceeding without cache.")
                    await client.aclose()
                else:
                    self._redis_client = client
                    logger.info("Redis connection established")

        return self._redis_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": USER_AGENT,
            }
            if self.token:
                headers["Authorization"] = f"token {self.token}"
            self._client = httpx.AsyncClient(
                base_url=GITHUB_API_BASE,
                headers=headers,
                timeout=httpx.Timeout(DEFAULT_TIMEOUT_SECONDS),
            )
        return self._client

    async def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """
        GET a GitHub API path with retry logic.

        404 responses are returned to the caller. An exhausted quota raises
        GitHubRateLimitError. Other client errors raise immediately; timeouts
        and server errors are retried with exponential backoff and re-raised
        once retries run out.
        """
        client = self._get_client()
        last_error: Optional[Exception] = None

        for attempt in range(MAX_RETRIES):
            try:
                response = await client.get(path, params=params)

                # Handle rate limiting
                if response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
                    reset_time = response.headers.get("X-RateLimit-Reset")
                    if reset_time:
                        reset_datetime = datetime.fromtimestamp(int(reset_time))
                        raise GitHubRateLimitError(f"GitHub API rate limit exceeded. Resets at {reset_datetime}")
                    raise GitHubRateLimitError("GitHub API rate limit exceeded")

                if response.status_code == 404:
                    return response

                response.raise_for_status()
                return response

            except httpx.TimeoutException as e:
                last_error = e
                logger.warning(f"Timeout fetching {path} (attempt {attempt + 1})")
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    # Don't retry client errors
                    raise
                last_error = e
                logger.warning(f"HTTP error fetching {path}: {e} (attempt {attempt + 1})")
            except httpx.TransportError as e:
                last_error = e
                logger.warning(f"Transport error fetching {path}: {e} (attempt {attempt + 1})")

            # Exponential backoff for retries
            if attempt < MAX_RETRIES - 1:
                wait_time = BACKOFF_FACTOR ** attempt
                logger.debug(f"Retrying in {wait_time} seconds...")
                await asyncio.sleep(wait_time)

        logger.error(f"Failed to fetch {path} after {MAX_RETRIES} attempts")
        raise last_error

    def parse_github_url(self, url: str) -> Optional[Tuple[str, str]]:
        """
        Parse GitHub repository URL to extract owner and repository name.

        Supports various GitHub URL formats:
        - https://github.com/owner/repo
        - https://github.com/owner/repo.git
        - git@github.com:owner/repo.git
        - https://www.github.com/owner/repo

        Returns:
            Tuple of (owner, repo) if valid GitHub URL, None otherwise
        """
        if not url or not isinstance(url, str):
            return None

        url = url.strip()
        if not url:
            return None

        for pattern in GITHUB_URL_PATTERNS:
            match = pattern.match(url)
            if match:
                owner, repo = match.groups()
                if repo.endswith('.git'):
                    repo = repo[:-4]
                return owner, repo

        return None

    def format_star_count(self, count: int) -> str:
        """
        Format star count for display with appropriate suffixes.

        Examples:
        - 42 -> "42"
        - 1234 -> "1.2k"
        - 5678901 -> "5.7M"
        """
        if count < 1000:
            return str(count)
        elif count < 1000000:
            return f"{count / 1000:.1f}k"
        else:
            return f"{count / 1000000:.1f}M"

    def build_search_query(
        self,
        pattern: str,
        include_archived: bool = False,
        min_stars: int = 0,
        language: Optional[str] = None,
    ) -> str:
        query = pattern
        if not include_archived:
            query += " archived:false"
        if min_stars > 0:
            query += f" stars:>={min_stars}"
        if language:
            query += f" language:{language}"
        # Repositories only, not code
        query += " in:name,description,readme"
        return query

    async def search_mcp_repositories(
        self,
        max_results: int = 5000,
        include_archived: bool = False,
        min_stars: int = 0,
        language: Optional[str] = None,
        sort: str = "updated",
    ) -> Dict[str, Any]:
        """
        Run every search pattern and collect unique repositories.

        Returns:
            {"repositories": [...], "stats": {patterns_searched, total_results,
            unique_repositories, duplicates_filtered}}
        """
        logger.info("Starting MCP repository discovery")
        unique: Dict[str, Dict[str, Any]] = {}
        total_searched = 0

        for pattern in SEARCH_PATTERNS:
            if len(unique) >= max_results:
                break

            logger.info(f"Searching pattern: {pattern}")
            repos = await self.search_by_pattern(
                pattern,
                max_results=min(SEARCH_RESULT_CAP, max_results - len(unique)),
                include_archived=include_archived,
                min_stars=min_stars,
                language=language,
                sort=sort,
            )

            for repo in repos:
                unique.setdefault(repo["full_name"], repo)

            total_searched += len(repos)
            logger.info(f"Found {len(repos)} repositories ({len(unique)} unique total)")

            await asyncio.sleep(PATTERN_PAUSE_SECONDS)

        repositories = list(unique.values())
        logger.info(
            f"Discovery complete: {len(repositories)} unique repositories from {total_searched} results"
        )

        return {
            "repositories": repositories,
            "stats": {
                "patterns_searched": len(SEARCH_PATTERNS),
                "total_results": total_searched,
                "unique_repositories": len(repositories),
                "duplicates_filtered": total_searched - len(repositories),
            },
        }

    async def search_by_pattern(
        self,
        pattern: str,
        max_results: int = SEARCH_RESULT_CAP,
        include_archived: bool = False,
        min_stars: int = 0,
        language: Optional[str] = None,
        sort: str = "updated",
    ) -> List[Dict[str, Any]]:
        """Page through search results for one pattern."""
        repositories: List[Dict[str, Any]] = []
        query = self.build_search_query(pattern, include_archived, min_stars, language)
        page = 1

        while len(repositories) < max_results:
            logger.debug(f"Query: {query} (page {page})")
            try:
                response = await self._request(
                    "/search/repositories",
                    params={"q": query, "sort": sort, "order": "desc", "per_page": PER_PAGE, "page": page},
                )
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 403:
                    raise GitHubRateLimitError(
                        "GitHub API rate limit exceeded. Please wait or provide an authentication token."
                    ) from e
                raise

            if response.status_code == 404:
                break
            items = response.json().get("items", [])
            if not items:
                break

            discovered_at = to_iso(utc_now())
            for item in items:
                item["search_pattern"] = pattern
                item["discovered_at"] = discovered_at
            repositories.extend(items)

            if len(items) < PER_PAGE or page * PER_PAGE >= SEARCH_RESULT_CAP:
                break
            page += 1

        return repositories[:max_results]

    async def get_repository_details(self, owner: str, repo: str) -> Optional[Dict[str, Any]]:
        """
        Get repository info, key file contents, releases and topics.

        Returns:
            {"repository", "contents", "releases", "topics", "enhanced_at"} or
            None when the repository itself cannot be fetched
        """
        cache_key = f"github:details:{owner}/{repo}"

        redis_client = await self._get_redis_client()
        if redis_client:
            try:
                cached = await redis_client.get(cache_key)
                if cached is not None:
                    logger.debug(f"Cache hit for {owner}/{repo}")
                    return json.loads(cached)
            except (RedisError, ValueError) as e:
                logger.warning(f"Cache read error for {owner}/{repo}: {e}")

        details = await self._fetch_repository_details(owner, repo)

        if details is not None and redis_client:
            try:
                await redis_client.setex(cache_key, CACHE_TTL_SECONDS, json.dumps(details))
                logger.debug(f"Cached details for {owner}/{repo}")
            except RedisError as e:
                logger.warning(f"Cache write error for {owner}/{repo}: {e}")

        return details

    async def _fetch_repository_details(self, owner: str, repo: str) -> Optional[Dict[str, Any]]:
        results = await asyncio.gather(
            self._request(f"/repos/{owner}/{repo}"),
            self.get_repository_contents(owner, repo),
            self._list_releases(owner, repo),
            self._get_topics(owner, repo),
            return_exceptions=True,
        )
        repo_response, contents, releases, topics = results

        if isinstance(repo_response, BaseException):
            logger.warning(f"Failed to get details for {owner}/{repo}: {repo_response}")
            return None
        if repo_response.status_code == 404:
            logger.info(f"Repository {owner}/{repo} not found or private")
            return None
        if isinstance(contents, BaseException):
            logger.warning(f"Failed to get contents for {owner}/{repo}: {contents}")
            contents = {}

        return {
            "repository": repo_response.json(),
            "contents": contents,
            "releases": releases if not isinstance(releases, BaseException) else [],
            "topics": topics if not isinstance(topics, BaseException) else [],
            "enhanced_at": to_iso(utc_now()),
        }

    async def _list_releases(self, owner: str, repo: str) -> List[Dict[str, Any]]:
        try:
            response = await self._request(f"/repos/{owner}/{repo}/releases", params={"per_page": 5})
        except (httpx.HTTPError, GitHubRateLimitError) as e:
            logger.debug(f"No releases for {owner}/{repo}: {e}")
            return []
        if response.status_code == 404:
            return []
        return response.json()

    async def _get_topics(self, owner: str, repo: str) -> List[str]:
        try:
            response = await self._request(f"/repos/{owner}/{repo}/topics")
        except (httpx.HTTPError, GitHubRateLimitError) as e:
            logger.debug(f"No topics for {owner}/{repo}: {e}")
            return []
        if response.status_code == 404:
            return []
        return response.json().get("names", [])

    async def _get_file(self, owner: str, repo: str, filename: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self._request(f"/repos/{owner}/{repo}/contents/{filename}")
        except (httpx.HTTPError, GitHubRateLimitError) as e:
            logger.warning(f"Failed to fetch {filename} from {owner}/{repo}: {e}")
            return None

        if response.status_code == 404:
            return None
        data = response.json()
        if not isinstance(data, dict) or data.get("type") != "file":
            return None

        content = None
        if data.get("content"):
            content = base64.b64decode(data["content"]).decode("utf-8", errors="replace")

        return {
            "name": filename,
            "size": data.get("size", 0),
            "content": content,
            "sha": data.get("sha"),
        }

    async def get_repository_contents(self, owner: str, repo: str) -> Dict[str, Any]:
        """
        Fetch the key files plus a root listing under "_structure".

        Missing files are simply absent from the result.
        """
        files = await asyncio.gather(*(self._get_file(owner, repo, name) for name in KEY_FILES))
        contents: Dict[str, Any] = {name: file for name, file in zip(KEY_FILES, files) if file is not None}

        try:
            response = await self._request(f"/repos/{owner}/{repo}/contents/")
            if response.status_code != 404:
                contents["_structure"] = [
                    {"name": item.get("name"), "type": item.get("type"), "size": item.get("size") or 0}
                    for item in response.json()
                ]
        except (httpx.HTTPError, GitHubRateLimitError) as e:
            logger.warning(f"Failed to get directory structure for {owner}/{repo}: {e}")

        return contents

    async def search_by_file_content(
        self, filename: str, content: str, max_results: int = 100
    ) -> List[Dict[str, Any]]:
        """Code search for repositories containing a file with the given content."""
        try:
            response = await self._request(
                "/search/code",
                params={"q": f"filename:{filename} {content}", "per_page": min(max_results, PER_PAGE)},
            )
        except (httpx.HTTPError, GitHubRateLimitError) as e:
            logger.warning(f"File content search failed: {e}")
            return []

        if response.status_code == 404:
            return []

        return [
            {
                "repository": item.get("repository"),
                "file": {
                    "name": item.get("name"),
                    "path": item.get("path"),
                    "sha": item.get("sha"),
                    "url": item.get("html_url"),
                },
                "score": item.get("score"),
            }
            for item in response.json().get("items", [])
        ]

    async def get_rate_limit_status(self) -> Optional[Dict[str, Any]]:
        """Current core/search/graphql quotas, or None if unavailable."""
        try:
            response = await self._request("/rate_limit")
            resources = response.json().get("resources", {})
        except (httpx.HTTPError, GitHubRateLimitError, ValueError) as e:
            logger.warning(f"Failed to get rate limit status: {e}")
            return None

        return {
            "core": resources.get("core"),
            "search": resources.get("search"),
            "graphql": resources.get("graphql"),
        }

    async def process_repositories(
        self,
        repositories: List[Dict[str, Any]],
        processor: Callable[[Dict[str, Any], int], Awaitable[Any]],
        concurrency: int = 10,
        delay: float = 0.1,
    ) -> List[Any]:
        """
        Run processor(repo, index) over repositories with bounded concurrency.

        Each call waits a random fraction of delay first to spread requests.
        None results and failures are dropped from the output.
        """
        semaphore = asyncio.Semaphore(concurrency)
        total = len(repositories)
        logger.info(f"Processing {total} repositories with {concurrency} concurrent operations")

        async def run(repo: Dict[str, Any], index: int) -> Any:
            async with semaphore:
                try:
                    if delay > 0:
                        await asyncio.sleep(delay * random.random())
                    result = await processor(repo, index)
                    if index % 50 == 0:
                        logger.debug(f"Processed {index + 1}/{total} repositories")
                    return result
                except Exception as e:
                    logger.warning(f"Failed to process repository {repo.get('full_name')}: {e}")
                    return None

        results = await asyncio.gather(*(run(repo, i) for i, repo in enumerate(repositories)))
        return [result for result in results if result is not None]

    async def close(self):
        """Close the HTTP client and the Redis connection if open."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._redis_client:
            try:
                await self._redis_client.aclose()
                logger.debug("Redis connection closed")
            except RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
            finally:
                self._redis_client = None
        self._redis_checked = False


# Global service instance
_github_service: Optional[GitHubService] = None


def get_github_service() -> GitHubService:
    """Get the global GitHub service instance."""
    global _github_service
    if _github_service is None:
        _github_service = GitHubService()
    return _github_service
