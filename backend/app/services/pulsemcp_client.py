import asyncio
import logging
import random
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx
from aiolimiter import AsyncLimiter

from app.core.config import settings
from app.utils.time_helpers import to_iso, utc_now

logger = logging.getLogger(__name__)

USER_AGENT = "MCP-7-Discovery/3.0"
DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RATE_LIMIT_WINDOW_SECONDS = 60.0
FETCH_PAUSE_EVERY = 1000
FETCH_PAUSE_SECONDS = 2.0

MOCK_SERVER_COUNT = 5670
MOCK_SEED = 7

MOCK_CATEGORIES = [
    {"id": "development", "name": "Development Tools", "count": 1247},
    {"id": "productivity", "name": "Productivity", "count": 892},
    {"id": "data", "name": "Data & Analytics", "count": 734},
    {"id": "communication", "name": "Communication", "count": 621},
    {"id": "ai-ml", "name": "AI & Machine Learning", "count": 589},
    {"id": "automation", "name": "Automation", "count": 456},
    {"id": "content", "name": "Content Management", "count": 387},
    {"id": "integration", "name": "Integration", "count": 344},
]

MOCK_CAPABILITIES = [
    "file-system",
    "web-search",
    "database",
    "api-integration",
    "code-generation",
    "task-automation",
    "data-analysis",
    "content-creation",
]

MOCK_LANGUAGES = ["JavaScript", "Python", "TypeScript", "Go", "Rust", "Java", "C++", "Ruby"]


def generate_mock_servers(count: int = MOCK_SERVER_COUNT, seed: int = MOCK_SEED) -> List[Dict[str, Any]]:
    """Build a deterministic stand-in for the PulseMCP directory."""
    rng = random.Random(seed)
    now = utc_now()
    servers = []

    for i in range(1, count + 1):
        category = MOCK_CATEGORIES[rng.randrange(len(MOCK_CATEGORIES))]
        capabilities: List[str] = []
        for _ in range(rng.randint(1, 4)):
            capability = rng.choice(MOCK_CAPABILITIES)
            if capability not in capabilities:
                capabilities.append(capability)

        language = rng.choice(MOCK_LANGUAGES)
        method = "pip" if language == "Python" else "npm"
        name = f"mcp-server-{i}"
        command = f"pip install {name}" if method == "pip" else f"npm install -g {name}"

        servers.append({
            "id": f"pulsemcp-{i}",
            "name": f"MCP Server {i}",
            "description": f"A {category['name'].lower()} MCP server providing {', '.join(capabilities)}",
            "category": category["id"],
            "language": language,
            "capabilities": capabilities,
            "version": f"{rng.randint(0, 3)}.{rng.randint(0, 9)}.{rng.randint(0, 20)}",
            "author": f"developer-{rng.randint(1, 1000)}",
            "repository": f"https://github.com/mock-org/{name}",
            "verified": rng.random() > 0.4,
            "active": rng.random() > 0.08,
            "healthScore": rng.randint(70, 99),
            "lastUpdated": to_iso(now - timedelta(days=rng.random() * 90)),
            "downloads": rng.randrange(10000),
            "stars": rng.randrange(500),
            "installation": {"method": method, "command": command},
        })

    return servers


class PulseMCPClient:
    """
    Client for the PulseMCP server directory.

    Every public call degrades to generated mock data when the API is
    unreachable, so callers always receive a usable directory.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        mock_mode: Optional[bool] = None,
        rate_limit: Optional[int] = None,
        mock_server_count: int = MOCK_SERVER_COUNT,
        rate_window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
    ):
        self.api_key = api_key if api_key is not None else settings.PULSEMCP_API_KEY
        self.base_url = (base_url or settings.PULSEMCP_BASE_URL).rstrip("/")
        self.mock_mode = settings.PULSEMCP_MOCK_MODE if mock_mode is None else mock_mode
        self.rate_limit = rate_limit or settings.PULSEMCP_RATE_LIMIT
        self.mock_server_count = mock_server_count

        # At most `rate_limit` requests per window, shared by all concurrent callers
        self._limiter = AsyncLimiter(self.rate_limit, rate_window_seconds)
        self._waiting = 0
        self._in_flight = 0
        self._client: Optional[httpx.AsyncClient] = None
        self._mock_servers: Optional[List[Dict[str, Any]]] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "User-Agent": USER_AGENT,
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=httpx.Timeout(DEFAULT_TIMEOUT_SECONDS),
            )
        return self._client

    async def _throttle(self) -> None:
        self._waiting += 1
        try:
            await self._limiter.acquire()
        finally:
            self._waiting -= 1

    async def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """GET a directory path through the rate limiter, retrying every failure."""
        client = self._get_client()
        query = {k: v for k, v in (params or {}).items() if v is not None}
        last_error: Optional[Exception] = None

        for attempt in range(MAX_RETRIES):
            await self._throttle()
            self._in_flight += 1
            try:
                response = await client.get(path, params=query)
                response.raise_for_status()
                return response
            except (httpx.HTTPStatusError, httpx.TransportError) as e:
                last_error = e
                logger.warning(f"PulseMCP request {path} failed: {e} (attempt {attempt + 1})")
            finally:
                self._in_flight -= 1

            if attempt < MAX_RETRIES - 1:
                await asyncio.sleep(BACKOFF_FACTOR ** attempt)

        raise last_error

    @property
    def mock_servers(self) -> List[Dict[str, Any]]:
        if self._mock_servers is None:
            self._mock_servers = generate_mock_servers(self.mock_server_count)
        return self._mock_servers

    def _enable_fallback(self, operation: str, error: Exception) -> None:
        if not self.mock_mode:
            logger.warning(f"PulseMCP {operation} failed, falling back to mock data: {error}")
        self.mock_mode = True

    async def test_connection(self) -> Dict[str, Any]:
        if self.mock_mode:
            return {"status": "ok", "mock": True, "servers": len(self.mock_servers)}

        try:
            response = await self._request("/health")
            data = response.json()
            return {
                "status": "ok",
                **data,
                "rate_limit": response.headers.get("x-rate-limit-remaining", "unknown"),
            }
        except (httpx.HTTPError, ValueError) as e:
            self._enable_fallback("connection test", e)
            return {"status": "fallback", "mock": True, "error": str(e), "servers": len(self.mock_servers)}

    def _filter_mock(
        self,
        category: Optional[str] = None,
        verified: Optional[bool] = None,
        active: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        servers = self.mock_servers
        if category:
            servers = [s for s in servers if s["category"] == category]
        if verified is not None:
            servers = [s for s in servers if s["verified"] == verified]
        if active is not None:
            servers = [s for s in servers if s["active"] == active]
        return servers

    def _mock_listing(self, page: int, limit: int, **filters) -> Dict[str, Any]:
        servers = self._filter_mock(**filters)[(page - 1) * limit:]
        total_pages = max(1, -(-len(servers) // limit))
        return {
            "servers": servers,
            "total_count": len(servers),
            "pagination": {"total_pages": total_pages, "total_count": len(servers)},
            "fetched_at": to_iso(utc_now()),
            "mock": True,
        }

    async def get_all_servers(
        self,
        page: int = 1,
        limit: int = 100,
        category: Optional[str] = None,
        verified: Optional[bool] = None,
        active: Optional[bool] = True,
    ) -> Dict[str, Any]:
        """
        Fetch the whole directory starting at `page`, following pagination.

        Returns {"servers", "total_count", "pagination", "fetched_at"}.
        """
        filters = {"category": category, "verified": verified, "active": active}
        if self.mock_mode:
            return self._mock_listing(page, limit, **filters)

        servers: List[Dict[str, Any]] = []
        current_page = page
        total_pages = page
        total_count = 0

        try:
            while True:
                response = await self._request("/servers", {
                    "page": current_page,
                    "limit": limit,
                    "active": str(active).lower() if active is not None else None,
                    "category": category,
                    "verified": str(verified).lower() if verified is not None else None,
                })
                data = response.json()
                batch = data.get("servers") or []
                pagination = data.get("pagination") or {}
                total_pages = pagination.get("totalPages", current_page)
                total_count = pagination.get("totalCount", total_count)

                servers.extend(batch)
                logger.debug(f"Fetched PulseMCP page {current_page}/{total_pages} ({len(batch)} servers)")

                if not batch or current_page >= total_pages or len(batch) < limit:
                    break
                current_page += 1

                if len(servers) % FETCH_PAUSE_EVERY == 0:
                    await asyncio.sleep(FETCH_PAUSE_SECONDS)

        except (httpx.HTTPError, ValueError) as e:
            self._enable_fallback("server listing", e)
            return self._mock_listing(page, limit, **filters)

        logger.info(f"Fetched {len(servers)} servers from PulseMCP")
        return {
            "servers": servers,
            "total_count": total_count or len(servers),
            "pagination": {"total_pages": total_pages, "total_count": total_count or len(servers)},
            "fetched_at": to_iso(utc_now()),
        }

    async def get_server_details(self, server_id: str) -> Optional[Dict[str, Any]]:
        if self.mock_mode:
            for server in self.mock_servers:
                if server["id"] == server_id:
                    return {**server, "detailed": True}
            return None

        try:
            response = await self._request(f"/servers/{server_id}")
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to get PulseMCP server {server_id}: {e}")
            return None

    def _mock_search(self, query: str, limit: int, category: Optional[str], verified: Optional[bool]) -> Dict[str, Any]:
        needle = query.lower()
        matches = [
            server for server in self._filter_mock(category=category, verified=verified)
            if needle in server["name"].lower()
            or needle in server["description"].lower()
            or any(needle in capability for capability in server["capabilities"])
        ]
        return {
            "servers": matches[:limit],
            "total_count": len(matches),
            "query": query,
            "searched_at": to_iso(utc_now()),
            "mock": True,
        }

    async def search_servers(
        self,
        query: str,
        limit: int = 50,
        category: Optional[str] = None,
        verified: Optional[bool] = None,
    ) -> Dict[str, Any]:
        if self.mock_mode:
            return self._mock_search(query, limit, category, verified)

        try:
            response = await self._request("/search", {
                "q": query,
                "limit": limit,
                "category": category,
                "verified": str(verified).lower() if verified is not None else None,
            })
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._enable_fallback("search", e)
            return self._mock_search(query, limit, category, verified)

        servers = data.get("servers") or []
        return {
            "servers": servers,
            "total_count": data.get("totalCount", len(servers)),
            "query": query,
            "searched_at": to_iso(utc_now()),
        }

    def _mock_categories(self) -> Dict[str, Any]:
        return {
            "categories": [dict(category) for category in MOCK_CATEGORIES],
            "totalServers": MOCK_SERVER_COUNT,
            "mock": True,
        }

    async def get_categories(self) -> Dict[str, Any]:
        if self.mock_mode:
            return self._mock_categories()
        try:
            response = await self._request("/categories")
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._enable_fallback("category listing", e)
            return self._mock_categories()

    def _mock_stats(self) -> Dict[str, Any]:
        return {
            "totalServers": MOCK_SERVER_COUNT,
            "activeServers": 5234,
            "verifiedServers": 3401,
            "categories": len(MOCK_CATEGORIES),
            "averageHealth": 94.2,
            "lastUpdated": to_iso(utc_now()),
            "dailyUpdates": True,
            "mock": True,
        }

    async def get_stats(self) -> Dict[str, Any]:
        if self.mock_mode:
            return self._mock_stats()
        try:
            response = await self._request("/stats")
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._enable_fallback("stats", e)
            return self._mock_stats()

    def get_status(self) -> Dict[str, Any]:
        return {
            "base_url": self.base_url,
            "mock_mode": self.mock_mode,
            "rate_limit": self.rate_limit,
            "queue_size": self._waiting,
            "queue_pending": self._in_flight,
            "authenticated": bool(self.api_key),
        }

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# Global client instance
_pulsemcp_client: Optional[PulseMCPClient] = None


def get_pulsemcp_client() -> PulseMCPClient:
    """Get the global PulseMCP client instance."""
    global _pulsemcp_client
    if _pulsemcp_client is None:
        _pulsemcp_client = PulseMCPClient()
    return _pulsemcp_client
