import json
import logging
import re
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.prompts.mcp7_prompt import MCP7_SYSTEM_PROMPT
from app.services.super_orchestrator import get_top_mcp_servers

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
CATALOG_EXCERPT_SIZE = 25


def extract_json_block(content: str) -> str:
    """Pull the JSON object out of a model reply, fenced or not."""
    cleaned = content.strip()
    fenced = re.search(r"```(?:json)?\s*(\{.*\})\s*```", cleaned, re.DOTALL)
    if fenced:
        return fenced.group(1)
    start_brace = cleaned.find("{")
    end_brace = cleaned.rfind("}")
    if start_brace != -1 and end_brace > start_brace:
        return cleaned[start_brace : end_brace + 1]
    return cleaned


def format_catalog_excerpt(servers: List[Dict[str, Any]]) -> str:
    lines = []
    for server in servers:
        parts = [
            server["name"],
            f"category={server.get('category') or 'unknown'}",
            f"confidence={server.get('confidence')}",
            f"health={server.get('health_score')}",
        ]
        if server.get("verified"):
            parts.append("verified")
        if server.get("installation_command"):
            parts.append(f"install={server['installation_command']}")
        lines.append("- " + ", ".join(str(p) for p in parts))
    return "\n".join(lines)


# Hands project descriptions to the MCP-7 persona via OpenRouter
class AdvisorService:
    def __init__(self, session: Optional[AsyncSession] = None, api_key: Optional[str] = None, model: Optional[str] = None):
        self.session = session
        self.api_key = api_key if api_key is not None else settings.OPENROUTER_API_KEY
        self.model: str = model or settings.ADVISOR_MODEL

    def _get_client(self) -> AsyncOpenAI:
        return AsyncOpenAI(base_url=OPENROUTER_BASE_URL, api_key=self.api_key)

    async def build_catalog_excerpt(self, limit: int) -> str:
        if self.session is None:
            return ""
        servers = await get_top_mcp_servers(self.session, limit=limit)
        return format_catalog_excerpt(servers)

    def build_user_message(self, project_description: str, catalog: str, limit: int) -> str:
        message = f"Project description:\n{project_description.strip()}\n\nRecommend at most {limit} MCP servers."
        if catalog:
            message += f"\n\nKnown MCP servers from the local catalog:\n{catalog}"
        return message

    async def recommend(self, project_description: str, limit: int = 10) -> Dict[str, Any]:
        """
        Ask MCP-7 for MCP server recommendations for a project.

        The reply is returned as parsed; recommendations are not re-scored
        or filtered here.

        Raises:
            ValueError: If no OpenRouter API key is configured.
        """
        if not self.api_key:
            raise ValueError(
                "No OpenRouter API key available. Set OPENROUTER_API_KEY to get recommendations."
            )

        catalog = await self.build_catalog_excerpt(CATALOG_EXCERPT_SIZE)

        try:
            response = await self._get_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": MCP7_SYSTEM_PROMPT},
                    {"role": "user", "content": self.build_user_message(project_description, catalog, limit)},
                ],
            )
            content = response.choices[0].message.content or ""
        except Exception as e:
            logger.error(f"Error getting recommendations: {str(e)}")
            return {"error": str(e), "status": "failed"}

        try:
            return json.loads(extract_json_block(content))
        except json.JSONDecodeError:
            logger.error(f"Failed to parse advisor reply: {content[:200]}")
            return {"error": "Failed to parse recommendations", "raw": content}
