"""
Tests for the MCP-7 advisor and its system prompt.
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.prompts.mcp7_prompt import ESCALATION_PHRASE, MCP7_SYSTEM_PROMPT, MIN_CONFIDENCE
from app.services.advisor import AdvisorService, extract_json_block, format_catalog_excerpt


def make_completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def make_client(content=None, error=None):
    client = MagicMock()
    if error is not None:
        client.chat.completions.create = AsyncMock(side_effect=error)
    else:
        client.chat.completions.create = AsyncMock(return_value=make_completion(content))
    return client


REPLY = {
    "project_summary": "A Django app backed by PostgreSQL",
    "project_type": "web app",
    "recommendations": [
        {
            "name": "PostgreSQL",
            "package": "@modelcontextprotocol/server-postgres",
            "category": "database",
            "reason": "Query the application database",
            "confidence": 92,
            "install_command": "npx -y @modelcontextprotocol/server-postgres",
            "env_vars": ["DATABASE_URL"],
        }
    ],
    "escalation": None,
}


class TestSystemPrompt:
    def test_phases_and_tiers_are_present(self):
        for phase in ("PHASE 1", "PHASE 2", "PHASE 3", "PHASE 4"):
            assert phase in MCP7_SYSTEM_PROMPT
        assert "90-100%" in MCP7_SYSTEM_PROMPT
        assert f"{MIN_CONFIDENCE}-74%" in MCP7_SYSTEM_PROMPT

    def test_escalation_phrase_is_embedded_verbatim(self):
        assert ESCALATION_PHRASE in MCP7_SYSTEM_PROMPT

    def test_output_fields_are_described(self):
        for field in ("project_summary", "recommendations", "install_command", "env_vars", "escalation"):
            assert f'"{field}"' in MCP7_SYSTEM_PROMPT
        assert "{{" not in MCP7_SYSTEM_PROMPT


class TestReplyParsing:
    def test_fenced_json(self):
        content = "Here you go:\n```json\n{\"a\": 1}\n```\nThanks"
        assert extract_json_block(content) == '{"a": 1}'

    def test_bare_json_with_prose(self):
        assert extract_json_block('Sure! {"a": {"b": 2}} done') == '{"a": {"b": 2}}'

    def test_no_json(self):
        assert extract_json_block("  nothing here ") == "nothing here"

    def test_catalog_excerpt_format(self):
        excerpt = format_catalog_excerpt([
            {"name": "github", "category": "development", "confidence": 95, "health_score": 90,
             "verified": True, "installation_command": "npx -y @acme/github"},
            {"name": "notes", "category": None, "confidence": 40, "health_score": None, "verified": False},
        ])

        assert excerpt.splitlines() == [
            "- github, category=development, confidence=95, health=90, verified, install=npx -y @acme/github",
            "- notes, category=unknown, confidence=40, health=None",
        ]


class TestAdvisorService:
    def setup_method(self):
        self.advisor = AdvisorService(api_key="test-key", model="test/model")

    @pytest.mark.asyncio
    async def test_missing_api_key_raises(self):
        advisor = AdvisorService(api_key="")

        with pytest.raises(ValueError, match="OPENROUTER_API_KEY"):
            await advisor.recommend("A web app")

    @pytest.mark.asyncio
    async def test_recommend_parses_fenced_reply(self):
        client = make_client(f"```json\n{json.dumps(REPLY)}\n```")

        with patch.object(self.advisor, "_get_client", return_value=client):
            result = await self.advisor.recommend("Django app with PostgreSQL", limit=3)

        assert result["recommendations"][0]["confidence"] == 92
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "test/model"
        assert kwargs["messages"][0] == {"role": "system", "content": MCP7_SYSTEM_PROMPT}
        assert "Django app with PostgreSQL" in kwargs["messages"][1]["content"]
        assert "at most 3" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_unparseable_reply(self):
        client = make_client("I would suggest the GitHub server.")

        with patch.object(self.advisor, "_get_client", return_value=client):
            result = await self.advisor.recommend("A CLI tool")

        assert result["error"] == "Failed to parse recommendations"
        assert result["raw"] == "I would suggest the GitHub server."

    @pytest.mark.asyncio
    async def test_provider_failure(self):
        client = make_client(error=RuntimeError("upstream 502"))

        with patch.object(self.advisor, "_get_client", return_value=client):
            result = await self.advisor.recommend("A CLI tool")

        assert result == {"error": "upstream 502", "status": "failed"}

    @pytest.mark.asyncio
    async def test_catalog_excerpt_is_sent_when_session_present(self):
        advisor = AdvisorService(session=MagicMock(), api_key="test-key")
        client = make_client(json.dumps(REPLY))
        servers = [{"name": "github", "category": "development", "confidence": 95, "health_score": 90,
                    "verified": True, "installation_command": None}]

        with patch("app.services.advisor.get_top_mcp_servers", AsyncMock(return_value=servers)) as top, \
                patch.object(advisor, "_get_client", return_value=client):
            await advisor.recommend("Repo automation")

        top.assert_awaited_once()
        user_message = client.chat.completions.create.await_args.kwargs["messages"][1]["content"]
        assert "Known MCP servers from the local catalog" in user_message
        assert "- github, category=development" in user_message

    def test_user_message_without_catalog(self):
        message = self.advisor.build_user_message("  A data pipeline  ", "", 5)

        assert message.startswith("Project description:\nA data pipeline\n")
        assert "local catalog" not in message
