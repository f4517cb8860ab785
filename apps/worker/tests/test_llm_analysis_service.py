import json

import httpx
import pytest

from casework.core.config import Settings
from casework.schemas.triage import EmailContent, TriageContext
from casework.services import ai_provider
from casework.services.ai_provider import AIProvider, ChatResponse, OpenAIProvider, get_provider
from casework.services.ai_response_validation import parse_json_object
from casework.services.llm_analysis_service import (
    SYSTEM_PROMPT,
    LLMAnalysisError,
    ProviderLLMAnalysisService,
    build_llm_service,
)


class ScriptedProvider(AIProvider):
    def __init__(self, reply: str):
        super().__init__("test-key", "test-model")
        self.reply = reply
        self.messages = []

    async def chat(self, messages, model=None, temperature=0.2, max_tokens=2000):
        self.messages = messages
        return ChatResponse(content=self.reply, prompt_tokens=120, completion_tokens=40, model="test-model")


def _context() -> TriageContext:
    return TriageContext(
        email=EmailContent(
            subject="Eviction notice",
            body="My landlord has served notice",
            sender_email="resident@example.org",
            received_at="2026-10-01T09:00:00Z",
        )
    )


@pytest.mark.asyncio
async def test_analyze_email_parses_fenced_json():
    reply = "```json\n" + json.dumps(
        {
            "recommended_action": "create_case",
            "action_confidence": 0.9,
            "suggested_priority": "urgent",
            "suggested_case_type": {"id": 4, "name": "Housing", "confidence": 0.8},
            "unexpected": "ignored",
        }
    ) + "\n```"
    provider = ScriptedProvider(reply)

    suggestion = await ProviderLLMAnalysisService(provider).analyze_email(_context())

    assert suggestion.recommended_action == "create_case"
    assert suggestion.suggested_priority == "urgent"
    assert suggestion.suggested_case_type.id == 4
    assert provider.messages[0].content == SYSTEM_PROMPT
    assert "Eviction notice" in provider.messages[1].content


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    [
        "I cannot help with that",
        json.dumps({"recommended_action": "escalate", "action_confidence": 0.5}),
        json.dumps({"recommended_action": "ignore", "action_confidence": 3}),
    ],
)
async def test_unusable_reply_raises(reply):
    with pytest.raises(LLMAnalysisError):
        await ProviderLLMAnalysisService(ScriptedProvider(reply)).analyze_email(_context())


def test_parse_json_object_tolerates_surrounding_prose():
    assert parse_json_object('Here you go: {"a": 1} hope that helps') == {"a": 1}
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object("") is None


def test_llm_service_is_optional():
    assert build_llm_service(Settings(DATABASE_URL="sqlite://", LLM_API_KEY="  ", _env_file=None)) is None

    service = build_llm_service(
        Settings(DATABASE_URL="sqlite://", LLM_PROVIDER="openai", LLM_API_KEY="sk-test", _env_file=None)
    )
    assert isinstance(service, ProviderLLMAnalysisService)
    assert isinstance(service.provider, OpenAIProvider)


def test_unknown_provider():
    with pytest.raises(ValueError, match="Unknown provider"):
        get_provider("acme", "key")


@pytest.mark.asyncio
async def test_openai_provider_requests_json(monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": '{"ok": true}'}}],
                "usage": {"prompt_tokens": 10, "completion_tokens": 5},
            },
        )

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        ai_provider.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )

    response = await OpenAIProvider("sk-test").chat([ai_provider.ChatMessage(role="user", content="hi")])

    assert seen["url"] == "https://api.openai.com/v1/chat/completions"
    assert seen["body"]["response_format"] == {"type": "json_object"}
    assert response.content == '{"ok": true}'
    assert response.total_tokens == 15


def _route_httpx(monkeypatch, handler):
    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        ai_provider.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )


@pytest.mark.asyncio
async def test_gemini_provider_sends_system_prompt_separately(monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": '{"ok": '}, {"text": "true}"}]}}],
                "usageMetadata": {"promptTokenCount": 7, "candidatesTokenCount": 3},
            },
        )

    _route_httpx(monkeypatch, handler)

    response = await get_provider("gemini", "g-key").chat(
        [
            ai_provider.ChatMessage(role="system", content="triage"),
            ai_provider.ChatMessage(role="user", content="hi"),
            ai_provider.ChatMessage(role="assistant", content="{}"),
        ]
    )

    assert seen["url"].path.endswith("/models/gemini-2.0-flash:generateContent")
    assert seen["url"].params["key"] == "g-key"
    assert seen["body"]["systemInstruction"] == {"parts": [{"text": "triage"}]}
    assert [content["role"] for content in seen["body"]["contents"]] == ["user", "model"]
    assert response.content == '{"ok": true}'
    assert response.total_tokens == 10


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    [
        httpx.Response(503, json={"error": "overloaded"}),
        httpx.Response(200, json={"choices": []}),
        httpx.Response(200, text="not json"),
    ],
)
async def test_provider_failures_raise_provider_error(monkeypatch, reply):
    _route_httpx(monkeypatch, lambda request: reply)

    with pytest.raises(ai_provider.LLMProviderError):
        await OpenAIProvider("sk-test").chat([ai_provider.ChatMessage(role="user", content="hi")])
