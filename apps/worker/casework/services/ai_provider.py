"""Chat providers used by triage analysis.

Every triage prompt asks for a single JSON object, so both providers switch
on their JSON reply mode. Transport and reply-shape failures surface as
``LLMProviderError`` so triage can fall back to the rule-based suggester.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"


class LLMProviderError(RuntimeError):
    """The provider could not be reached or replied in an unexpected shape."""


@dataclass
class ChatMessage:
    role: str  # system | user | assistant
    content: str


@dataclass
class ChatResponse:
    content: str
    prompt_tokens: int
    completion_tokens: int
    model: str

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class ProviderRequest:
    url: str
    body: dict[str, Any]
    headers: dict[str, str]
    params: dict[str, str] | None = None


class AIProvider(ABC):
    def __init__(self, api_key: str, default_model: str, timeout_seconds: float = 30.0):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 2000,
    ) -> ChatResponse:
        """Send the conversation and return the first reply."""


class HttpChatProvider(AIProvider):
    """Provider reached over one JSON POST per chat turn."""

    name = "http"

    @abstractmethod
    def build_request(
        self, messages: list[ChatMessage], model: str, temperature: float, max_tokens: int
    ) -> ProviderRequest: ...

    @abstractmethod
    def parse_reply(self, data: dict[str, Any], model: str) -> ChatResponse: ...

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 2000,
    ) -> ChatResponse:
        model = model or self.default_model
        request = self.build_request(messages, model, temperature, max_tokens)

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    request.url, headers=request.headers, params=request.params, json=request.body
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise LLMProviderError(f"{self.name} returned HTTP {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise LLMProviderError(f"{self.name} request failed: {type(exc).__name__}") from exc

        try:
            return self.parse_reply(data, model)
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMProviderError(f"{self.name} reply had an unexpected shape") from exc


class OpenAIProvider(HttpChatProvider):
    name = "openai"
    base_url = "https://api.openai.com/v1"

    def __init__(self, api_key: str, default_model: str = DEFAULT_OPENAI_MODEL, timeout_seconds: float = 30.0):
        super().__init__(api_key, default_model, timeout_seconds)

    def build_request(
        self, messages: list[ChatMessage], model: str, temperature: float, max_tokens: int
    ) -> ProviderRequest:
        return ProviderRequest(
            url=f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            body={
                "model": model,
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "temperature": temperature,
                "max_tokens": max_tokens,
                "response_format": {"type": "json_object"},
            },
        )

    def parse_reply(self, data: dict[str, Any], model: str) -> ChatResponse:
        usage = data.get("usage") or {}
        return ChatResponse(
            content=data["choices"][0]["message"]["content"],
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            model=data.get("model", model),
        )


class GeminiProvider(HttpChatProvider):
    name = "gemini"
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(self, api_key: str, default_model: str = DEFAULT_GEMINI_MODEL, timeout_seconds: float = 30.0):
        super().__init__(api_key, default_model, timeout_seconds)

    def build_request(
        self, messages: list[ChatMessage], model: str, temperature: float, max_tokens: int
    ) -> ProviderRequest:
        # System prompts travel separately; the assistant role is called "model".
        system_parts = [{"text": m.content} for m in messages if m.role == "system"]
        contents = [
            {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
            for m in messages
            if m.role != "system"
        ]
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
                "responseMimeType": "application/json",
            },
        }
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        return ProviderRequest(
            url=f"{self.base_url}/models/{model}:generateContent",
            headers={},
            params={"key": self.api_key},
            body=body,
        )

    def parse_reply(self, data: dict[str, Any], model: str) -> ChatResponse:
        parts = data["candidates"][0]["content"]["parts"]
        usage = data.get("usageMetadata") or {}
        return ChatResponse(
            content="".join(part.get("text", "") for part in parts),
            prompt_tokens=usage.get("promptTokenCount", 0),
            completion_tokens=usage.get("candidatesTokenCount", 0),
            model=model,
        )


PROVIDERS: dict[str, tuple[type[HttpChatProvider], str]] = {
    "openai": (OpenAIProvider, DEFAULT_OPENAI_MODEL),
    "gemini": (GeminiProvider, DEFAULT_GEMINI_MODEL),
}


def get_provider(
    provider_name: str, api_key: str, model: str | None = None, timeout_seconds: float = 30.0
) -> AIProvider:
    try:
        provider_cls, default_model = PROVIDERS[provider_name]
    except KeyError:
        raise ValueError(f"Unknown provider: {provider_name}") from None
    logger.debug("Using %s provider with model %s", provider_name, model or default_model)
    return provider_cls(api_key, default_model=model or default_model, timeout_seconds=timeout_seconds)
