"""OpenAI-compatible chat provider - streaming HTTP calls via httpx."""

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from watch_ai.exceptions import LLMAPIError, LLMError
from watch_ai.logging import get_logger

log = get_logger(__name__)


OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


@dataclass
class ToolCallRequest:
    """A tool call emitted by the model."""

    id: str
    name: str
    arguments_json: str = ""

    def parse_arguments(self) -> dict[str, Any]:
        """Parse accumulated argument text.

        Raises:
            ValueError: if the text is not a JSON object
        """
        raw = self.arguments_json.strip()
        if not raw:
            return {}
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError("Tool arguments must be a JSON object")
        return parsed

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCallRequest":
        function = data.get("function") or {}
        return cls(
            id=str(data.get("id", "")),
            name=str(function.get("name", "")),
            arguments_json=str(function.get("arguments", "") or ""),
        )


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the chat-completions wire shape."""
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            role=str(data.get("role", "")),
            content=str(data.get("content") or ""),
            tool_calls=[ToolCallRequest.from_dict(tc) for tc in data.get("tool_calls") or []],
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


class LLMProvider(ABC):
    """Abstract base class for streaming chat providers."""

    @abstractmethod
    def stream_chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[str]:
        """Yield raw response body text chunks (server-sent-events text)."""
        pass

    async def close(self) -> None:
        return None


class OpenAICompatibleProvider(LLMProvider):
    """Chat-completions provider for OpenRouter and other OpenAI-style endpoints."""

    def __init__(
        self,
        model: str,
        base_url: str = OPENROUTER_BASE_URL,
        api_key: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = 5000,
        timeout: float = 120.0,
        extra_headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize provider.

        Args:
            model: Model identifier (e.g. 'google/gemini-2.5-flash-preview')
            base_url: API base URL, without the '/chat/completions' suffix
            api_key: Bearer token
            temperature: Optional sampling temperature
            max_tokens: Max tokens to generate
            timeout: HTTP timeout in seconds
            extra_headers: Additional request headers
            client: Optional preconfigured HTTP client (used in tests)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.extra_headers = dict(extra_headers or {})

        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    @staticmethod
    def _convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Wrap registry definitions into the function-tool format."""
        result = []
        for tool in tools:
            name = tool.get("name")
            if not name:
                continue
            result.append({
                "type": "function",
                "function": {
                    "name": name,
                    "description": tool.get("description", "") or "",
                    "parameters": tool.get("parameters", {}) or {},
                },
            })
        return result

    def build_request_body(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Build the streaming chat-completions request body."""
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in messages],
            "stream": True,
        }
        converted = self._convert_tools(tools) if tools else []
        if converted:
            body["tools"] = converted
            body["tool_choice"] = "auto"
        if self.max_tokens:
            body["max_tokens"] = self.max_tokens
        if self.temperature is not None:
            body["temperature"] = self.temperature
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **self.extra_headers}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def stream_chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[str]:
        """Stream a completion as raw text chunks."""
        url = f"{self.base_url}/chat/completions"
        body = self.build_request_body(messages, tools)

        try:
            log.debug("Calling model", model=self.model, url=url, msg_count=len(messages))
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for chunk in response.aiter_text():
                    if chunk:
                        yield chunk

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Model endpoint unreachable: {e}")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "openrouter",
    model: str = "google/gemini-2.5-flash-preview",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = 5000,
    timeout: float = 120.0,
    referer: str = "",
    title: str = "",
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (openrouter, openai)
        model: Model name
        api_key: Optional API key (falls back to OPENROUTER_API_KEY / OPENAI_API_KEY)
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens

    Returns:
        Configured LLMProvider instance
    """
    name = (provider or "").strip().lower()
    if name == "openrouter":
        headers = {}
        if referer:
            headers["HTTP-Referer"] = referer
        if title:
            headers["X-Title"] = title
        return OpenAICompatibleProvider(
            model=model,
            base_url=base_url or OPENROUTER_BASE_URL,
            api_key=api_key or os.getenv("OPENROUTER_API_KEY"),
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            extra_headers=headers,
        )
    if name == "openai":
        return OpenAICompatibleProvider(
            model=model,
            base_url=base_url or "https://api.openai.com/v1",
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'openrouter' or 'openai'.")


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from watch_ai.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            timeout=cfg.model.timeout,
            referer=cfg.model.referer,
            title=cfg.model.title,
        )
    return _provider


def set_provider(provider: LLMProvider | None) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
