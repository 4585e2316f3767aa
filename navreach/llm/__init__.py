"""LLM provider layer - LiteLLM-backed chat completions."""

import json
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import litellm

from navreach.exceptions import LLMAPIError, UnsupportedProviderError
from navreach.logging import get_logger

log = get_logger(__name__)

litellm.suppress_debug_info = True

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


@dataclass(frozen=True)
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    @property
    def arguments_json(self) -> str:
        return json.dumps(self.arguments, ensure_ascii=False, sort_keys=True)

    @property
    def signature(self) -> str:
        """Stable name+arguments key used for repeat detection."""
        return f"{self.name}:{self.arguments_json}"


@dataclass
class Message:
    """A turn in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str | list[dict[str, Any]] = ""
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    def has_images(self) -> bool:
        if not isinstance(self.content, list):
            return False
        return any(
            isinstance(part, dict) and part.get("type") in {"image_url", "image"}
            for part in self.content
        )

    def strip_images(self) -> bool:
        """Drop image parts in place. Returns True when something was removed."""
        if not self.has_images():
            return False
        kept = [
            part
            for part in self.content
            if not (isinstance(part, dict) and part.get("type") in {"image_url", "image"})
        ]
        texts = [str(part.get("text", "")) for part in kept if isinstance(part, dict)]
        text = "\n".join(t for t in texts if t).strip()
        self.content = (text + "\n[image removed: model does not accept image input]").strip()
        return True


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str | list[Any] = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    reasoning_content: str | None = None
    provider_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Content flattened to plain text."""
        return flatten_content(self.content)

    def is_empty(self) -> bool:
        return not self.tool_calls and not self.text.strip()


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


def flatten_content(content: Any) -> str:
    """Flatten string or structured content blocks into plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        pieces: list[str] = []
        for chunk in content:
            if isinstance(chunk, str):
                pieces.append(chunk)
            elif isinstance(chunk, dict) and isinstance(chunk.get("text"), str):
                pieces.append(chunk["text"])
        return " ".join(piece for piece in pieces if piece)
    return str(content)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        pass


class LiteLLMProvider(LLMProvider):
    """Multi-provider chat completions through LiteLLM."""

    PROVIDER_CONFIGS: dict[str, dict[str, str]] = {
        "openai": {"prefix": "openai", "env_key": "OPENAI_API_KEY", "api_base": ""},
        "anthropic": {"prefix": "anthropic", "env_key": "ANTHROPIC_API_KEY", "api_base": ""},
        "openrouter": {
            "prefix": "openrouter",
            "env_key": "OPENROUTER_API_KEY",
            "api_base": OPENROUTER_BASE_URL,
        },
        "gemini": {"prefix": "gemini", "env_key": "GEMINI_API_KEY", "api_base": ""},
        # OpenAI-compatible endpoint at a caller-supplied base URL.
        "custom": {"prefix": "openai", "env_key": "", "api_base": ""},
    }

    def __init__(
        self,
        provider: str,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        reasoning: bool = True,
        reasoning_effort: str = "",
    ):
        provider_key = normalize_provider_key(provider)
        if provider_key not in self.PROVIDER_CONFIGS:
            raise UnsupportedProviderError(provider)
        settings = self.PROVIDER_CONFIGS[provider_key]

        self.provider = provider_key
        self.model = self._format_model_name(model, settings["prefix"])
        env_key = settings["env_key"]
        self.api_key = api_key or (os.getenv(env_key) if env_key else None) or None
        self.base_url = (base_url or settings["api_base"] or "").rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.reasoning = reasoning
        self.reasoning_effort = reasoning_effort

    @staticmethod
    def _format_model_name(model: str, prefix: str) -> str:
        cleaned = str(model or "").strip()
        if cleaned.startswith(f"{prefix}/"):
            return cleaned
        return f"{prefix}/{cleaned}"

    @staticmethod
    def _convert_message(msg: Message) -> dict[str, Any]:
        entry: dict[str, Any] = {"role": msg.role, "content": msg.content}
        if msg.role == "assistant" and msg.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments_json},
                }
                for call in msg.tool_calls
            ]
        if msg.role == "tool":
            entry["tool_call_id"] = msg.tool_call_id or ""
            if msg.tool_name:
                entry["name"] = msg.tool_name
        return entry

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {"type": "object", "properties": {}},
                },
            }
            for tool in tools
        ]

    def _request_kwargs(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [self._convert_message(msg) for msg in messages],
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "stream": stream,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.base_url:
            kwargs["api_base"] = self.base_url
        if tools:
            kwargs["tools"] = self._convert_tools(tools)
            kwargs["tool_choice"] = "auto"
        if self.reasoning and self.reasoning_effort:
            kwargs["reasoning_effort"] = self.reasoning_effort
        if not self.reasoning:
            kwargs["drop_params"] = True
        return kwargs

    @staticmethod
    def _parse_arguments(raw: Any) -> dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        text = str(raw or "").strip()
        if not text:
            return {}
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            return {"raw": text}
        return value if isinstance(value, dict) else {"value": value}

    def _parse_response(self, response: Any) -> LLMResponse:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return LLMResponse(model=self.model)
        message = choices[0].message

        tool_calls: list[ToolCall] = []
        for tc in getattr(message, "tool_calls", None) or []:
            function = getattr(tc, "function", None)
            tool_calls.append(ToolCall(
                id=str(getattr(tc, "id", "") or f"call_{uuid.uuid4().hex[:12]}"),
                name=str(getattr(function, "name", "") or ""),
                arguments=self._parse_arguments(getattr(function, "arguments", None)),
            ))

        provider_fields: dict[str, Any] = {}
        for key in ("reasoning", "thought", "thinking", "thinking_blocks"):
            value = getattr(message, key, None)
            if value:
                provider_fields[key] = value

        usage_obj = getattr(response, "usage", None)
        usage = {
            "prompt_tokens": int(getattr(usage_obj, "prompt_tokens", 0) or 0),
            "completion_tokens": int(getattr(usage_obj, "completion_tokens", 0) or 0),
            "total_tokens": int(getattr(usage_obj, "total_tokens", 0) or 0),
        }

        return LLMResponse(
            content=getattr(message, "content", None) or "",
            tool_calls=tool_calls,
            model=str(getattr(response, "model", "") or self.model),
            usage=usage,
            reasoning_content=getattr(message, "reasoning_content", None) or None,
            provider_fields=provider_fields,
        )

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        kwargs = self._request_kwargs(messages, tools, temperature, max_tokens, stream=False)
        log.debug(
            "Calling LiteLLM",
            model=self.model,
            msg_count=len(messages),
            tools=len(tools or []),
            reasoning=self.reasoning,
        )
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise LLMAPIError(str(e), status_code=getattr(e, "status_code", None)) from e
        return self._parse_response(response)

    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream a completion as text chunks."""
        kwargs = self._request_kwargs(messages, tools, temperature, max_tokens, stream=True)
        try:
            stream = await litellm.acompletion(**kwargs)
            async for chunk in stream:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                content = getattr(choices[0].delta, "content", None)
                if content:
                    yield content
        except Exception as e:
            raise LLMAPIError(str(e), status_code=getattr(e, "status_code", None)) from e


def normalize_provider_key(provider: str) -> str:
    raw = str(provider or "").strip().lower()
    aliases = {
        "chatgpt": "openai",
        "claude": "anthropic",
        "google": "gemini",
        "openai-compatible": "custom",
        "compatible": "custom",
    }
    return aliases.get(raw, raw)


def create_provider(
    provider: str,
    model: str,
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    reasoning: bool = True,
    reasoning_effort: str = "",
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider type (openai, anthropic, openrouter, gemini, custom)
        model: Model id
        api_key: Optional API key (falls back to the provider's env var)
        base_url: Optional base URL (required for custom)
        temperature: Default temperature
        max_tokens: Default max tokens
        reasoning: Whether reasoning parameters are sent
        reasoning_effort: Reasoning effort hint when reasoning is enabled

    Returns:
        Configured LLMProvider instance

    Raises:
        UnsupportedProviderError for unknown provider types
    """
    provider_key = normalize_provider_key(provider)
    if provider_key not in LiteLLMProvider.PROVIDER_CONFIGS:
        raise UnsupportedProviderError(provider)
    if provider_key == "custom" and not (base_url or "").strip():
        raise UnsupportedProviderError(f"{provider} (missing base URL)")
    return LiteLLMProvider(
        provider=provider_key,
        model=model,
        api_key=api_key,
        base_url=base_url,
        temperature=temperature,
        max_tokens=max_tokens,
        reasoning=reasoning,
        reasoning_effort=reasoning_effort,
    )
