"""Model gateway: timeouts, error classification and staged downgrade.

The gateway owns one small state machine per session::

    NORMAL -> NO_REASONING -> SAFE_MODE -> FAILED

``NORMAL`` calls the model with reasoning and tools, ``NO_REASONING`` keeps
tools but drops reasoning parameters, ``SAFE_MODE`` is plain chat without
tools. The first stage that succeeds stays in effect for later calls.
"""

import asyncio
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

from navreach.config import Config, get_config
from navreach.exceptions import (
    EmptyModelOutputError,
    LLMAPIError,
    LLMError,
    LLMTimeoutError,
    ModelDowngradeExhaustedError,
)
from navreach.llm import LLMProvider, LLMResponse, Message, ToolDefinition, create_provider
from navreach.logging import get_logger
from navreach.model_selection import EffectiveModelConfig

log = get_logger(__name__)

NoticeCallback = Callable[[str], Awaitable[None]]
ProviderFactory = Callable[..., LLMProvider]


class GatewayStage(str, Enum):
    NORMAL = "normal"
    NO_REASONING = "no_reasoning"
    SAFE_MODE = "safe_mode"
    FAILED = "failed"


_NEXT_STAGE = {
    GatewayStage.NORMAL: GatewayStage.NO_REASONING,
    GatewayStage.NO_REASONING: GatewayStage.SAFE_MODE,
    GatewayStage.SAFE_MODE: GatewayStage.FAILED,
    GatewayStage.FAILED: GatewayStage.FAILED,
}

_STAGE_NOTICES = {
    GatewayStage.NO_REASONING: "The model rejected the request. Retrying with reasoning disabled.",
    GatewayStage.SAFE_MODE: "The model does not support tool calling here. Continuing in plain chat mode.",
}


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    EMPTY_OUTPUT = "empty_output"
    TIMEOUT = "timeout"
    VISION = "vision"
    COMPATIBILITY = "compatibility"
    UNKNOWN = "unknown"


_VISION_MARKERS = (
    "image input",
    "does not support image",
    "doesn't support image",
    "image_url is not supported",
    "vision is not supported",
    "not a multimodal model",
)
_COMPATIBILITY_MARKERS = (
    "not supported",
    "unsupported",
    "schema",
    "invalid_request",
    "tool_choice",
    "function calling",
)


def classify_error(error: Exception) -> ErrorKind:
    """Map a model-call failure onto a recovery strategy."""
    if isinstance(error, LLMTimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, EmptyModelOutputError):
        return ErrorKind.EMPTY_OUTPUT

    message = str(error).lower()
    status = getattr(error, "status_code", None)
    if any(marker in message for marker in _VISION_MARKERS):
        return ErrorKind.VISION
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status in (400, 401, 403):
        return ErrorKind.COMPATIBILITY
    if "rate" in message or "limit" in message or "429" in message:
        return ErrorKind.RATE_LIMIT
    if any(marker in message for marker in _COMPATIBILITY_MARKERS):
        return ErrorKind.COMPATIBILITY
    return ErrorKind.UNKNOWN


class ModelGateway:
    """Stateful per-session access to one effective model configuration."""

    def __init__(
        self,
        model: EffectiveModelConfig,
        config: Config | None = None,
        provider_factory: ProviderFactory = create_provider,
        notice_callback: NoticeCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.model = model
        self.config = config or get_config()
        self._provider_factory = provider_factory
        self.notice_callback = notice_callback
        self._sleep = sleep
        self._providers: dict[bool, LLMProvider] = {}
        self.stage = GatewayStage.NORMAL
        self.vision_enabled = True
        self.last_error: str = ""

    @property
    def timeout_seconds(self) -> float:
        return float(self.config.model.timeout_seconds)

    @property
    def tools_enabled(self) -> bool:
        return self.stage in (GatewayStage.NORMAL, GatewayStage.NO_REASONING)

    def _provider(self, reasoning: bool) -> LLMProvider:
        provider = self._providers.get(reasoning)
        if provider is None:
            provider = self._provider_factory(
                provider=self.model.provider_type,
                model=self.model.model_id,
                api_key=self.model.api_key or None,
                base_url=self.model.base_url or None,
                temperature=self.config.model.temperature,
                max_tokens=self.config.model.max_tokens,
                reasoning=reasoning,
                reasoning_effort=self.config.model.reasoning_effort,
            )
            self._providers[reasoning] = provider
        return provider

    async def _notify(self, message: str) -> None:
        log.info("Gateway notice", message=message, stage=self.stage.value)
        if self.notice_callback is not None:
            await self.notice_callback(message)

    async def _call(self, messages: list[Message], tools: list[ToolDefinition] | None) -> LLMResponse:
        provider = self._provider(reasoning=self.stage == GatewayStage.NORMAL)
        call_tools = tools if self.tools_enabled else None
        try:
            response = await asyncio.wait_for(
                provider.complete(messages, tools=call_tools or None),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise LLMTimeoutError(self.timeout_seconds) from e
        if response.is_empty():
            raise EmptyModelOutputError()
        return response

    def _strip_images(self, messages: list[Message]) -> int:
        return sum(1 for message in messages if message.strip_images())

    async def _downgrade(self, error: Exception) -> None:
        self.last_error = str(error)
        self.stage = _NEXT_STAGE[self.stage]
        log.warning("Model downgrade", stage=self.stage.value, error=self.last_error)
        if self.stage == GatewayStage.FAILED:
            raise ModelDowngradeExhaustedError(self.last_error) from error
        await self._notify(_STAGE_NOTICES[self.stage])

    async def invoke(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> LLMResponse:
        """Call the model, recovering from transient and compatibility errors.

        Raises:
            ModelDowngradeExhaustedError when every stage failed
            LLMAPIError when rate limiting persists past the retry budget
        """
        gw = self.config.gateway
        rate_retries = 0
        transient_retries = 0
        while True:
            if self.stage == GatewayStage.FAILED:
                raise ModelDowngradeExhaustedError(self.last_error or "model unavailable")
            try:
                return await self._call(messages, tools)
            except LLMError as e:
                error = e
            kind = classify_error(error)
            log.warning("Model call failed", kind=kind.value, stage=self.stage.value, error=str(error))

            if kind == ErrorKind.RATE_LIMIT:
                if rate_retries >= gw.max_rate_limit_retries:
                    raise LLMAPIError(
                        f"Rate limited after {rate_retries} retries: {error}",
                        status_code=429,
                    ) from error
                rate_retries += 1
                await self._sleep(gw.rate_limit_backoff_seconds)
                continue

            if kind in (ErrorKind.EMPTY_OUTPUT, ErrorKind.TIMEOUT):
                if transient_retries < gw.transient_retries:
                    transient_retries += 1
                    continue
                transient_retries = 0
                await self._downgrade(error)
                continue

            if kind == ErrorKind.VISION and self._strip_images(messages):
                self.vision_enabled = False
                await self._notify("The model cannot accept image input. Continuing without screenshots.")
                continue

            transient_retries = 0
            await self._downgrade(error)

    async def complete_once(self, messages: list[Message]) -> LLMResponse:
        """One-shot completion without tools."""
        return await self.invoke(messages, tools=None)

    async def stream(self, messages: list[Message]) -> AsyncIterator[str]:
        """Stream plain chat text; each chunk wait is bounded by the timeout."""
        provider = self._provider(reasoning=self.stage == GatewayStage.NORMAL)
        iterator = provider.complete_streaming(messages).__aiter__()
        while True:
            try:
                chunk = await asyncio.wait_for(iterator.__anext__(), timeout=self.timeout_seconds)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as e:
                raise LLMTimeoutError(self.timeout_seconds) from e
            if chunk:
                yield chunk
