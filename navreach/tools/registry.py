"""Tool registry, tool descriptors and dispatch."""

import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Literal

from pydantic import BaseModel, Field, model_validator

from navreach.exceptions import ToolExecutionError, ToolNotFoundError
from navreach.llm import ToolCall, ToolDefinition
from navreach.logging import get_logger
from navreach.protocol import Credentials
from navreach.tools.pacing import ToolPacer

log = get_logger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{[^{}]*\}\}")

ErrorKind = Literal["policy", "unknown", "execution", "skipped"]


@dataclass
class ToolContext:
    """Per-request values handed to every tool invocation."""

    session_id: str = ""
    is_playbook_run: bool = False
    speed: str = "normal"
    credentials_getter: Callable[[], Credentials | None] | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def credentials(self) -> Credentials | None:
        """Credentials as currently bound to the session."""
        if self.credentials_getter is None:
            return None
        return self.credentials_getter()

    @property
    def access_token(self) -> str | None:
        creds = self.credentials
        return creds.access_token if creds else None


class ToolResult(BaseModel):
    """Result from dispatching one tool call."""

    tool_call_id: str = ""
    tool_name: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    image: str | None = None
    is_error: bool = False
    error_kind: ErrorKind | None = None
    duration_ms: int = 0

    @model_validator(mode="after")
    def _normalize_failure_payload(self) -> "ToolResult":
        """Failed results always carry ``success: false`` and an error message."""
        if self.is_error:
            self.payload.setdefault("success", False)
            if not str(self.payload.get("error") or "").strip():
                self.payload["error"] = str(self.payload.get("message") or "Tool execution failed")
        return self

    @property
    def status(self) -> str:
        if self.error_kind == "skipped":
            return "skipped"
        return "error" if self.is_error else "success"

    @property
    def content(self) -> str:
        """Payload serialized for the conversation."""
        return json.dumps(self.payload, ensure_ascii=False, default=str)

    @classmethod
    def rejected(cls, call: ToolCall, error: str, kind: ErrorKind, **extra: Any) -> "ToolResult":
        payload: dict[str, Any] = {"success": False, "error": error}
        payload.update(extra)
        return cls(
            tool_call_id=call.id,
            tool_name=call.name,
            payload=payload,
            is_error=True,
            error_kind=kind,
        )


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}}
    category: str = "default"
    metered: bool = True

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """Execute the tool.

        Args:
            **kwargs: Tool arguments plus the injected ``_context``

        Returns:
            JSON-serializable result, a JSON string, or plain text
        """
        pass

    def get_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


ToolFunc = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]


class FunctionTool(Tool):
    """Tool descriptor wrapping an async ``func(arguments, context)``."""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any] | None = None,
        func: ToolFunc | None = None,
        category: str = "default",
        metered: bool = True,
    ):
        if func is None:
            raise ValueError(f"FunctionTool '{name}' needs a func")
        self.name = name
        self.description = description
        self.parameters = parameters or {"type": "object", "properties": {}}
        self.func = func
        self.category = category
        self.metered = metered

    async def execute(self, **kwargs: Any) -> Any:
        context = kwargs.pop("_context", None) or ToolContext()
        return await self.func(kwargs, context)


ToolProvider = Callable[[ToolContext], Iterable[Tool]]


def find_placeholder(call: ToolCall) -> str | None:
    """Return the first unresolved ``{{...}}`` token in the call arguments."""
    match = PLACEHOLDER_RE.search(call.arguments_json)
    return match.group(0) if match else None


def normalize_tool_output(raw: Any) -> tuple[dict[str, Any], str | None]:
    """Coerce a tool's return value into ``(payload, image_data_url)``."""
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"success": True, "message": raw}, None
        raw = parsed
    if raw is None:
        return {"success": True, "message": "Done"}, None
    if not isinstance(raw, dict):
        return {"success": True, "result": raw}, None

    payload = dict(raw)
    image = payload.get("image")
    if isinstance(image, str) and image.startswith("data:image/"):
        payload["image"] = "[image attached]"
        return payload, image
    return payload, None


class ToolRegistry:
    """Registry of the tools available to one request."""

    def __init__(self, pacer: ToolPacer | None = None, context: ToolContext | None = None):
        self._tools: dict[str, Tool] = {}
        self.pacer = pacer
        self.context = context or ToolContext()

    @classmethod
    def from_providers(
        cls,
        providers: Iterable[ToolProvider],
        context: ToolContext | None = None,
        pacer: ToolPacer | None = None,
    ) -> "ToolRegistry":
        """Build a registry from composable provider functions, first name wins."""
        registry = cls(pacer=pacer, context=context)
        for provider in providers:
            registry.register_many(provider(registry.context))
        return registry

    def register(self, tool: Tool) -> bool:
        """Register a tool.

        Returns:
            False when a tool with the same name is already registered
        """
        if not tool.name:
            raise ValueError("Tool must have a name")
        if tool.name in self._tools:
            log.warning("Dropping duplicate tool", tool=tool.name)
            return False
        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool
        return True

    def register_many(self, tools: Iterable[Tool]) -> list[str]:
        """Register tools in order and return the names that were dropped."""
        return [tool.name for tool in tools if not self.register(tool)]

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def resolve(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def get_definitions(self) -> list[ToolDefinition]:
        return [tool.get_definition() for tool in self._tools.values()]

    def is_metered(self, name: str) -> bool:
        tool = self._tools.get(name)
        return bool(tool is not None and tool.metered)

    def precheck(self, call: ToolCall) -> ToolResult | None:
        """Policy checks that reject a call without invoking the tool."""
        placeholder = find_placeholder(call)
        if placeholder is not None:
            log.warning("Rejected tool call with unresolved placeholder", tool=call.name, token=placeholder)
            return ToolResult.rejected(
                call,
                f"Unresolved template placeholder {placeholder} in arguments. "
                "Replace it with a concrete value and call the tool again.",
                "policy",
            )
        if call.name not in self._tools:
            return ToolResult.rejected(call, f"Unknown tool: {call.name}", "unknown")
        return None

    async def dispatch(self, call: ToolCall) -> ToolResult:
        """Execute a tool call and always return a ToolResult."""
        rejection = self.precheck(call)
        if rejection is not None:
            return rejection

        tool = self._tools[call.name]
        log.info("Executing tool", tool=call.name, args=call.arguments)
        started = time.perf_counter()
        try:
            raw = await tool.execute(**call.arguments, _context=self.context)
        except ToolExecutionError as e:
            return self._execution_failure(call, str(e), started)
        except Exception as e:
            log.error("Tool execution failed", tool=call.name, error=str(e))
            return self._execution_failure(call, str(e), started)
        duration_ms = int((time.perf_counter() - started) * 1000)

        payload, image = normalize_tool_output(raw)
        is_error = payload.get("success") is False
        log.info("Tool executed", tool=call.name, success=not is_error, duration_ms=duration_ms)

        if not is_error and self.pacer is not None:
            await self.pacer.pace(tool)

        return ToolResult(
            tool_call_id=call.id,
            tool_name=call.name,
            payload=payload,
            image=image,
            is_error=is_error,
            duration_ms=duration_ms,
        )

    @staticmethod
    def _execution_failure(call: ToolCall, message: str, started: float) -> ToolResult:
        result = ToolResult.rejected(call, message or "Tool execution failed", "execution")
        result.duration_ms = int((time.perf_counter() - started) * 1000)
        return result
