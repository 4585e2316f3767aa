"""Custom exceptions for the NavReach engine."""


class NavreachError(Exception):
    """Base exception for the NavReach engine."""

    pass


class ConfigurationError(NavreachError):
    """Configuration-related errors."""

    pass


class UnsupportedProviderError(ConfigurationError):
    """Requested model provider type is not supported."""

    def __init__(self, provider: str):
        super().__init__(f"Unsupported provider type: {provider}")
        self.provider = provider


class LLMError(NavreachError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LLMTimeoutError(LLMError):
    """Model call exceeded the wall-clock timeout."""

    def __init__(self, timeout_seconds: float):
        label = int(timeout_seconds) if float(timeout_seconds).is_integer() else timeout_seconds
        super().__init__(f"Model call timed out after {label}s")
        self.timeout_seconds = timeout_seconds


class EmptyModelOutputError(LLMError):
    """Model produced neither text nor tool calls."""

    def __init__(self, message: str = "Model produced neither text nor tool calls"):
        super().__init__(message)


class ModelDowngradeExhaustedError(LLMError):
    """All downgrade stages failed for the current model."""

    def __init__(self, last_error: str):
        super().__init__(f"Model call failed after all recovery stages: {last_error}")
        self.last_error = last_error


class ToolError(NavreachError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ToolBlockedError(ToolError):
    """Tool execution blocked by policy."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Tool '{tool_name}' blocked: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class SessionError(NavreachError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class PlaybookError(NavreachError):
    """Playbook-related errors."""

    pass


class PlaybookNotFoundError(PlaybookError):
    """Playbook not found in the store."""

    def __init__(self, playbook_id: str):
        super().__init__(f"Playbook not found: {playbook_id}")
        self.playbook_id = playbook_id


class RemoteDataError(NavreachError):
    """Remote data service errors."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class OutputChannelClosedError(NavreachError):
    """An event was sent after the terminating Done event."""

    pass
