"""Sessions and the controller that serves chat requests against them."""

import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from navreach.agent_loop import AgentLoop, AgentRunResult, LoopLimits
from navreach.config import Config, get_config
from navreach.events import Done, OutputChannel, TextChunk
from navreach.exceptions import NavreachError, PlaybookError, RemoteDataError, SessionNotFoundError
from navreach.gateway import GatewayStage, ModelGateway, ProviderFactory
from navreach.instructions import InstructionLoader
from navreach.llm import Message, create_provider
from navreach.logging import get_logger
from navreach.model_selection import EffectiveModelConfig, resolve_effective_config
from navreach.playbook import PlaybookExecutor, PlaybookStore
from navreach.protocol import ChatRequest, Credentials
from navreach.remote import RemoteDataClient
from navreach.tools.pacing import ToolPacer
from navreach.tools.playbook import playbook_data_tools
from navreach.tools.registry import ToolContext, ToolProvider, ToolRegistry
from navreach.usage import UsageBackend, UsageGuard
from navreach.workflows import Workflow, expand_workflow_alias, list_workflows

log = get_logger(__name__)


@dataclass
class Session:
    """State owned by one conversation host (a window, a terminal, ...)."""

    id: str
    credentials: Credentials | None = None
    stop_requested: bool = False
    gateway: ModelGateway | None = None
    registry: ToolRegistry | None = None
    running: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def get_credentials(self) -> Credentials | None:
        return self.credentials


class SessionController:
    """Entry point for hosts: open sessions, run chats, stop and refresh."""

    def __init__(
        self,
        config: Config | None = None,
        remote: RemoteDataClient | None = None,
        usage_backend: UsageBackend | None = None,
        playbook_store: PlaybookStore | None = None,
        tool_providers: Iterable[ToolProvider] | None = None,
        provider_factory: ProviderFactory = create_provider,
        instructions: InstructionLoader | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.config = config or get_config()
        self.remote = remote
        self.usage_backend = usage_backend
        self.playbook_store = playbook_store
        self.tool_providers: list[ToolProvider] = list(tool_providers or [])
        self.provider_factory = provider_factory
        self.instructions = instructions or InstructionLoader()
        missing = self.instructions.missing()
        if missing:
            log.warning("Prompt templates missing", templates=missing, base_dir=str(self.instructions.base_dir))
        self._sleep = sleep
        self._sessions: dict[str, Session] = {}

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def open_session(self, session_id: str | None = None) -> str:
        handle = session_id or uuid.uuid4().hex
        if handle not in self._sessions:
            self._sessions[handle] = Session(id=handle)
            log.info("Session opened", session_id=handle)
        return handle

    def get(self, handle: str) -> Session:
        session = self._sessions.get(handle)
        if session is None:
            raise SessionNotFoundError(handle)
        return session

    def close(self, handle: str) -> None:
        session = self._sessions.pop(handle, None)
        if session is not None:
            session.stop_requested = True
            log.info("Session closed", session_id=handle)

    def stop(self, handle: str) -> dict[str, Any]:
        """Request cancellation of the session's running request."""
        session = self._sessions.get(handle)
        if session is not None:
            session.stop_requested = True
            log.info("Stop requested", session_id=handle, running=session.running)
        return {"success": True}

    def refresh_credentials(self, handle: str, credentials: Credentials | dict[str, Any] | None) -> None:
        """Swap the session's credentials; the next tool or model call sees them."""
        if isinstance(credentials, dict):
            credentials = Credentials.model_validate(credentials)
        session = self._sessions.get(handle) or self._sessions.setdefault(handle, Session(id=handle))
        session.credentials = credentials
        log.debug("Credentials refreshed", session_id=handle, authenticated=credentials is not None)

    def list_workflows(self) -> list[Workflow]:
        return list_workflows(self.config.resolved_workflows_path())

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _gateway_for(self, session: Session, effective: EffectiveModelConfig) -> ModelGateway:
        gateway = session.gateway
        if gateway is None or gateway.model != effective or gateway.stage == GatewayStage.FAILED:
            kwargs: dict[str, Any] = {}
            if self._sleep is not None:
                kwargs["sleep"] = self._sleep
            gateway = ModelGateway(
                effective,
                config=self.config,
                provider_factory=self.provider_factory,
                **kwargs,
            )
            session.gateway = gateway
        return gateway

    def _build_messages(self, request: ChatRequest, system_prompt: str) -> list[Message]:
        messages = [Message(role="system", content=system_prompt)]
        for turn in request.conversation:
            if turn.role == "system":
                continue
            messages.append(Message(role=turn.role, content=turn.content))

        workflows_path = self.config.resolved_workflows_path()
        for message in reversed(messages):
            if message.role == "user":
                message.content = expand_workflow_alias(str(message.content or ""), workflows_path)
                break
        return messages

    def _system_prompt(self, request: ChatRequest, goal: str, executor: PlaybookExecutor | None) -> str:
        sections = [self.instructions.load("system_prompt.md")]
        if request.infinite_mode and goal:
            sections.append(self.instructions.render("infinite_directive.md", goal=goal))
        if executor is not None:
            playbook_section = executor.render_instructions()
            if playbook_section:
                sections.append(playbook_section)
        for turn in request.conversation:
            if turn.role == "system" and turn.content.strip():
                sections.append(turn.content.strip())
        if request.system_prompt and request.system_prompt.strip():
            sections.append(request.system_prompt.strip())
        return "\n\n".join(sections)

    async def _preload_playbook(self, executor: PlaybookExecutor, request: ChatRequest, session: Session) -> None:
        if not (request.is_playbook_run and request.playbook_id and self.playbook_store is not None):
            return
        token = session.credentials.access_token if session.credentials else None
        try:
            executor.load(await self.playbook_store.require_playbook(request.playbook_id, token))
        except (PlaybookError, RemoteDataError) as e:
            log.warning("Playbook preload failed", playbook_id=request.playbook_id, error=str(e))

    def _build_registry(
        self,
        session: Session,
        request: ChatRequest,
        executor: PlaybookExecutor,
    ) -> ToolRegistry:
        context = ToolContext(
            session_id=session.id,
            is_playbook_run=request.is_playbook_run,
            speed=request.speed,
            credentials_getter=session.get_credentials,
        )
        pacer_kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            pacer_kwargs["sleep"] = self._sleep
        pacer = ToolPacer(self.config.pacing, speed=request.speed, **pacer_kwargs)

        providers = list(self.tool_providers)
        if self.playbook_store is not None:
            providers.append(playbook_data_tools(self.playbook_store, on_loaded=executor.load))
        providers.append(executor.tool_provider)

        registry = ToolRegistry.from_providers(providers, context=context, pacer=pacer)
        log.debug("Tool registry built", session_id=session.id, tools=registry.list_tools())
        return registry

    async def chat(
        self,
        handle: str,
        request: ChatRequest | dict[str, Any],
        channel: OutputChannel,
    ) -> AgentRunResult:
        """Serve one conversational turn, streaming events into ``channel``.

        The channel always receives exactly one ``Done``, whatever happens.
        """
        if isinstance(request, dict):
            request = ChatRequest.model_validate(request)
        session = self._sessions.get(handle) or self._sessions[self.open_session(handle)]
        session.stop_requested = False
        if request.credentials is not None:
            session.credentials = request.credentials
        session.running = True

        log.info(
            "Chat request",
            session_id=session.id,
            tools_enabled=request.tools_enabled,
            max_iterations=request.max_iterations,
            infinite=request.infinite_mode,
            playbook=request.is_playbook_run,
        )
        try:
            return await self._chat(session, request, channel)
        except NavreachError as e:
            log.error("Chat request failed", session_id=session.id, error=str(e))
            if not channel.closed:
                await channel.send(TextChunk(f"Error: {e}", is_narration=True))
            return AgentRunResult(success=False, error=str(e))
        finally:
            session.running = False
            if not channel.closed:
                await channel.send(Done())

    async def _chat(self, session: Session, request: ChatRequest, channel: OutputChannel) -> AgentRunResult:
        goal = expand_workflow_alias(
            request.initial_user_prompt or request.last_user_message(),
            self.config.resolved_workflows_path(),
        )
        token = session.credentials.access_token if session.credentials else None
        effective = await resolve_effective_config(
            request.model_selection,
            request.provider_config,
            remote=self.remote,
            access_token=token,
            config=self.config,
        )
        gateway = self._gateway_for(session, effective)

        async def _notice(text: str) -> None:
            if not channel.closed:
                await channel.send(TextChunk(text, is_narration=True))

        gateway.notice_callback = _notice

        if not request.tools_enabled:
            messages = self._build_messages(request, self._system_prompt(request, goal, None))
            return await self._stream_plain(gateway, messages, channel)

        executor = PlaybookExecutor(
            channel.send,
            is_playbook_run=request.is_playbook_run,
            instructions=self.instructions,
            control_tool_name=self.config.playbook.control_tool_name,
        )
        await self._preload_playbook(executor, request, session)
        registry = self._build_registry(session, request, executor)
        session.registry = registry

        messages = self._build_messages(request, self._system_prompt(request, goal, executor))
        usage = UsageGuard(self.usage_backend, session.get_credentials, self.config.usage)
        loop = AgentLoop(
            gateway,
            registry,
            channel,
            usage=usage,
            should_stop=lambda: session.stop_requested,
            limits=LoopLimits(
                max_iterations=min(request.max_iterations, self.config.agent.max_iterations_cap),
                infinite_mode=request.infinite_mode,
            ),
            goal=goal,
            config=self.config,
            instructions=self.instructions,
        )
        try:
            return await loop.run(messages)
        finally:
            await usage.flush()

    async def _stream_plain(
        self,
        gateway: ModelGateway,
        messages: list[Message],
        channel: OutputChannel,
    ) -> AgentRunResult:
        """Plain chat without tools, streamed chunk by chunk."""
        parts: list[str] = []
        async for chunk in gateway.stream(messages):
            parts.append(chunk)
            await channel.send(TextChunk(chunk, is_narration=False))
        await channel.send(Done())
        return AgentRunResult(success=True, response="".join(parts), iterations=1)

    async def chat_once(self, request: ChatRequest | dict[str, Any]) -> dict[str, Any]:
        """One-shot completion without tools or streaming."""
        if isinstance(request, dict):
            request = ChatRequest.model_validate(request)
        token = request.credentials.access_token if request.credentials else None
        try:
            effective = await resolve_effective_config(
                request.model_selection,
                request.provider_config,
                remote=self.remote,
                access_token=token,
                config=self.config,
            )
            kwargs: dict[str, Any] = {}
            if self._sleep is not None:
                kwargs["sleep"] = self._sleep
            gateway = ModelGateway(effective, config=self.config, provider_factory=self.provider_factory, **kwargs)
            goal = request.initial_user_prompt or request.last_user_message()
            messages = self._build_messages(request, self._system_prompt(request, goal, None))
            response = await gateway.complete_once(messages)
        except NavreachError as e:
            log.error("One-shot chat failed", error=str(e))
            return {"success": False, "error": str(e)}
        return {"success": True, "response": response.text}
