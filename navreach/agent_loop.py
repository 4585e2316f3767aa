"""The agent loop: think, call tools, observe, decide whether to continue."""

import re
from collections import deque
from dataclasses import dataclass
from typing import Callable

from navreach.config import Config, get_config
from navreach.events import (
    Done,
    NewTurnMarker,
    OutputChannel,
    StreamEvent,
    TextChunk,
    ToolCallNotice,
    ToolResultNotice,
)
from navreach.exceptions import NavreachError
from navreach.gateway import ModelGateway
from navreach.instructions import InstructionLoader
from navreach.llm import LLMResponse, Message, ToolCall
from navreach.logging import get_logger
from navreach.narration import extract_narration, narration_key, raw_narration, sanitize_narration
from navreach.tools.registry import ToolRegistry, ToolResult
from navreach.usage import UsageDecision, UsageGuard

log = get_logger(__name__)

RECENT_CALL_WINDOW = 10
STOPPED_RESPONSE = "Stopped by user"
INFINITE_LIMIT_NOTICE = "Infinite mode safety limit reached. Stop or start a new request."


@dataclass
class LoopLimits:
    max_iterations: int = 10
    infinite_mode: bool = False


@dataclass
class AgentRunResult:
    success: bool
    response: str = ""
    error: str | None = None
    stopped: bool = False
    limit_reached: bool = False
    iterations: int = 0
    tool_calls: int = 0

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "response": self.response}
        return {"success": False, "error": self.error or "Unknown error"}


def _phrase_pattern(phrases: list[str]) -> re.Pattern[str] | None:
    cleaned = [re.escape(p.strip()) for p in phrases if p and p.strip()]
    if not cleaned:
        return None
    return re.compile(r"\b(" + "|".join(cleaned) + r")\b", re.IGNORECASE)


def _any_pattern(patterns: list[str]) -> re.Pattern[str] | None:
    cleaned = [p for p in patterns if p]
    if not cleaned:
        return None
    return re.compile("|".join(f"(?:{p})" for p in cleaned), re.IGNORECASE)


class AgentLoop:
    """Drives one request's model/tool rounds and writes events to a channel."""

    def __init__(
        self,
        gateway: ModelGateway,
        registry: ToolRegistry,
        channel: OutputChannel,
        usage: UsageGuard | None = None,
        should_stop: Callable[[], bool] | None = None,
        limits: LoopLimits | None = None,
        goal: str = "",
        config: Config | None = None,
        instructions: InstructionLoader | None = None,
    ):
        self.gateway = gateway
        self.registry = registry
        self.channel = channel
        self.usage = usage
        self._should_stop = should_stop or (lambda: False)
        self.limits = limits or LoopLimits()
        self.goal = goal
        self.config = config or get_config()
        self.instructions = instructions or InstructionLoader()

        agent_cfg = self.config.agent
        self._completion_re = _phrase_pattern(agent_cfg.completion_phrases)
        self._promissory_re = _any_pattern(agent_cfg.promissory_patterns)

        self.iterations = 0
        self.tool_calls_executed = 0
        self._pass_iterations = 0
        self._stall_corrections = 0
        self._consecutive_failures = 0
        self._recent_calls: deque[str] = deque(maxlen=RECENT_CALL_WINDOW)
        self._sent_narrations: set[str] = set()
        self._last_text = ""

    @property
    def iteration_cap(self) -> int:
        if self.limits.infinite_mode:
            return self.config.agent.infinite_iteration_ceiling
        return self.limits.max_iterations

    async def _emit(self, event: StreamEvent) -> None:
        await self.channel.send(event)

    async def run(self, messages: list[Message]) -> AgentRunResult:
        """Run until a terminal condition; always finishes the channel with ``Done``."""
        try:
            result = await self._run(messages)
        finally:
            if not self.channel.closed:
                await self._emit(Done())
        result.iterations = self.iterations
        result.tool_calls = self.tool_calls_executed
        log.info(
            "Agent run finished",
            success=result.success,
            stopped=result.stopped,
            iterations=self.iterations,
            tool_calls=self.tool_calls_executed,
        )
        return result

    def _stopped(self) -> AgentRunResult:
        log.info("Stop observed", iteration=self.iterations)
        return AgentRunResult(success=True, response=STOPPED_RESPONSE, stopped=True)

    async def _run(self, messages: list[Message]) -> AgentRunResult:
        while True:
            if self._should_stop():
                return self._stopped()

            if self.iterations >= self.iteration_cap:
                log.info("Iteration cap reached", cap=self.iteration_cap, infinite=self.limits.infinite_mode)
                if self.limits.infinite_mode:
                    await self._emit(TextChunk(INFINITE_LIMIT_NOTICE, is_narration=True))
                return AgentRunResult(success=True, response=self._last_text)

            self.iterations += 1
            self._pass_iterations += 1
            log.debug("Agent iteration", iteration=self.iterations, stage=self.gateway.stage.value)

            tools = self.registry.get_definitions()
            try:
                response = await self.gateway.invoke(messages, tools=tools or None)
            except NavreachError as e:
                log.error("Model call failed fatally", error=str(e))
                await self._emit(TextChunk(f"Error: {e}", is_narration=True))
                return AgentRunResult(success=False, error=str(e))

            if not response.tool_calls:
                outcome = await self._handle_text_turn(response, messages)
                if outcome is not None:
                    return outcome
                continue

            messages.append(Message(
                role="assistant",
                content=response.content,
                tool_calls=list(response.tool_calls),
            ))
            await self._emit_narration(response)

            outcome = await self._execute_tool_calls(response.tool_calls, messages)
            if outcome is not None:
                return outcome

    # ------------------------------------------------------------------
    # Text-only turns
    # ------------------------------------------------------------------

    def _is_complete(self, text: str) -> bool:
        return bool(self._completion_re and self._completion_re.search(text))

    def _is_promissory(self, text: str) -> bool:
        return bool(self._promissory_re and self._promissory_re.search(text))

    async def _handle_text_turn(self, response: LLMResponse, messages: list[Message]) -> AgentRunResult | None:
        """Return a terminal result, or ``None`` to run another iteration."""
        messages.append(Message(role="assistant", content=response.text))
        text = sanitize_narration(response.text)
        if text:
            self._last_text = text
            await self._emit(TextChunk(text, is_narration=False))

        if self._should_stop():
            return self._stopped()

        signal_text = f"{response.text}\n{raw_narration(response)}"
        if self._is_complete(signal_text):
            log.info("Completion phrase detected", iteration=self.iterations)
            return AgentRunResult(success=True, response=self._last_text)

        agent_cfg = self.config.agent
        if (
            self._is_promissory(signal_text)
            and self._pass_iterations <= agent_cfg.stall_check_iterations
            and self._stall_corrections < agent_cfg.max_stall_corrections
        ):
            self._stall_corrections += 1
            log.info("Stalled narration, requesting action", correction=self._stall_corrections)
            messages.append(Message(role="user", content=self.instructions.render("stall_correction.md")))
            return None

        if self.limits.infinite_mode and self.goal:
            log.info("Continuing infinite mode", iteration=self.iterations)
            messages.append(Message(
                role="user",
                content=self.instructions.render("continuation.md", goal=self.goal),
            ))
            self._pass_iterations = 0
            await self._emit(NewTurnMarker())
            return None

        return AgentRunResult(success=True, response=self._last_text)

    async def _emit_narration(self, response: LLMResponse) -> None:
        narration = extract_narration(response)
        if not narration:
            return
        key = narration_key(narration, response.tool_calls)
        if key in self._sent_narrations:
            return
        self._sent_narrations.add(key)
        await self._emit(TextChunk(narration, is_narration=True))

    # ------------------------------------------------------------------
    # Tool turns
    # ------------------------------------------------------------------

    def _tool_message(self, result: ToolResult) -> Message:
        content: str | list[dict] = result.content
        if result.image and self.gateway.vision_enabled:
            content = [
                {"type": "text", "text": result.content},
                {"type": "image_url", "image_url": {"url": result.image}},
            ]
        return Message(
            role="tool",
            content=content,
            tool_call_id=result.tool_call_id,
            tool_name=result.tool_name,
        )

    def _skip(self, calls: list[ToolCall], messages: list[Message], reason: str) -> list[ToolResult]:
        """Answer calls that will not run so no call is left unanswered."""
        results = []
        for call in calls:
            result = ToolResult.rejected(call, f"Skipped: {reason}", "skipped")
            messages.append(self._tool_message(result))
            results.append(result)
        return results

    async def _notify_result(self, call: ToolCall, result: ToolResult, announce: bool = True) -> None:
        if announce:
            await self._emit(ToolCallNotice(id=call.id, name=call.name, args=dict(call.arguments)))
        await self._emit(ToolResultNotice(
            tool_call_id=call.id,
            result=dict(result.payload),
            status=result.status,
            duration_ms=result.duration_ms,
        ))

    def _repeat_count(self, call: ToolCall) -> int:
        return sum(1 for signature in self._recent_calls if signature == call.signature)

    async def _execute_tool_calls(self, calls: list[ToolCall], messages: list[Message]) -> AgentRunResult | None:
        """Run calls strictly in order. Returns a terminal result or ``None``."""
        agent_cfg = self.config.agent
        failure_note: str | None = None

        for index, call in enumerate(calls):
            repeats = self._repeat_count(call)
            if repeats >= agent_cfg.max_identical_tool_calls:
                log.warning("Loop detected", tool=call.name, repeats=repeats)
                self._recent_calls.clear()
                result = ToolResult.rejected(
                    call,
                    f"Loop detected: {call.name} called {repeats} times with same args. Try a different approach.",
                    "policy",
                    suggestion="Use a different tool or different parameters to make progress.",
                )
                await self._emit(TextChunk(f"Loop detected - skipping repeated {call.name} call", is_narration=True))
                messages.append(self._tool_message(result))
                await self._notify_result(call, result)
                continue

            rejection = self.registry.precheck(call)
            if rejection is None and self.usage is not None and self.registry.is_metered(call.name):
                decision = await self.usage.check_and_increment()
                if decision == UsageDecision.LIMIT_REACHED:
                    self._skip(calls[index:], messages, "daily usage limit reached")
                    counter = self.usage.counter
                    notice = self.instructions.render(
                        "usage_limit.md",
                        count=counter.count if counter else "",
                        limit=counter.limit if counter else "",
                    )
                    await self._emit(TextChunk(notice, is_narration=False))
                    return AgentRunResult(success=True, response=notice, limit_reached=True)

            self._recent_calls.append(call.signature)
            await self._emit(ToolCallNotice(id=call.id, name=call.name, args=dict(call.arguments)))
            result = rejection or await self.registry.dispatch(call)
            if rejection is None:
                self.tool_calls_executed += 1
            messages.append(self._tool_message(result))
            await self._notify_result(call, result, announce=False)

            if result.error_kind == "execution":
                self._consecutive_failures += 1
                error = str(result.payload.get("error") or "")
                await self._emit(TextChunk(f"Error: {error}", is_narration=True))
                remaining = calls[index + 1:]
                if self._consecutive_failures >= agent_cfg.max_consecutive_tool_failures:
                    skipped = self._skip(remaining, messages, "request aborted after repeated tool failures")
                    for skipped_call, skipped_result in zip(remaining, skipped):
                        await self._notify_result(skipped_call, skipped_result)
                    message = (
                        f"Aborting after {self._consecutive_failures} consecutive tool failures. "
                        f"Last error: {error}"
                    )
                    log.error("Too many consecutive tool failures", count=self._consecutive_failures)
                    await self._emit(TextChunk(message, is_narration=True))
                    return AgentRunResult(success=False, error=message)
                for skipped_call, skipped in zip(remaining, self._skip(remaining, messages, f"{call.name} failed")):
                    await self._notify_result(skipped_call, skipped)
                failure_note = self.instructions.render("tool_failure.md", tool_name=call.name, error=error)
                break

            if result.error_kind is None:
                self._consecutive_failures = 0

            if self._should_stop():
                remaining = calls[index + 1:]
                for skipped_call, skipped in zip(remaining, self._skip(remaining, messages, STOPPED_RESPONSE.lower())):
                    await self._notify_result(skipped_call, skipped)
                return self._stopped()

        if failure_note:
            messages.append(Message(role="user", content=failure_note))
        return None
