import base64
import json

import pytest

from navreach.agent_loop import AgentLoop, LoopLimits
from navreach.config import Config
from navreach.events import (
    Done,
    NewTurnMarker,
    OutputChannel,
    TextChunk,
    ToolCallNotice,
    ToolResultNotice,
)
from navreach.exceptions import LLMAPIError
from navreach.gateway import ModelGateway
from navreach.llm import LLMProvider, LLMResponse, Message, ToolCall, ToolDefinition
from navreach.model_selection import EffectiveModelConfig
from navreach.protocol import Credentials
from navreach.tools.registry import FunctionTool, ToolRegistry
from navreach.usage import InMemoryUsageBackend, UsageGuard


def make_token(sub: str) -> str:
    def _segment(data: dict) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    return f"{_segment({'alg': 'none'})}.{_segment({'sub': sub})}.sig"


class ScriptedProvider(LLMProvider):
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        self.calls.append({"messages": list(messages), "tools": tools})
        item = self.responses.pop(0) if self.responses else LLMResponse(content="All done.")
        if isinstance(item, Exception):
            raise item
        return item

    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        if False:
            yield ""


async def no_sleep(seconds: float) -> None:
    return None


def call(name: str, call_id: str = "c1", **arguments) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


def make_loop(
    responses,
    tools=(),
    limits: LoopLimits | None = None,
    usage: UsageGuard | None = None,
    should_stop=None,
    goal: str = "",
):
    config = Config()
    provider = ScriptedProvider(responses)
    gateway = ModelGateway(
        EffectiveModelConfig(provider_type="openai", model_id="gpt-test"),
        config=config,
        provider_factory=lambda **kwargs: provider,
        sleep=no_sleep,
    )
    registry = ToolRegistry()
    registry.register_many(tools)
    channel = OutputChannel(maxsize=0)
    loop = AgentLoop(
        gateway,
        registry,
        channel,
        usage=usage,
        should_stop=should_stop,
        limits=limits,
        goal=goal,
        config=config,
    )
    return loop, provider, channel


def recording_tool(name: str, log: list, result=None, metered: bool = True) -> FunctionTool:
    async def _func(args, context):
        log.append((name, dict(args)))
        return result if result is not None else {"success": True, "tool": name}

    return FunctionTool(name=name, description=f"{name} tool", func=_func, metered=metered)


def failing_tool(name: str) -> FunctionTool:
    async def _func(args, context):
        raise RuntimeError("element not found")

    return FunctionTool(name=name, description="always fails", func=_func)


def initial_messages(text: str = "Open example.com") -> list[Message]:
    return [Message(role="system", content="sys"), Message(role="user", content=text)]


def tool_messages(messages: list[Message]) -> list[Message]:
    return [m for m in messages if m.role == "tool"]


@pytest.mark.asyncio
async def test_text_only_response_finishes_with_single_done():
    loop, provider, channel = make_loop([LLMResponse(content="Hello there.")])
    messages = initial_messages()

    result = await loop.run(messages)
    events = await channel.drain()

    assert result.success is True
    assert result.response == "Hello there."
    assert [type(e) for e in events] == [TextChunk, Done]
    assert events[0].is_narration is False
    assert messages[-1].role == "assistant"
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_tool_call_round_trip_emits_notices_and_tool_message():
    executed: list = []
    tool = recording_tool("browser_navigate", executed)
    loop, provider, channel = make_loop(
        [
            LLMResponse(content="Opening the page.", tool_calls=[call("browser_navigate", url="https://example.com")]),
            LLMResponse(content="The page is open."),
        ],
        tools=[tool],
    )
    messages = initial_messages()

    result = await loop.run(messages)
    events = await channel.drain()

    assert result.success is True
    assert executed == [("browser_navigate", {"url": "https://example.com"})]
    kinds = [type(e) for e in events]
    assert kinds == [TextChunk, ToolCallNotice, ToolResultNotice, TextChunk, Done]
    assert events[0].is_narration is True
    assert events[2].status == "success"
    tool_msgs = tool_messages(messages)
    assert len(tool_msgs) == 1
    assert tool_msgs[0].tool_call_id == "c1"
    assert json.loads(tool_msgs[0].content)["success"] is True
    assert result.tool_calls == 1


@pytest.mark.asyncio
async def test_unknown_tool_with_single_iteration():
    loop, provider, channel = make_loop(
        [LLMResponse(content="", tool_calls=[call("foo")])],
        limits=LoopLimits(max_iterations=1),
    )
    messages = initial_messages()

    result = await loop.run(messages)
    events = await channel.drain()

    assert result.success is True
    assert len(provider.calls) == 1
    result_events = [e for e in events if isinstance(e, ToolResultNotice)]
    assert len(result_events) == 1
    assert result_events[0].result == {"success": False, "error": "Unknown tool: foo"}
    assert result_events[0].status == "error"
    assert isinstance(events[-1], Done)
    assert sum(isinstance(e, Done) for e in events) == 1
    assert len(tool_messages(messages)) == 1


@pytest.mark.asyncio
async def test_placeholder_arguments_are_rejected_without_invoking_tool():
    executed: list = []
    tool = recording_tool("browser_type", executed)
    loop, provider, channel = make_loop(
        [
            LLMResponse(content="", tool_calls=[call("browser_type", text="Hi {{name}}")]),
            LLMResponse(content="I could not type."),
        ],
        tools=[tool],
    )
    messages = initial_messages()

    await loop.run(messages)

    assert executed == []
    payload = json.loads(tool_messages(messages)[0].content)
    assert payload["success"] is False
    assert "{{name}}" in payload["error"]


@pytest.mark.asyncio
async def test_every_tool_call_in_a_turn_gets_one_tool_message():
    executed: list = []
    tools = [recording_tool("browser_snapshot", executed), recording_tool("browser_scroll", executed)]
    loop, provider, channel = make_loop(
        [
            LLMResponse(
                content="",
                tool_calls=[
                    call("browser_snapshot", "a"),
                    call("missing_tool", "b"),
                    call("browser_scroll", "c", direction="down"),
                ],
            ),
            LLMResponse(content="Finished scrolling."),
        ],
        tools=tools,
    )
    messages = initial_messages()

    await loop.run(messages)

    assert [m.tool_call_id for m in tool_messages(messages)] == ["a", "b", "c"]
    assert [name for name, _ in executed] == ["browser_snapshot", "browser_scroll"]


@pytest.mark.asyncio
async def test_stop_after_tool_call_skips_remaining_calls():
    executed: list = []
    state = {"stop": False}

    async def _click(args, context):
        executed.append(args.get("ref"))
        state["stop"] = True
        return {"success": True}

    tool = FunctionTool(name="browser_click", description="click", func=_click)
    loop, provider, channel = make_loop(
        [
            LLMResponse(
                content="",
                tool_calls=[call("browser_click", "a", ref="e1"), call("browser_click", "b", ref="e2")],
            ),
        ],
        tools=[tool],
        should_stop=lambda: state["stop"],
    )
    messages = initial_messages()

    result = await loop.run(messages)
    events = await channel.drain()

    assert result.stopped is True
    assert result.response == "Stopped by user"
    assert executed == ["e1"]
    assert [m.tool_call_id for m in tool_messages(messages)] == ["a", "b"]
    results = [e for e in events if isinstance(e, ToolResultNotice)]
    assert [(e.tool_call_id, e.status) for e in results] == [("a", "success"), ("b", "skipped")]
    assert isinstance(events[-1], Done)
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_stop_before_first_iteration_calls_no_model():
    loop, provider, channel = make_loop([LLMResponse(content="never")], should_stop=lambda: True)

    result = await loop.run(initial_messages())
    events = await channel.drain()

    assert result.stopped is True
    assert provider.calls == []
    assert events == [Done()]


@pytest.mark.asyncio
async def test_iteration_cap_bounds_model_calls():
    executed: list = []
    tool = recording_tool("browser_scroll", executed)
    responses = [
        LLMResponse(content="", tool_calls=[call("browser_scroll", f"c{i}", amount=i)])
        for i in range(10)
    ]
    loop, provider, channel = make_loop(responses, tools=[tool], limits=LoopLimits(max_iterations=3))

    result = await loop.run(initial_messages())

    assert result.success is True
    assert len(provider.calls) == 3
    assert result.iterations == 3
    assert len(executed) == 3


@pytest.mark.asyncio
async def test_consecutive_tool_failures_abort_request():
    tool = failing_tool("browser_click")
    responses = [
        LLMResponse(content="", tool_calls=[call("browser_click", f"c{i}", ref=f"e{i}")])
        for i in range(5)
    ]
    loop, provider, channel = make_loop(responses, tools=[tool])
    messages = initial_messages()

    result = await loop.run(messages)
    events = await channel.drain()

    assert result.success is False
    assert "3 consecutive tool failures" in result.error
    assert len(provider.calls) == 3
    assert isinstance(events[-1], Done)
    corrective = [m for m in messages if m.role == "user" and "browser_click" in str(m.content)]
    assert len(corrective) == 2


@pytest.mark.asyncio
async def test_abort_turn_reports_trailing_calls_as_skipped():
    executed: list = []
    responses = [
        LLMResponse(content="", tool_calls=[call("browser_click", "a1", ref="e1")]),
        LLMResponse(content="", tool_calls=[call("browser_click", "a2", ref="e2")]),
        LLMResponse(
            content="",
            tool_calls=[call("browser_click", "a3", ref="e3"), call("browser_snapshot", "a4")],
        ),
    ]
    loop, provider, channel = make_loop(
        responses,
        tools=[failing_tool("browser_click"), recording_tool("browser_snapshot", executed)],
    )
    messages = initial_messages()

    result = await loop.run(messages)
    events = await channel.drain()

    assert result.success is False
    assert executed == []
    calls = [e.id for e in events if isinstance(e, ToolCallNotice)]
    results = [(e.tool_call_id, e.status) for e in events if isinstance(e, ToolResultNotice)]
    assert calls == ["a1", "a2", "a3", "a4"]
    assert results[-2:] == [("a3", "error"), ("a4", "skipped")]
    assert [m.tool_call_id for m in tool_messages(messages)][-2:] == ["a3", "a4"]
    assert isinstance(events[-1], Done)


@pytest.mark.asyncio
async def test_success_resets_consecutive_failure_count():
    executed: list = []
    responses = [
        LLMResponse(content="", tool_calls=[call("browser_click", "c1", ref="e1")]),
        LLMResponse(content="", tool_calls=[call("browser_click", "c2", ref="e2")]),
        LLMResponse(content="", tool_calls=[call("browser_snapshot", "c3")]),
        LLMResponse(content="", tool_calls=[call("browser_click", "c4", ref="e4")]),
        LLMResponse(content="Gave up on the button."),
    ]
    loop, provider, channel = make_loop(
        responses,
        tools=[failing_tool("browser_click"), recording_tool("browser_snapshot", executed)],
    )

    result = await loop.run(initial_messages())

    assert result.success is True
    assert len(provider.calls) == 5


@pytest.mark.asyncio
async def test_failure_skips_rest_of_turn():
    executed: list = []
    loop, provider, channel = make_loop(
        [
            LLMResponse(
                content="",
                tool_calls=[call("browser_click", "a", ref="e1"), call("browser_snapshot", "b")],
            ),
            LLMResponse(content="Could not click."),
        ],
        tools=[failing_tool("browser_click"), recording_tool("browser_snapshot", executed)],
    )
    messages = initial_messages()

    await loop.run(messages)
    events = await channel.drain()

    assert executed == []
    statuses = [e.status for e in events if isinstance(e, ToolResultNotice)]
    assert statuses == ["error", "skipped"]
    tool_msgs = tool_messages(messages)
    assert [m.tool_call_id for m in tool_msgs] == ["a", "b"]
    index_b = messages.index(tool_msgs[-1])
    assert messages[index_b + 1].role == "user"


@pytest.mark.asyncio
async def test_usage_limit_stops_before_tool_executes():
    executed: list = []
    token = make_token("user-1")
    usage = UsageGuard(
        InMemoryUsageBackend(limit=10, counts={"user-1": 10}),
        lambda: Credentials(access_token=token),
    )
    loop, provider, channel = make_loop(
        [LLMResponse(content="", tool_calls=[call("browser_click", "a"), call("browser_snapshot", "b")])],
        tools=[recording_tool("browser_click", executed), recording_tool("browser_snapshot", executed)],
        usage=usage,
    )
    messages = initial_messages()

    result = await loop.run(messages)
    events = await channel.drain()

    assert result.limit_reached is True
    assert executed == []
    assert result.to_dict()["response"].startswith("Daily AI action limit reached (10/10)")
    assert result.response != "Stopped by user"
    assert not any(isinstance(e, ToolCallNotice) for e in events)
    assert any(isinstance(e, TextChunk) and "10/10" in e.content for e in events)
    assert isinstance(events[-1], Done)
    assert len(tool_messages(messages)) == 2
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_usage_counts_only_metered_tools():
    executed: list = []
    token = make_token("user-2")
    backend = InMemoryUsageBackend(limit=1)
    usage = UsageGuard(backend, lambda: Credentials(access_token=token))
    loop, provider, channel = make_loop(
        [
            LLMResponse(
                content="",
                tool_calls=[call("report_node_status", "a", nodeId="n1", status="running"), call("browser_click", "b")],
            ),
            LLMResponse(content="Clicked."),
        ],
        tools=[
            recording_tool("report_node_status", executed, metered=False),
            recording_tool("browser_click", executed),
        ],
        usage=usage,
    )

    result = await loop.run(initial_messages())
    await usage.flush()

    assert result.success is True
    assert [name for name, _ in executed] == ["report_node_status", "browser_click"]
    assert backend.counts["user-2"] == 1


@pytest.mark.asyncio
async def test_infinite_mode_stops_on_completion_phrase():
    loop, provider, channel = make_loop(
        [LLMResponse(content="Done, [COMPLETE]")],
        limits=LoopLimits(max_iterations=10, infinite_mode=True),
        goal="Post daily updates",
    )

    result = await loop.run(initial_messages())
    events = await channel.drain()

    assert result.success is True
    assert len(provider.calls) == 1
    assert not any(isinstance(e, NewTurnMarker) for e in events)


@pytest.mark.asyncio
async def test_infinite_mode_continues_until_complete():
    loop, provider, channel = make_loop(
        [
            LLMResponse(content="Posted the first update."),
            LLMResponse(content="Posted the second update."),
            LLMResponse(content="Task complete."),
        ],
        limits=LoopLimits(max_iterations=1, infinite_mode=True),
        goal="Post daily updates",
    )
    messages = initial_messages()

    result = await loop.run(messages)
    events = await channel.drain()

    assert result.success is True
    assert len(provider.calls) == 3
    assert sum(isinstance(e, NewTurnMarker) for e in events) == 2
    continuations = [m for m in messages if m.role == "user" and "Post daily updates" in str(m.content)]
    assert len(continuations) == 2


@pytest.mark.asyncio
async def test_infinite_mode_safety_ceiling():
    loop, provider, channel = make_loop(
        [LLMResponse(content=f"Pass {i} posted.") for i in range(10)],
        limits=LoopLimits(infinite_mode=True),
        goal="Keep posting",
    )
    loop.config.agent.infinite_iteration_ceiling = 4

    result = await loop.run(initial_messages())
    events = await channel.drain()

    assert result.success is True
    assert len(provider.calls) == 4
    assert any(isinstance(e, TextChunk) and "safety limit" in e.content for e in events)


@pytest.mark.asyncio
async def test_loop_detection_rejects_repeated_identical_calls():
    executed: list = []
    responses = [
        LLMResponse(content="", tool_calls=[call("browser_snapshot", f"c{i}")])
        for i in range(4)
    ] + [LLMResponse(content="Stopping now.")]
    loop, provider, channel = make_loop(responses, tools=[recording_tool("browser_snapshot", executed)])
    messages = initial_messages()

    await loop.run(messages)

    assert len(executed) == 3
    last_payload = json.loads(tool_messages(messages)[-1].content)
    assert last_payload["error"].startswith("Loop detected: browser_snapshot called 3 times")
    assert "suggestion" in last_payload


@pytest.mark.asyncio
async def test_promissory_text_gets_stall_correction():
    executed: list = []
    loop, provider, channel = make_loop(
        [
            LLMResponse(content="I will open the page now."),
            LLMResponse(content="", tool_calls=[call("browser_navigate", url="https://example.com")]),
            LLMResponse(content="The page is open."),
        ],
        tools=[recording_tool("browser_navigate", executed)],
    )
    messages = initial_messages()

    result = await loop.run(messages)

    assert result.success is True
    assert len(executed) == 1
    assert len(provider.calls) == 3
    assert messages[3].role == "user"


@pytest.mark.asyncio
async def test_narration_emitted_once_per_signature():
    executed: list = []
    responses = [
        LLMResponse(content="Checking the page.", tool_calls=[call("browser_snapshot", "a")]),
        LLMResponse(content="Checking the page.", tool_calls=[call("browser_snapshot", "b")]),
        LLMResponse(content="Nothing changed."),
    ]
    loop, provider, channel = make_loop(responses, tools=[recording_tool("browser_snapshot", executed)])

    await loop.run(initial_messages())
    events = await channel.drain()

    narrations = [e.content for e in events if isinstance(e, TextChunk) and e.is_narration]
    assert narrations == ["Checking the page."]


@pytest.mark.asyncio
async def test_fatal_model_error_ends_request():
    errors = [LLMAPIError("boom", status_code=500) for _ in range(3)]
    loop, provider, channel = make_loop(errors)

    result = await loop.run(initial_messages())
    events = await channel.drain()

    assert result.success is False
    assert "boom" in result.error
    assert isinstance(events[-1], Done)
    assert sum(isinstance(e, Done) for e in events) == 1
