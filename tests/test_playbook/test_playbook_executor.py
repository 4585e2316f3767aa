import pytest

from navreach.events import NodeStatusNotice
from navreach.exceptions import PlaybookNotFoundError
from navreach.llm import ToolCall
from navreach.playbook import (
    InMemoryPlaybookStore,
    Playbook,
    PlaybookExecutor,
    PlaybookGraph,
)
from navreach.tools.registry import ToolContext, ToolRegistry


GRAPH_RECORD = {
    "id": "pb-7",
    "name": "Connect on LinkedIn",
    "nodes": [
        {"id": "end", "type": "end"},
        {"id": "click", "type": "click", "data": {"label": "Press connect", "selector": "button.connect"}},
        {"id": "start", "type": "start"},
        {"id": "nav", "type": "navigate", "data": {"label": "Open profile", "config": {"url": "https://linkedin.com/in/x"}}},
    ],
    "edges": [
        {"source": "start", "target": "nav"},
        {"from": "nav", "to": "click"},
        {"source": "click", "target": "end"},
    ],
}


def make_executor(is_playbook_run: bool = True):
    events = []

    async def emit(event):
        events.append(event)

    return PlaybookExecutor(emit, is_playbook_run=is_playbook_run), events


def test_graph_orders_nodes_topologically():
    playbook = Playbook.from_record(GRAPH_RECORD)
    assert [n.id for n in playbook.graph.ordered_nodes()] == ["start", "nav", "click", "end"]
    assert playbook.graph.get_node("click").config == {"selector": "button.connect"}
    assert playbook.graph.get_node("nav").config == {"url": "https://linkedin.com/in/x"}


def test_graph_with_cycle_keeps_every_node():
    graph = PlaybookGraph.model_validate({
        "nodes": [{"id": "a"}, {"id": "b"}, {"id": "c"}],
        "edges": [{"source": "a", "target": "b"}, {"source": "b", "target": "c"}, {"source": "c", "target": "b"}],
    })
    assert [n.id for n in graph.ordered_nodes()] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_report_relays_in_playbook_mode():
    executor, events = make_executor()
    executor.load(GRAPH_RECORD)

    result = await executor.report("nav", "running", "opening profile")

    assert result == {"success": True, "nodeId": "nav", "status": "running", "relayed": True}
    assert events == [NodeStatusNotice(node_id="nav", status="running", message="opening profile", playbook_id="pb-7")]
    assert executor.history == [("nav", "running")]


@pytest.mark.asyncio
async def test_report_suppressed_outside_playbook_mode():
    executor, events = make_executor(is_playbook_run=False)

    result = await executor.report("nav", "success")

    assert result["relayed"] is False
    assert events == []


@pytest.mark.asyncio
async def test_report_validates_input():
    executor, events = make_executor()

    assert (await executor.report("", "running"))["success"] is False
    invalid = await executor.report("nav", "done")
    assert invalid["success"] is False
    assert "running, success, error" in invalid["error"]
    assert events == []


@pytest.mark.asyncio
async def test_report_unknown_node_still_relays_with_warning():
    executor, events = make_executor()
    executor.load(GRAPH_RECORD)

    result = await executor.report("ghost", "error")

    assert result["relayed"] is True
    assert "ghost" in result["warning"]
    assert len(events) == 1


@pytest.mark.asyncio
async def test_control_tool_through_registry():
    executor, events = make_executor()
    registry = ToolRegistry.from_providers([executor.tool_provider], context=ToolContext(is_playbook_run=True))

    assert registry.is_metered("report_node_status") is False
    result = await registry.dispatch(ToolCall(
        id="c1", name="report_node_status", arguments={"nodeId": "start", "status": "success"},
    ))

    assert result.payload["relayed"] is True
    assert events[0].node_id == "start"


def test_control_tool_hidden_outside_playbook_mode():
    executor, _ = make_executor(is_playbook_run=False)
    registry = ToolRegistry.from_providers([executor.tool_provider])
    assert registry.has_tool("report_node_status") is False


def test_render_instructions_lists_nodes_in_order():
    executor, _ = make_executor()
    assert "db_get_playbook_details" in executor.render_instructions()

    executor.load(GRAPH_RECORD)
    text = executor.render_instructions()

    assert 'playbook "Connect on LinkedIn" (id: pb-7)' in text
    assert text.index("[start]") < text.index("[nav]") < text.index("[click]") < text.index("[end]")
    assert "Open profile (type: navigate)" in text
    assert '"selector": "button.connect"' in text
    assert "- nav -> click" in text
    assert "report_node_status" in text


def test_render_instructions_empty_outside_playbook_mode():
    executor, _ = make_executor(is_playbook_run=False)
    executor.load(GRAPH_RECORD)
    assert executor.render_instructions() == ""


@pytest.mark.asyncio
async def test_store_require_playbook():
    store = InMemoryPlaybookStore([{"id": "pb-7", **GRAPH_RECORD}])

    playbook = await store.require_playbook("pb-7")

    assert playbook.name == "Connect on LinkedIn"
    with pytest.raises(PlaybookNotFoundError):
        await store.require_playbook("missing")
