"""Playbook graph model, storage and the status-relaying executor.

A playbook is a directed graph of automation nodes. The engine does not walk
the graph itself: the model receives the graph as instructions and reports its
progress through the ``report_node_status`` control tool, which the executor
relays to the host as ``NodeStatusNotice`` events.
"""

import json
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Awaitable, Callable

from pydantic import AliasChoices, BaseModel, Field, model_validator

from navreach.config import get_config
from navreach.events import NodeStatusNotice, StreamEvent
from navreach.exceptions import PlaybookNotFoundError, RemoteDataError
from navreach.instructions import InstructionLoader
from navreach.logging import get_logger
from navreach.remote import RemoteDataClient
from navreach.tools.registry import FunctionTool, Tool, ToolContext

log = get_logger(__name__)

NODE_STATUSES = ("running", "success", "error")

NODE_TYPE_INSTRUCTIONS: dict[str, str] = {
    "start": "Entry point. Report it and move on to the next node.",
    "end": "Final node. Report it, then summarize the run and stop.",
    "navigate": "Open the configured URL with the navigation tool and confirm the page loaded.",
    "click": "Click the configured element. Inspect the page first if the target is unclear.",
    "type": "Type the configured text into the configured field, then verify the value.",
    "scroll": "Scroll the page as configured and inspect what became visible.",
    "extract": "Read the page and extract the configured data. Keep the result for later nodes.",
    "analyze": "Analyze the gathered content as configured and state your conclusion briefly.",
    "loop": "Repeat the nodes inside the loop for each item or the configured count. Report the loop node as running on every pass.",
    "condition": "Evaluate the configured condition and follow only the matching outgoing edge.",
    "approval": "Call human_approval and wait for the user before continuing.",
    "pause": "Call agent_pause so the user can take over, then stop.",
    "wait": "Wait for the configured duration or page condition before continuing.",
}
DEFAULT_NODE_INSTRUCTION = "Perform this step using the most specific tool available for it."


class PlaybookNode(BaseModel):
    id: str
    type: str = "default"
    label: str = ""
    config: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _lift_editor_data(cls, value: Any) -> Any:
        """Accept editor-shaped nodes that keep label/config under ``data``."""
        if not isinstance(value, dict) or not isinstance(value.get("data"), dict):
            return value
        data = value["data"]
        merged = {k: v for k, v in value.items() if k != "data"}
        merged.setdefault("label", data.get("label", ""))
        config = data.get("config")
        if not isinstance(config, dict):
            config = {k: v for k, v in data.items() if k not in {"label", "config"}}
        merged.setdefault("config", config)
        return merged

    @property
    def instruction(self) -> str:
        return NODE_TYPE_INSTRUCTIONS.get(self.type, DEFAULT_NODE_INSTRUCTION)


class PlaybookEdge(BaseModel):
    source: str = Field(validation_alias=AliasChoices("source", "from"))
    target: str = Field(validation_alias=AliasChoices("target", "to"))


class PlaybookGraph(BaseModel):
    """Read-only node/edge graph of a playbook."""

    nodes: list[PlaybookNode] = Field(default_factory=list)
    edges: list[PlaybookEdge] = Field(default_factory=list)

    @property
    def node_ids(self) -> set[str]:
        return {node.id for node in self.nodes}

    def get_node(self, node_id: str) -> PlaybookNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def successors(self, node_id: str) -> list[str]:
        return [edge.target for edge in self.edges if edge.source == node_id]

    def ordered_nodes(self) -> list[PlaybookNode]:
        """Nodes in topological order; nodes on cycles follow in declaration order."""
        known = self.node_ids
        indegree = {node.id: 0 for node in self.nodes}
        for edge in self.edges:
            if edge.source in known and edge.target in known:
                indegree[edge.target] += 1

        queue = deque(node.id for node in self.nodes if indegree[node.id] == 0)
        seen: set[str] = set()
        ordered: list[str] = []
        while queue:
            node_id = queue.popleft()
            if node_id in seen:
                continue
            seen.add(node_id)
            ordered.append(node_id)
            for target in self.successors(node_id):
                if target not in indegree:
                    continue
                indegree[target] -= 1
                if indegree[target] == 0:
                    queue.append(target)

        ordered.extend(node.id for node in self.nodes if node.id not in seen)
        by_id = {node.id: node for node in self.nodes}
        return [by_id[node_id] for node_id in ordered]


class Playbook(BaseModel):
    id: str = ""
    name: str = ""
    description: str | None = None
    graph: PlaybookGraph = Field(default_factory=PlaybookGraph)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Playbook":
        graph = record.get("graph")
        if not isinstance(graph, dict):
            graph = {"nodes": record.get("nodes") or [], "edges": record.get("edges") or []}
        return cls(
            id=str(record.get("id") or ""),
            name=str(record.get("name") or ""),
            description=record.get("description"),
            graph=PlaybookGraph.model_validate(graph),
        )


class PlaybookStore(ABC):
    """Storage backend for playbook records."""

    @abstractmethod
    async def list_playbooks(self, access_token: str | None = None) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def get_playbook(self, playbook_id: str, access_token: str | None = None) -> dict[str, Any] | None:
        pass

    @abstractmethod
    async def save_playbook(self, record: dict[str, Any], access_token: str | None = None) -> dict[str, Any]:
        pass

    @abstractmethod
    async def delete_playbook(self, playbook_id: str, access_token: str | None = None) -> None:
        pass

    async def require_playbook(self, playbook_id: str, access_token: str | None = None) -> Playbook:
        record = await self.get_playbook(playbook_id, access_token)
        if record is None:
            raise PlaybookNotFoundError(playbook_id)
        return Playbook.from_record(record)


class InMemoryPlaybookStore(PlaybookStore):
    def __init__(self, records: list[dict[str, Any]] | None = None):
        self._records: dict[str, dict[str, Any]] = {}
        for record in records or []:
            self._records[str(record["id"])] = dict(record)

    async def list_playbooks(self, access_token: str | None = None) -> list[dict[str, Any]]:
        return [
            {k: v for k, v in record.items() if k != "graph"}
            for record in self._records.values()
        ]

    async def get_playbook(self, playbook_id: str, access_token: str | None = None) -> dict[str, Any] | None:
        record = self._records.get(playbook_id)
        return dict(record) if record is not None else None

    async def save_playbook(self, record: dict[str, Any], access_token: str | None = None) -> dict[str, Any]:
        data = dict(record)
        playbook_id = str(data.get("id") or "") or uuid.uuid4().hex
        if playbook_id in self._records:
            merged = {**self._records[playbook_id], **data}
        else:
            merged = {"version": "1.0.0", "visibility": "private", **data}
        merged["id"] = playbook_id
        self._records[playbook_id] = merged
        return dict(merged)

    async def delete_playbook(self, playbook_id: str, access_token: str | None = None) -> None:
        if self._records.pop(playbook_id, None) is None:
            raise PlaybookNotFoundError(playbook_id)


class RemotePlaybookStore(PlaybookStore):
    def __init__(self, client: RemoteDataClient):
        self.client = client

    async def list_playbooks(self, access_token: str | None = None) -> list[dict[str, Any]]:
        return await self.client.list_playbooks(access_token)

    async def get_playbook(self, playbook_id: str, access_token: str | None = None) -> dict[str, Any] | None:
        return await self.client.get_playbook(playbook_id, access_token)

    async def save_playbook(self, record: dict[str, Any], access_token: str | None = None) -> dict[str, Any]:
        if not access_token:
            raise RemoteDataError("Not authenticated", status_code=401)
        return await self.client.save_playbook(record, access_token)

    async def delete_playbook(self, playbook_id: str, access_token: str | None = None) -> None:
        await self.client.delete_playbook(playbook_id, access_token)


EventSink = Callable[[StreamEvent], Awaitable[None]]


class PlaybookExecutor:
    """Relays node status reports and renders playbook instructions."""

    def __init__(
        self,
        emit: EventSink,
        is_playbook_run: bool = False,
        instructions: InstructionLoader | None = None,
        control_tool_name: str | None = None,
    ):
        self._emit = emit
        self.is_playbook_run = is_playbook_run
        self.instructions = instructions or InstructionLoader()
        self.control_tool_name = control_tool_name or get_config().playbook.control_tool_name
        self.playbook: Playbook | None = None
        self.history: list[tuple[str, str]] = []

    def load(self, playbook: Playbook | dict[str, Any]) -> Playbook:
        """Bind the graph that status reports are checked against."""
        if isinstance(playbook, dict):
            playbook = Playbook.from_record(playbook)
        self.playbook = playbook
        log.info("Playbook loaded", playbook_id=playbook.id, nodes=len(playbook.graph.nodes))
        return playbook

    async def report(self, node_id: str, status: str, message: str | None = None) -> dict[str, Any]:
        """Handle one ``report_node_status`` call."""
        node_id = str(node_id or "").strip()
        status = str(status or "").strip().lower()
        if not node_id:
            return {"success": False, "error": "nodeId is required"}
        if status not in NODE_STATUSES:
            return {
                "success": False,
                "error": f"Invalid status '{status}'. Use one of: {', '.join(NODE_STATUSES)}",
            }

        if not self.is_playbook_run:
            log.debug("Suppressed node status outside playbook mode", node_id=node_id, status=status)
            return {"success": True, "nodeId": node_id, "status": status, "relayed": False}

        self.history.append((node_id, status))
        await self._emit(NodeStatusNotice(
            node_id=node_id,
            status=status,
            message=message,
            playbook_id=self.playbook.id if self.playbook else None,
        ))
        result: dict[str, Any] = {"success": True, "nodeId": node_id, "status": status, "relayed": True}
        if self.playbook is not None and node_id not in self.playbook.graph.node_ids:
            log.warning("Status reported for unknown node", node_id=node_id, playbook_id=self.playbook.id)
            result["warning"] = f"Node '{node_id}' is not part of the loaded playbook graph"
        return result

    def control_tool(self) -> Tool:
        async def _report(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
            return await self.report(
                args.get("nodeId") or args.get("node_id") or "",
                args.get("status") or "",
                args.get("message"),
            )

        return FunctionTool(
            name=self.control_tool_name,
            description=(
                "Report playbook node progress. Call with status 'running' immediately before "
                "starting a node and 'success' or 'error' immediately after finishing it."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "nodeId": {"type": "string", "description": "Id of the playbook node"},
                    "status": {"type": "string", "enum": list(NODE_STATUSES)},
                    "message": {"type": "string", "description": "Optional short status message"},
                },
                "required": ["nodeId", "status"],
            },
            func=_report,
            category="control",
            metered=False,
        )

    def tool_provider(self, context: ToolContext) -> list[Tool]:
        """Expose the control tool only in playbook mode."""
        return [self.control_tool()] if self.is_playbook_run else []

    def render_instructions(self) -> str:
        """System-prompt section for playbook runs; empty outside playbook mode."""
        if not self.is_playbook_run:
            return ""
        if self.playbook is None:
            return self.instructions.render(
                "playbook_discovery.md",
                control_tool=self.control_tool_name,
            )

        graph = self.playbook.graph
        node_lines = []
        for index, node in enumerate(graph.ordered_nodes(), start=1):
            line = f"{index}. [{node.id}] {node.label or node.type} (type: {node.type}): {node.instruction}"
            if node.config:
                line += f" Config: {json.dumps(node.config, ensure_ascii=False, default=str)}"
            node_lines.append(line)
        edge_lines = [f"- {edge.source} -> {edge.target}" for edge in graph.edges]

        return self.instructions.render(
            "playbook_instructions.md",
            playbook_name=self.playbook.name or self.playbook.id,
            playbook_id=self.playbook.id,
            control_tool=self.control_tool_name,
            node_list="\n".join(node_lines) or "(no nodes)",
            edge_list="\n".join(edge_lines) or "(no edges)",
        )
