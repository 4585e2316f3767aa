"""Playbook data tools: list, fetch, save and delete playbooks, plus HITL pauses."""

import json
from typing import Any, Callable

from navreach.exceptions import PlaybookError, RemoteDataError
from navreach.logging import get_logger
from navreach.playbook import Playbook, PlaybookStore
from navreach.tools.registry import FunctionTool, Tool, ToolContext, ToolProvider

log = get_logger(__name__)


def _parse_json_field(args: dict[str, Any], key: str, default: Any) -> Any:
    raw = args.get(key)
    if raw in (None, ""):
        return default
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"{key} is not valid JSON: {e.msg}") from e


def playbook_data_tools(
    store: PlaybookStore,
    on_loaded: Callable[[Playbook], Any] | None = None,
) -> ToolProvider:
    """Return a provider that builds the playbook data tools for a request."""

    async def get_playbooks(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        try:
            playbooks = await store.list_playbooks(context.access_token)
        except (PlaybookError, RemoteDataError) as e:
            return {"success": False, "error": str(e)}
        log.debug("Fetched playbooks", count=len(playbooks))
        return {"success": True, "playbooks": playbooks}

    async def get_playbook_details(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        playbook_id = str(args.get("id") or "").strip()
        if not playbook_id:
            return {"success": False, "error": "id is required"}
        try:
            record = await store.get_playbook(playbook_id, context.access_token)
        except (PlaybookError, RemoteDataError) as e:
            return {"success": False, "error": str(e)}
        if record is None:
            return {"success": False, "error": "Playbook not found"}
        if on_loaded is not None:
            on_loaded(Playbook.from_record(record))
        return {"success": True, "playbook": record}

    async def save_playbook(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        try:
            record = {
                "id": str(args.get("id") or ""),
                "name": str(args.get("name") or "").strip(),
                "description": args.get("description") or "",
                "graph": {
                    "nodes": _parse_json_field(args, "nodes_json", []),
                    "edges": _parse_json_field(args, "edges_json", []),
                },
                "capabilities": _parse_json_field(args, "capabilities_json", {}),
                "execution_defaults": _parse_json_field(args, "execution_defaults_json", {}),
            }
            if not record["name"]:
                return {"success": False, "error": "name is required"}
            saved = await store.save_playbook(record, context.access_token)
        except (PlaybookError, RemoteDataError, ValueError) as e:
            return {"success": False, "error": str(e)}
        return {"success": True, "playbook": saved}

    async def delete_playbook(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        playbook_id = str(args.get("id") or "").strip()
        if not playbook_id:
            return {"success": False, "error": "id is required"}
        try:
            await store.delete_playbook(playbook_id, context.access_token)
        except (PlaybookError, RemoteDataError) as e:
            return {"success": False, "error": str(e)}
        return {"success": True}

    async def human_approval(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        message = args.get("message") or "Manual approval required to proceed."
        return {"success": True, "message": f"Approval Required: {message}", "needs_hitl": True}

    async def agent_pause(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        reason = args.get("reason")
        return {
            "success": True,
            "message": f"Agent Paused: {reason}" if reason else "Agent Paused",
            "needs_hitl": True,
            "variant": "pause",
        }

    def provider(context: ToolContext) -> list[Tool]:
        return [
            FunctionTool(
                name="db_get_playbooks",
                description="Fetch all available playbooks. Use this to find a playbook to run or inspect.",
                parameters={
                    "type": "object",
                    "properties": {
                        "refresh": {"type": "boolean", "description": "Whether to refresh the list. Always pass true."},
                    },
                },
                func=get_playbooks,
            ),
            FunctionTool(
                name="db_get_playbook_details",
                description="Fetch a playbook including its graph (nodes and edges).",
                parameters={
                    "type": "object",
                    "properties": {"id": {"type": "string", "description": "The ID of the playbook to fetch"}},
                    "required": ["id"],
                },
                func=get_playbook_details,
            ),
            FunctionTool(
                name="db_save_playbook",
                description="Create or update a playbook. Pass an empty id to create a new one.",
                parameters={
                    "type": "object",
                    "properties": {
                        "id": {"type": "string", "description": "The ID to update, or empty string for new."},
                        "name": {"type": "string", "description": "Name of the playbook"},
                        "description": {"type": "string", "description": "Short description."},
                        "nodes_json": {"type": "string", "description": "The nodes array as a JSON string."},
                        "edges_json": {"type": "string", "description": "The edges array as a JSON string."},
                        "capabilities_json": {"type": "string", "description": "Capability requirements as a JSON string."},
                        "execution_defaults_json": {"type": "string", "description": "Execution settings as a JSON string."},
                    },
                    "required": ["name", "nodes_json", "edges_json"],
                },
                func=save_playbook,
            ),
            FunctionTool(
                name="db_delete_playbook",
                description="Delete a playbook by ID.",
                parameters={
                    "type": "object",
                    "properties": {"id": {"type": "string", "description": "The ID of the playbook to delete"}},
                    "required": ["id"],
                },
                func=delete_playbook,
            ),
            FunctionTool(
                name="human_approval",
                description=(
                    "Pause execution and wait for human approval. Use this when a playbook node "
                    "requires manual confirmation before a sensitive action."
                ),
                parameters={
                    "type": "object",
                    "properties": {"message": {"type": "string", "description": "What needs approval."}},
                },
                func=human_approval,
                category="control",
            ),
            FunctionTool(
                name="agent_pause",
                description="Pause the agent so the user can take over or inspect the state.",
                parameters={
                    "type": "object",
                    "properties": {"reason": {"type": "string", "description": "Reason for pausing."}},
                },
                func=agent_pause,
                category="control",
            ),
        ]

    return provider
