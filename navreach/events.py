"""Stream events and the one-directional output channel to the host."""

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Union

from navreach.config import get_config
from navreach.exceptions import OutputChannelClosedError


class _Event:
    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TextChunk(_Event):
    content: str
    is_narration: bool = False
    type: str = field(default="text_chunk", init=False)


@dataclass(frozen=True)
class ToolCallNotice(_Event):
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    type: str = field(default="tool_call", init=False)


@dataclass(frozen=True)
class ToolResultNotice(_Event):
    tool_call_id: str
    result: dict[str, Any] = field(default_factory=dict)
    status: str = "success"
    duration_ms: int = 0
    type: str = field(default="tool_result", init=False)


@dataclass(frozen=True)
class NodeStatusNotice(_Event):
    """Playbook node status relayed from the control tool."""

    node_id: str
    status: str
    message: str | None = None
    playbook_id: str | None = None
    type: str = field(default="node_status", init=False)


@dataclass(frozen=True)
class NewTurnMarker(_Event):
    type: str = field(default="new_turn", init=False)


@dataclass(frozen=True)
class Done(_Event):
    type: str = field(default="done", init=False)


StreamEvent = Union[TextChunk, ToolCallNotice, ToolResultNotice, NodeStatusNotice, NewTurnMarker, Done]


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    return event.to_dict()


class OutputChannel:
    """Ordered event stream written by the engine and drained by the host.

    Exactly one ``Done`` is accepted; any send after it raises
    ``OutputChannelClosedError``.
    """

    def __init__(self, maxsize: int | None = None):
        size = get_config().channel.max_pending_events if maxsize is None else maxsize
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=max(0, int(size)))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: StreamEvent) -> None:
        if self._closed:
            raise OutputChannelClosedError(
                f"Cannot send {event.type!r} after the request finished"
            )
        if isinstance(event, Done):
            self._closed = True
        await self._queue.put(event)

    async def receive(self) -> StreamEvent:
        return await self._queue.get()

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        """Yield events up to and including ``Done``."""
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, Done):
                return

    async def drain(self) -> list[StreamEvent]:
        return [event async for event in self]
