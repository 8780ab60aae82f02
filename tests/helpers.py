"""Builders and fakes shared by the test suite."""

import asyncio
import copy
import json
from typing import Any, Dict, List, Optional

from flowpilot.agent.provider import Finish, ModelProvider, TextDelta, ToolCallDelta
from flowpilot.execution.server import ExecutionServer
from flowpilot.graph.models import Edge, Flow, HandleKind, Node, NodeKind, Position, new_id
from flowpilot.graph.store import GraphStore

# Marker response: the stream blocks until it is cancelled.
BLOCK = object()


def make_node(kind: NodeKind, name: str, flow_id: str = "flow", **kwargs) -> Node:
    return Node(id=new_id(), flow_id=flow_id, kind=kind, name=name, **kwargs)


def make_edge(
    source: Node,
    target: Node,
    flow_id: str = "flow",
    handle: HandleKind = HandleKind.UNSPECIFIED
) -> Edge:
    return Edge(
        id=new_id(),
        flow_id=flow_id,
        source_id=source.id,
        target_id=target.id,
        source_handle=handle,
    )


def text_response(content: str) -> List[Any]:
    return [TextDelta(content), Finish(finish_reason="stop")]


def tool_response(*calls, content: Optional[str] = None) -> List[Any]:
    """Events for an assistant turn issuing ``calls``.

    Each call is ``(name, arguments)`` or ``(name, arguments, call_id)``;
    arguments are split over two fragments the way providers stream them.
    """
    events: List[Any] = []
    if content:
        events.append(TextDelta(content))
    for index, call in enumerate(calls):
        name, arguments = call[0], call[1]
        call_id = call[2] if len(call) > 2 else f"call_{index + 1}"
        raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
        middle = len(raw) // 2
        events.append(ToolCallDelta(index=index, id=call_id, name=name, arguments=raw[:middle]))
        events.append(ToolCallDelta(index=index, arguments=raw[middle:]))
    events.append(Finish(finish_reason="tool_calls", usage={"total_tokens": 42}))
    return events


class FakeProvider(ModelProvider):
    """Replays scripted responses and records every request.

    A scripted response is a list of events, an exception to raise, an
    async callable receiving the request and returning events, or BLOCK.
    Once the script runs out every request gets a plain "Done." answer.
    """

    model = "fake-model"

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.requests: List[Dict[str, Any]] = []
        self.blocked = asyncio.Event()

    async def stream(self, system_prompt, messages, tools=None):
        request = {
            "system_prompt": system_prompt,
            "messages": copy.deepcopy(messages),
            "tools": tools,
        }
        self.requests.append(request)

        response = self.responses.pop(0) if self.responses else text_response("Done.")
        if response is BLOCK:
            self.blocked.set()
            await asyncio.Event().wait()
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = await response(request)

        for event in response:
            yield event


class FakeExecutionServer(ExecutionServer):
    """Records run/stop calls; a run finishes immediately unless ``hang``."""

    def __init__(self, store: GraphStore, hang: bool = False):
        self.store = store
        self.hang = hang
        self.runs: List[str] = []
        self.stops: List[str] = []

    async def run(self, flow_id: str) -> None:
        self.runs.append(flow_id)
        await self.store.update(Flow, flow_id, running=self.hang)

    async def stop(self, flow_id: str) -> None:
        self.stops.append(flow_id)
        await self.store.update(Flow, flow_id, running=False)


async def node_named(store: GraphStore, name: str) -> Node:
    node = await store.find_one(Node, lambda n: n.name == name)
    assert node is not None, f"no node named {name}"
    return node


__all__ = [
    "BLOCK",
    "FakeExecutionServer",
    "FakeProvider",
    "Position",
    "make_edge",
    "make_node",
    "node_named",
    "text_response",
    "tool_response",
]
