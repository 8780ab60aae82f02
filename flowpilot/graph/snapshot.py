"""Point-in-time projection of a flow for prompts and tool reads."""

from typing import Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass

from flowpilot.graph.models import (
    Edge,
    Execution,
    FlowItemState,
    HandleKind,
    HttpConfig,
    HttpRequest,
    Node,
    NodeKind,
    Position,
    Variable,
)
from flowpilot.graph.store import GraphStore


@dataclass(frozen=True)
class NodeView:
    id: str
    name: str
    kind: NodeKind
    position: Position
    state: FlowItemState
    info: Optional[str] = None
    http_id: Optional[str] = None
    http_method: Optional[str] = None


@dataclass(frozen=True)
class EdgeView:
    id: str
    source_id: str
    target_id: str
    source_handle: HandleKind = HandleKind.UNSPECIFIED


@dataclass(frozen=True)
class VariableView:
    id: str
    key: str
    value: str
    enabled: bool


@dataclass(frozen=True)
class ExecutionView:
    id: str
    node_id: str
    name: str
    state: FlowItemState
    completed_at: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class FlowSnapshot:
    """Read-only view of one flow."""
    flow_id: str
    nodes: Tuple[NodeView, ...] = ()
    edges: Tuple[EdgeView, ...] = ()
    variables: Tuple[VariableView, ...] = ()
    executions: Tuple[ExecutionView, ...] = ()
    selected_node_ids: Tuple[str, ...] = ()

    def node(self, node_id: str) -> Optional[NodeView]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_names(self) -> Dict[str, str]:
        return {node.id: node.name for node in self.nodes}

    def with_selection(self, selected: Iterable[str]) -> "FlowSnapshot":
        return FlowSnapshot(
            flow_id=self.flow_id,
            nodes=self.nodes,
            edges=self.edges,
            variables=self.variables,
            executions=self.executions,
            selected_node_ids=tuple(selected),
        )


def latest_execution(executions: Iterable[Execution]) -> Optional[Execution]:
    """Pick the execution with the latest non-null completion time.

    Executions without ``completed_at`` only win when nothing has completed.
    """
    latest: Optional[Execution] = None
    for execution in executions:
        if latest is None:
            latest = execution
        elif execution.completed_at and (
            not latest.completed_at or execution.completed_at > latest.completed_at
        ):
            latest = execution
    return latest


async def build_snapshot(
    store: GraphStore,
    flow_id: str,
    selected_node_ids: Iterable[str] = ()
) -> FlowSnapshot:
    """Project the store's current state of a flow into a FlowSnapshot."""
    nodes: List[Node] = await store.query(Node, lambda n: n.flow_id == flow_id)
    node_ids = {node.id for node in nodes}

    edges: List[Edge] = await store.query(Edge, lambda e: e.flow_id == flow_id)
    variables: List[Variable] = await store.query(Variable, lambda v: v.flow_id == flow_id)
    executions: List[Execution] = await store.query(Execution, lambda x: x.node_id in node_ids)

    http_links = {
        link.node_id: link.http_id
        for link in await store.query(HttpConfig, lambda c: c.node_id in node_ids)
    }
    http_ids = set(http_links.values())
    http_methods = {
        request.id: request.method.value
        for request in await store.query(HttpRequest, lambda r: r.id in http_ids)
    }

    by_node: Dict[str, List[Execution]] = {}
    for execution in executions:
        by_node.setdefault(execution.node_id, []).append(execution)

    node_views = []
    for node in nodes:
        http_id = http_links.get(node.id) if node.kind == NodeKind.HTTP else None
        node_views.append(NodeView(
            id=node.id,
            name=node.name,
            kind=node.kind,
            position=node.position,
            state=node.state,
            info=node.info,
            http_id=http_id,
            http_method=http_methods.get(http_id) if http_id else None,
        ))

    execution_views = []
    for node_id, rows in by_node.items():
        latest = latest_execution(rows)
        execution_views.append(ExecutionView(
            id=latest.id,
            node_id=node_id,
            name=latest.name,
            state=latest.state,
            completed_at=latest.completed_at.isoformat() if latest.completed_at else None,
            error=latest.error,
        ))

    return FlowSnapshot(
        flow_id=flow_id,
        nodes=tuple(node_views),
        edges=tuple(
            EdgeView(e.id, e.source_id, e.target_id, e.source_handle) for e in edges
        ),
        variables=tuple(
            VariableView(v.id, v.key, v.value, v.enabled) for v in variables
        ),
        executions=tuple(execution_views),
        selected_node_ids=tuple(selected_node_ids),
    )
