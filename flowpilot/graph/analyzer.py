"""Topology checks over a flow's nodes and edges."""

from collections import defaultdict, deque
from typing import Dict, List, Optional, Sequence, Set, TypeVar

from flowpilot.graph.models import NodeKind, SEQUENTIAL_KINDS

N = TypeVar("N")

DEFAULT_MIN_DEAD_ENDS = 3


def find_start(nodes: Sequence[N]) -> Optional[N]:
    """Return the ManualStart node, if any."""
    for node in nodes:
        if node.kind == NodeKind.MANUAL_START:
            return node
    return None


def _outgoing(edges: Sequence) -> Dict[str, List[str]]:
    adjacency: Dict[str, List[str]] = defaultdict(list)
    for edge in edges:
        adjacency[edge.source_id].append(edge.target_id)
    return adjacency


def reachable_from(start_id: str, edges: Sequence) -> Set[str]:
    """Forward BFS over edges; each node is visited at most once."""
    adjacency = _outgoing(edges)
    reachable: Set[str] = set()
    queue = deque([start_id])

    while queue:
        node_id = queue.popleft()
        if node_id in reachable:
            continue
        reachable.add(node_id)
        queue.extend(adjacency.get(node_id, ()))

    return reachable


def detect_orphans(nodes: Sequence[N], edges: Sequence) -> List[N]:
    """Nodes not reachable from ManualStart, excluding the start itself.

    Returns an empty list when the flow has no ManualStart node.
    """
    start = find_start(nodes)
    if start is None:
        return []

    reachable = reachable_from(start.id, edges)
    return [
        node for node in nodes
        if node.kind != NodeKind.MANUAL_START and node.id not in reachable
    ]


def detect_dead_ends(
    nodes: Sequence[N],
    edges: Sequence,
    min_dead_ends: int = DEFAULT_MIN_DEAD_ENDS
) -> List[N]:
    """Non-start leaves with incoming edges, when there are many of them.

    Candidates are only reported when there are more than ``min_dead_ends``
    of them and at least one non-start node has an outgoing edge.
    """
    has_outgoing = {edge.source_id for edge in edges}
    has_incoming = {edge.target_id for edge in edges}

    dead_ends = [
        node for node in nodes
        if node.kind != NodeKind.MANUAL_START
        and node.id in has_incoming
        and node.id not in has_outgoing
    ]
    interior = [
        node for node in nodes
        if node.kind != NodeKind.MANUAL_START and node.id in has_outgoing
    ]

    if len(dead_ends) > min_dead_ends and interior:
        return dead_ends
    return []


def find_endpoints(nodes: Sequence[N], edges: Sequence) -> List[N]:
    """Sequential nodes with no outgoing edge: where the next node attaches."""
    has_outgoing = {edge.source_id for edge in edges}
    return [
        node for node in nodes
        if node.kind in SEQUENTIAL_KINDS and node.id not in has_outgoing
    ]
