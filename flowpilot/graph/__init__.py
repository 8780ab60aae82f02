"""Workflow graph model, store contract, snapshots, analysis and layout."""

from flowpilot.graph.models import (
    Edge,
    Execution,
    Flow,
    FlowItemState,
    HandleKind,
    Node,
    NodeKind,
    Position,
    Variable,
    new_id,
)
from flowpilot.graph.store import GraphStore, InMemoryGraphStore
from flowpilot.graph.snapshot import FlowSnapshot, build_snapshot
from flowpilot.graph.analyzer import detect_dead_ends, detect_orphans, find_endpoints
from flowpilot.graph.layout import LayoutConfig, LayoutResult, Orientation, layout_nodes

__all__ = [
    # Model
    "Edge",
    "Execution",
    "Flow",
    "FlowItemState",
    "HandleKind",
    "Node",
    "NodeKind",
    "Position",
    "Variable",
    "new_id",

    # Store and snapshots
    "GraphStore",
    "InMemoryGraphStore",
    "FlowSnapshot",
    "build_snapshot",

    # Analysis and layout
    "detect_dead_ends",
    "detect_orphans",
    "find_endpoints",
    "LayoutConfig",
    "LayoutResult",
    "Orientation",
    "layout_nodes",
]
