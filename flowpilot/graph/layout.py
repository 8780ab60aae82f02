"""Deterministic breadth-first layout of a flow."""

from collections import defaultdict, deque
from enum import Enum
from typing import Dict, List, Optional, Sequence
from dataclasses import dataclass, field

from flowpilot.config import get_settings
from flowpilot.graph.analyzer import find_start
from flowpilot.graph.models import Position


class Orientation(str, Enum):
    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"


@dataclass(frozen=True)
class LayoutConfig:
    """Layout parameters.

    ``spacing_primary`` separates levels along the flow direction,
    ``spacing_secondary`` separates siblings on the same level.
    """
    orientation: Orientation = Orientation.HORIZONTAL
    spacing_primary: float = 300.0
    spacing_secondary: float = 150.0
    start_x: float = 0.0
    start_y: float = 0.0


@dataclass
class LayoutResult:
    positions: Dict[str, Position] = field(default_factory=dict)
    levels: Dict[str, int] = field(default_factory=dict)


def default_horizontal_config() -> LayoutConfig:
    settings = get_settings()
    return LayoutConfig(
        orientation=Orientation.HORIZONTAL,
        spacing_primary=settings.layout_spacing_primary,
        spacing_secondary=settings.layout_spacing_secondary,
        start_x=settings.layout_start_x,
        start_y=settings.layout_start_y,
    )


def assign_levels(start_id: str, edges: Sequence) -> Dict[str, int]:
    """BFS levels from the start; the first assignment wins."""
    adjacency: Dict[str, List[str]] = defaultdict(list)
    for edge in edges:
        adjacency[edge.source_id].append(edge.target_id)

    levels = {start_id: 0}
    queue = deque([start_id])
    while queue:
        node_id = queue.popleft()
        for child in adjacency.get(node_id, ()):
            if child not in levels:
                levels[child] = levels[node_id] + 1
                queue.append(child)
    return levels


def layout_nodes(
    nodes: Sequence,
    edges: Sequence,
    config: Optional[LayoutConfig] = None,
    start_id: Optional[str] = None
) -> Optional[LayoutResult]:
    """Compute positions for every node reachable from the start.

    Returns None when there is no start node. Unreached nodes get no
    position and must be left where they are.
    """
    config = config or LayoutConfig()

    if start_id is None:
        start = find_start(nodes)
        if start is None:
            return None
        start_id = start.id

    node_ids = {node.id for node in nodes}
    if start_id not in node_ids:
        return None

    edges = [e for e in edges if e.source_id in node_ids and e.target_id in node_ids]
    levels = assign_levels(start_id, edges)

    # levels preserves BFS discovery order
    by_level: Dict[int, List[str]] = defaultdict(list)
    for node_id, level in levels.items():
        by_level[level].append(node_id)

    horizontal = config.orientation == Orientation.HORIZONTAL
    primary_origin = config.start_x if horizontal else config.start_y
    secondary_origin = config.start_y if horizontal else config.start_x

    result = LayoutResult(levels=dict(levels))
    for level in sorted(by_level):
        members = by_level[level]
        count = len(members)
        primary = primary_origin + level * config.spacing_primary
        for index, node_id in enumerate(members):
            secondary = secondary_origin + (index - (count - 1) / 2) * config.spacing_secondary
            if horizontal:
                result.positions[node_id] = Position(x=primary, y=secondary)
            else:
                result.positions[node_id] = Position(x=secondary, y=primary)

    return result
