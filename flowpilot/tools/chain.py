"""Chain connect: expand a chain/fan-out spec into edges and apply them."""

from itertools import product
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import structlog

from flowpilot.errors import FlowPilotError, NotFoundError, ValidationError
from flowpilot.graph.models import (
    BRANCHING_KINDS,
    Edge,
    HandleKind,
    Node,
    NodeKind,
    VALID_HANDLES,
    is_valid_id,
    new_id,
)
from flowpilot.graph.store import GraphStore

logger = structlog.get_logger(__name__)

ChainElement = Union[str, List[str]]

OVERRIDE_HANDLES = (HandleKind.THEN, HandleKind.ELSE, HandleKind.LOOP, HandleKind.AI_TOOLS)


def validate_chain(elements: Sequence[ChainElement], handle: Optional[str] = None) -> None:
    """Reject a malformed chain before anything is written."""
    if not elements or len(elements) < 2:
        raise ValidationError("connectChain requires at least 2 elements.")

    for i in range(len(elements) - 1):
        if isinstance(elements[i], list) and isinstance(elements[i + 1], list):
            raise ValidationError(
                f"connectChain: consecutive nested arrays at positions {i} and {i + 1} are not "
                "allowed. Insert a shared fan-in node between the groups, or split into separate "
                'connectChain calls. Example: instead of ["A",["B","C"],["D","E"],"F"], use '
                '["A",["B","C"],"Mid"] then ["Mid",["D","E"],"F"].'
            )

    for i, element in enumerate(elements):
        if not isinstance(element, list):
            continue
        unique = set(element)
        if len(unique) < 2:
            raise ValidationError(
                f"connectChain: parallel group at position {i} must have at least 2 unique node IDs."
            )
        if len(unique) != len(element):
            raise ValidationError(
                f"connectChain: parallel group at position {i} contains duplicate node IDs."
            )

    if handle and handle not in [h.value for h in OVERRIDE_HANDLES]:
        raise ValidationError(
            f'Invalid sourceHandle "{handle}". Valid values: "then", "else", "loop", "ai_tools".'
        )


def expand_chain(elements: Sequence[ChainElement]) -> List[Tuple[str, str]]:
    """Cartesian product of each adjacent pair of elements."""
    pairs: List[Tuple[str, str]] = []
    for current, following in zip(elements, elements[1:]):
        sources = current if isinstance(current, list) else [current]
        targets = following if isinstance(following, list) else [following]
        pairs.extend(product(sources, targets))
    return pairs


class ChainConnector:
    """Applies expanded chain pairs to a flow one edge at a time."""

    def __init__(self, store: GraphStore, flow_id: str, default_handle: str = "then"):
        self.store = store
        self.flow_id = flow_id
        self.default_handle = HandleKind(default_handle)

    async def connect(
        self,
        elements: Sequence[ChainElement],
        handle: Optional[str] = None
    ) -> Dict[str, Any]:
        validate_chain(elements, handle)
        override = HandleKind(handle) if handle else None

        edge_ids: List[str] = []
        errors: List[str] = []

        # Applied in order; each pair sees the edges written before it.
        for idx, (source_id, target_id) in enumerate(expand_chain(elements)):
            try:
                edge_id = await self._connect_pair(idx, source_id, target_id, override, errors)
            except FlowPilotError as e:
                errors.append(f"Edge {idx}: {e}")
                continue
            if edge_id:
                edge_ids.append(edge_id)

        logger.info(
            "chain_connected",
            flow_id=self.flow_id,
            edges_created=len(edge_ids),
            errors=len(errors),
        )

        result: Dict[str, Any] = {"edgeIds": edge_ids, "edgesCreated": len(edge_ids)}
        if errors:
            result["errors"] = errors
        return result

    async def _connect_pair(
        self,
        idx: int,
        source_id: str,
        target_id: str,
        override: Optional[HandleKind],
        errors: List[str]
    ) -> Optional[str]:
        for node_id in (source_id, target_id):
            if not is_valid_id(node_id):
                raise ValidationError(f"Invalid node ID: {node_id}")

        source = await self._node(source_id)
        if source is None:
            raise NotFoundError("Node", source_id)
        if await self._node(target_id) is None:
            raise NotFoundError("Node", target_id)

        existing = await self.store.query(
            Edge,
            lambda e: e.flow_id == self.flow_id and e.source_id == source_id,
        )
        if any(e.target_id == target_id for e in existing):
            errors.append(
                f"Edge {idx}: Edge from {source_id} to {target_id} already exists. Skipped."
            )
            return None

        handle, problem = self._pick_handle(source, override)
        if problem:
            errors.append(f"Edge {idx}: {problem}")
            return None

        edge = Edge(
            id=new_id(),
            flow_id=self.flow_id,
            source_id=source_id,
            target_id=target_id,
            source_handle=handle,
        )
        await self.store.insert(edge)
        return edge.id

    def _pick_handle(
        self,
        source: Node,
        override: Optional[HandleKind]
    ) -> Tuple[HandleKind, Optional[str]]:
        """Return the handle for an edge leaving ``source`` and a skip reason, if any."""
        valid = VALID_HANDLES.get(source.kind)

        if source.kind in BRANCHING_KINDS:
            if override is None:
                return (self.default_handle if self.default_handle in valid else valid[0]), None
        elif source.kind == NodeKind.AI:
            if override is None:
                return HandleKind.UNSPECIFIED, None
        else:
            return HandleKind.UNSPECIFIED, None

        if override not in valid:
            return HandleKind.UNSPECIFIED, (
                f'Invalid sourceHandle "{override.value}" for {source.kind.value} node '
                f'"{source.name}". Valid handles: {", ".join(h.value for h in valid)}. Skipped.'
            )
        return override, None

    async def _node(self, node_id: str) -> Optional[Node]:
        return await self.store.find_one(
            Node, lambda n: n.id == node_id and n.flow_id == self.flow_id
        )
