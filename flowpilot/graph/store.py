"""Graph store interface and in-memory backend."""

import copy
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar, Union
from dataclasses import fields, replace

import structlog

from flowpilot.errors import ConflictError, NotFoundError
from flowpilot.graph.models import entity_key

logger = structlog.get_logger(__name__)

E = TypeVar("E")
Predicate = Callable[[Any], bool]


class GraphStore(ABC):
    """CRUD + predicate query store for workflow graph entities.

    Mutations may be applied optimistically; ``wait_for_sync`` resolves once
    everything written up to a timestamp has been confirmed durable.
    """

    @abstractmethod
    async def insert(self, entities: Union[Any, List[Any]]) -> None:
        """Insert one entity or a batch of entities atomically."""
        pass

    @abstractmethod
    async def update(self, entity_type: Type[E], key: str, **changes: Any) -> E:
        """Apply a partial update to the entity with the given key."""
        pass

    @abstractmethod
    async def delete(self, entity_type: Type[E], key: str) -> E:
        """Delete the entity with the given key and return it."""
        pass

    @abstractmethod
    async def query(
        self,
        entity_type: Type[E],
        predicate: Optional[Predicate] = None
    ) -> List[E]:
        """Return all entities of a type matching the predicate."""
        pass

    async def find_one(
        self,
        entity_type: Type[E],
        predicate: Optional[Predicate] = None
    ) -> Optional[E]:
        """Return the first matching entity or None."""
        rows = await self.query(entity_type, predicate)
        return rows[0] if rows else None

    async def get(self, entity_type: Type[E], key: str) -> Optional[E]:
        """Return the entity with the given key or None."""
        return await self.find_one(entity_type, lambda e: entity_key(e) == key)

    async def next_order(
        self,
        entity_type: Type[Any],
        predicate: Optional[Predicate] = None
    ) -> int:
        """Return one past the highest ``order`` in the scope, 0 when empty."""
        rows = await self.query(entity_type, predicate)
        orders = [row.order for row in rows if isinstance(getattr(row, "order", None), int)]
        return max(orders) + 1 if orders else 0

    @abstractmethod
    async def wait_for_sync(self, timestamp: Optional[float] = None) -> None:
        """Wait until mutations issued up to ``timestamp`` are durable."""
        pass


class InMemoryGraphStore(GraphStore):
    """Process-local store; every mutation is immediately durable."""

    def __init__(self):
        self._tables: Dict[type, Dict[str, Any]] = defaultdict(dict)
        self.last_mutation_at: float = 0.0

    async def insert(self, entities: Union[Any, List[Any]]) -> None:
        batch = entities if isinstance(entities, list) else [entities]

        seen = set()
        for entity in batch:
            key = (type(entity), entity_key(entity))
            if key in seen or key[1] in self._tables[key[0]]:
                raise ConflictError(f"{key[0].__name__} already exists: {key[1]}")
            seen.add(key)

        for entity in batch:
            self._tables[type(entity)][entity_key(entity)] = copy.deepcopy(entity)
        self._touch()

    async def update(self, entity_type: Type[E], key: str, **changes: Any) -> E:
        table = self._tables[entity_type]
        if key not in table:
            raise NotFoundError(entity_type.__name__, key)

        known = {f.name for f in fields(entity_type)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(
                f"Unknown fields for {entity_type.__name__}: {', '.join(sorted(unknown))}"
            )

        table[key] = replace(table[key], **copy.deepcopy(changes))
        self._touch()
        return copy.deepcopy(table[key])

    async def delete(self, entity_type: Type[E], key: str) -> E:
        table = self._tables[entity_type]
        if key not in table:
            raise NotFoundError(entity_type.__name__, key)
        removed = table.pop(key)
        self._touch()
        logger.debug("entity_deleted", entity_type=entity_type.__name__, key=key)
        return removed

    async def query(
        self,
        entity_type: Type[E],
        predicate: Optional[Predicate] = None
    ) -> List[E]:
        rows = self._tables[entity_type].values()
        return [
            copy.deepcopy(row) for row in rows
            if predicate is None or predicate(row)
        ]

    async def wait_for_sync(self, timestamp: Optional[float] = None) -> None:
        return None

    def _touch(self) -> None:
        self.last_mutation_at = time.time()
