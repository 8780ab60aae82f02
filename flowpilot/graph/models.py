"""Workflow graph entities and enums."""

from enum import Enum
from typing import Any, ClassVar, Optional
from dataclasses import dataclass, field
from datetime import datetime

from ulid import ULID


def new_id() -> str:
    """Generate a new 128-bit sortable id in canonical form."""
    return str(ULID())


def is_valid_id(value: Any) -> bool:
    """Check whether a value is a canonical ULID string."""
    if not isinstance(value, str):
        return False
    try:
        ULID.from_str(value)
    except ValueError:
        return False
    return True


class NodeKind(str, Enum):
    """Kind of a workflow node."""
    MANUAL_START = "ManualStart"
    HTTP = "HTTP"
    JAVASCRIPT = "JavaScript"
    CONDITION = "Condition"
    FOR = "For"
    FOR_EACH = "ForEach"
    AI = "Ai"


class FlowItemState(str, Enum):
    """Execution state of a node or execution record."""
    IDLE = "Idle"
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILURE = "Failure"
    CANCELED = "Canceled"


class HandleKind(str, Enum):
    """Output port of a node."""
    UNSPECIFIED = "unspecified"
    THEN = "then"
    ELSE = "else"
    LOOP = "loop"
    AI_TOOLS = "ai_tools"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


class HttpBodyKind(str, Enum):
    UNSPECIFIED = "unspecified"
    RAW = "raw"


class ErrorHandling(str, Enum):
    """Loop behaviour when an iteration fails."""
    IGNORE = "ignore"
    BREAK = "break"


class FileKind(str, Enum):
    HTTP = "http"
    FLOW = "flow"


BRANCHING_KINDS = frozenset({NodeKind.CONDITION, NodeKind.FOR, NodeKind.FOR_EACH})
SEQUENTIAL_KINDS = frozenset({NodeKind.MANUAL_START, NodeKind.HTTP, NodeKind.JAVASCRIPT})
METHODS_WITH_BODY = frozenset({HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH})

VALID_HANDLES = {
    NodeKind.CONDITION: (HandleKind.THEN, HandleKind.ELSE),
    NodeKind.FOR: (HandleKind.THEN, HandleKind.LOOP),
    NodeKind.FOR_EACH: (HandleKind.THEN, HandleKind.LOOP),
    NodeKind.AI: (HandleKind.AI_TOOLS,),
}


@dataclass(frozen=True)
class Position:
    x: float = 0.0
    y: float = 0.0


@dataclass
class Flow:
    """A workflow graph container."""
    key_field: ClassVar[str] = "id"

    id: str
    name: str
    workspace_id: Optional[str] = None
    running: bool = False


@dataclass
class Node:
    """One step in a workflow graph."""
    key_field: ClassVar[str] = "id"

    id: str
    flow_id: str
    kind: NodeKind
    name: str
    position: Position = field(default_factory=Position)
    state: FlowItemState = FlowItemState.IDLE
    info: Optional[str] = None


@dataclass
class Edge:
    """Directed control-flow connection between two nodes."""
    key_field: ClassVar[str] = "id"

    id: str
    flow_id: str
    source_id: str
    target_id: str
    source_handle: HandleKind = HandleKind.UNSPECIFIED


@dataclass
class Variable:
    """Flow-scoped named value."""
    key_field: ClassVar[str] = "id"

    id: str
    flow_id: str
    key: str
    value: str = ""
    enabled: bool = True
    order: int = 0
    description: str = ""


@dataclass
class Execution:
    """Append-only record of one node execution."""
    key_field: ClassVar[str] = "id"

    id: str
    node_id: str
    name: str = ""
    state: FlowItemState = FlowItemState.IDLE
    completed_at: Optional[datetime] = None
    input: Any = None
    output: Any = None
    error: Optional[str] = None


@dataclass
class AiConfig:
    key_field: ClassVar[str] = "node_id"

    node_id: str
    prompt: str = ""
    max_iterations: int = 5


@dataclass
class ConditionConfig:
    key_field: ClassVar[str] = "node_id"

    node_id: str
    condition: str = ""


@dataclass
class ForConfig:
    key_field: ClassVar[str] = "node_id"

    node_id: str
    iterations: int
    condition: str
    error_handling: ErrorHandling = ErrorHandling.IGNORE


@dataclass
class ForEachConfig:
    key_field: ClassVar[str] = "node_id"

    node_id: str
    path: str
    condition: str
    error_handling: ErrorHandling = ErrorHandling.IGNORE


@dataclass
class JsConfig:
    key_field: ClassVar[str] = "node_id"

    node_id: str
    code: str = ""


@dataclass
class HttpConfig:
    """Links an HTTP node to its request definition."""
    key_field: ClassVar[str] = "node_id"

    node_id: str
    http_id: str


@dataclass
class HttpRequest:
    key_field: ClassVar[str] = "id"

    id: str
    name: str
    method: HttpMethod
    url: str = ""
    body_kind: HttpBodyKind = HttpBodyKind.UNSPECIFIED


@dataclass
class HttpHeader:
    key_field: ClassVar[str] = "id"

    id: str
    http_id: str
    key: str
    value: str = ""
    enabled: bool = True
    description: str = ""
    order: int = 0


@dataclass
class HttpSearchParam:
    key_field: ClassVar[str] = "id"

    id: str
    http_id: str
    key: str
    value: str = ""
    enabled: bool = True
    description: str = ""
    order: int = 0


@dataclass
class HttpAssertion:
    key_field: ClassVar[str] = "id"

    id: str
    http_id: str
    value: str
    enabled: bool = True
    order: int = 0


@dataclass
class HttpBodyRaw:
    key_field: ClassVar[str] = "http_id"

    http_id: str
    data: str = ""


@dataclass
class WorkspaceFile:
    """Workspace tree entry pointing at an HTTP request or flow."""
    key_field: ClassVar[str] = "id"

    id: str
    workspace_id: Optional[str]
    kind: FileKind
    order: int = 0


NODE_CONFIG_TYPES = {
    NodeKind.AI: AiConfig,
    NodeKind.CONDITION: ConditionConfig,
    NodeKind.FOR: ForConfig,
    NodeKind.FOR_EACH: ForEachConfig,
    NodeKind.JAVASCRIPT: JsConfig,
    NodeKind.HTTP: HttpConfig,
}


def entity_key(entity: Any) -> str:
    """Return the primary key of an entity."""
    return getattr(entity, type(entity).key_field)
