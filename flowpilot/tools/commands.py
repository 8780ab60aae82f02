"""Tool commands the model can issue, one model per tool."""

from typing import Any, ClassVar, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from flowpilot.graph.models import ErrorHandling, HttpMethod, METHODS_WITH_BODY

VALID_METHODS = ", ".join(m.value for m in HttpMethod)


def _positive(name: str, value: Optional[int]) -> Optional[int]:
    if value is not None and value <= 0:
        raise ValueError(f"{name} must be a positive integer, got: {value}")
    return value


def _parse_method(value: Any) -> Any:
    if value is None or isinstance(value, HttpMethod):
        return value
    method = str(value).upper()
    if method not in HttpMethod.__members__:
        raise ValueError(f'Invalid HTTP method: "{value}". Valid methods: {VALID_METHODS}')
    return HttpMethod(method)


class ToolArgs(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class PositionArg(ToolArgs):
    x: float = 0.0
    y: float = 0.0


class KeyValueArg(ToolArgs):
    key: str
    value: str = Field(default="", description="Supports {{variable}} interpolation")
    enabled: bool = True
    description: str = ""


class AssertionArg(ToolArgs):
    value: str
    enabled: bool = True


class ToolCommand(ToolArgs):
    """Base for every tool command."""
    tool_name: ClassVar[str]
    tool_description: ClassVar[str]
    is_mutation: ClassVar[bool] = False


class NodeCreateCommand(ToolCommand):
    is_mutation: ClassVar[bool] = True

    name: str = Field(description="Node name; spaces are replaced with underscores")
    position: Optional[PositionArg] = Field(
        default=None, description="Canvas position; layout is recomputed after creation"
    )


class ConnectChain(ToolCommand):
    tool_name: ClassVar[str] = "connectChain"
    tool_description: ClassVar[str] = (
        "PREFERRED tool for ALL node connections. Connects nodes into a chain with optional "
        "parallel fan-out. Flat array: sequential chain. Nested array: parallel branches. "
        'Example: ["Start",["A","B"],"End"] creates Start→A, Start→B, A→End, B→End. '
        "For branching nodes (Condition, For, ForEach) the \"then\" handle is applied by default. "
        'Use sourceHandle "else" or "loop" for non-default branches and "ai_tools" to connect '
        "tool nodes to an Ai node."
    )
    is_mutation: ClassVar[bool] = True

    node_ids: List[Union[str, List[str]]] = Field(
        description=(
            'Ordered list of node IDs. ["A","B","C"] chains A→B→C. ["A",["B","C"],"D"] fans out '
            "A→B, A→C then fans in B→D, C→D. Minimum 2 elements. No consecutive nested arrays."
        )
    )
    source_handle: Optional[str] = Field(
        default=None,
        description='Handle for branching sources: "then", "else", "loop" or "ai_tools".',
    )


class CreateAiNode(NodeCreateCommand):
    tool_name: ClassVar[str] = "createAiNode"
    tool_description: ClassVar[str] = (
        "Create an AI agent node. It needs an AI Provider node connected by the user to run."
    )

    prompt: str = Field(default="", description="Prompt or system instructions for the agent")
    max_iterations: int = Field(default=5, description="Maximum agentic iterations, must be positive")

    @field_validator("max_iterations")
    @classmethod
    def _check_max_iterations(cls, value):
        return _positive("maxIterations", value)


class CreateConditionNode(NodeCreateCommand):
    tool_name: ClassVar[str] = "createConditionNode"
    tool_description: ClassVar[str] = (
        "Create a Condition node that routes to its then/else handles. "
        "Only create one when then and else lead to different destinations."
    )

    condition: str = Field(description="Branching expression (expr-lang syntax)")


class CreateForNode(NodeCreateCommand):
    tool_name: ClassVar[str] = "createForNode"
    tool_description: ClassVar[str] = "Create a For loop node running its loop handle a fixed number of times."

    iterations: Optional[int] = Field(default=None, description="Number of iterations, must be positive")
    condition: Optional[str] = Field(
        default=None, description="Break condition that exits the loop early when true"
    )
    error_handling: ErrorHandling = ErrorHandling.IGNORE

    @model_validator(mode="after")
    def _check_loop(self):
        if self.iterations is None:
            raise ValueError(
                "iterations is required for For nodes. Specify the number of times to iterate."
            )
        _positive("iterations", self.iterations)
        if not self.condition or not self.condition.strip():
            raise ValueError(
                "condition (break condition) is required for For nodes. "
                "Provide an expression that evaluates to true to exit the loop early. "
                "Example: Counter.count >= 10"
            )
        return self


class CreateForEachNode(NodeCreateCommand):
    tool_name: ClassVar[str] = "createForEachNode"
    tool_description: ClassVar[str] = (
        "Create a ForEach node iterating an array or object. "
        "Each iteration exposes { item, key } to the loop body."
    )

    path: Optional[str] = Field(default=None, description="Expression for the collection to iterate")
    condition: Optional[str] = Field(
        default=None, description="Break condition that exits the loop early when true"
    )
    error_handling: ErrorHandling = ErrorHandling.IGNORE

    @model_validator(mode="after")
    def _check_loop(self):
        if not self.path or not self.path.strip():
            raise ValueError(
                "path is required for ForEach nodes. "
                "Provide an expression for the array/object to iterate. "
                "Example: HTTP_Request.response.body.items"
            )
        if not self.condition or not self.condition.strip():
            raise ValueError(
                "condition (break condition) is required for ForEach nodes. "
                "Provide an expression that evaluates to true to exit the loop early. "
                "Example: ForEach_Loop.key >= 5"
            )
        return self


class CreateHttpNode(NodeCreateCommand):
    tool_name: ClassVar[str] = "createHttpNode"
    tool_description: ClassVar[str] = (
        "Create an HTTP request node. Pass httpId to reuse an existing request, "
        "otherwise method is required. All text fields support {{variable}} interpolation."
    )

    http_id: Optional[str] = Field(default=None, description="Existing HTTP request to attach")
    method: Optional[HttpMethod] = None
    url: str = Field(default="", description="Request URL, e.g. {{BASE_URL}}/api/users")
    body: Optional[str] = Field(default=None, description="Raw body; only for POST, PUT and PATCH")

    @field_validator("method", mode="before")
    @classmethod
    def _normalize_method(cls, value):
        return _parse_method(value)

    @model_validator(mode="after")
    def _check_request(self):
        if self.http_id:
            return self
        if self.method is None:
            raise ValueError(
                "method is required when creating a new HTTP node. "
                f"Valid methods: {VALID_METHODS}"
            )
        if self.body and self.method not in METHODS_WITH_BODY:
            raise ValueError(
                f"Cannot set body for {self.method.value} requests. "
                "Only POST, PUT, and PATCH methods support a request body."
            )
        return self


class CreateJsNode(NodeCreateCommand):
    tool_name: ClassVar[str] = "createJsNode"
    tool_description: ClassVar[str] = (
        'Create a JavaScript node. Provide the function body only; read upstream output via ctx["NodeName"].'
    )

    code: str = Field(description="Function body; it is wrapped in export default function(ctx)")


class UpdateNode(ToolCommand):
    tool_name: ClassVar[str] = "updateNode"
    tool_description: ClassVar[str] = (
        "Update any node's configuration in a single call. Provide nodeId and only the fields to "
        "change. Base fields (name) work on any node. Ai: prompt, maxIterations. Condition: "
        "condition. For: iterations, condition, errorHandling. ForEach: path, condition, "
        "errorHandling. JS: code. HTTP: method, url, headers, searchParams, body, assertions "
        "(arrays replace the existing set)."
    )
    is_mutation: ClassVar[bool] = True

    node_id: str
    name: Optional[str] = None
    prompt: Optional[str] = None
    max_iterations: Optional[int] = None
    condition: Optional[str] = None
    iterations: Optional[int] = None
    error_handling: Optional[ErrorHandling] = None
    path: Optional[str] = None
    code: Optional[str] = None
    method: Optional[HttpMethod] = None
    url: Optional[str] = None
    headers: Optional[List[KeyValueArg]] = Field(default=None, description="Replaces all headers")
    search_params: Optional[List[KeyValueArg]] = Field(
        default=None, description="Replaces all query parameters"
    )
    body: Optional[str] = Field(default=None, description="Raw body. Set to null to clear.")
    assertions: Optional[List[AssertionArg]] = Field(
        default=None, description="Replaces all assertions"
    )

    @field_validator("method", mode="before")
    @classmethod
    def _normalize_method(cls, value):
        return _parse_method(value)

    @field_validator("max_iterations")
    @classmethod
    def _check_max_iterations(cls, value):
        return _positive("maxIterations", value)

    @field_validator("iterations")
    @classmethod
    def _check_iterations(cls, value):
        return _positive("iterations", value)

    @property
    def clears_body(self) -> bool:
        return "body" in self.model_fields_set and self.body is None


class PatchHttpNode(ToolCommand):
    tool_name: ClassVar[str] = "patchHttpNode"
    tool_description: ClassVar[str] = (
        "Incrementally add or remove headers, query params, or assertions on an HTTP node "
        "without replacing the full set. Get item IDs from inspectNode."
    )
    is_mutation: ClassVar[bool] = True

    node_id: str
    add_headers: List[KeyValueArg] = Field(default_factory=list)
    remove_header_ids: List[str] = Field(default_factory=list)
    add_search_params: List[KeyValueArg] = Field(default_factory=list)
    remove_search_param_ids: List[str] = Field(default_factory=list)
    add_assertions: List[AssertionArg] = Field(default_factory=list)
    remove_assertion_ids: List[str] = Field(default_factory=list)


class DeleteNode(ToolCommand):
    tool_name: ClassVar[str] = "deleteNode"
    tool_description: ClassVar[str] = "Delete a node together with all of its edges."
    is_mutation: ClassVar[bool] = True

    node_id: str


class DisconnectNodes(ToolCommand):
    tool_name: ClassVar[str] = "disconnectNodes"
    tool_description: ClassVar[str] = "Remove one edge, using the id attribute of an <edge> element."
    is_mutation: ClassVar[bool] = True

    edge_id: str


class InspectNode(ToolCommand):
    tool_name: ClassVar[str] = "inspectNode"
    tool_description: ClassVar[str] = (
        "Inspect a node's full config and latest execution state. "
        "Set includeOutput to also get execution input/output payloads (can be large)."
    )

    node_id: str
    include_output: bool = False


class GetFlowExecutionSummary(ToolCommand):
    tool_name: ClassVar[str] = "getFlowExecutionSummary"
    tool_description: ClassVar[str] = (
        "Summarize the latest flow execution: which nodes ran and which were never reached."
    )


class FlowRunRequest(ToolCommand):
    tool_name: ClassVar[str] = "flowRunRequest"
    tool_description: ClassVar[str] = "Run the flow and wait for it to finish."


class FlowStopRequest(ToolCommand):
    tool_name: ClassVar[str] = "flowStopRequest"
    tool_description: ClassVar[str] = "Stop the running flow."


class CreateVariable(ToolCommand):
    tool_name: ClassVar[str] = "createVariable"
    tool_description: ClassVar[str] = (
        "Create a flow variable referenced as {{key}} from HTTP fields. Use it for values "
        "repeated across nodes such as a base URL."
    )

    key: str
    value: str = ""
    enabled: bool = True
    description: str = ""
    order: Optional[int] = None


class UpdateVariable(ToolCommand):
    tool_name: ClassVar[str] = "updateVariable"
    tool_description: ClassVar[str] = "Update fields of an existing flow variable."

    flow_variable_id: str
    key: Optional[str] = None
    value: Optional[str] = None
    enabled: Optional[bool] = None
    description: Optional[str] = None
    order: Optional[int] = None


COMMAND_TYPES: List[Type[ToolCommand]] = [
    ConnectChain,
    CreateAiNode,
    CreateConditionNode,
    CreateForNode,
    CreateForEachNode,
    CreateHttpNode,
    CreateJsNode,
    UpdateNode,
    PatchHttpNode,
    DeleteNode,
    DisconnectNodes,
    InspectNode,
    GetFlowExecutionSummary,
    FlowRunRequest,
    FlowStopRequest,
    CreateVariable,
    UpdateVariable,
]

COMMANDS: Dict[str, Type[ToolCommand]] = {cmd.tool_name: cmd for cmd in COMMAND_TYPES}


def tool_schema(command: Type[ToolCommand]) -> Dict[str, Any]:
    """OpenAI-style function definition for a command."""
    parameters = command.model_json_schema(by_alias=True)
    parameters.pop("title", None)
    return {
        "type": "function",
        "function": {
            "name": command.tool_name,
            "description": command.tool_description,
            "parameters": parameters,
        },
    }


def tool_schemas() -> List[Dict[str, Any]]:
    return [tool_schema(command) for command in COMMAND_TYPES]
