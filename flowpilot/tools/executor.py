"""Tool call execution against a flow's graph store."""

import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Type
from dataclasses import dataclass, field

import pydantic
import structlog

from flowpilot.config import Settings, get_settings
from flowpilot.errors import NotFoundError, TransportError, ValidationError
from flowpilot.execution.server import ExecutionServer, wait_for_flow_completion
from flowpilot.graph.models import (
    METHODS_WITH_BODY,
    NODE_CONFIG_TYPES,
    AiConfig,
    ConditionConfig,
    Edge,
    Execution,
    FileKind,
    ForConfig,
    ForEachConfig,
    HttpAssertion,
    HttpBodyKind,
    HttpBodyRaw,
    HttpConfig,
    HttpHeader,
    HttpRequest,
    HttpSearchParam,
    JsConfig,
    Node,
    NodeKind,
    Position,
    Variable,
    WorkspaceFile,
    is_valid_id,
    new_id,
)
from flowpilot.graph.snapshot import latest_execution
from flowpilot.graph.store import GraphStore
from flowpilot.tools import commands as cmd
from flowpilot.tools.chain import ChainConnector
from flowpilot.tools.normalize import normalize_condition, normalize_node_name, wrap_js_code

logger = structlog.get_logger(__name__)

BLOCKED_DELETE_MESSAGE = (
    "Cannot delete a node you just created. If the node has an error, explain the issue to "
    "the user and suggest what they can do to fix it (e.g., adding an AI Provider node). "
    "Do NOT delete and recreate with a different node type."
)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Outcome of one tool call: either a result or an error string."""
    tool_call_id: str
    is_mutation: bool
    result: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def content(self) -> str:
        if self.error is not None:
            return self.error
        return json.dumps(self.result, default=str)


def describe_validation_error(error: pydantic.ValidationError) -> str:
    """Flatten pydantic errors into one readable sentence per problem."""
    messages = []
    for item in error.errors():
        ctx_error = (item.get("ctx") or {}).get("error")
        if item["type"] == "value_error" and ctx_error is not None:
            messages.append(str(ctx_error))
            continue
        location = ".".join(str(part) for part in item["loc"])
        messages.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(messages)


def truncate_payload(data: Any, limit: int) -> Any:
    """Replace payloads longer than ``limit`` characters with a preview."""
    if data is None:
        return data
    text = data if isinstance(data, str) else json.dumps(data, default=str)
    if len(text) <= limit:
        return data
    return {
        "_truncated": True,
        "_originalLength": len(text),
        "preview": text[:limit] + "...",
    }


class ToolExecutor:
    """Validates tool calls and applies them to one flow.

    Every call yields a ToolResult; handler exceptions are turned into
    error strings so one bad call cannot abort the rest of its batch.
    """

    def __init__(
        self,
        store: GraphStore,
        flow_id: str,
        execution_server: Optional[ExecutionServer] = None,
        workspace_id: Optional[str] = None,
        settings: Optional[Settings] = None
    ):
        self.store = store
        self.flow_id = flow_id
        self.execution_server = execution_server
        self.workspace_id = workspace_id
        self.settings = settings or get_settings()
        self.session_created_ids: Set[str] = set()
        self.chain = ChainConnector(store, flow_id, self.settings.default_source_handle)

        self._handlers: Dict[Type[cmd.ToolCommand], Callable[[Any], Awaitable[Any]]] = {
            cmd.ConnectChain: self._connect_chain,
            cmd.CreateAiNode: self._create_ai_node,
            cmd.CreateConditionNode: self._create_condition_node,
            cmd.CreateForNode: self._create_for_node,
            cmd.CreateForEachNode: self._create_for_each_node,
            cmd.CreateHttpNode: self._create_http_node,
            cmd.CreateJsNode: self._create_js_node,
            cmd.UpdateNode: self._update_node,
            cmd.PatchHttpNode: self._patch_http_node,
            cmd.DeleteNode: self._delete_node,
            cmd.DisconnectNodes: self._disconnect_nodes,
            cmd.InspectNode: self._inspect_node,
            cmd.GetFlowExecutionSummary: self._execution_summary,
            cmd.FlowRunRequest: self._flow_run,
            cmd.FlowStopRequest: self._flow_stop,
            cmd.CreateVariable: self._create_variable,
            cmd.UpdateVariable: self._update_variable,
        }
        missing = [c.tool_name for c in cmd.COMMAND_TYPES if c not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler registered for tools: {', '.join(missing)}")

    async def execute(self, call: ToolCall) -> ToolResult:
        command_type = cmd.COMMANDS.get(call.name)
        is_mutation = bool(command_type and command_type.is_mutation)
        started = time.monotonic()

        try:
            if command_type is None:
                raise ValidationError(f"Unknown tool: {call.name}")
            command = self.parse(command_type, call.arguments)
            result = await self._handlers[command_type](command)
        except Exception as e:
            logger.warning(
                "tool_call_failed",
                tool=call.name,
                tool_call_id=call.id,
                error=str(e),
            )
            return ToolResult(call.id, is_mutation, error=str(e))

        logger.info(
            "tool_call_completed",
            tool=call.name,
            tool_call_id=call.id,
            elapsed_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return ToolResult(call.id, is_mutation, result=result)

    @staticmethod
    def parse(command_type: Type[cmd.ToolCommand], arguments: Any) -> cmd.ToolCommand:
        try:
            return command_type.model_validate(arguments or {})
        except pydantic.ValidationError as e:
            raise ValidationError(describe_validation_error(e)) from e

    # Node creation

    def _new_node(self, command: cmd.NodeCreateCommand, kind: NodeKind) -> Node:
        position = Position()
        if command.position is not None:
            position = Position(x=command.position.x, y=command.position.y)
        return Node(
            id=new_id(),
            flow_id=self.flow_id,
            kind=kind,
            name=normalize_node_name(command.name),
            position=position,
        )

    async def _insert_node(self, node: Node, *records: Any) -> Dict[str, Any]:
        # node and config land in the same batch
        await self.store.insert([node, *records])
        self.session_created_ids.add(node.id)
        logger.info("node_created", flow_id=self.flow_id, node_id=node.id, kind=node.kind.value)
        return {"nodeId": node.id, "name": node.name}

    async def _create_ai_node(self, c: cmd.CreateAiNode) -> Dict[str, Any]:
        node = self._new_node(c, NodeKind.AI)
        return await self._insert_node(
            node, AiConfig(node_id=node.id, prompt=c.prompt, max_iterations=c.max_iterations)
        )

    async def _create_condition_node(self, c: cmd.CreateConditionNode) -> Dict[str, Any]:
        node = self._new_node(c, NodeKind.CONDITION)
        return await self._insert_node(
            node, ConditionConfig(node_id=node.id, condition=normalize_condition(c.condition))
        )

    async def _create_for_node(self, c: cmd.CreateForNode) -> Dict[str, Any]:
        node = self._new_node(c, NodeKind.FOR)
        return await self._insert_node(node, ForConfig(
            node_id=node.id,
            iterations=c.iterations,
            condition=normalize_condition(c.condition),
            error_handling=c.error_handling,
        ))

    async def _create_for_each_node(self, c: cmd.CreateForEachNode) -> Dict[str, Any]:
        node = self._new_node(c, NodeKind.FOR_EACH)
        return await self._insert_node(node, ForEachConfig(
            node_id=node.id,
            path=normalize_condition(c.path),
            condition=normalize_condition(c.condition),
            error_handling=c.error_handling,
        ))

    async def _create_js_node(self, c: cmd.CreateJsNode) -> Dict[str, Any]:
        node = self._new_node(c, NodeKind.JAVASCRIPT)
        return await self._insert_node(node, JsConfig(node_id=node.id, code=wrap_js_code(c.code)))

    async def _create_http_node(self, c: cmd.CreateHttpNode) -> Dict[str, Any]:
        node = self._new_node(c, NodeKind.HTTP)
        records: List[Any] = []

        if c.http_id:
            if not is_valid_id(c.http_id):
                raise ValidationError(f"Invalid httpId: {c.http_id}")
            if await self.store.get(HttpRequest, c.http_id) is None:
                raise NotFoundError("HTTP request", c.http_id)
            http_id = c.http_id
        else:
            http_id = new_id()
            needs_body = c.method in METHODS_WITH_BODY
            order = await self.store.next_order(
                WorkspaceFile, lambda f: f.workspace_id == self.workspace_id
            )
            records.append(HttpRequest(
                id=http_id,
                name=node.name,
                method=c.method,
                url=c.url,
                body_kind=HttpBodyKind.RAW if needs_body else HttpBodyKind.UNSPECIFIED,
            ))
            records.append(WorkspaceFile(
                id=http_id,
                workspace_id=self.workspace_id,
                kind=FileKind.HTTP,
                order=order,
            ))
            if c.body and needs_body:
                records.append(HttpBodyRaw(http_id=http_id, data=c.body))

        records.append(HttpConfig(node_id=node.id, http_id=http_id))
        result = await self._insert_node(node, *records)
        result["httpId"] = http_id
        return result

    # Node mutation

    async def _update_node(self, c: cmd.UpdateNode) -> Dict[str, Any]:
        node = await self._require_node(c.node_id)
        updated: List[str] = []
        changes: Dict[str, Any] = {}

        if c.name is not None:
            await self.store.update(Node, node.id, name=normalize_node_name(c.name))
            updated.append("name")

        if node.kind == NodeKind.AI:
            if c.prompt is not None:
                changes["prompt"] = c.prompt
                updated.append("prompt")
            if c.max_iterations is not None:
                changes["max_iterations"] = c.max_iterations
                updated.append("maxIterations")
        elif node.kind == NodeKind.CONDITION:
            if c.condition is not None:
                changes["condition"] = normalize_condition(c.condition)
                updated.append("condition")
        elif node.kind in (NodeKind.FOR, NodeKind.FOR_EACH):
            if node.kind == NodeKind.FOR and c.iterations is not None:
                changes["iterations"] = c.iterations
                updated.append("iterations")
            if node.kind == NodeKind.FOR_EACH and c.path is not None:
                changes["path"] = normalize_condition(c.path)
                updated.append("path")
            if c.condition is not None:
                changes["condition"] = normalize_condition(c.condition)
                updated.append("condition")
            if c.error_handling is not None:
                changes["error_handling"] = c.error_handling
                updated.append("errorHandling")
        elif node.kind == NodeKind.JAVASCRIPT:
            if c.code is not None:
                changes["code"] = wrap_js_code(c.code)
                updated.append("code")
        elif node.kind == NodeKind.HTTP:
            updated.extend(await self._update_http(node, c))

        if changes:
            await self.store.update(NODE_CONFIG_TYPES[node.kind], node.id, **changes)

        if not updated:
            return {
                "success": False,
                "message": f'No applicable fields provided for {node.kind.value} node "{node.name}"',
            }
        return {"success": True, "updatedFields": updated}

    async def _update_http(self, node: Node, c: cmd.UpdateNode) -> List[str]:
        http_id = await self._http_id_for(node)
        request = await self.store.get(HttpRequest, http_id)
        if request is None:
            raise NotFoundError("HTTP request", http_id)

        effective_method = c.method or request.method
        body_given = "body" in c.model_fields_set
        if body_given and c.body is not None and effective_method not in METHODS_WITH_BODY:
            raise ValidationError(
                f"Cannot set body for {effective_method.value} requests. "
                "Only POST, PUT, and PATCH methods support a request body. "
                "Either change the method first or remove the body."
            )

        updated: List[str] = []
        changes: Dict[str, Any] = {}
        if c.method is not None:
            changes["method"] = c.method
            updated.append("method")
        if c.url is not None:
            changes["url"] = c.url
            updated.append("url")
        if changes:
            await self.store.update(HttpRequest, http_id, **changes)

        if c.headers is not None:
            await self._replace_rows(HttpHeader, http_id, c.headers)
            updated.append("headers")
        if c.search_params is not None:
            await self._replace_rows(HttpSearchParam, http_id, c.search_params)
            updated.append("searchParams")

        if c.clears_body:
            await self._clear_body(http_id)
            updated.append("body")
        elif body_given:
            await self._set_body(http_id, c.body)
            updated.append("body")
        elif c.method is not None and effective_method not in METHODS_WITH_BODY:
            await self._clear_body(http_id)
            updated.append("body")

        if c.assertions is not None:
            await self._replace_rows(HttpAssertion, http_id, c.assertions)
            updated.append("assertions")

        return updated

    async def _patch_http_node(self, c: cmd.PatchHttpNode) -> Dict[str, Any]:
        node = await self._require_node(c.node_id)
        if node.kind != NodeKind.HTTP:
            raise ValidationError(f"patchHttpNode only works on HTTP nodes, got: {node.kind.value}")
        http_id = await self._http_id_for(node)

        patched: List[str] = []
        warnings: List[str] = []
        operations = (
            ("Headers", "header", HttpHeader, c.remove_header_ids, c.add_headers),
            ("SearchParams", "query param", HttpSearchParam, c.remove_search_param_ids, c.add_search_params),
            ("Assertions", "assertion", HttpAssertion, c.remove_assertion_ids, c.add_assertions),
        )

        for label, noun, row_type, remove_ids, additions in operations:
            if remove_ids:
                owned = {
                    row.id for row in await self.store.query(row_type, lambda r: r.http_id == http_id)
                }
                removed = 0
                for row_id in remove_ids:
                    if row_id not in owned:
                        continue
                    await self.store.delete(row_type, row_id)
                    owned.discard(row_id)
                    removed += 1
                if removed:
                    patched.append(f"removed{label}({removed})")
                skipped = len(remove_ids) - removed
                if skipped:
                    warnings.append(
                        f"Skipped {skipped} {noun} ID(s) not belonging to this HTTP node."
                    )

            if additions:
                start = await self.store.next_order(row_type, lambda r: r.http_id == http_id)
                await self.store.insert([
                    self._http_row(row_type, http_id, item, start + i)
                    for i, item in enumerate(additions)
                ])
                patched.append(f"added{label}({len(additions)})")

        if not patched:
            result: Dict[str, Any] = {"success": False, "message": "No patch operations provided"}
        else:
            result = {"success": True, "patchedFields": patched}
        if warnings:
            result["warnings"] = warnings
        return result

    async def _delete_node(self, c: cmd.DeleteNode) -> Dict[str, Any]:
        if c.node_id in self.session_created_ids:
            return {"blocked": True, "message": BLOCKED_DELETE_MESSAGE}

        node = await self._require_node(c.node_id)
        incident = await self.store.query(
            Edge,
            lambda e: e.flow_id == self.flow_id and node.id in (e.source_id, e.target_id),
        )
        for edge in incident:
            await self.store.delete(Edge, edge.id)

        config_type = NODE_CONFIG_TYPES.get(node.kind)
        if config_type is not None and await self.store.get(config_type, node.id) is not None:
            await self.store.delete(config_type, node.id)
        await self.store.delete(Node, node.id)

        logger.info("node_deleted", flow_id=self.flow_id, node_id=node.id, edges=len(incident))
        return {"deletedEdges": len(incident), "success": True}

    async def _disconnect_nodes(self, c: cmd.DisconnectNodes) -> Dict[str, Any]:
        edge = await self.store.find_one(
            Edge, lambda e: e.id == c.edge_id and e.flow_id == self.flow_id
        )
        if edge is None:
            raise NotFoundError("Edge", c.edge_id)
        await self.store.delete(Edge, edge.id)
        return {"success": True}

    async def _connect_chain(self, c: cmd.ConnectChain) -> Dict[str, Any]:
        return await self.chain.connect(c.node_ids, c.source_handle)

    # Inspection

    async def _inspect_node(self, c: cmd.InspectNode) -> Dict[str, Any]:
        node = await self._require_node(c.node_id)
        result: Dict[str, Any] = {
            "id": node.id,
            "name": node.name,
            "kind": node.kind.value,
            "state": node.state.value,
        }
        if node.info:
            result["error"] = node.info
        result.update(await self._describe_config(node))

        latest = latest_execution(
            await self.store.query(Execution, lambda x: x.node_id == node.id)
        )
        if latest is not None:
            execution: Dict[str, Any] = {"state": latest.state.value}
            if latest.completed_at:
                execution["completedAt"] = latest.completed_at.isoformat()
            if latest.error:
                execution["error"] = latest.error
            if c.include_output:
                limit = self.settings.inspect_max_output_chars
                execution["input"] = truncate_payload(latest.input, limit)
                execution["output"] = truncate_payload(latest.output, limit)
            result["execution"] = execution

        return result

    async def _describe_config(self, node: Node) -> Dict[str, Any]:
        config_type = NODE_CONFIG_TYPES.get(node.kind)
        if config_type is None:
            return {}
        config = await self.store.get(config_type, node.id)
        if config is None:
            return {}

        if node.kind == NodeKind.CONDITION:
            return {"condition": config.condition}
        if node.kind == NodeKind.FOR:
            return {
                "iterations": config.iterations,
                "condition": config.condition,
                "errorHandling": config.error_handling.value,
            }
        if node.kind == NodeKind.FOR_EACH:
            return {
                "path": config.path,
                "condition": config.condition,
                "errorHandling": config.error_handling.value,
            }
        if node.kind == NodeKind.AI:
            return {"prompt": config.prompt, "maxIterations": config.max_iterations}
        if node.kind == NodeKind.JAVASCRIPT:
            return {"code": config.code}

        http_id = config.http_id
        request = await self.store.get(HttpRequest, http_id)
        body = await self.store.get(HttpBodyRaw, http_id)
        headers = await self._rows(HttpHeader, http_id)
        params = await self._rows(HttpSearchParam, http_id)
        assertions = await self._rows(HttpAssertion, http_id)

        described = {
            "httpId": http_id,
            "method": request.method.value if request else None,
            "url": request.url if request else "",
            "headers": [
                {"id": h.id, "key": h.key, "value": h.value, "enabled": h.enabled}
                for h in headers
            ],
            "searchParams": [
                {"id": p.id, "key": p.key, "value": p.value, "enabled": p.enabled}
                for p in params
            ],
            "assertions": [
                {"id": a.id, "value": a.value, "enabled": a.enabled} for a in assertions
            ],
        }
        if body is not None and body.data:
            described["body"] = body.data
        return described

    async def _execution_summary(self, c: cmd.GetFlowExecutionSummary) -> Dict[str, Any]:
        nodes = await self.store.query(Node, lambda n: n.flow_id == self.flow_id)
        node_ids = {n.id for n in nodes}

        by_node: Dict[str, List[Execution]] = {}
        for execution in await self.store.query(Execution, lambda x: x.node_id in node_ids):
            by_node.setdefault(execution.node_id, []).append(execution)

        executed = [
            {"id": n.id, "name": n.name, "state": latest_execution(by_node[n.id]).state.value}
            for n in nodes if n.id in by_node
        ]
        never_reached = [
            {"id": n.id, "kind": n.kind.value, "name": n.name}
            for n in nodes
            if n.kind != NodeKind.MANUAL_START and n.id not in by_node
        ]

        result: Dict[str, Any] = {
            "executedNodes": executed,
            "neverReachedNodes": never_reached,
        }
        if never_reached:
            result["warning"] = (
                f"{len(never_reached)} node(s) were never reached during execution. "
                "This may indicate an untaken branch or a wiring problem."
            )
        return result

    # Flow control

    async def _flow_run(self, c: cmd.FlowRunRequest) -> Dict[str, Any]:
        server = self._require_server()
        await server.run(self.flow_id)
        completed = await wait_for_flow_completion(self.store, self.flow_id, self.settings)
        if completed:
            message = "Flow execution completed. Use getFlowExecutionSummary to inspect results."
        else:
            message = (
                f"Flow still running after {self.settings.flow_run_timeout:g}s. "
                "Use getFlowExecutionSummary to inspect progress."
            )
        return {"success": True, "message": message}

    async def _flow_stop(self, c: cmd.FlowStopRequest) -> Dict[str, Any]:
        await self._require_server().stop(self.flow_id)
        return {"success": True, "message": "Flow execution stopped"}

    # Variables

    async def _create_variable(self, c: cmd.CreateVariable) -> Dict[str, Any]:
        order = c.order
        if order is None:
            order = await self.store.next_order(Variable, lambda v: v.flow_id == self.flow_id)
        variable = Variable(
            id=new_id(),
            flow_id=self.flow_id,
            key=c.key,
            value=c.value,
            enabled=c.enabled,
            order=order,
            description=c.description,
        )
        await self.store.insert(variable)
        return {"flowVariableId": variable.id}

    async def _update_variable(self, c: cmd.UpdateVariable) -> Dict[str, Any]:
        variable = await self.store.find_one(
            Variable, lambda v: v.id == c.flow_variable_id and v.flow_id == self.flow_id
        )
        if variable is None:
            raise NotFoundError("Variable", c.flow_variable_id)

        changes = {
            name: getattr(c, name)
            for name in ("key", "value", "enabled", "description", "order")
            if getattr(c, name) is not None
        }
        if changes:
            await self.store.update(Variable, variable.id, **changes)
        return {"success": True}

    # Helpers

    async def _require_node(self, node_id: str) -> Node:
        node = await self.store.find_one(
            Node, lambda n: n.id == node_id and n.flow_id == self.flow_id
        )
        if node is None:
            raise NotFoundError("Node", node_id)
        return node

    async def _http_id_for(self, node: Node) -> str:
        link = await self.store.get(HttpConfig, node.id)
        if link is None:
            raise ValidationError(f'HTTP node "{node.name}" has no associated HTTP request')
        return link.http_id

    def _require_server(self) -> ExecutionServer:
        if self.execution_server is None:
            raise TransportError("No execution server is configured")
        return self.execution_server

    async def _rows(self, row_type: Type[Any], http_id: str) -> List[Any]:
        rows = await self.store.query(row_type, lambda r: r.http_id == http_id)
        return sorted(rows, key=lambda r: r.order)

    async def _replace_rows(self, row_type: Type[Any], http_id: str, items: List[Any]) -> None:
        for row in await self.store.query(row_type, lambda r: r.http_id == http_id):
            await self.store.delete(row_type, row.id)
        if items:
            await self.store.insert([
                self._http_row(row_type, http_id, item, i) for i, item in enumerate(items)
            ])

    @staticmethod
    def _http_row(row_type: Type[Any], http_id: str, item: Any, order: int) -> Any:
        if row_type is HttpAssertion:
            return HttpAssertion(
                id=new_id(), http_id=http_id, value=item.value, enabled=item.enabled, order=order
            )
        return row_type(
            id=new_id(),
            http_id=http_id,
            key=item.key,
            value=item.value,
            enabled=item.enabled,
            description=item.description,
            order=order,
        )

    async def _set_body(self, http_id: str, data: str) -> None:
        await self.store.update(HttpRequest, http_id, body_kind=HttpBodyKind.RAW)
        if await self.store.get(HttpBodyRaw, http_id) is not None:
            await self.store.update(HttpBodyRaw, http_id, data=data)
        else:
            await self.store.insert(HttpBodyRaw(http_id=http_id, data=data))

    async def _clear_body(self, http_id: str) -> None:
        await self.store.update(HttpRequest, http_id, body_kind=HttpBodyKind.UNSPECIFIED)
        if await self.store.get(HttpBodyRaw, http_id) is not None:
            await self.store.update(HttpBodyRaw, http_id, data="")
