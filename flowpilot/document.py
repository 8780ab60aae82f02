"""YAML/JSON flow documents: load into a GraphStore and dump back out."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from flowpilot.errors import ValidationError
from flowpilot.graph.models import (
    AiConfig,
    ConditionConfig,
    Edge,
    ErrorHandling,
    Flow,
    ForConfig,
    ForEachConfig,
    HandleKind,
    HttpAssertion,
    HttpBodyKind,
    HttpBodyRaw,
    HttpConfig,
    HttpHeader,
    HttpMethod,
    HttpRequest,
    HttpSearchParam,
    JsConfig,
    Node,
    NodeKind,
    Position,
    Variable,
    is_valid_id,
    new_id,
)
from flowpilot.graph.store import GraphStore


def parse_flow_file(path: Path) -> Dict[str, Any]:
    """Read a flow document; JSON is accepted since it is valid YAML."""
    with open(path, 'r') as f:
        content = f.read()
    return parse_flow_string(content)


def parse_flow_string(content: str) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid flow document: {e}") from e

    if not isinstance(data, dict):
        raise ValidationError("Flow document must be a mapping")
    if not isinstance(data.get('name'), str):
        raise ValidationError("Required field 'name' is missing")
    for key in ('nodes', 'edges', 'variables'):
        if not isinstance(data.get(key, []), list):
            raise ValidationError(f"Field '{key}' must be a list")
    return data


def _enum(enum_type, value: Any, path: str):
    try:
        return enum_type(value)
    except ValueError as e:
        valid = ", ".join(member.value for member in enum_type)
        raise ValidationError(f"{path}: invalid value {value!r}. Valid values: {valid}") from e


def _entity_id(value: Any) -> str:
    """Keep a document id only if it is a canonical ULID; hand-written ids get a fresh one."""
    return value if is_valid_id(value) else new_id()


def _key_values(row_type, http_id: str, items: List[Dict[str, Any]]) -> List[Any]:
    return [
        row_type(
            id=_entity_id(item.get('id')),
            http_id=http_id,
            key=item['key'],
            value=str(item.get('value', '')),
            enabled=item.get('enabled', True),
            description=item.get('description', ''),
            order=index,
        )
        for index, item in enumerate(items)
    ]


def _node_records(node: Node, spec: Dict[str, Any], path: str) -> List[Any]:
    """Kind-specific config rows for one document node."""
    kind = node.kind

    if kind == NodeKind.JAVASCRIPT:
        return [JsConfig(node_id=node.id, code=spec.get('code', ''))]
    if kind == NodeKind.CONDITION:
        return [ConditionConfig(node_id=node.id, condition=spec.get('condition', ''))]
    if kind == NodeKind.AI:
        return [AiConfig(
            node_id=node.id,
            prompt=spec.get('prompt', ''),
            max_iterations=spec.get('max_iterations', 5),
        )]
    if kind == NodeKind.FOR:
        return [ForConfig(
            node_id=node.id,
            iterations=spec.get('iterations', 1),
            condition=spec.get('condition', ''),
            error_handling=_enum(ErrorHandling, spec.get('error_handling', 'ignore'), f"{path}.error_handling"),
        )]
    if kind == NodeKind.FOR_EACH:
        return [ForEachConfig(
            node_id=node.id,
            path=spec.get('path', ''),
            condition=spec.get('condition', ''),
            error_handling=_enum(ErrorHandling, spec.get('error_handling', 'ignore'), f"{path}.error_handling"),
        )]
    if kind == NodeKind.HTTP:
        http_id = _entity_id(spec.get('http_id'))
        body = spec.get('body')
        records: List[Any] = [
            HttpRequest(
                id=http_id,
                name=node.name,
                method=_enum(HttpMethod, str(spec.get('method', 'GET')).upper(), f"{path}.method"),
                url=spec.get('url', ''),
                body_kind=HttpBodyKind.RAW if body is not None else HttpBodyKind.UNSPECIFIED,
            ),
            HttpConfig(node_id=node.id, http_id=http_id),
        ]
        if body is not None:
            records.append(HttpBodyRaw(http_id=http_id, data=body))
        records.extend(_key_values(HttpHeader, http_id, spec.get('headers', [])))
        records.extend(_key_values(HttpSearchParam, http_id, spec.get('search_params', [])))
        records.extend(
            HttpAssertion(
                id=_entity_id(item.get('id')),
                http_id=http_id,
                value=str(item.get('value', '')),
                enabled=item.get('enabled', True),
                order=index,
            )
            for index, item in enumerate(spec.get('assertions', []))
        )
        return records
    return []


async def load_flow(store: GraphStore, data: Dict[str, Any]) -> str:
    """Insert a parsed document into ``store`` and return the flow id.

    Edges may reference nodes by id or by name. Ids that are not ULIDs
    only serve as references inside the document; stored entities get
    fresh ids.
    """
    flow_id = _entity_id(data.get('id'))
    records: List[Any] = [Flow(id=flow_id, name=data['name'], workspace_id=data.get('workspace_id'))]
    by_ref: Dict[str, str] = {}

    for index, spec in enumerate(data.get('nodes', [])):
        path = f"nodes[{index}]"
        if 'name' not in spec or 'kind' not in spec:
            raise ValidationError(f"{path}: 'name' and 'kind' are required")
        position = spec.get('position') or {}
        node = Node(
            id=_entity_id(spec.get('id')),
            flow_id=flow_id,
            kind=_enum(NodeKind, spec['kind'], f"{path}.kind"),
            name=spec['name'],
            position=Position(x=position.get('x', 0.0), y=position.get('y', 0.0)),
        )
        if spec.get('id') is not None:
            by_ref[str(spec['id'])] = node.id
        by_ref[node.id] = node.id
        by_ref.setdefault(node.name, node.id)
        records.append(node)
        records.extend(_node_records(node, spec, path))

    for index, spec in enumerate(data.get('edges', [])):
        path = f"edges[{index}]"
        source = by_ref.get(str(spec.get('from')))
        target = by_ref.get(str(spec.get('to')))
        if source is None or target is None:
            raise ValidationError(f"{path}: unknown node reference {spec.get('from')!r} -> {spec.get('to')!r}")
        records.append(Edge(
            id=_entity_id(spec.get('id')),
            flow_id=flow_id,
            source_id=source,
            target_id=target,
            source_handle=_enum(HandleKind, spec.get('handle', 'unspecified'), f"{path}.handle"),
        ))

    for index, spec in enumerate(data.get('variables', [])):
        records.append(Variable(
            id=_entity_id(spec.get('id')),
            flow_id=flow_id,
            key=spec['key'],
            value=str(spec.get('value', '')),
            enabled=spec.get('enabled', True),
            order=spec.get('order', index),
            description=spec.get('description', ''),
        ))

    await store.insert(records)
    return flow_id


async def _dump_node(store: GraphStore, node: Node) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        'id': node.id,
        'name': node.name,
        'kind': node.kind.value,
        'position': {'x': node.position.x, 'y': node.position.y},
    }

    if node.kind == NodeKind.JAVASCRIPT:
        config = await store.get(JsConfig, node.id)
        data['code'] = config.code if config else ''
    elif node.kind == NodeKind.CONDITION:
        config = await store.get(ConditionConfig, node.id)
        data['condition'] = config.condition if config else ''
    elif node.kind == NodeKind.AI:
        config = await store.get(AiConfig, node.id)
        if config:
            data.update(prompt=config.prompt, max_iterations=config.max_iterations)
    elif node.kind in (NodeKind.FOR, NodeKind.FOR_EACH):
        config = await store.get(ForConfig if node.kind == NodeKind.FOR else ForEachConfig, node.id)
        if config:
            if node.kind == NodeKind.FOR:
                data['iterations'] = config.iterations
            else:
                data['path'] = config.path
            data['condition'] = config.condition
            data['error_handling'] = config.error_handling.value
    elif node.kind == NodeKind.HTTP:
        data.update(await _dump_http(store, node.id))

    return data


async def _dump_http(store: GraphStore, node_id: str) -> Dict[str, Any]:
    link = await store.get(HttpConfig, node_id)
    if link is None:
        return {}
    request = await store.get(HttpRequest, link.http_id)
    if request is None:
        return {'http_id': link.http_id}

    data: Dict[str, Any] = {'http_id': request.id, 'method': request.method.value, 'url': request.url}
    body = await store.get(HttpBodyRaw, request.id)
    if body is not None:
        data['body'] = body.data

    for key, row_type in (('headers', HttpHeader), ('search_params', HttpSearchParam)):
        rows = sorted(
            await store.query(row_type, lambda r: r.http_id == request.id),
            key=lambda r: r.order,
        )
        if rows:
            data[key] = [
                {'id': r.id, 'key': r.key, 'value': r.value, 'enabled': r.enabled, 'description': r.description}
                for r in rows
            ]

    assertions = sorted(
        await store.query(HttpAssertion, lambda r: r.http_id == request.id),
        key=lambda r: r.order,
    )
    if assertions:
        data['assertions'] = [{'id': r.id, 'value': r.value, 'enabled': r.enabled} for r in assertions]
    return data


async def dump_flow(store: GraphStore, flow_id: str) -> Dict[str, Any]:
    """Serialise a flow back into document form, referencing nodes by id."""
    flow: Optional[Flow] = await store.get(Flow, flow_id)
    nodes = await store.query(Node, lambda n: n.flow_id == flow_id)
    edges = await store.query(Edge, lambda e: e.flow_id == flow_id)
    variables = sorted(
        await store.query(Variable, lambda v: v.flow_id == flow_id),
        key=lambda v: v.order,
    )

    document: Dict[str, Any] = {
        'id': flow_id,
        'name': flow.name if flow else flow_id,
        'nodes': [await _dump_node(store, node) for node in nodes],
        'edges': [],
    }
    for edge in edges:
        entry = {'id': edge.id, 'from': edge.source_id, 'to': edge.target_id}
        if edge.source_handle != HandleKind.UNSPECIFIED:
            entry['handle'] = edge.source_handle.value
        document['edges'].append(entry)

    if variables:
        document['variables'] = [
            {
                'id': v.id,
                'key': v.key,
                'value': v.value,
                'enabled': v.enabled,
                'order': v.order,
                'description': v.description,
            }
            for v in variables
        ]
    return document
