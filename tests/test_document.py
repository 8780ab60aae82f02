"""
Tests for loading and dumping flow documents.
"""

import pytest

from flowpilot.document import dump_flow, load_flow, parse_flow_file, parse_flow_string
from flowpilot.errors import ValidationError
from flowpilot.graph.store import InMemoryGraphStore
from flowpilot.tools.chain import ChainConnector
from flowpilot.graph.models import (
    ConditionConfig,
    Edge,
    HandleKind,
    HttpAssertion,
    HttpHeader,
    HttpMethod,
    HttpRequest,
    JsConfig,
    Node,
    NodeKind,
    Variable,
    is_valid_id,
)

SAMPLE = """
name: Fetch users
nodes:
  - name: Start
    kind: ManualStart
  - name: Get_Users
    kind: HTTP
    method: post
    url: "{{BASE_URL}}/users"
    body: '{"page": 1}'
    headers:
      - key: Accept
        value: application/json
    assertions:
      - value: response.status == 200
  - name: Has_Users
    kind: Condition
    condition: Get_Users.response.status == 200
  - name: Report
    kind: JavaScript
    code: return 1;
edges:
  - from: Start
    to: Get_Users
  - from: Get_Users
    to: Has_Users
  - from: Has_Users
    to: Report
    handle: else
variables:
  - key: BASE_URL
    value: https://api.test
"""


class TestParse:
    """Document-level validation."""

    def test_requires_mapping(self):
        with pytest.raises(ValidationError, match="must be a mapping"):
            parse_flow_string("- just\n- a list\n")

    def test_requires_name(self):
        with pytest.raises(ValidationError, match="'name' is missing"):
            parse_flow_string("nodes: []\n")

    def test_lists_only(self):
        with pytest.raises(ValidationError, match="'edges' must be a list"):
            parse_flow_string("name: x\nedges: {}\n")

    def test_invalid_yaml(self):
        with pytest.raises(ValidationError, match="Invalid flow document"):
            parse_flow_string("name: [unclosed\n")

    def test_parse_file(self, tmp_path):
        path = tmp_path / "flow.yaml"
        path.write_text(SAMPLE)
        assert parse_flow_file(path)["name"] == "Fetch users"


class TestLoadFlow:
    """Inserting a document into a store."""

    @pytest.mark.asyncio
    async def test_load_sample(self, store):
        flow_id = await load_flow(store, parse_flow_string(SAMPLE))

        nodes = {n.name: n for n in await store.query(Node)}
        assert set(nodes) == {"Start", "Get_Users", "Has_Users", "Report"}
        assert nodes["Start"].kind == NodeKind.MANUAL_START
        assert all(n.flow_id == flow_id for n in nodes.values())

        request, = await store.query(HttpRequest)
        assert request.method == HttpMethod.POST
        assert request.url == "{{BASE_URL}}/users"
        header, = await store.query(HttpHeader)
        assert (header.key, header.value, header.order) == ("Accept", "application/json", 0)

        condition = await store.get(ConditionConfig, nodes["Has_Users"].id)
        assert condition.condition == "Get_Users.response.status == 200"
        assert (await store.get(JsConfig, nodes["Report"].id)).code == "return 1;"

        edges = await store.query(Edge)
        assert len(edges) == 3
        else_edge, = [e for e in edges if e.source_handle == HandleKind.ELSE]
        assert else_edge.target_id == nodes["Report"].id

        variable, = await store.query(Variable)
        assert variable.key == "BASE_URL"

        assertion, = await store.query(HttpAssertion)
        assert (assertion.http_id, assertion.value, assertion.order) == (
            request.id, "response.status == 200", 0,
        )

    @pytest.mark.asyncio
    async def test_readable_ids_are_references_only(self, store):
        data = parse_flow_string(
            "id: my-flow\n"
            "name: x\n"
            "nodes:\n"
            "  - {id: start, name: Start, kind: ManualStart}\n"
            "  - {id: fetch, name: Fetch, kind: HTTP, url: /users}\n"
            "  - {id: js, name: Report, kind: JavaScript}\n"
            "edges:\n"
            "  - {id: e1, from: start, to: fetch}\n"
        )

        flow_id = await load_flow(store, data)

        nodes = {n.name: n for n in await store.query(Node)}
        edge, = await store.query(Edge)
        assert is_valid_id(flow_id)
        assert all(is_valid_id(n.id) for n in nodes.values())
        assert is_valid_id(edge.id)
        assert (edge.source_id, edge.target_id) == (nodes["Start"].id, nodes["Fetch"].id)

        result = await ChainConnector(store, flow_id).connect(
            [nodes["Fetch"].id, nodes["Report"].id]
        )
        assert result["edgesCreated"] == 1
        assert "errors" not in result

    @pytest.mark.asyncio
    async def test_ulid_ids_are_kept(self, store):
        flow_id = await load_flow(store, parse_flow_string(SAMPLE))
        document = await dump_flow(store, flow_id)
        node_ids = {n["id"] for n in document["nodes"]}

        copy_store = InMemoryGraphStore()
        await load_flow(copy_store, document)

        assert {n.id for n in await copy_store.query(Node)} == node_ids

    @pytest.mark.asyncio
    async def test_unknown_kind(self, store):
        data = parse_flow_string("name: x\nnodes:\n  - name: A\n    kind: Robot\n")

        with pytest.raises(ValidationError, match=r"nodes\[0\].kind: invalid value 'Robot'"):
            await load_flow(store, data)

    @pytest.mark.asyncio
    async def test_unknown_edge_reference(self, store):
        data = parse_flow_string(
            "name: x\nnodes:\n  - name: A\n    kind: ManualStart\nedges:\n  - from: A\n    to: B\n"
        )

        with pytest.raises(ValidationError, match=r"edges\[0\]: unknown node reference"):
            await load_flow(store, data)

        assert await store.query(Node) == []


class TestDumpFlow:
    """Serialising a flow back to document form."""

    @pytest.mark.asyncio
    async def test_round_trip_preserves_graph(self, store):
        flow_id = await load_flow(store, parse_flow_string(SAMPLE))

        document = await dump_flow(store, flow_id)

        by_id = {n["id"]: n for n in document["nodes"]}
        http = next(n for n in document["nodes"] if n["kind"] == "HTTP")
        assert document["name"] == "Fetch users"
        assert http["method"] == "POST"
        assert http["body"] == '{"page": 1}'
        assert http["headers"][0]["key"] == "Accept"
        handles = [e.get("handle") for e in document["edges"]]
        assert handles.count("else") == 1
        assert {by_id[e["to"]]["name"] for e in document["edges"]} == {
            "Get_Users", "Has_Users", "Report",
        }
        assert document["variables"][0]["value"] == "https://api.test"

    @pytest.mark.asyncio
    async def test_dump_can_be_reloaded(self, store):
        flow_id = await load_flow(store, parse_flow_string(SAMPLE))
        document = await dump_flow(store, flow_id)

        copy_store = InMemoryGraphStore()
        reloaded_id = await load_flow(copy_store, document)

        assert reloaded_id == flow_id
        assert len(await copy_store.query(Edge)) == 3
        assert len(await copy_store.query(HttpHeader)) == 1
        assert len(await copy_store.query(HttpAssertion)) == 1

    @pytest.mark.asyncio
    async def test_assertions_added_later_are_written_back(self, store):
        flow_id = await load_flow(store, parse_flow_string(SAMPLE))
        request, = await store.query(HttpRequest)
        await store.insert(HttpAssertion(
            id="01ARZ3NDEKTSV4RRFFQ69G5FAV",
            http_id=request.id,
            value="response.body.length > 0",
            enabled=False,
            order=1,
        ))

        document = await dump_flow(store, flow_id)

        http = next(n for n in document["nodes"] if n["kind"] == "HTTP")
        assert [a["value"] for a in http["assertions"]] == [
            "response.status == 200", "response.body.length > 0",
        ]
        assert http["assertions"][1] == {
            "id": "01ARZ3NDEKTSV4RRFFQ69G5FAV",
            "value": "response.body.length > 0",
            "enabled": False,
        }
