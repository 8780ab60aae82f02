"""
Tests for the in-memory graph store and flow snapshots.
"""

from datetime import datetime, timedelta

import pytest

from flowpilot.errors import ConflictError, NotFoundError
from flowpilot.graph.models import (
    Edge,
    Execution,
    FlowItemState,
    HttpConfig,
    HttpHeader,
    HttpMethod,
    HttpRequest,
    Node,
    NodeKind,
    Position,
    Variable,
    new_id,
)
from flowpilot.graph.snapshot import build_snapshot, latest_execution

from tests.helpers import make_edge, make_node


class TestInMemoryGraphStore:
    """CRUD semantics of the in-memory backend."""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, store):
        node = make_node(NodeKind.JAVASCRIPT, "Script")
        await store.insert(node)

        fetched = await store.get(Node, node.id)

        assert fetched == node
        assert fetched is not node

    @pytest.mark.asyncio
    async def test_duplicate_key_rejects_whole_batch(self, store):
        node = make_node(NodeKind.JAVASCRIPT, "Script")
        other = make_node(NodeKind.JAVASCRIPT, "Other")
        await store.insert(node)

        with pytest.raises(ConflictError):
            await store.insert([other, node])

        assert await store.get(Node, other.id) is None

    @pytest.mark.asyncio
    async def test_query_returns_copies(self, store):
        node = make_node(NodeKind.JAVASCRIPT, "Script")
        await store.insert(node)

        rows = await store.query(Node)
        rows[0].name = "Changed"

        assert (await store.get(Node, node.id)).name == "Script"

    @pytest.mark.asyncio
    async def test_update_applies_partial_changes(self, store):
        node = make_node(NodeKind.JAVASCRIPT, "Script")
        await store.insert(node)

        updated = await store.update(Node, node.id, position=Position(5, 6))

        assert updated.position == Position(5, 6)
        assert updated.name == "Script"

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, store):
        node = make_node(NodeKind.JAVASCRIPT, "Script")
        await store.insert(node)

        with pytest.raises(ValueError, match="Unknown fields"):
            await store.update(Node, node.id, colour="red")

    @pytest.mark.asyncio
    async def test_update_and_delete_missing_entity(self, store):
        with pytest.raises(NotFoundError, match="Node not found"):
            await store.update(Node, "missing", name="x")
        with pytest.raises(NotFoundError):
            await store.delete(Node, "missing")

    @pytest.mark.asyncio
    async def test_delete_returns_removed_entity(self, store):
        node = make_node(NodeKind.JAVASCRIPT, "Script")
        await store.insert(node)

        removed = await store.delete(Node, node.id)

        assert removed.id == node.id
        assert await store.query(Node) == []

    @pytest.mark.asyncio
    async def test_next_order(self, store):
        http_id = new_id()
        assert await store.next_order(HttpHeader, lambda h: h.http_id == http_id) == 0

        await store.insert([
            HttpHeader(id=new_id(), http_id=http_id, key="A", order=0),
            HttpHeader(id=new_id(), http_id=http_id, key="B", order=4),
            HttpHeader(id=new_id(), http_id=new_id(), key="C", order=9),
        ])

        assert await store.next_order(HttpHeader, lambda h: h.http_id == http_id) == 5

    @pytest.mark.asyncio
    async def test_wait_for_sync_resolves_immediately(self, store):
        await store.insert(make_node(NodeKind.JAVASCRIPT, "Script"))
        await store.wait_for_sync(store.last_mutation_at)


class TestLatestExecution:
    """Choosing the execution shown for a node."""

    def test_latest_completion_wins(self):
        now = datetime(2024, 1, 1, 12, 0)
        older = Execution(id=new_id(), node_id="n", completed_at=now)
        newer = Execution(id=new_id(), node_id="n", completed_at=now + timedelta(seconds=5))
        pending = Execution(id=new_id(), node_id="n")

        assert latest_execution([older, pending, newer]) is newer

    def test_incomplete_only_when_nothing_completed(self):
        pending = Execution(id=new_id(), node_id="n")
        assert latest_execution([pending]) is pending
        assert latest_execution([]) is None


class TestBuildSnapshot:
    """Projection of store state into a FlowSnapshot."""

    @pytest.mark.asyncio
    async def test_snapshot_contents(self, store, flow):
        http = make_node(NodeKind.HTTP, "Fetch", flow.id)
        http_id = new_id()
        edge = make_edge(flow.start, http, flow.id)
        done = datetime(2024, 1, 1, 12, 0)
        await store.insert([
            http,
            edge,
            HttpConfig(node_id=http.id, http_id=http_id),
            HttpRequest(id=http_id, name="Fetch", method=HttpMethod.POST),
            Variable(id=new_id(), flow_id=flow.id, key="token", value="abc"),
            Execution(id=new_id(), node_id=http.id, state=FlowItemState.FAILURE,
                      completed_at=done, error="boom"),
            Execution(id=new_id(), node_id=http.id, state=FlowItemState.SUCCESS,
                      completed_at=done + timedelta(minutes=1)),
            # belongs to another flow
            make_node(NodeKind.JAVASCRIPT, "Elsewhere", "other-flow"),
        ])

        snapshot = await build_snapshot(store, flow.id, [http.id])

        assert {n.name for n in snapshot.nodes} == {"Start", "Fetch"}
        view = snapshot.node(http.id)
        assert view.http_id == http_id
        assert view.http_method == "POST"
        assert snapshot.edges[0].target_id == http.id
        assert snapshot.variables[0].key == "token"
        assert len(snapshot.executions) == 1
        assert snapshot.executions[0].state == FlowItemState.SUCCESS
        assert snapshot.selected_node_ids == (http.id,)
        assert snapshot.node_names()[flow.start.id] == "Start"

    @pytest.mark.asyncio
    async def test_with_selection(self, store, flow):
        snapshot = await build_snapshot(store, flow.id)

        selected = snapshot.with_selection([flow.start.id])

        assert selected.selected_node_ids == (flow.start.id,)
        assert selected.nodes == snapshot.nodes
        assert snapshot.selected_node_ids == ()

    @pytest.mark.asyncio
    async def test_unknown_flow_is_empty(self, store):
        snapshot = await build_snapshot(store, "missing")
        assert snapshot.nodes == () and snapshot.edges == ()
        assert await store.query(Edge) == []
