"""
Tests for per-flow session supervision.
"""

import asyncio

import pytest

from flowpilot.agent.orchestrator import ConversationOrchestrator, TurnState
from flowpilot.agent.session import ConversationSupervisor
from flowpilot.graph.layout import LayoutConfig

from tests.helpers import BLOCK, FakeProvider, text_response


@pytest.fixture
def supervisor_for(store, settings):
    def factory(provider):
        return ConversationSupervisor(
            lambda flow_id: ConversationOrchestrator(
                store, provider, flow_id, settings=settings, layout_config=LayoutConfig()
            )
        )
    return factory


class TestConversationSupervisor:
    """Sessions, cancellation and clearing."""

    @pytest.mark.asyncio
    async def test_send_message_creates_session(self, supervisor_for, flow):
        supervisor = supervisor_for(FakeProvider([text_response("Hi there")]))

        outcome = await supervisor.send_message(flow.id, "Hello")

        assert outcome.state == TurnState.DONE
        session = supervisor.sessions[flow.id]
        assert [m.content for m in session.messages] == ["Hello", "Hi there"]
        assert not supervisor.is_running(flow.id)

    @pytest.mark.asyncio
    async def test_orchestrator_is_reused(self, supervisor_for, flow):
        supervisor = supervisor_for(FakeProvider())
        assert supervisor.orchestrator(flow.id) is supervisor.orchestrator(flow.id)

    @pytest.mark.asyncio
    async def test_new_message_cancels_running_turn(self, supervisor_for, flow):
        provider = FakeProvider([BLOCK, text_response("Second answer")])
        supervisor = supervisor_for(provider)

        first = asyncio.ensure_future(supervisor.send_message(flow.id, "First"))
        await provider.blocked.wait()
        assert supervisor.is_running(flow.id)

        second = await supervisor.send_message(flow.id, "Second")
        first_outcome = await first

        assert first_outcome.state == TurnState.ABORTED
        assert second.state == TurnState.DONE
        session = supervisor.sessions[flow.id]
        assert [m.content for m in session.messages] == ["First", "Second", "Second answer"]

    @pytest.mark.asyncio
    async def test_cancel(self, supervisor_for, flow):
        provider = FakeProvider([BLOCK])
        supervisor = supervisor_for(provider)

        turn = asyncio.ensure_future(supervisor.send_message(flow.id, "Hello"))
        await provider.blocked.wait()

        assert await supervisor.cancel(flow.id) is True
        assert (await turn).state == TurnState.ABORTED
        assert supervisor.sessions[flow.id].state == TurnState.ABORTED
        assert await supervisor.cancel(flow.id) is False

    @pytest.mark.asyncio
    async def test_clear_drops_session(self, supervisor_for, flow):
        supervisor = supervisor_for(FakeProvider())
        await supervisor.send_message(flow.id, "Hello")

        await supervisor.clear(flow.id)

        assert flow.id not in supervisor.sessions
        assert supervisor.session(flow.id).messages == []

    @pytest.mark.asyncio
    async def test_close_cancels_everything(self, supervisor_for, flow):
        provider = FakeProvider([BLOCK])
        supervisor = supervisor_for(provider)

        turn = asyncio.ensure_future(supervisor.send_message(flow.id, "Hello"))
        await provider.blocked.wait()
        await supervisor.close()

        assert (await turn).state == TurnState.ABORTED
        assert not supervisor.is_running(flow.id)
