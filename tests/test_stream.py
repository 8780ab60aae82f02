"""
Tests for folding provider fragments and cancelling streams.
"""

import asyncio

import pytest

from flowpilot.agent.provider import Finish, TextDelta, ToolCallDelta
from flowpilot.agent.stream import CancellationToken, consume_stream
from flowpilot.errors import CancellationError


async def events_from(items):
    for item in items:
        yield item


class TestConsumeStream:
    """Accumulating a streamed assistant message."""

    @pytest.mark.asyncio
    async def test_folds_text_and_tool_calls(self):
        events = [
            TextDelta("Creating "),
            ToolCallDelta(index=1, id="call_b", name="createJsNode", arguments='{"name":'),
            ToolCallDelta(index=0, id="call_a", name="create"),
            ToolCallDelta(index=0, id="ignored", name="HttpNode", arguments='{"method":"GET"'),
            TextDelta("nodes"),
            ToolCallDelta(index=0, arguments=',"name":"Fetch"}'),
            ToolCallDelta(index=1, arguments='"Step"}'),
            Finish(finish_reason="tool_calls", usage={"total_tokens": 10}),
        ]

        message = await consume_stream(events_from(events))

        assert message.content == "Creating nodes"
        assert [(c.id, c.name, c.arguments) for c in message.tool_calls] == [
            ("call_a", "createHttpNode", '{"method":"GET","name":"Fetch"}'),
            ("call_b", "createJsNode", '{"name":"Step"}'),
        ]
        assert message.finish_reason == "tool_calls"
        assert message.usage == {"total_tokens": 10}

    @pytest.mark.asyncio
    async def test_empty_text_is_none(self):
        message = await consume_stream(events_from([Finish(finish_reason="stop")]))

        assert message.content is None
        assert message.tool_calls == []

    @pytest.mark.asyncio
    async def test_on_content_receives_accumulated_text(self):
        seen = []

        await consume_stream(
            events_from([TextDelta("Hel"), TextDelta("lo"), Finish()]),
            on_content=seen.append,
        )

        assert seen == ["Hel", "Hello"]

    @pytest.mark.asyncio
    async def test_stream_is_closed_after_use(self):
        closed = []

        async def events():
            try:
                yield TextDelta("hi")
                yield Finish()
            finally:
                closed.append(True)

        await consume_stream(events(), CancellationToken())

        assert closed == [True]


class TestCancellation:
    """Cancellation tokens racing the stream."""

    @pytest.mark.asyncio
    async def test_token_interrupts_a_stalled_stream(self):
        token = CancellationToken()
        closed = []

        async def stalled():
            try:
                yield TextDelta("partial")
                await asyncio.Event().wait()
                yield Finish()
            finally:
                closed.append(True)

        asyncio.get_running_loop().call_later(0.01, token.cancel)

        with pytest.raises(CancellationError):
            await consume_stream(stalled(), token)

        assert closed == [True]

    @pytest.mark.asyncio
    async def test_already_cancelled_token(self):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(CancellationError, match="Turn cancelled"):
            await consume_stream(events_from([TextDelta("never")]), token)

    def test_token_state(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        assert not token.cancelled

        token.cancel()

        assert token.cancelled
        with pytest.raises(CancellationError):
            token.raise_if_cancelled()
