"""Fold a provider's fragment stream into one assistant message."""

import asyncio
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from dataclasses import dataclass, field

from flowpilot.agent.provider import Finish, StreamEvent, TextDelta, ToolCallDelta
from flowpilot.errors import CancellationError


class CancellationToken:
    """One-shot cancellation signal shared between a turn and its stream."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError("Turn cancelled")


@dataclass
class StreamedToolCall:
    id: str
    name: str
    arguments: str = ""


@dataclass
class StreamedMessage:
    content: Optional[str] = None
    tool_calls: List[StreamedToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None


async def _next_event(iterator: AsyncIterator[StreamEvent]) -> Optional[StreamEvent]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def consume_stream(
    events: AsyncIterator[StreamEvent],
    token: Optional[CancellationToken] = None,
    on_content: Optional[Callable[[str], None]] = None
) -> StreamedMessage:
    """Accumulate text and tool-call fragments until the stream ends.

    Tool-call fragments are grouped by ``index``: the first fragment that
    carries an id fixes it, names and argument text are concatenated.
    Each fragment is raced against ``token``; cancellation closes the
    stream and raises CancellationError.

    Args:
        events: Provider stream.
        token: Optional cancellation token.
        on_content: Called with the accumulated text after every text fragment.
    """
    content = ""
    calls: Dict[int, Dict[str, str]] = {}
    finish = Finish()

    iterator = events.__aiter__()
    waiter = asyncio.ensure_future(token.wait()) if token is not None else None
    pending: Optional[asyncio.Future] = None

    try:
        while True:
            if token is not None:
                token.raise_if_cancelled()

            pending = asyncio.ensure_future(_next_event(iterator))
            if waiter is not None:
                done, _ = await asyncio.wait(
                    {pending, waiter},
                    return_when=asyncio.FIRST_COMPLETED
                )
                if pending not in done:
                    raise CancellationError("Turn cancelled")

            event = await pending
            if event is None:
                break

            if isinstance(event, TextDelta):
                content += event.content
                if on_content is not None:
                    on_content(content)
            elif isinstance(event, ToolCallDelta):
                call = calls.setdefault(event.index, {"id": "", "name": "", "arguments": ""})
                if event.id and not call["id"]:
                    call["id"] = event.id
                if event.name:
                    call["name"] += event.name
                if event.arguments:
                    call["arguments"] += event.arguments
            elif isinstance(event, Finish):
                finish = event
    finally:
        if waiter is not None:
            waiter.cancel()
        # The generator must be idle before it can be closed.
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.wait({pending})
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    return StreamedMessage(
        content=content or None,
        tool_calls=[
            StreamedToolCall(id=c["id"], name=c["name"], arguments=c["arguments"])
            for _, c in sorted(calls.items())
        ],
        finish_reason=finish.finish_reason,
        usage=finish.usage,
    )
