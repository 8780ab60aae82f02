"""Per-flow conversation sessions and their in-flight turns."""

import asyncio
from typing import Callable, Dict, Sequence

import structlog

from flowpilot.agent.orchestrator import (
    ChatSession,
    ConversationOrchestrator,
    TurnOutcome,
    TurnState,
)
from flowpilot.agent.stream import CancellationToken

logger = structlog.get_logger(__name__)

# Seconds a cancelled turn gets to stop on its token before its task is cancelled.
CANCEL_GRACE_PERIOD = 5.0

OrchestratorFactory = Callable[[str], ConversationOrchestrator]


class ConversationSupervisor:
    """Owns one ChatSession per flow and at most one active turn per flow.

    Sessions are created on the first message for a flow and removed by
    ``clear()``. Sending a message cancels whatever turn is still running
    for that flow before the new one starts.
    """

    def __init__(self, orchestrator_factory: OrchestratorFactory):
        self.orchestrator_factory = orchestrator_factory
        self.sessions: Dict[str, ChatSession] = {}
        self._orchestrators: Dict[str, ConversationOrchestrator] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def session(self, flow_id: str) -> ChatSession:
        if flow_id not in self.sessions:
            self.sessions[flow_id] = ChatSession(flow_id=flow_id)
        return self.sessions[flow_id]

    def orchestrator(self, flow_id: str) -> ConversationOrchestrator:
        if flow_id not in self._orchestrators:
            self._orchestrators[flow_id] = self.orchestrator_factory(flow_id)
        return self._orchestrators[flow_id]

    def is_running(self, flow_id: str) -> bool:
        task = self._tasks.get(flow_id)
        return task is not None and not task.done()

    async def send_message(
        self,
        flow_id: str,
        content: str,
        selected_node_ids: Sequence[str] = ()
    ) -> TurnOutcome:
        """Start a turn for ``flow_id`` and wait for it to finish."""
        await self.cancel(flow_id)

        session = self.session(flow_id)
        token = CancellationToken()
        task = asyncio.ensure_future(
            self.orchestrator(flow_id).run_turn(session, content, token, selected_node_ids)
        )
        self._tokens[flow_id] = token
        self._tasks[flow_id] = task

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            token.cancel()
            task.cancel()
            raise
        finally:
            if self._tasks.get(flow_id) is task:
                del self._tasks[flow_id]
                del self._tokens[flow_id]

        if task.cancelled():
            return TurnOutcome(state=TurnState.ABORTED)
        return task.result()

    async def cancel(self, flow_id: str) -> bool:
        """Abort the flow's in-flight turn, keeping its history.

        Returns True when a turn was running.
        """
        token = self._tokens.pop(flow_id, None)
        task = self._tasks.pop(flow_id, None)
        if token is None or task is None:
            return False

        token.cancel()
        if not task.done():
            done, _ = await asyncio.wait({task}, timeout=CANCEL_GRACE_PERIOD)
            if not done:
                task.cancel()
                await asyncio.wait({task})

        logger.info("turn_cancelled", flow_id=flow_id)
        return True

    async def clear(self, flow_id: str) -> None:
        """Cancel any running turn and drop the flow's session."""
        await self.cancel(flow_id)
        self.sessions.pop(flow_id, None)
        self._orchestrators.pop(flow_id, None)

    async def close(self) -> None:
        for flow_id in list(self._tasks):
            await self.cancel(flow_id)
