"""Conversation turn loop: model → tools → topology validation."""

import asyncio
import json
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field

import structlog

from flowpilot.agent.prompts import PromptBuilder
from flowpilot.agent.provider import ModelProvider
from flowpilot.agent.session_log import SessionLogger
from flowpilot.agent.stream import CancellationToken, StreamedMessage, consume_stream
from flowpilot.config import Settings, get_settings
from flowpilot.errors import CancellationError, FlowPilotError
from flowpilot.execution.server import ExecutionServer
from flowpilot.graph.analyzer import detect_dead_ends, detect_orphans
from flowpilot.graph.layout import LayoutConfig, default_horizontal_config, layout_nodes
from flowpilot.graph.models import Edge, Node, new_id
from flowpilot.graph.snapshot import build_snapshot
from flowpilot.graph.store import GraphStore
from flowpilot.tools.commands import COMMANDS, tool_schemas
from flowpilot.tools.executor import ToolCall, ToolExecutor, ToolResult

logger = structlog.get_logger(__name__)


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    VALIDATING_TOPOLOGY = "validating_topology"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


ACTIVE_STATES = (
    TurnState.AWAITING_MODEL,
    TurnState.EXECUTING_TOOLS,
    TurnState.VALIDATING_TOPOLOGY,
)


@dataclass
class ChatMessage:
    """One entry of the user-visible conversation history."""
    role: str
    content: str = ""
    id: str = field(default_factory=new_id)
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_model_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [_tool_call_payload(c.id, c.name, c.arguments) for c in self.tool_calls]
        if self.tool_call_id:
            message["tool_call_id"] = self.tool_call_id
        return message


@dataclass
class ChatSession:
    """Conversation state of one flow."""
    flow_id: str
    messages: List[ChatMessage] = field(default_factory=list)
    state: TurnState = TurnState.IDLE
    error: Optional[str] = None
    streaming_content: str = ""

    @property
    def is_loading(self) -> bool:
        return self.state in ACTIVE_STATES


@dataclass
class TurnOutcome:
    state: TurnState
    message: Optional[ChatMessage] = None
    tool_calls: int = 0
    validation_retries: int = 0
    error: Optional[str] = None


def _tool_call_payload(call_id: str, name: str, arguments: Any) -> Dict[str, Any]:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": arguments},
    }


def collapse_errors(results: Sequence[ToolResult]) -> List[str]:
    """Tool message contents with repeated error strings collapsed.

    The first occurrence of an error that repeats within the batch is
    annotated with its count; later ones point back to it.
    """
    groups: Dict[str, Tuple[int, str]] = {}
    for result in results:
        if result.error is not None:
            count, first_id = groups.get(result.error, (0, result.tool_call_id))
            groups[result.error] = (count + 1, first_id)

    contents = []
    for result in results:
        if result.error is not None and groups[result.error][0] > 1:
            count, first_id = groups[result.error]
            if result.tool_call_id == first_id:
                contents.append(f"{result.error} (this error occurred {count} times in this batch)")
            else:
                contents.append(f"Same error as {first_id}")
        else:
            contents.append(result.content())
    return contents


class ConversationOrchestrator:
    """Drives one flow's conversation turns against a model provider.

    A turn streams a model response, executes its tool calls one at a
    time, re-lays out the graph after successful mutations and loops
    until the model answers without tools. The final answer is checked
    for orphaned and dead-end nodes, and the model is asked to fix them
    up to ``max_validation_retries`` times.
    """

    def __init__(
        self,
        store: GraphStore,
        provider: ModelProvider,
        flow_id: str,
        execution_server: Optional[ExecutionServer] = None,
        workspace_id: Optional[str] = None,
        settings: Optional[Settings] = None,
        prompts: Optional[PromptBuilder] = None,
        layout_config: Optional[LayoutConfig] = None,
        listener: Optional[Callable[[ChatSession], None]] = None
    ):
        self.store = store
        self.provider = provider
        self.flow_id = flow_id
        self.execution_server = execution_server
        self.workspace_id = workspace_id
        self.settings = settings or get_settings()
        self.prompts = prompts or PromptBuilder()
        self.layout_config = layout_config or default_horizontal_config()
        self.listener = listener
        self.tools = tool_schemas()

    async def run_turn(
        self,
        session: ChatSession,
        content: str,
        token: Optional[CancellationToken] = None,
        selected_node_ids: Sequence[str] = ()
    ) -> TurnOutcome:
        """Run one user message through to a final assistant answer."""
        token = token or CancellationToken()
        selected = tuple(selected_node_ids)
        executor = ToolExecutor(
            self.store,
            self.flow_id,
            execution_server=self.execution_server,
            workspace_id=self.workspace_id,
            settings=self.settings,
        )
        session_log = SessionLogger(
            self.flow_id,
            log_dir=self.settings.session_log_dir,
            flush_interval=self.settings.session_log_flush_interval,
        )
        session_log.start()
        session_log.session_start(content)

        history = [m.to_model_message() for m in session.messages]
        session.messages.append(ChatMessage(role="user", content=content))
        session.error = None
        self._set_state(session, TurnState.AWAITING_MODEL)

        tool_call_count = 0
        retries = 0

        try:
            snapshot = await build_snapshot(self.store, self.flow_id, selected)
            system_prompt = self.prompts.system_prompt(snapshot, self.settings.default_source_handle)
            session_log.system_prompt(system_prompt, len(snapshot.nodes), len(snapshot.edges))

            conversation = history + [{"role": "user", "content": content}]
            response = await self._complete(session, system_prompt, conversation, token, session_log)

            while True:
                while response.tool_calls:
                    self._set_state(session, TurnState.EXECUTING_TOOLS)
                    tool_call_count += len(response.tool_calls)
                    await self._execute_batch(
                        session, executor, response, conversation, token, session_log, selected
                    )

                    self._set_state(session, TurnState.AWAITING_MODEL)
                    response = await self._complete(
                        session, system_prompt, conversation, token, session_log
                    )

                if retries >= self.settings.max_validation_retries:
                    break

                self._set_state(session, TurnState.VALIDATING_TOPOLOGY)
                snapshot = await build_snapshot(self.store, self.flow_id, selected)
                orphans = detect_orphans(snapshot.nodes, snapshot.edges)
                dead_ends = [] if orphans else detect_dead_ends(
                    snapshot.nodes, snapshot.edges, self.settings.dead_end_threshold
                )
                session_log.validation(
                    [n.name for n in orphans], [n.name for n in dead_ends], retries
                )
                if not orphans and not dead_ends:
                    break

                retries += 1
                logger.info(
                    "topology_validation_retry",
                    flow_id=self.flow_id,
                    retry=retries,
                    orphans=len(orphans),
                    dead_ends=len(dead_ends),
                )

                if response.content:
                    conversation.append({"role": "assistant", "content": response.content})
                conversation.append({
                    "role": "user",
                    "content": self.prompts.validation_message(orphans, dead_ends),
                })

                self._set_state(session, TurnState.AWAITING_MODEL)
                response = await self._complete(
                    session, system_prompt, conversation, token, session_log
                )

            final = ChatMessage(role="assistant", content=response.content or "")
            session.messages.append(final)
            session_log.assistant_message(final.content)
            session_log.session_end(success=True, aborted=False)
            self._set_state(session, TurnState.DONE)

            return TurnOutcome(
                state=TurnState.DONE,
                message=final,
                tool_calls=tool_call_count,
                validation_retries=retries,
            )

        except CancellationError:
            logger.info("turn_aborted", flow_id=self.flow_id)
            session_log.session_end(success=False, aborted=True)
            self._abort(session)
            return TurnOutcome(
                state=TurnState.ABORTED,
                tool_calls=tool_call_count,
                validation_retries=retries,
            )

        except asyncio.CancelledError:
            session_log.session_end(success=False, aborted=True)
            self._abort(session)
            raise

        except FlowPilotError as e:
            logger.error("turn_failed", flow_id=self.flow_id, error=str(e))
            session_log.error(e, "run_turn")
            session_log.session_end(success=False, aborted=False)
            self._fail(session, str(e))
            return TurnOutcome(
                state=TurnState.FAILED,
                tool_calls=tool_call_count,
                validation_retries=retries,
                error=str(e),
            )

        except Exception as e:
            logger.exception("turn_crashed", flow_id=self.flow_id)
            session_log.error(e, "run_turn")
            session_log.session_end(success=False, aborted=False)
            self._fail(session, str(e) or type(e).__name__)
            raise

        finally:
            session_log.close()

    async def _complete(
        self,
        session: ChatSession,
        system_prompt: str,
        conversation: List[Dict[str, Any]],
        token: CancellationToken,
        session_log: SessionLogger
    ) -> StreamedMessage:
        token.raise_if_cancelled()
        session_log.api_request(getattr(self.provider, "model", ""), len(conversation) + 1)
        started = time.monotonic()

        def on_content(text: str) -> None:
            session.streaming_content = text
            self._notify(session)

        try:
            response = await consume_stream(
                self.provider.stream(system_prompt, conversation, self.tools),
                token,
                on_content,
            )
        finally:
            session.streaming_content = ""
            self._notify(session)

        duration_ms = round((time.monotonic() - started) * 1000, 2)
        session_log.api_response(duration_ms, response.finish_reason, response.usage)
        logger.debug(
            "model_response",
            flow_id=self.flow_id,
            tool_calls=len(response.tool_calls),
            finish_reason=response.finish_reason,
            duration_ms=duration_ms,
        )
        return response

    async def _execute_batch(
        self,
        session: ChatSession,
        executor: ToolExecutor,
        response: StreamedMessage,
        conversation: List[Dict[str, Any]],
        token: CancellationToken,
        session_log: SessionLogger,
        selected: Tuple[str, ...]
    ) -> None:
        calls: List[ToolCall] = []
        results: List[ToolResult] = []

        # One at a time, in call order; later calls see earlier mutations.
        for streamed in response.tool_calls:
            token.raise_if_cancelled()
            call, parse_error = self._parse_call(streamed.id, streamed.name, streamed.arguments)
            calls.append(call)

            session_log.tool_call_start(call.id, call.name, streamed.arguments)
            started = time.monotonic()
            if parse_error is not None:
                command_type = COMMANDS.get(call.name)
                result = ToolResult(
                    call.id,
                    bool(command_type and command_type.is_mutation),
                    error=parse_error,
                )
            else:
                result = await executor.execute(call)
            results.append(result)
            session_log.tool_call_end(
                call.id,
                call.name,
                round((time.monotonic() - started) * 1000, 2),
                result.content(),
                result.error,
            )

        session.messages.append(ChatMessage(
            role="assistant",
            content=response.content or "",
            tool_calls=calls,
        ))
        session.messages.extend(
            ChatMessage(role="tool", content=r.content(), tool_call_id=r.tool_call_id)
            for r in results
        )
        self._notify(session)

        conversation.append({
            "role": "assistant",
            "content": response.content,
            "tool_calls": [
                _tool_call_payload(c.id, c.name, s.arguments)
                for c, s in zip(calls, response.tool_calls)
            ],
        })
        for result, text in zip(results, collapse_errors(results)):
            conversation.append({
                "role": "tool",
                "tool_call_id": result.tool_call_id,
                "content": text,
            })

        if any(r.is_mutation and r.ok for r in results):
            await self.apply_layout()
            snapshot = await build_snapshot(self.store, self.flow_id, selected)
            conversation.append({"role": "system", "content": self.prompts.flow_update(snapshot)})

    @staticmethod
    def _parse_call(call_id: str, name: str, arguments: str) -> Tuple[ToolCall, Optional[str]]:
        call = ToolCall(id=call_id or new_id(), name=name)
        if not arguments or not arguments.strip():
            return call, None
        try:
            call.arguments = json.loads(arguments)
        except json.JSONDecodeError as e:
            return call, f"Invalid JSON arguments for {name}: {e.msg}"
        return call, None

    async def apply_layout(self) -> int:
        """Write BFS layout positions to every reachable node that moved."""
        nodes = await self.store.query(Node, lambda n: n.flow_id == self.flow_id)
        edges = await self.store.query(Edge, lambda e: e.flow_id == self.flow_id)

        result = layout_nodes(nodes, edges, self.layout_config)
        if result is None:
            return 0

        moved = 0
        for node in nodes:
            position = result.positions.get(node.id)
            if position is not None and position != node.position:
                await self.store.update(Node, node.id, position=position)
                moved += 1
        return moved

    def _set_state(self, session: ChatSession, state: TurnState) -> None:
        session.state = state
        self._notify(session)

    def _abort(self, session: ChatSession) -> None:
        session.streaming_content = ""
        self._set_state(session, TurnState.ABORTED)

    def _fail(self, session: ChatSession, error: str) -> None:
        session.error = error
        session.streaming_content = ""
        self._set_state(session, TurnState.FAILED)

    def _notify(self, session: ChatSession) -> None:
        if self.listener is not None:
            self.listener(session)
