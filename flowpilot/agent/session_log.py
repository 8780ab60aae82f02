"""Per-session JSON-lines log of a conversation turn."""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from flowpilot.graph.models import new_id

logger = structlog.get_logger(__name__)


class SessionLogger:
    """Buffered JSON-lines writer, one file per session.

    Entries are buffered in memory and written every ``flush_interval``
    seconds by a background task; ``close()`` writes whatever is left.
    With no ``log_dir`` every method is a no-op.
    """

    def __init__(
        self,
        flow_id: str,
        log_dir: Optional[str] = None,
        flush_interval: float = 2.0
    ):
        self.flow_id = flow_id
        self.session_id = new_id()
        self.flush_interval = flush_interval
        self.path: Optional[Path] = None
        self._buffer: List[Dict[str, Any]] = []
        self._flush_task: Optional[asyncio.Task] = None
        self._closed = False

        if log_dir:
            directory = Path(log_dir)
            directory.mkdir(parents=True, exist_ok=True)
            self.path = directory / f"{flow_id}-{self.session_id}.jsonl"

    @property
    def enabled(self) -> bool:
        return self.path is not None and not self._closed

    def start(self) -> None:
        """Start the periodic flush task on the running loop."""
        if self.enabled and self._flush_task is None:
            self._flush_task = asyncio.get_running_loop().create_task(self._flush_periodically())

    async def _flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            self.flush()

    def log(self, event: str, **data: Any) -> None:
        if not self.enabled:
            return
        self._buffer.append({
            "ts": datetime.now(timezone.utc).isoformat(),
            "session": self.session_id,
            "flowId": self.flow_id,
            "event": event,
            **data,
        })

    def flush(self) -> None:
        if self.path is None or not self._buffer:
            return
        entries, self._buffer = self._buffer, []
        with open(self.path, "a", encoding="utf-8") as f:
            for entry in entries:
                f.write(json.dumps(entry, default=str) + "\n")

    def close(self) -> None:
        """Stop the flush task and write the remaining buffer."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            self._flush_task = None
        self.flush()
        self._closed = True
        if self.path is not None:
            logger.debug("session_log_closed", path=str(self.path))

    # Typed helpers for the events the orchestrator records

    def session_start(self, message: str) -> None:
        self.log("session_start", message=message)

    def system_prompt(self, prompt: str, node_count: int, edge_count: int) -> None:
        self.log("system_prompt", length=len(prompt), nodes=node_count, edges=edge_count)

    def api_request(self, model: str, message_count: int) -> None:
        self.log("api_request", model=model, messages=message_count)

    def api_response(
        self,
        duration_ms: float,
        finish_reason: Optional[str],
        usage: Optional[Dict[str, Any]]
    ) -> None:
        self.log("api_response", durationMs=duration_ms, finishReason=finish_reason, usage=usage)

    def tool_call_start(self, call_id: str, name: str, arguments: str) -> None:
        self.log("tool_call_start", toolCallId=call_id, tool=name, arguments=arguments)

    def tool_call_end(
        self,
        call_id: str,
        name: str,
        elapsed_ms: float,
        result: str,
        error: Optional[str] = None
    ) -> None:
        self.log(
            "tool_call_end",
            toolCallId=call_id,
            tool=name,
            elapsedMs=elapsed_ms,
            result=result,
            error=error,
        )

    def validation(self, orphans: List[str], dead_ends: List[str], retry: int) -> None:
        self.log("validation", orphans=orphans, deadEnds=dead_ends, retry=retry)

    def assistant_message(self, content: Optional[str]) -> None:
        self.log("assistant_message", content=content)

    def error(self, error: BaseException, context: str) -> None:
        self.log("error", context=context, error=str(error), errorType=type(error).__name__)

    def session_end(self, success: bool, aborted: bool) -> None:
        self.log("session_end", success=success, aborted=aborted)
