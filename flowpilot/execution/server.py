"""Workflow execution server client."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import structlog

from flowpilot.config import Settings, get_settings
from flowpilot.errors import TransportError
from flowpilot.graph.models import Flow
from flowpilot.graph.store import GraphStore

logger = structlog.get_logger(__name__)


class ExecutionServer(ABC):
    """Request/response contract of the server that runs flows."""

    @abstractmethod
    async def run(self, flow_id: str) -> None:
        pass

    @abstractmethod
    async def stop(self, flow_id: str) -> None:
        pass

    async def close(self) -> None:
        pass


class HttpExecutionServer(ExecutionServer):
    """Execution server reached over HTTP."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url or get_settings().execution_server_url
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers or {},
            timeout=timeout,
        )

    async def run(self, flow_id: str) -> None:
        await self._post(f"/flows/{flow_id}/run")

    async def stop(self, flow_id: str) -> None:
        await self._post(f"/flows/{flow_id}/stop")

    async def _post(self, path: str, payload: Optional[Dict[str, Any]] = None) -> None:
        try:
            response = await self.client.post(path, json=payload or {})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "execution_server_error",
                path=path,
                status_code=e.response.status_code,
            )
            raise TransportError(
                f"Execution server returned {e.response.status_code} for {path}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("execution_server_unreachable", path=path, error=str(e))
            raise TransportError(f"Execution server request failed: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()


async def wait_for_flow_completion(
    store: GraphStore,
    flow_id: str,
    settings: Optional[Settings] = None
) -> bool:
    """Poll the flow record until it stops running.

    Returns False when the timeout elapses first; that is not an error,
    the caller simply stops waiting.
    """
    settings = settings or get_settings()
    interval = settings.flow_run_poll_interval

    await asyncio.sleep(settings.flow_run_initial_delay)
    elapsed = settings.flow_run_initial_delay

    while elapsed < settings.flow_run_timeout:
        await asyncio.sleep(interval)
        elapsed += interval

        flow = await store.find_one(Flow, lambda f: f.id == flow_id)
        if flow is not None and not flow.running:
            logger.debug("flow_run_completed", flow_id=flow_id, waited=elapsed)
            return True

    logger.info("flow_run_wait_timeout", flow_id=flow_id, waited=elapsed)
    return False
