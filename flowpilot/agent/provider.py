"""Streaming chat-completion providers."""

import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Union
from dataclasses import dataclass

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from flowpilot.config import Settings, get_settings
from flowpilot.errors import TransportError

logger = structlog.get_logger(__name__)


@dataclass
class TextDelta:
    content: str


@dataclass
class ToolCallDelta:
    """Fragment of one tool call; fragments share an ``index``."""
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


@dataclass
class Finish:
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None


StreamEvent = Union[TextDelta, ToolCallDelta, Finish]


class ModelProvider(ABC):
    """Streaming chat completion with tool calling."""

    @abstractmethod
    def stream(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[StreamEvent]:
        """Yield text/tool-call fragments, then exactly one Finish."""

    async def close(self) -> None:
        pass


def _events_from_chunk(chunk: Dict[str, Any]) -> List[StreamEvent]:
    events: List[StreamEvent] = []
    for choice in chunk.get("choices") or []:
        delta = choice.get("delta") or {}
        if delta.get("content"):
            events.append(TextDelta(delta["content"]))
        for call in delta.get("tool_calls") or []:
            function = call.get("function") or {}
            events.append(ToolCallDelta(
                index=call.get("index", 0),
                id=call.get("id"),
                name=function.get("name"),
                arguments=function.get("arguments"),
            ))
    return events


class OpenRouterProvider(ModelProvider):
    """OpenRouter chat completions over server-sent events."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.model = model
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "X-Title": "flowpilot",
            },
            timeout=timeout
        )

    async def stream(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[StreamEvent]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "stream": True,
            "usage": {"include": True},
        }
        if tools:
            payload["tools"] = tools

        finish_reason = None
        usage = None

        try:
            async with self.client.stream(
                "POST",
                "/chat/completions",
                json=payload
            ) as response:
                response.raise_for_status()

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data = line[6:]
                    if data == "[DONE]":
                        break

                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning("openrouter_bad_chunk", data=data[:200])
                        continue

                    if "error" in chunk:
                        raise TransportError(
                            f"Model provider error: {chunk['error'].get('message', chunk['error'])}"
                        )

                    for event in _events_from_chunk(chunk):
                        yield event

                    for choice in chunk.get("choices") or []:
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
                    if chunk.get("usage"):
                        usage = chunk["usage"]

        except httpx.HTTPStatusError as e:
            logger.error(
                "openrouter_stream_error",
                status_code=e.response.status_code,
                model=self.model
            )
            raise TransportError(
                f"Model provider returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("openrouter_stream_error", error=str(e), model=self.model)
            raise TransportError(f"Model provider request failed: {e}") from e

        yield Finish(finish_reason=finish_reason, usage=usage)

    async def close(self) -> None:
        await self.client.aclose()


class OpenAIProvider(ModelProvider):
    """OpenAI (or any OpenAI-compatible endpoint) via the official SDK."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None
    ):
        self.model = model
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def stream(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[StreamEvent]:
        kwargs: Dict[str, Any] = {}
        if tools:
            kwargs["tools"] = tools

        finish_reason = None
        usage = None

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "system", "content": system_prompt}, *messages],
                stream=True,
                stream_options={"include_usage": True},
                **kwargs
            )
            async for chunk in response:
                for event in _events_from_chunk(chunk.model_dump(exclude_none=True)):
                    yield event
                for choice in chunk.choices:
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
                if chunk.usage is not None:
                    usage = chunk.usage.model_dump()

        except openai.APIStatusError as e:
            logger.error("openai_stream_error", status_code=e.status_code, model=self.model)
            raise TransportError(
                f"Model provider returned {e.status_code}",
                status_code=e.status_code,
            ) from e
        except openai.APIError as e:
            logger.error("openai_stream_error", error=str(e), model=self.model)
            raise TransportError(f"Model provider request failed: {e}") from e

        yield Finish(finish_reason=finish_reason, usage=usage)

    async def close(self) -> None:
        await self.client.close()


def create_provider(settings: Optional[Settings] = None) -> ModelProvider:
    """Build the provider named by ``settings.provider``."""
    settings = settings or get_settings()

    if settings.provider == "openrouter":
        if not settings.openrouter_api_key:
            raise TransportError("FLOWPILOT_OPENROUTER_API_KEY is not set")
        return OpenRouterProvider(
            api_key=settings.openrouter_api_key,
            model=settings.model,
            base_url=settings.openrouter_base_url,
            timeout=settings.request_timeout,
        )

    if settings.provider == "openai":
        if not settings.openai_api_key:
            raise TransportError("FLOWPILOT_OPENAI_API_KEY is not set")
        return OpenAIProvider(
            api_key=settings.openai_api_key,
            model=settings.model,
            timeout=settings.request_timeout,
        )

    raise ValueError(f"Unknown model provider: {settings.provider}")
