"""Conversation loop: prompts, model streaming, orchestration and sessions."""

from flowpilot.agent.orchestrator import (
    ChatMessage,
    ChatSession,
    ConversationOrchestrator,
    TurnOutcome,
    TurnState,
)
from flowpilot.agent.prompts import PromptBuilder
from flowpilot.agent.provider import (
    Finish,
    ModelProvider,
    OpenAIProvider,
    OpenRouterProvider,
    TextDelta,
    ToolCallDelta,
    create_provider,
)
from flowpilot.agent.session import ConversationSupervisor
from flowpilot.agent.stream import CancellationToken, consume_stream

__all__ = [
    "ChatMessage",
    "ChatSession",
    "ConversationOrchestrator",
    "TurnOutcome",
    "TurnState",
    "PromptBuilder",
    "Finish",
    "ModelProvider",
    "OpenAIProvider",
    "OpenRouterProvider",
    "TextDelta",
    "ToolCallDelta",
    "create_provider",
    "ConversationSupervisor",
    "CancellationToken",
    "consume_stream",
]
