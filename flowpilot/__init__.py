"""Conversational copilot that builds and repairs workflow graphs."""

__version__ = "0.1.0"

from flowpilot.agent.orchestrator import ConversationOrchestrator, TurnState
from flowpilot.agent.session import ConversationSupervisor
from flowpilot.graph.store import GraphStore, InMemoryGraphStore
from flowpilot.tools.executor import ToolExecutor

__all__ = [
    "ConversationOrchestrator",
    "ConversationSupervisor",
    "TurnState",
    "GraphStore",
    "InMemoryGraphStore",
    "ToolExecutor",
]
