"""Tool surface exposed to the model."""

from flowpilot.tools.commands import COMMANDS, ToolCommand, tool_schemas
from flowpilot.tools.chain import ChainConnector, expand_chain, validate_chain
from flowpilot.tools.executor import ToolCall, ToolExecutor, ToolResult

__all__ = [
    'COMMANDS',
    'ToolCommand',
    'tool_schemas',
    'ChainConnector',
    'expand_chain',
    'validate_chain',
    'ToolCall',
    'ToolExecutor',
    'ToolResult',
]
