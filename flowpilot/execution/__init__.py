"""Execution server contract."""

from flowpilot.execution.server import ExecutionServer, HttpExecutionServer, wait_for_flow_completion

__all__ = [
    "ExecutionServer",
    "HttpExecutionServer",
    "wait_for_flow_completion",
]
