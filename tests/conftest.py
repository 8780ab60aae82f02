"""
Pytest configuration and fixtures for the flowpilot test suite.
"""

import sys
from pathlib import Path
from types import SimpleNamespace

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest
import pytest_asyncio

from flowpilot.config import Settings
from flowpilot.graph.models import Flow, NodeKind, new_id
from flowpilot.graph.store import InMemoryGraphStore
from flowpilot.tools.executor import ToolExecutor

from tests.helpers import FakeExecutionServer, FakeProvider, make_node


@pytest.fixture
def settings():
    """Settings with fast polling and no env/.env influence."""
    return Settings(
        _env_file=None,
        flow_run_initial_delay=0.0,
        flow_run_poll_interval=0.01,
        flow_run_timeout=0.05,
        session_log_dir=None,
        inspect_max_output_chars=50,
    )


@pytest.fixture
def store():
    return InMemoryGraphStore()


@pytest_asyncio.fixture
async def flow(store):
    """A flow containing only its ManualStart node."""
    flow_id = new_id()
    start = make_node(NodeKind.MANUAL_START, "Start", flow_id)
    await store.insert([Flow(id=flow_id, name="Test flow"), start])
    return SimpleNamespace(id=flow_id, start=start)


@pytest.fixture
def execution_server(store):
    return FakeExecutionServer(store)


@pytest.fixture
def executor(store, flow, settings, execution_server):
    return ToolExecutor(store, flow.id, execution_server=execution_server, settings=settings)


@pytest.fixture
def provider():
    return FakeProvider()
