# cli/commands/chat.py
"""Run a single copilot turn against a flow document."""

import asyncio
import functools
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from flowpilot.agent.orchestrator import ChatSession, ConversationOrchestrator, TurnState
from flowpilot.agent.provider import create_provider
from flowpilot.config import get_settings
from flowpilot.document import dump_flow, load_flow, parse_flow_file
from flowpilot.errors import FlowPilotError
from flowpilot.execution.server import HttpExecutionServer
from flowpilot.graph.store import InMemoryGraphStore

from cli.commands.flow import write_document


def async_command(f):
    """Decorator to run async functions with Click."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        return asyncio.run(f(*args, **kwargs))
    return wrapper


@click.command()
@click.argument('flow_file', type=click.Path(exists=True, path_type=Path))
@click.argument('message', nargs=-1, required=True)
@click.option('--model', help='Model to use instead of FLOWPILOT_MODEL')
@click.option('--select', 'selected', multiple=True, help='Node id treated as selected (repeatable)')
@click.option('--output', '-o', type=click.Path(path_type=Path), help='Write the mutated flow here')
@async_command
async def chat(
    flow_file: Path,
    message: Tuple[str, ...],
    model: Optional[str],
    selected: Tuple[str, ...],
    output: Optional[Path]
):
    """Ask the copilot to change a flow document."""
    settings = get_settings()
    if model:
        settings = settings.model_copy(update={'model': model})

    store = InMemoryGraphStore()
    try:
        flow_id = await load_flow(store, parse_flow_file(flow_file))
        provider = create_provider(settings)
    except FlowPilotError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    server = HttpExecutionServer(settings.execution_server_url, timeout=settings.request_timeout)
    orchestrator = ConversationOrchestrator(
        store,
        provider,
        flow_id,
        execution_server=server,
        settings=settings,
    )
    session = ChatSession(flow_id=flow_id)

    click.echo(f"🤖 {settings.model} is working on: {' '.join(message)}")
    try:
        outcome = await orchestrator.run_turn(session, ' '.join(message), selected_node_ids=selected)
    finally:
        await provider.close()
        await server.close()

    for entry in session.messages:
        if entry.role == 'assistant' and entry.tool_calls:
            for call in entry.tool_calls:
                click.echo(f"   🔧 {call.name}")

    if outcome.state == TurnState.FAILED:
        click.echo(f"❌ {outcome.error}", err=True)
        sys.exit(1)

    if outcome.message is not None and outcome.message.content:
        click.echo(f"\n{outcome.message.content}\n")
    if outcome.validation_retries:
        click.echo(f"🔁 Topology corrections requested: {outcome.validation_retries}")

    if output:
        write_document(await dump_flow(store, flow_id), output)
        click.echo(f"✅ Flow saved to: {output}")
