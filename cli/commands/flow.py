# cli/commands/flow.py
"""Offline flow commands: topology analysis and layout."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Tuple

import click
import yaml

from flowpilot.document import dump_flow, load_flow, parse_flow_file
from flowpilot.errors import FlowPilotError
from flowpilot.graph.analyzer import detect_dead_ends, detect_orphans, find_endpoints
from flowpilot.graph.layout import LayoutConfig, Orientation, layout_nodes
from flowpilot.graph.models import Node
from flowpilot.graph.snapshot import FlowSnapshot, build_snapshot
from flowpilot.graph.store import InMemoryGraphStore
from flowpilot.config import get_settings


async def load_snapshot(flow_file: Path) -> Tuple[InMemoryGraphStore, str, FlowSnapshot]:
    store = InMemoryGraphStore()
    flow_id = await load_flow(store, parse_flow_file(flow_file))
    return store, flow_id, await build_snapshot(store, flow_id)


def write_document(document: dict, output: Path) -> None:
    with open(output, 'w') as f:
        if output.suffix == '.json':
            json.dump(document, f, indent=2)
        else:
            yaml.safe_dump(document, f, default_flow_style=False, sort_keys=False)


@click.command()
@click.argument('flow_file', type=click.Path(exists=True, path_type=Path))
@click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text',
              help='Output format')
def analyze(flow_file: Path, output_format: str):
    """Report orphaned, dead-end and endpoint nodes of a flow document."""
    try:
        _, _, snapshot = asyncio.run(load_snapshot(flow_file))
    except FlowPilotError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    orphans = detect_orphans(snapshot.nodes, snapshot.edges)
    dead_ends = detect_dead_ends(snapshot.nodes, snapshot.edges, get_settings().dead_end_threshold)
    endpoints = find_endpoints(snapshot.nodes, snapshot.edges)

    if output_format == 'json':
        click.echo(json.dumps({
            'nodes': len(snapshot.nodes),
            'edges': len(snapshot.edges),
            'orphans': [n.name for n in orphans],
            'deadEnds': [n.name for n in dead_ends],
            'endpoints': [n.name for n in endpoints],
        }, indent=2))
    else:
        click.echo(f"📊 {len(snapshot.nodes)} nodes, {len(snapshot.edges)} edges")
        for label, nodes in (('Orphans', orphans), ('Dead ends', dead_ends), ('Endpoints', endpoints)):
            names = ', '.join(n.name for n in nodes) or '-'
            click.echo(f"   {label}: {names}")

    if orphans or dead_ends:
        sys.exit(2)


@click.command()
@click.argument('flow_file', type=click.Path(exists=True, path_type=Path))
@click.option('--orientation', type=click.Choice([o.value for o in Orientation]),
              default=Orientation.HORIZONTAL.value, help='Direction levels advance in')
@click.option('--output', '-o', type=click.Path(path_type=Path),
              help='Write the flow with updated positions to this file')
def layout(flow_file: Path, orientation: str, output: Path):
    """Compute BFS layout positions for a flow document."""
    settings = get_settings()
    config = LayoutConfig(
        orientation=Orientation(orientation),
        spacing_primary=settings.layout_spacing_primary,
        spacing_secondary=settings.layout_spacing_secondary,
        start_x=settings.layout_start_x,
        start_y=settings.layout_start_y,
    )

    async def run():
        store, flow_id, snapshot = await load_snapshot(flow_file)
        result = layout_nodes(snapshot.nodes, snapshot.edges, config)
        if result is not None and output:
            for node_id, position in result.positions.items():
                await store.update(Node, node_id, position=position)
            write_document(await dump_flow(store, flow_id), output)
        return snapshot, result

    try:
        snapshot, result = asyncio.run(run())
    except FlowPilotError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if result is None:
        click.echo("❌ Flow has no ManualStart node", err=True)
        sys.exit(1)

    names = snapshot.node_names()
    for node_id, position in result.positions.items():
        click.echo(f"  L{result.levels[node_id]}  {names[node_id]}: ({position.x:g}, {position.y:g})")

    unplaced = [n.name for n in snapshot.nodes if n.id not in result.positions]
    if unplaced:
        click.echo(f"⚠️  Not reachable from start, left in place: {', '.join(unplaced)}")
    if output:
        click.echo(f"✅ Flow saved to: {output}")
