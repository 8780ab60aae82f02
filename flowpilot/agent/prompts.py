"""Prompt rendering for the conversation loop.

The system prompt, the compact ``<flow-update>`` delta injected after a
mutating batch and the corrective validation message are all rendered
from jinja2 templates in ``templates/``.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import jinja2

from flowpilot.graph.analyzer import detect_orphans, find_endpoints
from flowpilot.graph.models import FlowItemState, HandleKind
from flowpilot.graph.snapshot import FlowSnapshot, NodeView

ENDPOINT_WARNING_THRESHOLD = 5

_XML_ESCAPES = (
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&apos;"),
)


def escape_xml(value: Any) -> str:
    text = "" if value is None else str(value)
    for char, entity in _XML_ESCAPES:
        text = text.replace(char, entity)
    return text


def render_attrs(pairs: Sequence[Tuple[str, Any]]) -> str:
    """Render ``[(key, value), ...]`` as ``key="value"`` attributes."""
    return " ".join(f'{key}="{escape_xml(value)}"' for key, value in pairs)


class PromptBuilder:
    """Render model-facing prompts from a FlowSnapshot."""

    def __init__(self, templates_dir: Optional[Path] = None):
        if templates_dir is None:
            templates_dir = Path(__file__).parent / "templates"

        self.templates_dir = templates_dir
        self._setup_jinja()

    def _setup_jinja(self):
        self.jinja_env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(self.templates_dir)),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True
        )
        self.jinja_env.filters['xml'] = escape_xml
        self.jinja_env.filters['attrs'] = render_attrs

    def _render(self, template_name: str, **context) -> str:
        template = self.jinja_env.get_template(template_name)
        return template.render(**context).strip()

    def system_prompt(self, snapshot: FlowSnapshot, default_handle: str = "then") -> str:
        """Full system prompt: rules plus the current flow as XML."""
        return self._render(
            "system_prompt.j2",
            flow_id=snapshot.flow_id,
            default_handle=default_handle,
            **self._flow_context(snapshot),
        )

    def flow_xml(self, snapshot: FlowSnapshot) -> str:
        return self._render("flow.j2", **self._flow_context(snapshot))

    def flow_update(self, snapshot: FlowSnapshot) -> str:
        """Compact topology delta sent after a mutating tool batch."""
        return self._render(
            "flow_update.j2",
            node_count=len(snapshot.nodes),
            edge_count=len(snapshot.edges),
            endpoints=find_endpoints(snapshot.nodes, snapshot.edges),
            orphans=detect_orphans(snapshot.nodes, snapshot.edges),
            endpoint_warning_threshold=ENDPOINT_WARNING_THRESHOLD,
        )

    def validation_message(
        self,
        orphans: Sequence[NodeView],
        dead_ends: Sequence[NodeView] = ()
    ) -> str:
        """Corrective instruction for a topology check that found problems.

        Orphans take precedence; dead ends are only reported on their own.
        """
        return self._render(
            "validation.j2",
            orphans=list(orphans),
            dead_ends=list(dead_ends),
        )

    def _flow_context(self, snapshot: FlowSnapshot) -> Dict[str, Any]:
        names = snapshot.node_names()
        orphan_ids = {n.id for n in detect_orphans(snapshot.nodes, snapshot.edges)}
        endpoint_ids = {n.id for n in find_endpoints(snapshot.nodes, snapshot.edges)}
        selected = set(snapshot.selected_node_ids)

        errors = {
            execution.node_id: execution.error
            for execution in snapshot.executions
            if execution.state == FlowItemState.FAILURE and execution.error
        }

        outgoing: Dict[str, List[List[Tuple[str, str]]]] = {}
        for edge in snapshot.edges:
            attrs = [("id", edge.id), ("target", names.get(edge.target_id, edge.target_id))]
            if edge.source_handle != HandleKind.UNSPECIFIED:
                attrs.append(("handle", edge.source_handle.value))
            outgoing.setdefault(edge.source_id, []).append(attrs)

        nodes = []
        for node in snapshot.nodes:
            attrs: List[Tuple[str, Any]] = [
                ("id", node.id),
                ("name", node.name),
                ("type", node.kind.value),
            ]
            if node.http_method:
                attrs.append(("method", node.http_method))
            if node.state != FlowItemState.IDLE:
                attrs.append(("state", node.state.value))

            detail = errors.get(node.id) or node.info
            if detail:
                attrs.append(("error", detail))

            if node.id in selected:
                attrs.append(("selected", "true"))
            if node.id in orphan_ids:
                attrs.append(("orphan", "true"))
            if node.id in endpoint_ids:
                attrs.append(("endpoint", "true"))

            nodes.append({"attrs": attrs, "edges": outgoing.get(node.id, [])})

        return {
            "nodes": nodes,
            "variables": [v for v in snapshot.variables if v.enabled],
        }
