"""Observation / state-query MCP tools.

Registers: Snapshot, Node, Correlate (3 tools).
"""

import json
from typing import Literal

from fastmcp import Context
from mcp.types import ToolAnnotations

from layout_inspector.analytics import with_analytics
from layout_inspector.tools import _state
from layout_inspector.tools._helpers import _inspector, _parse_tree
from layout_inspector.tree.views import NodeNotLoadedError, TreeKind


def register(mcp):
    """Register observation tools on *mcp*."""

    @mcp.tool(
        name="Snapshot",
        description="Returns the loaded part of the inspected app's view hierarchy as an indented outline. Markers: '>' collapsed, 'v' expanded, '-' leaf. Flags show the selected node, the accessibility-focused node and search matches. tree='main' for the view hierarchy, tree='ax' for the accessibility hierarchy; defaults to the tree of the current mode.",
        annotations=ToolAnnotations(
            title="Snapshot",
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
    )
    @with_analytics(lambda: _state.analytics, "Snapshot")
    async def snapshot_tool(
        tree: Literal["main", "ax"] | None = None, ctx: Context = None
    ) -> str:
        try:
            inspector = _inspector()
            kind = _parse_tree(tree)
        except (RuntimeError, ValueError) as e:
            return f"Error capturing inspector state: {e}"
        if kind is TreeKind.AX and not inspector.ax_supported:
            return "Accessibility tree is not available for this session."
        initialised = (
            inspector.state.ax_initialised if kind is TreeKind.AX else inspector.state.initialised
        )
        outline = inspector.tree_to_string(kind)
        loading = "" if initialised else ", loading"
        return (
            f"{inspector.state.to_string()}\n\n"
            f"{kind.name} tree ({len(inspector.store(kind))} nodes loaded{loading}):\n"
            f"{outline or 'Tree not loaded yet.'}"
        )

    @mcp.tool(
        name="Node",
        description="Returns the cached record of one node: name, children ids, expansion state, extra info and display attributes.",
        annotations=ToolAnnotations(
            title="Node",
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
    )
    @with_analytics(lambda: _state.analytics, "Node")
    async def node_tool(
        node_id: str, tree: Literal["main", "ax"] | None = None, ctx: Context = None
    ) -> str:
        try:
            kind = _parse_tree(tree)
            node = _inspector().store(kind).require(node_id)
        except (RuntimeError, ValueError, NodeNotLoadedError) as e:
            return f"Error: {e}"
        record = {
            "id": node.id,
            "name": node.name,
            "children": list(node.children),
            "expanded": node.expanded,
            "extraInfo": dict(node.extra_info),
            **node.attributes,
        }
        return json.dumps(record, indent=2, default=str)

    @mcp.tool(
        name="Correlate",
        description="Resolves which main-tree node and which accessibility node represent the given id. Without node_id, lists every accessibility-to-main link seen so far.",
        annotations=ToolAnnotations(
            title="Correlate",
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
    )
    @with_analytics(lambda: _state.analytics, "Correlate")
    async def correlate_tool(node_id: str | None = None, ctx: Context = None) -> str:
        try:
            inspector = _inspector()
        except RuntimeError as e:
            return f"Error: {e}"
        if node_id is None:
            links = inspector.correlation.as_dict()
            if not links:
                return "No accessibility links recorded."
            return "\n".join(f"{ax_id} -> {main_id}" for ax_id, main_id in sorted(links.items()))
        keys = inspector.correlate(node_id)
        return f"Main: {keys.main_id or '-'}\nAX: {keys.ax_id or '-'}"
