"""Interaction MCP tools.

Registers: Expand, Select, Hover, Search, SetData, Command, Mode,
RequestFocus (8 tools).
"""

import json
from typing import Any, Literal

from fastmcp import Context
from mcp.types import ToolAnnotations

from layout_inspector.analytics import with_analytics
from layout_inspector.remote.service import RemoteError
from layout_inspector.tools import _state
from layout_inspector.tools._helpers import _coerce_bool, _inspector
from layout_inspector.tree.views import NodeNotLoadedError, TreeKind


def register(mcp):  # noqa: C901
    """Register interaction tools on *mcp*."""

    @mcp.tool(
        name="Expand",
        description="Toggles a node open or closed in every tree that has it loaded. Set deep=True to open the whole subtree breadth-first (at most 100 nodes); deep on an already open node closes it.",
        annotations=ToolAnnotations(
            title="Expand",
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=False,
            openWorldHint=True,
        ),
    )
    @with_analytics(lambda: _state.analytics, "Expand")
    async def expand_tool(node_id: str, deep: bool | str = False, ctx: Context = None) -> str:
        deep = _coerce_bool(deep)
        try:
            inspector = _inspector()
            trees = await inspector.on_element_expanded(node_id, deep=deep)
        except (RuntimeError, RemoteError, NodeNotLoadedError) as e:
            return f"Error expanding {node_id}: {e}"
        if not trees:
            return f"Node {node_id} is not loaded."
        states = ", ".join(
            f"{tree}: {'expanded' if inspector.is_expanded(node_id, tree) else 'collapsed'}"
            for tree in trees
        )
        return f"{'Deep expand' if deep else 'Toggle'} of {node_id} done ({states})."

    @mcp.tool(
        name="Select",
        description="Selects a node, highlights it on the device and refreshes it (and its linked accessibility node) from the app. Set immediate=False to coalesce rapid selections; only the last one within the window is applied.",
        annotations=ToolAnnotations(
            title="Select",
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=True,
        ),
    )
    @with_analytics(lambda: _state.analytics, "Select")
    async def select_tool(node_id: str, immediate: bool | str = True, ctx: Context = None) -> str:
        try:
            inspector = _inspector()
            if not _coerce_bool(immediate):
                inspector.select_element(node_id)
                return f"Selection of {node_id} scheduled."
            keys = await inspector.select_element_now(node_id)
        except (RuntimeError, RemoteError) as e:
            return f"Error selecting {node_id}: {e}"
        return f"Selected main node {keys.main_id}" + (
            f" and AX node {keys.ax_id}." if keys.ax_id else "."
        )

    @mcp.tool(
        name="Hover",
        description="Highlights a node on the device without selecting it. Rapid hovers are coalesced; pass no node_id to clear the highlight.",
        annotations=ToolAnnotations(
            title="Hover",
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=True,
        ),
    )
    @with_analytics(lambda: _state.analytics, "Hover", rate_limited=False)
    async def hover_tool(node_id: str | None = None, ctx: Context = None) -> str:
        try:
            _inspector().hover_element(node_id)
        except RuntimeError as e:
            return f"Error: {e}"
        return f"Highlight of {node_id or 'nothing'} scheduled."

    @mcp.tool(
        name="Search",
        description="Searches the view hierarchy in the app. Matching nodes and their ancestors are loaded and expanded; use Snapshot to see them flagged as matches.",
        annotations=ToolAnnotations(
            title="Search",
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=True,
        ),
    )
    @with_analytics(lambda: _state.analytics, "Search")
    async def search_tool(query: str, ctx: Context = None) -> str:
        try:
            result = await _inspector().submit_search(query)
        except (RuntimeError, RemoteError) as e:
            return f"Error searching for {query!r}: {e}"
        if result is None:
            return "Error: query must not be empty."
        matches = ", ".join(sorted(result.matches)) or "none"
        return f"{len(result.matches)} matches for {result.query!r}: {matches}"

    @mcp.tool(
        name="SetData",
        description="Changes a property of the selected node in the app. path is the property path as shown by Node (e.g. ['data', 'style', 'opacity']).",
        annotations=ToolAnnotations(
            title="SetData",
            readOnlyHint=False,
            destructiveHint=True,
            idempotentHint=True,
            openWorldHint=True,
        ),
    )
    @with_analytics(lambda: _state.analytics, "SetData")
    async def set_data_tool(path: list[str], value: Any, ctx: Context = None) -> str:
        if not path:
            return "Error: path must not be empty."
        try:
            element = await _inspector().set_data(path, value)
        except (RuntimeError, RemoteError, ValueError) as e:
            return f"Error setting {'.'.join(path)}: {e}"
        return f"Set {'.'.join(path)} = {json.dumps(value, default=str)}" + (
            f" on {element.get('id')}." if isinstance(element, dict) else "."
        )

    @mcp.tool(
        name="Command",
        description="Runs a named app command with the currently selected node as context.",
        annotations=ToolAnnotations(
            title="Command",
            readOnlyHint=False,
            destructiveHint=True,
            idempotentHint=False,
            openWorldHint=True,
        ),
    )
    @with_analytics(lambda: _state.analytics, "Command")
    async def command_tool(command: str, ctx: Context = None) -> str:
        if not command or not command.strip():
            return "Error: command must not be empty."
        try:
            response = await _inspector().execute_command(command)
        except (RuntimeError, RemoteError) as e:
            return f"Error executing {command!r}: {e}"
        return f"Response: {json.dumps(response, default=str)}"

    @mcp.tool(
        name="Mode",
        description="Toggles a mode: 'find' (click-to-inspect on the device), 'ax' (accessibility mode, selection and edits target the accessibility tree), 'alignment' (alignment guides while highlighting).",
        annotations=ToolAnnotations(
            title="Mode",
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=False,
            openWorldHint=True,
        ),
    )
    @with_analytics(lambda: _state.analytics, "Mode")
    async def mode_tool(mode: Literal["find", "ax", "alignment"], ctx: Context = None) -> str:
        try:
            inspector = _inspector()
            match mode:
                case "find":
                    enabled = inspector.toggle_search_active()
                case "ax":
                    enabled = inspector.toggle_ax_mode()
                case "alignment":
                    enabled = inspector.toggle_alignment_mode()
                case _:
                    return f"Error: unknown mode {mode!r}."
        except (RuntimeError, ValueError) as e:
            return f"Error: {e}"
        return f"{mode} mode {'enabled' if enabled else 'disabled'}."

    @mcp.tool(
        name="RequestFocus",
        description="Asks the app to move accessibility focus to the given accessibility node.",
        annotations=ToolAnnotations(
            title="RequestFocus",
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=True,
        ),
    )
    @with_analytics(lambda: _state.analytics, "RequestFocus")
    async def request_focus_tool(node_id: str, ctx: Context = None) -> str:
        try:
            inspector = _inspector()
        except RuntimeError as e:
            return f"Error: {e}"
        if not inspector.ax_supported:
            return "Error: accessibility is not available for this session."
        if node_id not in inspector.store(TreeKind.AX):
            return f"Error: AX node {node_id} is not loaded."
        inspector.request_ax_focus(node_id)
        return f"Focus requested for {node_id}."
