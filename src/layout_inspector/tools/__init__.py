"""MCP tool registration package.

Call ``register_all_tools(mcp)`` after creating the FastMCP instance.
"""

from layout_inspector.tools import input_tools, state_tools


def register_all_tools(mcp):
    """Register all tool handlers on *mcp*."""
    state_tools.register(mcp)
    input_tools.register(mcp)
