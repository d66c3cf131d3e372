"""Shared helper functions for MCP tool handlers."""

from layout_inspector.tools import _state
from layout_inspector.tree.views import TreeKind


def _coerce_bool(value: bool | str, default: bool = False) -> bool:
    """Convert a bool-or-string MCP parameter to a proper bool."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() == "true"
    return default


def _parse_tree(value: str | None) -> TreeKind:
    """Map the ``tree`` tool parameter to a TreeKind; None means the active tree."""
    if value is None:
        return _inspector().state.active_tree
    try:
        return TreeKind(value.lower())
    except ValueError as e:
        raise ValueError(f"tree must be 'main' or 'ax', got {value!r}") from e


def _inspector():
    if _state.inspector is None:
        raise RuntimeError("Inspector is not initialised")
    return _state.inspector
