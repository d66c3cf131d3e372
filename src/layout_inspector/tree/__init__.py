from layout_inspector.tree.service import Inspector
from layout_inspector.tree.store import CorrelationMapping, NodeStore
from layout_inspector.tree.views import (
    InspectorState,
    Node,
    NodeNotLoadedError,
    SearchResultEntry,
    SearchState,
    SelectionKeys,
    TreeKind,
    TreeSnapshot,
)

__all__ = [
    "CorrelationMapping",
    "Inspector",
    "InspectorState",
    "Node",
    "NodeNotLoadedError",
    "NodeStore",
    "SearchResultEntry",
    "SearchState",
    "SelectionKeys",
    "TreeKind",
    "TreeSnapshot",
]
