from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from layout_inspector.tree.config import (
    FOCUSED_KEY,
    LINKED_AX_NODE_KEY,
    NON_AX_WITH_AX_CHILD_KEY,
)

NodePayload = Mapping[str, Any]


def _empty() -> Mapping[str, Any]:
    return MappingProxyType({})


class TreeKind(Enum):
    MAIN = "main"
    AX = "ax"

    @property
    def root_method(self) -> str:
        return "getAXRoot" if self is TreeKind.AX else "getRoot"

    @property
    def nodes_method(self) -> str:
        return "getAXNodes" if self is TreeKind.AX else "getNodes"

    def __str__(self):
        return self.value


class NodeNotLoadedError(LookupError):
    """Raised when a node id is accessed before it has been fetched into its store."""

    def __init__(self, node_id: str, tree: TreeKind):
        super().__init__(f"Node {node_id!r} is not loaded in the {tree} tree")
        self.node_id = node_id
        self.tree = tree


@dataclass(frozen=True)
class Node:
    id: str
    name: str = ""
    children: tuple[str, ...] = ()
    expanded: bool = False
    extra_info: Mapping[str, Any] = field(default_factory=_empty)
    attributes: Mapping[str, Any] = field(default_factory=_empty)

    @property
    def linked_peer_id(self) -> str | None:
        return self.extra_info.get(LINKED_AX_NODE_KEY) or None

    @property
    def focused(self) -> bool:
        return bool(self.extra_info.get(FOCUSED_KEY))

    @property
    def wraps_peer_child(self) -> bool:
        return bool(self.extra_info.get(NON_AX_WITH_AX_CHILD_KEY))

    def merged(self, payload: NodePayload) -> "Node":
        """Shallow-merge a (possibly partial) wire record over this node.

        Top-level keys absent from ``payload`` keep their current value.
        ``extraInfo`` is replaced as a whole when present, like any other key.
        """
        changes: dict[str, Any] = {}
        attributes = dict(self.attributes)
        attributes_touched = False
        for key, value in payload.items():
            match key:
                case "id":
                    continue
                case "name":
                    changes["name"] = value or ""
                case "children":
                    changes["children"] = tuple(value or ())
                case "expanded":
                    changes["expanded"] = bool(value)
                case "extraInfo":
                    changes["extra_info"] = MappingProxyType(dict(value or {}))
                case _:
                    attributes[key] = value
                    attributes_touched = True
        if attributes_touched:
            changes["attributes"] = MappingProxyType(attributes)
        return replace(self, **changes) if changes else self

    @classmethod
    def from_payload(cls, payload: NodePayload) -> "Node":
        return cls(id=payload["id"]).merged(payload)


@dataclass(frozen=True)
class TreeSnapshot:
    tree: TreeKind
    nodes: Mapping[str, Node] = field(default_factory=_empty)
    root: str | None = None

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)


@dataclass(frozen=True)
class SelectionKeys:
    main_id: str | None
    ax_id: str | None


@dataclass(frozen=True)
class SearchResultEntry:
    id: str
    is_match: bool
    has_children: bool
    element: NodePayload | None


@dataclass(frozen=True)
class SearchState:
    matches: frozenset[str]
    query: str


@dataclass
class InspectorState:
    initialised: bool = False
    ax_initialised: bool = False
    selected: str | None = None
    ax_selected: str | None = None
    ax_focused: str | None = None
    search_results: SearchState | None = None
    outstanding_search_query: str | None = None
    is_search_active: bool = False
    in_ax_mode: bool = False
    is_alignment_mode: bool = False

    def selection_for(self, tree: TreeKind) -> str | None:
        return self.ax_selected if tree is TreeKind.AX else self.selected

    @property
    def active_tree(self) -> TreeKind:
        return TreeKind.AX if self.in_ax_mode else TreeKind.MAIN

    def to_string(self) -> str:
        search = (
            f"{self.search_results.query!r} ({len(self.search_results.matches)} matches)"
            if self.search_results
            else "none"
        )
        lines = [
            f"Mode: {'accessibility' if self.in_ax_mode else 'main'}"
            f"{' (alignment)' if self.is_alignment_mode else ''}",
            f"Selected: {self.selected or '-'} | AX selected: {self.ax_selected or '-'}"
            f" | AX focused: {self.ax_focused or '-'}",
            f"Search: {search}"
            + (f" | loading {self.outstanding_search_query!r}" if self.outstanding_search_query else ""),
            f"Click-to-inspect: {'active' if self.is_search_active else 'inactive'}",
        ]
        return "\n".join(lines)
