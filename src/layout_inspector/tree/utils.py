from typing import Any, Mapping

from layout_inspector.tree.views import SearchResultEntry, SearchState, TreeSnapshot


def flatten_search_results(tree: Mapping[str, Any] | None) -> list[SearchResultEntry]:
    """
    Flatten a search result tree into a pre-order list.

    Each result node looks like ``{"id", "isMatch", "children"?, "element"}``.
    ``has_children`` records whether the node carried a ``children`` list at all,
    so an explicitly empty list still counts.

    Args:
        tree (Mapping | None): Root of the result tree. ``None`` yields an empty list.

    Returns:
        list[SearchResultEntry]: One entry per result node, parents before children.
    """
    entries: list[SearchResultEntry] = []
    if not tree:
        return entries
    stack: list[Mapping[str, Any]] = [tree]
    while stack:
        result = stack.pop()
        children = result.get("children")
        entries.append(
            SearchResultEntry(
                id=result.get("id"),
                is_match=bool(result.get("isMatch")),
                has_children=children is not None,
                element=result.get("element"),
            )
        )
        # Reversed so the leftmost child is visited first
        for child in reversed(children or []):
            if child:
                stack.append(child)
    return entries


def render_tree(
    snapshot: TreeSnapshot,
    *,
    selected: str | None = None,
    focused: str | None = None,
    search: SearchState | None = None,
) -> str:
    """Text dump of the loaded part of a tree, following expanded nodes only."""
    if snapshot.root is None:
        return ""
    lines: list[str] = []
    stack: list[tuple[str, int]] = [(snapshot.root, 0)]
    while stack:
        node_id, depth = stack.pop()
        node = snapshot.get(node_id)
        indent = "  " * depth
        if node is None:
            lines.append(f"{indent}? {node_id} (not loaded)")
            continue
        if not node.children:
            marker = "-"
        else:
            marker = "v" if node.expanded else ">"
        flags = []
        if node_id == selected:
            flags.append("selected")
        if node_id == focused:
            flags.append("focused")
        if search is not None and node_id in search.matches:
            flags.append("match")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        lines.append(f"{indent}{marker} {node.name or '<unnamed>'} ({node_id}){suffix}")
        if node.expanded:
            for child_id in reversed(node.children):
                stack.append((child_id, depth + 1))
    return "\n".join(lines)
