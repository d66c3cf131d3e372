import asyncio
import logging
from collections import deque
from time import time
from typing import Any, Iterable, Sequence

from layout_inspector.debounce import Debouncer
from layout_inspector.remote.service import RemoteConnection
from layout_inspector.tree.config import (
    DEEP_EXPAND_LIMIT,
    FOCUSED_KEY,
    HOVER_DEBOUNCE_SECONDS,
    NON_AX_WITH_AX_CHILD_KEY,
    SELECT_DEBOUNCE_SECONDS,
    TRANSPARENT_HOST_NAMES,
)
from layout_inspector.tree.fetcher import RemoteFetcher
from layout_inspector.tree.store import CorrelationMapping, NodeStore
from layout_inspector.tree.utils import flatten_search_results, render_tree
from layout_inspector.tree.views import (
    InspectorState,
    Node,
    NodePayload,
    SearchState,
    SelectionKeys,
    TreeKind,
    TreeSnapshot,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _extra_info(payload: NodePayload) -> dict[str, Any]:
    return payload.get("extraInfo") or {}


class Inspector:
    """Mirrors the main and accessibility hierarchies of a remote application.

    Both trees run through the same code paths; ``TreeKind`` picks the store,
    the remote methods, and the tree-specific update rules (correlation links
    for the main tree, focus tracking for the AX tree).
    """

    def __init__(self, remote: RemoteConnection, ax_supported: bool = False):
        self.remote = remote
        self.ax_supported = ax_supported
        self.correlation = CorrelationMapping()
        self.stores = {
            TreeKind.MAIN: NodeStore(TreeKind.MAIN, self.correlation),
            TreeKind.AX: NodeStore(TreeKind.AX),
        }
        self.fetcher = RemoteFetcher(remote, self.stores)
        self.state = InspectorState()
        self.select_element = Debouncer(self.select_element_now, SELECT_DEBOUNCE_SECONDS)
        self.hover_element = Debouncer(self.hover_element_now, HOVER_DEBOUNCE_SECONDS)

    def store(self, tree: TreeKind) -> NodeStore:
        return self.stores[tree]

    # -----------------------------------------------------------------------
    # Store updates
    # -----------------------------------------------------------------------

    def update_elements(
        self,
        payloads: Iterable[NodePayload],
        tree: TreeKind,
        for_focus_event: bool = False,
    ) -> TreeSnapshot:
        payloads = list(payloads)
        if tree is not TreeKind.AX:
            return self.stores[tree].update(payloads)

        # A focus event makes any previously focused id stale
        focused = None if for_focus_event else self.state.ax_focused
        for payload in payloads:
            if _extra_info(payload).get(FOCUSED_KEY):
                focused = payload["id"]
        snapshot = self.stores[tree].update(payloads)
        if focused != self.state.ax_focused:
            logger.debug("AX focus moved from %s to %s", self.state.ax_focused, focused)
        self.state.ax_focused = focused
        return snapshot

    # -----------------------------------------------------------------------
    # Fetching
    # -----------------------------------------------------------------------

    async def get_nodes(
        self,
        ids: Iterable[str],
        tree: TreeKind,
        force: bool = False,
        for_focus_event: bool = False,
    ) -> list[NodePayload]:
        return await self.fetcher.fetch_nodes(
            ids, force=force, tree=tree, for_focus_event=for_focus_event
        )

    async def get_children(self, node_id: str, tree: TreeKind) -> list[NodePayload]:
        node = self.stores[tree].require(node_id)
        return await self.get_nodes(node.children, tree)

    async def get_nodes_and_direct_children(
        self, ids: Sequence[str], tree: TreeKind
    ) -> list[NodePayload]:
        nodes = await self.get_nodes(ids, tree)
        child_ids = [child_id for node in nodes for child_id in node.get("children") or []]
        children = await self.get_nodes(child_ids, tree)
        return nodes + children

    async def refresh(self, node_id: str, tree: TreeKind) -> list[NodePayload]:
        payloads = await self.get_nodes([node_id], tree, force=True)
        self.update_elements(payloads, tree)
        return payloads

    # -----------------------------------------------------------------------
    # Initialisation
    # -----------------------------------------------------------------------

    async def init(self) -> None:
        tasks = [self._load_search_active(), self._init_tree(TreeKind.MAIN)]
        if self.ax_supported:
            tasks.append(self._init_tree(TreeKind.AX))
        await asyncio.gather(*tasks)

    async def _load_search_active(self) -> None:
        response = await self.remote.call("isSearchActive")
        self.state.is_search_active = bool((response or {}).get("isSearchActive"))

    async def _init_tree(self, tree: TreeKind) -> None:
        start_time = time()
        root = await self.remote.call(tree.root_method)
        self.update_elements([root], tree)
        store = self.stores[tree]
        store.set_root(root["id"])
        await self.perform_initial_expand(store.require(root["id"]), tree)
        if tree is TreeKind.AX:
            self.state.ax_initialised = True
        else:
            self.state.initialised = True
        logger.info(
            "%s tree initialised with %d nodes in %.2f seconds",
            tree,
            len(store),
            time() - start_time,
        )

    async def perform_initial_expand(
        self, node: Node, tree: TreeKind, max_depth: int | None = None
    ) -> None:
        """Expand the root and keep going down while a node has a single child."""
        store = self.stores[tree]
        depth = 0
        while node.children:
            if max_depth is not None and depth > max_depth:
                break
            store.set_expanded(node.id, True)
            self.update_elements(await self.get_children(node.id, tree), tree)
            if len(node.children) >= 2:
                return
            next_node = store.get(node.children[0])
            if next_node is None:
                logger.debug("Initial expand stopped, %s was not returned", node.children[0])
                return
            node = next_node
            depth += 1

    # -----------------------------------------------------------------------
    # Invalidation
    # -----------------------------------------------------------------------

    async def invalidate(
        self, ids: Sequence[str], tree: TreeKind, max_depth: int | None = None
    ) -> list[NodePayload]:
        """Force-refetch ``ids`` and every already-expanded descendant.

        Children of nodes that were collapsed or not loaded before the refresh
        are not visited.  Results are ordered level by level; the store is
        left untouched.
        """
        store = self.stores[tree]
        results: list[NodePayload] = []
        frontier = list(ids)
        depth = 0
        while frontier:
            if max_depth is not None and depth > max_depth:
                break
            payloads = await self.get_nodes(frontier, tree, force=True)
            results.extend(payloads)
            frontier = []
            for payload in payloads:
                previous = store.get(payload["id"])
                if previous is not None and previous.expanded:
                    frontier.extend(payload.get("children") or [])
            depth += 1
        return results

    async def on_invalidate(self, ids: Sequence[str], tree: TreeKind) -> list[NodePayload]:
        payloads = await self.invalidate(ids, tree)
        self.update_elements(payloads, tree)
        logger.debug("Invalidated %d %s nodes, %d refreshed", len(ids), tree, len(payloads))
        return payloads

    # -----------------------------------------------------------------------
    # Expansion
    # -----------------------------------------------------------------------

    def is_expanded(self, node_id: str, tree: TreeKind) -> bool:
        return self.stores[tree].require(node_id).expanded

    async def set_expanded(
        self, node_id: str, expand: bool, tree: TreeKind
    ) -> list[NodePayload]:
        """Set the expansion flag; expanding fetches and returns uncached children."""
        self.stores[tree].require(node_id)
        self.stores[tree].set_expanded(node_id, expand)
        if not expand:
            return []

        children = await self.get_children(node_id, tree)
        self.update_elements(children, tree)

        # Main-tree wrappers without an AX counterpart would hide their AX-linked
        # children in the overlay, so they open together with their parent.
        if self.state.in_ax_mode and tree is TreeKind.MAIN:
            wrappers = [
                child["id"]
                for child in children
                if _extra_info(child).get(NON_AX_WITH_AX_CHILD_KEY)
            ]
            if wrappers:
                await asyncio.gather(*(self.set_expanded(w, True, tree) for w in wrappers))
        return children

    async def toggle_expand(self, node_id: str, tree: TreeKind) -> list[NodePayload]:
        return await self.set_expanded(node_id, not self.is_expanded(node_id, tree), tree)

    async def deep_expand(
        self, node_id: str, tree: TreeKind, limit: int = DEEP_EXPAND_LIMIT
    ) -> int:
        """Breadth-first expansion from ``node_id``, at most ``limit`` nodes.

        An already expanded node is collapsed instead.  Returns the number of
        nodes expanded.
        """
        if self.is_expanded(node_id, tree):
            await self.set_expanded(node_id, False, tree)
            return 0

        queue = deque([node_id])
        count = 0
        while queue and count < limit:
            key = queue.popleft()
            children = await self.set_expanded(key, True, tree)
            queue.extend(child["id"] for child in children)
            count += 1
        if queue:
            logger.info(
                "Deep expand of %s stopped after %d nodes, %d left collapsed",
                node_id,
                count,
                len(queue),
            )
        return count

    async def on_element_expanded(self, node_id: str, deep: bool = False) -> list[TreeKind]:
        """Apply an expand gesture to every tree that has ``node_id`` loaded."""
        trees = [tree for tree in TreeKind if node_id in self.stores[tree]]
        if deep:
            await asyncio.gather(*(self.deep_expand(node_id, tree) for tree in trees))
        else:
            await asyncio.gather(*(self.toggle_expand(node_id, tree) for tree in trees))
        return trees

    # -----------------------------------------------------------------------
    # Selection
    # -----------------------------------------------------------------------

    def correlate(self, selected_id: str) -> SelectionKeys:
        """Resolve the main and AX ids that represent ``selected_id``."""
        if not self.ax_supported:
            return SelectionKeys(main_id=selected_id, ax_id=None)

        main_node = self.stores[TreeKind.MAIN].get(selected_id)
        if main_node is not None and main_node.linked_peer_id:
            return SelectionKeys(main_id=selected_id, ax_id=main_node.linked_peer_id)

        is_host = main_node is None or main_node.name in TRANSPARENT_HOST_NAMES
        if is_host and selected_id in self.correlation:
            return SelectionKeys(main_id=self.correlation.get(selected_id), ax_id=selected_id)

        return SelectionKeys(main_id=selected_id, ax_id=selected_id)

    def _select(self, keys: SelectionKeys) -> None:
        self.state.selected = keys.main_id
        self.state.ax_selected = keys.ax_id

    def _highlight(self, node_id: str | None) -> None:
        self.remote.send(
            "setHighlighted", {"id": node_id, "isAlignmentMode": self.state.is_alignment_mode}
        )

    async def select_element_now(self, selected_id: str) -> SelectionKeys:
        keys = self.correlate(selected_id)
        self._select(keys)
        self._highlight(selected_id)
        refreshes = [self.refresh(keys.main_id, TreeKind.MAIN)]
        if keys.ax_id:
            refreshes.append(self.refresh(keys.ax_id, TreeKind.AX))
        await asyncio.gather(*refreshes)
        return keys

    def hover_element_now(self, node_id: str | None) -> None:
        self._highlight(node_id)

    async def on_select_path(self, path: Sequence[str], tree: TreeKind) -> None:
        """Reveal and select the node the user picked on the device."""
        if not path:
            logger.debug("Ignoring empty %s select path", tree)
            return
        self.update_elements(await self.get_nodes_and_direct_children(path, tree), tree)

        selected = path[-1]
        if (tree is TreeKind.AX) == self.state.in_ax_mode:
            self._select(self.correlate(selected))

        self.state.is_search_active = False
        self.stores[tree].expand_all(path)
        self._highlight(selected)
        self.remote.send("setSearchActive", {"active": False})

    # -----------------------------------------------------------------------
    # Search
    # -----------------------------------------------------------------------

    async def submit_search(self, query: str) -> SearchState | None:
        if not query or not query.strip():
            return None
        self.state.outstanding_search_query = query
        response = await self.remote.call("getSearchResults", {"query": query})
        response = response or {}
        return self.on_search_response(response.get("results"), response.get("query", query))

    def on_search_response(self, results: dict[str, Any] | None, query: str) -> SearchState:
        entries = flatten_search_results(results)
        store = self.stores[TreeKind.MAIN]
        self.update_elements(
            [entry.element for entry in entries if entry.element is not None], TreeKind.MAIN
        )
        store.expand_all(entry.id for entry in entries if entry.has_children and entry.id in store)

        search_results = SearchState(
            matches=frozenset(entry.id for entry in entries if entry.is_match),
            query=query,
        )
        # Results are shown even when superseded; only the matching query clears loading
        self.state.search_results = search_results
        if self.state.outstanding_search_query == query:
            self.state.outstanding_search_query = None
        logger.info("Search %r: %d matches", query, len(search_results.matches))
        return search_results

    # -----------------------------------------------------------------------
    # Accessibility focus
    # -----------------------------------------------------------------------

    async def on_ax_focus_event(self, is_focus: bool) -> list[NodePayload]:
        store = self.stores[TreeKind.AX]
        if is_focus:
            # The remote side does not say which node gained focus
            ids = store.loaded_ids()
        elif self.state.ax_focused and self.state.ax_focused in store:
            ids = [self.state.ax_focused]
        else:
            ids = []
        payloads = await self.get_nodes(ids, TreeKind.AX, force=True, for_focus_event=True)
        self.update_elements(payloads, TreeKind.AX, for_focus_event=is_focus)
        return payloads

    def request_ax_focus(self, node_id: str) -> None:
        self.remote.send("onRequestAXFocus", {"id": node_id})

    # -----------------------------------------------------------------------
    # Commands and modes
    # -----------------------------------------------------------------------

    async def set_data(self, path: Sequence[str], value: Any) -> NodePayload | None:
        ax = self.state.in_ax_mode
        node_id = self.state.selection_for(self.state.active_tree)
        if node_id is None:
            raise ValueError("No node is selected")
        element = await self.remote.call(
            "setData", {"id": node_id, "path": list(path), "value": value, "ax": ax}
        )
        if ax and element:
            self.update_elements([element], TreeKind.AX)
        return element

    async def execute_command(self, command: str) -> Any:
        return await self.remote.call(
            "executeCommand",
            {"command": command, "context": self.state.selection_for(self.state.active_tree)},
        )

    def toggle_search_active(self) -> bool:
        self.state.is_search_active = not self.state.is_search_active
        self.remote.send("setSearchActive", {"active": self.state.is_search_active})
        return self.state.is_search_active

    def toggle_ax_mode(self) -> bool:
        if not self.ax_supported:
            raise ValueError("Accessibility mode is not supported for this session")
        self.state.in_ax_mode = not self.state.in_ax_mode
        return self.state.in_ax_mode

    def toggle_alignment_mode(self) -> bool:
        self.state.is_alignment_mode = not self.state.is_alignment_mode
        return self.state.is_alignment_mode

    # -----------------------------------------------------------------------
    # Text output
    # -----------------------------------------------------------------------

    def tree_to_string(self, tree: TreeKind) -> str:
        if tree is TreeKind.AX:
            return render_tree(
                self.stores[tree].snapshot,
                selected=self.state.ax_selected,
                focused=self.state.ax_focused,
            )
        return render_tree(
            self.stores[tree].snapshot,
            selected=self.state.selected,
            search=self.state.search_results,
        )
