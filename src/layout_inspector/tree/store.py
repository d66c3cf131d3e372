"""Per-tree node cache.

Each ``NodeStore`` exclusively owns the records of one hierarchy.  Updates never
mutate a published ``TreeSnapshot``; they build a new one and swap it in, so a
reader holding an older snapshot keeps a consistent view while later fetches
land (last merge wins).
"""

import logging
from types import MappingProxyType
from typing import Iterable, Iterator

from layout_inspector.tree.views import (
    Node,
    NodeNotLoadedError,
    NodePayload,
    TreeKind,
    TreeSnapshot,
)

logger = logging.getLogger(__name__)


class CorrelationMapping:
    """Best-effort AX id -> main id index.

    Filled from the ``linkedAXNode`` of main-tree records as they are observed.
    The first main id recorded for an AX id is kept for the engine's lifetime.
    """

    def __init__(self):
        self._ax_to_main: dict[str, str] = {}

    def observe(self, node: Node) -> bool:
        linked = node.linked_peer_id
        if not linked or linked in self._ax_to_main:
            return False
        self._ax_to_main[linked] = node.id
        return True

    def get(self, ax_id: str) -> str | None:
        return self._ax_to_main.get(ax_id)

    def __contains__(self, ax_id: str) -> bool:
        return ax_id in self._ax_to_main

    def __len__(self) -> int:
        return len(self._ax_to_main)

    def as_dict(self) -> dict[str, str]:
        return dict(self._ax_to_main)


class NodeStore:
    def __init__(self, tree: TreeKind, correlation: CorrelationMapping | None = None):
        self.tree = tree
        self.correlation = correlation
        self._snapshot = TreeSnapshot(tree=tree)

    @property
    def snapshot(self) -> TreeSnapshot:
        return self._snapshot

    @property
    def root(self) -> str | None:
        return self._snapshot.root

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    def __iter__(self) -> Iterator[str]:
        return iter(self._snapshot.nodes)

    def get(self, node_id: str) -> Node | None:
        return self._snapshot.get(node_id)

    def require(self, node_id: str) -> Node:
        node = self._snapshot.get(node_id)
        if node is None:
            raise NodeNotLoadedError(node_id, self.tree)
        return node

    def loaded_ids(self) -> list[str]:
        return list(self._snapshot.nodes)

    def set_root(self, root_id: str) -> TreeSnapshot:
        current = self._snapshot
        if current.root is not None:
            if current.root != root_id:
                logger.debug(
                    "Ignoring new %s root %s, root already set to %s", self.tree, root_id, current.root
                )
            return current
        self._snapshot = TreeSnapshot(tree=self.tree, nodes=current.nodes, root=root_id)
        return self._snapshot

    def update(self, payloads: Iterable[NodePayload]) -> TreeSnapshot:
        """Shallow-merge each record over the stored node with the same id."""
        current = self._snapshot
        nodes = dict(current.nodes)
        count = 0
        for payload in payloads:
            node_id = payload["id"]
            existing = nodes.get(node_id)
            node = existing.merged(payload) if existing is not None else Node.from_payload(payload)
            nodes[node_id] = node
            if self.correlation is not None:
                self.correlation.observe(node)
            count += 1
        if not count:
            return current
        self._snapshot = TreeSnapshot(
            tree=self.tree, nodes=MappingProxyType(nodes), root=current.root
        )
        logger.debug("Merged %d records into %s tree (%d loaded)", count, self.tree, len(nodes))
        return self._snapshot

    def set_expanded(self, node_id: str, expanded: bool) -> TreeSnapshot:
        return self.update([{"id": node_id, "expanded": expanded}])

    def expand_all(self, node_ids: Iterable[str]) -> TreeSnapshot:
        return self.update([{"id": node_id, "expanded": True} for node_id in node_ids])
