import logging
from time import time
from typing import Iterable

from layout_inspector.remote.service import RemoteConnection
from layout_inspector.tree.store import NodeStore
from layout_inspector.tree.views import NodePayload, TreeKind

logger = logging.getLogger(__name__)


class RemoteFetcher:
    """Batched node fetches over the remote boundary.

    The fetcher only reads the stores to decide what is already cached; writing
    results back is left to the caller.
    """

    def __init__(self, remote: RemoteConnection, stores: dict[TreeKind, NodeStore]):
        self.remote = remote
        self.stores = stores

    def pending_ids(self, ids: Iterable[str], *, force: bool, tree: TreeKind) -> list[str]:
        store = self.stores[tree]
        seen: set[str] = set()
        pending = []
        for node_id in ids:
            if node_id in seen or (not force and node_id in store):
                continue
            seen.add(node_id)
            pending.append(node_id)
        return pending

    async def fetch_nodes(
        self,
        ids: Iterable[str],
        *,
        force: bool,
        tree: TreeKind,
        for_focus_event: bool = False,
    ) -> list[NodePayload]:
        pending = self.pending_ids(ids, force=force, tree=tree)
        if not pending:
            return []

        start_time = time()
        response = await self.remote.call(
            tree.nodes_method, {"ids": pending, "forFocusEvent": for_focus_event}
        )
        elements = list((response or {}).get("elements") or [])
        logger.debug(
            "%s: %d requested, %d returned in %.3f seconds",
            tree.nodes_method,
            len(pending),
            len(elements),
            time() - start_time,
        )
        return elements
