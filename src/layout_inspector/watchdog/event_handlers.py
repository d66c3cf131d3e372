import logging
import weakref
from typing import Any

from layout_inspector.tree.views import TreeKind

logger = logging.getLogger(__name__)


class _EventHandler:
    """Base for handlers that forward one remote event to a WatchDog callback.

    Errors are logged and swallowed so one failing chain never stops the
    event pump.
    """

    event: str = ""

    def __init__(self, parent):
        self._parent = weakref.ref(parent)

    async def __call__(self, params: dict[str, Any]) -> None:
        parent = self._parent()
        if parent is None:
            return
        try:
            await self.handle(parent, params)
        except Exception as e:
            logger.error("Error handling remote %s event: %s", self.event, e)

    async def handle(self, parent, params: dict[str, Any]) -> None:
        raise NotImplementedError


class InvalidateEventHandler(_EventHandler):
    def __init__(self, parent, tree: TreeKind):
        super().__init__(parent)
        self.tree = tree
        self.event = "invalidateAX" if tree is TreeKind.AX else "invalidate"

    async def handle(self, parent, params):
        if parent._invalidate_callback:
            ids = [node["id"] for node in params.get("nodes") or []]
            await parent._invalidate_callback(ids, self.tree)


class SelectEventHandler(_EventHandler):
    def __init__(self, parent, tree: TreeKind):
        super().__init__(parent)
        self.tree = tree
        self.event = "selectAX" if tree is TreeKind.AX else "select"

    async def handle(self, parent, params):
        if parent._select_callback:
            await parent._select_callback(list(params.get("path") or []), self.tree)


class FocusChangedEventHandler(_EventHandler):
    event = "axFocusEvent"

    async def handle(self, parent, params):
        if parent._focus_callback:
            await parent._focus_callback(bool(params.get("isFocus")))
