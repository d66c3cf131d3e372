"""
WatchDog service routing remote push notifications into the inspector.

Subscribes one handler per remote event on the connection and, when the
connection streams events itself, runs its event pump as a background task.
"""

import asyncio
import logging

from layout_inspector.remote.service import RemoteConnection
from layout_inspector.tree.views import TreeKind

from .event_handlers import (
    FocusChangedEventHandler,
    InvalidateEventHandler,
    SelectEventHandler,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class WatchDog:
    def __init__(self, connection: RemoteConnection, watch_ax: bool = False):
        self.connection = connection
        self.watch_ax = watch_ax
        self.is_running = False
        self.task: asyncio.Task | None = None

        # Callbacks
        self._invalidate_callback = None
        self._select_callback = None
        self._focus_callback = None

        self._handlers = []

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    def set_invalidate_callback(self, callback):
        """Set the coroutine called with ``(ids, tree)`` when nodes change remotely."""
        self._invalidate_callback = callback

    def set_select_callback(self, callback):
        """Set the coroutine called with ``(path, tree)`` when a node is picked on the device."""
        self._select_callback = callback

    def set_focus_callback(self, callback):
        """Set the coroutine called with ``is_focus`` on AX focus changes."""
        self._focus_callback = callback

    def _build_handlers(self):
        trees = [TreeKind.MAIN, TreeKind.AX] if self.watch_ax else [TreeKind.MAIN]
        handlers = []
        for tree in trees:
            handlers.append(InvalidateEventHandler(self, tree))
            handlers.append(SelectEventHandler(self, tree))
        if self.watch_ax:
            handlers.append(FocusChangedEventHandler(self))
        return handlers

    def start(self):
        """Subscribe all handlers and start pumping remote events."""
        if self.is_running:
            return
        self.is_running = True
        self._handlers = self._build_handlers()
        for handler in self._handlers:
            self.connection.subscribe(handler.event, handler)
        logger.debug("Watching remote events: %s", [h.event for h in self._handlers])

        pump_events = getattr(self.connection, "pump_events", None)
        if pump_events is not None:
            self.task = asyncio.get_running_loop().create_task(
                self._run(pump_events), name="WatchDogPump"
            )

    async def _run(self, pump_events):
        try:
            await pump_events(lambda: self.is_running)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("WatchDogService died: %s", e)

    async def stop(self):
        """Unsubscribe all handlers and stop the event pump."""
        if not self.is_running:
            return
        self.is_running = False
        for handler in self._handlers:
            self.connection.unsubscribe(handler.event, handler)
        self._handlers = []
        if self.task is not None:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
