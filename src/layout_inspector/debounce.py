"""Time-window coalescing of rapid UI events."""

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Debouncer:
    """Runs ``handler`` once calls have stopped arriving for ``window`` seconds.

    Each call re-arms the timer and replaces the pending arguments, so only the
    most recent call within a window reaches the handler.  Once the handler has
    started it is never cancelled by later calls; coroutine handlers run as
    tasks on the loop that armed the timer.

    Example::

        select = Debouncer(inspector.select_element_now, 0.1)
        select("node-1")
        select("node-2")   # only "node-2" is handled
    """

    def __init__(self, handler: Callable[..., Any], window: float):
        self.handler = handler
        self.window = window
        self._timer: asyncio.TimerHandle | None = None
        self._args: tuple = ()
        self._kwargs: dict[str, Any] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def __call__(self, *args, **kwargs) -> None:
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._args, self._kwargs = args, kwargs
        self._timer = loop.call_later(self.window, self._fire)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def flush(self) -> asyncio.Task | None:
        """Runs the pending call immediately, if there is one."""
        if self._timer is None:
            return None
        self._timer.cancel()
        return self._fire()

    def _fire(self) -> asyncio.Task | None:
        self._timer = None
        args, kwargs = self._args, self._kwargs
        self._args, self._kwargs = (), {}
        result = self.handler(*args, **kwargs)
        if not inspect.isawaitable(result):
            return None
        task = asyncio.ensure_future(result)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Debounced handler %s failed: %s", self.handler, task.exception())

    async def drain(self) -> None:
        """Waits for handler tasks that are already running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
