"""Connection to the inspected application.

The inspected app exposes three things over HTTP:

- ``POST {base_url}/call/{method}``: request/response calls (``getNodes`` ...),
  JSON params in, JSON result out.
- ``POST {base_url}/send/{method}``: fire-and-forget signals
  (``setHighlighted`` ...).
- ``GET {base_url}/events``: a newline-delimited JSON stream of push
  notifications, one ``{"event": ..., "params": {...}}`` object per line.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Protocol

import httpx

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], Awaitable[None] | None]

RECONNECT_DELAY_SECONDS = 1.0
DEFAULT_TIMEOUT_SECONDS = 30.0


class RemoteError(Exception):
    """Raised when a call across the remote boundary fails."""

    def __init__(self, method: str, message: str):
        super().__init__(f"Remote call {method!r} failed: {message}")
        self.method = method


class RemoteConnection(Protocol):
    async def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Calls ``method`` on the remote side and returns its result."""
        ...

    def send(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Signals ``method`` without waiting for a response."""
        ...

    def subscribe(self, event: str, callback: EventCallback) -> None:
        """Registers ``callback`` for push notifications named ``event``."""
        ...

    def unsubscribe(self, event: str, callback: EventCallback) -> None:
        """Removes a callback registered with ``subscribe``."""
        ...


class EventDispatcher:
    """Subscriber registry shared by connection implementations."""

    def __init__(self):
        self._subscribers: dict[str, list[EventCallback]] = {}

    def subscribe(self, event: str, callback: EventCallback) -> None:
        self._subscribers.setdefault(event, []).append(callback)

    def unsubscribe(self, event: str, callback: EventCallback) -> None:
        callbacks = self._subscribers.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def subscribers(self, event: str) -> list[EventCallback]:
        return list(self._subscribers.get(event, []))

    async def dispatch(self, event: str, params: dict[str, Any]) -> int:
        """Delivers one notification to every subscriber, in subscription order.

        Returns the number of callbacks invoked.  Callback errors propagate.
        """
        callbacks = self.subscribers(event)
        if not callbacks:
            logger.debug("No subscribers for remote event %s", event)
        for callback in callbacks:
            result = callback(params)
            if inspect.isawaitable(result):
                await result
        return len(callbacks)


class HttpRemoteConnection(EventDispatcher):
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._pending_sends: set[asyncio.Task] = set()
        self._event_tasks: set[asyncio.Task] = set()

    async def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = await self._client.post(f"/call/{method}", json=params or {})
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise RemoteError(method, str(e)) from e
        except ValueError as e:
            raise RemoteError(method, f"invalid JSON response: {e}") from e

    async def _post_signal(self, method: str, params: dict[str, Any]) -> None:
        try:
            response = await self._client.post(f"/send/{method}", json=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Signal %s was not delivered: %s", method, e)

    def send(self, method: str, params: dict[str, Any] | None = None) -> None:
        task = asyncio.get_running_loop().create_task(self._post_signal(method, params or {}))
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)

    async def _read_events(self) -> None:
        async with self._client.stream("GET", "/events", timeout=None) as response:
            response.raise_for_status()
            logger.info("Listening for remote events on %s/events", self.base_url)
            async for line in response.aiter_lines():
                line = line.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                    event = message["event"]
                    params = message.get("params") or {}
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning("Skipping malformed remote event %r: %s", line[:200], e)
                    continue
                self._start_dispatch(event, params)

    def _start_dispatch(self, event: str, params: dict[str, Any]) -> None:
        # Each notification runs as its own chain; a hung call only stalls that chain
        task = asyncio.get_running_loop().create_task(self.dispatch(event, params))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_done)

    def _event_done(self, task: asyncio.Task) -> None:
        self._event_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Remote event handler failed: %s", task.exception())

    async def drain_events(self) -> None:
        """Waits for the handlers of events that were already read."""
        if self._event_tasks:
            await asyncio.gather(*list(self._event_tasks), return_exceptions=True)

    async def pump_events(self, is_running: Callable[[], bool] = lambda: True) -> None:
        """Reads push notifications until ``is_running`` turns false.

        A dropped stream is reopened after ``RECONNECT_DELAY_SECONDS``.
        """
        while is_running():
            try:
                await self._read_events()
            except httpx.HTTPError as e:
                logger.warning("Remote event stream interrupted: %s", e)
            if is_running():
                await asyncio.sleep(RECONNECT_DELAY_SECONDS)

    async def close(self) -> None:
        for task in list(self._event_tasks):
            task.cancel()
        if self._event_tasks:
            await asyncio.gather(*list(self._event_tasks), return_exceptions=True)
        if self._pending_sends:
            await asyncio.gather(*self._pending_sends, return_exceptions=True)
        await self._client.aclose()
