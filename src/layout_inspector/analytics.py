"""Guards and telemetry around MCP tool calls.

Every tool handler is wrapped with ``with_analytics``, which in order:

1. charges the call against the per-tool ``RateLimiter``,
2. checks the ``ToolPolicy`` allow/deny lists,
3. runs the handler and reports the outcome to PostHog (when configured)
   and to the audit file (when ``LAYOUT_INSPECTOR_AUDIT_LOG`` is set).
"""

import logging
import os
import tempfile
import time
import traceback
from collections import defaultdict, deque
from dataclasses import dataclass, field
from functools import wraps
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import posthog
from uuid_extensions import uuid7str

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)
if not logger.handlers:
    _console = logging.StreamHandler()
    _console.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(_console)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class AuditLog:
    """One tab-separated line per tool call, written to a dedicated file."""

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self._logger = logging.getLogger("layout_inspector.audit")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(self.path, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s\t%(message)s", datefmt="%Y-%m-%dT%H:%M:%S")
        )
        self._logger.addHandler(file_handler)
        self._handler = file_handler

    @classmethod
    def from_env(cls) -> "AuditLog | None":
        raw = os.environ.get("LAYOUT_INSPECTOR_AUDIT_LOG", "").strip()
        if not raw:
            return None
        try:
            audit = cls(raw)
        except OSError as e:
            logger.warning("Audit log disabled, cannot open %s: %s", raw, e)
            return None
        logger.info("Writing tool audit log to %s", audit.path)
        return audit

    def record(self, tool_name: str, duration_ms: int, error: Exception | None = None) -> None:
        if error is None:
            self._logger.info("OK\t%s\t%dms", tool_name, duration_ms)
        else:
            self._logger.info("ERR\t%s\t%dms\t%s", tool_name, duration_ms, type(error).__name__)

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()


_audit_log = AuditLog.from_env()


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

# Tools that fan out into many remote calls get tighter windows
_DEFAULT_RATE_LIMITS: dict[str, tuple[int, int]] = {
    "Expand": (30, 60),
    "Search": (20, 60),
}
_FALLBACK_RATE_LIMIT = (120, 60)


def _parse_rate_limits_env(raw: str) -> dict[str, tuple[int, int]]:
    """Parse ``Tool:max_calls:window_seconds`` entries separated by ``;``.

    ``Search:10:60;Expand:5:30`` limits Search to 10 calls a minute and Expand
    to 5 calls per 30 seconds.  Entries that do not parse to two positive
    integers are dropped with a warning.
    """
    limits: dict[str, tuple[int, int]] = {}
    for entry in filter(None, (part.strip() for part in raw.split(";"))):
        name, _, numbers = entry.partition(":")
        calls, _, window = numbers.partition(":")
        try:
            parsed = int(calls), int(window)
        except ValueError:
            logger.warning("Ignoring rate limit entry %r, expected Tool:calls:seconds", entry)
            continue
        if not name.strip() or min(parsed) <= 0:
            logger.warning("Ignoring rate limit entry %r, expected Tool:calls:seconds", entry)
            continue
        limits[name.strip()] = parsed
    return limits


class RateLimitExceededError(Exception):
    """Raised when a tool has used up its calls for the current window."""

    def __init__(self, tool_name: str, max_calls: int, window: int, retry_after: float):
        super().__init__(
            f"{tool_name} is limited to {max_calls} calls per {window}s, "
            f"try again in {retry_after:.1f}s"
        )
        self.tool_name = tool_name
        self.retry_after = retry_after


class RateLimiter:
    """Sliding-window call counter per tool.

    Checks run on the event loop before the handler is scheduled, so no
    locking is needed.
    """

    def __init__(
        self,
        limits: dict[str, tuple[int, int]] | None = None,
        fallback: tuple[int, int] = _FALLBACK_RATE_LIMIT,
    ):
        self.limits = dict(limits or {})
        self.fallback = fallback
        self._calls: defaultdict[str, deque[float]] = defaultdict(deque)

    @classmethod
    def from_env(cls) -> "RateLimiter":
        overrides = _parse_rate_limits_env(os.environ.get("LAYOUT_INSPECTOR_RATE_LIMITS", ""))
        return cls({**_DEFAULT_RATE_LIMITS, **overrides})

    def limit_for(self, tool_name: str) -> tuple[int, int]:
        return self.limits.get(tool_name, self.fallback)

    def acquire(self, tool_name: str) -> None:
        max_calls, window = self.limit_for(tool_name)
        now = time.monotonic()
        calls = self._calls[tool_name]
        while calls and now - calls[0] > window:
            calls.popleft()
        if len(calls) >= max_calls:
            raise RateLimitExceededError(tool_name, max_calls, window, window - (now - calls[0]))
        calls.append(now)


_rate_limiter = RateLimiter.from_env()


# ---------------------------------------------------------------------------
# Allow / deny lists
# ---------------------------------------------------------------------------


class ToolNotAllowedError(Exception):
    """Raised for tools excluded by LAYOUT_INSPECTOR_ALLOW or LAYOUT_INSPECTOR_DENY."""


def _tool_names(raw: str) -> frozenset[str]:
    return frozenset(name.strip().lower() for name in raw.split(",") if name.strip())


@dataclass(frozen=True)
class ToolPolicy:
    """Tool-name filter; when an allowlist is set the denylist is ignored."""

    allow: frozenset[str] | None = None
    deny: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_env(cls) -> "ToolPolicy":
        allow = os.environ.get("LAYOUT_INSPECTOR_ALLOW", "").strip()
        deny = os.environ.get("LAYOUT_INSPECTOR_DENY", "").strip()
        policy = cls(allow=_tool_names(allow) if allow else None, deny=_tool_names(deny))
        if policy.allow is not None:
            logger.info("Only these tools are enabled: %s", ", ".join(sorted(policy.allow)))
        elif policy.deny:
            logger.info("These tools are disabled: %s", ", ".join(sorted(policy.deny)))
        return policy

    def check(self, tool_name: str) -> None:
        name = tool_name.lower()
        if self.allow is not None and name not in self.allow:
            raise ToolNotAllowedError(f"{tool_name} is not enabled (LAYOUT_INSPECTOR_ALLOW)")
        if self.allow is None and name in self.deny:
            raise ToolNotAllowedError(f"{tool_name} is disabled (LAYOUT_INSPECTOR_DENY)")


_tool_policy = ToolPolicy.from_env()


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


class Analytics(Protocol):
    async def track_tool(self, tool_name: str, result: dict[str, Any]) -> None:
        """Reports one finished tool call."""
        ...

    async def track_error(self, error: Exception, context: dict[str, Any]) -> None:
        """Reports an exception raised out of a tool."""
        ...

    async def close(self) -> None:
        ...


class PostHogAnalytics:
    """Anonymous usage events, sent only when a PostHog project key is configured."""

    TEMP_FOLDER = Path(tempfile.gettempdir())
    USER_ID_FILE = ".layout-inspector-user-id"
    HOST = "https://us.i.posthog.com"

    def __init__(self, api_key: str):
        self.client = posthog.Posthog(
            api_key,
            host=self.HOST,
            disable_geoip=True,
            enable_exception_autocapture=False,
        )
        self.session_id = uuid7str()
        self._user_id: str | None = None

    @classmethod
    def from_env(cls) -> "PostHogAnalytics | None":
        if os.getenv("ANONYMIZED_TELEMETRY", "true").lower() == "false":
            return None
        api_key = os.getenv("POSTHOG_API_KEY", "").strip()
        return cls(api_key) if api_key else None

    @property
    def user_id(self) -> str:
        """Stable per-machine id, kept in a file in the temp folder."""
        if self._user_id is None:
            path = self.TEMP_FOLDER / self.USER_ID_FILE
            stored = path.read_text(encoding="utf-8").strip() if path.exists() else ""
            self._user_id = stored or uuid7str()
            if not stored:
                try:
                    path.write_text(self._user_id, encoding="utf-8")
                except OSError as e:
                    logger.warning("Could not persist user ID: %s", e)
        return self._user_id

    def _capture(self, event: str, properties: dict[str, Any]) -> None:
        self.client.capture(
            distinct_id=self.user_id,
            event=event,
            properties={"session_id": self.session_id, **properties},
        )

    async def track_tool(self, tool_name: str, result: dict[str, Any]) -> None:
        self._capture("inspector_tool_called", {"tool_name": tool_name, **result})
        logger.debug("%s finished in %dms", tool_name, result.get("duration_ms", 0))

    async def track_error(self, error: Exception, context: dict[str, Any]) -> None:
        self._capture(
            "inspector_tool_failed",
            {
                "error_type": type(error).__name__,
                "exception": str(error),
                "traceback": "".join(traceback.format_exception(error)),
                **context,
            },
        )
        logger.error("%s failed: %s", context.get("tool_name"), error)

    async def close(self) -> None:
        self.client.shutdown()


# ---------------------------------------------------------------------------
# Tool decorator
# ---------------------------------------------------------------------------


def _resolve(analytics_instance) -> Analytics | None:
    if analytics_instance is None or hasattr(analytics_instance, "track_tool"):
        return analytics_instance
    return analytics_instance()


async def _report(
    instance: Analytics | None, tool_name: str, duration_ms: int, error: Exception | None
) -> None:
    if _audit_log is not None:
        _audit_log.record(tool_name, duration_ms, error)
    if instance is None:
        return
    try:
        if error is None:
            await instance.track_tool(tool_name, {"duration_ms": duration_ms, "success": True})
        else:
            await instance.track_error(error, {"tool_name": tool_name, "duration_ms": duration_ms})
    except Exception as e:
        logger.debug("Telemetry for %s was dropped: %s", tool_name, e)


def with_analytics(
    analytics_instance: "Callable[[], Analytics | None] | Analytics | None",
    tool_name: str,
    *,
    rate_limited: bool = True,
):
    """
    Wrap a tool handler with rate limiting, the tool policy, telemetry and audit.

    Args:
        analytics_instance: An ``Analytics`` object, ``None``, or a zero-argument
            callable returning one.  A callable is resolved on every call, since
            the client only exists once the server lifespan has started.
        tool_name: Name used for limits, the policy, and reports.
        rate_limited: ``False`` exempts the tool from the rate limiter.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            if rate_limited:
                _rate_limiter.acquire(tool_name)
            _tool_policy.check(tool_name)
            instance = _resolve(analytics_instance)

            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as error:
                await _report(instance, tool_name, _elapsed_ms(started), error)
                raise
            await _report(instance, tool_name, _elapsed_ms(started), None)
            return result

        return wrapper

    return decorator


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
