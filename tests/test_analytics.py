"""Tests for the analytics module (PostHog telemetry and with_analytics decorator).

Covers:
- PostHogAnalytics: opt-in construction from the environment, user_id persistence,
  track_tool, track_error and close.
- with_analytics: success and error paths, None analytics, lazily resolved
  instances.
- RateLimiter: sliding window, per-tool limits, env-var parsing.
- Tool allow/deny lists.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from layout_inspector import analytics as analytics_module
from layout_inspector.analytics import (
    PostHogAnalytics,
    AuditLog,
    RateLimiter,
    RateLimitExceededError,
    ToolNotAllowedError,
    ToolPolicy,
    _parse_rate_limits_env,
    with_analytics,
)

# ---------------------------------------------------------------------------
# Helpers / Fixtures
# ---------------------------------------------------------------------------


def _make_posthog_analytics(mock_client: MagicMock | None = None) -> PostHogAnalytics:
    with patch("layout_inspector.analytics.posthog.Posthog", return_value=mock_client or MagicMock()):
        return PostHogAnalytics("phc_test")


def _make_mock_analytics() -> MagicMock:
    mock = MagicMock()
    mock.track_tool = AsyncMock()
    mock.track_error = AsyncMock()
    return mock


@pytest.fixture(autouse=True)
def _fresh_limits():
    """Each test gets its own limiter, an open policy and no audit file."""
    with (
        patch.object(analytics_module, "_rate_limiter", RateLimiter()),
        patch.object(analytics_module, "_tool_policy", ToolPolicy()),
        patch.object(analytics_module, "_audit_log", None),
    ):
        yield


# ---------------------------------------------------------------------------
# PostHogAnalytics
# ---------------------------------------------------------------------------


class TestPostHogAnalyticsFromEnv:
    def test_no_api_key_means_no_telemetry(self, monkeypatch):
        monkeypatch.delenv("POSTHOG_API_KEY", raising=False)
        assert PostHogAnalytics.from_env() is None

    def test_disabled_telemetry_wins_over_key(self, monkeypatch):
        monkeypatch.setenv("POSTHOG_API_KEY", "phc_test")
        monkeypatch.setenv("ANONYMIZED_TELEMETRY", "FALSE")
        assert PostHogAnalytics.from_env() is None

    def test_key_enables_telemetry(self, monkeypatch):
        monkeypatch.setenv("POSTHOG_API_KEY", "phc_test")
        monkeypatch.delenv("ANONYMIZED_TELEMETRY", raising=False)
        with patch("layout_inspector.analytics.posthog.Posthog") as mock_ctor:
            analytics = PostHogAnalytics.from_env()
        assert analytics is not None
        assert mock_ctor.call_args.args[0] == "phc_test"


class TestPostHogAnalyticsUserId:
    def test_user_id_generated_and_persisted(self, tmp_path):
        analytics = _make_posthog_analytics()
        with patch.object(PostHogAnalytics, "TEMP_FOLDER", tmp_path):
            user_id = analytics.user_id
        assert user_id
        assert (tmp_path / ".layout-inspector-user-id").read_text(encoding="utf-8") == user_id

    def test_user_id_loaded_from_existing_file(self, tmp_path):
        (tmp_path / ".layout-inspector-user-id").write_text("existing-id", encoding="utf-8")
        analytics = _make_posthog_analytics()
        with patch.object(PostHogAnalytics, "TEMP_FOLDER", tmp_path):
            assert analytics.user_id == "existing-id"

    def test_user_id_write_failure_is_logged(self, tmp_path, caplog):
        analytics = _make_posthog_analytics()
        with (
            patch.object(PostHogAnalytics, "TEMP_FOLDER", tmp_path),
            patch("pathlib.Path.write_text", side_effect=OSError("disk full")),
        ):
            assert analytics.user_id
        assert "Could not persist user ID" in caplog.text


class TestPostHogAnalyticsTracking:
    async def test_track_tool_captures_event(self):
        client = MagicMock()
        analytics = _make_posthog_analytics(client)
        analytics._user_id = "user-1"

        await analytics.track_tool("Expand", {"duration_ms": 5, "success": True})

        kwargs = client.capture.call_args.kwargs
        assert kwargs["distinct_id"] == "user-1"
        assert kwargs["event"] == "inspector_tool_called"
        assert kwargs["properties"]["tool_name"] == "Expand"
        assert kwargs["properties"]["session_id"] == analytics.session_id

    async def test_track_error_captures_exception(self):
        client = MagicMock()
        analytics = _make_posthog_analytics(client)
        analytics._user_id = "user-1"

        try:
            raise ValueError("bad node")
        except ValueError as e:
            await analytics.track_error(e, {"tool_name": "Node"})

        properties = client.capture.call_args.kwargs["properties"]
        assert client.capture.call_args.kwargs["event"] == "inspector_tool_failed"
        assert properties["exception"] == "bad node"
        assert "ValueError" in properties["traceback"]
        assert properties["tool_name"] == "Node"

    async def test_close_shuts_down_client(self):
        client = MagicMock()
        analytics = _make_posthog_analytics(client)
        await analytics.close()
        client.shutdown.assert_called_once()


# ---------------------------------------------------------------------------
# with_analytics
# ---------------------------------------------------------------------------


class TestWithAnalytics:
    async def test_returns_result_and_tracks_success(self):
        mock = _make_mock_analytics()

        @with_analytics(mock, "Snapshot")
        async def tool():
            return "tree"

        assert await tool() == "tree"
        tool_name, result = mock.track_tool.await_args.args
        assert tool_name == "Snapshot"
        assert result["success"] is True
        assert result["duration_ms"] >= 0
        mock.track_error.assert_not_awaited()

    async def test_error_is_tracked_and_reraised(self):
        mock = _make_mock_analytics()

        @with_analytics(mock, "Select")
        async def tool():
            raise KeyError("gone")

        with pytest.raises(KeyError):
            await tool()
        error, context = mock.track_error.await_args.args
        assert isinstance(error, KeyError)
        assert context["tool_name"] == "Select"
        mock.track_tool.assert_not_awaited()

    async def test_none_analytics(self):
        @with_analytics(None, "Node")
        async def tool():
            return 1

        assert await tool() == 1

    async def test_callable_is_resolved_at_call_time(self):
        holder = {"analytics": None}

        @with_analytics(lambda: holder["analytics"], "Node")
        async def tool():
            return "ok"

        holder["analytics"] = _make_mock_analytics()
        await tool()
        holder["analytics"].track_tool.assert_awaited_once()

    async def test_analytics_failure_does_not_break_tool(self):
        mock = _make_mock_analytics()
        mock.track_tool.side_effect = RuntimeError("posthog down")

        @with_analytics(mock, "Node")
        async def tool():
            return "ok"

        assert await tool() == "ok"

        assert await tool(21) == 42

    def test_wrapped_function_name_preserved(self):
        @with_analytics(None, "Node")
        async def node_tool():
            """Docstring."""

        assert node_tool.__name__ == "node_tool"
        assert node_tool.__doc__ == "Docstring."


# ---------------------------------------------------------------------------
# RateLimiter
# ---------------------------------------------------------------------------


class TestRateLimiter:
    def test_limit_enforced_within_window(self):
        limiter = RateLimiter({"Search": (2, 60)})
        limiter.acquire("Search")
        limiter.acquire("Search")
        with pytest.raises(RateLimitExceededError, match="Search"):
            limiter.acquire("Search")

    def test_tools_are_counted_separately(self):
        limiter = RateLimiter({"Search": (1, 60)})
        limiter.acquire("Search")
        limiter.acquire("Expand")

    def test_fallback_limit_for_unlisted_tools(self):
        limiter = RateLimiter(fallback=(1, 60))
        assert limiter.limit_for("Node") == (1, 60)
        limiter.acquire("Node")
        with pytest.raises(RateLimitExceededError):
            limiter.acquire("Node")

    def test_window_slides(self):
        limiter = RateLimiter({"Search": (1, 1)})
        with patch("layout_inspector.analytics.time.monotonic", side_effect=[100.0, 102.0]):
            limiter.acquire("Search")
            limiter.acquire("Search")

    async def test_decorator_applies_limit(self):
        analytics_module._rate_limiter = RateLimiter({"Search": (1, 60)})

        @with_analytics(None, "Search")
        async def tool():
            return "ok"

        await tool()
        with pytest.raises(RateLimitExceededError):
            await tool()

    async def test_unlimited_tool_skips_limiter(self):
        analytics_module._rate_limiter = RateLimiter(fallback=(1, 60))

        @with_analytics(None, "Hover", rate_limited=False)
        async def tool():
            return "ok"

        await tool()
        await tool()


class TestParseRateLimitsEnv:
    def test_valid_segments(self):
        assert _parse_rate_limits_env("Search:10:60; Expand:5:30") == {
            "Search": (10, 60),
            "Expand": (5, 30),
        }

    def test_malformed_segments_skipped(self):
        assert _parse_rate_limits_env("Search:10;Expand:x:30;Node:0:5;;Hover:3:3") == {
            "Hover": (3, 3)
        }


# ---------------------------------------------------------------------------
# Allow / deny lists
# ---------------------------------------------------------------------------


class TestToolPolicy:
    def test_everything_allowed_by_default(self):
        ToolPolicy().check("SetData")

    def test_denylist_blocks(self):
        with pytest.raises(ToolNotAllowedError, match="LAYOUT_INSPECTOR_DENY"):
            ToolPolicy(deny=frozenset({"setdata"})).check("SetData")

    def test_allowlist_wins_over_denylist(self):
        policy = ToolPolicy(allow=frozenset({"snapshot", "setdata"}), deny=frozenset({"setdata"}))
        policy.check("SetData")
        with pytest.raises(ToolNotAllowedError, match="LAYOUT_INSPECTOR_ALLOW"):
            policy.check("Command")

    def test_from_env_lowercases_names(self, monkeypatch):
        monkeypatch.delenv("LAYOUT_INSPECTOR_ALLOW", raising=False)
        monkeypatch.setenv("LAYOUT_INSPECTOR_DENY", "SetData, Command ,")
        assert ToolPolicy.from_env() == ToolPolicy(deny=frozenset({"setdata", "command"}))

    async def test_blocked_tool_never_runs(self):
        analytics_module._tool_policy = ToolPolicy(deny=frozenset({"command"}))
        body = AsyncMock()

        @with_analytics(None, "Command")
        async def tool():
            await body()

        with pytest.raises(ToolNotAllowedError):
            await tool()
        body.assert_not_awaited()


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class TestAuditLog:
    def test_disabled_without_env(self, monkeypatch):
        monkeypatch.delenv("LAYOUT_INSPECTOR_AUDIT_LOG", raising=False)
        assert AuditLog.from_env() is None

    async def test_tool_calls_are_recorded(self, tmp_path):
        audit = AuditLog(tmp_path / "logs" / "audit.tsv")
        analytics_module._audit_log = audit

        @with_analytics(None, "Node")
        async def ok_tool():
            return "ok"

        @with_analytics(None, "Select")
        async def failing_tool():
            raise LookupError("gone")

        await ok_tool()
        with pytest.raises(LookupError):
            await failing_tool()
        audit.close()

        lines = audit.path.read_text(encoding="utf-8").splitlines()
        assert lines[0].split("\t")[1:3] == ["OK", "Node"]
        assert lines[1].split("\t")[1:3] == ["ERR", "Select"]
        assert lines[1].endswith("\tLookupError")
