"""Shared mutable state for MCP tool handlers.

Set by the FastMCP lifespan in ``__main__.py``; tool modules read the
attributes at call time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from layout_inspector.analytics import PostHogAnalytics
    from layout_inspector.tree.service import Inspector

inspector: Inspector | None = None
analytics: PostHogAnalytics | None = None
