import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from textwrap import dedent

import click
from dotenv import load_dotenv
from fastmcp import FastMCP

from layout_inspector.analytics import PostHogAnalytics
from layout_inspector.remote.service import HttpRemoteConnection
from layout_inspector.tools import _state, register_all_tools
from layout_inspector.tools._helpers import _coerce_bool
from layout_inspector.tree.service import Inspector
from layout_inspector.watchdog.service import WatchDog

load_dotenv()

logger = logging.getLogger("layout_inspector")

DEFAULT_REMOTE_URL = "http://localhost:9100"


@dataclass
class Config:
    remote_url: str = DEFAULT_REMOTE_URL
    ax_supported: bool = False

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            remote_url=os.getenv("LAYOUT_INSPECTOR_REMOTE_URL", DEFAULT_REMOTE_URL),
            ax_supported=_coerce_bool(os.getenv("LAYOUT_INSPECTOR_AX", "false")),
        )


config = Config.from_env()


instructions = dedent("""
Layout Inspector MCP server mirrors the view hierarchy (and, when available,
the accessibility hierarchy) of a running app, and lets you expand, search,
select and edit its nodes.
""")


async def start_inspector(remote, ax_supported: bool) -> tuple[Inspector, WatchDog]:
    """Build the inspector, wire remote push events into it, and load both roots."""
    inspector = Inspector(remote, ax_supported=ax_supported)
    watchdog = WatchDog(remote, watch_ax=ax_supported)
    watchdog.set_invalidate_callback(inspector.on_invalidate)
    watchdog.set_select_callback(inspector.on_select_path)
    if ax_supported:
        watchdog.set_focus_callback(inspector.on_ax_focus_event)
    watchdog.start()
    await inspector.init()
    return inspector, watchdog


@asynccontextmanager
async def lifespan(app: FastMCP):
    """Connects to the inspected app before the server starts and disconnects after."""
    _state.analytics = PostHogAnalytics.from_env()
    remote = HttpRemoteConnection(config.remote_url)
    watchdog = None
    try:
        _state.inspector, watchdog = await start_inspector(remote, config.ax_supported)
        logger.info("Inspecting %s (accessibility: %s)", config.remote_url, config.ax_supported)
        yield
    finally:
        if watchdog:
            await watchdog.stop()
        await remote.close()
        if _state.analytics:
            await _state.analytics.close()


mcp = FastMCP(name="layout-inspector", instructions=instructions, lifespan=lifespan)
register_all_tools(mcp)


class Transport(Enum):
    STDIO = "stdio"
    SSE = "sse"
    STREAMABLE_HTTP = "streamable-http"

    def __str__(self):
        return self.value


@click.command()
@click.option(
    "--transport",
    help="The transport layer used by the MCP server.",
    type=click.Choice(
        [Transport.STDIO.value, Transport.SSE.value, Transport.STREAMABLE_HTTP.value]
    ),
    default="stdio",
)
@click.option(
    "--host",
    help="Host to bind the SSE/Streamable HTTP server.",
    default="localhost",
    type=str,
    show_default=True,
)
@click.option(
    "--port",
    help="Port to bind the SSE/Streamable HTTP server.",
    default=8000,
    type=int,
    show_default=True,
)
@click.option(
    "--remote-url",
    help="Base URL of the inspected app's bridge. Defaults to LAYOUT_INSPECTOR_REMOTE_URL.",
    default=None,
    type=str,
)
@click.option(
    "--ax/--no-ax",
    "ax",
    help="Mirror the accessibility hierarchy too. Defaults to LAYOUT_INSPECTOR_AX.",
    default=None,
)
def main(transport, host, port, remote_url, ax):
    if remote_url:
        config.remote_url = remote_url
    if ax is not None:
        config.ax_supported = ax

    match transport:
        case Transport.STDIO.value:
            mcp.run(transport=Transport.STDIO.value, show_banner=False)
        case Transport.SSE.value | Transport.STREAMABLE_HTTP.value:
            if host not in ("localhost", "127.0.0.1"):
                logger.warning("Serving inspector tools on %s without authentication", host)
            mcp.run(transport=transport, host=host, port=port, show_banner=False)
        case _:
            raise ValueError(f"Invalid transport: {transport}")


if __name__ == "__main__":
    main()
