from layout_inspector.remote.service import (
    EventDispatcher,
    HttpRemoteConnection,
    RemoteConnection,
    RemoteError,
)

__all__ = ["EventDispatcher", "HttpRemoteConnection", "RemoteConnection", "RemoteError"]
