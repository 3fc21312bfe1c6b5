"""
collabrpc - bidirectional RPC between two isolated contexts

Each side registers the methods it offers and gets back a proxy for the
other side's methods. Every call on the proxy returns an asyncio.Future.
"""

from .core import (
    CollabProxy, CollabError, RemoteCallError, CollabClosedError,
    ProtocolError, UnknownTransactionError, MalformedEnvelopeError,
)
from .rpc import collab, CollabSession, CollaborationOptions, ChannelAdapter
from .channel import LocalChannel, CallbackChannel
from .websocket import WebSocketChannel, WebSocketCollabServer, websocket_collab
from .serialize import serialize, deserialize

__version__ = "0.1.0"
__all__ = [
    "collab",
    "CollabProxy",
    "CollabSession",
    "CollaborationOptions",
    "ChannelAdapter",
    "LocalChannel",
    "CallbackChannel",
    "WebSocketChannel",
    "WebSocketCollabServer",
    "websocket_collab",
    "CollabError",
    "RemoteCallError",
    "CollabClosedError",
    "ProtocolError",
    "UnknownTransactionError",
    "MalformedEnvelopeError",
    "serialize",
    "deserialize",
]
