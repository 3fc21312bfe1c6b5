"""
WebSocket channel for collabrpc.

This module provides a websockets-based channel adapter, a client context
manager and a server that starts one collaboration per connection.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Set, Union

import websockets
from websockets.exceptions import ConnectionClosed

from .core import CollabProxy, Envelope
from .rpc import ChannelAdapter, CleanupFunction, CollabSession, CollaborationOptions, MessageHandler, collab
from .serialize import deserialize, serialize

logger = logging.getLogger(__name__)


class WebSocketChannel(ChannelAdapter):
    """Channel adapter over an open WebSocket connection."""

    def __init__(self, websocket: Any, name: str = "collab", read_in_background: bool = True):
        """
        Args:
            websocket: An open connection
            name: Unique name for this side
            read_in_background: Start a task that reads incoming envelopes once a
                handler is registered. When False, the owner must await
                read_messages() itself.
        """
        self.name = name
        self._websocket = websocket
        self._read_in_background = read_in_background
        self._handler: Optional[MessageHandler] = None
        self._closed = False
        self._read_task: Optional[asyncio.Task] = None
        self._send_tasks: Set[asyncio.Task] = set()

    def send_message(self, envelope: Envelope) -> None:
        """Serialize the envelope now and send it in the background."""
        if self._closed:
            raise RuntimeError("Cannot send on closed channel")

        task = asyncio.ensure_future(self._send_text(serialize(envelope)))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_done)

    def _send_done(self, task: asyncio.Task) -> None:
        self._send_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Error sending on WebSocket {self.name!r}: {task.exception()}")

    def register_handler(self, handler: MessageHandler) -> CleanupFunction:
        if self._handler is not None:
            raise RuntimeError(f"WebSocket channel {self.name!r} already has a handler")
        self._handler = handler
        if self._read_in_background:
            self._read_task = asyncio.ensure_future(self.read_messages())
        return self._stop_reading

    def _stop_reading(self) -> None:
        self._handler = None
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()

    async def read_messages(self) -> None:
        """Deliver incoming envelopes to the handler until the connection closes."""
        loop = asyncio.get_running_loop()
        try:
            async for data in self._receive_texts():
                handler = self._handler
                if handler is None:
                    break
                try:
                    handler(deserialize(data))
                except Exception as e:
                    loop.call_exception_handler({
                        "message": f"Error handling envelope on channel {self.name!r}",
                        "exception": e,
                    })
        except ConnectionClosed as e:
            logger.info(f"WebSocket {self.name!r} closed: {e}")

    async def _send_text(self, text: str) -> None:
        await self._websocket.send(text)

    async def _receive_texts(self) -> AsyncIterator[Union[str, bytes]]:
        async for message in self._websocket:
            yield message

    async def wait_closed(self) -> None:
        """Wait until the connection stops delivering envelopes."""
        if self._read_task is not None:
            await asyncio.wait({self._read_task})

    async def close(self) -> None:
        """Stop reading, flush queued sends and close the connection."""
        if self._closed:
            return
        self._closed = True
        self._stop_reading()
        if self._send_tasks:
            await asyncio.gather(*self._send_tasks, return_exceptions=True)
        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning(f"Error closing WebSocket {self.name!r}: {e}")


class WebSocketCollabSessionManager:
    """Context manager for a WebSocket collaboration as a client."""

    def __init__(self,
                 uri: str,
                 methods: Any,
                 options: Optional[CollaborationOptions] = None,
                 name: str = "Client"):
        self._uri = uri
        self._methods = methods
        self._options = options
        self._name = name
        self._channel: Optional[WebSocketChannel] = None
        self._proxy: Optional[CollabProxy] = None

    async def __aenter__(self) -> CollabProxy:
        """Connect and start collaborating."""
        websocket = await websockets.connect(self._uri)
        self._channel = WebSocketChannel(websocket, self._name)
        self._proxy = collab(self._methods, self._channel, self._options)
        return self._proxy

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Stop collaborating and close the connection."""
        if self._proxy is not None:
            self._proxy.cleanup_proxy()
        if self._channel is not None:
            await self._channel.close()


def websocket_collab(
    uri: str,
    methods: Any,
    options: Optional[CollaborationOptions] = None,
    name: str = "Client"
) -> WebSocketCollabSessionManager:
    """
    Collaborate with a WebSocket server.

    Usage:
        async with websocket_collab("ws://localhost:8080", {"ping": lambda: "pong"}) as server:
            result = await server.hello("World")
    """
    return WebSocketCollabSessionManager(uri, methods, options, name)


class WebSocketCollabServer:
    """WebSocket server that starts one collaboration per connection."""

    def __init__(self,
                 host: str,
                 port: int,
                 methods_factory: Callable[[], Any],
                 options: Optional[CollaborationOptions] = None,
                 on_connect: Optional[Callable[[CollabProxy], Awaitable[None]]] = None,
                 name: str = "Server"):
        """
        Initialize the WebSocket collab server.

        Args:
            host: Host to bind to
            port: Port to bind to, 0 for any free port
            methods_factory: Function that returns the methods for each connection
            options: Collaboration options shared by all connections
            on_connect: Coroutine run with the client's proxy once a connection opens
            name: Channel name used as transaction id prefix on the server side
        """
        self._host = host
        self._port = port
        self._methods_factory = methods_factory
        self._options = options
        self._on_connect = on_connect
        self._name = name
        self._server = None
        self._sessions: Set[CollabSession] = set()
        self._connection_stats = {
            'total_connections': 0,
            'active_connections': 0,
            'failed_connections': 0
        }

    @property
    def port(self) -> int:
        """The port the server is listening on."""
        if self._server is None:
            return self._port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        """Start the WebSocket server."""
        self._server = await websockets.serve(self._handle_connection, self._host, self._port)
        logger.info(f"WebSocket collab server started on {self._host}:{self.port}")

    async def stop(self) -> None:
        """Stop the WebSocket server."""
        if self._server:
            for session in list(self._sessions):
                session.cleanup()
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("WebSocket collab server stopped")

    async def serve_forever(self) -> None:
        """Start the server and serve until cancelled."""
        await self.start()
        try:
            await self._server.wait_closed()
        finally:
            await self.stop()

    def get_stats(self) -> dict:
        """Get server statistics."""
        self._connection_stats['active_connections'] = len(self._sessions)
        return dict(self._connection_stats)

    async def _handle_connection(self, websocket) -> None:
        self._connection_stats['total_connections'] += 1
        logger.info(f"New WebSocket connection from {websocket.remote_address}")

        channel = WebSocketChannel(websocket, self._name)
        session = None
        try:
            session = CollabSession(self._methods_factory(), channel, self._options)
            self._sessions.add(session)
            if self._on_connect is not None:
                await self._on_connect(session.get_remote_proxy())
            await channel.wait_closed()
        except Exception as e:
            self._connection_stats['failed_connections'] += 1
            logger.error(f"Error handling WebSocket connection from {websocket.remote_address}: {e}")
        finally:
            if session is not None:
                self._sessions.discard(session)
                session.cleanup()
            await channel.close()
