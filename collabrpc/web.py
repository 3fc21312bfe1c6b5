"""
aiohttp integration for collabrpc.

Lets an aiohttp application host a collaboration endpoint over WebSocket,
and lets aiohttp clients connect to one.

Example:
    ```python
    from aiohttp import web
    from collabrpc.web import collab_handler

    app = web.Application()
    app.router.add_get('/collab', collab_handler(lambda: {"hello": greet}))
    ```
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

import aiohttp
from aiohttp import web

from .core import CollabProxy
from .rpc import CollabSession, CollaborationOptions, collab
from .websocket import WebSocketChannel

logger = logging.getLogger(__name__)


def _connect_done(task: asyncio.Future) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"Collab on_connect callback failed: {task.exception()!r}")


class AiohttpWebSocketChannel(WebSocketChannel):
    """Channel adapter over an aiohttp WebSocket, client or server side."""

    async def _send_text(self, text: str) -> None:
        await self._websocket.send_str(text)

    async def _receive_texts(self) -> AsyncIterator[Union[str, bytes]]:
        async for message in self._websocket:
            if message.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                yield message.data
            elif message.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"WebSocket {self.name!r} failed: {self._websocket.exception()}")
                break


def collab_handler(
    methods_factory: Callable[[], Any],
    options: Optional[CollaborationOptions] = None,
    on_connect: Optional[Callable[[CollabProxy], Awaitable[None]]] = None,
    name: str = "Server"
) -> Callable[[web.Request], Awaitable[web.WebSocketResponse]]:
    """
    Create an aiohttp handler that collaborates with each connecting client.

    Args:
        methods_factory: Function that returns the methods for each connection
        options: Collaboration options shared by all connections
        on_connect: Coroutine run with the client's proxy once the socket opens
        name: Channel name used as transaction id prefix on the server side
    """
    async def handle_collab(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        logger.info(f"New collab connection from {request.remote}")

        # aiohttp only allows reading a server socket from the handler task.
        channel = AiohttpWebSocketChannel(ws, name, read_in_background=False)
        session = CollabSession(methods_factory(), channel, options)
        connect_task = None
        if on_connect is not None:
            connect_task = asyncio.ensure_future(on_connect(session.get_remote_proxy()))
            connect_task.add_done_callback(_connect_done)
        try:
            await channel.read_messages()
        finally:
            if connect_task is not None and not connect_task.done():
                connect_task.cancel()
            session.cleanup()
            await channel.close()
        return ws

    return handle_collab


class AiohttpCollabSessionManager:
    """Context manager for an aiohttp WebSocket collaboration as a client."""

    def __init__(self,
                 url: str,
                 methods: Any,
                 options: Optional[CollaborationOptions] = None,
                 name: str = "Client",
                 session: Optional[aiohttp.ClientSession] = None):
        self._url = url
        self._methods = methods
        self._options = options
        self._name = name
        self._client = session
        self._owns_client = session is None
        self._channel: Optional[AiohttpWebSocketChannel] = None
        self._proxy: Optional[CollabProxy] = None

    async def __aenter__(self) -> CollabProxy:
        if self._client is None:
            self._client = aiohttp.ClientSession()
        ws = await self._client.ws_connect(self._url)
        self._channel = AiohttpWebSocketChannel(ws, self._name)
        self._proxy = collab(self._methods, self._channel, self._options)
        return self._proxy

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._proxy is not None:
            self._proxy.cleanup_proxy()
        if self._channel is not None:
            await self._channel.close()
        if self._owns_client and self._client is not None:
            await self._client.close()


def aiohttp_collab(
    url: str,
    methods: Any,
    options: Optional[CollaborationOptions] = None,
    name: str = "Client",
    session: Optional[aiohttp.ClientSession] = None
) -> AiohttpCollabSessionManager:
    """
    Collaborate with an aiohttp collab endpoint.

    Usage:
        async with aiohttp_collab("http://localhost:8080/collab", {}) as server:
            result = await server.hello("World")
    """
    return AiohttpCollabSessionManager(url, methods, options, name, session)
