"""
In-process channel adapters for collabrpc.

LocalChannel links two engines running on the same event loop, copying
every envelope through JSON the way a message port would. CallbackChannel
wraps a pair of plain functions supplied by a host environment.
"""

import asyncio
import logging
from collections import deque
from typing import Callable, Deque, Optional, Tuple

from .core import Envelope
from .rpc import ChannelAdapter, CleanupFunction, MessageHandler
from .serialize import deserialize, serialize

logger = logging.getLogger(__name__)


class LocalChannel(ChannelAdapter):
    """
    One end of an in-process channel.

    Sending serializes the envelope right away, so values JSON cannot carry
    fail in the sender. Delivery happens on a later turn of the event loop.
    Envelopes that arrive before a handler is registered are kept until one
    is; envelopes that arrive after the handler was removed are dropped.
    """

    def __init__(self, name: str):
        self.name = name
        self.peer: Optional["LocalChannel"] = None
        self._handler: Optional[MessageHandler] = None
        self._inbox: Optional[Deque[str]] = deque()

    @classmethod
    def pair(cls, name_a: str = "A", name_b: str = "B") -> Tuple["LocalChannel", "LocalChannel"]:
        """Create two connected ends."""
        a = cls(name_a)
        b = cls(name_b)
        a.peer = b
        b.peer = a
        return a, b

    def send_message(self, envelope: Envelope) -> None:
        if self.peer is None:
            raise RuntimeError(f"LocalChannel {self.name!r} is not connected")
        text = serialize(envelope)
        asyncio.get_running_loop().call_soon(self.peer._deliver, text)

    def register_handler(self, handler: MessageHandler) -> CleanupFunction:
        if self._handler is not None:
            raise RuntimeError(f"LocalChannel {self.name!r} already has a handler")
        self._handler = handler

        inbox, self._inbox = self._inbox, None
        if inbox:
            loop = asyncio.get_running_loop()
            for text in inbox:
                loop.call_soon(self._deliver, text)

        def cleanup() -> None:
            if self._handler is handler:
                self._handler = None

        return cleanup

    def _deliver(self, text: str) -> None:
        if self._handler is None:
            if self._inbox is not None:
                self._inbox.append(text)
            else:
                logger.debug(f"LocalChannel {self.name!r} dropped an envelope after cleanup")
            return
        self._handler(deserialize(text))


class CallbackChannel(ChannelAdapter):
    """
    Adapter built from two host functions.

    Args:
        name: Unique name for this side
        send_message: Function that sends an envelope to the other side
        register_handler: Function that routes incoming envelopes to the
            handler it is given and returns a function that stops doing so
    """

    def __init__(self, name: str,
                 send_message: Callable[[Envelope], None],
                 register_handler: Callable[[MessageHandler], Optional[CleanupFunction]]):
        self.name = name
        self._send_message = send_message
        self._register_handler = register_handler

    def send_message(self, envelope: Envelope) -> None:
        self._send_message(envelope)

    def register_handler(self, handler: MessageHandler) -> Optional[CleanupFunction]:
        return self._register_handler(handler)
