"""
Collaboration engine for collabrpc.

This module implements the call/return protocol: the transaction registry
that pairs outgoing calls with their returns, the dispatcher that runs
local methods for incoming calls, and the session that ties both to one
side of a channel.
"""

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Set

from .core import (
    CALL, RESERVED_NAMES, CollabClosedError, CollabProxy, Envelope, Immediate,
    ProtocolError, Transaction, TransactionID, UnknownTransactionError,
    classify_result, make_call_message, make_return_message, method_table, settle,
)
from .serialize import error_message, validate_envelope

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Envelope], None]
CleanupFunction = Callable[[], None]


class ChannelAdapter(ABC):
    """
    Abstract base class for channel adapters.

    An adapter connects one engine to a host-specific transport. It only has
    to send envelopes and deliver incoming ones to a single handler, one at a
    time, on the event loop thread.
    """

    #: Default prefix for the transaction ids minted on this side.
    name: str = "collab"

    @abstractmethod
    def send_message(self, envelope: Envelope) -> None:
        """Send an envelope to the other side."""
        pass

    @abstractmethod
    def register_handler(self, handler: MessageHandler) -> Optional[CleanupFunction]:
        """Deliver incoming envelopes to handler; return a function that stops delivery."""
        pass


class CollaborationOptions:
    """Configuration options for a collaboration engine."""

    def __init__(self,
                 name: Optional[str] = None,
                 debug: bool = False,
                 on_send_error: Optional[Callable[[Exception], Optional[Exception]]] = None,
                 on_protocol_error: Optional[Callable[[ProtocolError], None]] = None):
        """
        Initialize collaboration options.

        Args:
            name: Unique name for this side, used as the transaction id prefix.
                Defaults to the channel's name.
            debug: Log every envelope sent and received
            on_send_error: Callback for error redaction before a fault is sent
            on_protocol_error: Callback for protocol faults; when unset they are
                raised to the channel adapter
        """
        self.name = name
        self.debug = debug
        self.on_send_error = on_send_error
        self.on_protocol_error = on_protocol_error


class TransactionRegistry:
    """Pending calls, keyed by transaction id."""

    def __init__(self):
        self._transactions: Dict[TransactionID, Transaction] = {}

    def add(self, transaction: Transaction) -> None:
        self._transactions[transaction.transaction_id] = transaction

    def pop(self, transaction_id: TransactionID) -> Transaction:
        """
        Remove and return a pending transaction.

        Raises:
            UnknownTransactionError: if no such transaction is pending
        """
        try:
            return self._transactions.pop(transaction_id)
        except KeyError:
            raise UnknownTransactionError(transaction_id) from None

    def discard(self, transaction_id: TransactionID) -> None:
        self._transactions.pop(transaction_id, None)

    def __contains__(self, transaction_id: object) -> bool:
        return transaction_id in self._transactions

    def __len__(self) -> int:
        return len(self._transactions)


class CallDispatcher:
    """Runs local methods for incoming call envelopes and sends back their returns."""

    def __init__(self, methods: Dict[str, Callable[..., Any]], send: MessageHandler,
                 on_send_error: Optional[Callable[[Exception], Optional[Exception]]] = None):
        self._methods = methods
        self._send = send
        self._on_send_error = on_send_error
        self._running: Set[asyncio.Future] = set()
        self._stopped = False

    @property
    def running(self) -> int:
        """Number of deferred method results still being awaited."""
        return len(self._running)

    def dispatch(self, envelope: Envelope) -> None:
        """Invoke the named method. Never raises for faults in the method itself."""
        transaction_id = envelope["transactionId"]
        name = envelope["functionName"]
        args = envelope.get("args") or []

        func = self._methods.get(name)
        if func is None:
            logger.error(f'Message to call unknown method "{name}" arrived!')
            self._send_error(transaction_id, f'Unknown method "{name}"!')
            return

        try:
            result = classify_result(func(*args))
        except Exception as error:
            logger.debug(f'Method "{name}" raised {error!r}')
            self._send_error(transaction_id, error_message(error, self._on_send_error))
            return

        if isinstance(result, Immediate):
            self._send_value(transaction_id, result.value)
            return

        task = asyncio.ensure_future(settle(result.awaitable))
        self._running.add(task)
        task.add_done_callback(functools.partial(self._deferred_done, transaction_id, name))

    def _deferred_done(self, transaction_id: TransactionID, name: str, task: asyncio.Future) -> None:
        self._running.discard(task)
        if self._stopped:
            if not task.cancelled():
                task.exception()
            return
        if task.cancelled():
            self._send_error(transaction_id, f'Method "{name}" was cancelled')
            return

        error = task.exception()
        if error is not None:
            logger.debug(f'Method "{name}" failed with {error!r}')
            self._send_error(transaction_id, error_message(error, self._on_send_error))
        else:
            self._send_value(transaction_id, task.result())

    def _send_value(self, transaction_id: TransactionID, value: Any) -> None:
        try:
            self._send(make_return_message(transaction_id, value))
        except Exception as e:
            logger.warning(f"Could not send return value for {transaction_id}: {e}")
            self._send_error(transaction_id, f"Return value could not be sent: {error_message(e)}")

    def _send_error(self, transaction_id: TransactionID, message: str) -> None:
        try:
            self._send(make_return_message(transaction_id, error=message))
        except Exception:
            logger.exception(f"Could not send error return for {transaction_id}")

    async def drain(self) -> None:
        """Wait until every deferred method result has been sent."""
        while self._running:
            await asyncio.gather(*self._running, return_exceptions=True)

    def cancel(self) -> None:
        """Cancel every deferred method still running. Their returns are never sent."""
        self._stopped = True
        for task in list(self._running):
            task.cancel()


class CollabSession:
    """
    One side of a collaboration.

    The session owns the method table this side exposes, the registry of
    calls it has made, and the subscription to its channel. Use collab() to
    create one and get the proxy for the other side.
    """

    def __init__(self, methods: Any, channel: ChannelAdapter,
                 options: Optional[CollaborationOptions] = None):
        self.channel = channel
        self.options = options or CollaborationOptions()
        self.name = self.options.name or getattr(channel, "name", None) or ChannelAdapter.name

        self._methods = method_table(methods)
        for method_name in self._methods:
            if method_name.startswith("_") or method_name in RESERVED_NAMES:
                logger.warning(f"Method {method_name!r} cannot be called through a collab proxy")

        self._transactions = TransactionRegistry()
        self._next_transaction_index = 0
        self._dispatcher = CallDispatcher(self._methods, self._send, self.options.on_send_error)
        self._closed = False
        self._proxy: Optional[CollabProxy] = None

        self._unregister = channel.register_handler(self.handle_message)

    @property
    def closed(self) -> bool:
        return self._closed

    def get_remote_proxy(self) -> CollabProxy:
        """Get the proxy for the other side's methods."""
        if self._proxy is None:
            self._proxy = CollabProxy(self)
        return self._proxy

    def call(self, name: str, *args: Any) -> asyncio.Future:
        """
        Call a method on the other side.

        Returns a future that settles when the matching return arrives. The
        future fails with RemoteCallError if the other side reports a fault.
        There is no timeout.
        """
        future = asyncio.get_running_loop().create_future()
        if self._closed:
            future.set_exception(CollabClosedError(f'Cannot call "{name}" on a cleaned up proxy'))
            return future

        transaction_id = f"{self.name}:{self._next_transaction_index}"
        self._next_transaction_index += 1
        self._transactions.add(Transaction(transaction_id, name, future))

        try:
            self._send(make_call_message(transaction_id, name, args))
        except Exception as e:
            self._transactions.discard(transaction_id)
            future.set_exception(e)
        return future

    def handle_message(self, envelope: Envelope) -> None:
        """
        Process one incoming envelope.

        Raises:
            ProtocolError: for unknown transactions and malformed envelopes,
                unless an on_protocol_error callback is configured
        """
        if self._closed:
            logger.debug(f"[{self.name}] Ignoring envelope after cleanup")
            return

        try:
            validate_envelope(envelope)
            if self.options.debug:
                logger.debug(f"[{self.name}] <- {envelope}")

            if envelope["type"] == CALL:
                self._dispatcher.dispatch(envelope)
            else:
                self._handle_return(envelope)
        except ProtocolError as error:
            logger.error(f"[{self.name}] {error}")
            if self.options.on_protocol_error is None:
                raise
            self.options.on_protocol_error(error)

    def _handle_return(self, envelope: Envelope) -> None:
        transaction = self._transactions.pop(envelope["transactionId"])
        error = envelope.get("error")
        if error is None:
            transaction.resolve(envelope.get("value"))
        else:
            transaction.reject(error)

    def _send(self, envelope: Envelope) -> None:
        if self.options.debug:
            logger.debug(f"[{self.name}] -> {envelope}")
        self.channel.send_message(envelope)

    def cleanup(self) -> None:
        """
        Unregister from the channel and cancel local methods still running.

        Calls this side made are left pending.
        """
        if self._closed:
            return
        self._closed = True
        if self._unregister is not None:
            self._unregister()
            self._unregister = None
        self._dispatcher.cancel()
        if len(self._transactions):
            logger.debug(f"[{self.name}] Cleaned up with {len(self._transactions)} calls pending")

    async def drain(self) -> None:
        """Wait for all local methods still running for the other side."""
        await self._dispatcher.drain()

    def get_stats(self) -> Dict[str, int]:
        """Get session statistics."""
        return {
            "issued": self._next_transaction_index,
            "pending": len(self._transactions),
            "running": self._dispatcher.running,
        }


def collab(methods: Any, channel: ChannelAdapter,
           options: Optional[CollaborationOptions] = None) -> CollabProxy:
    """
    Start one side of a collaboration.

    Both sides call this with their own methods. Either may go first, and
    calls may be made right away: a call only needs the other side to be
    listening by the time its return is due.

    Args:
        methods: Mapping of names to callables, or an object whose public
            methods this side exposes. Arguments and results must be
            JSON-serializable.
        channel: Adapter that sends and receives envelopes
        options: Optional collaboration configuration

    Returns:
        CollabProxy for the other side's methods. Every call on it returns
        an asyncio.Future.

    Example:
        ```python
        ui, plugin = LocalChannel.pair("UI", "Plugin")
        collab({"add": lambda x, y: x + y}, plugin)
        proxy = collab({}, ui)
        assert await proxy.add(2, 3) == 5
        ```
    """
    session = CollabSession(methods, channel, options)
    return session.get_remote_proxy()
