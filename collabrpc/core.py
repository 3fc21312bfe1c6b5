"""
Core types for collabrpc.

This module contains the building blocks shared by the engine and the
channel adapters: envelope constructors, the transaction record, the
tagged result of a local method invocation, the error taxonomy and the
CollabProxy object that stands in for the other side's methods.
"""

import asyncio
import inspect
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

TransactionID = str
Envelope = Dict[str, Any]

CALL = "call"
RETURN = "return"

# Attribute names on CollabProxy that are never forwarded to the other side.
RESERVED_NAMES = frozenset({"cleanup_proxy"})


class CollabError(Exception):
    """Base class for all collabrpc errors."""


class RemoteCallError(CollabError):
    """
    A remote call failed.

    Raised through the future returned by a proxy call when the other side
    does not know the method, or when the method raised. Only the message
    survives the trip across the channel.
    """

    def __init__(self, message: str, transaction_id: Optional[TransactionID] = None,
                 function_name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.transaction_id = transaction_id
        self.function_name = function_name


class CollabClosedError(CollabError):
    """The proxy was used after cleanup_proxy() was called."""


class ProtocolError(CollabError):
    """
    The channel delivered something that breaks the call/return protocol.

    These faults cannot be attributed to any caller, so they are never
    routed through a future.
    """


class UnknownTransactionError(ProtocolError):
    """A return arrived for a transaction that was never issued or is already settled."""

    def __init__(self, transaction_id: Any):
        super().__init__(f"Return value for unknown transaction ID {transaction_id} arrived!")
        self.transaction_id = transaction_id


class MalformedEnvelopeError(ProtocolError):
    """An envelope had an unknown type or was missing required fields."""


def make_call_message(transaction_id: TransactionID, function_name: str, args: List[Any]) -> Envelope:
    """Build a call envelope."""
    return {
        "type": CALL,
        "transactionId": transaction_id,
        "functionName": function_name,
        "args": list(args),
    }


def make_return_message(transaction_id: TransactionID, value: Any = None,
                        error: Optional[str] = None) -> Envelope:
    """Build a return envelope. A missing error means the call succeeded."""
    message = {"type": RETURN, "transactionId": transaction_id}
    if error is None:
        message["value"] = value
    else:
        message["error"] = error
    return message


class Transaction:
    """One outstanding call, waiting for its return envelope."""

    def __init__(self, transaction_id: TransactionID, function_name: str, future: asyncio.Future):
        self.transaction_id = transaction_id
        self.function_name = function_name
        self.future = future

    def resolve(self, value: Any) -> None:
        # The caller may have cancelled the future while waiting.
        if not self.future.done():
            self.future.set_result(value)

    def reject(self, message: str) -> None:
        if not self.future.done():
            self.future.set_exception(
                RemoteCallError(message, self.transaction_id, self.function_name)
            )


class Immediate:
    """A method result that is already a plain value."""

    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value


class Deferred:
    """A method result that still has to be awaited."""

    __slots__ = ("awaitable",)

    def __init__(self, awaitable: Awaitable[Any]):
        self.awaitable = awaitable


DispatchResult = Union[Immediate, Deferred]


def classify_result(result: Any) -> DispatchResult:
    """Tag a method's return value as Immediate or Deferred."""
    if inspect.isawaitable(result):
        return Deferred(result)
    return Immediate(result)


async def settle(awaitable: Awaitable[Any]) -> Any:
    """Await until the result is no longer awaitable."""
    result = await awaitable
    while inspect.isawaitable(result):
        result = await result
    return result


def method_table(methods: Any) -> Dict[str, Callable[..., Any]]:
    """
    Build the table of remotely invokable methods.

    Accepts a mapping of names to callables, or any object, in which case
    its public functions and methods become the table. Properties and
    other attributes are left alone.

    Raises:
        TypeError: if a mapping value is not callable
    """
    if isinstance(methods, Mapping):
        table = dict(methods)
        for name, func in table.items():
            if not isinstance(name, str):
                raise TypeError(f"Method name {name!r} is not a string")
            if not callable(func):
                raise TypeError(f"Method {name!r} is not callable")
        return table

    table = {}
    for name in dir(methods):
        if name.startswith("_"):
            continue
        if isinstance(inspect.getattr_static(methods, name, None), property):
            continue
        func = getattr(methods, name)
        if inspect.ismethod(func) or inspect.isfunction(func):
            table[name] = func
    return table


class CollabProxy:
    """
    A stand-in for the methods offered by the other side of a channel.

    Every public attribute is a callable that sends a call envelope and
    returns an asyncio.Future for the result, whether the remote method is
    synchronous or a coroutine:

        total = await proxy.add(2, 3)

    The only attribute that is not forwarded is cleanup_proxy(), which
    unregisters the engine from its channel. Exiting a ``with`` or
    ``async with`` block does the same.
    """

    def __init__(self, session: Any):
        object.__setattr__(self, "_session", session)

    def __getattr__(self, name: str) -> Callable[..., asyncio.Future]:
        if name.startswith("_"):
            raise AttributeError(f"Property {name!r} cannot be called remotely")

        session = self._session

        def remote_method(*args: Any) -> asyncio.Future:
            return session.call(name, *args)

        remote_method.__name__ = name
        return remote_method

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Cannot set attributes on a collab proxy")

    def __repr__(self) -> str:
        return f"<CollabProxy {self._session.name!r}>"

    def cleanup_proxy(self) -> None:
        """Unregister this side from its channel. The proxy must not be used afterwards."""
        self._session.cleanup()

    def __enter__(self) -> "CollabProxy":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup_proxy()

    async def __aenter__(self) -> "CollabProxy":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup_proxy()
