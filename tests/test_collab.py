"""
Tests for the collaboration engine over in-process channels.
"""

import asyncio
from unittest.mock import Mock

import pytest

from collabrpc import (
    CallbackChannel, CollabClosedError, CollaborationOptions, LocalChannel,
    MalformedEnvelopeError, RemoteCallError, UnknownTransactionError, collab,
)
from collabrpc.core import make_call_message, make_return_message


def connect(plugin_methods, ui_methods=None, plugin_options=None, ui_options=None):
    """Start both sides; return (proxy to plugin, proxy to ui)."""
    ui_end, plugin_end = LocalChannel.pair("UI", "Plugin")
    to_ui = collab(plugin_methods, plugin_end, plugin_options)
    to_plugin = collab(ui_methods or {}, ui_end, ui_options)
    return to_plugin, to_ui


def recording_channel(name="Host"):
    """A channel that records what is sent and never delivers anything."""
    sent = []
    unregister = Mock()
    channel = CallbackChannel(name, sent.append, lambda handler: unregister)
    return channel, sent, unregister


@pytest.mark.asyncio
class TestCalls:
    """Test calls from one side to the other."""

    async def test_sync_method(self):
        plugin, _ = connect({"add": lambda x, y: x + y})
        assert await plugin.add(2, 3) == 5

    async def test_async_method(self):
        async def slow():
            await asyncio.sleep(0.01)
            return "done"

        plugin, _ = connect({"slow": slow})
        future = plugin.slow()
        for _ in range(5):
            await asyncio.sleep(0)
        assert not future.done()
        assert await future == "done"

    async def test_async_method_returning_awaitable(self):
        async def inner():
            return "inner value"

        async def outer():
            return inner()

        plugin, _ = connect({"outer": outer})
        assert await plugin.outer() == "inner value"

    async def test_structured_values(self):
        plugin, _ = connect({"echo": lambda *args: list(args)})
        args = [{"fill": [1, 0.5, 0]}, None, "text", True]
        assert await plugin.echo(*args) == args

    async def test_none_result(self):
        plugin, _ = connect({"nothing": lambda: None})
        assert await plugin.nothing() is None

    async def test_object_methods(self):
        class Plugin:
            def __init__(self):
                self.selection = ["rect"]

            def get_selection(self):
                return self.selection

            async def select(self, node):
                self.selection = [node]
                return len(self.selection)

        plugin, _ = connect(Plugin())
        assert await plugin.select("ellipse") == 1
        assert await plugin.get_selection() == ["ellipse"]

    async def test_both_directions(self):
        proxies = {}

        async def double_via_ui(x):
            return await proxies["ui"].double(x)

        proxies["plugin"], proxies["ui"] = connect(
            {"double_via_ui": double_via_ui},
            {"double": lambda x: x * 2},
        )
        assert await proxies["plugin"].double_via_ui(4) == 8

    async def test_call_before_other_side_starts(self):
        ui_end, plugin_end = LocalChannel.pair("UI", "Plugin")
        plugin = collab({}, ui_end)
        future = plugin.add(1, 2)
        await asyncio.sleep(0)
        collab({"add": lambda x, y: x + y}, plugin_end)
        assert await future == 3

    async def test_out_of_order_returns(self):
        async def wait(delay, tag):
            await asyncio.sleep(delay)
            return tag

        plugin, _ = connect({"wait": wait})
        first = plugin.wait(0.05, "first")
        second = plugin.wait(0, "second")
        assert await second == "second"
        assert not first.done()
        assert await first == "first"

    async def test_concurrent_calls(self):
        async def square(x):
            await asyncio.sleep(0.001 * (10 - x))
            return x * x

        plugin, _ = connect({"square": square})
        results = await asyncio.gather(*(plugin.square(i) for i in range(10)))
        assert results == [i * i for i in range(10)]


@pytest.mark.asyncio
class TestFailures:
    """Test faults that are reported to the caller."""

    async def test_unknown_method(self):
        plugin, _ = connect({"add": lambda x, y: x + y})
        with pytest.raises(RemoteCallError, match='Unknown method "missing"') as info:
            await plugin.missing()
        assert info.value.function_name == "missing"
        assert info.value.transaction_id == "UI:0"

    async def test_sync_method_raises(self):
        def paint(color):
            raise ValueError(f"bad color {color}")

        plugin, _ = connect({"paint": paint})
        with pytest.raises(RemoteCallError, match="bad color teal"):
            await plugin.paint("teal")

    async def test_async_method_raises(self):
        async def load():
            await asyncio.sleep(0)
            raise KeyError("font")

        plugin, _ = connect({"load": load})
        with pytest.raises(RemoteCallError, match="font"):
            await plugin.load()

    async def test_empty_exception_message(self):
        def fail():
            raise RuntimeError()

        plugin, _ = connect({"fail": fail})
        with pytest.raises(RemoteCallError, match="RuntimeError"):
            await plugin.fail()

    async def test_wrong_argument_count(self):
        plugin, _ = connect({"add": lambda x, y: x + y})
        with pytest.raises(RemoteCallError):
            await plugin.add(1)

    async def test_unserializable_result(self):
        plugin, _ = connect({"handle": lambda: object()})
        with pytest.raises(RemoteCallError, match="Return value could not be sent"):
            await plugin.handle()

    async def test_unserializable_args(self):
        plugin, _ = connect({"add": lambda x, y: x + y})
        with pytest.raises(TypeError):
            await plugin.add(object(), 1)
        assert plugin._session.get_stats()["pending"] == 0

    async def test_redacted_errors(self):
        def login(password):
            raise ValueError(f"wrong password {password}")

        options = CollaborationOptions(on_send_error=lambda error: Exception("Redacted"))
        plugin, _ = connect({"login": login}, plugin_options=options)
        with pytest.raises(RemoteCallError) as info:
            await plugin.login("hunter2")
        assert info.value.message == "Redacted"

    async def test_caller_survives_failures(self):
        def fail():
            raise RuntimeError("nope")

        plugin, _ = connect({"fail": fail, "ok": lambda: "ok"})
        with pytest.raises(RemoteCallError):
            await plugin.fail()
        assert await plugin.ok() == "ok"


@pytest.mark.asyncio
class TestDispatcher:
    """Test the envelopes sent back for incoming calls."""

    async def test_sync_result_sent_immediately(self):
        channel, sent, _ = recording_channel()
        proxy = collab({"add": lambda x, y: x + y}, channel)
        proxy._session.handle_message(make_call_message("Guest:0", "add", [2, 3]))
        assert sent == [make_return_message("Guest:0", 5)]

    async def test_deferred_result_sent_later(self):
        async def slow():
            await asyncio.sleep(0.01)
            return "done"

        channel, sent, _ = recording_channel()
        session = collab({"slow": slow}, channel)._session
        session.handle_message(make_call_message("Guest:0", "slow", []))
        assert sent == []
        assert session.get_stats()["running"] == 1
        await session.drain()
        assert sent == [make_return_message("Guest:0", "done")]

    async def test_unknown_method_sends_one_return(self, caplog):
        channel, sent, _ = recording_channel()
        session = collab({}, channel)._session
        session.handle_message(make_call_message("Guest:3", "missing", []))
        assert sent == [make_return_message("Guest:3", error='Unknown method "missing"!')]
        assert 'unknown method "missing"' in caplog.text

    async def test_method_fault_does_not_escape(self):
        def explode():
            raise ZeroDivisionError("division by zero")

        channel, sent, _ = recording_channel()
        session = collab({"explode": explode}, channel)._session
        session.handle_message(make_call_message("Guest:0", "explode", []))
        assert sent == [make_return_message("Guest:0", error="division by zero")]

    async def test_null_args_call_no_arguments(self):
        channel, sent, _ = recording_channel()
        session = collab({"ping": lambda: "pong"}, channel)._session
        session.handle_message({
            "type": "call", "transactionId": "Guest:0", "functionName": "ping", "args": None,
        })
        assert sent == [make_return_message("Guest:0", "pong")]


@pytest.mark.asyncio
class TestTransactions:
    """Test pairing of calls with returns."""

    async def test_ids_are_unique(self):
        channel, sent, _ = recording_channel("Side")
        proxy = collab({}, channel)
        proxy.first()
        proxy.second()
        proxy.first()
        assert [message["transactionId"] for message in sent] == ["Side:0", "Side:1", "Side:2"]
        assert [message["functionName"] for message in sent] == ["first", "second", "first"]

    async def test_name_option_overrides_channel_name(self):
        channel, sent, _ = recording_channel("Side")
        proxy = collab({}, channel, CollaborationOptions(name="Panel"))
        proxy.ping()
        assert sent[0]["transactionId"] == "Panel:0"

    async def test_return_settles_only_its_transaction(self):
        channel, _, _ = recording_channel("Side")
        proxy = collab({}, channel)
        first = proxy.get("a")
        second = proxy.get("b")
        proxy._session.handle_message(make_return_message("Side:1", "b"))
        await asyncio.sleep(0)
        assert second.result() == "b"
        assert not first.done()

    async def test_missing_value_means_none(self):
        channel, _, _ = recording_channel("Side")
        proxy = collab({}, channel)
        future = proxy.nothing()
        proxy._session.handle_message({"type": "return", "transactionId": "Side:0"})
        assert await future is None

    async def test_null_error_means_success(self):
        channel, _, _ = recording_channel("Side")
        proxy = collab({}, channel)
        future = proxy.get()
        proxy._session.handle_message(
            {"type": "return", "transactionId": "Side:0", "value": 1, "error": None}
        )
        assert await future == 1

    async def test_duplicate_return(self):
        channel, _, _ = recording_channel("Side")
        proxy = collab({}, channel)
        session = proxy._session
        future = proxy.get()
        session.handle_message(make_return_message("Side:0", "first"))
        with pytest.raises(UnknownTransactionError) as info:
            session.handle_message(make_return_message("Side:0", "second"))
        assert info.value.transaction_id == "Side:0"
        assert await future == "first"
        assert session.get_stats() == {"issued": 1, "pending": 0, "running": 0}

    async def test_return_for_unissued_call(self):
        channel, _, _ = recording_channel("Side")
        session = collab({}, channel)._session
        with pytest.raises(UnknownTransactionError):
            session.handle_message(make_return_message("Other:0", 1))

    async def test_unknown_envelope_type(self):
        channel, _, _ = recording_channel()
        session = collab({}, channel)._session
        with pytest.raises(MalformedEnvelopeError):
            session.handle_message({"type": "bogus", "transactionId": "x"})

    async def test_protocol_error_callback(self):
        errors = []
        channel, _, _ = recording_channel("Side")
        session = collab({}, channel, CollaborationOptions(on_protocol_error=errors.append))._session
        session.handle_message(make_return_message("Side:5", 1))
        session.handle_message({"type": "bogus"})
        assert [type(error) for error in errors] == [UnknownTransactionError, MalformedEnvelopeError]

    async def test_protocol_error_reaches_loop(self):
        loop = asyncio.get_running_loop()
        reported = loop.create_future()

        def exception_handler(loop, context):
            if not reported.done():
                reported.set_result(context)

        loop.set_exception_handler(exception_handler)
        try:
            ui_end, plugin_end = LocalChannel.pair("UI", "Plugin")
            collab({}, plugin_end)
            ui_end.send_message(make_return_message("Nobody:0", 1))
            context = await asyncio.wait_for(reported, 1)
        finally:
            loop.set_exception_handler(None)
        assert isinstance(context["exception"], UnknownTransactionError)

    async def test_cancelled_caller(self):
        channel, _, _ = recording_channel("Side")
        proxy = collab({}, channel)
        future = proxy.get()
        future.cancel()
        proxy._session.handle_message(make_return_message("Side:0", 1))
        assert proxy._session.get_stats()["pending"] == 0


@pytest.mark.asyncio
class TestCleanup:
    """Test tearing down one side."""

    async def test_cleanup_unregisters_once(self):
        channel, _, unregister = recording_channel()
        proxy = collab({}, channel)
        proxy.cleanup_proxy()
        proxy.cleanup_proxy()
        unregister.assert_called_once_with()
        assert proxy._session.closed

    async def test_calls_after_cleanup_fail(self):
        channel, sent, _ = recording_channel()
        proxy = collab({}, channel)
        proxy.cleanup_proxy()
        future = proxy.add(1, 2)
        with pytest.raises(CollabClosedError):
            await future
        assert sent == []

    async def test_pending_calls_stay_pending(self):
        channel, _, _ = recording_channel()
        proxy = collab({}, channel)
        future = proxy.never()
        proxy.cleanup_proxy()
        await asyncio.sleep(0)
        assert not future.done()

    async def test_context_manager_cleans_up(self):
        ui_end, plugin_end = LocalChannel.pair("UI", "Plugin")
        collab({"add": lambda x, y: x + y}, plugin_end)
        with collab({}, ui_end) as plugin:
            assert await plugin.add(1, 1) == 2
        assert plugin._session.closed

    async def test_envelopes_after_cleanup_are_dropped(self):
        ui_end, plugin_end = LocalChannel.pair("UI", "Plugin")
        to_ui = collab({}, plugin_end)
        to_ui.cleanup_proxy()
        to_plugin = collab({}, ui_end)
        future = to_plugin.anything()
        await asyncio.sleep(0.01)
        assert not future.done()

    async def test_no_handler_no_cleanup(self):
        channel = CallbackChannel("Host", lambda envelope: None, lambda handler: None)
        proxy = collab({}, channel)
        proxy.cleanup_proxy()
        assert proxy._session.closed

    async def test_cleanup_cancels_running_methods(self):
        finished = Mock()

        async def slow():
            await asyncio.sleep(0.01)
            finished()
            return "late"

        channel, sent, _ = recording_channel()
        proxy = collab({"slow": slow}, channel)
        session = proxy._session
        session.handle_message(make_call_message("Guest:0", "slow", []))
        assert session.get_stats()["running"] == 1
        proxy.cleanup_proxy()
        await asyncio.sleep(0.02)
        assert sent == []
        finished.assert_not_called()
        assert session.get_stats()["running"] == 0


if __name__ == "__main__":
    pytest.main([__file__])
