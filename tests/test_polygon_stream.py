"""Tests for the auto-reconnecting Polygon stream client."""

import asyncio

import pytest

from dataflow.adapters.polygon_stream import (
    ConnectionState,
    PolygonStreamClient,
    StreamConfig,
)
from schemas.feed_messages import AggregateMessage, StatusMessage, TradeMessage
from tests.conftest import FakeTransport, am, trade, wait_until


@pytest.fixture
async def make_client(transport):
    """Build clients wired to the fake transport; all are closed at teardown."""
    clients = []

    def factory(on_message=None, reconnect_delay=0.01, api_key="secret"):
        config = StreamConfig(
            url="wss://stream.test/stocks",
            api_key=api_key,
            reconnect_delay=reconnect_delay,
        )
        client = PolygonStreamClient(config, on_message=on_message, connect_factory=transport)
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.close()


class TestConnect:

    async def test_sends_auth_then_subscriptions(self, make_client, transport):
        client = make_client()
        await client.subscribe(["aapl"])
        assert transport.attempts == 0

        await client.connect()

        ws = transport.latest
        assert transport.urls == ["wss://stream.test/stocks"]
        assert ws.sent[0] == {"action": "auth", "params": "secret"}
        assert ws.subscribe_params() == [["AM.AAPL"], ["T.AAPL"]]
        assert client.state is ConnectionState.SUBSCRIBED
        assert client.is_connected

    async def test_explicit_credential_overrides_config(self, make_client, transport):
        client = make_client()

        await client.connect("other-key")

        assert transport.latest.sent[0] == {"action": "auth", "params": "other-key"}

    async def test_connect_is_idempotent_while_live(self, make_client, transport):
        client = make_client()

        await client.connect()
        await client.connect()

        assert transport.attempts == 1

    async def test_empty_credential_rejected(self, make_client):
        client = make_client(api_key="")

        with pytest.raises(ValueError, match="credential"):
            await client.connect()
        assert client.state is ConnectionState.IDLE

    async def test_no_subscriptions_sends_only_auth(self, make_client, transport):
        client = make_client()

        await client.connect()

        assert transport.latest.sent == [{"action": "auth", "params": "secret"}]

    async def test_open_failure_schedules_reconnect(self, make_client, transport):
        transport.fail_next = 2
        client = make_client()

        await client.connect()
        assert client.state is ConnectionState.RECONNECT_PENDING

        await wait_until(lambda: client.state is ConnectionState.SUBSCRIBED)
        assert transport.attempts == 3

    async def test_handshake_failure_schedules_reconnect(self, make_client):
        class ClosedOnFirstOpen(FakeTransport):
            async def __call__(self, url):
                ws = await super().__call__(url)
                if len(self.sockets) == 1:
                    ws.closed = True
                return ws

        transport = ClosedOnFirstOpen()
        client = PolygonStreamClient(
            StreamConfig(api_key="secret", reconnect_delay=0.01),
            connect_factory=transport,
        )
        try:
            await client.connect()
            assert client.state is ConnectionState.RECONNECT_PENDING

            await wait_until(lambda: client.state is ConnectionState.SUBSCRIBED)
            assert transport.attempts == 2
        finally:
            await client.close()


class TestSubscriptions:

    async def test_subscribe_while_connected_sends_both_channels(self, make_client, transport):
        client = make_client()
        await client.connect()

        await client.subscribe(["MSFT", "NVDA"])

        assert transport.latest.subscribe_params() == [
            ["AM.MSFT", "AM.NVDA"],
            ["T.MSFT", "T.NVDA"],
        ]
        assert client.subscriptions == ("MSFT", "NVDA")

    async def test_subscribe_empty_is_noop(self, make_client, transport):
        client = make_client()
        await client.connect()

        await client.subscribe([])

        assert transport.latest.subscribe_params() == []

    async def test_subscribe_while_disconnected_is_remembered(self, make_client, caplog):
        client = make_client()

        await client.subscribe(["AAPL"])

        assert client.subscriptions == ("AAPL",)
        assert "not connected" in caplog.text

    async def test_unsubscribe_sends_single_request(self, make_client, transport):
        client = make_client()
        await client.subscribe(["AAPL", "MSFT"])
        await client.connect()

        await client.unsubscribe(["AAPL"])

        assert transport.latest.sent[-1] == {
            "action": "unsubscribe",
            "params": ["AM.AAPL", "T.AAPL"],
        }
        assert client.subscriptions == ("MSFT",)

    async def test_unsubscribe_while_disconnected_only_updates_set(self, make_client, transport):
        client = make_client()
        await client.subscribe(["AAPL"])

        await client.unsubscribe(["AAPL"])

        assert client.subscriptions == ()
        assert transport.attempts == 0

    async def test_subscribe_before_connect_sends_exactly_two_requests(
        self, make_client, transport
    ):
        client = make_client()
        await client.subscribe(["AAPL"])

        await client.connect()

        subscribe_requests = [m for m in transport.latest.sent if m["action"] == "subscribe"]
        assert subscribe_requests == [
            {"action": "subscribe", "params": ["AM.AAPL"]},
            {"action": "subscribe", "params": ["T.AAPL"]},
        ]

    async def test_subscribe_during_handshake_is_sent(self, make_client, transport):
        transport.yield_on_send = True
        client = make_client()
        await client.subscribe(["AAPL"])

        connecting = asyncio.create_task(client.connect())
        while not transport.sockets or not transport.latest.subscribe_params():
            await asyncio.sleep(0)
        assert client.state is ConnectionState.AUTHENTICATING
        await client.subscribe(["MSFT"])
        await connecting

        assert client.state is ConnectionState.SUBSCRIBED
        assert transport.latest.subscribe_params() == [
            ["AM.AAPL"], ["T.AAPL"], ["AM.MSFT"], ["T.MSFT"],
        ]

    async def test_unsubscribe_during_handshake_is_sent(self, make_client, transport):
        transport.yield_on_send = True
        client = make_client()
        await client.subscribe(["AAPL", "MSFT"])

        connecting = asyncio.create_task(client.connect())
        while not transport.sockets or not transport.latest.subscribe_params():
            await asyncio.sleep(0)
        await client.unsubscribe(["AAPL"])
        await connecting

        assert client.subscriptions == ("MSFT",)
        assert transport.latest.sent[-1] == {
            "action": "unsubscribe",
            "params": ["AM.AAPL", "T.AAPL"],
        }


class TestMessageDelivery:

    async def test_batches_delivered_in_order(self, make_client, transport):
        received = []
        client = make_client(on_message=received.append)
        await client.connect()
        ws = transport.latest

        ws.feed([trade(1.0)])
        ws.feed([am(), trade(2.0)])
        ws.feed([trade(3.0)])
        await wait_until(lambda: len(received) == 3)

        assert [type(m) for m in received[1]] == [AggregateMessage, TradeMessage]
        assert [batch[-1].price for batch in (received[0], received[2])] == [1.0, 3.0]

    async def test_malformed_frame_dropped(self, make_client, transport, caplog):
        received = []
        client = make_client(on_message=received.append)
        await client.connect()
        ws = transport.latest

        ws.feed("{not json")
        ws.feed([trade(2.0)])
        await wait_until(lambda: len(received) == 1)

        assert received[0][0].price == 2.0
        assert client.state is ConnectionState.SUBSCRIBED
        assert "malformed frame" in caplog.text

    async def test_unknown_entries_dropped(self, make_client, transport):
        received = []
        client = make_client(on_message=received.append)
        await client.connect()
        ws = transport.latest

        ws.feed([{"ev": "Q", "sym": "AAPL"}])
        ws.feed([{"ev": "XQ"}, trade(5.0)])
        await wait_until(lambda: len(received) == 1)

        assert [type(m) for m in received[0]] == [TradeMessage]

    async def test_auth_success_marks_authenticated(self, make_client, transport):
        received = []
        client = make_client(on_message=received.append)
        await client.connect()
        assert not client.authenticated

        transport.latest.feed([{"ev": "status", "status": "auth_success", "message": "ok"}])
        await wait_until(lambda: len(received) == 1)

        assert client.authenticated
        assert isinstance(received[0][0], StatusMessage)

    async def test_async_callback_awaited(self, make_client, transport):
        received = []

        async def on_message(batch):
            await asyncio.sleep(0)
            received.append(batch)

        client = make_client(on_message=on_message)
        await client.connect()

        transport.latest.feed([trade(1.0)])
        await wait_until(lambda: len(received) == 1)

    async def test_callback_error_does_not_stop_delivery(self, make_client, transport):
        received = []

        def on_message(batch):
            received.append(batch)
            if len(received) == 1:
                raise RuntimeError("consumer bug")

        client = make_client(on_message=on_message)
        await client.connect()

        transport.latest.feed([trade(1.0)])
        transport.latest.feed([trade(2.0)])
        await wait_until(lambda: len(received) == 2)

        assert client.state is ConnectionState.SUBSCRIBED


class TestReconnect:

    async def test_remote_close_schedules_one_reconnect(self, make_client, transport):
        client = make_client(reconnect_delay=0.05)
        await client.subscribe(["AAPL"])
        await client.connect()

        transport.sockets[0].drop()
        await wait_until(lambda: client.state is ConnectionState.RECONNECT_PENDING)
        assert transport.attempts == 1

        await wait_until(lambda: client.state is ConnectionState.SUBSCRIBED)
        await asyncio.sleep(0.15)

        assert transport.attempts == 2
        assert transport.latest.sent[0] == {"action": "auth", "params": "secret"}
        assert transport.latest.subscribe_params() == [["AM.AAPL"], ["T.AAPL"]]

    async def test_close_during_pending_reconnect_cancels_it(self, make_client, transport):
        client = make_client(reconnect_delay=0.05)
        await client.connect()

        transport.sockets[0].drop()
        await wait_until(lambda: client.state is ConnectionState.RECONNECT_PENDING)
        await client.close()
        await asyncio.sleep(0.15)

        assert transport.attempts == 1
        assert client.state is ConnectionState.CLOSED

    async def test_transport_error_recovers(self, make_client, transport):
        client = make_client()
        await client.connect()

        transport.sockets[0].fail(OSError("connection reset"))
        await wait_until(lambda: transport.attempts == 2)
        await wait_until(lambda: client.state is ConnectionState.SUBSCRIBED)

    async def test_manual_connect_replaces_pending_timer(self, make_client, transport):
        client = make_client(reconnect_delay=0.1)
        await client.connect()

        transport.sockets[0].drop()
        await wait_until(lambda: client.state is ConnectionState.RECONNECT_PENDING)
        await client.connect()
        await asyncio.sleep(0.2)

        assert transport.attempts == 2
        assert client.state is ConnectionState.SUBSCRIBED

    async def test_unsubscribed_symbols_not_resent(self, make_client, transport):
        client = make_client()
        await client.subscribe(["AAPL", "MSFT"])
        await client.connect()

        await client.unsubscribe(["AAPL", "MSFT"])
        assert transport.sockets[0].sent[-1] == {
            "action": "unsubscribe",
            "params": ["AM.AAPL", "AM.MSFT", "T.AAPL", "T.MSFT"],
        }

        transport.sockets[0].drop()
        await wait_until(
            lambda: transport.attempts == 2 and client.state is ConnectionState.SUBSCRIBED
        )

        assert transport.latest.sent == [{"action": "auth", "params": "secret"}]

    async def test_keeps_retrying_without_limit(self, make_client, transport):
        transport.fail_next = 10
        client = make_client(reconnect_delay=0.001)

        await client.connect()
        await wait_until(lambda: client.state is ConnectionState.SUBSCRIBED)

        assert transport.attempts == 11


class TestClose:

    async def test_no_delivery_after_close(self, make_client, transport):
        received = []
        client = make_client(on_message=received.append)
        await client.connect()
        ws = transport.latest

        await client.close()
        ws.feed([trade(1.0)])
        await asyncio.sleep(0.05)

        assert received == []
        assert ws.closed
        assert client.state is ConnectionState.CLOSED

    async def test_close_is_idempotent(self, make_client):
        client = make_client()
        await client.connect()

        await client.close()
        await client.close()

        assert client.state is ConnectionState.CLOSED

    async def test_connect_after_close_is_ignored(self, make_client, transport):
        client = make_client()
        await client.close()

        await client.connect()

        assert transport.attempts == 0
        assert client.state is ConnectionState.CLOSED

    async def test_close_while_open_fails_stays_closed(self):
        gate = asyncio.Event()
        attempts = []

        async def refuse_after_gate(url):
            attempts.append(url)
            await gate.wait()
            raise OSError("connection refused")

        client = PolygonStreamClient(
            StreamConfig(api_key="secret", reconnect_delay=0.01),
            connect_factory=refuse_after_gate,
        )
        connecting = asyncio.create_task(client.connect())
        await wait_until(lambda: attempts)

        await client.close()
        gate.set()
        await connecting
        await asyncio.sleep(0.05)

        assert client.state is ConnectionState.CLOSED
        assert len(attempts) == 1

    async def test_close_from_callback(self, make_client, transport):
        client = None
        received = []

        async def on_message(batch):
            received.append(batch)
            await client.close()

        client = make_client(on_message=on_message)
        await client.connect()

        transport.latest.feed([trade(1.0)])
        transport.latest.feed([trade(2.0)])
        await wait_until(lambda: client.state is ConnectionState.CLOSED)
        await asyncio.sleep(0.05)

        assert len(received) == 1
        assert transport.attempts == 1
