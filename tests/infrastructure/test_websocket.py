"""
WebSocket carrier lifecycle and stream routing, over an in-memory socket.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

import asyncio
from unittest.mock import AsyncMock, Mock

import msgspec
import pytest

from config.structs import WebSocketConfig
from conftest import FakeConnector, wait_until
from infrastructure.exceptions.system import ConnectionClosedError
from infrastructure.networking.websocket import (
    ConnectionState, SubscriberDescriptor, WsConnection, WsStreamRouter, make_ack_predicate,
)

FAST = WebSocketConfig(connect_timeout=1.0, reconnect_delay=0.01, max_reconnect_delay=0.05,
                       resubscribe_interval=0.05, ack_timeout=0.2, read_idle_timeout=5.0)


class Ticker(msgspec.Struct):
    s: str
    c: str


def _ack(request_id: int) -> str:
    return f'{{"result":null,"id":{request_id}}}'


@pytest.fixture
async def connection(fake_connector):
    conn = WsConnection("wss://stream.example.com/stream", FAST, connector=fake_connector, venue="test")
    yield conn
    await conn.stop()


class TestAckPredicate:

    def test_matches_only_its_id(self):
        predicate = make_ack_predicate(1)
        assert predicate('{"result":null,"id":1}')
        assert predicate(b'{"id": 1, "result": null}')
        assert not predicate('{"result":null,"id":12}')
        assert not predicate('{"error":{"code":2},"id":1}')


class TestWsConnection:

    @pytest.mark.asyncio
    async def test_subscriptions_replayed_on_reconnect(self, connection, fake_connector):
        router = WsStreamRouter(connection, venue="test")
        router.subscribe("btcusdt@ticker", Ticker, Mock())
        router.subscribe("ethusdt@depth10@100ms", dict, Mock())

        await connection.start()
        await wait_until(lambda: fake_connector.sockets and len(fake_connector.last.sent) == 2)
        first = fake_connector.last
        assert [msgspec.json.decode(f)["id"] for f in first.sent] == [1, 2]

        first.feed(_ack(1))
        first.feed(_ack(2))
        await wait_until(lambda: connection.is_healthy("btcusdt@ticker") and
                         connection.is_healthy("ethusdt@depth10@100ms"))

        await connection.force_reconnect()
        await wait_until(lambda: len(fake_connector.sockets) == 2 and len(fake_connector.last.sent) == 2)
        assert not connection.is_healthy("btcusdt@ticker")
        second = fake_connector.last
        assert second.sent == first.sent
        assert connection.connect_count == 2

        second.feed(_ack(1))
        second.feed(_ack(2))
        await wait_until(lambda: all(d.healthy for d in connection.subscribers()))

    @pytest.mark.asyncio
    async def test_unacknowledged_subscription_resent(self, connection, fake_connector):
        connection.add_subscriber(SubscriberDescriptor("s", '{"id":7}', ack_predicate=make_ack_predicate(7)))
        await connection.start()
        await wait_until(lambda: fake_connector.sockets and len(fake_connector.last.sent) >= 2, timeout=3)
        assert set(fake_connector.last.sent) == {'{"id":7}'}

    @pytest.mark.asyncio
    async def test_subscriber_without_predicate_healthy_once_written(self, connection, fake_connector):
        await connection.start()
        await wait_until(lambda: connection.is_connected)
        connection.add_subscriber(SubscriberDescriptor("plain", "sub"))
        await wait_until(lambda: connection.is_healthy("plain"))
        assert fake_connector.last.sent == ["sub"]

    @pytest.mark.asyncio
    async def test_remove_sends_unsubscribe(self, connection, fake_connector):
        connection.add_subscriber(SubscriberDescriptor("a", "sub-a", unsubscribe_frame="unsub-a"))
        await connection.start()
        await wait_until(lambda: connection.is_healthy("a"))
        assert connection.remove_subscriber("a") is not None
        await wait_until(lambda: "unsub-a" in fake_connector.last.sent)
        assert connection.subscribers() == []

    @pytest.mark.asyncio
    async def test_connect_failure_backs_off_and_retries(self):
        connector = FakeConnector(failures=2)
        conn = WsConnection("wss://x", FAST, connector=connector)
        await conn.start()
        await wait_until(lambda: conn.is_connected)
        assert len(connector.kwargs) == 3
        assert connector.kwargs[0]["compression"] is None
        await conn.stop()
        assert conn.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_read_idle_forces_reconnect(self, fake_connector):
        config = msgspec.structs.replace(FAST, read_idle_timeout=0.05)
        conn = WsConnection("wss://x", config, connector=fake_connector)
        await conn.start()
        await wait_until(lambda: conn.connect_count >= 2)
        assert fake_connector.sockets[0].closed
        await conn.stop()

    @pytest.mark.asyncio
    async def test_url_provider_and_connected_hook(self, fake_connector):
        on_connected = AsyncMock()
        states = []

        async def record(state):
            states.append(state)

        conn = WsConnection("wss://placeholder", FAST, connector=fake_connector,
                            url_provider=AsyncMock(return_value="wss://x/ws/listen-key"),
                            on_connected=on_connected, connection_handler=record)
        await conn.start()
        await wait_until(lambda: conn.is_connected)
        assert fake_connector.last.url == "wss://x/ws/listen-key"
        on_connected.assert_awaited_once()
        await conn.stop()
        assert states[:2] == [ConnectionState.CONNECTING, ConnectionState.OPEN]
        assert states[-1] == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_send_and_wait(self, connection, fake_connector):
        await connection.start()
        await wait_until(lambda: connection.is_connected)
        task = asyncio.create_task(connection.send_and_wait({"method": "PING", "id": 9},
                                                            make_ack_predicate(9), timeout=1))
        await wait_until(lambda: fake_connector.last.sent)
        assert fake_connector.last.sent == ['{"method":"PING","id":9}']
        fake_connector.last.feed(_ack(9))
        assert await task == _ack(9)

    @pytest.mark.asyncio
    async def test_send_and_wait_fails_on_disconnect(self, connection, fake_connector):
        await connection.start()
        await wait_until(lambda: connection.is_connected)
        task = asyncio.create_task(connection.send_and_wait("ping", lambda raw: False, timeout=1))
        await wait_until(lambda: fake_connector.last.sent)
        await connection.force_reconnect()
        with pytest.raises(ConnectionClosedError):
            await task

    @pytest.mark.asyncio
    async def test_send_requires_connection(self, connection):
        with pytest.raises(ConnectionClosedError):
            await connection.send({"x": 1})

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_kill_reader(self, fake_connector):
        frames = []

        def handler(raw):
            frames.append(raw)
            if raw == "bad":
                raise RuntimeError("boom")

        conn = WsConnection("wss://x", FAST, on_frame=handler, connector=fake_connector)
        await conn.start()
        await wait_until(lambda: conn.is_connected)
        fake_connector.last.feed("bad")
        fake_connector.last.feed("good")
        await wait_until(lambda: frames == ["bad", "good"])
        assert conn.connect_count == 1
        await conn.stop()

    @pytest.mark.asyncio
    async def test_heartbeat(self, fake_connector):
        config = msgspec.structs.replace(FAST, heartbeat_interval=0.02)
        conn = WsConnection("wss://x", config, connector=fake_connector, heartbeat_frame="hb")
        await conn.start()
        await wait_until(lambda: fake_connector.sockets and "hb" in fake_connector.last.sent)
        await conn.stop()

    def test_backoff_capped(self):
        conn = WsConnection("wss://x", FAST)
        delays = [conn._next_backoff() for _ in range(15)]
        assert delays[0] == 0.01
        assert max(delays) == 0.05


class TestWsStreamRouter:

    @pytest.mark.asyncio
    async def test_routes_decoded_payload(self, connection):
        router = WsStreamRouter(connection, venue="test")
        received = []
        router.subscribe("btcusdt@ticker", Ticker, received.append)

        await router.on_frame('{"stream":"btcusdt@ticker","data":{"s":"BTCUSDT","c":"20000.5"}}')
        assert received == [Ticker(s="BTCUSDT", c="20000.5")]

    @pytest.mark.asyncio
    async def test_async_handler_awaited(self, connection):
        router = WsStreamRouter(connection)
        handler = AsyncMock()
        router.subscribe("btcusdt@ticker", Ticker, handler)
        await router.on_frame(b'{"stream":"btcusdt@ticker","data":{"s":"BTCUSDT","c":"1"}}')
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_bad_frames_suppressed(self, connection):
        suppressor = Mock()
        router = WsStreamRouter(connection, suppressor=suppressor)
        handler = Mock()
        router.subscribe("btcusdt@ticker", Ticker, handler)

        await router.on_frame('{"result":null,"id":1}')
        await router.on_frame('not json')
        await router.on_frame('{"stream":"other@ticker","data":{}}')
        await router.on_frame('{"stream":"btcusdt@ticker","data":{"s":1}}')

        handler.assert_not_called()
        keys = [c.args[0] for c in suppressor.log_error.call_args_list]
        assert keys == ["envelope_decode", "unknown_stream:other@ticker", "decode:btcusdt@ticker"]

    @pytest.mark.asyncio
    async def test_unsubscribe_and_reset(self, connection):
        router = WsStreamRouter(connection)
        handle = router.subscribe("btcusdt@ticker", Ticker, Mock())
        other = router.subscribe("ethusdt@ticker", Ticker, Mock())
        assert (handle.request_id, other.request_id) == (1, 2)

        router.reset("btcusdt@ticker")
        router.unsubscribe(handle)
        assert router.streams() == ["ethusdt@ticker"]
        assert [d.channel_key for d in connection.subscribers()] == ["ethusdt@ticker"]
