"""
Pytest configuration and shared fixtures.

Puts src/ on the import path, pins a quiet test logging configuration and
provides the instrument / registry / ledger fixtures most core tests use.
"""

import asyncio
import os
import sys
from decimal import Decimal
from pathlib import Path

import msgspec
import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

# Configure test environment
os.environ['ENVIRONMENT'] = 'test'

from infrastructure.logging import LoggerFactory, get_logger
from infrastructure.logging.structs import LoggingConfig, ConsoleBackendConfig, PerformanceConfig
from exchanges.core.balance_ledger import BalanceLedger
from exchanges.core.instrument_registry import InstrumentRegistry
from exchanges.structs import Instrument
from config.structs import GatewayConnectionConfig
from infrastructure.networking.tcp import FrameSplitter, IncomingMessage, OutgoingMessage, encode_message


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """Set up test-appropriate logging configuration."""
    LoggerFactory.configure(LoggingConfig(
        environment="test",
        console=ConsoleBackendConfig(enabled=True, min_level="WARNING", color=False),
        performance=PerformanceConfig(buffer_size=100, batch_size=1, dispatch_interval=0.001),
    ))
    yield
    LoggerFactory.clear_cache()


@pytest.fixture
def logger():
    """Provide HFT logger for tests."""
    return get_logger("test")


@pytest.fixture
def btc_usdt():
    return Instrument(base="BTC", quote="USDT", tick_size=Decimal("0.01"), lot_size=Decimal("0.00001"),
                      min_size=Decimal("0.0001"), min_notional=Decimal("5"), symbol="BTCUSDT")


@pytest.fixture
def registry(btc_usdt):
    registry = InstrumentRegistry("test")
    registry.refresh([btc_usdt])
    return registry


@pytest.fixture
def ledger():
    return BalanceLedger("test")


class FakeResponse:

    def __init__(self, status: int, body: bytes, headers=None):
        self.status = status
        self.headers = headers or {}
        self._body = body

    async def read(self) -> bytes:
        return self._body


class _FakeRequest:

    def __init__(self, reply):
        self._reply = reply

    async def __aenter__(self):
        if isinstance(self._reply, BaseException):
            raise self._reply
        return self._reply

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Stand-in for aiohttp.ClientSession: replays queued replies and records requests."""

    def __init__(self):
        self.closed = False
        self.replies = []
        self.requests = []

    def add(self, body=b"", status: int = 200, headers=None) -> "FakeSession":
        if not isinstance(body, bytes):
            body = msgspec.json.encode(body)
        self.replies.append(FakeResponse(status, body, headers))
        return self

    def add_error(self, error: BaseException) -> "FakeSession":
        self.replies.append(error)
        return self

    def request(self, method, url, data=None, headers=None, cookies=None):
        self.requests.append({'method': method, 'url': url, 'data': data,
                              'headers': headers or {}, 'cookies': cookies})
        if not self.replies:
            raise AssertionError(f"unexpected request {method} {url}")
        return _FakeRequest(self.replies.pop(0))

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_session():
    return FakeSession()


class FakeWebSocket:
    """In-memory websocket: frames pushed with feed() come out of recv()."""

    def __init__(self, url: str):
        self.url = url
        self.sent = []
        self.closed = False
        self.pings = 0
        self._inbound = asyncio.Queue()

    def feed(self, frame) -> None:
        self._inbound.put_nowait(frame)

    async def recv(self):
        item = await self._inbound.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send(self, frame) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(frame)

    async def ping(self) -> None:
        self.pings += 1

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbound.put_nowait(ConnectionError("socket closed"))


class FakeConnector:
    """Replaces websockets.connect; every call opens a new FakeWebSocket."""

    def __init__(self, failures: int = 0):
        self.sockets = []
        self.failures = failures
        self.kwargs = []

    async def __call__(self, url, **kwargs):
        self.kwargs.append(kwargs)
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws

    @property
    def last(self) -> FakeWebSocket:
        return self.sockets[-1]


async def wait_until(condition, timeout: float = 2.0, interval: float = 0.005) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def fake_connector():
    return FakeConnector()


class FakeGatewayWriter:

    def __init__(self, gateway: "FakeGateway"):
        self.gateway = gateway
        self.closed = False

    def write(self, data: bytes) -> None:
        self.gateway.on_client_bytes(data)

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass


class FakeGateway:
    """
    In-memory broker gateway: answers the handshake and hands every client
    request (as decoded string tokens) to a per-message-id responder.
    """

    def __init__(self, next_order_id: int = 100, accounts: str = "DU123", server_version: int = 176):
        self.next_order_id = next_order_id
        self.accounts = accounts
        self.server_version = server_version
        self.connections = 0
        self.requests = []
        self.responders = {}
        self.reader = None
        self.writer = None
        self._splitter = None

    async def open_connection(self, host, port):
        self.connections += 1
        self.reader = asyncio.StreamReader()
        self.writer = FakeGatewayWriter(self)
        self._splitter = FrameSplitter()
        return self.reader, self.writer

    def on_client_bytes(self, data: bytes) -> None:
        if data.startswith(b"API\0"):
            self.send(self.server_version, "20240325 09:30:00 EST")
            return
        for payload in self._splitter.feed(data):
            tokens = [t.decode('ascii') for t in payload.split(b"\0")[:-1]]
            self.requests.append(tokens)
            msg_id = int(tokens[0])
            if msg_id == OutgoingMessage.START_API:
                self.send(IncomingMessage.NEXT_VALID_ID, 1, self.next_order_id)
                self.send(IncomingMessage.MANAGED_ACCOUNTS, 1, self.accounts)
            responder = self.responders.get(msg_id)
            if responder is not None:
                responder(tokens)

    def send(self, *fields) -> None:
        self.reader.feed_data(encode_message(*fields))

    def error(self, request_id: int, code: int, message: str) -> None:
        self.send(IncomingMessage.ERROR, 2, request_id, code, message, "")

    def drop(self) -> None:
        self.reader.feed_eof()

    def requests_for(self, msg_id: int):
        return [r for r in self.requests if int(r[0]) == msg_id]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def gateway_config():
    return GatewayConnectionConfig(request_timeout=0.5, reconnect_delay=0.01)
