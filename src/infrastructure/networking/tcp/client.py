"""
Framed TCP session with a broker gateway.

The client keeps one TCP connection to a locally running gateway, performs
the API handshake, decodes every inbound frame through a message table and
fans decoded messages out to registered handlers. Requests that expect a
single logical reply go through request(), which bridges the asynchronous
message stream into one awaited result.

Session lifecycle:
    connect -> "API\\0" + versions -> server version -> StartApi
            -> NextValidId + ManagedAccounts -> ready
            -> connect callbacks (registration order)
    read error / overflow / fatal gateway error -> close -> wait -> reconnect
"""

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config.structs import GatewayConnectionConfig
from exchanges.structs.enums import RespCode
from infrastructure.exceptions.system import ConnectionClosedError, NotReadyError, ProtocolFatalError
from infrastructure.logging import HFTLoggerInterface, get_exchange_logger
from .framing import FieldReader, FrameSplitter, encode_fields, encode_message, frame
from .message_ids import IncomingMessage, OutgoingMessage
from .messages import DECODERS, ErrorMessage, ManagedAccountsMessage, NextValidIdMessage

MessageHandler = Callable[[IncomingMessage, Any], None]
Matcher = Callable[[IncomingMessage, Any], Any]
OpenConnection = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]

CLIENT_VERSIONS = "v100..176"
START_API_VERSION = 2

# Gateway error codes forcing a reconnect: 1300 = socket port has been reset
FATAL_ERROR_CODES = frozenset({1300})

# Informational gateway codes: market data farm status, order cancelled notice,
# order already cancelled
BENIGN_ERROR_CODES = frozenset({2104, 2106, 2158, 202, 10148})

READY_POLL_ATTEMPTS = 100
READY_POLL_INTERVAL = 0.1


class FramedTcpClient:
    """
    Args:
        config: Gateway address, port, client id, timeouts
        decoders: Message id -> decoder table (defaults to the gateway table)
        open_connection: Stream factory, asyncio.open_connection by default
        optional_capabilities: Capability string appended to the handshake
    """

    def __init__(
        self,
        config: GatewayConnectionConfig,
        decoders: Optional[Dict[IncomingMessage, Callable[[FieldReader], Any]]] = None,
        open_connection: Optional[OpenConnection] = None,
        optional_capabilities: str = "",
        logger: Optional[HFTLoggerInterface] = None,
    ):
        self.config = config
        self.decoders = decoders if decoders is not None else DECODERS
        self._open_connection = open_connection or asyncio.open_connection
        self.optional_capabilities = optional_capabilities
        self.logger = logger or get_exchange_logger('ibkr', 'tws')

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._supervisor_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._disconnected = asyncio.Event()
        self._running = False

        self.server_version = 0
        self.connection_time = ""
        self.accounts: List[str] = []
        self._next_order_id = 0
        self._request_ids = itertools.count(1)
        self._ready = False

        self._handler_ids = itertools.count(1)
        self._handlers: Dict[int, Tuple[Optional[IncomingMessage], MessageHandler]] = {}
        self._connect_callback_ids = itertools.count(1)
        self._connect_callbacks: Dict[int, Callable[[], Any]] = {}
        self._pending: List[asyncio.Future] = []

    @property
    def is_ready(self) -> bool:
        return self._ready

    # Handler registration

    def register_handler(self, msg_id: Optional[IncomingMessage], handler: MessageHandler) -> int:
        """Register handler for msg_id (None = every message). Returns an unregister token."""
        token = next(self._handler_ids)
        self._handlers[token] = (msg_id, handler)
        return token

    def unregister_handler(self, token: int) -> None:
        self._handlers.pop(token, None)

    def register_connect_callback(self, callback: Callable[[], Any]) -> int:
        token = next(self._connect_callback_ids)
        self._connect_callbacks[token] = callback
        return token

    def unregister_connect_callback(self, token: int) -> None:
        self._connect_callbacks.pop(token, None)

    # Ids

    def next_order_id(self) -> int:
        self._require_ready()
        order_id = self._next_order_id
        self._next_order_id += 1
        return order_id

    def next_request_id(self) -> int:
        return next(self._request_ids)

    # Lifecycle

    async def start(self, wait_ready: bool = True) -> None:
        """Start the connection supervisor; optionally wait for the first ready session."""
        if self._supervisor_task is not None and not self._supervisor_task.done():
            return
        self._running = True
        self._supervisor_task = asyncio.create_task(self._connection_loop())
        if wait_ready:
            while not self._ready:
                if self._supervisor_task.done():
                    self._supervisor_task.result()
                    return
                await asyncio.sleep(READY_POLL_INTERVAL)

    async def stop(self) -> None:
        self._running = False
        if self._supervisor_task is not None:
            self._supervisor_task.cancel()
            await asyncio.gather(self._supervisor_task, return_exceptions=True)
            self._supervisor_task = None
        await self._close("client stopped")

    async def _connection_loop(self) -> None:
        while self._running:
            if not await self.connect():
                self.logger.info(f"Gateway connect failed, retry in {self.config.reconnect_delay}s")
                await self._close("connect failed")
                await asyncio.sleep(self.config.reconnect_delay)
                continue

            await self._fire_connect_callbacks()
            await self._disconnected.wait()
            await self._close("disconnected")
            if self._running:
                await asyncio.sleep(self.config.reconnect_delay)

    async def connect(self) -> bool:
        """One connection attempt including the full handshake."""
        self.server_version = 0
        self._next_order_id = 0
        self.accounts = []
        self._request_ids = itertools.count(1)
        self._ready = False
        self._disconnected.clear()

        address, port = self.config.address, self.config.port
        self.logger.info(f"Dialing gateway {address}:{port}")
        try:
            self._reader, self._writer = await asyncio.wait_for(
                self._open_connection(address, port), timeout=self.config.request_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            self.logger.error(f"Gateway dial failed: {e}")
            return False

        self._reader_task = asyncio.create_task(self._read_loop(self._reader))

        versions = CLIENT_VERSIONS
        if self.optional_capabilities:
            versions += " " + self.optional_capabilities
        await self._write(b"API\0" + frame(versions.encode('ascii')))

        for _ in range(READY_POLL_ATTEMPTS):
            if self._next_order_id > 0 and self.accounts:
                self._ready = True
                self.logger.info(f"Gateway session ready (server version {self.server_version}, "
                                 f"accounts {','.join(self.accounts)})")
                return True
            if self._disconnected.is_set():
                return False
            await asyncio.sleep(READY_POLL_INTERVAL)

        self.logger.warning("Gateway handshake timed out waiting for NextValidId/ManagedAccounts")
        return False

    async def _fire_connect_callbacks(self) -> None:
        for token in sorted(self._connect_callbacks):
            callback = self._connect_callbacks.get(token)
            if callback is None:
                continue
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self.logger.error(f"Connect callback failed: {e}")

    def request_reconnect(self, reason: str) -> None:
        if not self._disconnected.is_set():
            self.logger.warning(f"Gateway reconnect required: {reason}")
        self._ready = False
        self._disconnected.set()

    async def _close(self, reason: str) -> None:
        self._ready = False
        self._disconnected.set()

        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        writer, self._writer = self._writer, None
        self._reader = None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, ConnectionError):
                pass

        for future in self._pending:
            if not future.done():
                future.set_exception(ConnectionClosedError(f"Gateway connection closed: {reason}"))
        self._pending.clear()

    # Reading

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        splitter = FrameSplitter(self.config.max_buffer_size)
        try:
            while True:
                data = await reader.read(32 * 1024)
                if not data:
                    self.request_reconnect("connection closed by gateway")
                    return
                for payload in splitter.feed(data):
                    self._process_payload(payload)
        except ProtocolFatalError as e:
            self.request_reconnect(str(e))
        except (OSError, ConnectionError) as e:
            self.request_reconnect(f"read failed: {e}")

    def _process_payload(self, payload: bytes) -> None:
        reader = FieldReader(payload)

        if self.server_version == 0:
            self.server_version = reader.read_int(0)
            self.connection_time = reader.read_str()
            if self.server_version <= 0:
                raise ProtocolFatalError("Invalid server version in handshake reply")
            self.logger.info(f"Gateway server version {self.server_version}")
            asyncio.get_running_loop().create_task(self._start_api())
            return

        raw_id = reader.read_int(0)
        try:
            msg_id = IncomingMessage(raw_id)
        except ValueError:
            self.logger.debug(f"Unknown gateway message id {raw_id}")
            return

        decoder = self.decoders.get(msg_id)
        if decoder is None:
            if self.logger.isEnabledFor(logging.DEBUG):
                self.logger.debug(f"Unprocessed gateway message {msg_id.name}")
            return

        try:
            message = decoder(reader)
        except ProtocolFatalError as e:
            self.logger.error(f"Dropping undecodable {msg_id.name}: {e}")
            return

        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(f"recv {msg_id.name}: {message}")
        self._on_session_message(msg_id, message)
        self._dispatch(msg_id, message)

    def _on_session_message(self, msg_id: IncomingMessage, message: Any) -> None:
        if msg_id == IncomingMessage.NEXT_VALID_ID and isinstance(message, NextValidIdMessage):
            if self._next_order_id == 0:
                self._next_order_id = message.order_id
        elif msg_id == IncomingMessage.MANAGED_ACCOUNTS and isinstance(message, ManagedAccountsMessage):
            self.accounts = message.accounts
        elif msg_id == IncomingMessage.ERROR and isinstance(message, ErrorMessage):
            if message.code in BENIGN_ERROR_CODES:
                self.logger.debug(f"Gateway notice {message.code}: {message.message}")
            elif message.code in FATAL_ERROR_CODES:
                self.request_reconnect(f"gateway error {message.code}: {message.message}")
            else:
                self.logger.warning(f"Gateway error {message.code} (req {message.request_id}): {message.message}")

    def _dispatch(self, msg_id: IncomingMessage, message: Any) -> None:
        handlers = [h for wanted, h in list(self._handlers.values()) if wanted is None or wanted == msg_id]
        for handler in handlers:
            try:
                handler(msg_id, message)
            except Exception as e:
                self.logger.error(f"Handler for {msg_id.name} failed: {e}")

    # Writing

    async def _start_api(self) -> None:
        try:
            await self._write(encode_message(OutgoingMessage.START_API, START_API_VERSION,
                                             self.config.client_id, self.optional_capabilities))
        except ConnectionClosedError as e:
            self.logger.error(f"StartApi not sent: {e}")

    async def _write(self, data: bytes) -> None:
        async with self._write_lock:
            if self._writer is None:
                raise ConnectionClosedError("Gateway connection is not open")
            self._writer.write(data)
            try:
                await self._writer.drain()
            except (OSError, ConnectionError) as e:
                self.request_reconnect(f"write failed: {e}")
                raise ConnectionClosedError(f"Gateway write failed: {e}") from e

    def _require_ready(self) -> None:
        if not self._ready:
            raise NotReadyError("Gateway handshake not complete")

    async def send(self, *fields: Any) -> None:
        """
        Send one message built from fields.

        Raises:
            NotReadyError: Before the handshake completes
        """
        self._require_ready()
        await self._write(frame(encode_fields(*fields)))

    async def request(self, fields: List[Any], matcher: Matcher,
                      timeout: Optional[float] = None) -> Tuple[RespCode, Any]:
        """
        Send fields and wait for the first message for which matcher returns non-None.

        Returns:
            (RespCode.OK, matcher result) or (RespCode.TIMEOUT, None)

        Raises:
            NotReadyError: Before the handshake completes
            ConnectionClosedError: Session dropped while waiting
        """
        self._require_ready()
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_message(msg_id: IncomingMessage, message: Any) -> None:
            if future.done():
                return
            result = matcher(msg_id, message)
            if result is not None:
                future.set_result(result)

        token = self.register_handler(None, on_message)
        self._pending.append(future)
        try:
            await self._write(frame(encode_fields(*fields)))
            result = await asyncio.wait_for(future, timeout or self.config.request_timeout)
            return RespCode.OK, result
        except asyncio.TimeoutError:
            self.logger.warning(f"Gateway request {fields[0]!r} timed out")
            return RespCode.TIMEOUT, None
        finally:
            self.unregister_handler(token)
            if future in self._pending:
                self._pending.remove(future)
