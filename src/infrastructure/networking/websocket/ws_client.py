import asyncio
import inspect
import logging
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import msgspec
from websockets import connect

from config.structs import WebSocketConfig
from infrastructure.exceptions.system import ConnectionClosedError
from infrastructure.logging import HFTLoggerInterface, get_exchange_logger
from .structs import ConnectionState, Frame, SubscriberDescriptor

FrameHandler = Callable[[Frame], Any]
Connector = Callable[..., Awaitable[Any]]


class WsConnection:
    """
    Single WebSocket carrier delivering raw frames to a routing callback.

    A supervisor task owns the connection lifecycle. While OPEN it runs
    exactly one reader task and one writer task; when either ends (socket
    error, read-idle timeout, forced reconnect) both are torn down and the
    supervisor reconnects with exponential backoff.

    Subscriptions are kept as ordered descriptors. Every (re)connect marks
    them all unhealthy and replays their subscribe frames; a subscriber turns
    healthy when its ack predicate matches an inbound frame, and the writer
    resends unacknowledged ones periodically.
    """

    def __init__(
        self,
        url: str,
        config: WebSocketConfig,
        on_frame: Optional[FrameHandler] = None,
        venue: str = "ws",
        connector: Optional[Connector] = None,
        url_provider: Optional[Callable[[], Awaitable[str]]] = None,
        on_connected: Optional[Callable[[], Awaitable[None]]] = None,
        connection_handler: Optional[Callable[[ConnectionState], Awaitable[None]]] = None,
        heartbeat_frame: Optional[Frame] = None,
        logger: Optional[HFTLoggerInterface] = None,
    ):
        self.url = url
        self.config = config
        self.on_frame = on_frame
        self._connector = connector or connect
        self._url_provider = url_provider
        self._on_connected = on_connected
        self._connection_handler = connection_handler
        self._heartbeat_frame = heartbeat_frame
        self.logger = logger or get_exchange_logger(venue, 'ws')

        self._state = ConnectionState.CLOSED
        self._ws = None
        self._supervisor_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._should_reconnect = False

        self._subscribers: "OrderedDict[str, SubscriberDescriptor]" = OrderedDict()
        self._outbound: asyncio.Queue = asyncio.Queue()
        self._waiters: List[Tuple[Callable[[Frame], bool], asyncio.Future]] = []

        self._last_recv = 0.0
        self._last_send = 0.0
        self._last_resubscribe_check = 0.0
        self._reconnect_attempts = 0
        self.connect_count = 0

        self._cached_backoff_delays = self._precompute_backoff_delays()
        self._tick = min(x for x in (config.resubscribe_interval, config.heartbeat_interval, 1.0) if x)

    def _precompute_backoff_delays(self) -> List[float]:
        return [
            min(self.config.reconnect_delay * (self.config.reconnect_backoff ** attempt),
                self.config.max_reconnect_delay)
            for attempt in range(self.config.max_reconnect_attempts)
        ]

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.OPEN and self._ws is not None

    # Subscriber bookkeeping

    def add_subscriber(self, descriptor: SubscriberDescriptor) -> None:
        descriptor.healthy = False
        self._subscribers[descriptor.channel_key] = descriptor
        if self.is_connected:
            self._enqueue(descriptor.subscribe_frame, descriptor)

    def remove_subscriber(self, channel_key: str) -> Optional[SubscriberDescriptor]:
        descriptor = self._subscribers.pop(channel_key, None)
        if descriptor is not None and descriptor.unsubscribe_frame is not None and self.is_connected:
            self._enqueue(descriptor.unsubscribe_frame)
        return descriptor

    def reset_subscriber(self, channel_key: str) -> None:
        """Mark a channel unhealthy and resend its subscribe frame."""
        descriptor = self._subscribers.get(channel_key)
        if descriptor is None:
            return
        descriptor.healthy = False
        if self.is_connected:
            self._enqueue(descriptor.subscribe_frame, descriptor)

    def is_healthy(self, channel_key: str) -> bool:
        descriptor = self._subscribers.get(channel_key)
        return descriptor is not None and descriptor.healthy

    def subscribers(self) -> List[SubscriberDescriptor]:
        return list(self._subscribers.values())

    # Lifecycle

    async def start(self) -> None:
        if self._supervisor_task is not None and not self._supervisor_task.done():
            return
        self._should_reconnect = True
        self._supervisor_task = asyncio.create_task(self._connection_loop())
        self.logger.info(f"Started WebSocket carrier for {self.url}")

    async def stop(self) -> None:
        self._should_reconnect = False
        await self._update_state(ConnectionState.CLOSING)

        tasks = [t for t in (self._reader_task, self._writer_task, self._supervisor_task)
                 if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self._close_socket()
        self._fail_waiters()
        await self._update_state(ConnectionState.CLOSED)
        self.logger.info(f"Stopped WebSocket carrier for {self.url}")

    async def force_reconnect(self) -> None:
        """Drop the current socket; the supervisor reconnects and replays subscriptions."""
        if self._ws is not None:
            self.logger.warning("Forcing WebSocket reconnect")
            await self._close_socket()

    async def send(self, message: Any) -> None:
        """
        Queue a frame for the writer. Dicts are JSON-encoded with msgspec.

        Raises:
            ConnectionClosedError: If the carrier is not open
        """
        if not self.is_connected:
            raise ConnectionClosedError("WebSocket not connected")
        self._enqueue(self._encode(message))

    async def send_and_wait(self, message: Any, predicate: Callable[[Frame], bool],
                            timeout: Optional[float] = None) -> Frame:
        """
        Send a frame and wait for the first inbound frame matching predicate.

        Raises:
            asyncio.TimeoutError: No matching frame within timeout
            ConnectionClosedError: Carrier closed while waiting
        """
        future = asyncio.get_running_loop().create_future()
        entry = (predicate, future)
        self._waiters.append(entry)
        try:
            await self.send(message)
            return await asyncio.wait_for(future, timeout or self.config.ack_timeout)
        finally:
            if entry in self._waiters:
                self._waiters.remove(entry)

    # Internal connection management

    async def _connection_loop(self) -> None:
        while self._should_reconnect:
            await self._update_state(ConnectionState.CONNECTING)
            try:
                await self._connect()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = self._next_backoff()
                self.logger.error(f"WebSocket connect failed: {e}, retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            self._reconnect_attempts = 0
            self.connect_count += 1
            await self._run_session()

            await self._close_socket()
            self._fail_waiters()
            if self._should_reconnect:
                delay = self._next_backoff()
                self.logger.warning(f"WebSocket closed abnormally, reconnecting in {delay:.1f}s")
                await asyncio.sleep(delay)

    def _next_backoff(self) -> float:
        index = min(self._reconnect_attempts, len(self._cached_backoff_delays) - 1)
        self._reconnect_attempts += 1
        return self._cached_backoff_delays[index]

    async def _connect(self) -> None:
        if self._url_provider is not None:
            self.url = await self._url_provider()

        self.logger.info(f"Connecting to WebSocket: {self.url}")
        self._ws = await asyncio.wait_for(
            self._connector(
                self.url,
                ping_interval=self.config.ping_interval,
                ping_timeout=self.config.ping_timeout,
                close_timeout=self.config.close_timeout,
                max_queue=self.config.max_queue_size,
                compression=None,
                max_size=self.config.max_message_size,
            ),
            timeout=self.config.connect_timeout,
        )

    async def _run_session(self) -> None:
        now = time.monotonic()
        self._last_recv = self._last_send = self._last_resubscribe_check = now
        self._outbound = asyncio.Queue()
        await self._update_state(ConnectionState.OPEN)

        if self._on_connected is not None:
            await self._on_connected()

        for descriptor in self._subscribers.values():
            descriptor.healthy = False
            self._enqueue(descriptor.subscribe_frame, descriptor)

        self._reader_task = asyncio.create_task(self._reader_loop())
        self._writer_task = asyncio.create_task(self._writer_loop())
        done, pending = await asyncio.wait({self._reader_task, self._writer_task},
                                           return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                self.logger.warning(f"WebSocket session ended: {task.exception()!r}")

    async def _reader_loop(self) -> None:
        ws = self._ws
        while True:
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=self.config.read_idle_timeout)
            except asyncio.TimeoutError:
                self.logger.warning(f"No frame for {self.config.read_idle_timeout}s, forcing reconnect")
                return
            self._last_recv = time.monotonic()

            if self.logger.isEnabledFor(logging.DEBUG):
                preview = raw[:100] if isinstance(raw, (str, bytes)) else raw
                self.logger.debug(f"Received WebSocket frame: {preview!r}")

            self._match_acks(raw)
            self._match_waiters(raw)

            if self.on_frame is None:
                continue
            try:
                result = self.on_frame(raw)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"Frame handler failed: {e}")

    async def _writer_loop(self) -> None:
        ws = self._ws
        while True:
            try:
                frame, descriptor = await asyncio.wait_for(self._outbound.get(), timeout=self._tick)
            except asyncio.TimeoutError:
                frame, descriptor = None, None

            now = time.monotonic()
            if frame is not None:
                await ws.send(frame)
                self._last_send = now
                if descriptor is not None:
                    descriptor.last_sent = now
                    if descriptor.ack_predicate is None:
                        descriptor.healthy = True

            if self.config.has_heartbeat and now - self._last_send >= self.config.heartbeat_interval:
                if self._heartbeat_frame is not None:
                    await ws.send(self._heartbeat_frame)
                else:
                    await ws.ping()
                self._last_send = now

            if now - self._last_resubscribe_check >= self.config.resubscribe_interval:
                self._last_resubscribe_check = now
                self._resend_unhealthy(now)

    def _resend_unhealthy(self, now: float) -> None:
        for descriptor in self._subscribers.values():
            if descriptor.healthy or now - descriptor.last_sent < self.config.ack_timeout:
                continue
            self.logger.warning(f"Subscription {descriptor.channel_key} not acknowledged, resending")
            descriptor.last_sent = now
            self._enqueue(descriptor.subscribe_frame, descriptor)

    def _match_acks(self, raw: Frame) -> None:
        for descriptor in self._subscribers.values():
            if not descriptor.healthy and descriptor.ack_predicate is not None and descriptor.ack_predicate(raw):
                descriptor.healthy = True
                self.logger.debug(f"Subscription {descriptor.channel_key} acknowledged")

    def _match_waiters(self, raw: Frame) -> None:
        for predicate, future in list(self._waiters):
            if not future.done() and predicate(raw):
                future.set_result(raw)

    def _fail_waiters(self) -> None:
        for _, future in self._waiters:
            if not future.done():
                future.set_exception(ConnectionClosedError("WebSocket connection closed"))
        self._waiters.clear()

    def _enqueue(self, frame: Frame, descriptor: Optional[SubscriberDescriptor] = None) -> None:
        self._outbound.put_nowait((frame, descriptor))

    @staticmethod
    def _encode(message: Any) -> Frame:
        if isinstance(message, (str, bytes)):
            return message
        return msgspec.json.encode(message).decode("utf-8")

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await asyncio.wait_for(ws.close(), timeout=self.config.close_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("WebSocket close timeout")
        except Exception as e:
            self.logger.error(f"Error closing WebSocket: {e}")

    async def _update_state(self, state: ConnectionState) -> None:
        self._state = state
        if self._connection_handler:
            await self._connection_handler(state)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
