"""
Stream multiplexing over one WebSocket carrier.

Venues that multiplex many streams on one socket wrap every payload as
{"stream": "<symbol>@<channel>", "data": {...}}. The router owns the id
sequence for SUBSCRIBE/UNSUBSCRIBE frames, registers one subscriber
descriptor per stream on the carrier and decodes each payload into the type
the subscriber asked for.
"""

import inspect
import itertools
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Type

import msgspec

from infrastructure.error_handling.suppression import ErrorSuppressor
from infrastructure.logging import HFTLoggerInterface, get_exchange_logger
from .structs import Frame, SubscriberDescriptor
from .ws_client import WsConnection


class StreamEnvelope(msgspec.Struct):
    stream: str
    data: msgspec.Raw


@dataclass(frozen=True)
class StreamHandle:
    stream: str
    request_id: int


@dataclass
class _Route:
    handle: StreamHandle
    decoder: msgspec.json.Decoder
    handler: Callable[[Any], Any]


def _as_bytes(raw: Frame) -> bytes:
    return raw.encode('utf-8') if isinstance(raw, str) else raw


def make_ack_predicate(request_id: int) -> Callable[[Frame], bool]:
    """Match the venue reply {"result":null,"id":<request_id>}."""
    id_pattern = re.compile(rb'"id"\s*:\s*%d(?!\d)' % request_id)
    result_pattern = re.compile(rb'"result"\s*:\s*null')

    def predicate(raw: Frame) -> bool:
        data = _as_bytes(raw)
        return bool(id_pattern.search(data)) and bool(result_pattern.search(data))

    return predicate


class WsStreamRouter:
    """
    Routes multiplexed stream frames to per-stream decoders and handlers.

    Installs itself as the carrier's frame callback. Delivery happens on the
    carrier's reader task, so events of one stream arrive in socket order.
    """

    def __init__(self, connection: WsConnection, venue: str = "ws",
                 logger: Optional[HFTLoggerInterface] = None,
                 suppressor: Optional[ErrorSuppressor] = None):
        self.connection = connection
        self.logger = logger or get_exchange_logger(venue, 'ws.router')
        self.suppressor = suppressor or ErrorSuppressor(self.logger)

        self._ids = itertools.count(1)
        self._routes: Dict[str, _Route] = {}
        self._envelope_decoder = msgspec.json.Decoder(StreamEnvelope)

        connection.on_frame = self.on_frame

    def subscribe(self, stream: str, decoded_type: Type, handler: Callable[[Any], Any]) -> StreamHandle:
        request_id = next(self._ids)
        handle = StreamHandle(stream=stream, request_id=request_id)
        self._routes[stream] = _Route(handle, msgspec.json.Decoder(decoded_type), handler)

        descriptor = SubscriberDescriptor(
            channel_key=stream,
            subscribe_frame=self._control_frame("SUBSCRIBE", stream, request_id),
            unsubscribe_frame=self._control_frame("UNSUBSCRIBE", stream, request_id),
            ack_predicate=make_ack_predicate(request_id),
        )
        self.connection.add_subscriber(descriptor)
        self.logger.info(f"Subscribed stream {stream} (id={request_id})")
        return handle

    def unsubscribe(self, handle: StreamHandle) -> None:
        route = self._routes.get(handle.stream)
        if route is None or route.handle != handle:
            return
        del self._routes[handle.stream]
        self.connection.remove_subscriber(handle.stream)
        self.logger.info(f"Unsubscribed stream {handle.stream}")

    def reset(self, stream: str) -> None:
        """Force a resubscribe of one stream (watchdog expiry)."""
        self.connection.reset_subscriber(stream)

    def streams(self) -> list[str]:
        return list(self._routes)

    @staticmethod
    def _control_frame(method: str, stream: str, request_id: int) -> str:
        return msgspec.json.encode({"method": method, "params": [stream], "id": request_id}).decode('utf-8')

    async def on_frame(self, raw: Frame) -> None:
        data = _as_bytes(raw)
        if b'"result"' in data:
            return

        try:
            envelope = self._envelope_decoder.decode(data)
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            self.suppressor.log_error("envelope_decode", f"Dropping undecodable frame: {e}")
            return

        route = self._routes.get(envelope.stream)
        if route is None:
            self.suppressor.log_error(f"unknown_stream:{envelope.stream}",
                                      f"Dropping frame for unknown stream {envelope.stream}")
            return

        try:
            message = route.decoder.decode(envelope.data)
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            self.suppressor.log_error(f"decode:{envelope.stream}",
                                      f"Failed to decode {envelope.stream} payload: {e}")
            return

        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(f"Routing {envelope.stream} frame")

        result = route.handler(message)
        if inspect.isawaitable(result):
            await result
