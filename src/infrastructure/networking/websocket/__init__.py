from .structs import ConnectionState, SubscriberDescriptor
from .ws_client import WsConnection
from .stream_router import WsStreamRouter, StreamHandle, StreamEnvelope, make_ack_predicate

__all__ = [
    "ConnectionState",
    "SubscriberDescriptor",
    "WsConnection",
    "WsStreamRouter",
    "StreamHandle",
    "StreamEnvelope",
    "make_ack_predicate",
]
