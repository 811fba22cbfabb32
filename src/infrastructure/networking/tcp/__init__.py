from .framing import (
    INT_MAX, FLT_MAX, encode_field, encode_fields, encode_message, frame, FieldReader, FrameSplitter
)
from .message_ids import IncomingMessage, OutgoingMessage
from .client import FramedTcpClient, FATAL_ERROR_CODES, BENIGN_ERROR_CODES

__all__ = [
    "INT_MAX",
    "FLT_MAX",
    "encode_field",
    "encode_fields",
    "encode_message",
    "frame",
    "FieldReader",
    "FrameSplitter",
    "IncomingMessage",
    "OutgoingMessage",
    "FramedTcpClient",
    "FATAL_ERROR_CODES",
    "BENIGN_ERROR_CODES",
]
