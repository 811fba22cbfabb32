from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

Frame = Union[str, bytes]


class ConnectionState(Enum):
    """WebSocket carrier states"""
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class SubscriberDescriptor:
    """
    One replayable subscription on a carrier.

    ack_predicate decides whether an inbound frame acknowledges this
    subscription; without one the subscriber is healthy as soon as the
    subscribe frame is written.
    """
    channel_key: str
    subscribe_frame: Frame
    unsubscribe_frame: Optional[Frame] = None
    ack_predicate: Optional[Callable[[Frame], bool]] = None
    healthy: bool = False
    last_sent: float = 0.0
